"""Tests for core/synthesis.py: prompt assembly and failure propagation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from core.errors import ModelOutputError, SynthesisError
from core.models import CrawledContent, Source, Summary, TokenUsage
from core.synthesis import AnswerSynthesizer, build_synthesis_prompt


def make_summaries() -> list[Summary]:
    ok = Source(
        title="Jane Doe Foundation",
        link="https://janedoe.org",
        snippet="Foundation homepage",
        crawled_content=CrawledContent(
            url="https://janedoe.org",
            text="Jane Doe has funded literacy programs since 2010.",
            word_count=8,
            success=True,
        ),
    )
    failed = Source(
        title="Local news",
        link="https://news.example.com/jane",
        snippet="Jane Doe honoured at gala",
        crawled_content=CrawledContent(
            url="https://news.example.com/jane", error_message="HTTP 403: Forbidden",
        ),
    )
    return [Summary(query="Jane Doe philanthropy", summary="Jane Doe supports literacy.", sources=(ok, failed))]


class TestBuildSynthesisPrompt:
    def test_embeds_full_crawled_text(self):
        prompt = build_synthesis_prompt("What motivates Jane Doe?", make_summaries())
        assert "Full Content (8 words): Jane Doe has funded literacy programs since 2010." in prompt

    def test_notes_failed_crawls(self):
        prompt = build_synthesis_prompt("What motivates Jane Doe?", make_summaries())
        assert "Note: Content crawling failed - HTTP 403: Forbidden" in prompt
        assert "Jane Doe honoured at gala" in prompt

    def test_includes_topic_and_query(self):
        prompt = build_synthesis_prompt("What motivates Jane Doe?", make_summaries())
        assert "Research Topic: What motivates Jane Doe?" in prompt
        assert 'Query: "Jane Doe philanthropy"' in prompt


class TestAnswerSynthesizer:
    def test_returns_answer_citations_and_usage(self):
        usage = TokenUsage(prompt_tokens=900, completion_tokens=300, total_tokens=1200)
        llm = MagicMock()
        llm.generate_text.return_value = ("Jane Doe is motivated by literacy.", usage)

        result = AnswerSynthesizer(llm).synthesize("What motivates Jane Doe?", make_summaries())

        assert result.answer == "Jane Doe is motivated by literacy."
        assert result.token_usage == usage
        assert [c.url for c in result.citations] == ["https://janedoe.org", "https://news.example.com/jane"]

    def test_uses_low_temperature(self):
        llm = MagicMock()
        llm.generate_text.return_value = ("answer", TokenUsage())

        AnswerSynthesizer(llm).synthesize("topic", make_summaries())

        assert llm.generate_text.call_args.kwargs["temperature"] == 0.2

    def test_failure_chains_cause(self):
        llm = MagicMock()
        cause = RuntimeError("overloaded")
        llm.generate_text.side_effect = cause

        with pytest.raises(SynthesisError) as excinfo:
            AnswerSynthesizer(llm).synthesize("topic", make_summaries())

        assert excinfo.value.__cause__ is cause

    def test_empty_answer_keeps_usage(self):
        usage = TokenUsage(prompt_tokens=10, completion_tokens=0, total_tokens=10)
        llm = MagicMock()
        llm.generate_text.side_effect = ModelOutputError("empty", token_usage=usage)

        with pytest.raises(SynthesisError) as excinfo:
            AnswerSynthesizer(llm).synthesize("topic", make_summaries())

        assert excinfo.value.token_usage == usage
