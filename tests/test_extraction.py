"""Tests for core/extraction.py: donor assessment and its fallback."""

from __future__ import annotations

from unittest.mock import MagicMock

from core.errors import ModelOutputError
from core.extraction import FALLBACK_RATIONALE, DonorDataExtractor, build_extraction_prompt
from core.models import DonorAssessment, Source, Summary, TokenUsage


def make_summaries() -> list[Summary]:
    source = Source(title="Acme names Jane Doe CFO", link="https://acme.com/news", snippet="Jane Doe joins Acme")
    return [Summary(query="Jane Doe Acme", summary="Jane Doe is CFO at Acme Corp.", sources=(source,))]


class TestBuildExtractionPrompt:
    def test_includes_answer_and_sources(self):
        prompt = build_extraction_prompt("Jane Doe giving capacity", "Jane Doe is a CFO.", make_summaries())

        assert "Research Topic: Jane Doe giving capacity" in prompt
        assert "Jane Doe is a CFO." in prompt
        assert "Query: Jane Doe Acme" in prompt
        assert "- Acme names Jane Doe CFO: Jane Doe joins Acme" in prompt


class TestExtract:
    def test_returns_assessment_and_usage(self):
        assessment = DonorAssessment(
            inferred_age=52,
            employer="Acme Corp",
            estimated_income="Over $200,000",
            high_potential_donor=True,
            high_potential_donor_rationale="CFO at a large company with board service.",
        )
        llm = MagicMock()
        llm.generate_structured.return_value = (assessment, TokenUsage(total_tokens=140))

        result, usage = DonorDataExtractor(llm).extract("topic", "answer", make_summaries())

        assert result == assessment
        assert usage.total_tokens == 140
        args, kwargs = llm.generate_structured.call_args
        assert args[1] is DonorAssessment
        assert kwargs["temperature"] == 0.1

    def test_unparseable_output_falls_back_with_usage(self):
        llm = MagicMock()
        llm.generate_structured.side_effect = ModelOutputError(
            "no parsed output", token_usage=TokenUsage(total_tokens=60),
        )

        result, usage = DonorDataExtractor(llm).extract("topic", "answer", make_summaries())

        assert result.high_potential_donor is False
        assert result.employer is None
        assert result.high_potential_donor_rationale == FALLBACK_RATIONALE
        assert usage.total_tokens == 60

    def test_api_error_falls_back_with_zero_usage(self):
        llm = MagicMock()
        llm.generate_structured.side_effect = ConnectionError("reset by peer")

        result, usage = DonorDataExtractor(llm).extract("topic", "answer", [])

        assert result.inferred_age is None
        assert result.high_potential_donor is False
        assert usage == TokenUsage()
