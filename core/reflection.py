"""Reflection: is the evidence gathered so far enough to answer the topic?

The analyzer shows the model every summary collected in the run, each
annotated with how substantive its evidence is (sources, crawled sources,
crawled words), and asks for a structured verdict:

    {"is_sufficient": bool, "knowledge_gap": str, "follow_up_queries": [str]}

Follow-up queries are re-issued verbatim as search-engine queries, so the
prompt asks for short search terms (2–5 words) rather than questions.

A verdict is never guessed: if the call fails or its output cannot be
parsed, ``ReflectionError`` is raised.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from core.errors import ModelOutputError, ReflectionError
from core.models import ReflectionResult, ReflectionVerdict, Summary, TokenUsage

if TYPE_CHECKING:
    from core.llm import LLMClient

logger = logging.getLogger(__name__)

#: Follow-up queries longer than this are logged but passed through.
MAX_QUERY_WORDS = 5


def evidence_note(summary: Summary) -> str:
    """Describe how much of *summary*'s evidence is crawled vs snippet-only."""
    crawled = summary.crawled_sources
    if crawled:
        return (
            f"[Based on {len(summary.sources)} sources, {len(crawled)} with crawled "
            f"content totaling {summary.crawled_words} words]"
        )
    return f"[Based on {len(summary.sources)} sources, no content successfully crawled]"


def build_reflection_prompt(research_topic: str, summaries: Sequence[Summary]) -> str:
    summaries_text = "\n\n".join(
        f'Summary {i + 1} (Query: "{s.query}"):\n{s.summary}\n{evidence_note(s)}'
        for i, s in enumerate(summaries)
    )
    return f"""You are an expert research assistant analyzing research completeness for the topic: "{research_topic}".

Instructions:
- Evaluate whether the research summaries provide sufficient information to comprehensively answer the research topic
- Weigh the evidence notes: summaries with little or no crawled content rest on search snippets only
- Identify specific knowledge gaps or areas needing deeper exploration
- Generate follow-up queries only if significant gaps exist
- If information is sufficient, mark as complete and avoid unnecessary additional research

Follow-up query requirements:
- Each query is a short web search term of 2-5 words, NOT a question
- Include the subject's name where needed so the query stands on its own
- GOOD: "Jane Doe board member", BAD: "What boards has Jane Doe served on in the past?"
- Prefer fewer, targeted queries over many broad ones

Output:
- "is_sufficient": true or false
- "knowledge_gap": what information is missing (empty string if sufficient)
- "follow_up_queries": list of search terms (empty list if sufficient)

Research Topic: {research_topic}

Research Summaries:
{summaries_text}"""


class ReflectionAnalyzer:
    """Judges evidence sufficiency with a structured model call."""

    def __init__(self, llm: LLMClient, temperature: float = 0.3) -> None:
        self.llm = llm
        self.temperature = temperature

    def analyze(self, research_topic: str, summaries: Sequence[Summary]) -> ReflectionResult:
        """Return the sufficiency verdict for *summaries*.

        Raises:
            ReflectionError: If the model call errors or returns an unparseable
                verdict. ``token_usage`` is set when the call itself completed.
        """
        total_sources = sum(len(s.sources) for s in summaries)
        crawled = sum(len(s.crawled_sources) for s in summaries)
        logger.info(
            "Analyzing sufficiency for topic=%r: %d summaries, %d sources (%d crawled)",
            research_topic, len(summaries), total_sources, crawled,
        )

        prompt = build_reflection_prompt(research_topic, summaries)
        try:
            verdict, usage = self.llm.generate_structured(
                prompt, ReflectionVerdict, temperature=self.temperature,
            )
        except ModelOutputError as exc:
            logger.error("Unparseable reflection for topic=%r: %s", research_topic, exc)
            raise ReflectionError(
                f"Reflection analysis failed: {exc}",
                token_usage=exc.token_usage or TokenUsage(),
            ) from exc
        except Exception as exc:
            logger.error("Reflection analysis failed for topic=%r: %s", research_topic, exc)
            raise ReflectionError(
                f"Reflection analysis failed: {exc}", token_usage=TokenUsage(),
            ) from exc

        queries = [q.strip() for q in verdict.follow_up_queries if q and q.strip()]
        for query in queries:
            if len(query.split()) > MAX_QUERY_WORDS:
                logger.warning("Follow-up query longer than %d words: %r", MAX_QUERY_WORDS, query)

        if verdict.is_sufficient:
            logger.info("Research deemed sufficient for topic=%r", research_topic)
        else:
            logger.info(
                "Knowledge gap for topic=%r: %r; %d follow-up queries %s",
                research_topic, verdict.knowledge_gap, len(queries), queries,
            )

        return ReflectionResult(
            is_sufficient=verdict.is_sufficient,
            knowledge_gap=verdict.knowledge_gap,
            follow_up_queries=queries,
            token_usage=usage,
        )
