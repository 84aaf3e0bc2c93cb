"""Answer synthesis.

Builds one prompt from every summary in the run and asks Claude for a
cited narrative at low temperature. For each source the full crawled text
is embedded when the crawl succeeded; a failed crawl is kept in the prompt
with its failure reason so the model knows which evidence is missing.

Citations come from ``core.citations.extract_citations`` over the same
summaries.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Sequence

from core.citations import citation_stats, extract_citations
from core.errors import ModelOutputError, SynthesisError
from core.models import Source, Summary, SynthesisResult, TokenUsage

if TYPE_CHECKING:
    from core.llm import LLMClient

logger = logging.getLogger(__name__)


def _source_block(index: int, source: Source) -> str:
    text = f"   Source {index + 1}: {source.title} ({source.link})\n   Snippet: {source.snippet}"
    crawled = source.crawled_content
    if crawled is not None and crawled.success and crawled.text:
        text += f"\n   Full Content ({crawled.word_count} words): {crawled.text}"
    elif crawled is not None and not crawled.success:
        text += f"\n   Note: Content crawling failed - {crawled.error_message or 'unknown error'}"
    return text


def build_synthesis_prompt(research_topic: str, summaries: Sequence[Summary]) -> str:
    sections = []
    for i, summary in enumerate(summaries):
        sources_text = "\n\n".join(_source_block(j, s) for j, s in enumerate(summary.sources))
        sections.append(
            f'Summary {i + 1} - Query: "{summary.query}"\n{summary.summary}\n\n'
            f"Sources:\n{sources_text or '   (none)'}\n"
        )
    summaries_text = "\n---\n\n".join(sections)

    return f"""Generate a high-quality, comprehensive answer based on the provided research summaries and crawled content.

Instructions:
- Current date: {date.today():%B %d, %Y}
- Prioritize information from full crawled content over snippets; it is more complete
- Where a source notes that crawling failed, treat that evidence as missing rather than guessing
- Include specific facts, figures and details from the sources
- Only use information that is actually present in the sources
- Structure the answer logically and reference sources throughout

Research Topic: {research_topic}

Research Summaries and Sources:
{summaries_text}

Provide a well-structured answer that synthesizes all available information. Focus on delivering a thorough response to: "{research_topic}"."""


class AnswerSynthesizer:
    """Produces the final cited answer for a research run."""

    def __init__(self, llm: LLMClient, temperature: float = 0.2, max_tokens: int = 4000) -> None:
        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens

    def synthesize(self, research_topic: str, summaries: Sequence[Summary]) -> SynthesisResult:
        """Synthesize the answer and citations for *summaries*.

        Raises:
            SynthesisError: If the model call fails or returns nothing. The
                underlying exception is chained as ``__cause__``.
        """
        stats = citation_stats(summaries)
        logger.info(
            "Synthesizing answer for topic=%r from %d summaries: %d sources, %d crawled (%d words)",
            research_topic, len(summaries), stats.total_sources, stats.crawled_sources, stats.total_words,
        )

        prompt = build_synthesis_prompt(research_topic, summaries)
        try:
            answer, usage = self.llm.generate_text(
                prompt, temperature=self.temperature, max_tokens=self.max_tokens,
            )
        except ModelOutputError as exc:
            logger.error("Empty synthesis for topic=%r", research_topic)
            raise SynthesisError(
                f"Answer synthesis failed: {exc}", token_usage=exc.token_usage or TokenUsage(),
            ) from exc
        except Exception as exc:
            logger.error("Answer synthesis failed for topic=%r: %s", research_topic, exc)
            raise SynthesisError(
                f"Answer synthesis failed: {exc}", token_usage=TokenUsage(),
            ) from exc

        citations = extract_citations(summaries)
        logger.info(
            "Generated answer for topic=%r: %d chars, %d citations, %d tokens",
            research_topic, len(answer), len(citations), usage.total_tokens,
        )
        return SynthesisResult(answer=answer, citations=citations, token_usage=usage)
