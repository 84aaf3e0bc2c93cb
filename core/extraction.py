"""Structured donor facts from a finished research run.

After synthesis, ``DonorDataExtractor.extract`` reads the answer and the
summaries and fills in a ``DonorAssessment``: inferred age, employer,
estimated income and whether the person looks like a high-potential donor.

Extraction is an enrichment, not part of the answer, so it never fails a
run: on any error a conservative default assessment is returned.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from core.errors import ModelOutputError
from core.models import DonorAssessment, Summary, TokenUsage

if TYPE_CHECKING:
    from core.llm import LLMClient

logger = logging.getLogger(__name__)

FALLBACK_RATIONALE = "Unable to assess due to data extraction error."


def default_assessment() -> DonorAssessment:
    return DonorAssessment(high_potential_donor=False, high_potential_donor_rationale=FALLBACK_RATIONALE)


def build_extraction_prompt(research_topic: str, answer: str, summaries: Sequence[Summary]) -> str:
    blocks = []
    for summary in summaries:
        sources = "\n".join(f"- {s.title}: {s.snippet}" for s in summary.sources)
        blocks.append(f"Query: {summary.query}\nSummary: {summary.summary}\nSources:\n{sources}")
    summaries_text = "\n\n".join(blocks)

    return f"""You are an expert analyst tasked with extracting structured data about a person from research results.

Research Topic: {research_topic}

Research Answer:
{answer}

Research Summaries and Sources:
{summaries_text}

Based on the research above, extract the following structured information:

1. Inferred Age: the person's age, or an estimate from graduation years or career timeline. null if not determinable.
2. Employer: current or most recent employer. null if not found.
3. Estimated Income: a range based on job title, company, location and industry, such as "$50,000-$75,000", "$100,000-$150,000", "Over $200,000", or "Not disclosed" if there is insufficient data.
4. High Potential Donor: true or false, weighing financial capacity, charitable giving history, professional status and network, community involvement and lifestyle indicators.
5. High Potential Donor Rationale: 2-3 sentences explaining the assessment, citing specific evidence from the research.

Be conservative in your assessments and make clear when information is inferred rather than explicitly stated."""


class DonorDataExtractor:
    """Pulls a ``DonorAssessment`` out of a research answer."""

    def __init__(self, llm: LLMClient, temperature: float = 0.1) -> None:
        self.llm = llm
        self.temperature = temperature

    def extract(
        self, research_topic: str, answer: str, summaries: Sequence[Summary],
    ) -> tuple[DonorAssessment, TokenUsage]:
        """Return the assessment and the token usage of the call. Never raises."""
        prompt = build_extraction_prompt(research_topic, answer, summaries)
        try:
            assessment, usage = self.llm.generate_structured(
                prompt, DonorAssessment, temperature=self.temperature,
            )
        except ModelOutputError as exc:
            logger.error("Unparseable donor assessment for topic=%r: %s", research_topic, exc)
            return default_assessment(), exc.token_usage or TokenUsage()
        except Exception as exc:
            logger.error("Structured data extraction failed for topic=%r: %s", research_topic, exc)
            return default_assessment(), TokenUsage()

        logger.info(
            "Structured data extracted: age=%s employer=%r high_potential=%s (%d tokens)",
            assessment.inferred_age, assessment.employer, assessment.high_potential_donor,
            usage.total_tokens,
        )
        return assessment, usage
