"""Person identification and relevance filtering.

Common names return pages about several different people. After the first
search batch, ``PersonIdentifier.identify`` builds a ``PersonIdentity``
from the donor record plus the top few sources. Later queries pass that
identity to ``filter_sources``, which asks the model whether each crawled
page is about the same person and drops the ones that are not.

Filtering is best-effort:

- an identity below ``MIN_IDENTITY_CONFIDENCE`` disables filtering
- sources without crawled text are kept without a check
- a check that errors keeps its source
- a checked source is kept only when judged relevant with confidence
  of at least ``MIN_VERDICT_CONFIDENCE``
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional, Sequence

from core.errors import ModelOutputError
from core.models import DonorProfile, PersonIdentity, RelevanceVerdict, Source, TokenUsage

if TYPE_CHECKING:
    from core.llm import LLMClient

logger = logging.getLogger(__name__)

MIN_IDENTITY_CONFIDENCE = 0.3
MIN_VERDICT_CONFIDENCE = 0.5
#: How many first-iteration sources feed identity extraction.
IDENTITY_SOURCE_COUNT = 3

_IDENTITY_TEXT_CHARS = 1000
_VERIFY_TEXT_CHARS = 2500


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _location(donor: DonorProfile) -> Optional[str]:
    if donor.address:
        return f"{donor.address}, {donor.state}" if donor.state else donor.address
    return donor.state


def build_identity_prompt(donor: DonorProfile, sources: Sequence[Source]) -> str:
    lines = [f"- Full Name: {donor.full_name}"]
    location = _location(donor)
    if location:
        lines.append(f"- Location: {location}")
    if donor.notes:
        lines.append(f"- Additional Notes: {donor.notes}")

    prompt = (
        "Extract key identity information about a specific person based on the provided data. "
        "Your goal is to create a clear identity profile that can be used to verify if future "
        "search results are about the same person.\n\n"
        "DONOR INFORMATION:\n" + "\n".join(lines) + "\n\n"
        "TASK:\n"
        "1. Extract specific identity details from the provided information\n"
        '2. Generate a list of "key identifiers" that uniquely identify this person\n'
        "3. These identifiers should help distinguish this person from others with similar names\n"
        "4. Rate your confidence in the extracted identity information from 0 to 1\n\n"
        "Key identifiers are specific facts such as job title + company, city + profession, "
        "or a particular organization affiliation. Be realistic about your confidence level "
        "based on how much information is available.\n"
    )

    if sources:
        prompt += "\nINITIAL SEARCH RESULTS:"
        for i, source in enumerate(sources):
            prompt += f"\n\nResult {i + 1}: {source.title} ({source.link})\n- Snippet: {source.snippet}"
            if source.crawled and source.crawled_content.text:
                prompt += f"\n- Full Content: {_clip(source.crawled_content.text, _IDENTITY_TEXT_CHARS)}"
    return prompt


def build_verification_prompt(identity: PersonIdentity, source: Source) -> str:
    details = [f"- Full Name: {identity.full_name}"]
    for label, value in (
        ("Probable Age", identity.probable_age),
        ("Location", identity.location),
        ("Profession", identity.profession),
        ("Education", identity.education),
        ("Organizations", identity.organizations),
    ):
        if value:
            details.append(f"- {label}: {value}")
    identifiers = "\n".join(f"- {i}" for i in identity.key_identifiers) or "- (none)"

    prompt = (
        "Determine if the following search result is about the same person whose identity "
        "information is provided below.\n\n"
        "PERSON IDENTITY:\n" + "\n".join(details) + "\n\n"
        f"KEY IDENTIFIERS (unique characteristics of this person):\n{identifiers}\n\n"
        "SEARCH RESULT TO VERIFY:\n"
        f"- Title: {source.title}\n- URL: {source.link}\n- Snippet: {source.snippet}"
    )
    if source.crawled and source.crawled_content.text:
        prompt += f"\n\nFULL PAGE CONTENT:\n{_clip(source.crawled_content.text, _VERIFY_TEXT_CHARS)}"

    prompt += (
        "\n\nEVALUATION CRITERIA:\n"
        "- Be especially cautious with common names where different people appear in results\n"
        "- If the result lacks sufficient information to decide, lean toward NOT RELEVANT\n"
        "- Clear contradictions (different location, age, profession) mean NOT RELEVANT\n"
        "- Multiple matching identifiers and no contradictions mean RELEVANT\n"
        "- Set confidence from 0 to 1 based on how clear the match or mismatch is"
    )
    return prompt


class PersonIdentifier:
    """Builds a person identity and filters sources against it."""

    def __init__(self, llm: LLMClient, max_workers: int = 4) -> None:
        self.llm = llm
        self.max_workers = max(1, max_workers)

    def identify(self, donor: DonorProfile, sources: Sequence[Source] = ()) -> tuple[PersonIdentity, TokenUsage]:
        """Extract the identity of *donor*, using *sources* as extra evidence.

        Never raises: on failure a low-confidence identity is returned, which
        turns filtering off for the rest of the run.
        """
        sources = list(sources)[:IDENTITY_SOURCE_COUNT]
        prompt = build_identity_prompt(donor, sources)
        usage = TokenUsage()
        try:
            identity, usage = self.llm.generate_structured(prompt, PersonIdentity, temperature=0.2)
        except Exception as exc:
            if isinstance(exc, ModelOutputError) and exc.token_usage is not None:
                usage = exc.token_usage
            logger.error("Identity extraction failed for %r: %s", donor.full_name, exc)
            return (
                PersonIdentity(
                    full_name=donor.full_name,
                    location=_location(donor),
                    confidence=0.1,
                    reasoning="Failed to extract detailed identity information",
                ),
                usage,
            )

        identity = identity.model_copy(update={"confidence": min(max(identity.confidence, 0.0), 1.0)})
        logger.info(
            "Extracted identity for %r: %d key identifiers, confidence %.2f (%d tokens)",
            donor.full_name, len(identity.key_identifiers), identity.confidence, usage.total_tokens,
        )
        return identity, usage

    def verify(self, identity: PersonIdentity, source: Source) -> tuple[RelevanceVerdict, TokenUsage]:
        """Judge whether *source* is about *identity*.

        Raises:
            ModelOutputError: If the verdict could not be parsed.
            anthropic.APIError: On API failures.
        """
        prompt = build_verification_prompt(identity, source)
        return self.llm.generate_structured(prompt, RelevanceVerdict, temperature=0.1)

    def _check(self, identity: PersonIdentity, source: Source) -> tuple[bool, TokenUsage]:
        if not source.crawled:
            return True, TokenUsage()
        try:
            verdict, usage = self.verify(identity, source)
        except Exception as exc:
            logger.warning("Relevance check failed for %s, keeping it: %s", source.link, exc)
            usage = exc.token_usage if isinstance(exc, ModelOutputError) and exc.token_usage else TokenUsage()
            return True, usage
        keep = verdict.is_relevant and verdict.confidence >= MIN_VERDICT_CONFIDENCE
        if not keep:
            logger.debug("Dropping %s: %s", source.link, verdict.reasoning)
        return keep, usage

    def filter_sources(
        self, identity: Optional[PersonIdentity], sources: Sequence[Source],
    ) -> tuple[list[Source], TokenUsage]:
        """Return the sources judged to be about *identity* plus the checks' usage."""
        sources = list(sources)
        if identity is None or identity.confidence < MIN_IDENTITY_CONFIDENCE or not sources:
            return sources, TokenUsage()

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(sources))) as pool:
            checks = list(pool.map(lambda s: self._check(identity, s), sources))

        kept = [s for s, (keep, _) in zip(sources, checks) if keep]
        usage = TokenUsage()
        for _, check_usage in checks:
            usage = usage + check_usage

        logger.info(
            "Relevance filtering for %r: %d/%d sources kept (%d tokens)",
            identity.full_name, len(kept), len(sources), usage.total_tokens,
        )
        return kept, usage
