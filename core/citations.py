"""Citation extraction.

Turns the sources behind a run's summaries into display-ready citations:

- One citation per distinct URL; the first occurrence in summary order wins
- Crawled text replaces the search snippet when it is strictly longer,
  capped at ``MAX_SNIPPET_LENGTH`` characters plus ``"..."``
- ``word_count`` comes from successful crawls only, never from snippets

Everything here is a pure function of its input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from core.models import Citation, Source, Summary

logger = logging.getLogger(__name__)

#: Display cap for a citation snippet taken from crawled text.
MAX_SNIPPET_LENGTH = 300


@dataclass(frozen=True)
class CitationStats:
    """Evidence totals computed over the full, non-deduplicated sources."""

    total_sources: int
    crawled_sources: int
    total_words: int


def citation_stats(summaries: Iterable[Summary]) -> CitationStats:
    total = crawled = words = 0
    for summary in summaries:
        for source in summary.sources:
            total += 1
            if source.crawled:
                crawled += 1
                words += source.crawled_words
    return CitationStats(total_sources=total, crawled_sources=crawled, total_words=words)


def build_citation(source: Source, query: str, max_snippet_length: int = MAX_SNIPPET_LENGTH) -> Citation:
    """Build the citation for one source found by *query*."""
    snippet = source.snippet
    word_count = None

    if source.crawled:
        word_count = source.crawled_content.word_count
        text = source.crawled_content.text
        if text and len(text) > len(snippet):
            snippet = text if len(text) <= max_snippet_length else text[:max_snippet_length] + "..."

    return Citation(
        url=source.link,
        title=source.title,
        snippet=snippet,
        relevance=f"Related to query: {query}",
        word_count=word_count,
    )


def extract_citations(
    summaries: Iterable[Summary],
    max_snippet_length: int = MAX_SNIPPET_LENGTH,
) -> list[Citation]:
    """Extract deduplicated citations from *summaries*.

    Args:
        summaries: Summaries in the order they were added to the run.
        max_snippet_length: Cap applied to crawled-text snippets.

    Returns:
        Citations in first-seen order, unique by URL.

    Examples:
        >>> [c.url for c in extract_citations([s1, s2])]  # s2 repeats a link
        ['https://a.org', 'https://b.org']
    """
    summaries = list(summaries)
    seen: set[str] = set()
    citations: list[Citation] = []

    for summary in summaries:
        for source in summary.sources:
            if source.link in seen:
                continue
            seen.add(source.link)
            citations.append(build_citation(source, summary.query, max_snippet_length))

    stats = citation_stats(summaries)
    logger.debug(
        "Extracted %d unique citations from %d sources (%d crawled, %d words)",
        len(citations), stats.total_sources, stats.crawled_sources, stats.total_words,
    )
    return citations
