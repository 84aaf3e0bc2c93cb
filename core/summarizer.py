"""Per-query evidence gathering: search → crawl → summarise.

``QuerySummarizer.summarize_query`` turns one search query into one
immutable ``Summary``:

1. **Search**: the search provider returns ranked sources. A failure
   here fails the whole query and propagates to the caller.
2. **Crawl**: the top ``settings.max_crawl_urls`` links are fetched in
   parallel. Crawl failures are kept on the source as
   ``CrawledContent(success=False)``; they never fail the query.
3. **Filter**: when the caller passes a ``PersonIdentity`` and an identifier
   is configured, crawled sources about a different person are dropped.
4. **Summarise**: Claude condenses snippets and crawled text into a
   narrative. If that call fails, a plain-text digest of the top sources is
   used instead so the evidence is not lost.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Optional

from core.errors import ModelOutputError
from core.models import PersonIdentity, Source, Summary, TokenUsage

if TYPE_CHECKING:
    from config.settings import Settings
    from core.crawler import WebCrawler
    from core.identity import PersonIdentifier
    from core.llm import LLMClient
    from core.search import GoogleSearchClient

logger = logging.getLogger(__name__)

NO_RESULTS_SUMMARY = "No search results were found for this query."
NO_RELEVANT_SUMMARY = "No search results about this person were found for this query."


def truncate(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters, marking the cut with ``...``."""
    return text if len(text) <= limit else text[:limit] + "..."


def basic_summary(query: str, sources: list[Source]) -> str:
    """Plain digest of the top three sources, used when the model call fails."""
    parts = []
    for i, source in enumerate(sources[:3]):
        line = f"{i + 1}. {source.title}: {source.snippet}"
        if source.crawled and source.crawled_content.text:
            line += f"\n   Additional content: {truncate(source.crawled_content.text, 200)}"
        parts.append(line)
    return f'Search results for "{query}":\n\n' + "\n\n".join(parts)


def build_summary_prompt(query: str, research_topic: str, sources: list[Source]) -> str:
    blocks = []
    for i, source in enumerate(sources):
        block = f"[{i + 1}] {source.title}\nURL: {source.link}\nSnippet: {source.snippet}"
        crawled = source.crawled_content
        if crawled is not None and crawled.success and crawled.text:
            block += f"\nFull Content ({crawled.word_count} words):\n{crawled.text}"
        elif crawled is not None and crawled.error_message:
            block += f"\nCrawl Error: {crawled.error_message}"
        blocks.append(block + "\n")
    results_text = "\n---\n\n".join(blocks)

    return (
        f'You are conducting research on "{research_topic}" using web search '
        "results and crawled content.\n\n"
        "Instructions:\n"
        f"- Current date: {date.today():%B %d, %Y}\n"
        "- Prioritize information from crawled content over search snippets when available\n"
        "- Only include verifiable information from the provided sources\n"
        "- Focus on details most relevant to the research topic\n\n"
        f"Research Topic: {research_topic}\n"
        f"Search Query: {query}\n\n"
        f"Search Results and Content:\n{results_text}\n"
        "Provide a well-structured summary of the information above that "
        f'addresses the research topic "{research_topic}".'
    )


class QuerySummarizer:
    """Searches, crawls and summarises a single query."""

    def __init__(
        self,
        settings: Settings,
        search: GoogleSearchClient,
        crawler: WebCrawler,
        llm: LLMClient,
        identifier: Optional[PersonIdentifier] = None,
    ) -> None:
        self.settings = settings
        self.search = search
        self.crawler = crawler
        self.llm = llm
        self.identifier = identifier

    def _attach_crawls(self, sources: list[Source]) -> list[Source]:
        to_crawl = sources[: self.settings.max_crawl_urls]
        crawled = self.crawler.crawl_many([s.link for s in to_crawl])
        by_url = {c.url: c for c in crawled}
        return [
            s.model_copy(update={"crawled_content": by_url[s.link]}) if s.link in by_url else s
            for s in sources
        ]

    def _summarise(
        self, query: str, research_topic: str, sources: list[Source],
    ) -> tuple[str, TokenUsage]:
        prompt = build_summary_prompt(query, research_topic, sources)
        try:
            return self.llm.generate_text(prompt, temperature=0.3)
        except ModelOutputError as exc:
            logger.warning("Empty summary for query=%r, using basic digest", query)
            return basic_summary(query, sources), exc.token_usage or TokenUsage()
        except Exception:
            logger.exception("Summary generation failed for query=%r", query)
            return basic_summary(query, sources), TokenUsage()

    def summarize_query(
        self, query: str, research_topic: str, identity: Optional[PersonIdentity] = None,
    ) -> Summary:
        """Produce the ``Summary`` for *query*.

        Raises:
            SearchError: If the search provider fails for the whole query.
        """
        sources = self.search.search(query)
        if not sources:
            return Summary(query=query, summary=NO_RESULTS_SUMMARY)

        sources = self._attach_crawls(sources)

        filtered = 0
        filtering_usage = TokenUsage()
        if identity is not None and self.identifier is not None:
            kept, filtering_usage = self.identifier.filter_sources(identity, sources)
            filtered = len(sources) - len(kept)
            sources = kept
            if not sources:
                logger.info("All sources for query=%r were about someone else", query)
                return Summary(
                    query=query,
                    summary=NO_RELEVANT_SUMMARY,
                    filtered_sources=filtered,
                    filtering_usage=filtering_usage,
                )

        text, usage = self._summarise(query, research_topic, sources)

        logger.info(
            "Summarised query=%r: %d sources, %d crawled, %d filtered, %d tokens",
            query,
            len(sources),
            sum(1 for s in sources if s.crawled),
            filtered,
            usage.total_tokens,
        )
        return Summary(
            query=query,
            summary=text,
            sources=tuple(sources),
            token_usage=usage,
            filtered_sources=filtered,
            filtering_usage=filtering_usage,
        )
