"""Web search provider.

Responsibilities:
- Issue a query against the Google Custom Search JSON API
- Normalise the response items into ``Source`` objects
- Fail loudly (``SearchError``) when the whole query fails, so the caller
  can decide how to degrade

A query that succeeds with zero hits is not a failure; it returns ``[]``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import httpx

from core.errors import SearchError
from core.models import Source

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_API_URL = "https://www.googleapis.com/customsearch/v1"
#: The Custom Search API refuses ``num`` above 10.
_MAX_NUM = 10


class GoogleSearchClient:
    """Searches the web with Google Custom Search.

    The HTTP client is lazy-initialised; tests pass one built on
    ``httpx.MockTransport``.
    """

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None) -> None:
        """Initialise the search client.

        Args:
            settings: Application configuration (API key, engine id, result cap).
            http: Optional pre-built ``httpx.Client``.
        """
        self.settings = settings
        self._http = http

    @property
    def http(self) -> httpx.Client:
        """Lazy-initialise and return the HTTP client."""
        if self._http is None:
            self._http = httpx.Client(timeout=30.0)
        return self._http

    def search(self, query: str) -> list[Source]:
        """Run one search and return its results as sources.

        Args:
            query: Literal search-engine query string.

        Returns:
            Up to ``settings.max_search_results`` sources, in rank order.

        Raises:
            ValueError: If the query is blank.
            SearchError: On transport errors, non-2xx responses or a
                malformed payload.
        """
        query = query.strip()
        if not query:
            raise ValueError("Search query must not be empty.")

        params = {
            "key": self.settings.google_search_api_key,
            "cx": self.settings.google_search_engine_id,
            "q": query,
            "num": str(min(self.settings.max_search_results, _MAX_NUM)),
        }

        logger.debug("Executing Google search for query=%r", query)
        try:
            response = self.http.get(GOOGLE_SEARCH_API_URL, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SearchError(
                f"Google Search API error: {exc.response.status_code} - {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SearchError(f"Google search failed for {query!r}: {exc}") from exc

        items = payload.get("items") or []
        if not items:
            logger.warning("No search results found for query=%r", query)
            return []

        sources = [
            Source(
                title=item.get("title", "") or "",
                link=item.get("link", "") or "",
                snippet=item.get("snippet", "") or "",
            )
            for item in items
            if item.get("link")
        ]
        logger.info("Search complete for query=%r: %d sources", query, len(sources))
        return sources[: self.settings.max_search_results]
