"""Page crawling and main-text extraction.

``WebCrawler.crawl`` always returns a ``CrawledContent``; every failure
(unsupported URL, HTTP error, wrong content type, timeout) is reported as
``success=False`` with an ``error_message`` instead of an exception. The
research loop depends on this: one unreachable page never aborts a run.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from core.models import CrawledContent

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

#: Maximum characters of extracted text kept per page.
MAX_CONTENT_LENGTH = 50_000
MAX_ATTEMPTS = 2

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; DonorResearchBot/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

_SKIP_EXTENSIONS: tuple[str, ...] = (
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".zip", ".rar", ".tar", ".gz",
    ".mp3", ".mp4", ".avi", ".mov",
    ".jpg", ".jpeg", ".png", ".gif", ".svg",
    ".css", ".js", ".json", ".xml",
)
_SKIP_HOST_MARKERS: tuple[str, ...] = (
    "accounts.google.com", "login.", "auth.", "signin.", "signup.",
)

_NOISE_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form"]
_NOISE_CLASS_RE = re.compile(r"\b(?:advertisement|ads?|banner|popup|modal|sidebar|menu|navigation)\b", re.I)
_CONTENT_SELECTORS = [
    "main", "article", '[role="main"]', ".content", ".main-content",
    ".post-content", ".entry-content", ".article-content", "#content", "#main",
]
_WS_RE = re.compile(r"\s+")


def is_crawlable_url(url: str) -> bool:
    """Return True if *url* looks like an HTML page worth fetching."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    if parsed.path.lower().endswith(_SKIP_EXTENSIONS):
        return False
    host = parsed.netloc.lower()
    return not any(marker in host for marker in _SKIP_HOST_MARKERS)


def extract_text(html: str, max_length: int = MAX_CONTENT_LENGTH) -> tuple[str, str]:
    """Extract ``(title, text)`` from an HTML document.

    Boilerplate elements are removed and semantic content containers are
    preferred over the whole ``<body>``. Whitespace is collapsed and the
    text is capped at *max_length* characters (with ``"..."`` appended).
    """
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    elif soup.h1:
        title = soup.h1.get_text(" ", strip=True)

    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    for tag in soup.find_all(class_=_NOISE_CLASS_RE):
        tag.decompose()

    container = None
    for selector in _CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            break
    if container is None:
        container = soup.body or soup

    text = _WS_RE.sub(" ", container.get_text(" ")).strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return title, text


def count_words(text: str) -> int:
    return len(text.split())


class WebCrawler:
    """Fetches pages over HTTP and extracts their readable text."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.Client] = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.settings = settings
        self.retry_delay = retry_delay
        self._http = http

    @property
    def http(self) -> httpx.Client:
        """Lazy-initialise and return the HTTP client."""
        if self._http is None:
            self._http = httpx.Client(
                timeout=self.settings.crawl_timeout,
                follow_redirects=True,
                headers=_HEADERS,
            )
        return self._http

    def _fetch(self, url: str) -> str:
        response = self.http.get(url)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type:
            raise ValueError(f"Invalid content type: {content_type or 'unknown'}")
        return response.text

    def crawl(self, url: str) -> CrawledContent:
        """Fetch *url* and extract its text. Never raises."""
        if not is_crawlable_url(url):
            return CrawledContent(url=url, error_message="Invalid or non-webpage URL")

        last_error = "Unknown error"
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                html = self._fetch(url)
                title, text = extract_text(html)
                words = count_words(text)
                logger.debug("Crawled %s: %d words", url, words)
                return CrawledContent(
                    url=url, title=title, text=text, word_count=words, success=True,
                )
            except httpx.HTTPStatusError as exc:
                last_error = f"HTTP {exc.response.status_code}: {exc.response.reason_phrase}"
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__

            if attempt < MAX_ATTEMPTS:
                logger.debug("Crawl attempt %d failed for %s, retrying", attempt, url)
                time.sleep(self.retry_delay * attempt)

        logger.warning("All crawl attempts failed for %s: %s", url, last_error)
        return CrawledContent(url=url, error_message=last_error)

    def crawl_many(self, urls: list[str]) -> list[CrawledContent]:
        """Crawl *urls* concurrently; results keep the input order."""
        if not urls:
            return []
        with ThreadPoolExecutor(max_workers=min(len(urls), 8)) as pool:
            results = list(pool.map(self.crawl, urls))

        ok = [r for r in results if r.success]
        logger.info(
            "Crawl completed: %d/%d successful, %d words extracted",
            len(ok), len(urls), sum(r.word_count for r in ok),
        )
        return results
