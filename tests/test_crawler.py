"""Tests for core/crawler.py: URL filtering, text extraction and crawl failures."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from core.crawler import WebCrawler, extract_text, is_crawlable_url

HTML = """
<html>
  <head><title>Jane Doe Foundation</title><script>var x = 1;</script></head>
  <body>
    <nav>Home | About</nav>
    <div class="sidebar">Sponsored links</div>
    <main>
      <h1>About Jane</h1>
      <p>Jane Doe has supported   literacy programs for a decade.</p>
    </main>
    <footer>Copyright</footer>
  </body>
</html>
"""


def make_crawler(handler) -> WebCrawler:
    settings = MagicMock()
    settings.crawl_timeout = 5.0
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return WebCrawler(settings, http=http, retry_delay=0)


def html_response(request, body: str = HTML) -> httpx.Response:
    return httpx.Response(200, text=body, headers={"content-type": "text/html; charset=utf-8"})


# ── URL filtering ──────────────────────────────────────────────────────────────


class TestIsCrawlableUrl:
    @pytest.mark.parametrize("url", [
        "https://janedoe.org/about",
        "http://news.example.com/2024/jane-doe-gala",
    ])
    def test_accepts_pages(self, url):
        assert is_crawlable_url(url)

    @pytest.mark.parametrize("url", [
        "ftp://files.example.com/report",
        "https://example.com/annual-report.pdf",
        "https://example.com/photo.JPG",
        "https://accounts.google.com/signin",
        "https://login.example.com/",
        "not a url",
    ])
    def test_rejects_non_pages(self, url):
        assert not is_crawlable_url(url)


# ── Text extraction ────────────────────────────────────────────────────────────


class TestExtractText:
    def test_prefers_main_and_strips_noise(self):
        title, text = extract_text(HTML)
        assert title == "Jane Doe Foundation"
        assert "Jane Doe has supported literacy programs for a decade." in text
        assert "var x" not in text
        assert "Home | About" not in text
        assert "Copyright" not in text

    def test_caps_length(self):
        _, text = extract_text(f"<html><body><p>{'word ' * 100}</p></body></html>", max_length=20)
        assert len(text) == 23
        assert text.endswith("...")

    def test_title_falls_back_to_h1(self):
        title, _ = extract_text("<html><body><h1>Heading</h1><p>x</p></body></html>")
        assert title == "Heading"


# ── Crawling ───────────────────────────────────────────────────────────────────


class TestWebCrawler:
    def test_successful_crawl(self):
        result = make_crawler(html_response).crawl("https://janedoe.org")
        assert result.success
        assert result.title == "Jane Doe Foundation"
        assert result.word_count == len(result.text.split())
        assert result.error_message is None

    def test_invalid_url_is_not_fetched(self):
        handler = MagicMock()
        result = make_crawler(handler).crawl("https://example.com/file.pdf")
        assert not result.success
        assert result.error_message == "Invalid or non-webpage URL"
        handler.assert_not_called()

    def test_http_error_reported_after_retry(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(503)

        result = make_crawler(handler).crawl("https://janedoe.org")

        assert not result.success
        assert result.error_message == "HTTP 503: Service Unavailable"
        assert len(calls) == 2

    def test_non_html_content_type(self):
        def handler(request):
            return httpx.Response(200, json={"a": 1})

        result = make_crawler(handler).crawl("https://janedoe.org/api")
        assert not result.success
        assert result.error_message.startswith("Invalid content type")

    def test_transport_error_never_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = make_crawler(handler).crawl("https://janedoe.org")
        assert not result.success
        assert "timed out" in result.error_message

    def test_retry_recovers(self):
        responses = [httpx.Response(500), None]

        def handler(request):
            first = responses.pop(0)
            return first if first is not None else html_response(request)

        assert make_crawler(handler).crawl("https://janedoe.org").success

    def test_crawl_many_keeps_order(self):
        def handler(request):
            if request.url.path == "/broken":
                return httpx.Response(404)
            return html_response(request)

        urls = ["https://a.org/ok", "https://a.org/broken", "https://b.org/ok"]
        results = make_crawler(handler).crawl_many(urls)

        assert [r.url for r in results] == urls
        assert [r.success for r in results] == [True, False, True]
