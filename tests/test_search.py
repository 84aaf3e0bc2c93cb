"""Tests for core/search.py: Google Custom Search client over a mock transport."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from core.errors import SearchError
from core.search import GoogleSearchClient


def make_settings(max_results: int = 6):
    settings = MagicMock()
    settings.google_search_api_key = "key"
    settings.google_search_engine_id = "cx"
    settings.max_search_results = max_results
    return settings


def make_client(handler, **kwargs) -> GoogleSearchClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return GoogleSearchClient(make_settings(**kwargs), http=http)


def items(n: int) -> dict:
    return {
        "items": [
            {"title": f"Title {i}", "link": f"https://example.com/{i}", "snippet": f"Snippet {i}"}
            for i in range(n)
        ]
    }


class TestGoogleSearchClient:
    def test_maps_items_to_sources(self):
        client = make_client(lambda request: httpx.Response(200, json=items(2)))

        sources = client.search("Jane Doe philanthropy")

        assert [s.link for s in sources] == ["https://example.com/0", "https://example.com/1"]
        assert sources[0].title == "Title 0"
        assert sources[0].snippet == "Snippet 0"

    def test_sends_query_params(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=items(1))

        make_client(handler).search("  Jane Doe  ")

        assert seen["q"] == "Jane Doe"
        assert seen["key"] == "key"
        assert seen["cx"] == "cx"
        assert seen["num"] == "6"

    def test_caps_results(self):
        client = make_client(lambda request: httpx.Response(200, json=items(8)), max_results=3)
        assert len(client.search("q")) == 3

    def test_skips_items_without_link(self):
        payload = {"items": [{"title": "No link"}, {"title": "Has link", "link": "https://a.org"}]}
        client = make_client(lambda request: httpx.Response(200, json=payload))
        assert [s.link for s in client.search("q")] == ["https://a.org"]

    def test_no_items_is_empty(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        assert client.search("q") == []

    def test_http_error_raises_search_error(self):
        client = make_client(lambda request: httpx.Response(429, text="Quota exceeded"))
        with pytest.raises(SearchError, match="429"):
            client.search("q")

    def test_transport_error_raises_search_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SearchError):
            make_client(handler).search("q")

    def test_blank_query_raises(self):
        client = make_client(lambda request: httpx.Response(200, json=items(1)))
        with pytest.raises(ValueError):
            client.search("   ")
