from __future__ import annotations

import httpx
import pytest

from depsera.errors import FetchFailure
from depsera.manifest.fetcher import USER_AGENT, ManifestFetcher

URL = "https://manifests.example.com/team.json"


def _fetcher(handler, **kwargs) -> ManifestFetcher:
    kwargs.setdefault("timeout_seconds", 10)
    return ManifestFetcher(transport=httpx.MockTransport(handler), **kwargs)


class TestManifestFetcher:
    def test_returns_parsed_json(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json={"version": 1, "services": []})

        result = _fetcher(handler).fetch(URL)

        assert result.url == URL
        assert result.data == {"version": 1, "services": []}
        assert result.size_bytes > 0
        assert seen["headers"]["accept"] == "application/json"
        assert seen["headers"]["user-agent"] == USER_AGENT

    def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old.json":
                return httpx.Response(301, headers={"Location": URL})
            return httpx.Response(200, json={"version": 1, "services": []})

        result = _fetcher(handler).fetch("https://manifests.example.com/old.json")
        assert result.data["version"] == 1

    def test_non_2xx_is_failure(self):
        fetcher = _fetcher(lambda request: httpx.Response(404))
        with pytest.raises(FetchFailure, match="HTTP 404: Not Found") as exc_info:
            fetcher.fetch(URL)
        assert exc_info.value.url == URL

    def test_server_error_is_failure(self):
        fetcher = _fetcher(lambda request: httpx.Response(503))
        with pytest.raises(FetchFailure, match="HTTP 503"):
            fetcher.fetch(URL)

    def test_content_length_over_limit(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, content=b"x" * 64), max_bytes=32)
        with pytest.raises(FetchFailure) as exc_info:
            fetcher.fetch(URL)
        assert str(exc_info.value) == "Manifest too large: 64 bytes exceeds 32 byte limit"

    def test_streamed_body_over_limit(self):
        def handler(request):
            return httpx.Response(200, content=iter([b'{"version": 1,', b' "services": []}']))

        with pytest.raises(FetchFailure) as exc_info:
            _fetcher(handler, max_bytes=20).fetch(URL)
        assert str(exc_info.value) == "Manifest too large: body exceeds 20 byte limit"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(FetchFailure) as exc_info:
            _fetcher(handler).fetch(URL)
        assert str(exc_info.value) == "Manifest fetch timed out (10s)"

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FetchFailure, match="Manifest fetch failed: connection refused"):
            _fetcher(handler).fetch(URL)

    def test_invalid_json(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(FetchFailure, match="Invalid JSON"):
            fetcher.fetch(URL)

    def test_defaults_come_from_settings(self, monkeypatch):
        monkeypatch.setenv("MANIFEST_FETCH_TIMEOUT_SECONDS", "3")
        monkeypatch.setenv("MANIFEST_MAX_BYTES", "2048")

        fetcher = ManifestFetcher()

        assert fetcher.timeout_seconds == 3
        assert fetcher.max_bytes == 2048
