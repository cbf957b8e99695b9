"""HTTP retrieval of team manifests."""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx

from depsera.config import load_settings
from depsera.errors import FetchFailure
from depsera.manifest.types import FetchResult
from depsera.utils.logging import redact_url, sanitize_for_log

logger = logging.getLogger(__name__)

USER_AGENT = "Depsera-Manifest-Sync/1.0"


class ManifestFetcher:
    """Fetches manifest JSON with a hard timeout and a body size cap.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        max_bytes: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        settings = load_settings()
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.max_bytes = max_bytes or settings.max_manifest_bytes
        self._transport = transport
        self._headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            **(headers or {}),
        }

    def fetch(self, url: str) -> FetchResult:
        """GET ``url`` and decode its JSON body.

        Raises:
            FetchFailure: on network errors, timeouts, non-2xx responses,
                oversize bodies or invalid JSON.
        """
        try:
            with httpx.Client(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
                headers=self._headers,
            ) as client:
                with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise FetchFailure(
                            f"HTTP {response.status_code}: {response.reason_phrase}", url
                        )
                    self._check_content_length(response, url)
                    body = self._read_limited(response, url)
        except httpx.TimeoutException:
            logger.warning("Manifest fetch timed out: %s", redact_url(url))
            raise FetchFailure(
                f"Manifest fetch timed out ({self.timeout_seconds:g}s)", url
            ) from None
        except httpx.HTTPError as exc:
            logger.warning(
                "Manifest fetch failed for %s: %s",
                redact_url(url),
                sanitize_for_log(str(exc)),
            )
            raise FetchFailure(
                f"Manifest fetch failed: {sanitize_for_log(str(exc))}", url
            ) from exc

        try:
            data = json.loads(body)
        except ValueError:
            raise FetchFailure("Invalid JSON: manifest could not be parsed", url) from None

        return FetchResult(url=url, data=data, size_bytes=len(body))

    def _check_content_length(self, response: httpx.Response, url: str) -> None:
        header = response.headers.get("content-length")
        if not header:
            return
        try:
            size = int(header)
        except ValueError:
            return
        if size > self.max_bytes:
            raise FetchFailure(
                f"Manifest too large: {size} bytes exceeds {self.max_bytes} byte limit",
                url,
            )

    def _read_limited(self, response: httpx.Response, url: str) -> bytes:
        # Content-Length can be absent or wrong; enforce the cap while streaming.
        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_bytes():
            total += len(chunk)
            if total > self.max_bytes:
                raise FetchFailure(
                    f"Manifest too large: body exceeds {self.max_bytes} byte limit", url
                )
            chunks.append(chunk)
        return b"".join(chunks)
