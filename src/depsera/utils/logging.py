"""Log-safe rendering of manifest-sourced values.

Sync, review and worker logs interpolate manifest keys, team ids, manifest
URLs and the error text of failed fetches. All of those come from a team's
manifest document or from the remote host serving it, so they pass through
``sanitize_for_log`` before reaching a log line. Manifest URLs additionally
go through ``redact_url``: private manifests are often fetched with a token
in the userinfo or query string.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit, urlunsplit

DEFAULT_MAX_LENGTH = 500


def sanitize_for_log(value: Any, max_length: int = DEFAULT_MAX_LENGTH) -> Any:
    """Flatten a manifest-sourced value onto a single printable line.

    Line breaks become spaces, other control characters are dropped and text
    longer than ``max_length`` is cut with a ``...[truncated]`` marker. A
    parsed manifest fragment (dict, list, tuple or set) is cleaned item by
    item; ``None`` renders as an empty string.
    """

    def clean(text: str) -> str:
        flattened = text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")
        flattened = "".join(ch for ch in flattened if ch >= " " and ch != "\x7f")
        if len(flattened) > max_length:
            return flattened[:max_length] + "...[truncated]"
        return flattened

    if value is None:
        return ""
    if isinstance(value, str):
        return clean(value)
    if isinstance(value, dict):
        return {clean(str(k)): sanitize_for_log(v, max_length) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(item, max_length) for item in value]
    return clean(str(value))


def redact_url(url: Any) -> str:
    """A manifest URL fit for logs: no credentials, no query, one line."""
    text = sanitize_for_log(url)
    try:
        parts = urlsplit(text)
    except ValueError:
        return text
    if not parts.netloc:
        return text
    host = parts.netloc.rpartition("@")[2]
    if "@" in parts.netloc:
        host = f"***@{host}"
    query = "***" if parts.query else ""
    return urlunsplit((parts.scheme, host, parts.path, query, ""))
