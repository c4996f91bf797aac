"""URL canonicalization and content hashing for deduplication.

Used by the connector runner (document keys), the change monitor (tracked
URLs) and the search endpoint. Both functions are pure.
"""

from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup

_TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref", "source"})
_WHITESPACE_RE = re.compile(r"\s+")


def _is_tracking_param(key: str) -> bool:
    # Case-insensitive: the output is lowercased, so "Ref" must not survive pass one
    key = key.lower()
    return key.startswith("utm_") or key in _TRACKING_PARAMS


def canonicalize(raw_url: str) -> str:
    """Normalize a URL into a deduplication key.

    Steps (order matters):
      1. Force https
      2. Strip a leading ``www.`` from the host
      3. Drop the fragment
      4. Remove tracking query params (``utm_*``, fbclid, gclid, ref, source)
      5. Strip a trailing slash unless the path is root
      6. Lowercase the whole result

    Never raises: input that does not parse as an absolute URL comes back
    trimmed and lowercased.
    """
    stripped = raw_url.strip()
    try:
        parts = urlsplit(stripped)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return stripped.lower()

    if not parts.scheme or not hostname:
        return stripped.lower()

    host = hostname
    while host.startswith("www."):
        host = host[4:]
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None else f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]

    path = parts.path.rstrip("/") or "/"

    url = urlunsplit(("https", netloc, path, urlencode(query_pairs), ""))
    return url.lower()


def normalize_content(text: str) -> str:
    """Reduce page content to its visible text with whitespace collapsed.

    Markup, scripts and styles are removed so that incidental template
    churn does not register as a content change.
    """
    if "<" in text and ">" in text:
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the normalized form of ``text``."""
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()
