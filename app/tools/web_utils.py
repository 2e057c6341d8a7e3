from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid"}


def clean_content(text: str, max_length: int = 8000) -> str:
    """Collapse whitespace and trim provider snippets to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def normalize_url(url: str) -> str:
    """Canonical form used to de-duplicate sources.

    Lowercases the host, drops a leading ``www.``, removes tracking
    parameters (``utm_*``, click ids), sorts what remains, drops the
    fragment and any trailing slash.
    """
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw.lower()
    if not parsed.netloc:
        return raw.rstrip("/").lower()

    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]

    params = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    query = urlencode(sorted(params))
    path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme.lower(), host, path, "", query, ""))
