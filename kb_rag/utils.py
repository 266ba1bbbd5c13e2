"""Small helpers shared by retrieval and health checks.

This module provides:
- parse_host: host of a source URL, normalized for allow-list comparison
- is_allowed_url: allow-list check for evidence source URLs
- chunk_id_from_match: chunk row id carried by a vector-store match
- elapsed_ms: millisecond timer helper
"""
import re
import time
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlsplit

_VECTOR_ID = re.compile(r"^entry_\d+_chunk_(\d+)$")


def parse_host(url: Optional[str]) -> Optional[str]:
    """Extract the lower-cased host of a URL without a leading "www.".

    Args:
        url: Absolute URL, or a bare host such as "example.com/path".

    Returns:
        Optional[str]: Host name, or None if none can be parsed.
    """
    if not url:
        return None
    url = url.strip()
    if "://" not in url:
        url = f"//{url}"
    host = (urlsplit(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


def is_allowed_url(url: Optional[str], allowed_hosts: Iterable[str]) -> bool:
    """Check a source URL against the allowed host list.

    An empty allow-list permits everything; otherwise the URL's host must be listed
    (entries without a URL are rejected).
    """
    allowed = set(allowed_hosts)
    if not allowed:
        return True
    host = parse_host(url)
    return host is not None and host in allowed


def chunk_id_from_match(match_id: str, metadata: Dict[str, Any]) -> Optional[int]:
    """Chunk id from match metadata, falling back to the entry_<e>_chunk_<c> id form."""
    raw = metadata.get("chunk_id")
    if raw is not None:
        try:
            # Pinecone returns numeric metadata as floats
            return int(float(raw))
        except (TypeError, ValueError):
            pass
    m = _VECTOR_ID.match(match_id or "")
    return int(m.group(1)) if m else None


def elapsed_ms(since: float) -> int:
    """Milliseconds elapsed since a time.monotonic() reading."""
    return int((time.monotonic() - since) * 1000)
