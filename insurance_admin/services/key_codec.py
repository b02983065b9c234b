"""Storage key codec.

Stored document references come in several historical shapes: bare keys,
virtual-hosted S3 URLs, path-style URLs (AWS or MinIO) and previously signed
URLs carrying ``X-Amz-*`` query parameters. Everything here is pure.
"""

from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit

# <bucket>.s3.amazonaws.com, <bucket>.s3.<region>.amazonaws.com, <bucket>.s3-<region>.amazonaws.com
_VIRTUAL_HOSTED = re.compile(r"^(?P<bucket>[^/]+?)\.s3(?:[.-][a-z0-9-]+)?\.amazonaws\.com$", re.IGNORECASE)
# s3.amazonaws.com, s3.<region>.amazonaws.com, s3-<region>.amazonaws.com
_PATH_STYLE_HOST = re.compile(r"^s3(?:[.-][a-z0-9-]+)?\.amazonaws\.com$", re.IGNORECASE)
_SIGNATURE_PARAMS = ("x-amz-algorithm=", "x-amz-signature=", "x-amz-credential=")


def is_signed_url(reference: str | None) -> bool:
    """Return True when ``reference`` carries presigned query parameters."""
    if not reference or "?" not in reference:
        return False
    query = reference.split("?", 1)[1].lower()
    return any(param in query for param in _SIGNATURE_PARAMS)


def to_key(reference: str | None, *, bucket: str | None = None) -> str | None:
    """Derive the canonical storage key from a stored reference.

    Returns ``None`` for empty input so callers can treat it as nothing to do.
    ``bucket`` lets path-style URLs on custom endpoints (MinIO) be recognised.
    """
    if reference is None:
        return None
    reference = reference.strip()
    if not reference:
        return None

    without_query = reference.split("#", 1)[0].split("?", 1)[0]
    if "://" not in without_query:
        key = without_query.lstrip("/")
        return key or None

    parts = urlsplit(without_query)
    host = (parts.hostname or "").lower()
    path = parts.path.lstrip("/")
    if not path:
        return None

    if _VIRTUAL_HOSTED.match(host):
        return unquote(path)

    segments = path.split("/", 1)
    if len(segments) == 2 and segments[1]:
        first, rest = segments
        if _PATH_STYLE_HOST.match(host) or (bucket and unquote(first) == bucket):
            return unquote(rest)

    last_segment = path.rsplit("/", 1)[-1]
    return unquote(last_segment) or None


def resolve_keys(references: list[str | None], *, bucket: str | None = None) -> list[str]:
    """Map references to keys, dropping empties and duplicates, order kept."""
    keys: list[str] = []
    for reference in references:
        key = to_key(reference, bucket=bucket)
        if key and key not in keys:
            keys.append(key)
    return keys
