from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re
from urllib.parse import urlparse

URL_REASONS = {"valid", "missing_url", "invalid_url", "disallowed_domain", "unsupported_domain"}

DISALLOWED_HOST_RE = re.compile(r"(^|\.)example\.(com|org|net)$")
ALLOWED_HOSTS = (
    "tiktok.com",
    "instagram.com",
    "youtube.com",
    "youtu.be",
    "twitter.com",
    "x.com",
    "facebook.com",
    "fb.watch",
    "soundcloud.com",
    "spotify.com",
)


@dataclass(slots=True, frozen=True)
class UrlValidity:
    valid: bool
    reason: str


def validate_post_url(raw_url: str | None) -> UrlValidity:
    """Classify a post URL against the closed host allow and block lists."""
    if raw_url is None or not raw_url.strip():
        return UrlValidity(valid=False, reason="missing_url")

    host = _parse_http_host(raw_url)
    if host is None:
        return UrlValidity(valid=False, reason="invalid_url")
    if DISALLOWED_HOST_RE.search(host):
        return UrlValidity(valid=False, reason="disallowed_domain")
    if any(host == allowed or host.endswith(f".{allowed}") for allowed in ALLOWED_HOSTS):
        return UrlValidity(valid=True, reason="valid")
    return UrlValidity(valid=False, reason="unsupported_domain")


def normalize_canonical_url(raw_url: str) -> str:
    """Lowercased scheme and host plus the trimmed path; query and fragment dropped."""
    stripped = raw_url.strip()
    try:
        parsed = urlparse(stripped)
        host = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError:
        return stripped.lower().split("#", 1)[0].split("?", 1)[0]
    if not parsed.scheme or not host:
        return stripped.lower().split("#", 1)[0].split("?", 1)[0]

    netloc = host if port is None else f"{host}:{port}"
    path = parsed.path.rstrip("/") or "/"
    return f"{parsed.scheme.lower()}://{netloc}{path}"


def canonical_post_key(
    *,
    url: str | None,
    platform: str | None,
    username: str | None,
    post_date: str | None,
    post_id: str,
    source_key: str,
) -> str:
    if url and url.strip():
        return f"url:{_sha1(normalize_canonical_url(url))}"

    # Same content reposted without a stable date still yields distinct keys.
    parts = [
        _lower_trim(platform),
        _lower_trim(username),
        (post_date or "").strip(),
        post_id.strip(),
        _lower_trim(source_key),
    ]
    return f"fallback:{_sha1('|'.join(parts))}"


def _parse_http_host(raw_url: str) -> str | None:
    try:
        parsed = urlparse(raw_url.strip())
        host = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not host:
        return None
    return host.lower()


def _lower_trim(value: str | None) -> str:
    return (value or "").strip().lower()


def _sha1(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()
