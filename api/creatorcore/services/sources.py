from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from creatorcore.core.config import DEFAULT_CREATORCORE_BASE_URL

logger = logging.getLogger(__name__)

LEGACY_SOURCE_KEY = "legacy"
SOURCE_KEY_MAX_LENGTH = 64
_SOURCE_KEY_INVALID_RE = re.compile(r"[^a-z0-9_-]+")


@dataclass(slots=True, frozen=True)
class AgencySource:
    key: str
    name: str
    base_url: str
    active: bool = True


def normalize_source_key(value: str) -> str:
    lowered = value.strip().lower()
    collapsed = _SOURCE_KEY_INVALID_RE.sub("-", lowered).strip("-")
    return collapsed[:SOURCE_KEY_MAX_LENGTH]


def source_name_from_key(key: str) -> str:
    parts = [part for part in re.split(r"[-_]+", key) if part]
    if not parts:
        return "Legacy"
    return " ".join(part[:1].upper() + part[1:] for part in parts)


def normalize_base_url(value: Any, *, default: str = DEFAULT_CREATORCORE_BASE_URL) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip().rstrip("/")
    return default.strip().rstrip("/")


def default_source(base_url: str = DEFAULT_CREATORCORE_BASE_URL) -> AgencySource:
    return AgencySource(key=LEGACY_SOURCE_KEY, name="Legacy", base_url=normalize_base_url(base_url))


def parse_agency_sources(raw: str | None, *, default_base_url: str = DEFAULT_CREATORCORE_BASE_URL) -> list[AgencySource]:
    """Parse the configured source list; fall back to the single legacy source."""
    if not raw or not raw.strip():
        return [default_source(default_base_url)]
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("agency sources config is not valid JSON; using legacy source")
        return [default_source(default_base_url)]
    if not isinstance(decoded, list):
        return [default_source(default_base_url)]

    sources: list[AgencySource] = []
    seen: set[str] = set()
    for entry in decoded:
        source = _to_source(entry, default_base_url=default_base_url)
        if source is None or source.key in seen:
            continue
        seen.add(source.key)
        sources.append(source)
    return sources or [default_source(default_base_url)]


def _to_source(entry: Any, *, default_base_url: str) -> AgencySource | None:
    if not isinstance(entry, dict):
        return None
    raw_key = entry.get("key")
    if not isinstance(raw_key, str):
        return None
    key = normalize_source_key(raw_key)
    if not key:
        return None
    raw_name = entry.get("name")
    name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else source_name_from_key(key)
    base_url = normalize_base_url(entry.get("baseUrl", entry.get("base_url")), default=default_base_url)
    return AgencySource(key=key, name=name, base_url=base_url)
