from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
import re
from typing import Any

from creatorcore.core.urls import canonical_post_key, validate_post_url

DEFAULT_TITLE = "Untitled"
SLUG_MAX_LENGTH = 120
FALLBACK_SLUG_SUFFIX_LENGTH = 8

TEST_SOURCE_KEY_RE = re.compile(r"^it[a-z0-9]+_source_[ab]$", re.IGNORECASE)
TEST_TITLE_RE = re.compile(r"^(Genre Sort|Hydrated)\b", re.IGNORECASE)
TEST_URL_RE = re.compile(r"^https?://(www\.)?example\.com/", re.IGNORECASE)
API_COST_KEY_RE = re.compile(r"(cost|rate|price|fee|spend)", re.IGNORECASE)
API_COST_NESTED_KEYS = ("amount", "cost", "rate", "price")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True, frozen=True)
class NormalizationContext:
    """Deployment facts that change how raw records are accepted."""

    production: bool = False
    allow_test_fixtures: bool = False


@dataclass(slots=True)
class NormalizedCampaign:
    source_key: str
    campaign_id: str
    title: str
    slug: str
    budget: float | None = None
    api_cost_usd: float | None = None
    currency: str | None = None
    org_id: str | None = None
    platforms: str | None = None
    creator_count: int | None = None
    total_posts: int | None = None
    thumbnail: str | None = None
    created_at: datetime | None = None
    archived: bool = False
    is_test_data: bool = False
    post_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class NormalizedPost:
    source_key: str
    post_id: str
    canonical_key: str
    campaign_id: str | None = None
    username: str | None = None
    platform: str | None = None
    url: str | None = None
    url_valid: bool = False
    url_reason: str = "missing_url"
    views: int = 0
    post_date: datetime | None = None
    status: str | None = None
    created_date: datetime | None = None
    api_cost_usd: float | None = None
    is_test_data: bool = False


def slugify(value: str) -> str:
    return _SLUG_INVALID_RE.sub("-", value.lower()).strip("-")[:SLUG_MAX_LENGTH].strip("-")


def campaign_slug(campaign_id: str, raw_slug: Any, title: str) -> str:
    if isinstance(raw_slug, str) and raw_slug.strip():
        sanitized = slugify(raw_slug)
        if sanitized and sanitized != "untitled":
            return sanitized

    base = slugify(title) or "campaign"
    suffix = _SLUG_INVALID_RE.sub("", campaign_id[-FALLBACK_SLUG_SUFFIX_LENGTH:].lower())
    return f"{base}-{suffix}" if suffix else base


def is_test_fixture(source_key: str, title_or_url: str | None, context: NormalizationContext) -> bool:
    if context.production or not context.allow_test_fixtures:
        return False
    if not TEST_SOURCE_KEY_RE.match(source_key):
        return False
    value = (title_or_url or "").strip()
    if not value:
        return False
    return bool(TEST_TITLE_RE.match(value) or TEST_URL_RE.match(value))


def extract_api_cost_usd(raw: dict[str, Any]) -> float | None:
    """Largest non-negative amount found under any cost-like key."""
    candidates: list[float] = []
    for key, value in raw.items():
        if not API_COST_KEY_RE.search(key) or value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            if math.isfinite(value) and value >= 0:
                candidates.append(float(value))
            continue
        if isinstance(value, str):
            parsed = _as_float(value.replace("$", "").replace(",", ""))
            if parsed is not None and parsed >= 0:
                candidates.append(parsed)
            continue
        if isinstance(value, dict):
            for nested_key in API_COST_NESTED_KEYS:
                parsed = _as_float(value.get(nested_key))
                if parsed is not None and parsed >= 0:
                    candidates.append(parsed)
                    break
    return max(candidates) if candidates else None


def normalize_campaign(
    raw: dict[str, Any],
    source_key: str,
    context: NormalizationContext | None = None,
) -> NormalizedCampaign | None:
    context = context or NormalizationContext()
    campaign_id = _as_text(raw.get("_id"))
    if not campaign_id:
        return None

    title = _as_text(raw.get("title")) or _as_text(raw.get("Campaign Title")) or DEFAULT_TITLE
    display_platforms = raw.get("displayPlatforms")
    platforms = None
    if isinstance(display_platforms, list):
        platforms = " | ".join(str(item) for item in display_platforms if item is not None) or None
    platforms = platforms or _as_raw_text(raw.get("platforms")) or _as_raw_text(raw.get("Platforms"))

    creator_count = _as_int(raw.get("Creator Count"))
    if creator_count is None and isinstance(raw.get("creatorProfiles"), list):
        creator_count = len(raw["creatorProfiles"])
    total_posts = _as_int(raw.get("Total Posts"))
    if total_posts is None and isinstance(raw.get("posts"), list):
        total_posts = len(raw["posts"])

    return NormalizedCampaign(
        source_key=source_key,
        campaign_id=campaign_id,
        title=title,
        slug=campaign_slug(campaign_id, _first_present(raw, "slug", "Slug"), title),
        budget=_as_float(_first_present(raw, "budget", "Budget")),
        api_cost_usd=extract_api_cost_usd(raw),
        currency=_as_text(_first_present(raw, "currency", "Currency"), max_length=6),
        org_id=_as_text(_first_present(raw, "organization", "Org ID"), max_length=40),
        platforms=platforms,
        creator_count=creator_count,
        total_posts=total_posts,
        thumbnail=_normalize_link(_first_present(raw, "thumbnail", "Campaign Thumbnail")),
        created_at=_parse_timestamp(_first_present(raw, "Created Date", "created_at")),
        archived=bool(_first_present(raw, "Archive", "Archived") or False),
        is_test_data=is_test_fixture(source_key, title, context),
        post_ids=extract_post_ids(raw),
    )


def normalize_post(
    raw: dict[str, Any],
    source_key: str,
    context: NormalizationContext | None = None,
) -> NormalizedPost | None:
    context = context or NormalizationContext()
    post_id = _as_text(raw.get("_id"))
    if not post_id:
        return None

    views = _as_int(raw.get("latestViews/Engagement"))
    if views is None:
        views = _as_int(raw.get("Views"))
    url = _normalize_link(_first_present(raw, "postUrl", "Post URL"))
    username = _as_text(raw.get("username")) or _as_text(raw.get("Username"))
    platform = _as_raw_text(raw.get("platform")) or _as_raw_text(raw.get("Platform"))
    post_date = _parse_timestamp(_first_present(raw, "postDate", "Post Date"))
    validity = validate_post_url(url)

    if context.production and validity.reason == "disallowed_domain":
        return None

    return NormalizedPost(
        source_key=source_key,
        post_id=post_id,
        canonical_key=canonical_post_key(
            url=url,
            platform=platform,
            username=username,
            post_date=post_date.isoformat() if post_date else None,
            post_id=post_id,
            source_key=source_key,
        ),
        campaign_id=_as_raw_text(raw.get("campaign")) or _as_raw_text(raw.get("Campaign")),
        username=username,
        platform=platform,
        url=url,
        url_valid=validity.valid,
        url_reason=validity.reason,
        views=max(0, views or 0),
        post_date=post_date,
        status=_as_raw_text(raw.get("status")) or _as_raw_text(raw.get("Post Status")),
        created_date=_parse_timestamp(raw.get("Created Date")),
        api_cost_usd=extract_api_cost_usd(raw),
        is_test_data=is_test_fixture(source_key, url, context),
    )


def extract_post_ids(raw: dict[str, Any], limit: int | None = None) -> list[str]:
    posts = raw.get("posts")
    if not isinstance(posts, list):
        return []
    ids = [item.strip() for item in posts if isinstance(item, str) and item.strip()]
    if limit is not None:
        return ids[: max(0, limit)]
    return ids


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: Any, *, max_length: int | None = None) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        return stripped[:max_length] if max_length else stripped
    return None


def _as_raw_text(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _as_int(value: Any) -> int | None:
    parsed = _as_float(value)
    if parsed is None:
        return None
    return int(round(parsed))


def _normalize_link(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    if value.startswith("//"):
        return f"https:{value}"
    return value


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
