from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from creatorcore.services.normalize import DEFAULT_TITLE

QUALITY_MISSING_POSTS = "missing_posts"
QUALITY_PLACEHOLDER_LINKS_ONLY = "placeholder_links_only"
QUALITY_MISSING_CORE_METADATA = "missing_core_metadata"
QUALITY_READY = "ready"
PENDING_QUALITY_STATUSES = (
    QUALITY_MISSING_POSTS,
    QUALITY_PLACEHOLDER_LINKS_ONLY,
    QUALITY_MISSING_CORE_METADATA,
)


@dataclass(slots=True, frozen=True)
class QualityWindows:
    """Policy windows shared by rollups and the pending sweep."""

    metadata_grace: timedelta = timedelta(minutes=30)
    pending_intake: timedelta = timedelta(days=14)
    review_window: timedelta = timedelta(days=7)


def derive_quality_status(
    *,
    actual_posts: int,
    valid_url_posts: int,
    title: str | None,
    platforms: str | None,
    first_seen_at: datetime,
    now: datetime,
    metadata_grace: timedelta,
) -> str:
    if actual_posts <= 0:
        return QUALITY_MISSING_POSTS
    if valid_url_posts <= 0:
        return QUALITY_PLACEHOLDER_LINKS_ONLY
    title_is_default = ((title or "").strip() or DEFAULT_TITLE) == DEFAULT_TITLE
    platforms_missing = not (platforms or "").strip()
    # Freshly observed campaigns get one post-sync pass before being flagged.
    if (title_is_default or platforms_missing) and first_seen_at <= now - metadata_grace:
        return QUALITY_MISSING_CORE_METADATA
    return QUALITY_READY


def is_pending(
    *,
    quality_status: str | None,
    first_seen_at: datetime,
    now: datetime,
    windows: QualityWindows,
    horizon: timedelta | None = None,
) -> bool:
    status = quality_status or QUALITY_MISSING_POSTS
    if status not in PENDING_QUALITY_STATUSES:
        return False
    window = horizon if horizon is not None else windows.pending_intake
    return now - window <= first_seen_at <= now - windows.metadata_grace


def intake_tier(first_seen_at: datetime, now: datetime) -> int:
    if first_seen_at >= now - timedelta(hours=24):
        return 0
    if first_seen_at >= now - timedelta(days=7):
        return 1
    return 2


def needs_review(
    *,
    first_seen_at: datetime,
    reviewed_at: datetime | None,
    now: datetime,
    review_window: timedelta,
) -> bool:
    if first_seen_at < now - review_window:
        return False
    return reviewed_at is None or reviewed_at < first_seen_at
