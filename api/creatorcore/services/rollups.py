from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from creatorcore.core.access import org_bucket
from creatorcore.services.quality import (
    QualityWindows,
    derive_quality_status,
    is_pending,
    needs_review,
)

TOP_N = 10
STAT_COUNTER_FIELDS = (
    "total_campaigns",
    "active_campaigns",
    "total_creators",
    "total_posts",
    "total_views",
    "verified_views",
    "total_budget",
    "genre_count",
    "new_campaigns_24h",
    "new_campaigns_7d",
    "new_creators_24h",
    "new_creators_7d",
    "pending_campaigns_total",
    "pending_campaigns_24h",
    "campaigns_needing_review",
    "creators_needing_review",
)


def empty_stats() -> dict[str, Any]:
    stats: dict[str, Any] = {field: 0 for field in STAT_COUNTER_FIELDS}
    stats["top_genres"] = []
    stats["top_platforms"] = []
    stats["computed_at"] = None
    return stats


def combine_stats(rows: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Sum per-organization snapshots into one view and re-rank the top lists."""
    combined = empty_stats()
    genres: dict[str, dict[str, Any]] = {}
    platforms: dict[str, dict[str, Any]] = {}
    for row in rows:
        for field in STAT_COUNTER_FIELDS:
            if field == "genre_count":
                combined[field] = max(combined[field], _as_number(row.get(field)))
            else:
                combined[field] += _as_number(row.get(field))
        for entry in row.get("top_genres") or []:
            bucket = genres.setdefault(entry["genre"], {"genre": entry["genre"], "campaign_count": 0, "total_budget": 0})
            bucket["campaign_count"] += _as_number(entry.get("campaign_count"))
            bucket["total_budget"] += _as_number(entry.get("total_budget"))
        for entry in row.get("top_platforms") or []:
            bucket = platforms.setdefault(
                entry["platform"],
                {"platform": entry["platform"], "post_count": 0, "total_views": 0},
            )
            bucket["post_count"] += _as_number(entry.get("post_count"))
            bucket["total_views"] += _as_number(entry.get("total_views"))
        computed_at = row.get("computed_at")
        if computed_at is not None and (combined["computed_at"] is None or computed_at > combined["computed_at"]):
            combined["computed_at"] = computed_at

    # Distinct genres cannot be summed across organizations; the top lists are truncated.
    combined["genre_count"] = max(combined["genre_count"], len(genres))
    combined["top_genres"] = sorted(genres.values(), key=lambda item: (-item["campaign_count"], item["genre"]))[:TOP_N]
    combined["top_platforms"] = sorted(
        platforms.values(), key=lambda item: (-item["total_views"], item["platform"])
    )[:TOP_N]
    return combined


def compute_campaign_metrics(
    campaign: dict[str, Any],
    posts: Iterable[dict[str, Any]],
    *,
    now: datetime,
    windows: QualityWindows,
) -> dict[str, Any]:
    live_posts = [post for post in posts if not post.get("is_test_data")]
    creators = {
        post["username"].strip().lower()
        for post in live_posts
        if isinstance(post.get("username"), str) and post["username"].strip()
    }
    valid_posts = [post for post in live_posts if post.get("post_url_valid")]
    actual_posts = len(live_posts)
    valid_url_posts = len(valid_posts)
    return {
        "campaign_pk": campaign["id"],
        "actual_posts": actual_posts,
        "actual_creators": len(creators),
        "total_views": sum(int(post.get("views") or 0) for post in live_posts),
        "verified_views": sum(int(post.get("views") or 0) for post in valid_posts),
        "valid_url_posts": valid_url_posts,
        "invalid_url_posts": actual_posts - valid_url_posts,
        "quality_status": derive_quality_status(
            actual_posts=actual_posts,
            valid_url_posts=valid_url_posts,
            title=campaign.get("title"),
            platforms=campaign.get("platforms"),
            first_seen_at=campaign_first_seen(campaign, now),
            now=now,
            metadata_grace=windows.metadata_grace,
        ),
        "updated_at": now,
    }


def compute_org_stats(
    *,
    campaigns: Iterable[dict[str, Any]],
    metrics: dict[int, dict[str, Any]],
    posts: Iterable[dict[str, Any]],
    campaign_reviews: dict[int, dict[str, Any]],
    creator_reviews: dict[str, dict[str, Any]],
    now: datetime,
    windows: QualityWindows,
) -> dict[str, dict[str, Any]]:
    live_campaigns = {row["id"]: row for row in campaigns if not row.get("is_test_data")}
    stats: dict[str, dict[str, Any]] = {}
    genre_buckets: dict[str, dict[str, dict[str, Any]]] = {}

    for campaign in live_campaigns.values():
        org = org_bucket(campaign.get("org_id"))
        row = stats.setdefault(org, empty_stats())
        metric = metrics.get(campaign["id"], {})
        first_seen = campaign_first_seen(campaign, now)
        quality_status = metric.get("quality_status")

        row["total_campaigns"] += 1
        row["active_campaigns"] += 0 if campaign.get("archived") else 1
        row["total_posts"] += int(metric.get("actual_posts") or 0)
        row["total_views"] += int(metric.get("total_views") or 0)
        row["verified_views"] += int(metric.get("verified_views") or 0)
        row["total_budget"] += _as_number(campaign.get("budget"))
        row["new_campaigns_24h"] += int(first_seen >= now - timedelta(hours=24))
        row["new_campaigns_7d"] += int(first_seen >= now - timedelta(days=7))
        row["pending_campaigns_total"] += int(
            is_pending(quality_status=quality_status, first_seen_at=first_seen, now=now, windows=windows)
        )
        row["pending_campaigns_24h"] += int(
            is_pending(
                quality_status=quality_status,
                first_seen_at=first_seen,
                now=now,
                windows=windows,
                horizon=timedelta(hours=24),
            )
        )
        review = campaign_reviews.get(campaign["id"]) or {}
        row["campaigns_needing_review"] += int(
            needs_review(
                first_seen_at=first_seen,
                reviewed_at=review.get("reviewed_at"),
                now=now,
                review_window=windows.review_window,
            )
        )
        genre = campaign.get("genre")
        if genre:
            bucket = genre_buckets.setdefault(org, {}).setdefault(
                genre, {"genre": genre, "campaign_count": 0, "total_budget": 0}
            )
            bucket["campaign_count"] += 1
            bucket["total_budget"] += _as_number(campaign.get("budget"))

    creator_first_seen: dict[tuple[str, str], datetime] = {}
    platform_buckets: dict[str, dict[str, dict[str, Any]]] = {}
    for post in posts:
        campaign = live_campaigns.get(post.get("campaign_pk"))
        if campaign is None or post.get("is_test_data"):
            continue
        org = org_bucket(campaign.get("org_id"))
        username = post.get("username")
        if isinstance(username, str) and username.strip():
            key = (org, username.strip().lower())
            seen_at = post.get("created_date") or post.get("post_date") or now
            if key not in creator_first_seen or seen_at < creator_first_seen[key]:
                creator_first_seen[key] = seen_at
        platform = post.get("platform")
        if isinstance(platform, str) and platform.strip():
            bucket = platform_buckets.setdefault(org, {}).setdefault(
                platform, {"platform": platform, "post_count": 0, "total_views": 0}
            )
            bucket["post_count"] += 1
            bucket["total_views"] += int(post.get("views") or 0)

    for (org, username), first_seen in creator_first_seen.items():
        row = stats.get(org)
        if row is None:
            continue
        row["total_creators"] += 1
        row["new_creators_24h"] += int(first_seen >= now - timedelta(hours=24))
        row["new_creators_7d"] += int(first_seen >= now - timedelta(days=7))
        review = creator_reviews.get(username) or {}
        row["creators_needing_review"] += int(
            needs_review(
                first_seen_at=first_seen,
                reviewed_at=review.get("reviewed_at"),
                now=now,
                review_window=windows.review_window,
            )
        )

    for org, row in stats.items():
        org_genres = genre_buckets.get(org, {})
        row["genre_count"] = len(org_genres)
        row["top_genres"] = sorted(org_genres.values(), key=lambda item: (-item["campaign_count"], item["genre"]))[
            :TOP_N
        ]
        row["top_platforms"] = sorted(
            platform_buckets.get(org, {}).values(), key=lambda item: (-item["total_views"], item["platform"])
        )[:TOP_N]
        row["computed_at"] = now
    return stats


def campaign_first_seen(campaign: dict[str, Any], now: datetime) -> datetime:
    return campaign.get("first_seen_at") or campaign.get("created_at") or now


def _as_number(value: Any) -> int | float:
    if value is None:
        return 0
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0
