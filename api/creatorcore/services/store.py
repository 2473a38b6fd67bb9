from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from creatorcore.core.access import AccessContext
from creatorcore.services.genre_detector import GENRE_UNCLASSIFIED
from creatorcore.services.merge import (
    CAMPAIGN_MERGE_POLICY,
    CREATOR_MERGE_POLICY,
    POST_MERGE_POLICY,
    dedupe_rows,
)
from creatorcore.services.normalize import NormalizedCampaign
from creatorcore.services.quality import QualityWindows, intake_tier, is_pending, needs_review
from creatorcore.services.repository import (
    CAMPAIGN_KEY,
    CLASSIFICATION_COUNTER_FIELDS,
    RUN_STATUSES,
    CachedGenre,
    CampaignRef,
    CreatorSighting,
    GenreAssignment,
    GenreCandidate,
    PostWrite,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SyncCursor,
    UpsertCounts,
    aggregate_sightings,
    assign_post_identities,
    campaign_row,
    intake_window,
    post_row,
    require_entity,
    require_unscoped,
)
from creatorcore.services.rollups import (
    campaign_first_seen,
    combine_stats,
    compute_campaign_metrics,
    compute_org_stats,
    empty_stats,
)
from creatorcore.services.sources import AgencySource

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local store with the same contract as the Postgres repository.

    Used for local runs without a database and throughout the test suite; the
    clock is injectable so time windows can be exercised deterministically.
    """

    def __init__(
        self,
        windows: QualityWindows | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.windows = windows or QualityWindows()
        self.clock = clock or _utcnow
        self.sources: dict[str, dict[str, Any]] = {}
        self.cursors: dict[tuple[str, str], SyncCursor] = {}
        self.campaigns: dict[int, dict[str, Any]] = {}
        self.posts: dict[int, dict[str, Any]] = {}
        self.creators: dict[str, dict[str, Any]] = {}
        self.metrics: dict[int, dict[str, Any]] = {}
        self.org_stats: dict[str, dict[str, Any]] = {}
        self.genre_cache: dict[str, CachedGenre] = {}
        self.genre_labels: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.classification_runs: dict[int, dict[str, Any]] = {}
        self.campaign_reviews: dict[int, dict[str, Any]] = {}
        self.creator_reviews: dict[str, dict[str, Any]] = {}
        self._campaign_index: dict[tuple[str, str], int] = {}
        self._post_index: dict[tuple[str, str], int] = {}
        self._next_campaign_pk = 1
        self._next_post_pk = 1
        self._next_run_id = 1

    async def close(self) -> None:
        return None

    async def migrate(self) -> None:
        return None

    async def upsert_sources(self, ctx: AccessContext, sources: list[AgencySource]) -> None:
        require_unscoped(ctx)
        if not sources:
            return
        configured = {source.key for source in sources}
        for source in sources:
            self.sources[source.key] = {
                "key": source.key,
                "name": source.name,
                "base_url": source.base_url,
                "active": True,
            }
        for key, row in self.sources.items():
            if key not in configured:
                row["active"] = False

    async def get_or_create_cursor(self, ctx: AccessContext, entity_type: str, source_key: str) -> SyncCursor:
        require_unscoped(ctx)
        require_entity(entity_type)
        cursor = self.cursors.setdefault(
            (entity_type, source_key),
            SyncCursor(entity_type=entity_type, source_key=source_key),
        )
        return SyncCursor(
            entity_type=cursor.entity_type,
            source_key=cursor.source_key,
            last_cursor=cursor.last_cursor,
            last_synced_at=cursor.last_synced_at,
            records_synced=cursor.records_synced,
        )

    async def advance_cursor(
        self,
        ctx: AccessContext,
        entity_type: str,
        source_key: str,
        observed_cursor: int,
    ) -> SyncCursor:
        require_unscoped(ctx)
        require_entity(entity_type)
        cursor = self.cursors.setdefault(
            (entity_type, source_key),
            SyncCursor(entity_type=entity_type, source_key=source_key),
        )
        observed = max(0, observed_cursor)
        cursor.records_synced += max(0, observed - cursor.last_cursor)
        cursor.last_cursor = max(cursor.last_cursor, observed)
        cursor.last_synced_at = self.clock()
        return await self.get_or_create_cursor(ctx, entity_type, source_key)

    async def upsert_campaigns(
        self,
        ctx: AccessContext,
        campaigns: list[NormalizedCampaign],
        *,
        chunk_size: int = 250,
    ) -> UpsertCounts:
        require_unscoped(ctx)
        counts = UpsertCounts()
        now = self.clock()
        rows = dedupe_rows([campaign_row(item, now) for item in campaigns], CAMPAIGN_KEY, CAMPAIGN_MERGE_POLICY)
        touched_slugs: set[str] = set()
        for row in rows:
            key = (row["source_key"], row["campaign_id"])
            pk = self._campaign_index.get(key)
            if pk is None:
                pk = self._next_campaign_pk
                self._next_campaign_pk += 1
                self._campaign_index[key] = pk
                self.campaigns[pk] = {
                    **row,
                    "id": pk,
                    "genre": None,
                    "genre_confidence": None,
                    "genre_source": None,
                    "genre_updated_at": None,
                }
                counts.inserted += 1
            else:
                self.campaigns[pk] = CAMPAIGN_MERGE_POLICY.merge(self.campaigns[pk], row)
                counts.updated += 1
            touched_slugs.add(self.campaigns[pk]["slug"])
        self._resolve_slug_collisions(touched_slugs)
        return counts

    async def get_campaign_pks(
        self,
        ctx: AccessContext,
        source_key: str,
        campaign_ids: list[str],
    ) -> dict[str, int]:
        resolved: dict[str, int] = {}
        for campaign_id in campaign_ids:
            pk = self._campaign_index.get((source_key, campaign_id))
            if pk is not None and ctx.allows(self.campaigns[pk].get("org_id")):
                resolved[campaign_id] = pk
        return resolved

    async def upsert_posts(
        self,
        ctx: AccessContext,
        posts: list[PostWrite],
        *,
        chunk_size: int = 500,
    ) -> UpsertCounts:
        require_unscoped(ctx)
        counts = UpsertCounts()
        now = self.clock()
        rows = [post_row(item.post, item.campaign_pk, now) for item in posts]
        existing = [
            (row["source_key"], row["post_id"], row.get("canonical_post_key"))
            for _, row in sorted(self.posts.items())
        ]
        for row in assign_post_identities(rows, existing):
            key = (row["source_key"], row["post_id"])
            pk = self._post_index.get(key)
            if pk is None:
                pk = self._next_post_pk
                self._next_post_pk += 1
                self._post_index[key] = pk
                self.posts[pk] = {**row, "id": pk, "first_seen_at": now}
                counts.inserted += 1
            else:
                self.posts[pk] = POST_MERGE_POLICY.merge(self.posts[pk], row)
                counts.updated += 1
        return counts

    async def upsert_creators(self, ctx: AccessContext, sightings: list[CreatorSighting]) -> int:
        require_unscoped(ctx)
        inserted = 0
        now = self.clock()
        for row in aggregate_sightings(sightings):
            current = self.creators.get(row["username"])
            if current is None:
                self.creators[row["username"]] = {**row, "created_at": now, "updated_at": now}
                inserted += 1
                continue
            merged = CREATOR_MERGE_POLICY.merge(current, row)
            merged["updated_at"] = now
            self.creators[row["username"]] = merged
        return inserted

    async def list_pending_campaigns(
        self,
        ctx: AccessContext,
        *,
        limit: int,
        min_age: timedelta,
    ) -> list[CampaignRef]:
        now = self.clock()
        candidates: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
        for campaign in self._visible_campaigns(ctx):
            first_seen = campaign_first_seen(campaign, now)
            metric = self.metrics.get(campaign["id"], {})
            if not is_pending(
                quality_status=metric.get("quality_status"),
                first_seen_at=first_seen,
                now=now,
                windows=self.windows,
            ):
                continue
            if campaign["last_synced_at"] > now - min_age:
                continue
            order = (intake_tier(first_seen, now), -first_seen.timestamp(), campaign["last_synced_at"].timestamp())
            candidates.append((order, campaign))
        candidates.sort(key=lambda item: item[0])
        return [self._campaign_ref(campaign) for _, campaign in candidates[: max(1, limit)]]

    async def list_discovery_campaigns(
        self,
        ctx: AccessContext,
        *,
        limit: int,
        min_age: timedelta,
    ) -> list[CampaignRef]:
        now = self.clock()
        eligible = [
            campaign
            for campaign in self._visible_campaigns(ctx)
            if campaign["last_synced_at"] <= now - min_age
        ]
        eligible.sort(
            key=lambda row: (row["last_synced_at"].timestamp(), -campaign_first_seen(row, now).timestamp())
        )
        return [self._campaign_ref(campaign) for campaign in eligible[: max(1, limit)]]

    async def refresh_rollups(self, ctx: AccessContext) -> datetime:
        require_unscoped(ctx)
        now = self.clock()
        posts_by_campaign: dict[int, list[dict[str, Any]]] = {}
        for post in self.posts.values():
            posts_by_campaign.setdefault(post["campaign_pk"], []).append(post)

        self.metrics = {
            pk: compute_campaign_metrics(campaign, posts_by_campaign.get(pk, []), now=now, windows=self.windows)
            for pk, campaign in self.campaigns.items()
            if not campaign.get("is_test_data")
        }
        self.org_stats = self._compute_stats(ctx, now)
        return now

    async def get_aggregate_stats(self, ctx: AccessContext) -> dict[str, Any]:
        rows = [row for bucket, row in self.org_stats.items() if ctx.allows_bucket(bucket)]
        snapshot = combine_stats(rows)
        if rows and snapshot["total_campaigns"] > 0:
            return snapshot
        live = self._compute_stats(ctx, self.clock())
        if not live:
            return empty_stats()
        return combine_stats(live.values())

    async def list_campaigns(
        self,
        ctx: AccessContext,
        *,
        search: str | None = None,
        genre: str | None = None,
        platform: str | None = None,
        needs_review: bool | None = None,
        min_budget: float | None = None,
        max_budget: float | None = None,
        intake: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        now = self.clock()
        window = intake_window(intake)
        search_value = (search or "").strip().lower()
        platform_value = (platform or "").strip().lower()
        genre_value = (genre or "").strip()
        listed: list[dict[str, Any]] = []
        for campaign in self._visible_campaigns(ctx):
            if search_value and search_value not in (campaign.get("title") or "").lower() and search_value not in (
                campaign.get("slug") or ""
            ).lower():
                continue
            if genre_value and campaign.get("genre") != genre_value:
                continue
            if platform_value and platform_value not in (campaign.get("platforms") or "").lower():
                continue
            budget = campaign.get("budget")
            if min_budget is not None and (budget is None or budget < min_budget):
                continue
            if max_budget is not None and (budget is None or budget > max_budget):
                continue
            if window is not None and campaign["first_seen_at"] < now - window:
                continue
            summary = self._campaign_summary(campaign, now)
            if needs_review is not None and summary["needs_review"] != needs_review:
                continue
            listed.append(summary)
        listed.sort(key=lambda row: (row["first_seen_at"], row["campaign_pk"]), reverse=True)
        start = max(0, offset)
        return listed[start : start + max(1, min(limit, 500))]

    async def mark_campaign_reviewed(
        self,
        ctx: AccessContext,
        campaign_pk: int,
        *,
        reviewed_by: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        campaign = self.campaigns.get(campaign_pk)
        if campaign is None:
            raise RepositoryNotFoundError("campaign not found")
        if not ctx.allows(campaign.get("org_id")):
            raise RepositoryForbiddenError("campaign is outside the caller's organization")
        previous = self.campaign_reviews.get(campaign_pk, {})
        review = {
            "campaign_pk": campaign_pk,
            "reviewed_at": self.clock(),
            "reviewed_by": reviewed_by,
            "notes": notes if notes is not None else previous.get("notes"),
        }
        self.campaign_reviews[campaign_pk] = review
        return dict(review)

    async def mark_creator_reviewed(
        self,
        ctx: AccessContext,
        username: str,
        *,
        reviewed_by: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        normalized = username.strip().lower()
        if not normalized:
            raise RepositoryValidationError("username must be a non-empty string")
        if normalized not in self.creators:
            raise RepositoryNotFoundError("creator not found")
        if not ctx.unscoped:
            visible = any(
                (post.get("username") or "").strip().lower() == normalized
                and ctx.allows(self.campaigns.get(post["campaign_pk"], {}).get("org_id"))
                for post in self.posts.values()
            )
            if not visible:
                raise RepositoryForbiddenError("creator is outside the caller's organization")
        previous = self.creator_reviews.get(normalized, {})
        review = {
            "username": normalized,
            "reviewed_at": self.clock(),
            "reviewed_by": reviewed_by,
            "notes": notes if notes is not None else previous.get("notes"),
        }
        self.creator_reviews[normalized] = review
        return dict(review)

    async def list_genre_candidates(self, ctx: AccessContext, *, limit: int) -> list[GenreCandidate]:
        require_unscoped(ctx)
        candidates = [
            GenreCandidate(campaign_pk=pk, title=campaign["title"])
            for pk, campaign in sorted(self.campaigns.items())
            if _needs_genre(campaign)
        ]
        return candidates[: max(1, limit)]

    async def count_unclassified_campaigns(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        return sum(1 for campaign in self.campaigns.values() if _genre_missing(campaign))

    async def get_cached_genre(self, ctx: AccessContext, artist_name: str) -> CachedGenre | None:
        return self.genre_cache.get(artist_name.strip().lower())

    async def cache_genre(
        self,
        ctx: AccessContext,
        artist_name: str,
        genre: str | None,
        confidence: str | None,
    ) -> None:
        require_unscoped(ctx)
        key = artist_name.strip().lower()
        self.genre_cache[key] = CachedGenre(artist_name=key, genre=genre, confidence=confidence)

    async def apply_campaign_genre(self, ctx: AccessContext, assignment: GenreAssignment) -> None:
        require_unscoped(ctx)
        campaign = self.campaigns.get(assignment.campaign_pk)
        if campaign is None:
            raise RepositoryNotFoundError("campaign not found")
        now = self.clock()
        campaign.update(
            {
                "genre": assignment.genre,
                "genre_confidence": assignment.confidence,
                "genre_source": assignment.source,
                "genre_updated_at": now,
            }
        )
        entity_id = str(assignment.campaign_pk)
        for key in [key for key in self.genre_labels if key[0] == "campaign" and key[1] == entity_id]:
            del self.genre_labels[key]
        self.genre_labels[("campaign", entity_id, assignment.genre)] = {
            "weight": 1.0,
            "confidence": assignment.confidence,
            "source": assignment.source,
            "evidence": dict(assignment.evidence),
            "updated_at": now,
        }

    async def refresh_creator_genre_labels(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        for key in [
            key
            for key, label in self.genre_labels.items()
            if key[0] == "creator" and label["source"] == "campaign_rollup"
        ]:
            del self.genre_labels[key]

        campaign_labels: dict[str, list[tuple[str, float]]] = {}
        for (entity_type, entity_id, genre_id), label in self.genre_labels.items():
            if entity_type == "campaign":
                campaign_labels.setdefault(entity_id, []).append((genre_id, float(label["weight"] or 0)))

        scores: dict[str, dict[str, float]] = {}
        for post in self.posts.values():
            username = (post.get("username") or "").strip().lower()
            if not username:
                continue
            for genre_id, weight in campaign_labels.get(str(post["campaign_pk"]), []):
                creator_scores = scores.setdefault(username, {})
                creator_scores[genre_id] = creator_scores.get(genre_id, 0.0) + weight

        now = self.clock()
        written = 0
        for username, genre_scores in scores.items():
            total = sum(genre_scores.values())
            if total <= 0:
                continue
            for genre_id, raw_weight in genre_scores.items():
                share = raw_weight / total
                self.genre_labels[("creator", username, genre_id)] = {
                    "weight": round(share, 4),
                    "confidence": min(1.0, share),
                    "source": "campaign_rollup",
                    "evidence": {"method": "campaign_label_rollup", "raw_weight": raw_weight},
                    "updated_at": now,
                }
                written += 1
        return written

    async def start_classification_run(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        run_id = self._next_run_id
        self._next_run_id += 1
        self.classification_runs[run_id] = {
            "id": run_id,
            "started_at": self.clock(),
            "completed_at": None,
            "status": "running",
            "error_message": None,
            **{name: 0 for name in CLASSIFICATION_COUNTER_FIELDS},
        }
        return run_id

    async def finish_classification_run(
        self,
        ctx: AccessContext,
        run_id: int,
        *,
        status: str,
        counters: Mapping[str, int],
        error_message: str | None = None,
    ) -> None:
        require_unscoped(ctx)
        if status not in RUN_STATUSES:
            raise RepositoryValidationError(f"unsupported run status: {status}")
        run = self.classification_runs.get(run_id)
        if run is None:
            return
        run.update({name: int(counters.get(name, 0)) for name in CLASSIFICATION_COUNTER_FIELDS})
        run.update({"status": status, "error_message": error_message, "completed_at": self.clock()})

    def _compute_stats(self, ctx: AccessContext, now: datetime) -> dict[str, dict[str, Any]]:
        return compute_org_stats(
            campaigns=self._visible_campaigns(ctx),
            metrics=self.metrics,
            posts=self.posts.values(),
            campaign_reviews=self.campaign_reviews,
            creator_reviews=self.creator_reviews,
            now=now,
            windows=self.windows,
        )

    def _visible_campaigns(self, ctx: AccessContext) -> list[dict[str, Any]]:
        return [
            campaign
            for _, campaign in sorted(self.campaigns.items())
            if not campaign.get("is_test_data") and ctx.allows(campaign.get("org_id"))
        ]

    def _campaign_summary(self, campaign: dict[str, Any], now: datetime) -> dict[str, Any]:
        metric = self.metrics.get(campaign["id"], {})
        review = self.campaign_reviews.get(campaign["id"], {})
        first_seen = campaign_first_seen(campaign, now)
        return {
            "campaign_pk": campaign["id"],
            "source_key": campaign["source_key"],
            "campaign_id": campaign["campaign_id"],
            "title": campaign["title"],
            "slug": campaign["slug"],
            "org_id": campaign.get("org_id"),
            "platforms": campaign.get("platforms"),
            "budget": campaign.get("budget"),
            "genre": campaign.get("genre"),
            "genre_confidence": campaign.get("genre_confidence"),
            "archived": bool(campaign.get("archived")),
            "first_seen_at": first_seen,
            "last_synced_at": campaign.get("last_synced_at"),
            "actual_posts": int(metric.get("actual_posts") or 0),
            "actual_creators": int(metric.get("actual_creators") or 0),
            "total_views": int(metric.get("total_views") or 0),
            "verified_views": int(metric.get("verified_views") or 0),
            "quality_status": metric.get("quality_status") or "missing_posts",
            "reviewed_at": review.get("reviewed_at"),
            "needs_review": needs_review(
                first_seen_at=first_seen,
                reviewed_at=review.get("reviewed_at"),
                now=now,
                review_window=self.windows.review_window,
            ),
        }

    def _resolve_slug_collisions(self, slugs: set[str]) -> None:
        for slug in slugs:
            owners = sorted(pk for pk, campaign in self.campaigns.items() if campaign["slug"] == slug)
            for pk in owners[1:]:
                self.campaigns[pk]["slug"] = f"{slug}-{pk}"
                logger.debug("campaign slug collision resolved slug=%s campaign_pk=%s", slug, pk)

    @staticmethod
    def _campaign_ref(campaign: dict[str, Any]) -> CampaignRef:
        return CampaignRef(
            campaign_pk=campaign["id"],
            source_key=campaign["source_key"],
            campaign_id=campaign["campaign_id"],
        )


def _genre_missing(campaign: dict[str, Any]) -> bool:
    genre = (campaign.get("genre") or "").strip()
    return not genre or genre == GENRE_UNCLASSIFIED


def _needs_genre(campaign: dict[str, Any]) -> bool:
    return campaign.get("title") is not None and _genre_missing(campaign)
