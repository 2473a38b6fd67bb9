from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
import json
import logging
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]

from creatorcore.core.access import AccessContext, build_bucket_predicate, build_scope_predicate
from creatorcore.core.config import Settings, get_settings
from creatorcore.services.merge import (
    CAMPAIGN_MERGE_POLICY,
    CREATOR_MERGE_POLICY,
    POST_MERGE_POLICY,
    dedupe_rows,
)
from creatorcore.services.migrations import migration_statements
from creatorcore.services.normalize import NormalizedCampaign, NormalizedPost
from creatorcore.services.quality import PENDING_QUALITY_STATUSES, QualityWindows
from creatorcore.services.rollups import combine_stats, empty_stats
from creatorcore.services.sources import AgencySource

if TYPE_CHECKING:
    from creatorcore.services.store import InMemoryRepository

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a store constraint."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when the access context does not cover the requested rows."""


class RepositoryValidationError(RepositoryError):
    """Raised when arguments fail validation before persistence."""


ENTITY_TYPES = {"campaign", "post"}
CLASSIFICATION_COUNTER_FIELDS = (
    "total_candidates",
    "classified",
    "heuristic_hits",
    "search_hits",
    "cache_hits",
    "marked_other",
    "marked_unclassified",
    "search_calls",
    "failures",
    "remaining",
)
RUN_STATUSES = {"running", "success", "failed"}
INTAKE_WINDOWS = {"24h": timedelta(hours=24), "7d": timedelta(days=7)}
MIGRATION_LOCK_KEY = "creatorcore_schema_migrations"

CAMPAIGN_COLUMN_TYPES: dict[str, str] = {
    "source_key": "text",
    "campaign_id": "text",
    "title": "text",
    "slug": "text",
    "budget": "float8",
    "api_cost_usd": "float8",
    "currency": "text",
    "org_id": "text",
    "platforms": "text",
    "creator_count": "int4",
    "total_posts": "int4",
    "thumbnail": "text",
    "created_at": "timestamptz",
    "archived": "bool",
    "is_test_data": "bool",
    "first_seen_at": "timestamptz",
    "last_seen_at": "timestamptz",
    "last_synced_at": "timestamptz",
}
POST_COLUMN_TYPES: dict[str, str] = {
    "source_key": "text",
    "post_id": "text",
    "campaign_pk": "int8",
    "canonical_post_key": "text",
    "api_cost_usd": "float8",
    "username": "text",
    "platform": "text",
    "post_url": "text",
    "post_url_valid": "bool",
    "post_url_reason": "text",
    "views": "int8",
    "post_date": "timestamptz",
    "post_status": "text",
    "created_date": "timestamptz",
    "is_test_data": "bool",
    "last_synced_at": "timestamptz",
}
CREATOR_COLUMN_TYPES: dict[str, str] = {
    "username": "text",
    "first_seen_at": "timestamptz",
    "last_seen_at": "timestamptz",
    "first_campaign_pk": "int8",
    "last_campaign_pk": "int8",
    "last_platform": "text",
}
CAMPAIGN_KEY = ("source_key", "campaign_id")
POST_KEY = ("source_key", "post_id")


@dataclass(slots=True)
class SyncCursor:
    entity_type: str
    source_key: str
    last_cursor: int = 0
    last_synced_at: datetime | None = None
    records_synced: int = 0


@dataclass(slots=True)
class UpsertCounts:
    inserted: int = 0
    updated: int = 0

    def add(self, other: UpsertCounts) -> None:
        self.inserted += other.inserted
        self.updated += other.updated


@dataclass(slots=True)
class CampaignRef:
    campaign_pk: int
    source_key: str
    campaign_id: str


@dataclass(slots=True)
class PostWrite:
    post: NormalizedPost
    campaign_pk: int


@dataclass(slots=True)
class CreatorSighting:
    username: str
    seen_at: datetime
    campaign_pk: int | None = None
    platform: str | None = None


@dataclass(slots=True)
class GenreCandidate:
    campaign_pk: int
    title: str


@dataclass(slots=True)
class CachedGenre:
    artist_name: str
    genre: str | None
    confidence: str | None


@dataclass(slots=True)
class GenreAssignment:
    campaign_pk: int
    genre: str
    confidence: float
    source: str
    evidence: dict[str, Any] = field(default_factory=dict)


def campaign_row(campaign: NormalizedCampaign, now: datetime) -> dict[str, Any]:
    return {
        "source_key": campaign.source_key,
        "campaign_id": campaign.campaign_id,
        "title": campaign.title,
        "slug": campaign.slug,
        "budget": campaign.budget,
        "api_cost_usd": campaign.api_cost_usd,
        "currency": campaign.currency,
        "org_id": campaign.org_id,
        "platforms": campaign.platforms,
        "creator_count": campaign.creator_count,
        "total_posts": campaign.total_posts,
        "thumbnail": campaign.thumbnail,
        "created_at": campaign.created_at,
        "archived": campaign.archived,
        "is_test_data": campaign.is_test_data,
        "first_seen_at": now,
        "last_seen_at": now,
        "last_synced_at": now,
    }


def post_row(post: NormalizedPost, campaign_pk: int, now: datetime) -> dict[str, Any]:
    return {
        "source_key": post.source_key,
        "post_id": post.post_id,
        "campaign_pk": campaign_pk,
        "canonical_post_key": post.canonical_key,
        "api_cost_usd": post.api_cost_usd,
        "username": post.username,
        "platform": post.platform,
        "post_url": post.url,
        "post_url_valid": post.url_valid,
        "post_url_reason": post.url_reason,
        "views": post.views,
        "post_date": post.post_date,
        "post_status": post.status,
        "created_date": post.created_date,
        "is_test_data": post.is_test_data,
        "last_synced_at": now,
    }


def assign_post_identities(
    rows: list[dict[str, Any]],
    existing: list[tuple[str, str, str | None]],
) -> list[dict[str, Any]]:
    """Point unseen posts at the stored row sharing their canonical key.

    ``existing`` holds ``(source_key, post_id, canonical_post_key)`` tuples for
    stored rows ordered by id; the lowest id owns a canonical key.
    """
    known = {(source_key, post_id) for source_key, post_id, _ in existing}
    owners: dict[str, tuple[str, str]] = {}
    for source_key, post_id, canonical_key in existing:
        if canonical_key and canonical_key not in owners:
            owners[canonical_key] = (source_key, post_id)

    assigned: list[dict[str, Any]] = []
    for row in rows:
        identity = (row["source_key"], row["post_id"])
        canonical_key = row.get("canonical_post_key")
        if identity not in known and canonical_key:
            owner = owners.get(canonical_key)
            if owner is None:
                owners[canonical_key] = identity
            elif owner != identity:
                row = {**row, "source_key": owner[0], "post_id": owner[1]}
        assigned.append(row)
    return dedupe_rows(assigned, POST_KEY, POST_MERGE_POLICY)


def aggregate_sightings(sightings: list[CreatorSighting]) -> list[dict[str, Any]]:
    """Fold sightings into one creator row per lowercased username."""
    creators: dict[str, dict[str, Any]] = {}
    for sighting in sightings:
        username = sighting.username.strip().lower()
        if not username:
            continue
        row = creators.get(username)
        if row is None:
            creators[username] = {
                "username": username,
                "first_seen_at": sighting.seen_at,
                "last_seen_at": sighting.seen_at,
                "first_campaign_pk": sighting.campaign_pk,
                "last_campaign_pk": sighting.campaign_pk,
                "last_platform": sighting.platform,
            }
            continue
        if sighting.seen_at < row["first_seen_at"]:
            row["first_seen_at"] = sighting.seen_at
            row["first_campaign_pk"] = sighting.campaign_pk or row["first_campaign_pk"]
        if sighting.seen_at >= row["last_seen_at"]:
            row["last_seen_at"] = sighting.seen_at
            row["last_campaign_pk"] = sighting.campaign_pk or row["last_campaign_pk"]
            row["last_platform"] = sighting.platform or row["last_platform"]
    return list(creators.values())


def build_creator_sightings(writes: list[PostWrite], now: datetime) -> list[CreatorSighting]:
    sightings: list[CreatorSighting] = []
    for write in writes:
        username = (write.post.username or "").strip()
        if not username:
            continue
        sightings.append(
            CreatorSighting(
                username=username,
                seen_at=write.post.created_date or write.post.post_date or now,
                campaign_pk=write.campaign_pk,
                platform=write.post.platform,
            )
        )
    return sightings


def quality_windows(settings: Settings) -> QualityWindows:
    return QualityWindows(
        metadata_grace=timedelta(minutes=max(0, settings.metadata_grace_minutes)),
        pending_intake=timedelta(days=max(1, settings.pending_intake_days)),
        review_window=timedelta(days=max(1, settings.review_window_days)),
    )


def require_unscoped(ctx: AccessContext) -> None:
    if not ctx.unscoped:
        raise RepositoryForbiddenError("bulk writes require a system or admin context")


def require_entity(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise RepositoryValidationError(f"unsupported entity type: {entity_type}")


def intake_window(bucket: str | None) -> timedelta | None:
    if bucket is None or not bucket.strip():
        return None
    window = INTAKE_WINDOWS.get(bucket.strip().lower())
    if window is None:
        raise RepositoryValidationError(f"unsupported intake bucket: {bucket}")
    return window


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        windows: QualityWindows | None = None,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.windows = windows or QualityWindows()
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def migrate(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", MIGRATION_LOCK_KEY)
                for statement in migration_statements():
                    await conn.execute(statement)
        logger.info("schema migrations applied statements=%s", len(migration_statements()))

    async def upsert_sources(self, ctx: AccessContext, sources: list[AgencySource]) -> None:
        require_unscoped(ctx)
        if not sources:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into cc_agencies (key, name, base_url, active, updated_at)
                    select key, name, base_url, true, now()
                    from unnest($1::text[], $2::text[], $3::text[]) as t(key, name, base_url)
                    on conflict (key) do update
                    set name = excluded.name,
                        base_url = excluded.base_url,
                        active = true,
                        updated_at = now()
                    """,
                    [source.key for source in sources],
                    [source.name for source in sources],
                    [source.base_url for source in sources],
                )
                await conn.execute(
                    """
                    update cc_agencies
                    set active = false, updated_at = now()
                    where active = true
                      and not (key = any($1::text[]))
                    """,
                    [source.key for source in sources],
                )

    async def get_or_create_cursor(self, ctx: AccessContext, entity_type: str, source_key: str) -> SyncCursor:
        require_unscoped(ctx)
        require_entity(entity_type)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                insert into cc_sync_state (entity_type, source_key)
                values ($1, $2)
                on conflict (entity_type, source_key) do nothing
                """,
                entity_type,
                source_key,
            )
            row = await conn.fetchrow(
                """
                select entity_type, source_key, last_cursor, last_synced_at, records_synced
                from cc_sync_state
                where entity_type = $1 and source_key = $2
                """,
                entity_type,
                source_key,
            )
        if row is None:
            raise RepositoryConflictError("failed to resolve sync cursor")
        return self._cursor_from_row(row)

    async def advance_cursor(
        self,
        ctx: AccessContext,
        entity_type: str,
        source_key: str,
        observed_cursor: int,
    ) -> SyncCursor:
        require_unscoped(ctx)
        require_entity(entity_type)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into cc_sync_state (entity_type, source_key, last_cursor, last_synced_at, records_synced)
            values ($1, $2, greatest(0, $3::bigint), now(), greatest(0, $3::bigint))
            on conflict (entity_type, source_key) do update
            set records_synced = cc_sync_state.records_synced
                  + greatest(0, excluded.last_cursor - cc_sync_state.last_cursor),
                last_cursor = greatest(cc_sync_state.last_cursor, excluded.last_cursor),
                last_synced_at = now()
            returning entity_type, source_key, last_cursor, last_synced_at, records_synced
            """,
            entity_type,
            source_key,
            observed_cursor,
        )
        return self._cursor_from_row(row)

    async def upsert_campaigns(
        self,
        ctx: AccessContext,
        campaigns: list[NormalizedCampaign],
        *,
        chunk_size: int = 250,
    ) -> UpsertCounts:
        require_unscoped(ctx)
        counts = UpsertCounts()
        if not campaigns:
            return counts
        now = datetime.now(timezone.utc)
        rows = dedupe_rows([campaign_row(item, now) for item in campaigns], CAMPAIGN_KEY, CAMPAIGN_MERGE_POLICY)
        columns = list(CAMPAIGN_COLUMN_TYPES)
        assignments = CAMPAIGN_MERGE_POLICY.render_conflict_assignments(columns)
        query = f"""
            insert into cc_campaigns ({", ".join(columns)})
            select * from unnest({_unnest_params(CAMPAIGN_COLUMN_TYPES)})
            on conflict (source_key, campaign_id) do update
            set {", ".join(assignments)}
            returning id, slug, (xmax = 0) as inserted_row
            """

        pool = await self._get_pool()
        for chunk in _chunks(rows, chunk_size):
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        written = await conn.fetch(query, *_column_arrays(chunk, columns))
                        await self._resolve_slug_collisions(conn, [row["slug"] for row in written])
            except asyncpg.UniqueViolationError as exc:
                raise RepositoryConflictError("campaign upsert violated a unique constraint") from exc
            for row in written:
                if row["inserted_row"]:
                    counts.inserted += 1
                else:
                    counts.updated += 1
        return counts

    async def get_campaign_pks(
        self,
        ctx: AccessContext,
        source_key: str,
        campaign_ids: list[str],
    ) -> dict[str, int]:
        ids = sorted({item for item in campaign_ids if item})
        if not ids:
            return {}
        scope_sql, scope_params = build_scope_predicate(ctx, "org_id", start_index=3)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select campaign_id, id
            from cc_campaigns
            where source_key = $1
              and campaign_id = any($2::text[])
              and {scope_sql}
            """,
            source_key,
            ids,
            *scope_params,
        )
        return {row["campaign_id"]: int(row["id"]) for row in rows}

    async def upsert_posts(
        self,
        ctx: AccessContext,
        posts: list[PostWrite],
        *,
        chunk_size: int = 500,
    ) -> UpsertCounts:
        require_unscoped(ctx)
        counts = UpsertCounts()
        if not posts:
            return counts
        now = datetime.now(timezone.utc)
        rows = [post_row(item.post, item.campaign_pk, now) for item in posts]
        columns = list(POST_COLUMN_TYPES)
        assignments = POST_MERGE_POLICY.render_conflict_assignments(columns)
        query = f"""
            insert into cc_posts ({", ".join(columns)})
            select * from unnest({_unnest_params(POST_COLUMN_TYPES)})
            on conflict (source_key, post_id) do update
            set {", ".join(assignments)}
            returning (xmax = 0) as inserted_row
            """

        pool = await self._get_pool()
        for chunk in _chunks(rows, chunk_size):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetch(
                        """
                        select source_key, post_id, canonical_post_key
                        from cc_posts
                        where (source_key, post_id) in (
                            select s, p from unnest($1::text[], $2::text[]) as t(s, p)
                          )
                          or canonical_post_key = any($3::text[])
                        order by id
                        for update
                        """,
                        [row["source_key"] for row in chunk],
                        [row["post_id"] for row in chunk],
                        [row["canonical_post_key"] for row in chunk if row.get("canonical_post_key")],
                    )
                    resolved = assign_post_identities(
                        chunk,
                        [(row["source_key"], row["post_id"], row["canonical_post_key"]) for row in existing],
                    )
                    written = await conn.fetch(query, *_column_arrays(resolved, columns))
            for row in written:
                if row["inserted_row"]:
                    counts.inserted += 1
                else:
                    counts.updated += 1
        return counts

    async def upsert_creators(self, ctx: AccessContext, sightings: list[CreatorSighting]) -> int:
        require_unscoped(ctx)
        rows = aggregate_sightings(sightings)
        if not rows:
            return 0
        columns = list(CREATOR_COLUMN_TYPES)
        assignments = CREATOR_MERGE_POLICY.render_conflict_assignments(columns)
        pool = await self._get_pool()
        written = await pool.fetch(
            f"""
            insert into cc_creators ({", ".join(columns)})
            select * from unnest({_unnest_params(CREATOR_COLUMN_TYPES)})
            on conflict (username) do update
            set {", ".join([*assignments, "updated_at = now()"])}
            returning (xmax = 0) as inserted_row
            """,
            *_column_arrays(rows, columns),
        )
        return sum(1 for row in written if row["inserted_row"])

    async def list_pending_campaigns(
        self,
        ctx: AccessContext,
        *,
        limit: int,
        min_age: timedelta,
    ) -> list[CampaignRef]:
        scope_sql, scope_params = build_scope_predicate(ctx, "c.org_id", start_index=6)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            with candidates as (
              select
                c.id,
                c.source_key,
                c.campaign_id,
                c.last_synced_at,
                coalesce(c.first_seen_at, c.created_at, now()) as first_seen_at,
                coalesce(m.quality_status, 'missing_posts') as quality_status
              from cc_campaigns c
              left join cc_campaign_metrics m on m.campaign_pk = c.id
              where c.is_test_data = false
                and {scope_sql}
            )
            select id, source_key, campaign_id
            from candidates
            where first_seen_at >= now() - $1::interval
              and first_seen_at <= now() - $2::interval
              and quality_status = any($3::text[])
              and last_synced_at <= now() - $4::interval
            order by
              case
                when first_seen_at >= now() - interval '24 hours' then 0
                when first_seen_at >= now() - interval '7 days' then 1
                else 2
              end,
              first_seen_at desc,
              last_synced_at asc
            limit $5
            """,
            self.windows.pending_intake,
            self.windows.metadata_grace,
            list(PENDING_QUALITY_STATUSES),
            min_age,
            max(1, limit),
            *scope_params,
        )
        return [self._campaign_ref(row) for row in rows]

    async def list_discovery_campaigns(
        self,
        ctx: AccessContext,
        *,
        limit: int,
        min_age: timedelta,
    ) -> list[CampaignRef]:
        scope_sql, scope_params = build_scope_predicate(ctx, "org_id", start_index=3)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select id, source_key, campaign_id
            from cc_campaigns
            where is_test_data = false
              and last_synced_at <= now() - $1::interval
              and {scope_sql}
            order by last_synced_at asc, first_seen_at desc
            limit $2
            """,
            min_age,
            max(1, limit),
            *scope_params,
        )
        return [self._campaign_ref(row) for row in rows]

    async def refresh_rollups(self, ctx: AccessContext) -> datetime:
        require_unscoped(ctx)
        pool = await self._get_pool()
        stats_sql, stats_params = _org_stats_query("true", self.windows)
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    delete from cc_campaign_metrics m
                    using cc_campaigns c
                    where c.id = m.campaign_pk
                      and c.is_test_data = true
                    """
                )
                await conn.execute(
                    """
                    insert into cc_campaign_metrics (
                      campaign_pk,
                      actual_posts,
                      actual_creators,
                      total_views,
                      verified_views,
                      valid_url_posts,
                      invalid_url_posts,
                      quality_status,
                      updated_at
                    )
                    select
                      c.id,
                      count(p.id),
                      count(distinct lower(btrim(p.username))) filter (where btrim(coalesce(p.username, '')) <> ''),
                      coalesce(sum(p.views), 0),
                      coalesce(sum(p.views) filter (where p.post_url_valid), 0),
                      count(p.id) filter (where p.post_url_valid),
                      count(p.id) filter (where not p.post_url_valid),
                      case
                        when count(p.id) = 0 then 'missing_posts'
                        when count(p.id) filter (where p.post_url_valid) = 0 then 'placeholder_links_only'
                        when (
                            coalesce(nullif(btrim(c.title), ''), 'Untitled') = 'Untitled'
                            or btrim(coalesce(c.platforms, '')) = ''
                          )
                          and coalesce(c.first_seen_at, c.created_at, now()) <= now() - $1::interval
                          then 'missing_core_metadata'
                        else 'ready'
                      end,
                      now()
                    from cc_campaigns c
                    left join cc_posts p on p.campaign_pk = c.id and p.is_test_data = false
                    where c.is_test_data = false
                    group by c.id
                    on conflict (campaign_pk) do update
                    set actual_posts = excluded.actual_posts,
                        actual_creators = excluded.actual_creators,
                        total_views = excluded.total_views,
                        verified_views = excluded.verified_views,
                        valid_url_posts = excluded.valid_url_posts,
                        invalid_url_posts = excluded.invalid_url_posts,
                        quality_status = excluded.quality_status,
                        updated_at = excluded.updated_at
                    """,
                    self.windows.metadata_grace,
                )
                await conn.execute("delete from cc_dashboard_stats_org_1m")
                await conn.execute(
                    f"""
                    insert into cc_dashboard_stats_org_1m (
                      {", ".join(_STATS_COLUMNS)}
                    )
                    {stats_sql}
                    """,
                    *stats_params,
                )
                computed_at = await conn.fetchval("select now()")
        logger.info("rollups refreshed computed_at=%s", computed_at.isoformat())
        return computed_at

    async def get_aggregate_stats(self, ctx: AccessContext) -> dict[str, Any]:
        pool = await self._get_pool()
        bucket_sql, bucket_params = build_bucket_predicate(ctx, "org_id", start_index=1)
        rows = await pool.fetch(
            f"""
            select {", ".join(_STATS_COLUMNS)}
            from cc_dashboard_stats_org_1m
            where {bucket_sql}
            """,
            *bucket_params,
        )
        snapshot = combine_stats(self._stats_from_row(row) for row in rows)
        if rows and snapshot["total_campaigns"] > 0:
            return snapshot

        # Snapshot missing or stale for this scope; compute it live.
        scope_sql, scope_params = build_scope_predicate(ctx, "c.org_id", start_index=5)
        stats_sql, stats_params = _org_stats_query(scope_sql, self.windows)
        live_rows = await pool.fetch(stats_sql, *stats_params, *scope_params)
        if not live_rows:
            return empty_stats()
        return combine_stats(self._stats_from_row(row) for row in live_rows)

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
        window = intake_window(intake)
        scope_sql, scope_params = build_scope_predicate(ctx, "c.org_id", start_index=11)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select *
            from (
              select
                c.id as campaign_pk,
                c.source_key,
                c.campaign_id,
                c.title,
                c.slug,
                c.org_id,
                c.platforms,
                c.budget::float8 as budget,
                c.genre,
                c.genre_confidence,
                c.archived,
                coalesce(c.first_seen_at, c.created_at, now()) as first_seen_at,
                c.last_synced_at,
                coalesce(m.actual_posts, 0) as actual_posts,
                coalesce(m.actual_creators, 0) as actual_creators,
                coalesce(m.total_views, 0)::bigint as total_views,
                coalesce(m.verified_views, 0)::bigint as verified_views,
                coalesce(m.quality_status, 'missing_posts') as quality_status,
                r.reviewed_at,
                (
                  coalesce(c.first_seen_at, c.created_at, now()) >= now() - $1::interval
                  and (r.reviewed_at is null or r.reviewed_at < coalesce(c.first_seen_at, c.created_at, now()))
                ) as needs_review
              from cc_campaigns c
              left join cc_campaign_metrics m on m.campaign_pk = c.id
              left join cc_campaign_review_state r on r.campaign_pk = c.id
              where c.is_test_data = false
                and ($2::text is null or c.title ilike '%' || $2 || '%' or c.slug ilike '%' || $2 || '%')
                and ($3::text is null or c.genre = $3)
                and ($4::text is null or c.platforms ilike '%' || $4 || '%')
                and ($8::float8 is null or c.budget >= $8)
                and ($9::float8 is null or c.budget <= $9)
                and {scope_sql}
            ) listed
            where ($5::boolean is null or listed.needs_review = $5)
              and ($10::interval is null or listed.first_seen_at >= now() - $10::interval)
            order by listed.first_seen_at desc, listed.campaign_pk desc
            limit $6 offset $7
            """,
            self.windows.review_window,
            _blank_to_none(search),
            _blank_to_none(genre),
            _blank_to_none(platform),
            needs_review,
            max(1, min(limit, 500)),
            max(0, offset),
            min_budget,
            max_budget,
            window,
            *scope_params,
        )
        return [dict(row) for row in rows]

    async def mark_campaign_reviewed(
        self,
        ctx: AccessContext,
        campaign_pk: int,
        *,
        reviewed_by: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                campaign = await conn.fetchrow(
                    "select id, org_id from cc_campaigns where id = $1 for update",
                    campaign_pk,
                )
                if campaign is None:
                    raise RepositoryNotFoundError("campaign not found")
                if not ctx.allows(campaign["org_id"]):
                    raise RepositoryForbiddenError("campaign is outside the caller's organization")
                row = await conn.fetchrow(
                    """
                    insert into cc_campaign_review_state (campaign_pk, reviewed_at, reviewed_by, notes)
                    values ($1, now(), $2, $3)
                    on conflict (campaign_pk) do update
                    set reviewed_at = now(),
                        reviewed_by = excluded.reviewed_by,
                        notes = coalesce(excluded.notes, cc_campaign_review_state.notes)
                    returning campaign_pk, reviewed_at, reviewed_by, notes
                    """,
                    campaign_pk,
                    reviewed_by,
                    notes,
                )
        return dict(row)

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
        scope_sql, scope_params = build_scope_predicate(ctx, "c.org_id", start_index=2)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                known = await conn.fetchval(
                    "select exists(select 1 from cc_creators where username = $1)",
                    normalized,
                )
                if not known:
                    raise RepositoryNotFoundError("creator not found")
                visible = await conn.fetchval(
                    f"""
                    select exists(
                      select 1
                      from cc_posts p
                      join cc_campaigns c on c.id = p.campaign_pk
                      where lower(btrim(p.username)) = $1
                        and {scope_sql}
                    )
                    """,
                    normalized,
                    *scope_params,
                )
                if not visible and not ctx.unscoped:
                    raise RepositoryForbiddenError("creator is outside the caller's organization")
                row = await conn.fetchrow(
                    """
                    insert into cc_creator_review_state (username, reviewed_at, reviewed_by, notes)
                    values ($1, now(), $2, $3)
                    on conflict (username) do update
                    set reviewed_at = now(),
                        reviewed_by = excluded.reviewed_by,
                        notes = coalesce(excluded.notes, cc_creator_review_state.notes)
                    returning username, reviewed_at, reviewed_by, notes
                    """,
                    normalized,
                    reviewed_by,
                    notes,
                )
        return dict(row)

    async def list_genre_candidates(self, ctx: AccessContext, *, limit: int) -> list[GenreCandidate]:
        require_unscoped(ctx)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, title
            from cc_campaigns
            where (genre is null or btrim(genre) = '' or genre = 'Unclassified')
              and title is not null
            order by id
            limit $1
            """,
            max(1, limit),
        )
        return [GenreCandidate(campaign_pk=int(row["id"]), title=row["title"]) for row in rows]

    async def count_unclassified_campaigns(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select count(*)
            from cc_campaigns
            where genre is null or btrim(genre) = '' or genre = 'Unclassified'
            """
        )
        return int(value or 0)

    async def get_cached_genre(self, ctx: AccessContext, artist_name: str) -> CachedGenre | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select artist_name, genre, confidence
            from cc_genre_cache
            where artist_name = lower(btrim($1))
            """,
            artist_name,
        )
        if row is None:
            return None
        return CachedGenre(artist_name=row["artist_name"], genre=row["genre"], confidence=row["confidence"])

    async def cache_genre(
        self,
        ctx: AccessContext,
        artist_name: str,
        genre: str | None,
        confidence: str | None,
    ) -> None:
        require_unscoped(ctx)
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into cc_genre_cache (artist_name, genre, confidence, searched_at)
            values (lower(btrim($1)), $2, $3, now())
            on conflict (artist_name) do update
            set genre = excluded.genre,
                confidence = excluded.confidence,
                searched_at = now()
            """,
            artist_name,
            genre,
            confidence,
        )

    async def apply_campaign_genre(self, ctx: AccessContext, assignment: GenreAssignment) -> None:
        require_unscoped(ctx)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    update cc_campaigns
                    set genre = $2,
                        genre_confidence = $3,
                        genre_source = $4,
                        genre_updated_at = now()
                    where id = $1
                    """,
                    assignment.campaign_pk,
                    assignment.genre,
                    assignment.confidence,
                    assignment.source,
                )
                if result.endswith(" 0"):
                    raise RepositoryNotFoundError("campaign not found")
                await conn.execute(
                    "delete from entity_genre_labels where entity_type = 'campaign' and entity_id = $1",
                    str(assignment.campaign_pk),
                )
                await conn.execute(
                    """
                    insert into entity_genre_labels (
                      entity_type, entity_id, genre_id, weight, confidence, source, evidence, updated_at
                    )
                    values ('campaign', $1, $2, 1.0, $3, $4, $5::jsonb, now())
                    """,
                    str(assignment.campaign_pk),
                    assignment.genre,
                    assignment.confidence,
                    assignment.source,
                    json.dumps(assignment.evidence),
                )

    async def refresh_creator_genre_labels(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "delete from entity_genre_labels where entity_type = 'creator' and source = 'campaign_rollup'"
                )
                result = await conn.execute(
                    """
                    with creator_scores as (
                      select
                        lower(btrim(p.username)) as creator_id,
                        l.genre_id,
                        sum(coalesce(l.weight, 0)) as raw_weight
                      from cc_posts p
                      join entity_genre_labels l
                        on l.entity_type = 'campaign'
                       and l.entity_id = p.campaign_pk::text
                      where btrim(coalesce(p.username, '')) <> ''
                      group by lower(btrim(p.username)), l.genre_id
                    ),
                    totals as (
                      select creator_id, sum(raw_weight) as total_weight
                      from creator_scores
                      group by creator_id
                    )
                    insert into entity_genre_labels (
                      entity_type, entity_id, genre_id, weight, confidence, source, evidence, updated_at
                    )
                    select
                      'creator',
                      s.creator_id,
                      s.genre_id,
                      round((s.raw_weight / t.total_weight)::numeric, 4),
                      least(1.0, s.raw_weight / t.total_weight),
                      'campaign_rollup',
                      jsonb_build_object('method', 'campaign_label_rollup', 'raw_weight', s.raw_weight),
                      now()
                    from creator_scores s
                    join totals t on t.creator_id = s.creator_id
                    where t.total_weight > 0
                    on conflict (entity_type, entity_id, genre_id) do update
                    set weight = excluded.weight,
                        confidence = excluded.confidence,
                        source = excluded.source,
                        evidence = excluded.evidence,
                        updated_at = now()
                    """
                )
        return _affected_rows(result)

    async def start_classification_run(self, ctx: AccessContext) -> int:
        require_unscoped(ctx)
        pool = await self._get_pool()
        run_id = await pool.fetchval(
            "insert into cc_genre_classification_runs (status) values ('running') returning id"
        )
        return int(run_id)

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
        values = [int(counters.get(name, 0)) for name in CLASSIFICATION_COUNTER_FIELDS]
        assignments = ", ".join(
            f"{name} = ${index}" for index, name in enumerate(CLASSIFICATION_COUNTER_FIELDS, start=4)
        )
        pool = await self._get_pool()
        await pool.execute(
            f"""
            update cc_genre_classification_runs
            set status = $2,
                error_message = $3,
                completed_at = now(),
                {assignments}
            where id = $1
            """,
            run_id,
            status,
            error_message,
            *values,
        )

    async def _resolve_slug_collisions(self, conn: asyncpg.Connection, slugs: list[str]) -> None:
        if not slugs:
            return
        await conn.execute(
            """
            update cc_campaigns c
            set slug = c.slug || '-' || c.id::text
            from (
              select id, row_number() over (partition by slug order by id) as rn
              from cc_campaigns
              where slug = any($1::text[])
            ) ranked
            where ranked.id = c.id
              and ranked.rn > 1
            """,
            sorted(set(slugs)),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CREATORCORE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _cursor_from_row(row: asyncpg.Record) -> SyncCursor:
        return SyncCursor(
            entity_type=row["entity_type"],
            source_key=row["source_key"],
            last_cursor=int(row["last_cursor"]),
            last_synced_at=row["last_synced_at"],
            records_synced=int(row["records_synced"]),
        )

    @staticmethod
    def _campaign_ref(row: asyncpg.Record) -> CampaignRef:
        return CampaignRef(campaign_pk=int(row["id"]), source_key=row["source_key"], campaign_id=row["campaign_id"])

    @staticmethod
    def _stats_from_row(row: asyncpg.Record) -> dict[str, Any]:
        stats = dict(row)
        for key in ("top_genres", "top_platforms"):
            value = stats.get(key)
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    value = []
            stats[key] = value if isinstance(value, list) else []
        return stats


_STATS_COLUMNS = (
    "org_id",
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
    "top_genres",
    "top_platforms",
    "computed_at",
)


def _org_stats_query(scope_sql: str, windows: QualityWindows) -> tuple[str, list[Any]]:
    """Per-organization dashboard rows; parameters $1..$4, scope from $5."""
    query = f"""
        with campaign_base as (
          select
            c.id,
            coalesce(nullif(btrim(c.org_id), ''), '__unknown__') as org_id,
            c.archived,
            c.budget,
            nullif(btrim(coalesce(c.genre, '')), '') as genre,
            coalesce(c.first_seen_at, c.created_at, now()) as first_seen_at,
            coalesce(m.actual_posts, 0) as actual_posts,
            coalesce(m.total_views, 0) as total_views,
            coalesce(m.verified_views, 0) as verified_views,
            coalesce(m.quality_status, 'missing_posts') as quality_status,
            r.reviewed_at
          from cc_campaigns c
          left join cc_campaign_metrics m on m.campaign_pk = c.id
          left join cc_campaign_review_state r on r.campaign_pk = c.id
          where c.is_test_data = false
            and {scope_sql}
        ),
        campaign_stats as (
          select
            org_id,
            count(*) as total_campaigns,
            count(*) filter (where not archived) as active_campaigns,
            coalesce(sum(actual_posts), 0) as total_posts,
            coalesce(sum(total_views), 0) as total_views,
            coalesce(sum(verified_views), 0) as verified_views,
            coalesce(sum(budget), 0) as total_budget,
            count(distinct genre) as genre_count,
            count(*) filter (where first_seen_at >= now() - interval '24 hours') as new_campaigns_24h,
            count(*) filter (where first_seen_at >= now() - interval '7 days') as new_campaigns_7d,
            count(*) filter (
              where quality_status = any($1::text[])
                and first_seen_at >= now() - $2::interval
                and first_seen_at <= now() - $3::interval
            ) as pending_campaigns_total,
            count(*) filter (
              where quality_status = any($1::text[])
                and first_seen_at >= now() - interval '24 hours'
                and first_seen_at <= now() - $3::interval
            ) as pending_campaigns_24h,
            count(*) filter (
              where first_seen_at >= now() - $4::interval
                and (reviewed_at is null or reviewed_at < first_seen_at)
            ) as campaigns_needing_review
          from campaign_base
          group by org_id
        ),
        creator_base as (
          select
            b.org_id,
            lower(btrim(p.username)) as username,
            min(coalesce(p.created_date, p.post_date, now())) as first_seen_at
          from cc_posts p
          join campaign_base b on b.id = p.campaign_pk
          where p.is_test_data = false
            and btrim(coalesce(p.username, '')) <> ''
          group by b.org_id, lower(btrim(p.username))
        ),
        creator_stats as (
          select
            cb.org_id,
            count(*) as total_creators,
            count(*) filter (where cb.first_seen_at >= now() - interval '24 hours') as new_creators_24h,
            count(*) filter (where cb.first_seen_at >= now() - interval '7 days') as new_creators_7d,
            count(*) filter (
              where cb.first_seen_at >= now() - $4::interval
                and (r.reviewed_at is null or r.reviewed_at < cb.first_seen_at)
            ) as creators_needing_review
          from creator_base cb
          left join cc_creator_review_state r on r.username = cb.username
          group by cb.org_id
        ),
        genre_ranked as (
          select
            org_id,
            genre,
            count(*) as campaign_count,
            coalesce(sum(budget), 0) as total_budget,
            row_number() over (partition by org_id order by count(*) desc, genre) as rn
          from campaign_base
          where genre is not null
          group by org_id, genre
        ),
        platform_ranked as (
          select
            b.org_id,
            p.platform,
            count(*) as post_count,
            coalesce(sum(p.views), 0) as total_views,
            row_number() over (partition by b.org_id order by coalesce(sum(p.views), 0) desc, p.platform) as rn
          from cc_posts p
          join campaign_base b on b.id = p.campaign_pk
          where p.is_test_data = false
            and btrim(coalesce(p.platform, '')) <> ''
          group by b.org_id, p.platform
        )
        select
          s.org_id,
          s.total_campaigns,
          s.active_campaigns,
          coalesce(cs.total_creators, 0) as total_creators,
          s.total_posts,
          s.total_views,
          s.verified_views,
          s.total_budget,
          s.genre_count,
          s.new_campaigns_24h,
          s.new_campaigns_7d,
          coalesce(cs.new_creators_24h, 0) as new_creators_24h,
          coalesce(cs.new_creators_7d, 0) as new_creators_7d,
          s.pending_campaigns_total,
          s.pending_campaigns_24h,
          s.campaigns_needing_review,
          coalesce(cs.creators_needing_review, 0) as creators_needing_review,
          coalesce(
            (
              select jsonb_agg(
                jsonb_build_object(
                  'genre', g.genre,
                  'campaign_count', g.campaign_count,
                  'total_budget', g.total_budget
                )
                order by g.rn
              )
              from genre_ranked g
              where g.org_id = s.org_id and g.rn <= 10
            ),
            '[]'::jsonb
          ) as top_genres,
          coalesce(
            (
              select jsonb_agg(
                jsonb_build_object(
                  'platform', pr.platform,
                  'post_count', pr.post_count,
                  'total_views', pr.total_views
                )
                order by pr.rn
              )
              from platform_ranked pr
              where pr.org_id = s.org_id and pr.rn <= 10
            ),
            '[]'::jsonb
          ) as top_platforms,
          now() as computed_at
        from campaign_stats s
        left join creator_stats cs on cs.org_id = s.org_id
    """
    params: list[Any] = [
        list(PENDING_QUALITY_STATUSES),
        windows.pending_intake,
        windows.metadata_grace,
        windows.review_window,
    ]
    return query, params


def _unnest_params(column_types: Mapping[str, str]) -> str:
    return ", ".join(f"${index}::{pg_type}[]" for index, pg_type in enumerate(column_types.values(), start=1))


def _column_arrays(rows: list[dict[str, Any]], columns: list[str]) -> list[list[Any]]:
    return [[row.get(column) for row in rows] for column in columns]


def _chunks(rows: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    step = max(1, size)
    return [rows[index : index + step] for index in range(0, len(rows), step)]


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _affected_rows(status: str) -> int:
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    windows = quality_windows(settings)
    if settings.storage_backend.strip().lower() == "memory":
        from creatorcore.services.store import InMemoryRepository

        return InMemoryRepository(windows=windows)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        windows=windows,
    )
