from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import httpx
from opentelemetry import trace

from creatorcore.core.access import AccessContext
from creatorcore.core.config import Settings
from creatorcore.services.fetch_client import (
    ENTITY_CAMPAIGN,
    ENTITY_POST,
    PAGE_LIMIT,
    CreatorCoreAPIError,
    CreatorCoreClient,
)
from creatorcore.services.normalize import NormalizationContext, normalize_campaign, normalize_post
from creatorcore.services.repository import PostWrite, build_creator_sightings
from creatorcore.services.sources import AgencySource, parse_agency_sources
from creatorcore.services.sweeps import CampaignSweeper, ClientFactory, SweepOptions, SweepResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYSTEM_CONTEXT = AccessContext.system()
PAGE_COUNT_FIELDS = {"campaign_pages", "post_pages"}


@dataclass(slots=True, frozen=True)
class SyncOptions:
    campaign_pages: int = 10
    post_pages: int = 20
    campaign_lookback_rows: int = 500
    post_lookback_rows: int = 1000
    campaign_chunk_size: int = 250
    post_chunk_size: int = 500
    pending_limit: int = 30
    pending_min_age_minutes: int = 30
    pending_posts_per_campaign: int = 25
    pending_post_fetch_limit: int = 400
    pending_post_concurrency: int = 8
    discovery_campaign_limit: int = 200
    discovery_min_age_minutes: int = 15
    discovery_posts_per_campaign: int = 80
    discovery_post_fetch_limit: int = 2000
    discovery_post_concurrency: int = 10

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: int | None) -> SyncOptions:
        options = cls(
            campaign_pages=settings.sync_campaign_pages,
            post_pages=settings.sync_post_pages,
            campaign_lookback_rows=settings.sync_campaign_lookback_rows,
            post_lookback_rows=settings.sync_post_lookback_rows,
            campaign_chunk_size=settings.campaign_upsert_chunk_size,
            post_chunk_size=settings.post_upsert_chunk_size,
            pending_limit=settings.pending_limit,
            pending_min_age_minutes=settings.pending_min_age_minutes,
            pending_posts_per_campaign=settings.pending_posts_per_campaign,
            pending_post_fetch_limit=settings.pending_post_fetch_limit,
            pending_post_concurrency=settings.pending_post_concurrency,
            discovery_campaign_limit=settings.discovery_campaign_limit,
            discovery_min_age_minutes=settings.discovery_min_age_minutes,
            discovery_posts_per_campaign=settings.discovery_posts_per_campaign,
            discovery_post_fetch_limit=settings.discovery_post_fetch_limit,
            discovery_post_concurrency=settings.discovery_post_concurrency,
        )
        return options.with_overrides(**overrides)

    def with_overrides(self, **overrides: int | None) -> SyncOptions:
        known = {item.name for item in fields(self)}
        changes: dict[str, int] = {}
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in known:
                raise ValueError(f"unknown sync option: {name}")
            if name in PAGE_COUNT_FIELDS and value <= 0:
                continue
            changes[name] = max(0, int(value))
        return replace(self, **changes) if changes else self

    def pending_sweep(self) -> SweepOptions:
        return SweepOptions(
            limit=self.pending_limit,
            min_age=timedelta(minutes=max(0, self.pending_min_age_minutes)),
            posts_per_campaign=self.pending_posts_per_campaign,
            post_fetch_limit=self.pending_post_fetch_limit,
            concurrency=max(1, self.pending_post_concurrency),
        )

    def discovery_sweep(self) -> SweepOptions:
        return SweepOptions(
            limit=self.discovery_campaign_limit,
            min_age=timedelta(minutes=max(0, self.discovery_min_age_minutes)),
            posts_per_campaign=self.discovery_posts_per_campaign,
            post_fetch_limit=self.discovery_post_fetch_limit,
            concurrency=max(1, self.discovery_post_concurrency),
        )


@dataclass(slots=True)
class SyncSourceResult:
    entity: str
    source_key: str
    source_name: str
    fetched: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    cursor: int = 0
    has_more: bool = False
    pages: int = 0
    new_items: int = 0
    error: str | None = None


@dataclass(slots=True)
class SyncResult:
    entity: str
    sources: list[SyncSourceResult] = field(default_factory=list)

    @property
    def fetched(self) -> int:
        return sum(item.fetched for item in self.sources)

    @property
    def processed(self) -> int:
        return sum(item.processed for item in self.sources)

    @property
    def inserted(self) -> int:
        return sum(item.inserted for item in self.sources)

    @property
    def updated(self) -> int:
        return sum(item.updated for item in self.sources)

    @property
    def skipped(self) -> int:
        return sum(item.skipped for item in self.sources)

    @property
    def pages(self) -> int:
        return sum(item.pages for item in self.sources)

    @property
    def new_items(self) -> int:
        return sum(item.new_items for item in self.sources)

    @property
    def cursor(self) -> int:
        return max((item.cursor for item in self.sources), default=0)

    @property
    def has_more(self) -> bool:
        return any(item.has_more for item in self.sources)

    @property
    def errors(self) -> list[str]:
        return [f"{item.source_key}: {item.error}" for item in self.sources if item.error]


@dataclass(slots=True)
class FullSyncResult:
    campaigns: SyncResult
    posts: SyncResult
    creator_discovery: SweepResult
    pending_hydration: SweepResult
    rollups_refreshed_at: datetime


def default_client_factory(
    timeout_seconds: float,
    http_client: httpx.AsyncClient | None = None,
) -> ClientFactory:
    def factory(source: AgencySource) -> CreatorCoreClient:
        return CreatorCoreClient(source.base_url, timeout_seconds=timeout_seconds, http_client=http_client)

    return factory


class SyncEngine:
    """Incremental pull of every configured agency source into the store."""

    def __init__(
        self,
        repository: Any,
        *,
        sources: list[AgencySource],
        client_factory: ClientFactory,
        normalization: NormalizationContext | None = None,
        options: SyncOptions | None = None,
    ) -> None:
        self.repository = repository
        self.sources = list(sources)
        self.client_factory = client_factory
        self.normalization = normalization or NormalizationContext()
        self.options = options or SyncOptions()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: Any,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> SyncEngine:
        return cls(
            repository,
            sources=parse_agency_sources(settings.agency_sources_json, default_base_url=settings.default_base_url),
            client_factory=default_client_factory(settings.fetch_timeout_seconds, http_client),
            normalization=NormalizationContext(
                production=settings.is_production,
                allow_test_fixtures=settings.allow_test_fixture_data,
            ),
            options=SyncOptions.from_settings(settings),
        )

    async def sync_campaigns(self, options: SyncOptions | None = None) -> SyncResult:
        options = options or self.options
        result = SyncResult(entity=ENTITY_CAMPAIGN)
        for source in self.sources:
            result.sources.append(
                await self._sync_source(
                    ENTITY_CAMPAIGN,
                    source,
                    max_pages=options.campaign_pages,
                    lookback_rows=options.campaign_lookback_rows,
                    chunk_size=options.campaign_chunk_size,
                )
            )
        return result

    async def sync_posts(self, options: SyncOptions | None = None) -> SyncResult:
        options = options or self.options
        result = SyncResult(entity=ENTITY_POST)
        for source in self.sources:
            result.sources.append(
                await self._sync_source(
                    ENTITY_POST,
                    source,
                    max_pages=options.post_pages,
                    lookback_rows=options.post_lookback_rows,
                    chunk_size=options.post_chunk_size,
                )
            )
        return result

    async def run_pending_hydration(self, options: SyncOptions | None = None) -> SweepResult:
        options = options or self.options
        return await self._sweeper(options).run_pending_hydration(options.pending_sweep())

    async def run_creator_discovery_sweep(self, options: SyncOptions | None = None) -> SweepResult:
        options = options or self.options
        return await self._sweeper(options).run_creator_discovery(options.discovery_sweep())

    async def refresh_rollups(self) -> datetime:
        with tracer.start_as_current_span("creatorcore.rollups.refresh"):
            return await self.repository.refresh_rollups(SYSTEM_CONTEXT)

    async def register_sources(self) -> None:
        await self.repository.upsert_sources(SYSTEM_CONTEXT, self.sources)

    async def run_full_sync(self, options: SyncOptions | None = None) -> FullSyncResult:
        options = options or self.options
        with tracer.start_as_current_span("creatorcore.sync.full") as span:
            span.set_attribute("creatorcore.sync.sources", len(self.sources))
            await self.register_sources()
            campaigns = await self.sync_campaigns(options)
            posts = await self.sync_posts(options)
            creator_discovery = await self.run_creator_discovery_sweep(options)
            pending_hydration = await self.run_pending_hydration(options)
            refreshed_at = await self.refresh_rollups()

        logger.info(
            "full sync complete campaigns_processed=%s posts_processed=%s new_campaigns=%s new_creators=%s",
            campaigns.processed,
            posts.processed,
            campaigns.new_items,
            posts.new_items + creator_discovery.new_creators + pending_hydration.new_creators,
        )
        return FullSyncResult(
            campaigns=campaigns,
            posts=posts,
            creator_discovery=creator_discovery,
            pending_hydration=pending_hydration,
            rollups_refreshed_at=refreshed_at,
        )

    def _sweeper(self, options: SyncOptions) -> CampaignSweeper:
        return CampaignSweeper(
            self.repository,
            sources=self.sources,
            client_factory=self.client_factory,
            normalization=self.normalization,
            campaign_chunk_size=options.campaign_chunk_size,
            post_chunk_size=options.post_chunk_size,
        )

    async def _sync_source(
        self,
        entity: str,
        source: AgencySource,
        *,
        max_pages: int,
        lookback_rows: int,
        chunk_size: int,
    ) -> SyncSourceResult:
        result = SyncSourceResult(entity=entity, source_key=source.key, source_name=source.name)
        with tracer.start_as_current_span("creatorcore.sync.source") as span:
            span.set_attribute("creatorcore.entity", entity)
            span.set_attribute("creatorcore.source_key", source.key)

            cursor = await self.repository.get_or_create_cursor(SYSTEM_CONTEXT, entity, source.key)
            lookback = min(max(0, lookback_rows), max(0, max_pages * PAGE_LIMIT - 1))
            start_cursor = max(0, cursor.last_cursor - lookback)
            result.cursor = cursor.last_cursor
            client = self.client_factory(source)
            logger.info(
                "sync source=%s entity=%s cursor=%s start=%s max_pages=%s",
                source.key,
                entity,
                cursor.last_cursor,
                start_cursor,
                max_pages,
            )

            try:
                async for page in client.iter_pages(entity, start_cursor, max_pages=max_pages):
                    result.pages += 1
                    result.fetched += len(page.results)
                    result.has_more = page.has_more
                    if entity == ENTITY_CAMPAIGN:
                        await self._apply_campaign_page(source, page.results, result, chunk_size)
                    else:
                        await self._apply_post_page(source, page.results, result, chunk_size)
                    advanced = await self.repository.advance_cursor(
                        SYSTEM_CONTEXT,
                        entity,
                        source.key,
                        page.next_cursor,
                    )
                    result.cursor = advanced.last_cursor
            except (CreatorCoreAPIError, httpx.HTTPError) as exc:
                result.error = str(exc) or exc.__class__.__name__
                result.has_more = True
                span.record_exception(exc)
                logger.exception("sync failed source=%s entity=%s cursor=%s", source.key, entity, result.cursor)

            span.set_attribute("creatorcore.sync.processed", result.processed)
        return result

    async def _apply_campaign_page(
        self,
        source: AgencySource,
        records: list[dict[str, Any]],
        result: SyncSourceResult,
        chunk_size: int,
    ) -> None:
        campaigns = []
        for raw in records:
            normalized = normalize_campaign(raw, source.key, self.normalization)
            if normalized is None:
                result.skipped += 1
                continue
            campaigns.append(normalized)
        counts = await self.repository.upsert_campaigns(SYSTEM_CONTEXT, campaigns, chunk_size=chunk_size)
        result.processed += len(campaigns)
        result.inserted += counts.inserted
        result.updated += counts.updated
        result.new_items += counts.inserted

    async def _apply_post_page(
        self,
        source: AgencySource,
        records: list[dict[str, Any]],
        result: SyncSourceResult,
        chunk_size: int,
    ) -> None:
        posts = []
        for raw in records:
            normalized = normalize_post(raw, source.key, self.normalization)
            if normalized is None:
                result.skipped += 1
                continue
            posts.append(normalized)

        campaign_pks = await self.repository.get_campaign_pks(
            SYSTEM_CONTEXT,
            source.key,
            sorted({post.campaign_id for post in posts if post.campaign_id}),
        )
        writes: list[PostWrite] = []
        for post in posts:
            campaign_pk = campaign_pks.get(post.campaign_id or "")
            if campaign_pk is None:
                result.skipped += 1
                continue
            writes.append(PostWrite(post=post, campaign_pk=campaign_pk))

        counts = await self.repository.upsert_posts(SYSTEM_CONTEXT, writes, chunk_size=chunk_size)
        result.processed += len(writes)
        result.inserted += counts.inserted
        result.updated += counts.updated
        result.new_items += await self.repository.upsert_creators(
            SYSTEM_CONTEXT,
            build_creator_sightings(writes, datetime.now(timezone.utc)),
        )
