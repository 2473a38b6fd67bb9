"""Campaign re-fetch sweeps: pending hydration and creator discovery."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, TypeVar

import httpx
from opentelemetry import trace

from creatorcore.core.access import AccessContext
from creatorcore.services.fetch_client import ENTITY_CAMPAIGN, ENTITY_POST, CreatorCoreAPIError, CreatorCoreClient
from creatorcore.services.normalize import (
    NormalizationContext,
    NormalizedCampaign,
    NormalizedPost,
    extract_post_ids,
    normalize_campaign,
    normalize_post,
)
from creatorcore.services.repository import CampaignRef, PostWrite, build_creator_sightings
from creatorcore.services.sources import AgencySource

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")
R = TypeVar("R")

ClientFactory = Callable[[AgencySource], CreatorCoreClient]

SYSTEM_CONTEXT = AccessContext.system()


@dataclass(slots=True, frozen=True)
class SweepOptions:
    limit: int
    min_age: timedelta
    posts_per_campaign: int
    post_fetch_limit: int
    concurrency: int


@dataclass(slots=True)
class SweepResult:
    eligible: int = 0
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    post_fetched: int = 0
    post_inserted: int = 0
    post_updated: int = 0
    post_skipped: int = 0
    new_creators: int = 0


@dataclass(slots=True, frozen=True)
class PostRef:
    source_key: str
    post_id: str


@dataclass(slots=True)
class _PostOutcome:
    post: NormalizedPost | None = None
    skipped: bool = False
    failed: bool = False


async def run_worker_pool(
    items: list[T],
    handler: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
) -> list[R]:
    """Drain ``items`` through at most ``concurrency`` tasks, keeping input order."""
    if not items:
        return []
    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))
    results: list[Any] = [None] * len(items)

    async def worker() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await handler(item)

    workers = [
        asyncio.create_task(worker(), name=f"creatorcore-sweep-worker-{index + 1}")
        for index in range(max(1, min(concurrency, len(items))))
    ]
    try:
        await asyncio.gather(*workers)
    finally:
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
    return results


def collect_post_refs(
    raw_campaigns: list[tuple[str, dict[str, Any]]],
    *,
    per_campaign: int,
    global_limit: int,
) -> list[PostRef]:
    refs: list[PostRef] = []
    seen: set[PostRef] = set()
    if per_campaign <= 0 or global_limit <= 0:
        return refs
    for source_key, raw in raw_campaigns:
        for post_id in extract_post_ids(raw, per_campaign):
            ref = PostRef(source_key=source_key, post_id=post_id)
            if ref in seen:
                continue
            seen.add(ref)
            refs.append(ref)
            if len(refs) >= global_limit:
                return refs
    return refs


class CampaignSweeper:
    def __init__(
        self,
        repository: Any,
        *,
        sources: list[AgencySource],
        client_factory: ClientFactory,
        normalization: NormalizationContext,
        campaign_chunk_size: int = 250,
        post_chunk_size: int = 500,
    ) -> None:
        self.repository = repository
        self.sources: Mapping[str, AgencySource] = {source.key: source for source in sources}
        self.client_factory = client_factory
        self.normalization = normalization
        self.campaign_chunk_size = campaign_chunk_size
        self.post_chunk_size = post_chunk_size

    async def run_pending_hydration(self, options: SweepOptions) -> SweepResult:
        if options.limit <= 0:
            return SweepResult()
        refs = await self.repository.list_pending_campaigns(
            SYSTEM_CONTEXT,
            limit=options.limit,
            min_age=options.min_age,
        )
        return await self._sweep("pending_hydration", refs, options)

    async def run_creator_discovery(self, options: SweepOptions) -> SweepResult:
        if options.limit <= 0:
            return SweepResult()
        refs = await self.repository.list_discovery_campaigns(
            SYSTEM_CONTEXT,
            limit=options.limit,
            min_age=options.min_age,
        )
        return await self._sweep("creator_discovery", refs, options)

    async def _sweep(self, name: str, refs: list[CampaignRef], options: SweepOptions) -> SweepResult:
        result = SweepResult(eligible=len(refs))
        if not refs:
            return result

        with tracer.start_as_current_span(f"creatorcore.sweep.{name}") as span:
            span.set_attribute("creatorcore.sweep.eligible", len(refs))
            hydrated: list[NormalizedCampaign] = []
            raw_campaigns: list[tuple[str, dict[str, Any]]] = []
            for ref in refs:
                source = self.sources.get(ref.source_key)
                if source is None:
                    result.skipped += 1
                    continue
                try:
                    raw = await self.client_factory(source).fetch_by_id(ENTITY_CAMPAIGN, ref.campaign_id)
                except (CreatorCoreAPIError, httpx.HTTPError):
                    result.failed += 1
                    logger.exception(
                        "%s campaign fetch failed source=%s campaign_id=%s",
                        name,
                        ref.source_key,
                        ref.campaign_id,
                    )
                    continue
                if raw is None:
                    result.skipped += 1
                    continue
                result.fetched += 1
                normalized = normalize_campaign(raw, source.key, self.normalization)
                if normalized is None:
                    result.skipped += 1
                    continue
                hydrated.append(normalized)
                raw_campaigns.append((source.key, raw))

            counts = await self.repository.upsert_campaigns(
                SYSTEM_CONTEXT,
                hydrated,
                chunk_size=self.campaign_chunk_size,
            )
            result.inserted = counts.inserted
            result.updated = counts.updated

            post_refs = collect_post_refs(
                raw_campaigns,
                per_campaign=options.posts_per_campaign,
                global_limit=options.post_fetch_limit,
            )
            outcomes = await run_worker_pool(post_refs, self._fetch_post, concurrency=options.concurrency)
            posts: list[NormalizedPost] = []
            for outcome in outcomes:
                if outcome.failed:
                    result.failed += 1
                elif outcome.skipped or outcome.post is None:
                    result.post_skipped += 1
                else:
                    posts.append(outcome.post)
                    result.post_fetched += 1

            await self._write_posts(posts, result)
            span.set_attribute("creatorcore.sweep.failed", result.failed)

        logger.info(
            "%s sweep eligible=%s fetched=%s failed=%s post_fetched=%s post_inserted=%s new_creators=%s",
            name,
            result.eligible,
            result.fetched,
            result.failed,
            result.post_fetched,
            result.post_inserted,
            result.new_creators,
        )
        return result

    async def _fetch_post(self, ref: PostRef) -> _PostOutcome:
        source = self.sources.get(ref.source_key)
        if source is None:
            return _PostOutcome(skipped=True)
        try:
            raw = await self.client_factory(source).fetch_by_id(ENTITY_POST, ref.post_id)
        except (CreatorCoreAPIError, httpx.HTTPError):
            logger.warning("sweep post fetch failed source=%s post_id=%s", ref.source_key, ref.post_id, exc_info=True)
            return _PostOutcome(failed=True)
        if raw is None:
            return _PostOutcome(skipped=True)
        normalized = normalize_post(raw, source.key, self.normalization)
        if normalized is None:
            return _PostOutcome(skipped=True)
        return _PostOutcome(post=normalized)

    async def _write_posts(self, posts: list[NormalizedPost], result: SweepResult) -> None:
        if not posts:
            return
        campaign_ids: dict[str, set[str]] = {}
        for post in posts:
            if post.campaign_id:
                campaign_ids.setdefault(post.source_key, set()).add(post.campaign_id)
        pk_maps = {
            source_key: await self.repository.get_campaign_pks(SYSTEM_CONTEXT, source_key, sorted(ids))
            for source_key, ids in campaign_ids.items()
        }

        writes: list[PostWrite] = []
        for post in posts:
            campaign_pk = pk_maps.get(post.source_key, {}).get(post.campaign_id or "")
            if campaign_pk is None:
                result.post_skipped += 1
                continue
            writes.append(PostWrite(post=post, campaign_pk=campaign_pk))
        if not writes:
            return

        counts = await self.repository.upsert_posts(SYSTEM_CONTEXT, writes, chunk_size=self.post_chunk_size)
        result.post_inserted = counts.inserted
        result.post_updated = counts.updated
        result.new_creators = await self.repository.upsert_creators(
            SYSTEM_CONTEXT,
            build_creator_sightings(writes, datetime.now(timezone.utc)),
        )
