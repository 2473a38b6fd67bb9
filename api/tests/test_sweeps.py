from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from creatorcore.core.access import AccessContext
from creatorcore.services.store import InMemoryRepository
from creatorcore.services.sweeps import SweepResult, collect_post_refs, run_worker_pool
from creatorcore.services.sync import SyncEngine, SyncOptions

SYSTEM = AccessContext.system()
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _post(post_id: str, campaign_id: str, username: str) -> dict[str, Any]:
    return {
        "_id": post_id,
        "campaign": campaign_id,
        "postUrl": f"https://www.tiktok.com/@{username}/video/{post_id}",
        "Views": 10,
        "username": username,
        "platform": "TikTok",
    }


def test_pending_hydration_refetches_campaign_and_its_posts(agency_api) -> None:
    source = agency_api.source("agency-a")
    agency_api.add("agency-a", "campaign", {"_id": "c1", "title": "Summer Push", "posts": ["p1", "p2"]})
    agency_api.add("agency-a", "post", _post("p1", "c1", "nova"), _post("p2", "c1", "kai"))
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(store, sources=[source], client_factory=agency_api.client_factory(http_client))
            await engine.sync_campaigns()
            await engine.refresh_rollups()
            clock.now = T0 + timedelta(minutes=45)
            result = await engine.run_pending_hydration()
            await engine.refresh_rollups()
            return result

    result = asyncio.run(run())

    assert (result.eligible, result.fetched, result.inserted, result.updated) == (1, 1, 0, 1)
    assert (result.post_fetched, result.post_inserted, result.failed) == (2, 2, 0)
    assert result.new_creators == 2
    assert sorted(store.creators) == ["kai", "nova"]
    assert store.metrics[1]["quality_status"] == "missing_core_metadata"


def test_first_seen_is_the_sync_time_not_the_upstream_created_date(agency_api) -> None:
    source = agency_api.source("agency-a")
    agency_api.add(
        "agency-a",
        "campaign",
        {"_id": "c1", "title": "Drake - Push", "Created Date": "2024-01-01T00:00:00Z"},
        {"_id": "c2", "title": "Glass Tour", "Created Date": "2024-01-01T00:00:00Z"},
    )
    agency_api.add("agency-a", "post", _post("p1", "c1", "nova"))
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> tuple[str, list[str], dict[str, Any]]:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(store, sources=[source], client_factory=agency_api.client_factory(http_client))
            await engine.sync_campaigns()
            await engine.sync_posts()
            await engine.refresh_rollups()
            fresh_status = store.metrics[1]["quality_status"]
            clock.now = T0 + timedelta(minutes=45)
            await engine.refresh_rollups()
            pending = await store.list_pending_campaigns(SYSTEM, limit=10, min_age=timedelta(minutes=30))
            stats = await store.get_aggregate_stats(SYSTEM)
            await engine.sync_campaigns()
            return fresh_status, sorted(ref.campaign_id for ref in pending), stats

    fresh_status, pending, stats = asyncio.run(run())

    assert fresh_status == "ready"
    assert pending == ["c1", "c2"]
    assert stats["new_campaigns_24h"] == 2
    assert [campaign["first_seen_at"] for campaign in store.campaigns.values()] == [T0, T0]
    assert store.campaigns[1]["created_at"] == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_pending_hydration_skips_campaigns_synced_too_recently(agency_api) -> None:
    source = agency_api.source("agency-a")
    agency_api.add("agency-a", "campaign", {"_id": "c1", "title": "Summer Push"})
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(store, sources=[source], client_factory=agency_api.client_factory(http_client))
            await engine.sync_campaigns()
            clock.now = T0 + timedelta(minutes=45)
            return await engine.run_pending_hydration(SyncOptions(pending_min_age_minutes=60))

    assert asyncio.run(run()).eligible == 0


def test_discovery_counts_missing_and_failed_items_without_aborting(agency_api) -> None:
    source = agency_api.source("agency-a")
    campaigns = [
        {"_id": "c1", "title": "Summer Push", "posts": ["p1", "p2", "p3"]},
        {"_id": "c2", "title": "Glass Tour"},
        {"_id": "c3", "title": "Night Drive"},
    ]
    agency_api.add("agency-a", "campaign", *campaigns)
    agency_api.add("agency-a", "post", _post("p1", "c1", "nova"), _post("p3", "c1", "kai"))
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(store, sources=[source], client_factory=agency_api.client_factory(http_client))
            await engine.sync_campaigns()
            agency_api.records[("agency-a", "campaign")].remove(campaigns[1])
            agency_api.fail_detail("agency-a", "campaign", "c3")
            agency_api.fail_detail("agency-a", "post", "p3")
            clock.now = T0 + timedelta(minutes=20)
            return await engine.run_creator_discovery_sweep()

    result = asyncio.run(run())

    assert (result.eligible, result.fetched, result.skipped, result.failed) == (3, 1, 1, 2)
    assert (result.post_fetched, result.post_skipped, result.post_inserted) == (1, 1, 1)
    assert result.new_creators == 1


def test_discovery_counts_non_json_responses_as_failed_items(agency_api) -> None:
    source = agency_api.source("agency-a")
    agency_api.add(
        "agency-a",
        "campaign",
        {"_id": "c1", "title": "Summer Push", "posts": ["p1", "p2"]},
        {"_id": "c2", "title": "Glass Tour"},
    )
    agency_api.add("agency-a", "post", _post("p1", "c1", "nova"), _post("p2", "c1", "kai"))
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(store, sources=[source], client_factory=agency_api.client_factory(http_client))
            await engine.sync_campaigns()
            agency_api.serve_html("agency-a", "campaign", "c2")
            agency_api.serve_html("agency-a", "post", "p1")
            clock.now = T0 + timedelta(minutes=20)
            return await engine.run_creator_discovery_sweep()

    result = asyncio.run(run())

    assert (result.eligible, result.fetched, result.failed) == (2, 1, 2)
    assert (result.post_fetched, result.post_inserted) == (1, 1)
    assert sorted(row["post_id"] for row in store.posts.values()) == ["p2"]


def test_sweep_skips_campaigns_from_unconfigured_sources(agency_api) -> None:
    agency_api.add("agency-a", "campaign", {"_id": "c1", "title": "Summer Push"})
    agency_api.add("agency-b", "campaign", {"_id": "k1", "title": "Glass Tour"})
    clock = Clock(T0)
    store = InMemoryRepository(clock=clock)

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            factory = agency_api.client_factory(http_client)
            both = [agency_api.source("agency-a"), agency_api.source("agency-b")]
            await SyncEngine(store, sources=both, client_factory=factory).sync_campaigns()
            clock.now = T0 + timedelta(hours=1)
            only_a = SyncEngine(store, sources=[agency_api.source("agency-a")], client_factory=factory)
            return await only_a.run_creator_discovery_sweep()

    result = asyncio.run(run())

    assert (result.eligible, result.fetched, result.skipped) == (2, 1, 1)


def test_zero_limit_sweep_does_nothing(agency_api) -> None:
    store = InMemoryRepository()

    async def run() -> SweepResult:
        async with agency_api.http_client() as http_client:
            engine = SyncEngine(
                store,
                sources=[agency_api.source("agency-a")],
                client_factory=agency_api.client_factory(http_client),
            )
            return await engine.run_creator_discovery_sweep(SyncOptions(discovery_campaign_limit=0))

    assert asyncio.run(run()) == SweepResult()
    assert agency_api.requests == []


def test_run_worker_pool_bounds_concurrency_and_keeps_order() -> None:
    active = 0
    peak = 0

    async def handler(item: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001 * (5 - item % 5))
        active -= 1
        return item * 2

    results = asyncio.run(run_worker_pool(list(range(20)), handler, concurrency=3))

    assert results == [item * 2 for item in range(20)]
    assert peak == 3
    assert asyncio.run(run_worker_pool([], handler, concurrency=3)) == []


def test_collect_post_refs_dedupes_and_applies_limits() -> None:
    raw_campaigns = [
        ("agency-a", {"posts": ["p1", "p2", "p3"]}),
        ("agency-a", {"posts": ["p2", "p4"]}),
        ("agency-b", {"posts": ["p1"]}),
    ]

    refs = collect_post_refs(raw_campaigns, per_campaign=2, global_limit=10)
    assert [(ref.source_key, ref.post_id) for ref in refs] == [
        ("agency-a", "p1"),
        ("agency-a", "p2"),
        ("agency-a", "p4"),
        ("agency-b", "p1"),
    ]
    assert len(collect_post_refs(raw_campaigns, per_campaign=5, global_limit=2)) == 2
    assert collect_post_refs(raw_campaigns, per_campaign=0, global_limit=10) == []
