from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import httpx
import pytest

from creatorcore.core.access import AccessContext
from creatorcore.services.genre_classifier import GenreClassifier
from creatorcore.services.genre_search import GenreSearchClient
from creatorcore.services.repository import PostgresRepository
from creatorcore.services.sync import SyncEngine

SYSTEM = AccessContext.system()
T = TypeVar("T")

TABLES = (
    "entity_genre_labels",
    "cc_genre_classification_runs",
    "cc_genre_cache",
    "cc_campaign_review_state",
    "cc_creator_review_state",
    "cc_campaign_metrics",
    "cc_dashboard_stats_org_1m",
    "cc_creators",
    "cc_posts",
    "cc_campaigns",
    "cc_sync_state",
    "cc_agencies",
)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("CREATORCORE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require CREATORCORE_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture
def repository(database_url: str) -> PostgresRepository:
    repo = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=4)
    _run(repo.migrate())
    _run(repo.close())
    _run(_truncate_tables(database_url))
    return repo


def test_incremental_sync_dedupes_posts_across_sources(repository: PostgresRepository, agency_api, database_url: str) -> None:
    sources = [agency_api.source("agency-a"), agency_api.source("agency-b")]
    agency_api.add("agency-a", "campaign", {"_id": "c1", "title": "Drake - New Single", "organization": "org-1"})
    agency_api.add("agency-b", "campaign", {"_id": "k1", "title": "Drake - New Single", "organization": "org-1"})
    agency_api.add(
        "agency-a",
        "post",
        {"_id": "p1", "campaign": "c1", "postUrl": "https://www.tiktok.com/@nova/video/1", "Views": 500, "username": "nova"},
    )
    agency_api.add(
        "agency-b",
        "post",
        {"_id": "q9", "campaign": "k1", "postUrl": "https://www.tiktok.com/@nova/video/1/", "Views": 800, "username": "Nova"},
    )

    async def run() -> tuple[Any, Any, dict[str, Any], list[asyncpg.Record]]:
        try:
            async with agency_api.http_client() as http_client:
                engine = SyncEngine(repository, sources=sources, client_factory=agency_api.client_factory(http_client))
                await engine.register_sources()
                first = await engine.sync_campaigns()
                second = await engine.sync_campaigns()
                await engine.sync_posts()
                await engine.refresh_rollups()
            stats = await repository.get_aggregate_stats(AccessContext(org_id="org-1", role="member"))
        finally:
            await repository.close()

        conn = await asyncpg.connect(database_url)
        try:
            posts = await conn.fetch("select source_key, post_id, views from cc_posts")
        finally:
            await conn.close()
        return first, second, stats, posts

    first, second, stats, posts = _run(run())

    assert (first.inserted, second.inserted, second.updated) == (2, 0, 2)
    assert [(row["source_key"], row["post_id"], row["views"]) for row in posts] == [("agency-a", "p1", 800)]
    assert stats["total_campaigns"] == 2
    assert stats["total_views"] == 800
    assert stats["total_creators"] == 1


def test_genre_classifier_against_postgres(repository: PostgresRepository, agency_api) -> None:
    agency_api.add("agency-a", "campaign", {"_id": "c1", "title": "Drake - New Single"}, {"_id": "c2", "title": "!!!"})

    def no_search(_: httpx.Request) -> httpx.Response:
        raise AssertionError("search tier must not be reached")

    async def run() -> tuple[Any, int]:
        try:
            async with agency_api.http_client() as http_client:
                await SyncEngine(
                    repository,
                    sources=[agency_api.source("agency-a")],
                    client_factory=agency_api.client_factory(http_client),
                ).sync_campaigns()
            async with httpx.AsyncClient(transport=httpx.MockTransport(no_search)) as search_http:
                search = GenreSearchClient("token", search_url="https://search.test/web", http_client=search_http)
                result = await GenreClassifier(repository, search).run()
            remaining = await repository.count_unclassified_campaigns(SYSTEM)
        finally:
            await repository.close()
        return result, remaining

    result, remaining = _run(run())

    assert (result.total_candidates, result.heuristic_hits, result.marked_unclassified) == (2, 1, 1)
    assert result.run_id is not None
    assert remaining == 1


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _truncate_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(f"truncate table {', '.join(TABLES)} restart identity cascade")
    finally:
        await conn.close()
