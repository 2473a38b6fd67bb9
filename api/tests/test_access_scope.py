from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from creatorcore.core.access import UNKNOWN_ORG_ID, AccessContext, build_scope_predicate, org_bucket
from creatorcore.services.normalize import normalize_campaign, normalize_post
from creatorcore.services.repository import (
    PostWrite,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from creatorcore.services.store import InMemoryRepository

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SYSTEM = AccessContext.system()
ORG_ONE = AccessContext(org_id="org-1", role="member")
ORG_TWO = AccessContext(org_id="org-2", role="member")


def _store() -> InMemoryRepository:
    store = InMemoryRepository(clock=lambda: T0)
    raw_campaigns = [
        {"_id": "c1", "title": "Summer Push", "organization": "org-1", "budget": 100},
        {"_id": "c2", "title": "Glass Tour", "organization": "org-2", "budget": 200},
        {"_id": "c3", "title": "Night Drive", "budget": 300},
    ]

    async def seed() -> None:
        campaigns = [normalize_campaign(raw, "legacy") for raw in raw_campaigns]
        await store.upsert_campaigns(SYSTEM, [campaign for campaign in campaigns if campaign is not None])
        post = normalize_post({"_id": "p1", "campaign": "c2", "username": "kai", "Views": 10}, "legacy")
        assert post is not None
        await store.upsert_posts(SYSTEM, [PostWrite(post=post, campaign_pk=2)])
        store.creators["kai"] = {"username": "kai"}
        await store.refresh_rollups(SYSTEM)

    asyncio.run(seed())
    return store


def test_access_context_scoping_rules() -> None:
    assert SYSTEM.unscoped
    assert AccessContext(org_id=None, role="admin").allows("org-9")
    assert ORG_ONE.allows("org-1") and not ORG_ONE.allows("org-2")
    assert not AccessContext(org_id=None, role="member").allows("org-1")

    unknown = AccessContext(org_id=UNKNOWN_ORG_ID, role="member")
    assert unknown.allows(None) and unknown.allows("  ")
    assert not unknown.allows("org-1")
    assert org_bucket("  ") == UNKNOWN_ORG_ID
    assert org_bucket(" org-1 ") == "org-1"


def test_scope_predicate_rendering() -> None:
    assert build_scope_predicate(SYSTEM, "c.org_id", start_index=3) == ("true", [])
    assert build_scope_predicate(ORG_ONE, "c.org_id", start_index=3) == ("c.org_id = $3", ["org-1"])
    assert build_scope_predicate(AccessContext(org_id=None, role="member"), "c.org_id", start_index=1) == (
        "false",
        [],
    )
    clause, params = build_scope_predicate(AccessContext(org_id=UNKNOWN_ORG_ID, role="member"), "c.org_id", start_index=1)
    assert "is null" in clause and params == []


def test_stats_are_scoped_to_the_callers_organization() -> None:
    store = _store()

    async def run() -> list[dict]:
        return [
            await store.get_aggregate_stats(ctx)
            for ctx in (
                SYSTEM,
                ORG_ONE,
                AccessContext(org_id=UNKNOWN_ORG_ID, role="member"),
                AccessContext(org_id=None, role="member"),
            )
        ]

    everything, org_one, unknown, nobody = asyncio.run(run())

    assert (everything["total_campaigns"], everything["total_budget"]) == (3, 600)
    assert (org_one["total_campaigns"], org_one["total_budget"], org_one["total_posts"]) == (1, 100, 0)
    assert (unknown["total_campaigns"], unknown["total_budget"]) == (1, 300)
    assert nobody["total_campaigns"] == 0


def test_campaign_listing_is_scoped_and_filtered() -> None:
    store = _store()

    async def run() -> tuple[list[dict], list[dict], list[dict]]:
        return (
            await store.list_campaigns(SYSTEM),
            await store.list_campaigns(ORG_TWO),
            await store.list_campaigns(SYSTEM, search="glass"),
        )

    everything, org_two, searched = asyncio.run(run())

    assert [row["campaign_pk"] for row in everything] == [3, 2, 1]
    assert [row["campaign_id"] for row in org_two] == ["c2"]
    assert org_two[0]["actual_posts"] == 1
    assert [row["title"] for row in searched] == ["Glass Tour"]


def test_campaign_listing_budget_and_intake_filters() -> None:
    store = _store()
    store.campaigns[1]["first_seen_at"] = T0 - timedelta(days=3)

    async def run() -> tuple[list[dict], list[dict], list[dict], list[dict]]:
        return (
            await store.list_campaigns(SYSTEM, min_budget=150),
            await store.list_campaigns(SYSTEM, min_budget=100, max_budget=200),
            await store.list_campaigns(SYSTEM, intake="24h"),
            await store.list_campaigns(SYSTEM, intake="7d"),
        )

    above, between, last_day, last_week = asyncio.run(run())

    assert [row["campaign_pk"] for row in above] == [3, 2]
    assert [row["campaign_pk"] for row in between] == [2, 1]
    assert [row["campaign_pk"] for row in last_day] == [3, 2]
    assert [row["campaign_pk"] for row in last_week] == [3, 2, 1]

    with pytest.raises(RepositoryValidationError):
        asyncio.run(store.list_campaigns(SYSTEM, intake="30d"))


def test_bulk_writes_require_an_unscoped_context() -> None:
    store = InMemoryRepository()
    campaign = normalize_campaign({"_id": "c1", "title": "Summer Push"}, "legacy")
    assert campaign is not None

    with pytest.raises(RepositoryForbiddenError):
        asyncio.run(store.upsert_campaigns(ORG_ONE, [campaign]))
    with pytest.raises(RepositoryForbiddenError):
        asyncio.run(store.refresh_rollups(ORG_ONE))
    assert store.campaigns == {}


def test_campaign_pk_lookup_hides_other_organizations() -> None:
    store = _store()

    assert asyncio.run(store.get_campaign_pks(ORG_ONE, "legacy", ["c1", "c2"])) == {"c1": 1}
    assert asyncio.run(store.get_campaign_pks(SYSTEM, "legacy", ["c1", "c2", "zz"])) == {"c1": 1, "c2": 2}


def test_mark_campaign_reviewed_enforces_scope() -> None:
    store = _store()

    review = asyncio.run(store.mark_campaign_reviewed(ORG_ONE, 1, reviewed_by="ops@example.com", notes="ok"))
    assert review["reviewed_at"] == T0
    assert review["reviewed_by"] == "ops@example.com"

    with pytest.raises(RepositoryForbiddenError):
        asyncio.run(store.mark_campaign_reviewed(ORG_ONE, 2))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(store.mark_campaign_reviewed(ORG_ONE, 99))

    summary = asyncio.run(store.list_campaigns(ORG_ONE))[0]
    assert summary["needs_review"] is False


def test_mark_creator_reviewed_requires_visibility() -> None:
    store = _store()

    with pytest.raises(RepositoryValidationError):
        asyncio.run(store.mark_creator_reviewed(SYSTEM, "  "))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(store.mark_creator_reviewed(SYSTEM, "nobody"))
    with pytest.raises(RepositoryForbiddenError):
        asyncio.run(store.mark_creator_reviewed(ORG_ONE, "kai"))

    review = asyncio.run(store.mark_creator_reviewed(ORG_TWO, " KAI "))
    assert review["username"] == "kai"
