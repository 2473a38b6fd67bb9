from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from creatorcore.core.access import AccessContext
from creatorcore.core.config import get_settings
from creatorcore.main import app
from creatorcore.services.normalize import normalize_campaign, normalize_post
from creatorcore.services.repository import PostWrite, get_repository
from creatorcore.services.store import InMemoryRepository

SYSTEM = AccessContext.system()
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
AUTH = {"Authorization": "Bearer cron-secret"}


def _seeded_store() -> InMemoryRepository:
    store = InMemoryRepository(clock=lambda: T0)

    async def seed() -> None:
        campaigns = [
            normalize_campaign(
                {"_id": "c1", "title": "Drake - New Single", "organization": "org-1", "displayPlatforms": ["TikTok"]},
                "legacy",
            ),
            normalize_campaign({"_id": "c2", "title": "Glass Tour", "organization": "org-2"}, "legacy"),
        ]
        await store.upsert_campaigns(SYSTEM, [campaign for campaign in campaigns if campaign is not None])
        post = normalize_post(
            {
                "_id": "p1",
                "campaign": "c1",
                "postUrl": "https://www.tiktok.com/@nova/video/1",
                "Views": 250,
                "username": "nova",
                "platform": "TikTok",
            },
            "legacy",
        )
        assert post is not None
        await store.upsert_posts(SYSTEM, [PostWrite(post=post, campaign_pk=1)])
        store.creators["nova"] = {"username": "nova"}
        await store.refresh_rollups(SYSTEM)

    asyncio.run(seed())
    return store


@pytest.fixture
def dashboard_client() -> TestClient:
    os.environ["CREATORCORE_CRON_SECRET"] = "cron-secret"
    os.environ["CREATORCORE_STORAGE_BACKEND"] = "memory"
    get_settings.cache_clear()
    get_repository.cache_clear()

    store = _seeded_store()
    app.dependency_overrides[get_repository] = lambda: store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("CREATORCORE_CRON_SECRET", None)
    os.environ.pop("CREATORCORE_STORAGE_BACKEND", None)
    get_settings.cache_clear()
    get_repository.cache_clear()


def test_stats_default_to_member_role_scoped_by_org(dashboard_client: TestClient) -> None:
    response = dashboard_client.get("/dashboard/stats", headers={**AUTH, "X-Org-Id": "org-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["total_campaigns"] == 1
    assert body["total_views"] == 250
    assert body["top_platforms"] == [{"platform": "TikTok", "post_count": 1, "total_views": 250}]


def test_stats_without_org_are_empty_for_members(dashboard_client: TestClient) -> None:
    member = dashboard_client.get("/dashboard/stats", headers=AUTH)
    admin = dashboard_client.get("/dashboard/stats", headers={**AUTH, "X-Role": "Admin"})

    assert member.json()["total_campaigns"] == 0
    assert admin.json()["total_campaigns"] == 2


def test_dashboard_requires_cron_secret(dashboard_client: TestClient) -> None:
    assert dashboard_client.get("/dashboard/stats").status_code == 401
    assert dashboard_client.get("/dashboard/campaigns", headers={"X-Role": "admin"}).status_code == 401


def test_campaign_listing_filters(dashboard_client: TestClient) -> None:
    admin = {**AUTH, "X-Role": "admin"}

    everything = dashboard_client.get("/dashboard/campaigns", headers=admin)
    tiktok = dashboard_client.get("/dashboard/campaigns", params={"platform": "tiktok"}, headers=admin)
    org_two = dashboard_client.get("/dashboard/campaigns", headers={**AUTH, "X-Org-Id": "org-2"})

    assert [row["campaign_id"] for row in everything.json()] == ["c2", "c1"]
    assert [row["campaign_id"] for row in tiktok.json()] == ["c1"]
    assert tiktok.json()[0]["quality_status"] == "ready"
    assert [row["title"] for row in org_two.json()] == ["Glass Tour"]
    assert dashboard_client.get("/dashboard/campaigns", params={"limit": 0}, headers=admin).status_code == 422
    assert dashboard_client.get("/dashboard/campaigns", params={"intake": "30d"}, headers=admin).status_code == 422
    budgeted = dashboard_client.get("/dashboard/campaigns", params={"min_budget": 1, "intake": "7d"}, headers=admin)
    assert budgeted.json() == []


def test_campaign_review_maps_repository_errors(dashboard_client: TestClient) -> None:
    org_one = {**AUTH, "X-Org-Id": "org-1"}

    reviewed = dashboard_client.post(
        "/dashboard/campaigns/1/review",
        json={"reviewed_by": "ops@example.com", "notes": "looks fine"},
        headers=org_one,
    )
    forbidden = dashboard_client.post("/dashboard/campaigns/2/review", json={}, headers=org_one)
    missing = dashboard_client.post("/dashboard/campaigns/99/review", json={}, headers=org_one)

    assert reviewed.status_code == 200
    assert reviewed.json()["reviewed_by"] == "ops@example.com"
    assert forbidden.status_code == 403
    assert missing.status_code == 404

    listing = dashboard_client.get("/dashboard/campaigns", params={"needs_review": "true"}, headers=org_one)
    assert listing.json() == []


def test_creator_review(dashboard_client: TestClient) -> None:
    reviewed = dashboard_client.post("/dashboard/creators/Nova/review", json={}, headers={**AUTH, "X-Org-Id": "org-1"})
    forbidden = dashboard_client.post("/dashboard/creators/nova/review", json={}, headers={**AUTH, "X-Org-Id": "org-2"})
    missing = dashboard_client.post("/dashboard/creators/ghost/review", json={}, headers={**AUTH, "X-Role": "admin"})

    assert reviewed.status_code == 200
    assert reviewed.json()["username"] == "nova"
    assert forbidden.status_code == 403
    assert missing.status_code == 404
