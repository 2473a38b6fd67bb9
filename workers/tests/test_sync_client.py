from __future__ import annotations

import asyncio

import httpx
import pytest

from creatorcore_worker.services.sync_client import SyncTriggerClient


def test_trigger_posts_with_bearer_secret_and_overrides() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "path": request.url.path})

    client = SyncTriggerClient(
        "http://api.test/",
        "cron-secret",
        transport=httpx.MockTransport(handler),
    )

    result = asyncio.run(client.run_full_sync(campaign_pages=2, post_pages=None))
    asyncio.run(client.run_pending_hydration())
    asyncio.run(client.run_genre_classification())

    assert result == {"ok": True, "path": "/creatorcore/sync"}
    assert [request.method for request in seen] == ["POST", "POST", "POST"]
    assert [request.url.path for request in seen] == [
        "/creatorcore/sync",
        "/creatorcore/pending-hydrate",
        "/creatorcore/genre",
    ]
    assert dict(seen[0].url.params) == {"campaign_pages": "2"}
    assert all(request.headers["Authorization"] == "Bearer cron-secret" for request in seen)


def test_trigger_raises_on_error_status() -> None:
    client = SyncTriggerClient(
        "http://api.test",
        "wrong",
        transport=httpx.MockTransport(lambda _: httpx.Response(401, json={"detail": "invalid bearer token"})),
    )

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.run_genre_classification())
