from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from creatorcore.services.fetch_client import CreatorCoreAPIError, CreatorCoreClient

BASE_URL = "https://agency.test/api/1.1/obj"


def _page(results: list[dict[str, Any]], *, cursor: int, remaining: int) -> dict[str, Any]:
    return {"response": {"results": results, "cursor": cursor, "count": len(results), "remaining": remaining}}


def test_iter_pages_follows_cursor_until_remaining_is_zero() -> None:
    seen_cursors: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = request.url.params["cursor"]
        seen_cursors.append(cursor)
        assert request.url.params["limit"] == "100"
        if cursor == "0":
            return httpx.Response(200, json=_page([{"_id": "c1"}, {"_id": "c2"}], cursor=0, remaining=1))
        return httpx.Response(200, json=_page([{"_id": "c3"}], cursor=2, remaining=0))

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = CreatorCoreClient(f"{BASE_URL}/", http_client=http_client)
            return await client.fetch_campaigns(0, max_pages=5)

    batch = asyncio.run(run())
    assert seen_cursors == ["0", "2"]
    assert [record["_id"] for record in batch.records] == ["c1", "c2", "c3"]
    assert batch.next_cursor == 3
    assert batch.has_more is False
    assert batch.pages == 2


def test_iter_pages_stops_at_max_pages_with_more_remaining() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        cursor = int(request.url.params["cursor"])
        return httpx.Response(200, json=_page([{"_id": f"p{cursor}"}], cursor=cursor, remaining=50))

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            return await CreatorCoreClient(BASE_URL, http_client=http_client).fetch_posts(10, max_pages=2)

    batch = asyncio.run(run())
    assert batch.pages == 2
    assert batch.next_cursor == 12
    assert batch.has_more is True


def test_fetch_page_raises_on_upstream_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            await CreatorCoreClient(BASE_URL, http_client=http_client).fetch_page("campaign", 0)

    with pytest.raises(CreatorCoreAPIError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 502


def test_fetch_by_id_returns_none_for_404_and_quotes_ids() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.raw_path.decode())
        if request.url.path.endswith("/missing"):
            return httpx.Response(404)
        return httpx.Response(200, json={"response": {"_id": "a/b", "title": "Found"}})

    async def run() -> tuple[Any, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = CreatorCoreClient(BASE_URL, http_client=http_client)
            return await client.fetch_by_id("campaign", "missing"), await client.fetch_by_id("campaign", "a/b")

    missing, found = asyncio.run(run())
    assert missing is None
    assert found == {"_id": "a/b", "title": "Found"}
    assert requested[1].endswith("/campaign/a%2Fb")


def test_unknown_entity_is_rejected() -> None:
    with pytest.raises(ValueError):
        asyncio.run(CreatorCoreClient(BASE_URL).fetch_page("creator", 0))


def test_non_json_body_raises_api_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})

    async def run(entity_call: str) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = CreatorCoreClient(BASE_URL, http_client=http_client)
            if entity_call == "page":
                await client.fetch_page("post", 0)
            else:
                await client.fetch_by_id("post", "p1")

    for entity_call in ("page", "detail"):
        with pytest.raises(CreatorCoreAPIError) as exc_info:
            asyncio.run(run(entity_call))
        assert exc_info.value.status_code == 200


def test_fetch_page_accepts_a_flat_body() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": [{"_id": "c1"}], "cursor": 4, "count": 1, "remaining": 0})

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            return await CreatorCoreClient(BASE_URL, http_client=http_client).fetch_page("campaign", 4)

    page = asyncio.run(run())
    assert [record["_id"] for record in page.results] == ["c1"]
    assert page.next_cursor == 5
    assert page.has_more is False
