from __future__ import annotations

from typing import Any

import httpx
import pytest

from creatorcore.services.fetch_client import CreatorCoreClient
from creatorcore.services.sources import AgencySource


class FakeAgencyAPI:
    """CreatorCore-shaped list and detail endpoints for any number of agency hosts."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.list_failures: dict[tuple[str, str], int] = {}
        self.detail_failures: set[tuple[str, str, str]] = set()
        self.html_responses: set[tuple[str, str, str]] = set()
        self.requests: list[httpx.Request] = []

    def source(self, key: str) -> AgencySource:
        return AgencySource(key=key, name=key.title(), base_url=f"https://{key}.test/api/1.1/obj")

    def add(self, source_key: str, entity: str, *records: dict[str, Any]) -> None:
        self.records.setdefault((source_key, entity), []).extend(records)

    def fail_list(self, source_key: str, entity: str, *, from_cursor: int) -> None:
        self.list_failures[(source_key, entity)] = from_cursor

    def fail_detail(self, source_key: str, entity: str, record_id: str) -> None:
        self.detail_failures.add((source_key, entity, record_id))

    def serve_html(self, source_key: str, entity: str, record_id: str = "") -> None:
        self.html_responses.add((source_key, entity, record_id))

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def client_factory(self, http_client: httpx.AsyncClient):
        def factory(source: AgencySource) -> CreatorCoreClient:
            return CreatorCoreClient(source.base_url, http_client=http_client)

        return factory

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        source_key = request.url.host.removesuffix(".test")
        _, _, tail = request.url.path.partition("/obj/")
        entity, _, record_id = tail.partition("/")
        rows = self.records.get((source_key, entity), [])
        if (source_key, entity, record_id) in self.html_responses:
            return httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})

        if record_id:
            if (source_key, entity, record_id) in self.detail_failures:
                return httpx.Response(500)
            for row in rows:
                if row.get("_id") == record_id:
                    return httpx.Response(200, json={"response": row})
            return httpx.Response(404)

        cursor = int(request.url.params.get("cursor", "0"))
        limit = int(request.url.params.get("limit", "100"))
        fail_from = self.list_failures.get((source_key, entity))
        if fail_from is not None and cursor >= fail_from:
            return httpx.Response(503)
        page = rows[cursor : cursor + limit]
        return httpx.Response(
            200,
            json={
                "response": {
                    "results": page,
                    "cursor": cursor,
                    "count": len(page),
                    "remaining": max(0, len(rows) - cursor - len(page)),
                }
            },
        )


@pytest.fixture
def agency_api() -> FakeAgencyAPI:
    return FakeAgencyAPI()
