from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import logging
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
ENTITY_CAMPAIGN = "campaign"
ENTITY_POST = "post"
ENTITIES = {ENTITY_CAMPAIGN, ENTITY_POST}


class CreatorCoreAPIError(Exception):
    """Raised for a non-2xx upstream response other than a single-item 404, or an undecodable body."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"CreatorCore API error: {status_code} {message}".strip())
        self.status_code = status_code


@dataclass(slots=True)
class FetchPage:
    results: list[dict[str, Any]]
    remaining: int
    count: int
    cursor: int

    @property
    def next_cursor(self) -> int:
        return self.cursor + self.count

    @property
    def has_more(self) -> bool:
        return self.remaining > 0 and len(self.results) > 0


@dataclass(slots=True)
class FetchBatch:
    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: int = 0
    has_more: bool = False
    pages: int = 0


class CreatorCoreClient:
    """Cursor-paginated reader for one agency source."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def fetch_page(self, entity: str, cursor: int, limit: int = PAGE_LIMIT) -> FetchPage:
        _require_entity(entity)
        safe_limit = min(PAGE_LIMIT, max(1, limit))
        response = await self._get(f"/{entity}", params={"cursor": max(0, cursor), "limit": safe_limit})
        if response.is_error:
            raise CreatorCoreAPIError(response.status_code, response.reason_phrase)

        envelope = _response_body(_decode_json(response))
        results = envelope.get("results")
        page = FetchPage(
            results=[item for item in results if isinstance(item, dict)] if isinstance(results, list) else [],
            remaining=_as_int(envelope.get("remaining"), default=0),
            count=_as_int(envelope.get("count"), default=0),
            cursor=_as_int(envelope.get("cursor"), default=cursor),
        )
        logger.debug(
            "fetched page base=%s entity=%s cursor=%s count=%s remaining=%s",
            self.base_url,
            entity,
            page.cursor,
            page.count,
            page.remaining,
        )
        return page

    async def fetch_by_id(self, entity: str, record_id: str) -> dict[str, Any] | None:
        _require_entity(entity)
        normalized = record_id.strip()
        if not normalized:
            return None

        response = await self._get(f"/{entity}/{quote(normalized, safe='')}")
        if response.status_code == 404:
            return None
        if response.is_error:
            raise CreatorCoreAPIError(response.status_code, response.reason_phrase)
        payload = _decode_json(response)
        record = payload.get("response") if isinstance(payload, dict) else None
        return record if isinstance(record, dict) else None

    async def iter_pages(
        self,
        entity: str,
        start_cursor: int,
        *,
        max_pages: int,
        limit: int = PAGE_LIMIT,
    ) -> AsyncIterator[FetchPage]:
        cursor = max(0, start_cursor)
        for _ in range(max(1, max_pages)):
            page = await self.fetch_page(entity, cursor, limit)
            yield page
            cursor = page.next_cursor
            if not page.has_more:
                return

    async def fetch_campaigns(self, start_cursor: int = 0, *, max_pages: int = 10) -> FetchBatch:
        return await self._collect(ENTITY_CAMPAIGN, start_cursor, max_pages=max_pages)

    async def fetch_posts(self, start_cursor: int = 0, *, max_pages: int = 20) -> FetchBatch:
        return await self._collect(ENTITY_POST, start_cursor, max_pages=max_pages)

    async def _collect(self, entity: str, start_cursor: int, *, max_pages: int) -> FetchBatch:
        batch = FetchBatch(next_cursor=start_cursor, has_more=True)
        async for page in self.iter_pages(entity, start_cursor, max_pages=max_pages):
            batch.records.extend(page.results)
            batch.next_cursor = page.next_cursor
            batch.has_more = page.has_more
            batch.pages += 1
        return batch

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http_client is not None:
            return await self._http_client.get(url, params=params)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(url, params=params)


def _require_entity(entity: str) -> None:
    if entity not in ENTITIES:
        raise ValueError(f"unsupported entity: {entity}")


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise CreatorCoreAPIError(response.status_code, "response body is not valid JSON") from exc


def _response_body(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    if isinstance(payload.get("response"), dict):
        return payload["response"]
    if "results" in payload:
        return payload
    return {}


def _as_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
