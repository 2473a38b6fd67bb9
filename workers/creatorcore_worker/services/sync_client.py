from __future__ import annotations

from typing import Any

import httpx


class SyncTriggerClient:
    def __init__(
        self,
        base_url: str,
        cron_secret: str,
        *,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {cron_secret}"}
        self.timeout = timeout
        self._transport = transport

    async def run_full_sync(self, **overrides: int) -> dict[str, Any]:
        return await self._trigger("/creatorcore/sync", overrides)

    async def run_pending_hydration(self, **overrides: int) -> dict[str, Any]:
        return await self._trigger("/creatorcore/pending-hydrate", overrides)

    async def run_genre_classification(self) -> dict[str, Any]:
        return await self._trigger("/creatorcore/genre", {})

    async def _trigger(self, path: str, params: dict[str, int]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}{path}",
                params={key: value for key, value in params.items() if value is not None},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()
