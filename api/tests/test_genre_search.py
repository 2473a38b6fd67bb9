from __future__ import annotations

import asyncio
from typing import Any

import httpx

from creatorcore.services.genre_search import GenreSearchClient, resolve_search_scores, score_genre_terms

SEARCH_URL = "https://search.test/res/v1/web/search"


def _search(handler, api_key: str | None = "token") -> Any:
    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = GenreSearchClient(api_key, search_url=SEARCH_URL, http_client=http_client)
            return await client.search("DJ Nova")

    return asyncio.run(run())


def test_score_genre_terms_counts_whole_word_hits() -> None:
    scores = score_genre_terms("DJ Nova electronic EDM techno dubstep producer with a pop crossover")
    assert scores == {"Electronic/EDM": 5, "Pop": 1}


def test_resolve_search_scores_tiers_confidence() -> None:
    high = resolve_search_scores({"Electronic/EDM": 5, "Pop": 1})
    assert high is not None and (high.genre, high.confidence) == ("Electronic/EDM", "high")

    medium = resolve_search_scores({"Pop": 4, "Rock": 3})
    assert medium is not None and medium.confidence == "medium"

    low = resolve_search_scores({"Folk": 1})
    assert low is not None and low.confidence == "low"

    assert resolve_search_scores({}) is None


def test_search_sends_query_and_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"web": {"results": [{"title": "DJ Nova", "description": "electronic EDM techno dubstep producer"}]}},
        )

    result = _search(handler)

    assert result is not None
    assert result.genre == "Electronic/EDM"
    assert seen[0].headers["X-Subscription-Token"] == "token"
    assert seen[0].url.params["q"] == '"DJ Nova" music genre'


def test_search_failures_resolve_to_no_result() -> None:
    assert _search(lambda _: httpx.Response(500)) is None
    assert _search(lambda _: httpx.Response(200, content=b"not json")) is None
    assert _search(lambda _: httpx.Response(200, json={"web": {"results": []}})) is None


def test_search_is_disabled_without_api_key() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("search must not be called without an API key")

    assert _search(handler, api_key=None) is None
    assert _search(handler, api_key="   ") is None
