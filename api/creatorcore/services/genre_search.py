from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

import httpx

from creatorcore.services.genre_detector import GENRE_TAXONOMY

logger = logging.getLogger(__name__)

SEARCH_RESULT_COUNT = 5

GENRE_SEARCH_TERMS: dict[str, tuple[str, ...]] = {
    "Hip-Hop/Rap": ("hip-hop", "hip hop", "rap", "rapper", "trap", "drill"),
    "Pop": ("pop", "pop music", "pop singer", "pop artist"),
    "R&B": ("r&b", "rnb", "r and b", "rhythm and blues", "soul", "neo-soul"),
    "Country": ("country", "country music", "country singer", "nashville"),
    "Rock": ("rock", "rock music", "metal", "punk", "alternative rock"),
    "Electronic/EDM": ("electronic", "edm", "house", "techno", "dubstep", "dj", "dance music"),
    "Latin": ("latin", "reggaeton", "latin pop", "latin music", "corrido", "regional mexicano"),
    "K-Pop": ("k-pop", "kpop", "k pop", "korean pop", "korean"),
    "Alternative": ("alternative", "alt-rock", "indie rock", "alternative rock"),
    "Indie": ("indie", "indie pop", "indie folk", "indie rock", "bedroom pop"),
    "Afrobeats": ("afrobeats", "afrobeat", "afropop", "amapiano", "nigerian"),
    "Reggaeton": ("reggaeton", "reggaetón", "perreo", "dembow"),
    "Gospel": ("gospel", "christian", "worship", "ccm", "christian music"),
    "Folk": ("folk", "folk music", "acoustic", "singer-songwriter", "americana"),
}

_TERM_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    genre: tuple(re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE) for term in terms)
    for genre, terms in GENRE_SEARCH_TERMS.items()
}


@dataclass(slots=True, frozen=True)
class GenreSearchResult:
    genre: str
    confidence: str
    score: int = 0


def score_genre_terms(text: str) -> dict[str, int]:
    lowered = text.lower()
    scores: dict[str, int] = {}
    for genre, patterns in _TERM_PATTERNS.items():
        hits = sum(len(pattern.findall(lowered)) for pattern in patterns)
        if hits:
            scores[genre] = hits
    return scores


def resolve_search_scores(scores: dict[str, int]) -> GenreSearchResult | None:
    """Pick the winning genre and tier its confidence by score and runner-up gap."""
    if not scores:
        return None
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    best_genre, best_score = ranked[0]
    second_score = ranked[1][1] if len(ranked) > 1 else 0

    if best_score >= 4 and best_score >= second_score * 2:
        confidence = "high"
    elif best_score >= 2:
        confidence = "medium"
    else:
        confidence = "low"

    if best_genre not in GENRE_TAXONOMY:
        return None
    return GenreSearchResult(genre=best_genre, confidence=confidence, score=best_score)


class GenreSearchClient:
    """Web-search backed genre lookup; disabled when no API key is configured."""

    def __init__(
        self,
        api_key: str | None,
        *,
        search_url: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key.strip() if api_key and api_key.strip() else None
        self.search_url = search_url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def enabled(self) -> bool:
        return self.api_key is not None

    async def search(self, artist_name: str) -> GenreSearchResult | None:
        if not self.enabled or not artist_name.strip():
            return None

        params = {"q": f'"{artist_name.strip()}" music genre', "count": SEARCH_RESULT_COUNT}
        headers = {"X-Subscription-Token": self.api_key or "", "Accept": "application/json"}
        try:
            response = await self._get(params=params, headers=headers)
            if response.is_error:
                logger.warning(
                    "genre search failed status=%s artist=%s",
                    response.status_code,
                    artist_name,
                )
                return None
            snippets = _result_snippets(response.json())
        except (httpx.HTTPError, ValueError):
            logger.exception("genre search request failed artist=%s", artist_name)
            return None

        if not snippets:
            return None
        return resolve_search_scores(score_genre_terms(" ".join(snippets)))

    async def _get(self, *, params: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(self.search_url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(self.search_url, params=params, headers=headers)


def _result_snippets(payload: Any) -> list[str]:
    if not isinstance(payload, dict):
        return []
    web = payload.get("web")
    results = web.get("results") if isinstance(web, dict) else None
    if not isinstance(results, list):
        return []
    snippets: list[str] = []
    for item in results:
        if not isinstance(item, dict):
            continue
        title = item.get("title") if isinstance(item.get("title"), str) else ""
        description = item.get("description") if isinstance(item.get("description"), str) else ""
        snippets.append(f"{title} {description}")
    return snippets
