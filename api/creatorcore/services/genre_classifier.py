from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Any

import httpx
from opentelemetry import trace

from creatorcore.core.access import AccessContext
from creatorcore.core.config import Settings
from creatorcore.services.genre_detector import (
    GENRE_OTHER,
    GENRE_UNCLASSIFIED,
    confidence_score,
    detect_genre_heuristic,
    parse_artist_from_title,
)
from creatorcore.services.genre_search import GenreSearchClient, GenreSearchResult
from creatorcore.services.repository import (
    CLASSIFICATION_COUNTER_FIELDS,
    CachedGenre,
    GenreAssignment,
    GenreCandidate,
    RepositoryError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYSTEM_CONTEXT = AccessContext.system()

SOURCE_HEURISTIC = "heuristic"
SOURCE_CACHE = "cache"
SOURCE_SEARCH = "search"
SOURCE_NO_ARTIST = "no_artist_parse"
SOURCE_BUDGET_EXHAUSTED = "search_budget_exhausted"
SOURCE_SEARCH_UNRESOLVED = "search_unresolved"


@dataclass(slots=True)
class ClassificationRunResult:
    run_id: int | None = None
    total_candidates: int = 0
    classified: int = 0
    heuristic_hits: int = 0
    search_hits: int = 0
    cache_hits: int = 0
    marked_other: int = 0
    marked_unclassified: int = 0
    search_calls: int = 0
    failures: int = 0
    remaining: int = 0
    creator_labels: int = 0

    def counters(self) -> dict[str, int]:
        values = asdict(self)
        return {name: int(values[name]) for name in CLASSIFICATION_COUNTER_FIELDS}


class GenreClassifier:
    """Tags unclassified campaigns: heuristic, then cache, then a budgeted web search."""

    def __init__(
        self,
        repository: Any,
        search_client: GenreSearchClient,
        *,
        max_search_calls: int = 200,
        candidate_limit: int = 500,
    ) -> None:
        self.repository = repository
        self.search_client = search_client
        self.max_search_calls = max(0, max_search_calls)
        self.candidate_limit = max(1, candidate_limit)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: Any,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> GenreClassifier:
        return cls(
            repository,
            GenreSearchClient(
                settings.genre_search_api_key,
                search_url=settings.genre_search_url,
                timeout_seconds=settings.genre_search_timeout_seconds,
                http_client=http_client,
            ),
            max_search_calls=settings.genre_max_search_calls,
            candidate_limit=settings.genre_candidate_limit,
        )

    async def run(self) -> ClassificationRunResult:
        result = ClassificationRunResult(run_id=await self._start_run())
        with tracer.start_as_current_span("creatorcore.genre.classify") as span:
            try:
                candidates = await self.repository.list_genre_candidates(SYSTEM_CONTEXT, limit=self.candidate_limit)
                result.total_candidates = len(candidates)
                for candidate in candidates:
                    assignment = await self.classify(candidate, result)
                    if assignment is None:
                        continue
                    if assignment.genre == GENRE_OTHER:
                        result.marked_other += 1
                    await self.repository.apply_campaign_genre(SYSTEM_CONTEXT, assignment)

                if candidates:
                    result.creator_labels = await self.repository.refresh_creator_genre_labels(SYSTEM_CONTEXT)
                result.remaining = await self.repository.count_unclassified_campaigns(SYSTEM_CONTEXT)
                result.classified = result.total_candidates - result.marked_unclassified
            except Exception as exc:
                span.record_exception(exc)
                await self._finish_run(result, status="failed", error_message=str(exc))
                raise
            span.set_attribute("creatorcore.genre.candidates", result.total_candidates)
            span.set_attribute("creatorcore.genre.search_calls", result.search_calls)

        await self._finish_run(result, status="success")
        logger.info(
            "genre classification candidates=%s classified=%s heuristic=%s search=%s cache=%s "
            "unclassified=%s search_calls=%s remaining=%s",
            result.total_candidates,
            result.classified,
            result.heuristic_hits,
            result.search_hits,
            result.cache_hits,
            result.marked_unclassified,
            result.search_calls,
            result.remaining,
        )
        return result

    async def classify(self, candidate: GenreCandidate, result: ClassificationRunResult) -> GenreAssignment | None:
        title = (candidate.title or "").strip()
        if not title or candidate.campaign_pk <= 0:
            result.failures += 1
            return None
        evidence: dict[str, Any] = {"title": title}

        heuristic = detect_genre_heuristic(title)
        if heuristic is not None:
            result.heuristic_hits += 1
            evidence["heuristic_confidence"] = heuristic.confidence
            return _assignment(candidate, heuristic.genre, heuristic.confidence, SOURCE_HEURISTIC, evidence)

        artist = parse_artist_from_title(title)
        if not artist:
            result.marked_unclassified += 1
            evidence["reason"] = "artist_not_detected"
            return _assignment(candidate, GENRE_UNCLASSIFIED, None, SOURCE_NO_ARTIST, evidence)
        evidence["artist"] = artist

        if result.search_calls >= self.max_search_calls:
            cached = await self._lookup_cache(artist)
            if cached is not None and cached.genre:
                result.cache_hits += 1
                return _assignment(candidate, cached.genre, cached.confidence or "medium", SOURCE_CACHE, evidence)
            result.marked_unclassified += 1
            evidence["reason"] = SOURCE_BUDGET_EXHAUSTED
            return _assignment(candidate, GENRE_UNCLASSIFIED, None, SOURCE_BUDGET_EXHAUSTED, evidence)

        found = await self._cached_or_search(artist)
        result.search_calls += 1
        if found is not None:
            result.search_hits += 1
            return _assignment(candidate, found.genre, found.confidence, SOURCE_SEARCH, evidence)
        result.marked_unclassified += 1
        evidence["reason"] = SOURCE_SEARCH_UNRESOLVED
        return _assignment(candidate, GENRE_UNCLASSIFIED, None, SOURCE_SEARCH_UNRESOLVED, evidence)

    async def _lookup_cache(self, artist: str) -> CachedGenre | None:
        try:
            return await self.repository.get_cached_genre(SYSTEM_CONTEXT, artist)
        except RepositoryError:
            logger.warning("genre cache lookup failed artist=%s", artist, exc_info=True)
            return None

    async def _cached_or_search(self, artist: str) -> GenreSearchResult | None:
        cached = await self._lookup_cache(artist)
        if cached is not None:
            # A cached null genre records an earlier search that found nothing.
            if not cached.genre:
                return None
            return GenreSearchResult(genre=cached.genre, confidence=cached.confidence or "medium")

        found = await self.search_client.search(artist)
        if not self.search_client.enabled:
            return found
        try:
            await self.repository.cache_genre(
                SYSTEM_CONTEXT,
                artist,
                found.genre if found else None,
                found.confidence if found else None,
            )
        except RepositoryError:
            logger.warning("failed to cache genre result artist=%s", artist, exc_info=True)
        return found

    async def _start_run(self) -> int | None:
        try:
            return await self.repository.start_classification_run(SYSTEM_CONTEXT)
        except RepositoryError:
            logger.warning("failed to record classification run start", exc_info=True)
            return None

    async def _finish_run(
        self,
        result: ClassificationRunResult,
        *,
        status: str,
        error_message: str | None = None,
    ) -> None:
        if result.run_id is None:
            return
        try:
            await self.repository.finish_classification_run(
                SYSTEM_CONTEXT,
                result.run_id,
                status=status,
                counters=result.counters(),
                error_message=error_message,
            )
        except RepositoryError:
            logger.warning("failed to record classification run finish run_id=%s", result.run_id, exc_info=True)


def _assignment(
    candidate: GenreCandidate,
    genre: str,
    confidence: str | None,
    source: str,
    evidence: dict[str, Any],
) -> GenreAssignment:
    return GenreAssignment(
        campaign_pk=candidate.campaign_pk,
        genre=genre,
        confidence=min(1.0, max(0.0, confidence_score(confidence))),
        source=source,
        evidence=evidence,
    )
