from datetime import datetime, timezone
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from creatorcore.core.config import Settings, get_settings
from creatorcore.core.security import require_cron_secret
from creatorcore.schemas.sync import (
    FullSyncOut,
    GenreRunOut,
    PendingHydrationOut,
    RollupRefreshOut,
    SweepResultOut,
    SyncResultOut,
)
from creatorcore.services.genre_classifier import GenreClassifier
from creatorcore.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from creatorcore.services.sync import SyncEngine, SyncOptions

router = APIRouter(dependencies=[Depends(require_cron_secret)])


def get_sync_engine(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> SyncEngine:
    return SyncEngine.from_settings(settings, repository)


def get_genre_classifier(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> GenreClassifier:
    return GenreClassifier.from_settings(settings, repository)


def get_sync_options(
    settings: Settings = Depends(get_settings),
    campaign_pages: int | None = Query(default=None, le=500),
    post_pages: int | None = Query(default=None, le=500),
    pending_limit: int | None = Query(default=None, ge=0, le=5000),
    pending_min_age_minutes: int | None = Query(default=None, ge=0),
    pending_posts_per_campaign: int | None = Query(default=None, ge=0, le=1000),
    pending_post_fetch_limit: int | None = Query(default=None, ge=0, le=20000),
    pending_post_concurrency: int | None = Query(default=None, ge=1, le=50),
    discovery_campaign_limit: int | None = Query(default=None, ge=0, le=5000),
    discovery_min_age_minutes: int | None = Query(default=None, ge=0),
    discovery_posts_per_campaign: int | None = Query(default=None, ge=0, le=1000),
    discovery_post_fetch_limit: int | None = Query(default=None, ge=0, le=20000),
    discovery_post_concurrency: int | None = Query(default=None, ge=1, le=50),
) -> SyncOptions:
    return SyncOptions.from_settings(
        settings,
        campaign_pages=campaign_pages,
        post_pages=post_pages,
        pending_limit=pending_limit,
        pending_min_age_minutes=pending_min_age_minutes,
        pending_posts_per_campaign=pending_posts_per_campaign,
        pending_post_fetch_limit=pending_post_fetch_limit,
        pending_post_concurrency=pending_post_concurrency,
        discovery_campaign_limit=discovery_campaign_limit,
        discovery_min_age_minutes=discovery_min_age_minutes,
        discovery_posts_per_campaign=discovery_posts_per_campaign,
        discovery_post_fetch_limit=discovery_post_fetch_limit,
        discovery_post_concurrency=discovery_post_concurrency,
    )


@router.post("/sync", response_model=FullSyncOut)
async def run_full_sync(
    engine: SyncEngine = Depends(get_sync_engine),
    options: SyncOptions = Depends(get_sync_options),
) -> FullSyncOut:
    try:
        result = await engine.run_full_sync(options)
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return FullSyncOut.model_validate(result)


@router.post("/sync/campaigns", response_model=SyncResultOut)
async def sync_campaigns(
    engine: SyncEngine = Depends(get_sync_engine),
    options: SyncOptions = Depends(get_sync_options),
) -> SyncResultOut:
    try:
        await engine.register_sources()
        result = await engine.sync_campaigns(options)
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return SyncResultOut.model_validate(result)


@router.post("/sync/posts", response_model=SyncResultOut)
async def sync_posts(
    engine: SyncEngine = Depends(get_sync_engine),
    options: SyncOptions = Depends(get_sync_options),
) -> SyncResultOut:
    try:
        await engine.register_sources()
        result = await engine.sync_posts(options)
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return SyncResultOut.model_validate(result)


@router.post("/pending-hydrate", response_model=PendingHydrationOut)
async def pending_hydrate(
    engine: SyncEngine = Depends(get_sync_engine),
    options: SyncOptions = Depends(get_sync_options),
) -> PendingHydrationOut:
    try:
        pending = await engine.run_pending_hydration(options)
        discovery = await engine.run_creator_discovery_sweep(options)
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return PendingHydrationOut(
        timestamp=datetime.now(timezone.utc),
        pending_hydration=SweepResultOut.model_validate(pending),
        creator_discovery=SweepResultOut.model_validate(discovery),
    )


@router.post("/discovery", response_model=SweepResultOut)
async def creator_discovery(
    engine: SyncEngine = Depends(get_sync_engine),
    options: SyncOptions = Depends(get_sync_options),
) -> SweepResultOut:
    try:
        result = await engine.run_creator_discovery_sweep(options)
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return SweepResultOut.model_validate(result)


@router.post("/rollups", response_model=RollupRefreshOut)
async def refresh_rollups(engine: SyncEngine = Depends(get_sync_engine)) -> RollupRefreshOut:
    try:
        refreshed_at = await engine.refresh_rollups()
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return RollupRefreshOut(refreshed_at=refreshed_at)


@router.post("/genre", response_model=GenreRunOut)
async def classify_genres(classifier: GenreClassifier = Depends(get_genre_classifier)) -> GenreRunOut:
    try:
        result = await classifier.run()
    except RepositoryError as exc:
        _raise_repository_error(exc)
    return GenreRunOut.model_validate(result)


def _raise_repository_error(exc: RepositoryError) -> NoReturn:
    if isinstance(exc, RepositoryUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if isinstance(exc, RepositoryForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, RepositoryValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, RepositoryConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
