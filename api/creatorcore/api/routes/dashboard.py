from fastapi import APIRouter, Depends, HTTPException, Query, status

from creatorcore.core.access import AccessContext
from creatorcore.core.security import get_access_context
from creatorcore.schemas.dashboard import (
    CampaignReviewOut,
    CampaignSummaryOut,
    CreatorReviewOut,
    DashboardStatsOut,
    ReviewRequest,
)
from creatorcore.services.repository import (
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/stats", response_model=DashboardStatsOut)
async def get_stats(
    ctx: AccessContext = Depends(get_access_context),
    repository=Depends(get_repository),
) -> DashboardStatsOut:
    try:
        stats = await repository.get_aggregate_stats(ctx)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DashboardStatsOut(**stats)


@router.get("/campaigns", response_model=list[CampaignSummaryOut])
async def list_campaigns(
    ctx: AccessContext = Depends(get_access_context),
    repository=Depends(get_repository),
    search: str | None = Query(default=None, max_length=200),
    genre: str | None = Query(default=None, max_length=64),
    platform: str | None = Query(default=None, max_length=64),
    needs_review: bool | None = Query(default=None),
    min_budget: float | None = Query(default=None, ge=0),
    max_budget: float | None = Query(default=None, ge=0),
    intake: str | None = Query(default=None, pattern="^(24h|7d)$"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[CampaignSummaryOut]:
    try:
        rows = await repository.list_campaigns(
            ctx,
            search=search,
            genre=genre,
            platform=platform,
            needs_review=needs_review,
            min_budget=min_budget,
            max_budget=max_budget,
            intake=intake,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return [CampaignSummaryOut(**row) for row in rows]


@router.post("/campaigns/{campaign_pk}/review", response_model=CampaignReviewOut)
async def review_campaign(
    campaign_pk: int,
    payload: ReviewRequest,
    ctx: AccessContext = Depends(get_access_context),
    repository=Depends(get_repository),
) -> CampaignReviewOut:
    try:
        row = await repository.mark_campaign_reviewed(
            ctx,
            campaign_pk,
            reviewed_by=payload.reviewed_by,
            notes=payload.notes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return CampaignReviewOut(**row)


@router.post("/creators/{username}/review", response_model=CreatorReviewOut)
async def review_creator(
    username: str,
    payload: ReviewRequest,
    ctx: AccessContext = Depends(get_access_context),
    repository=Depends(get_repository),
) -> CreatorReviewOut:
    try:
        row = await repository.mark_creator_reviewed(
            ctx,
            username,
            reviewed_by=payload.reviewed_by,
            notes=payload.notes,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return CreatorReviewOut(**row)
