from datetime import datetime

from pydantic import BaseModel, Field


class TopGenreOut(BaseModel):
    genre: str
    campaign_count: int
    total_budget: float = 0


class TopPlatformOut(BaseModel):
    platform: str
    post_count: int
    total_views: int = 0


class DashboardStatsOut(BaseModel):
    total_campaigns: int = 0
    active_campaigns: int = 0
    total_creators: int = 0
    total_posts: int = 0
    total_views: int = 0
    verified_views: int = 0
    total_budget: float = 0
    genre_count: int = 0
    new_campaigns_24h: int = 0
    new_campaigns_7d: int = 0
    new_creators_24h: int = 0
    new_creators_7d: int = 0
    pending_campaigns_total: int = 0
    pending_campaigns_24h: int = 0
    campaigns_needing_review: int = 0
    creators_needing_review: int = 0
    top_genres: list[TopGenreOut] = Field(default_factory=list)
    top_platforms: list[TopPlatformOut] = Field(default_factory=list)
    computed_at: datetime | None = None


class CampaignSummaryOut(BaseModel):
    campaign_pk: int
    source_key: str
    campaign_id: str
    title: str
    slug: str
    org_id: str | None = None
    platforms: str | None = None
    budget: float | None = None
    genre: str | None = None
    genre_confidence: float | None = None
    archived: bool = False
    first_seen_at: datetime
    last_synced_at: datetime | None = None
    actual_posts: int = 0
    actual_creators: int = 0
    total_views: int = 0
    verified_views: int = 0
    quality_status: str
    reviewed_at: datetime | None = None
    needs_review: bool = False


class ReviewRequest(BaseModel):
    reviewed_by: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=2000)


class CampaignReviewOut(BaseModel):
    campaign_pk: int
    reviewed_at: datetime
    reviewed_by: str | None = None
    notes: str | None = None


class CreatorReviewOut(BaseModel):
    username: str
    reviewed_at: datetime
    reviewed_by: str | None = None
    notes: str | None = None
