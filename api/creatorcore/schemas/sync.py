from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SyncSourceResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity: str
    source_key: str
    source_name: str
    fetched: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    cursor: int = 0
    has_more: bool = False
    pages: int = 0
    new_items: int = 0
    error: str | None = None


class SyncResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity: str
    fetched: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    pages: int = 0
    new_items: int = 0
    cursor: int = 0
    has_more: bool = False
    errors: list[str] = Field(default_factory=list)
    sources: list[SyncSourceResultOut] = Field(default_factory=list)


class SweepResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    eligible: int = 0
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    post_fetched: int = 0
    post_inserted: int = 0
    post_updated: int = 0
    post_skipped: int = 0
    new_creators: int = 0


class FullSyncOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    campaigns: SyncResultOut
    posts: SyncResultOut
    creator_discovery: SweepResultOut
    pending_hydration: SweepResultOut
    rollups_refreshed_at: datetime


class PendingHydrationOut(BaseModel):
    timestamp: datetime
    pending_hydration: SweepResultOut
    creator_discovery: SweepResultOut


class RollupRefreshOut(BaseModel):
    refreshed_at: datetime


class GenreRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
