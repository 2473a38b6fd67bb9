from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CREATORCORE_BASE_URL = "https://app.creatorcore.co/api/1.1/obj"


class Settings(BaseSettings):
    app_name: str = "creatorcore-sync-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    storage_backend: str = "postgres"
    run_migrations_on_startup: bool = True
    cron_secret: str | None = None
    agency_sources_json: str | None = None
    default_base_url: str = DEFAULT_CREATORCORE_BASE_URL
    allow_test_fixture_data: bool = False
    fetch_timeout_seconds: float = 30.0
    sync_campaign_pages: int = 10
    sync_post_pages: int = 20
    sync_campaign_lookback_rows: int = 500
    sync_post_lookback_rows: int = 1000
    campaign_upsert_chunk_size: int = 250
    post_upsert_chunk_size: int = 500
    pending_limit: int = 30
    pending_min_age_minutes: int = 30
    pending_posts_per_campaign: int = 25
    pending_post_fetch_limit: int = 400
    pending_post_concurrency: int = 8
    discovery_campaign_limit: int = 200
    discovery_min_age_minutes: int = 15
    discovery_posts_per_campaign: int = 80
    discovery_post_fetch_limit: int = 2000
    discovery_post_concurrency: int = 10
    metadata_grace_minutes: int = 30
    pending_intake_days: int = 14
    review_window_days: int = 7
    genre_max_search_calls: int = 200
    genre_candidate_limit: int = 500
    genre_search_api_key: str | None = None
    genre_search_url: str = "https://api.search.brave.com/res/v1/web/search"
    genre_search_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "creatorcore-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CREATORCORE_", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
