from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    worker_id: str | None = None
    worker_kinds: list[str] = Field(default_factory=list)
    worker_concurrency: int = 1
    max_iterations: int = 200
    exit_when_empty: bool = True
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    task_max_attempts: int = 5
    task_retry_base_seconds: int = 30
    task_retry_max_seconds: int = 3600
    claim_timeout_seconds: int = 900
    reaper_interval_seconds: float = 60.0
    reaper_batch_size: int = 100

    freshness_days: float = 7.0
    stats_freshness_days: float = 30.0
    force_overwrite: bool = False
    availability_region: str = "JP"
    resolution_source: str = "anilist"

    caller_max_attempts: int = 6
    caller_backoff_base_seconds: float = 1.0
    caller_backoff_max_seconds: float = 60.0
    caller_jitter_seconds: float = 0.5

    anilist_url: str = "https://graphql.anilist.co"
    anilist_min_interval_seconds: float = 2.2
    anilist_discovery_per_page: int = 50
    tmdb_url: str = "https://api.themoviedb.org/3"
    tmdb_read_access_token: str | None = None
    tmdb_api_key: str | None = None
    tmdb_min_interval_seconds: float = 0.35
    serper_url: str = "https://google.serper.dev/search"
    serper_api_key: str | None = None
    serper_min_interval_seconds: float = 1.0
    openai_url: str = "https://api.openai.com/v1/chat/completions"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_min_interval_seconds: float = 1.2
    http_timeout_seconds: float = 20.0

    resolver_near_certain: float = 0.95
    resolver_confident: float = 0.915
    resolver_confident_gap: float = 0.03
    resolver_gap_ladder: list[tuple[float, float]] = Field(default_factory=lambda: [(0.875, 0.095), (0.865, 0.195)])
    resolver_exact_rescue: float = 0.85
    resolver_lone_candidate_rescue: float = 0.65
    resolver_short_ascii_max_length: int = 6
    resolver_candidates_to_keep: int = 2
    resolver_year_match_bonus: float = 0.08
    resolver_series_preference_margin: float = 0.05
    resolver_series_min_episodes: int = 2

    otel_enabled: bool = True
    otel_service_name: str = "anime-reconciler-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RECONCILER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
