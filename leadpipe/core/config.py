from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "leadpipe-ops"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    admin_api_key: str | None = None

    queue_poll_interval_seconds: float = 1.0
    queue_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    job_retry_base_seconds: float = 2.0
    job_retry_max_seconds: float = 600.0
    job_retry_jitter_ratio: float = 0.25

    enrichment_max_attempts: int = 3
    matchmaking_max_attempts: int = 3
    webhook_max_attempts: int = 5
    enrichment_concurrency: int = 5
    matchmaking_concurrency: int = 3
    webhook_concurrency: int = 1
    remove_on_complete: bool = True
    remove_on_fail: bool = False

    webhook_timeout_seconds: float = 10.0
    auto_match_score_threshold: int = 85
    embedded_workers: bool = False

    otel_enabled: bool = True
    otel_service_name: str = "leadpipe"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
