from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "forge-training-worker"
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    heartbeat_freshness_seconds: int = 15
    job_timeout_seconds: float = 300.0
    claim_lease_seconds: int = 600
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    worker_autostart: bool = False
    outcome_seed: int | None = None
    otel_enabled: bool = True
    otel_service_name: str = "forge-training-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True
    otel_excluded_urls: str = "healthz"

    model_config = SettingsConfigDict(env_prefix="TW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
