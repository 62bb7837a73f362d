from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    app_name: str = "linkshelf"
    app_version: str = "0.1.0"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    enrichment_concurrency: int = 4
    enrichment_retry_base_seconds: float = 10.0
    enrichment_retry_max_seconds: float = 3600.0
    enrichment_max_attempts: int = 6
    enrich_missing_on_startup: bool = True
    recovery_batch_size: int = 100
    fetch_timeout_seconds: float = 10.0
    fetch_user_agent: str = DESKTOP_USER_AGENT
    fetch_max_body_bytes: int = 2_000_000
    connectivity_probe_url: str | None = None
    connectivity_probe_interval_seconds: float = 15.0
    worker_sweep_interval_seconds: float = 300.0
    otel_enabled: bool = True
    otel_service_name: str = "linkshelf"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LINKSHELF_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
