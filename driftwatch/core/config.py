from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "driftwatch-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_auto_create_schema: bool = False
    backlog_retention_days: int = 30
    change_retention_days: int = 7
    alert_difference_threshold: int = 50
    sweep_interval_seconds: float = 300.0
    sweep_concurrency: int = 4
    max_backoff_seconds: float = 300.0
    fetch_timeout_seconds: float = 10.0
    fetch_max_bytes: int = 2_000_000
    notify_webhook_url: str | None = None
    notify_timeout_seconds: float = 5.0
    operator_api_keys: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "driftwatch"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
