from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-reconciler"
    api_key: str = "local-reconciler-key"
    request_timeout_seconds: float = 120.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    reconciliation_interval_seconds: float = 300.0
    full_sweep_interval_seconds: float = 86400.0
    task_drain_interval_seconds: float = 15.0
    task_batch_size: int = 20
    otel_enabled: bool = True
    otel_service_name: str = "identity-sync-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="IDSYNC_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
