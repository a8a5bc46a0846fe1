from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "identity-sync-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    machine_credentials_json: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    supabase_service_role_key: str | None = None
    auth_timeout_seconds: float = 5.0
    external_users_table: str = "auth.users"
    external_timeout_seconds: float = 10.0
    content_api_url: str | None = None
    content_api_token: str | None = None
    content_timeout_seconds: float = 10.0
    content_role_cache_ttl_seconds: float = 600.0
    sync_error_retention_days: int = 90
    sync_error_payload_max_bytes: int = 1024
    sync_error_hash_rounds: int = 12
    reconciliation_batch_size: int = 50
    reconciliation_max_retries: int = 3
    lockout_max_attempts: int = 5
    lockout_minutes: int = 15
    downstream_task_max_attempts: int = 5
    downstream_task_retry_base_seconds: int = 30
    downstream_task_retry_max_seconds: int = 3600
    downstream_task_lease_seconds: int = 120
    otel_enabled: bool = True
    otel_service_name: str = "identity-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="IDSYNC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
