from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    log_level: str = "INFO"
    store_backend: str = "memory"  # memory | supabase
    database_url: str | None = None
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    internal_scheduler_secret: str | None = None
    webhook_secret_shopify: str | None = None
    webhook_secret_hubspot: str | None = None
    webhook_secret_salesforce: str | None = None
    webhook_secret_meta: str | None = None
    webhook_secret_google: str | None = None
    webhook_replay_window_seconds: int = 300
    webhook_dead_letter_snippet_chars: int = 2000
    webhook_event_retention: int = 10_000
    webhook_dead_letter_retention: int = 5_000
    sync_default_max_retries: int = 3
    sync_default_base_backoff_ms: int = 1000
    sync_backoff_jitter_enabled: bool = False
    sync_source_mode: str = "simulated"  # simulated | http
    sync_source_base_url: str | None = None
    sync_source_api_key: str | None = None
    sync_source_timeout_seconds: float = 10.0
    sync_scheduled_batch_size: int = 50
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
