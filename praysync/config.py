"""Sync-layer configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from ``PRAYSYNC_*`` environment variables (or .env file)."""

    # --- App ---
    app_name: str = "praysync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    request_timeout_seconds: float = 15.0

    # --- Persistence ---
    storage_dir: str = ".praysync"
    storage_key: str = "PRAYSYNC_OFFLINE_CACHE_V1"  # versioned to handle schema changes
    persist_version: int = 1

    # --- Clock ---
    default_timezone: str = "UTC"
    resync_epsilon_ms: int = 1000
    minute_tick_seconds: float = 60.0

    # --- Fetch policy ---
    retry_count: int = 2
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30_000
    default_stale_ms: int = 5 * 60 * 1000
    default_gc_ms: int = 30 * 60 * 1000

    # --- Refresh policy (YAML; None = bundled sync_policy.yaml) ---
    sync_policy_path: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="PRAYSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
