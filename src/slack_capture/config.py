"""Application configuration via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All intervals are in seconds.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    storage_path: str = "slack_capture_state.json"
    write_batch_delay: float = 1.0
    max_write_attempts: int = 5  # Failed writes are dropped after this many tries

    # Extraction
    health_check_interval: float = 7.5
    observer_stale_after: float = 10.0
    channel_poll_interval: float = 5.0
    scroll_debounce: float = 0.25
    fallback_poll_interval: float = 2.5

    # Sync
    heartbeat_interval: float = 5.0
    heartbeat_timeout: float = 10.0
    sync_debounce: float = 1.0
    connection_check_interval: float = 15.0
    reconnect_max_attempts: int = 5
    reconnect_backoff: float = 1.0  # Linear: 1x, 2x, 3x ...

    # Coordinator
    coordinator_cleanup_interval: float = 10.0
    coordinator_rebroadcast_interval: float = 10.0
    max_sources: int = 256

    # App
    environment: str = "development"
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings. Lazy initialization to avoid import-time errors."""
    return Settings()
