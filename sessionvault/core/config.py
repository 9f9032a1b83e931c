"""
Application configuration via pydantic-settings.

Loads values from .env file with sensible defaults for local development.
Use ``get_settings()`` to obtain the cached singleton instance.
"""

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """SessionVault settings loaded from environment / .env file.

    All settings can be overridden via environment variables or a `.env` file.
    Field names map directly to env var names (case-insensitive).

    Attributes:
        backend_url: Base URL of the durable backend (REST + storage).
        transcription_api_url: Base URL of the transcription service.
            An empty string means "not configured".
        database_url: Async SQLAlchemy connection string for the local store.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore unrecognized env vars
    )

    # --- Backend ---
    backend_url: str = "http://localhost:54321"
    backend_api_key: str = ""  # Sent as a bearer token
    transcription_api_url: str = ""  # Empty = transcription not configured
    http_timeout: float = 30.0

    # --- Local store ---
    database_url: str = "sqlite+aiosqlite:///data/sessionvault.db"
    data_dir: str = "data"  # Breadcrumb file lives here
    local_recording_ttl_hours: int = 48
    min_free_space_mb: int = 50  # Refuse local saves below this headroom
    max_file_size_mb: int = 500

    # --- Upload ---
    upload_retry_attempts: int = 3
    upload_retry_max_wait: float = 4.0  # Backoff 1s, 2s, 4s
    transcription_start_delays: list[float] = [5.0, 15.0, 45.0]
    upload_display_seconds: float = 2.0  # Succeeded uploads linger this long
    connectivity_probe_seconds: float = 15.0

    # --- Transcription polling ---
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 120
    poll_force_sync_after: int = 15
    poll_manual_sync_after: int = 30
    poll_manual_sync_every: int = 10
    poll_error_backoff_seconds: float = 5.0
    poll_max_errors: int = 30

    # --- Capture ---
    sample_rate: int = 16000
    channels: int = 1
    chunk_seconds: float = 1.0  # Device delivers one chunk per interval
    checkpoint_interval_seconds: float = 600.0
    stop_timeout_base_seconds: float = 30.0
    max_recording_seconds: float | None = None  # None = no cap

    # --- Application ---
    app_host: str = "127.0.0.1"  # Bind address for the control API
    app_port: int = 8000
    log_level: str = "INFO"  # Python logging level
    cors_origins: list[str] = ["http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    Uses ``functools.lru_cache`` so the .env file is read only once.
    Subsequent calls return the same ``Settings`` instance.

    Returns:
        Settings: The application-wide configuration object.
    """
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
