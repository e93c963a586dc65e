"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "DiaCare Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Store ---
    database_url: str | None = None  # postgres DSN; in-memory store when unset

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 600

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:8081", "http://localhost:19006"]

    # --- Sync client ---
    api_base_url: str = "http://localhost:8000/api/v1"
    client_storage_dir: str = ".diacare"
    sync_interval_seconds: float = 30.0
    sync_max_backoff_seconds: float = 300.0
    request_timeout_seconds: float = 10.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
