"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Nocturne Connectors"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Connectors ---
    connectors_config_path: str = ""  # empty = bundled connectors.yaml

    # --- Resilient polling ---
    standby_check_interval_seconds: float = 30.0
    disconnected_polling_interval_seconds: float = 10.0
    max_fast_poll_attempts: int = 30  # 30 * 10s = 5 minutes of fast polling
    max_backoff_interval_seconds: float = 300.0
    shutdown_timeout_seconds: float = 10.0

    # --- Outbound HTTP ---
    http_timeout_seconds: float = 30.0
    retry_base_delay_seconds: float = 2.0
    sync_attempt_deadline_seconds: float = 60.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
