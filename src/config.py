from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    database_path: str = "data/monitor.db"
    outbox_path: str = "data/outbox.db"
    sites_file: str = "sites.yaml"

    # Polling
    poll_interval_seconds: int = 300  # 0 = only poll when /api/poll is hit
    max_concurrent_probes: int = 16

    # Classification
    failure_threshold: int = 2
    failure_history_window: int = 5

    # Notifier (incident webhook, delivered from the outbox)
    notify_webhook_url: str = ""
    notify_token: str = ""
    notify_interval_seconds: float = 15.0
    notify_max_attempts: int = 8
    notify_backoff_seconds: float = 30.0
    notify_max_backoff_seconds: float = 3600.0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
