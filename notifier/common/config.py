from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # RabbitMQ
    rabbit_url: str = "amqp://localhost"
    queue_name: str = "NOTIFICATIONS"
    prefetch_count: int = 1

    # Notification API
    api_url: str = "https://api.blastify.tech/api-keys/send-messages"
    api_key: str = Field(min_length=1)  # fallback when a message carries none
    request_timeout_seconds: float = 30.0

    # Application
    worker_id: str = "notifier-1"
    log_level: str = "INFO"
    metrics_port: int | None = None

    # Connection supervision
    max_reconnect_attempts: int = 10
    reconnect_delay_seconds: float = 5.0
    reconnect_backoff_factor: float = 1.0  # 1.0 keeps the delay fixed
    reconnect_max_delay_seconds: float = 60.0
    health_check_interval_seconds: float = 300.0  # 5 minutes
    shutdown_grace_seconds: float = 2.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
