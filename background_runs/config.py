"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./background_runs.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Worker cycle (watchdog + batched dispatch)
    WORKER_POLL_INTERVAL: int = 30
    WORKER_LIMIT: int = 20
    WORKER_BATCH_SIZE: int = 5
    WORKER_MAX_BATCHES: int = 6
    STALE_AFTER_SECONDS: int = 600  # 10 minutes without a heartbeat
    EMBEDDED_SCHEDULER: bool = False

    # Worker authorization (either token is accepted)
    WORKER_TOKEN: str = ""
    CRON_SECRET: str = ""

    # Telemetry
    TELEMETRY_SINK: str = "database"  # 'database', 'http', 'log', 'none'
    TELEMETRY_WEBHOOK_URL: str = ""
    TELEMETRY_QUEUE_SIZE: int = 1000

    # Executors
    WEBHOOK_EXECUTOR_URL: str = ""
    WEBHOOK_EXECUTOR_TIMEOUT: float = 120.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
