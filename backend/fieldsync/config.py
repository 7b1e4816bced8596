"""Application configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The upper-case sync flags are read by the services at call time, so
    assigning to them on a live instance toggles behaviour without a restart.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.debug and self.log_level.upper() not in ("TRACE", "VERBOSE"):
            self.log_level = "DEBUG"

    # Database (queue, sync meta, run history and entity tables)
    database_url: str = "sqlite:///./fieldsync.db"

    # Remote API
    api_base_url: str = "http://localhost:3001"
    api_token: str = ""
    technician_id: str = ""
    request_timeout_s: float = 45.0
    push_timeout_s: float = 60.0
    health_path: str = "/health"

    # Push notification delivery
    webhook_secret: str = ""

    # CORS
    cors_origins: str = "http://localhost:8081"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Chunked local writes
    SYNC_OPT_CHUNK_PROCESSING: bool = True
    CHUNK_SIZE: int = 100
    CHUNK_YIELD_DELAY_MS: int = 0
    SLOW_CHUNK_THRESHOLD_MS: float = 50.0

    # Fast push / full sync throttle
    SYNC_OPT_FAST_PUSH_ONLY: bool = True
    FAST_PUSH_DEBOUNCE_MS: int = 1500
    FAST_PUSH_MAX_BUFFER_SIZE: int = 20
    FAST_PUSH_SCHEDULE_FULL_SYNC: bool = True
    FULL_SYNC_THROTTLE_MS: int = 300_000
    FULL_SYNC_PREFER_WIFI: bool = False
    MUTATION_SYNC_DEBOUNCE_MS: int = 2000

    # Full sync
    SYNC_OPT_PARALLEL_ENTITIES: bool = True
    MAX_PARALLEL_ENTITIES: int = 2
    PARALLEL_SAFE_ENTITIES: List[str] = ["clients", "categories"]
    SYNC_MAX_RETRIES: int = 3
    SYNC_RETRY_BASE_DELAY_MS: int = 1000
    PUSH_BATCH_SIZE: int = 100

    # Push notification triggers
    SYNC_TRIGGER_DEBOUNCE_MS: int = 500
    SYNC_TRIGGER_COOLDOWN_MS: int = 5000

    # Scheduler
    periodic_sync_minutes: int = 30
    mutation_retention_days: int = 7

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_configured(self) -> bool:
        """The engine only talks to the API once it knows who it syncs for."""
        return bool(self.api_token and self.technician_id)


# Global settings instance
settings = Settings()
