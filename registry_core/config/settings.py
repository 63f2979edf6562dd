from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
import logging


class Settings(BaseSettings):
    """
    Settings for the service registry.

    Every field can be overridden through a ``REGISTRY_``-prefixed
    environment variable (e.g. ``REGISTRY_DISCOVERY_INTERVAL=15``) or a
    ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ═══════════════════════════════════════════════════════════════════
    # Application Settings
    # ═══════════════════════════════════════════════════════════════════
    SERVICE_NAME: str = "service-registry"
    ENVIRONMENT: str = Field(default="development", description="development, staging, production")
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ═══════════════════════════════════════════════════════════════════
    # Periodic Loops
    # ═══════════════════════════════════════════════════════════════════
    DISCOVERY_INTERVAL: float = Field(default=30.0, gt=0, description="Seconds between discovery passes")
    HEALTH_CHECK_INTERVAL: float = Field(default=10.0, gt=0, description="Seconds between health passes")

    # ═══════════════════════════════════════════════════════════════════
    # Timeouts & Retries
    # ═══════════════════════════════════════════════════════════════════
    HEALTH_CHECK_TIMEOUT: float = Field(default=5.0, gt=0, description="Upper bound for one predicate call")
    DNS_TIMEOUT: float = Field(default=5.0, gt=0, description="Upper bound for one DNS lookup")
    DISCOVERY_RETRIES: int = Field(default=3, ge=1, description="DNS lookup attempts per pass")
    DISCOVERY_RETRY_DELAY: float = Field(default=0.5, ge=0, description="Backoff base delay")

    # ═══════════════════════════════════════════════════════════════════
    # Worker Pools (dns, discovery, health)
    # ═══════════════════════════════════════════════════════════════════
    MAX_CONCURRENT_JOBS: int = Field(default=10, ge=1, description="Jobs running at once in each worker pool")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def json_logs(self) -> bool:
        return self.LOG_JSON or self.is_production

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Accept any stdlib level name, case-insensitively"""
        level = str(v).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(
                f"LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL (got {v!r})"
            )
        return level


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
