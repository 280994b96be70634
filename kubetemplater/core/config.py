"""Configuration management for the KubeTemplater operator."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Operator settings, read from the environment (and an optional .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    # Application
    app_name: str = "kubetemplater"
    app_version: str = "0.1.0"
    operator_namespace: str = "kubetemplater-system"
    field_manager: str = "kubetemplater"
    metrics_port: int = 9090
    liveness_endpoint: str = "http://0.0.0.0:8080/healthz"

    # Workers
    num_workers: int = 3
    periodic_reconcile_interval: int = 60  # seconds

    # Policy cache
    policy_cache_ttl: int = 60  # seconds

    # Work queue retry configuration
    queue_max_retries: int = 5
    queue_initial_retry_delay: float = 1.0  # seconds
    queue_max_retry_delay: float = 300.0  # seconds
    queue_max_retry_cycles: int = 3  # 0 = unlimited

    # Admission
    admission_webhook_enabled: bool = False
    max_templates_per_kubetemplate: int = 50
    max_template_size_bytes: int = 1024 * 1024

    # Redis Configuration
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    redis_url: Optional[str] = Field(None, validate_default=True)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    @field_validator("num_workers")
    @classmethod
    def clamp_num_workers(cls, v):
        """At least one worker must run."""
        return max(1, v)

    @field_validator("policy_cache_ttl")
    @classmethod
    def clamp_policy_cache_ttl(cls, v):
        """Policy cache TTL is kept within 30s..10m."""
        return min(max(v, 30), 600)

    @field_validator("queue_max_retries")
    @classmethod
    def clamp_max_retries(cls, v):
        return max(1, v)

    @field_validator("queue_initial_retry_delay")
    @classmethod
    def clamp_initial_delay(cls, v):
        return max(1.0, v)

    @field_validator("queue_max_retry_delay")
    @classmethod
    def clamp_max_delay(cls, v):
        return max(60.0, v)

    @field_validator("queue_max_retry_cycles")
    @classmethod
    def clamp_max_cycles(cls, v):
        return max(0, v)

    @field_validator("redis_url")
    @classmethod
    def build_redis_url(cls, v, info):
        """Build Redis URL from components if not provided."""
        if v:
            return v

        host = info.data.get("redis_host", "redis")
        port = info.data.get("redis_port", 6379)
        password = info.data.get("redis_password")
        db = info.data.get("redis_db", 0)

        if password:
            return f"redis://:{password}@{host}:{port}/{db}"
        return f"redis://{host}:{port}/{db}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
