#cutover_engine\config.py

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CutoverSettings(BaseSettings):
    """Engine configuration from environment variables (CUTOVER_*)."""

    model_config = SettingsConfigDict(
        env_prefix="CUTOVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = "INFO"

    # Lease on the exclusive resource
    lease_seconds: float = Field(default=30.0, gt=0)

    # Stopping the old instance
    stop_timeout_seconds: float = Field(default=120.0, gt=0)
    stop_poll_interval_seconds: float = Field(default=2.0, gt=0)

    # Acquiring the lock
    lock_retry_limit: int = Field(default=5, ge=1)
    lock_backoff_base_seconds: float = Field(default=1.0, ge=0)
    lock_backoff_max_seconds: float = Field(default=30.0, ge=0)

    # Verifying the candidate
    health_timeout_seconds: float = Field(default=300.0, gt=0)
    health_interval_seconds: float = Field(default=10.0, gt=0)
    unhealthy_threshold: int | None = Field(default=None, ge=1)

    # Circuit breaker
    circuit_breaker_enabled: bool = True
    max_consecutive_failures: int = Field(default=3, ge=1)

    # Image naming
    image_registry: str = ""
    image_repository: str = "clickhouse"
    image_tag_file: str = ".image-tag"

    # Docker runner
    data_volume: str = ""
    container_ports: dict[str, int] = Field(default_factory=dict)
    container_stop_timeout_seconds: int = Field(default=30, ge=0)
    pull_images: bool = True

    # Readiness check; {host} and instance metadata are substituted
    health_check_url: str = "http://{host}:8123/ping"

    # HTTP API
    api_host: str = "0.0.0.0"
    api_port: int = 8080


settings = CutoverSettings()
