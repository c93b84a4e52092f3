#cutover_engine\deployer\config.py
from dataclasses import dataclass
from typing import Optional

from cutover_engine.core.errors import ValidationError


@dataclass(frozen=True)
class DeploymentConfig:
    """Policy for one resource's cutovers."""

    lease_seconds: float = 30.0

    stop_timeout_seconds: float = 120.0
    stop_poll_interval_seconds: float = 2.0

    lock_retry_limit: int = 5
    lock_backoff_base_seconds: float = 1.0
    lock_backoff_max_seconds: float = 30.0

    health_timeout_seconds: float = 300.0
    health_interval_seconds: float = 10.0
    unhealthy_threshold: Optional[int] = None

    circuit_breaker_enabled: bool = True
    max_consecutive_failures: int = 3

    # Stop-before-start cutover: zero running instances is allowed
    # and never more than one
    minimum_healthy_percent: int = 0
    maximum_percent: int = 100

    def __post_init__(self):
        if self.lease_seconds <= 0:
            raise ValidationError("lease_seconds must be > 0")
        if self.lock_retry_limit < 1:
            raise ValidationError("lock_retry_limit must be >= 1")
        if self.max_consecutive_failures < 1:
            raise ValidationError("max_consecutive_failures must be >= 1")
        if self.maximum_percent != 100:
            raise ValidationError("maximum_percent must be 100 for a singleton resource")
        if self.minimum_healthy_percent != 0:
            raise ValidationError(
                "minimum_healthy_percent must be 0: the old instance stops "
                "before the new one may take the lock"
            )

    @staticmethod
    def from_settings(settings) -> "DeploymentConfig":
        return DeploymentConfig(
            lease_seconds=settings.lease_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
            stop_poll_interval_seconds=settings.stop_poll_interval_seconds,
            lock_retry_limit=settings.lock_retry_limit,
            lock_backoff_base_seconds=settings.lock_backoff_base_seconds,
            lock_backoff_max_seconds=settings.lock_backoff_max_seconds,
            health_timeout_seconds=settings.health_timeout_seconds,
            health_interval_seconds=settings.health_interval_seconds,
            unhealthy_threshold=settings.unhealthy_threshold,
            circuit_breaker_enabled=settings.circuit_breaker_enabled,
            max_consecutive_failures=settings.max_consecutive_failures,
        )
