# cutover_engine/health_checker/monitor.py
"""
Health Monitor - observes a candidate instance until it is ready.

- probe(): one observation, never raises for check errors (UNKNOWN instead)
- wait_until_healthy(): polls until HEALTHY, timeout, terminal exit,
  or too many consecutive UNHEALTHY observations
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from cutover_engine.core.errors import (
    DeploymentCancelled,
    HealthCheckFailed,
    HealthTimeout,
    InstanceExited,
)
from cutover_engine.core.models import HealthStatus, Instance
from cutover_engine.health_checker.checks import HealthCheck

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Wraps a HealthCheck with polling, timeouts and transition reporting.
    """

    def __init__(
        self,
        health_check: HealthCheck,
        *,
        unhealthy_threshold: Optional[int] = None,
        on_transition: Optional[Callable[[Instance, HealthStatus, HealthStatus], None]] = None,
    ):
        """
        Args:
            health_check: Readiness criterion for instances
            unhealthy_threshold: Consecutive UNHEALTHY probes that count as an
                explicit failure. None waits for the full timeout.
            on_transition: Called with (instance, old, new) on status change
        """
        if unhealthy_threshold is not None and unhealthy_threshold < 1:
            raise ValueError("unhealthy_threshold must be at least 1")

        self._check = health_check
        self.unhealthy_threshold = unhealthy_threshold
        self._on_transition = on_transition
        self._last: Dict[str, HealthStatus] = {}
        self._guard = threading.Lock()

    def probe(self, instance: Instance) -> HealthStatus:
        """Single observation."""
        try:
            status = self._check.check(instance)
        except InstanceExited:
            self._observe(instance, HealthStatus.UNHEALTHY)
            raise
        except Exception as e:
            logger.warning(f"[health] [{instance.instance_id}] Check raised: {e}")
            status = HealthStatus.UNKNOWN

        self._observe(instance, status)
        return status

    def last_status(self, instance: Instance) -> HealthStatus:
        with self._guard:
            return self._last.get(instance.instance_id, HealthStatus.UNKNOWN)

    def forget(self, instance: Instance) -> None:
        with self._guard:
            self._last.pop(instance.instance_id, None)

    def wait_until_healthy(
        self,
        instance: Instance,
        timeout: float,
        interval: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> HealthStatus:
        """
        Poll until HEALTHY.

        Raises:
            HealthTimeout: not healthy within timeout
            HealthCheckFailed: unhealthy_threshold consecutive UNHEALTHY probes
            InstanceExited: the instance terminated
            DeploymentCancelled: cancel_event was set
        """
        cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout
        consecutive_unhealthy = 0
        attempts = 0

        logger.info(
            f"[health] [{instance.instance_id}] Waiting up to {timeout}s "
            f"(interval {interval}s)"
        )

        while True:
            if cancel_event.is_set():
                raise DeploymentCancelled("Cancelled while verifying health")

            attempts += 1
            status = self.probe(instance)

            if status == HealthStatus.HEALTHY:
                logger.info(f"[health] [{instance.instance_id}] ✅ Healthy after {attempts} probe(s)")
                return status

            if status == HealthStatus.UNHEALTHY:
                consecutive_unhealthy += 1
            else:
                consecutive_unhealthy = 0

            if self.unhealthy_threshold and consecutive_unhealthy >= self.unhealthy_threshold:
                raise HealthCheckFailed(
                    f"{instance.instance_id} unhealthy for "
                    f"{consecutive_unhealthy} consecutive probes"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthTimeout(
                    f"{instance.instance_id} not healthy within {timeout}s "
                    f"({attempts} probes, last {status.value})"
                )

            if cancel_event.wait(min(interval, remaining)):
                raise DeploymentCancelled("Cancelled while verifying health")

    def _observe(self, instance: Instance, status: HealthStatus) -> None:
        with self._guard:
            previous = self._last.get(instance.instance_id, HealthStatus.UNKNOWN)
            self._last[instance.instance_id] = status

        if previous != status:
            logger.info(
                f"[health] [{instance.instance_id}] {previous.value} -> {status.value}"
            )
            if self._on_transition:
                self._on_transition(instance, previous, status)
