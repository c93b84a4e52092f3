# cutover_engine/health_checker/checks.py
"""
Pluggable readiness checks.

A check observes one instance and returns a HealthStatus. It raises
InstanceExited when the instance is gone for good, so the monitor can stop
waiting early instead of running out the clock.
"""

import logging
import socket
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Sequence

import requests

from cutover_engine.core.errors import InstanceExited
from cutover_engine.core.models import HealthStatus, Instance

logger = logging.getLogger(__name__)


def _placeholders(instance: Instance) -> Dict[str, Any]:
    values = dict(instance.metadata)
    values.setdefault("host", "localhost")
    values["instance_id"] = instance.instance_id
    values["resource_id"] = instance.resource_id
    values["version"] = instance.version
    return values


class HealthCheck(ABC):
    """Readiness criterion supplied by the embedding system."""

    @abstractmethod
    def check(self, instance: Instance) -> HealthStatus:
        raise NotImplementedError


class HttpHealthCheck(HealthCheck):
    """
    GET a URL; 2xx/3xx is healthy.

    `url` may reference instance metadata, e.g.
    "http://{host}:{http_port}/ping".
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def check(self, instance: Instance) -> HealthStatus:
        url = self.url.format(**_placeholders(instance))

        try:
            response = requests.get(url, timeout=self.timeout_seconds)
        except requests.exceptions.RequestException as e:
            logger.debug(f"[health] [{instance.instance_id}] HTTP check error: {e}")
            return HealthStatus.UNHEALTHY

        if 200 <= response.status_code < 400:
            logger.debug(f"[health] [{instance.instance_id}] HTTP check OK: {url} ({response.status_code})")
            return HealthStatus.HEALTHY

        logger.debug(
            f"[health] [{instance.instance_id}] HTTP check FAIL: "
            f"{url} returned {response.status_code}"
        )
        return HealthStatus.UNHEALTHY


class TcpHealthCheck(HealthCheck):
    """Healthy when a TCP connect succeeds."""

    def __init__(self, port: int | str, host: str = "{host}", timeout_seconds: float = 5.0):
        self.port = port
        self.host = host
        self.timeout_seconds = timeout_seconds

    def check(self, instance: Instance) -> HealthStatus:
        values = _placeholders(instance)
        host = self.host.format(**values)
        port = int(str(self.port).format(**values))

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(self.timeout_seconds)
        try:
            result = sock.connect_ex((host, port))
        except OSError as e:
            logger.debug(f"[health] [{instance.instance_id}] TCP check error: {e}")
            return HealthStatus.UNHEALTHY
        finally:
            sock.close()

        return HealthStatus.HEALTHY if result == 0 else HealthStatus.UNHEALTHY


class CommandHealthCheck(HealthCheck):
    """
    Run a command against the instance and inspect the exit code.

    `execute(instance, command)` returns the exit code; runners expose one
    (see DockerInstanceRunner.exec) and raise InstanceExited when the
    process is gone.
    """

    def __init__(
        self,
        execute: Callable[[Instance, Sequence[str]], int],
        command: Sequence[str],
        healthy_exit_codes: Sequence[int] = (0,),
    ):
        if not command:
            raise ValueError("command must not be empty")
        self.execute = execute
        self.command: List[str] = list(command)
        self.healthy_exit_codes = set(healthy_exit_codes)

    def check(self, instance: Instance) -> HealthStatus:
        exit_code = self.execute(instance, self.command)
        if exit_code in self.healthy_exit_codes:
            return HealthStatus.HEALTHY

        logger.debug(f"[health] [{instance.instance_id}] Command check FAIL: exit code {exit_code}")
        return HealthStatus.UNHEALTHY


class CallableHealthCheck(HealthCheck):
    """Adapter for a plain function; truthy booleans map to HEALTHY."""

    def __init__(self, fn: Callable[[Instance], Any]):
        self.fn = fn

    def check(self, instance: Instance) -> HealthStatus:
        result = self.fn(instance)
        if isinstance(result, HealthStatus):
            return result
        if result is None:
            return HealthStatus.UNKNOWN
        return HealthStatus.HEALTHY if result else HealthStatus.UNHEALTHY


class ExitCodeHealthCheck(HealthCheck):
    """
    Process-exit inspection: `exit_code(instance)` returns None while the
    process runs. Any exit is terminal, a running process is healthy.
    """

    def __init__(self, exit_code: Callable[[Instance], int | None]):
        self.exit_code = exit_code

    def check(self, instance: Instance) -> HealthStatus:
        code = self.exit_code(instance)
        if code is None:
            return HealthStatus.HEALTHY
        raise InstanceExited(f"{instance.instance_id} exited with code {code}")
