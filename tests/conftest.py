#tests\conftest.py

"""Pytest configuration and fixtures."""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

import pytest

from cutover_engine.core.errors import InstanceError
from cutover_engine.core.events import LoggingEventEmitter
from cutover_engine.core.models import (
    HealthStatus,
    Instance,
    InstanceState,
    Version,
)
from cutover_engine.deployer.config import DeploymentConfig
from cutover_engine.health_checker.checks import HealthCheck
from cutover_engine.health_checker.monitor import HealthMonitor
from cutover_engine.infrastructure.memory.repository import (
    InMemoryDeploymentRecordRepository,
    InMemoryLockRepository,
    InMemoryResourceStateRepository,
    InMemoryVersionRepository,
)
from cutover_engine.infrastructure.postgres.database import (
    create_db_engine,
    drop_db,
    get_session_factory,
    init_db,
)
from cutover_engine.locking.lock_manager import LockManager
from cutover_engine.orchestrator.cutover_orchestrator import CutoverOrchestrator
from cutover_engine.registry.service import VersionRegistry


RESOURCE_ID = "clickhouse"


# ============================================
# Fakes
# ============================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeRunner:
    """
    InstanceRunner double that tracks which instances are running.

    `max_live` is the largest number of instances of one resource ever
    running at the same time.
    """

    def __init__(self):
        self.running: Dict[str, Instance] = {}
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.failing_versions: Set[str] = set()
        self.unstoppable: Set[str] = set()
        self.max_live = 0
        self._guard = threading.Lock()

    def start(self, instance: Instance) -> Instance:
        if instance.version in self.failing_versions:
            raise InstanceError(f"cannot start {instance.version}")

        with self._guard:
            instance.external_id = f"ext-{instance.instance_id}"
            instance.state = InstanceState.STARTING
            instance.started_at = datetime.now(timezone.utc)
            instance.metadata.setdefault("host", "127.0.0.1")

            self.running[instance.instance_id] = instance
            self.started.append(instance.instance_id)
            live = [i for i in self.running.values() if i.resource_id == instance.resource_id]
            self.max_live = max(self.max_live, len(live))
        return instance

    def stop(self, instance: Instance) -> None:
        if instance.instance_id in self.unstoppable:
            raise InstanceError(f"{instance.instance_id} refuses to stop")

        with self._guard:
            self.running.pop(instance.instance_id, None)
            self.stopped.append(instance.instance_id)
        instance.state = InstanceState.STOPPED

    def running_versions(self) -> List[str]:
        with self._guard:
            return [i.version for i in self.running.values()]


class ScriptedHealthCheck(HealthCheck):
    """HEALTHY for the listed versions, UNHEALTHY otherwise."""

    def __init__(
        self,
        healthy_versions: Iterable[str] = (),
        on_check: Optional[Callable[[Instance], None]] = None,
    ):
        self.healthy_versions = set(healthy_versions)
        self.on_check = on_check
        self.calls = 0

    def check(self, instance: Instance) -> HealthStatus:
        self.calls += 1
        if self.on_check:
            self.on_check(instance)
        if instance.version in self.healthy_versions:
            return HealthStatus.HEALTHY
        return HealthStatus.UNHEALTHY


# ============================================
# Building blocks
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def version_repository():
    return InMemoryVersionRepository()


@pytest.fixture
def lock_repository():
    return InMemoryLockRepository()


@pytest.fixture
def record_repository():
    return InMemoryDeploymentRecordRepository()


@pytest.fixture
def state_repository():
    return InMemoryResourceStateRepository()


@pytest.fixture
def registry(version_repository):
    return VersionRegistry(version_repository)


@pytest.fixture
def lock_manager(lock_repository):
    return LockManager(lock_repository)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def health_check():
    return ScriptedHealthCheck(healthy_versions={"v1", "v2"})


@pytest.fixture
def monitor(health_check):
    return HealthMonitor(health_check)


@pytest.fixture
def emitter():
    return LoggingEventEmitter()


@pytest.fixture
def config():
    """Short timeouts so failure paths finish in milliseconds."""
    return DeploymentConfig(
        lease_seconds=5.0,
        stop_timeout_seconds=0.3,
        stop_poll_interval_seconds=0.01,
        lock_retry_limit=3,
        lock_backoff_base_seconds=0.01,
        lock_backoff_max_seconds=0.02,
        health_timeout_seconds=0.2,
        health_interval_seconds=0.01,
        max_consecutive_failures=3,
    )


def register_versions(registry: VersionRegistry, *identifiers: str) -> List[Version]:
    return [
        registry.register(Version(
            identifier=identifier,
            digest=f"sha256:{identifier}",
            image_uri=f"registry.local/clickhouse:{identifier}",
        ))
        for identifier in identifiers
    ]


@pytest.fixture
def make_orchestrator(
    registry,
    lock_manager,
    runner,
    health_check,
    record_repository,
    state_repository,
    config,
    emitter,
):
    """Builds orchestrators over the shared fakes; kwargs override config fields."""
    register_versions(registry, "v1", "v2", "v3")
    built = []

    def build(**overrides) -> CutoverOrchestrator:
        orchestrator = CutoverOrchestrator(
            registry=registry,
            lock_manager=lock_manager,
            runner=runner,
            health_check=health_check,
            record_repository=record_repository,
            state_repository=state_repository,
            config=replace(config, **overrides),
            emitter=emitter,
        )
        built.append(orchestrator)
        return orchestrator

    yield build

    for orchestrator in built:
        orchestrator.shutdown(cancel=True, timeout=5)


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


# ============================================
# SQL (SQLite in memory)
# ============================================

@pytest.fixture
def test_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)

    yield engine

    drop_db(engine)
    engine.dispose()


@pytest.fixture
def test_session_factory(test_engine):
    """Create session factory for tests."""
    return get_session_factory(test_engine)
