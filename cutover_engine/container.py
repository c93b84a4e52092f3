#cutover_engine\container.py

"""Dependency injection container - wires all services together."""

from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import sessionmaker

from cutover_engine.config import CutoverSettings, settings
from cutover_engine.core.events import LoggingEventEmitter, MultiEventEmitter
from cutover_engine.deployer.config import DeploymentConfig
from cutover_engine.health_checker.checks import HttpHealthCheck
from cutover_engine.infrastructure.postgres.repository import (
    SqlDeploymentRecordRepository,
    SqlLockRepository,
    SqlResourceStateRepository,
    SqlVersionRepository,
)
from cutover_engine.locking.lock_manager import LockManager
from cutover_engine.orchestrator.cutover_orchestrator import CutoverOrchestrator
from cutover_engine.registry.service import VersionRegistry
from cutover_engine.runner.docker_runner import DockerInstanceRunner


def build_orchestrator(
    app_settings: CutoverSettings = settings,
    session_factory: Optional[sessionmaker] = None,
) -> CutoverOrchestrator:
    # ============================================
    # REPOSITORIES
    # ============================================

    version_repository = SqlVersionRepository(session_factory)
    lock_repository = SqlLockRepository(session_factory)
    record_repository = SqlDeploymentRecordRepository(session_factory)
    state_repository = SqlResourceStateRepository(session_factory)

    # ============================================
    # EVENTS
    # ============================================

    emitters = MultiEventEmitter([
        LoggingEventEmitter()
    ])

    # ============================================
    # SERVICES
    # ============================================

    registry = VersionRegistry(version_repository)
    # Lease expiry follows the database clock, not this host's
    lock_manager = LockManager(lock_repository, clock=lock_repository.database_now)

    runner = DockerInstanceRunner(
        image_repository=app_settings.image_repository,
        volumes=[app_settings.data_volume] if app_settings.data_volume else None,
        ports=app_settings.container_ports,
        stop_timeout=app_settings.container_stop_timeout_seconds,
        pull=app_settings.pull_images,
    )

    return CutoverOrchestrator(
        registry=registry,
        lock_manager=lock_manager,
        runner=runner,
        health_check=HttpHealthCheck(app_settings.health_check_url),
        record_repository=record_repository,
        state_repository=state_repository,
        config=DeploymentConfig.from_settings(app_settings),
        emitter=emitters,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> CutoverOrchestrator:
    """Process-wide orchestrator, built on first use."""
    return build_orchestrator()
