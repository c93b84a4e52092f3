# cutover_engine/orchestrator/cutover_orchestrator.py
"""Cutover orchestrator - the facade callers and the API talk to."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from cutover_engine.core.errors import (
    CircuitOpen,
    DeploymentInProgress,
    ResourceBlocked,
    VersionNotFound,
)
from cutover_engine.core.events import EventEmitter, NullEventEmitter
from cutover_engine.core.events_model import DeploymentEvent
from cutover_engine.core.factory import DeploymentRequestFactory
from cutover_engine.core.models import (
    DeploymentRecord,
    DeploymentRequest,
    DeploymentState,
    Instance,
    Lock,
)
from cutover_engine.core.repository import (
    DeploymentRecordRepository,
    ResourceStateRepository,
)
from cutover_engine.core.validation import validate_request
from cutover_engine.deployer.config import DeploymentConfig
from cutover_engine.deployer.deployer import SingletonDeployer
from cutover_engine.health_checker.checks import HealthCheck
from cutover_engine.health_checker.monitor import HealthMonitor
from cutover_engine.locking.lock_manager import LockManager
from cutover_engine.registry.service import VersionRegistry
from cutover_engine.runner.base import InstanceRunner

logger = logging.getLogger(__name__)


# ============================================
# EXIT CODES
# ============================================

EXIT_COMMITTED = 0
EXIT_ERROR = 1
EXIT_ROLLED_BACK = 2
EXIT_FAILED = 3
EXIT_CIRCUIT_OPEN = 4

_EXIT_CODES = {
    DeploymentState.COMMITTED: EXIT_COMMITTED,
    DeploymentState.ROLLED_BACK: EXIT_ROLLED_BACK,
    DeploymentState.FAILED: EXIT_FAILED,
}


def exit_code_for(outcome: Union[DeploymentRecord, BaseException]) -> int:
    """Process exit code for a finished record or the error that ended a request."""
    if isinstance(outcome, DeploymentRecord):
        return _EXIT_CODES.get(outcome.state, EXIT_ERROR)
    if isinstance(outcome, CircuitOpen):
        return EXIT_CIRCUIT_OPEN
    return EXIT_ERROR


# ============================================
# HANDLE / STATUS
# ============================================

class DeploymentHandle:
    """Asynchronous view of one deployment run."""

    def __init__(self, record: DeploymentRecord, cancel_event: Optional[threading.Event] = None):
        self._record = record
        self._cancel_event = cancel_event or threading.Event()
        self._finished = threading.Event()
        self.error: Optional[BaseException] = None

    @staticmethod
    def finished(record: DeploymentRecord) -> "DeploymentHandle":
        handle = DeploymentHandle(record)
        handle._finished.set()
        return handle

    @property
    def record(self) -> DeploymentRecord:
        return self._record

    @property
    def deployment_id(self) -> str:
        return self._record.deployment_id

    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> None:
        """Ask the run to stop; it ends ROLLED_BACK unless already committed."""
        logger.info(f"[orchestrator] Cancellation requested for {self._record.deployment_id}")
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> DeploymentRecord:
        """
        Block until the run finishes (or timeout passes) and return the record.

        Re-raises the error that interrupted the run, if any.
        """
        self._finished.wait(timeout)
        if self.error is not None:
            raise self.error
        return self._record


@dataclass
class ResourceStatus:
    resource_id: str
    state: DeploymentState
    current_version: Optional[str]
    active_instance: Optional[Instance]
    lock: Optional[Lock]
    last_record: Optional[DeploymentRecord]
    blocked: bool = False
    in_flight: bool = False
    failure_counts: Dict[str, int] = field(default_factory=dict)


# ============================================
# ORCHESTRATOR
# ============================================

class CutoverOrchestrator:
    """
    Deploys versions of singleton resources.

    Flow:
    1. Validate the request and resolve its idempotency key
    2. Take the resource's run-lock (one deployment per resource)
    3. Check the circuit breaker and blocked flag
    4. Persist a record and run the cutover on a worker thread
    """

    def __init__(
        self,
        *,
        registry: VersionRegistry,
        lock_manager: LockManager,
        runner: InstanceRunner,
        health_check: HealthCheck,
        record_repository: DeploymentRecordRepository,
        state_repository: ResourceStateRepository,
        config: Optional[DeploymentConfig] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.config = config or DeploymentConfig()
        self._registry = registry
        self._locks = lock_manager
        self._runner = runner
        self._records = record_repository
        self._states = state_repository
        self._emitter = emitter or NullEventEmitter()
        self._monitor = HealthMonitor(
            health_check,
            unhealthy_threshold=self.config.unhealthy_threshold,
        )

        self._deployers: Dict[str, SingletonDeployer] = {}
        self._run_locks: Dict[str, threading.Lock] = {}
        self._inflight: Dict[str, DeploymentHandle] = {}
        # Reentrant: submit() creates deployers and run-locks while holding it
        self._guard = threading.RLock()

    @property
    def registry(self) -> VersionRegistry:
        return self._registry

    # -------------------------
    # DEPLOY
    # -------------------------

    def deploy(self, request: DeploymentRequest) -> DeploymentRecord:
        """Blocking deploy; returns the terminal record."""
        return self.submit(request).wait()

    def submit(self, request: DeploymentRequest) -> DeploymentHandle:
        """
        Start a deployment on a worker thread.

        Raises:
            ValidationError: malformed request
            VersionNotFound: target version not registered
            DeploymentInProgress: another key is deploying this resource
            CircuitOpen / ResourceBlocked: rejected before any state change
        """
        validate_request(request)
        resource_id = request.resource_id

        with self._guard:
            inflight = self._inflight.get(resource_id)
            if inflight is not None and not inflight.done():
                if inflight.record.request.idempotency_key == request.idempotency_key:
                    logger.info(
                        f"[orchestrator] [{resource_id}] Key {request.idempotency_key} "
                        f"already in flight"
                    )
                    return inflight
                raise DeploymentInProgress(
                    f"{resource_id} is deploying {inflight.record.target_version}",
                    record=inflight.record,
                )

            existing = self._records.get_by_idempotency_key(resource_id, request.idempotency_key)
            if existing is not None:
                logger.info(
                    f"[orchestrator] [{resource_id}] Key {request.idempotency_key} "
                    f"already used by {existing.deployment_id}"
                )
                return DeploymentHandle.finished(existing)

            run_lock = self._run_lock(resource_id)
            if not run_lock.acquire(blocking=False):
                raise DeploymentInProgress(f"{resource_id} is busy with an operator action")

            try:
                deployer = self._deployer(resource_id)
                self._registry.resolve(request.target_version)
                deployer.check_admission(request.target_version)

                record = DeploymentRecord.for_request(request)
                self._records.create(record)
            except (CircuitOpen, ResourceBlocked) as e:
                run_lock.release()
                logger.warning(f"[orchestrator] [{resource_id}] Rejected: {e}")
                self._emit(DeploymentEvent.deployment_rejected(request, str(e)))
                raise
            except Exception:
                run_lock.release()
                raise

            handle = DeploymentHandle(record)
            self._inflight[resource_id] = handle

        thread = threading.Thread(
            target=self._run,
            args=(deployer, handle, run_lock),
            name=f"deploy-{resource_id}",
            daemon=True,
        )
        thread.start()
        return handle

    def _run(self, deployer: SingletonDeployer, handle: DeploymentHandle, run_lock: threading.Lock):
        try:
            deployer.run(handle.record, handle._cancel_event)
        except Exception as e:
            handle.error = e
        finally:
            run_lock.release()
            handle._finished.set()

    # -------------------------
    # ROLLBACK
    # -------------------------

    def rollback_request(self, resource_id: str, idempotency_key: Optional[str] = None) -> DeploymentRequest:
        """Request for the previously committed version."""
        previous = self._registry.previous(resource_id)
        if previous is None:
            raise VersionNotFound(f"{resource_id} has no previous version to roll back to")

        return DeploymentRequestFactory.create(
            resource_id=resource_id,
            target_version=previous.identifier,
            idempotency_key=idempotency_key,
        )

    def rollback(self, resource_id: str) -> DeploymentRecord:
        """Redeploy the previous version through the full cutover."""
        request = self.rollback_request(resource_id)
        logger.info(f"[orchestrator] [{resource_id}] Rolling back to {request.target_version}")
        return self.deploy(request)

    # -------------------------
    # STATUS
    # -------------------------

    def status(self, resource_id: str) -> ResourceStatus:
        deployer = self._deployer(resource_id)
        state = deployer.resource_state()
        current = self._registry.current(resource_id)

        with self._guard:
            inflight = self._inflight.get(resource_id)
            in_flight = inflight is not None and not inflight.done()

        last = inflight.record if in_flight else deployer.last_record()

        return ResourceStatus(
            resource_id=resource_id,
            state=last.state if last else DeploymentState.IDLE,
            current_version=current.identifier if current else None,
            active_instance=state.active_instance,
            lock=self._locks.current(resource_id),
            last_record=last,
            blocked=state.blocked,
            in_flight=in_flight,
            failure_counts=dict(state.failure_counts),
        )

    def get_record(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._guard:
            for handle in self._inflight.values():
                if handle.deployment_id == deployment_id and not handle.done():
                    return handle.record
        return self._records.get(deployment_id)

    # -------------------------
    # OPERATOR ACTIONS
    # -------------------------

    def reset_circuit(self, resource_id: str, version: Optional[str] = None):
        with self._exclusive(resource_id):
            return self._deployer(resource_id).reset_circuit(version)

    def force_release(self, resource_id: str, reason: str) -> Optional[DeploymentRecord]:
        with self._exclusive(resource_id):
            return self._deployer(resource_id).force_release(reason)

    def recover(
        self,
        resource_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DeploymentRecord]:
        """Finish an interrupted deployment left by a previous process."""
        with self._exclusive(resource_id):
            return self._deployer(resource_id).recover(cancel_event)

    def recover_all(self) -> List[DeploymentRecord]:
        # A crash in the first run can leave records without a state row
        resource_ids = set(self._states.list_ids())
        resource_ids.update(self._records.list_unfinished_resource_ids())

        recovered = []
        for resource_id in sorted(resource_ids):
            try:
                record = self.recover(resource_id)
            except Exception as e:
                logger.error(f"[orchestrator] [{resource_id}] Recovery failed: {e}")
                continue
            if record is not None:
                recovered.append(record)
        return recovered

    def shutdown(self, cancel: bool = True, timeout: Optional[float] = None) -> None:
        """Cancel (optionally) and wait for in-flight runs, then stop heartbeats."""
        with self._guard:
            handles = [h for h in self._inflight.values() if not h.done()]
            deployers = list(self._deployers.values())

        for handle in handles:
            if cancel:
                handle.cancel()
            handle._finished.wait(timeout)

        for deployer in deployers:
            deployer.close()

        logger.info("[orchestrator] Shut down")

    # -------------------------
    # INTERNALS
    # -------------------------

    def _deployer(self, resource_id: str) -> SingletonDeployer:
        # One deployer per resource: its renewers and live set must not split
        with self._guard:
            deployer = self._deployers.get(resource_id)
            if deployer is None:
                deployer = SingletonDeployer(
                    resource_id,
                    config=self.config,
                    registry=self._registry,
                    lock_manager=self._locks,
                    monitor=self._monitor,
                    runner=self._runner,
                    record_repository=self._records,
                    state_repository=self._states,
                    emitter=self._emitter,
                )
                self._deployers[resource_id] = deployer
            return deployer

    def _run_lock(self, resource_id: str) -> threading.Lock:
        with self._guard:
            lock = self._run_locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._run_locks[resource_id] = lock
            return lock

    def _exclusive(self, resource_id: str) -> "_RunLockGuard":
        with self._guard:
            run_lock = self._run_lock(resource_id)
            if not run_lock.acquire(blocking=False):
                inflight = self._inflight.get(resource_id)
                raise DeploymentInProgress(
                    f"{resource_id} has a deployment in progress",
                    record=inflight.record if inflight else None,
                )
        return _RunLockGuard(run_lock)

    def _emit(self, event: DeploymentEvent) -> None:
        try:
            self._emitter.emit([event])
        except Exception as e:
            logger.error(f"[orchestrator] Event emission failed: {e}")


class _RunLockGuard:
    def __init__(self, lock: threading.Lock):
        self._lock = lock

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._lock.release()
        return False
