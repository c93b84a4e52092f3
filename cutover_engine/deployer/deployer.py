# cutover_engine/deployer/deployer.py
"""
Singleton deployer - drives deployment records through the cutover.

Stop-before-start: the old instance is stopped and its lease released
before the candidate may take the lock, so the exclusive resource never
has two writers. One deployer per resource; the orchestrator serializes
runs on it.
"""

import logging
import threading
import time
from typing import List, Optional, Set

from cutover_engine.core.errors import (
    CircuitOpen,
    DeploymentCancelled,
    HealthCheckFailed,
    HealthTimeout,
    InstanceError,
    InvalidStateTransition,
    LockAlreadyHeld,
    ResourceBlocked,
    StopTimeout,
)
from cutover_engine.core.events import EventEmitter, NullEventEmitter
from cutover_engine.core.events_model import DeploymentEvent
from cutover_engine.core.models import (
    DeploymentRecord,
    DeploymentState,
    Instance,
    InstanceState,
    Lock,
    ResourceState,
)
from cutover_engine.core.repository import (
    DeploymentRecordRepository,
    ResourceStateRepository,
)
from cutover_engine.core.state_machine import DeploymentStateMachine
from cutover_engine.deployer.config import DeploymentConfig
from cutover_engine.deployer.retry import backoff_delay
from cutover_engine.health_checker.monitor import HealthMonitor
from cutover_engine.locking.lock_manager import LeaseRenewer, LockManager
from cutover_engine.registry.service import VersionRegistry
from cutover_engine.runner.base import InstanceRunner

logger = logging.getLogger(__name__)

RESUMABLE_STATES = frozenset({
    DeploymentState.IDLE,
    DeploymentState.STOPPING_OLD,
    DeploymentState.ACQUIRING_LOCK,
})


class SingletonDeployer:
    """
    Cutover of one exclusive resource.

    Flow:
        IDLE -> STOPPING_OLD -> ACQUIRING_LOCK -> STARTING_NEW -> VERIFYING
             -> COMMITTED | ROLLED_BACK | FAILED

    The record is persisted after every transition so a restarted process
    can pick the run up again with recover().
    """

    def __init__(
        self,
        resource_id: str,
        *,
        config: DeploymentConfig,
        registry: VersionRegistry,
        lock_manager: LockManager,
        monitor: HealthMonitor,
        runner: InstanceRunner,
        record_repository: DeploymentRecordRepository,
        state_repository: ResourceStateRepository,
        emitter: Optional[EventEmitter] = None,
    ):
        self.resource_id = resource_id
        self.config = config
        self._registry = registry
        self._locks = lock_manager
        self._monitor = monitor
        self._runner = runner
        self._records = record_repository
        self._states = state_repository
        self._emitter = emitter or NullEventEmitter()

        # Instances this process launched or adopted and has not stopped
        self._live: Set[str] = set()
        self._guard = threading.Lock()

        self._active_renewer: Optional[LeaseRenewer] = None
        self._candidate: Optional[Instance] = None
        self._candidate_renewer: Optional[LeaseRenewer] = None
        self._cancel_event: Optional[threading.Event] = None
        self._lease_lost = False

    # =========================================================
    # QUERIES
    # =========================================================

    def resource_state(self) -> ResourceState:
        return self._states.get(self.resource_id) or ResourceState(resource_id=self.resource_id)

    def last_record(self) -> Optional[DeploymentRecord]:
        records = list(self._records.list_for_resource(self.resource_id, 1))
        return records[0] if records else None

    def live_instances(self) -> List[str]:
        with self._guard:
            return sorted(self._live)

    def check_admission(self, target_version: str) -> None:
        """
        Reject a request before any record is written.

        Raises:
            ResourceBlocked: last run FAILED and nobody force-released it,
                or last run was interrupted and not recovered yet
            CircuitOpen: too many rollbacks of this version in a row
        """
        state = self.resource_state()
        last = self.last_record()

        if state.blocked:
            raise ResourceBlocked(
                f"{self.resource_id} is blocked by a failed deployment; "
                f"force-release it first",
                record=last,
            )

        # Its candidate may still be running on the resource
        if last is not None and last.finished_at is None:
            raise ResourceBlocked(
                f"{self.resource_id} has deployment {last.deployment_id} interrupted "
                f"in {last.state.value}; recover it first",
                record=last,
            )

        if not self.config.circuit_breaker_enabled:
            return

        failures = state.failures_for(target_version)
        if failures >= self.config.max_consecutive_failures:
            raise CircuitOpen(
                f"{target_version} rolled back {failures} times in a row on "
                f"{self.resource_id}; reset the circuit to retry",
                record=last,
            )

    # =========================================================
    # RUN
    # =========================================================

    def run(
        self,
        record: DeploymentRecord,
        cancel_event: Optional[threading.Event] = None,
    ) -> DeploymentRecord:
        """
        Drive a persisted record to a terminal state.

        Expected failures and cancellation end the record; only unexpected
        errors (store outages, bugs) propagate, leaving the record for
        recover().
        """
        cancel_event = cancel_event or threading.Event()
        self._cancel_event = cancel_event
        self._lease_lost = False

        # A state row lists the resource for recover_all() from the first run on
        if self._states.get(self.resource_id) is None:
            self._states.save(ResourceState(resource_id=self.resource_id))

        logger.info(
            f"[cutover] [{self.resource_id}] Deployment {record.deployment_id} "
            f"to {record.target_version} from {record.state.value}"
        )
        self._emit(DeploymentEvent.deployment_started(record))

        try:
            self._drive(record, cancel_event)

        except DeploymentCancelled:
            if self._lease_lost:
                self._roll_back(record, "LockExpired: candidate lease lost during cutover")
            else:
                self._roll_back(record, "Cancelled", count_failure=False)

        except (StopTimeout, LockAlreadyHeld) as e:
            self._fail(record, f"{type(e).__name__}: {e}")

        except (HealthTimeout, HealthCheckFailed, InstanceError) as e:
            self._roll_back(record, f"{type(e).__name__}: {e}")

        except Exception as e:
            # The candidate keeps its lease until recover() deals with it
            logger.exception(
                f"[cutover] [{self.resource_id}] ❌ Deployment {record.deployment_id} "
                f"interrupted in {record.state.value}: {e}"
            )
            raise

        finally:
            self._cancel_event = None

        logger.info(
            f"[cutover] [{self.resource_id}] Deployment {record.deployment_id} "
            f"finished {record.state.value}: {record.reason}"
        )
        self._emit(DeploymentEvent.deployment_finished(record))
        return record

    def _drive(self, record: DeploymentRecord, cancel: threading.Event) -> None:
        if record.state not in RESUMABLE_STATES:
            raise InvalidStateTransition(
                f"Cannot run deployment {record.deployment_id} from {record.state.value}"
            )

        target = self._registry.resolve(record.target_version)
        active = self.resource_state().active_instance

        if record.state == DeploymentState.IDLE:
            current = self._registry.current(self.resource_id)
            record.previous_version = current.identifier if current else None

            if active is not None:
                self._transition(
                    record,
                    DeploymentState.STOPPING_OLD,
                    f"Stopping {active.instance_id} at {active.version}",
                )
            else:
                self._transition(record, DeploymentState.ACQUIRING_LOCK, "No active instance")

        if record.state == DeploymentState.STOPPING_OLD:
            if active is not None:
                self._stop_old(active, cancel)
            self._transition(record, DeploymentState.ACQUIRING_LOCK, "Old instance stopped")

        # --- ACQUIRING_LOCK ---
        candidate = Instance.new(self.resource_id, target.identifier)
        if target.image_uri:
            candidate.metadata["image"] = target.image_uri

        lock = self._acquire_lock(candidate.instance_id, cancel)

        with self._guard:
            self._live.add(candidate.instance_id)
        self._candidate = candidate
        self._candidate_renewer = LeaseRenewer(
            self._locks,
            lock,
            self.config.lease_seconds,
            on_lost=self._on_lease_lost,
        ).start()

        record.candidate = candidate
        self._transition(
            record,
            DeploymentState.STARTING_NEW,
            f"Lock acquired by {candidate.instance_id}",
        )

        # --- STARTING_NEW ---
        if cancel.is_set():
            raise DeploymentCancelled("Cancelled before starting candidate")

        candidate = self._runner.start(candidate)
        self._candidate = candidate
        record.candidate = candidate
        self._transition(
            record,
            DeploymentState.VERIFYING,
            f"Started {candidate.instance_id} at {candidate.version}",
        )

        # --- VERIFYING ---
        self._monitor.wait_until_healthy(
            candidate,
            timeout=self.config.health_timeout_seconds,
            interval=self.config.health_interval_seconds,
            cancel_event=cancel,
        )

        self._commit(record, candidate)

    # ---------------------------------------------------------
    # STOPPING_OLD
    # ---------------------------------------------------------

    def _stop_old(self, old: Instance, cancel: threading.Event) -> None:
        """
        Stop the old instance and wait until its lease is gone.

        Raises StopTimeout when either does not happen within stop_timeout.
        """
        timeout = self.config.stop_timeout_seconds
        deadline = time.monotonic() + timeout
        stopped = False

        while True:
            if cancel.is_set():
                raise DeploymentCancelled("Cancelled while stopping old instance")

            if not stopped:
                try:
                    self._runner.stop(old)
                    stopped = True
                    self._retire_active(old)
                except InstanceError as e:
                    logger.warning(
                        f"[cutover] [{self.resource_id}] Stop of {old.instance_id} failed: {e}"
                    )

            if stopped and not self._locks.is_held_by(self.resource_id, old.instance_id):
                logger.info(f"[cutover] [{self.resource_id}] ✅ {old.instance_id} stopped")
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                what = "still holds the lock" if stopped else "did not stop"
                raise StopTimeout(f"{old.instance_id} {what} after {timeout}s")

            if cancel.wait(min(self.config.stop_poll_interval_seconds, remaining)):
                raise DeploymentCancelled("Cancelled while stopping old instance")

    def _retire_active(self, old: Instance) -> None:
        renewer, self._active_renewer = self._active_renewer, None
        if renewer is not None:
            renewer.stop(release=True)
        else:
            # Lease of an instance this process did not start
            lock = self._locks.current(self.resource_id)
            if lock and lock.holder_id == old.instance_id:
                self._locks.release(lock)

        with self._guard:
            self._live.discard(old.instance_id)
        self._monitor.forget(old)

        state = self.resource_state()
        state.active_instance = None
        self._states.save(state)

    # ---------------------------------------------------------
    # ACQUIRING_LOCK
    # ---------------------------------------------------------

    def _acquire_lock(self, holder_id: str, cancel: threading.Event) -> Lock:
        with self._guard:
            live = sorted(self._live)
        if live:
            raise LockAlreadyHeld(
                f"{self.resource_id} still has live instance(s) {live}",
                holder_id=live[0],
            )

        limit = self.config.lock_retry_limit

        for attempt in range(1, limit + 1):
            if cancel.is_set():
                raise DeploymentCancelled("Cancelled while acquiring lock")

            try:
                return self._locks.acquire(self.resource_id, holder_id, self.config.lease_seconds)
            except LockAlreadyHeld as e:
                if attempt == limit:
                    raise LockAlreadyHeld(
                        f"{e} (gave up after {limit} attempts)",
                        holder_id=e.holder_id,
                    ) from e

                delay = backoff_delay(
                    attempt,
                    self.config.lock_backoff_base_seconds,
                    self.config.lock_backoff_max_seconds,
                )
                logger.info(
                    f"[cutover] [{self.resource_id}] Lock busy "
                    f"(attempt {attempt}/{limit}), retrying in {delay}s"
                )
                if cancel.wait(delay):
                    raise DeploymentCancelled("Cancelled while acquiring lock")

        raise LockAlreadyHeld(f"{self.resource_id} lock not acquired")

    def _on_lease_lost(self, lock: Lock) -> None:
        self._emit(DeploymentEvent.lock_lost(lock))

        candidate = self._candidate
        if candidate is not None and candidate.instance_id == lock.holder_id:
            self._lease_lost = True
            if self._cancel_event is not None:
                self._cancel_event.set()

    # ---------------------------------------------------------
    # TERMINAL STATES
    # ---------------------------------------------------------

    def _commit(self, record: DeploymentRecord, candidate: Instance) -> None:
        candidate.state = InstanceState.RUNNING

        # Resource state first: recover() completes a commit whose
        # active instance is already the candidate
        state = self.resource_state()
        state.active_instance = candidate
        state.last_deployment_id = record.deployment_id
        state.failure_counts.pop(candidate.version, None)
        self._states.save(state)

        self._registry.set_current(self.resource_id, candidate.version)

        self._active_renewer = self._candidate_renewer
        self._candidate_renewer = None
        self._candidate = None

        record.candidate = candidate
        self._transition(record, DeploymentState.COMMITTED, f"{candidate.version} healthy")

        pruned = self._records.prune(self.resource_id, record.deployment_id)
        if pruned:
            logger.debug(f"[cutover] [{self.resource_id}] Pruned {pruned} old record(s)")

    def _roll_back(self, record: DeploymentRecord, reason: str, count_failure: bool = True) -> None:
        """Stop the candidate if any, release the lock, end ROLLED_BACK."""
        candidate = self._candidate
        if candidate is not None:
            try:
                self._runner.stop(candidate)
            except InstanceError as e:
                # Lease stays with the renewer until an operator steps in
                logger.error(
                    f"[cutover] [{self.resource_id}] ❌ Could not stop candidate "
                    f"{candidate.instance_id}: {e}"
                )
                self._fail(record, f"{reason}; candidate {candidate.instance_id} not stopped: {e}")
                return
            self._release_candidate(candidate)
            record.candidate = candidate

        state = self.resource_state()
        if count_failure:
            state.failure_counts[record.target_version] = state.failures_for(record.target_version) + 1
        state.last_deployment_id = record.deployment_id
        self._states.save(state)

        self._transition(record, DeploymentState.ROLLED_BACK, reason)

    def _release_candidate(self, candidate: Instance) -> None:
        renewer, self._candidate_renewer = self._candidate_renewer, None
        if renewer is not None:
            renewer.stop(release=True)
        with self._guard:
            self._live.discard(candidate.instance_id)
        self._monitor.forget(candidate)
        self._candidate = None

    def _fail(self, record: DeploymentRecord, reason: str) -> None:
        state = self.resource_state()
        state.blocked = True
        state.last_deployment_id = record.deployment_id
        self._states.save(state)

        self._transition(record, DeploymentState.FAILED, reason)
        logger.error(f"[cutover] [{self.resource_id}] ❌ FAILED: {reason}")

    def _transition(self, record: DeploymentRecord, new_state: DeploymentState, reason: str) -> None:
        previous = record.state
        DeploymentStateMachine.transition(record, new_state, reason, now=self._locks.now())
        self._records.update(record)

        logger.info(
            f"[cutover] [{self.resource_id}] {previous.value} -> {new_state.value}: {reason}"
        )
        self._emit(DeploymentEvent.deployment_transitioned(record, record.transitions[-1]))

    def _emit(self, event: DeploymentEvent) -> None:
        try:
            self._emitter.emit([event])
        except Exception as e:
            logger.error(f"[cutover] [{self.resource_id}] Event emission failed: {e}")

    # =========================================================
    # OPERATOR ACTIONS
    # =========================================================

    def reset_circuit(self, version: Optional[str] = None) -> ResourceState:
        state = self.resource_state()
        if version is None:
            state.failure_counts.clear()
        else:
            state.failure_counts.pop(version, None)
        self._states.save(state)

        logger.info(f"[cutover] [{self.resource_id}] Circuit reset for {version or 'all versions'}")
        return state

    def force_release(self, reason: str) -> Optional[DeploymentRecord]:
        """
        Unblock the resource: drop the lock and forget the active instance.

        The operator vouches that nothing is still writing to the resource.
        """
        for renewer in (self._candidate_renewer, self._active_renewer):
            if renewer is not None:
                renewer.stop(release=False)
        self._candidate_renewer = None
        self._active_renewer = None
        self._candidate = None
        with self._guard:
            self._live.clear()

        self._locks.force_release(self.resource_id)

        state = self.resource_state()
        state.blocked = False
        state.active_instance = None
        self._states.save(state)

        record = self.last_record()
        if record is not None and record.state == DeploymentState.FAILED:
            self._transition(record, DeploymentState.IDLE, reason)

        logger.warning(f"[cutover] [{self.resource_id}] Force-released: {reason}")
        self._emit(DeploymentEvent.resource_released(self.resource_id, reason))
        return record

    # =========================================================
    # RECOVERY
    # =========================================================

    def recover(self, cancel_event: Optional[threading.Event] = None) -> Optional[DeploymentRecord]:
        """
        Finish whatever a crashed process left behind.

        Returns the recovered record, or None when the last run had
        finished.
        """
        record = self.last_record()
        state = self.resource_state()

        if record is None or record.finished_at is not None:
            self._adopt_active(state)
            return None

        logger.warning(
            f"[cutover] [{self.resource_id}] Recovering deployment "
            f"{record.deployment_id} interrupted in {record.state.value}"
        )

        if record.state in RESUMABLE_STATES:
            self._adopt_active(state)
            return self.run(record, cancel_event)

        candidate = record.candidate
        active = state.active_instance

        if candidate and active and active.instance_id == candidate.instance_id:
            # Crashed mid-commit
            current = self._registry.current(self.resource_id)
            if current is None or current.identifier != candidate.version:
                self._registry.set_current(self.resource_id, candidate.version)
            if self._candidate is not None and self._candidate.instance_id == candidate.instance_id:
                # Same process: its heartbeat becomes the active one
                self._active_renewer = self._candidate_renewer
                self._candidate_renewer = None
                self._candidate = None
            self._adopt_active(state)
            self._transition(record, DeploymentState.COMMITTED, "Commit completed during recovery")
            self._records.prune(self.resource_id, record.deployment_id)
            self._emit(DeploymentEvent.deployment_finished(record))
            return record

        if candidate is not None:
            try:
                self._runner.stop(candidate)
            except InstanceError as e:
                self._fail(record, f"Orphaned candidate {candidate.instance_id} not stopped: {e}")
                self._emit(DeploymentEvent.deployment_finished(record))
                return record

            self._release_candidate(candidate)
            lock = self._locks.current(self.resource_id)
            if lock and lock.holder_id == candidate.instance_id:
                self._locks.release(lock)
            record.candidate = candidate

        state.last_deployment_id = record.deployment_id
        self._states.save(state)

        self._transition(
            record,
            DeploymentState.ROLLED_BACK,
            "Orphaned candidate stopped during recovery",
        )
        self._emit(DeploymentEvent.deployment_finished(record))
        return record

    def _adopt_active(self, state: ResourceState) -> None:
        """Resume renewing the committed instance's lease after a restart."""
        active = state.active_instance
        if active is None or self._active_renewer is not None:
            return

        try:
            lock = self._locks.acquire(self.resource_id, active.instance_id, self.config.lease_seconds)
        except LockAlreadyHeld as e:
            logger.warning(
                f"[cutover] [{self.resource_id}] Cannot adopt {active.instance_id}: {e}"
            )
            return

        self._active_renewer = LeaseRenewer(
            self._locks,
            lock,
            self.config.lease_seconds,
            on_lost=self._on_lease_lost,
        ).start()
        with self._guard:
            self._live.add(active.instance_id)
        logger.info(f"[cutover] [{self.resource_id}] Adopted active instance {active.instance_id}")

    def close(self) -> None:
        """Stop heartbeats without releasing; leases lapse on their own."""
        for renewer in (self._candidate_renewer, self._active_renewer):
            if renewer is not None:
                renewer.stop(release=False)
