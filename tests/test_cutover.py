"""Cutover scenarios through the orchestrator, with fake runner and health checks."""

import threading
import time

import pytest

from cutover_engine.core.errors import (
    CircuitOpen,
    DeploymentInProgress,
    PersistenceError,
    ResourceBlocked,
    VersionNotFound,
)
from cutover_engine.core.models import (
    DeploymentRecord,
    DeploymentState,
    Instance,
    ResourceState,
    utcnow,
)
from cutover_engine.core.factory import DeploymentRequestFactory
from cutover_engine.core.state_machine import DeploymentStateMachine

from conftest import RESOURCE_ID

WAIT = 10.0


def request(version: str, key: str = None):
    return DeploymentRequestFactory.create(
        resource_id=RESOURCE_ID,
        target_version=version,
        idempotency_key=key,
    )


def deploy(orchestrator, version: str, key: str = None):
    return orchestrator.submit(request(version, key)).wait(WAIT)


def states_of(record):
    return [t.to_state for t in record.transitions]


class TestHappyPath:

    def test_first_deploy_skips_stopping_old(self, orchestrator, runner, lock_manager):
        record = deploy(orchestrator, "v1")

        assert record.state == DeploymentState.COMMITTED
        assert states_of(record) == [
            DeploymentState.ACQUIRING_LOCK,
            DeploymentState.STARTING_NEW,
            DeploymentState.VERIFYING,
            DeploymentState.COMMITTED,
        ]
        assert runner.running_versions() == ["v1"]
        assert lock_manager.current(RESOURCE_ID).holder_id == record.candidate.instance_id

    def test_v1_to_v2_commits(self, orchestrator, runner, registry, lock_manager):
        first = deploy(orchestrator, "v1")
        record = deploy(orchestrator, "v2")

        assert record.state == DeploymentState.COMMITTED
        assert record.previous_version == "v1"
        assert states_of(record) == [
            DeploymentState.STOPPING_OLD,
            DeploymentState.ACQUIRING_LOCK,
            DeploymentState.STARTING_NEW,
            DeploymentState.VERIFYING,
            DeploymentState.COMMITTED,
        ]
        assert registry.current(RESOURCE_ID).identifier == "v2"
        assert runner.running_versions() == ["v2"]
        assert first.candidate.instance_id in runner.stopped
        assert lock_manager.current(RESOURCE_ID).holder_id == record.candidate.instance_id

    def test_never_more_than_one_instance(self, orchestrator, runner):
        for version in ("v1", "v2", "v1", "v2"):
            assert deploy(orchestrator, version).state == DeploymentState.COMMITTED

        assert runner.max_live == 1
        assert len(runner.running) == 1

    def test_candidate_uses_registered_image(self, orchestrator, runner):
        record = deploy(orchestrator, "v1")

        assert record.candidate.metadata["image"] == "registry.local/clickhouse:v1"

    def test_commit_prunes_older_records(self, orchestrator, record_repository):
        deploy(orchestrator, "v1")
        deploy(orchestrator, "v3")
        latest = deploy(orchestrator, "v2")

        records = list(record_repository.list_for_resource(RESOURCE_ID, 10))

        assert [r.deployment_id for r in records] == [latest.deployment_id]

    def test_events(self, orchestrator, emitter):
        record = deploy(orchestrator, "v1")

        assert len(emitter.of_type("deployment.started")) == 1
        assert len(emitter.of_type("deployment.transitioned")) == len(record.transitions)
        finished = emitter.of_type("deployment.finished")
        assert finished[-1].metadata["state"] == "COMMITTED"


class TestRollback:

    def test_health_timeout_rolls_back(self, orchestrator, runner, registry, lock_manager, state_repository):
        deploy(orchestrator, "v1")

        record = deploy(orchestrator, "v3")

        assert record.state == DeploymentState.ROLLED_BACK
        assert record.reason.startswith("HealthTimeout")
        assert runner.running == {}
        assert registry.current(RESOURCE_ID).identifier == "v1"
        assert lock_manager.current(RESOURCE_ID) is None

        state = state_repository.get(RESOURCE_ID)
        assert state.active_instance is None
        assert state.failures_for("v3") == 1

    def test_start_failure_rolls_back(self, orchestrator, runner, lock_manager):
        runner.failing_versions.add("v3")

        record = deploy(orchestrator, "v3")

        assert record.state == DeploymentState.ROLLED_BACK
        assert record.reason.startswith("InstanceError")
        assert lock_manager.current(RESOURCE_ID) is None

    def test_unhealthy_threshold_fails_fast(self, make_orchestrator):
        orchestrator = make_orchestrator(unhealthy_threshold=2, health_timeout_seconds=30)

        started = time.monotonic()
        record = deploy(orchestrator, "v3")

        assert record.state == DeploymentState.ROLLED_BACK
        assert record.reason.startswith("HealthCheckFailed")
        assert time.monotonic() - started < 5

    def test_rollback_redeploys_previous_version(self, orchestrator, registry):
        deploy(orchestrator, "v1")
        deploy(orchestrator, "v2")

        record = orchestrator.rollback(RESOURCE_ID)

        assert record.state == DeploymentState.COMMITTED
        assert record.target_version == "v1"
        assert registry.current(RESOURCE_ID).identifier == "v1"

    def test_rollback_without_previous_version(self, orchestrator):
        deploy(orchestrator, "v1")

        with pytest.raises(VersionNotFound):
            orchestrator.rollback(RESOURCE_ID)


class TestCircuitBreaker:

    def test_opens_after_max_consecutive_failures(self, orchestrator, runner, record_repository, emitter):
        deploy(orchestrator, "v1")
        for _ in range(3):
            assert deploy(orchestrator, "v3").state == DeploymentState.ROLLED_BACK

        started_before = len(runner.started)
        records_before = len(list(record_repository.list_for_resource(RESOURCE_ID, 50)))

        with pytest.raises(CircuitOpen) as exc:
            orchestrator.submit(request("v3"))

        assert exc.value.record is not None
        assert exc.value.record.target_version == "v3"
        assert len(runner.started) == started_before
        assert len(list(record_repository.list_for_resource(RESOURCE_ID, 50))) == records_before
        assert emitter.of_type("deployment.rejected")

    def test_other_versions_still_deploy(self, orchestrator):
        for _ in range(3):
            deploy(orchestrator, "v3")

        assert deploy(orchestrator, "v2").state == DeploymentState.COMMITTED

    def test_reset_circuit(self, orchestrator):
        for _ in range(3):
            deploy(orchestrator, "v3")

        orchestrator.reset_circuit(RESOURCE_ID, "v3")

        assert deploy(orchestrator, "v3").state == DeploymentState.ROLLED_BACK

    def test_commit_resets_counter(self, orchestrator, health_check, state_repository):
        deploy(orchestrator, "v3")
        deploy(orchestrator, "v3")

        health_check.healthy_versions.add("v3")
        assert deploy(orchestrator, "v3").state == DeploymentState.COMMITTED

        assert state_repository.get(RESOURCE_ID).failures_for("v3") == 0

    def test_disabled_breaker(self, make_orchestrator):
        orchestrator = make_orchestrator(circuit_breaker_enabled=False)

        for _ in range(4):
            assert deploy(orchestrator, "v3").state == DeploymentState.ROLLED_BACK


class TestIdempotency:

    def test_finished_key_returns_stored_record(self, orchestrator, runner, record_repository):
        first = deploy(orchestrator, "v1", key="release-42")
        again = deploy(orchestrator, "v1", key="release-42")

        assert again.deployment_id == first.deployment_id
        assert len(runner.started) == 1
        assert len(list(record_repository.list_for_resource(RESOURCE_ID, 10))) == 1

    def test_in_flight_key_returns_same_handle(self, make_orchestrator, health_check):
        checking = threading.Event()
        gate = threading.Event()

        def hold(_instance):
            checking.set()
            gate.wait(WAIT)

        health_check.on_check = hold
        orchestrator = make_orchestrator(health_timeout_seconds=WAIT)

        handle = orchestrator.submit(request("v1", key="k"))
        assert checking.wait(WAIT)

        assert orchestrator.submit(request("v1", key="k")) is handle

        with pytest.raises(DeploymentInProgress):
            orchestrator.submit(request("v2", key="other"))

        assert orchestrator.status(RESOURCE_ID).in_flight

        gate.set()
        assert handle.wait(WAIT).state == DeploymentState.COMMITTED


class TestCancellation:

    def test_cancel_during_verification(self, make_orchestrator, health_check, runner, lock_manager, state_repository):
        checking = threading.Event()
        health_check.on_check = lambda _: checking.set()
        orchestrator = make_orchestrator(health_timeout_seconds=WAIT, health_interval_seconds=0.05)

        handle = orchestrator.submit(request("v3"))
        assert checking.wait(WAIT)
        handle.cancel()
        record = handle.wait(WAIT)

        assert record.state == DeploymentState.ROLLED_BACK
        assert record.reason == "Cancelled"
        assert runner.running == {}
        assert lock_manager.current(RESOURCE_ID) is None
        assert state_repository.get(RESOURCE_ID).failures_for("v3") == 0

    def test_lost_lease_during_verification(self, make_orchestrator, health_check, lock_manager, runner):
        def steal(_instance):
            lock_manager.force_release(RESOURCE_ID)

        health_check.on_check = steal
        orchestrator = make_orchestrator(
            lease_seconds=0.3,
            health_timeout_seconds=WAIT,
            health_interval_seconds=0.05,
        )

        record = deploy(orchestrator, "v3")

        assert record.state == DeploymentState.ROLLED_BACK
        assert record.reason.startswith("LockExpired")
        assert runner.running == {}


class TestFailures:

    def test_stop_timeout_fails_and_blocks(self, orchestrator, runner, lock_manager):
        first = deploy(orchestrator, "v1")
        runner.unstoppable.add(first.candidate.instance_id)

        record = deploy(orchestrator, "v2")

        assert record.state == DeploymentState.FAILED
        assert record.reason.startswith("StopTimeout")
        assert runner.running_versions() == ["v1"]
        assert lock_manager.current(RESOURCE_ID).holder_id == first.candidate.instance_id

        status = orchestrator.status(RESOURCE_ID)
        assert status.blocked
        assert status.state == DeploymentState.FAILED

        with pytest.raises(ResourceBlocked):
            orchestrator.submit(request("v2"))

    def test_force_release_unblocks(self, orchestrator, runner, lock_manager, emitter):
        first = deploy(orchestrator, "v1")
        runner.unstoppable.add(first.candidate.instance_id)
        failed = deploy(orchestrator, "v2")

        # Operator deals with the stuck instance by hand
        runner.unstoppable.clear()
        runner.stop(first.candidate)

        released = orchestrator.force_release(RESOURCE_ID, "old container killed by hand")

        assert released.deployment_id == failed.deployment_id
        assert released.state == DeploymentState.IDLE
        assert released.transitions[-1].from_state == DeploymentState.FAILED
        assert released.transitions[-1].reason == "old container killed by hand"
        assert lock_manager.current(RESOURCE_ID) is None
        assert emitter.of_type("resource.force_released")

        record = deploy(orchestrator, "v2")
        assert record.state == DeploymentState.COMMITTED
        assert runner.max_live == 1

    def test_foreign_lock_holder_exhausts_retries(self, orchestrator, runner, lock_manager):
        lock_manager.acquire(RESOURCE_ID, "someone-else", lease_seconds=60)

        record = deploy(orchestrator, "v1")

        assert record.state == DeploymentState.FAILED
        assert record.reason.startswith("LockAlreadyHeld")
        assert record.visited(DeploymentState.ACQUIRING_LOCK)
        assert runner.started == []


class TestStatus:

    def test_status_before_any_deploy(self, orchestrator):
        status = orchestrator.status(RESOURCE_ID)

        assert status.state == DeploymentState.IDLE
        assert status.current_version is None
        assert status.active_instance is None
        assert status.lock is None

    def test_status_after_commit(self, orchestrator):
        record = deploy(orchestrator, "v1")

        status = orchestrator.status(RESOURCE_ID)

        assert status.state == DeploymentState.COMMITTED
        assert status.current_version == "v1"
        assert status.active_instance.instance_id == record.candidate.instance_id
        assert status.lock.holder_id == record.candidate.instance_id
        assert status.last_record.deployment_id == record.deployment_id
        assert orchestrator.get_record(record.deployment_id).state == DeploymentState.COMMITTED

    def test_one_deployer_per_resource_under_concurrent_calls(self, orchestrator):
        barrier = threading.Barrier(16)
        seen = []

        def touch():
            barrier.wait()
            seen.append(orchestrator._deployer("analytics"))

        threads = [threading.Thread(target=touch) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(WAIT)

        assert len(seen) == 16
        assert len({id(deployer) for deployer in seen}) == 1


class TestRecovery:

    def _interrupted(self, state, record_repository, version="v2"):
        """A record persisted as if the process died while in `state`."""
        record = DeploymentRecord.for_request(request(version))
        path = {
            DeploymentState.ACQUIRING_LOCK: [DeploymentState.ACQUIRING_LOCK],
            DeploymentState.VERIFYING: [
                DeploymentState.ACQUIRING_LOCK,
                DeploymentState.STARTING_NEW,
                DeploymentState.VERIFYING,
            ],
        }[state]
        for next_state in path:
            DeploymentStateMachine.transition(record, next_state, "before crash")

        if state == DeploymentState.VERIFYING:
            record.candidate = Instance.new(RESOURCE_ID, version)

        record_repository.create(record)
        return record

    def test_orphaned_candidate_is_stopped(self, orchestrator, runner, lock_manager, record_repository):
        record = self._interrupted(DeploymentState.VERIFYING, record_repository)
        runner.start(record.candidate)
        record_repository.update(record)
        lock_manager.acquire(RESOURCE_ID, record.candidate.instance_id, lease_seconds=60)

        recovered = orchestrator.recover(RESOURCE_ID)

        assert recovered.state == DeploymentState.ROLLED_BACK
        assert "recovery" in recovered.reason
        assert runner.running == {}
        assert lock_manager.current(RESOURCE_ID) is None

    def test_resume_after_dead_holder_lease_expires(self, orchestrator, runner, lock_manager, record_repository, registry):
        record = self._interrupted(DeploymentState.ACQUIRING_LOCK, record_repository)
        lock_manager.acquire(RESOURCE_ID, "dead-process", lease_seconds=0.05)
        time.sleep(0.1)

        recovered = orchestrator.recover(RESOURCE_ID)

        assert recovered.deployment_id == record.deployment_id
        assert recovered.state == DeploymentState.COMMITTED
        assert registry.current(RESOURCE_ID).identifier == "v2"
        assert runner.running_versions() == ["v2"]

    def test_completes_interrupted_commit(self, orchestrator, runner, lock_manager, record_repository, state_repository, registry):
        record = self._interrupted(DeploymentState.VERIFYING, record_repository)
        runner.start(record.candidate)
        record_repository.update(record)
        state_repository.save(ResourceState(
            resource_id=RESOURCE_ID,
            active_instance=record.candidate,
            last_deployment_id=record.deployment_id,
        ))

        recovered = orchestrator.recover(RESOURCE_ID)

        assert recovered.state == DeploymentState.COMMITTED
        assert registry.current(RESOURCE_ID).identifier == "v2"
        assert runner.running_versions() == ["v2"]
        assert lock_manager.current(RESOURCE_ID).holder_id == record.candidate.instance_id

    def test_nothing_to_recover(self, orchestrator):
        deploy(orchestrator, "v1")

        assert orchestrator.recover(RESOURCE_ID) is None
        assert orchestrator.recover_all() == []

    def test_recovered_records_have_recent_timestamps(self, orchestrator, record_repository, runner):
        record = self._interrupted(DeploymentState.VERIFYING, record_repository)

        recovered = orchestrator.recover(RESOURCE_ID)

        assert recovered.state == DeploymentState.ROLLED_BACK
        assert recovered.finished_at <= utcnow()
        assert record_repository.get(record.deployment_id).state == DeploymentState.ROLLED_BACK

    def test_first_deploy_crash_is_found_by_recover_all(self, make_orchestrator, runner, record_repository, state_repository):
        record = self._interrupted(DeploymentState.VERIFYING, record_repository, version="v1")
        runner.start(record.candidate)
        record_repository.update(record)
        assert state_repository.get(RESOURCE_ID) is None

        orchestrator = make_orchestrator()

        with pytest.raises(ResourceBlocked):
            deploy(orchestrator, "v2")

        recovered = orchestrator.recover_all()

        assert [r.deployment_id for r in recovered] == [record.deployment_id]
        assert recovered[0].state == DeploymentState.ROLLED_BACK
        assert runner.running == {}

        assert deploy(orchestrator, "v2").state == DeploymentState.COMMITTED
        assert runner.running_versions() == ["v2"]
        assert runner.max_live == 1

    def test_store_error_mid_run_then_recover_in_process(self, orchestrator, runner, record_repository, state_repository, monkeypatch):
        update = record_repository.update
        failed = []

        def flaky_update(record):
            if record.state == DeploymentState.VERIFYING and not failed:
                failed.append(record.deployment_id)
                raise PersistenceError("database went away")
            update(record)

        monkeypatch.setattr(record_repository, "update", flaky_update)

        with pytest.raises(PersistenceError):
            deploy(orchestrator, "v1")

        assert runner.running_versions() == ["v1"]
        assert state_repository.get(RESOURCE_ID) is not None
        with pytest.raises(ResourceBlocked):
            deploy(orchestrator, "v2")

        recovered = orchestrator.recover(RESOURCE_ID)

        assert recovered.deployment_id == failed[0]
        assert recovered.state == DeploymentState.ROLLED_BACK
        assert runner.running == {}

        record = deploy(orchestrator, "v2")

        assert record.state == DeploymentState.COMMITTED
        assert runner.running_versions() == ["v2"]
        assert runner.max_live == 1
