#cutover_engine\core\state_machine.py

from datetime import datetime

from cutover_engine.core.errors import InvalidStateTransition
from cutover_engine.core.models import (
    DeploymentRecord,
    DeploymentState,
    TERMINAL_STATES,
    Transition,
    utcnow,
)


ALLOWED_TRANSITIONS = {
    DeploymentState.IDLE: {
        DeploymentState.STOPPING_OLD,
        DeploymentState.ACQUIRING_LOCK,
        DeploymentState.ROLLED_BACK,
    },
    DeploymentState.STOPPING_OLD: {
        DeploymentState.ACQUIRING_LOCK,
        DeploymentState.FAILED,
        DeploymentState.ROLLED_BACK,
    },
    DeploymentState.ACQUIRING_LOCK: {
        DeploymentState.STARTING_NEW,
        DeploymentState.FAILED,
        DeploymentState.ROLLED_BACK,
    },
    # FAILED from here only when the candidate could not be stopped
    DeploymentState.STARTING_NEW: {
        DeploymentState.VERIFYING,
        DeploymentState.ROLLED_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.VERIFYING: {
        DeploymentState.COMMITTED,
        DeploymentState.ROLLED_BACK,
        DeploymentState.FAILED,
    },
    # Operator force-release unblocks a failed resource
    DeploymentState.FAILED: {
        DeploymentState.IDLE,
    },
}


class DeploymentStateMachine:
    @staticmethod
    def can_transition(current: DeploymentState, new_state: DeploymentState) -> bool:
        return new_state in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(
        record: DeploymentRecord,
        new_state: DeploymentState,
        reason: str = "",
        *,
        now: datetime | None = None,
    ) -> DeploymentRecord:
        now = now or utcnow()

        current = record.state

        if not DeploymentStateMachine.can_transition(current, new_state):
            raise InvalidStateTransition(
                f"Cannot transition from {current.value} to {new_state.value}"
            )

        record.transitions.append(
            Transition(
                from_state=current,
                to_state=new_state,
                timestamp=now,
                reason=reason,
            )
        )

        # IDLE after FAILED closes the record too
        if new_state in TERMINAL_STATES or new_state == DeploymentState.IDLE:
            record.finished_at = now
            record.reason = reason

        record.state = new_state
        return record
