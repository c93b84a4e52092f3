"""Event models for the cutover engine."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from cutover_engine.core.models import utcnow


@dataclass
class DeploymentEvent:
    """Base deployment event."""

    event_type: str
    resource_id: str
    timestamp: datetime
    metadata: Dict[str, Any]
    deployment_id: Optional[str] = None

    @staticmethod
    def deployment_started(record):
        return DeploymentEvent(
            event_type="deployment.started",
            resource_id=record.resource_id,
            deployment_id=record.deployment_id,
            timestamp=utcnow(),
            metadata={
                "target_version": record.target_version,
                "previous_version": record.previous_version,
                "idempotency_key": record.request.idempotency_key,
            }
        )

    @staticmethod
    def deployment_transitioned(record, transition):
        return DeploymentEvent(
            event_type="deployment.transitioned",
            resource_id=record.resource_id,
            deployment_id=record.deployment_id,
            timestamp=transition.timestamp,
            metadata={
                "from_state": transition.from_state.value,
                "to_state": transition.to_state.value,
                "reason": transition.reason,
            }
        )

    @staticmethod
    def deployment_finished(record):
        return DeploymentEvent(
            event_type="deployment.finished",
            resource_id=record.resource_id,
            deployment_id=record.deployment_id,
            timestamp=utcnow(),
            metadata={
                "state": record.state.value,
                "reason": record.reason,
                "target_version": record.target_version,
            }
        )

    @staticmethod
    def deployment_rejected(request, reason: str):
        """Request refused before the state machine ran (e.g. circuit open)."""
        return DeploymentEvent(
            event_type="deployment.rejected",
            resource_id=request.resource_id,
            timestamp=utcnow(),
            metadata={
                "target_version": request.target_version,
                "reason": reason,
            }
        )

    @staticmethod
    def lock_lost(lock):
        return DeploymentEvent(
            event_type="lock.lost",
            resource_id=lock.resource_id,
            timestamp=utcnow(),
            metadata={
                "holder_id": lock.holder_id,
                "expires_at": lock.expires_at.isoformat(),
            }
        )

    @staticmethod
    def resource_released(resource_id: str, reason: str):
        return DeploymentEvent(
            event_type="resource.force_released",
            resource_id=resource_id,
            timestamp=utcnow(),
            metadata={"reason": reason}
        )
