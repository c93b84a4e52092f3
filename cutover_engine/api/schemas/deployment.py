from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cutover_engine.core.models import (
    DeploymentRecord,
    Instance,
    Lock,
    Version,
)


# -------------------------
# Versions
# -------------------------

class VersionCreateRequest(BaseModel):
    identifier: str
    digest: Optional[str] = None
    image_uri: Optional[str] = None


class VersionResponse(BaseModel):
    identifier: str
    digest: Optional[str] = None
    image_uri: Optional[str] = None
    created_at: datetime

    @staticmethod
    def from_domain(version: Version) -> "VersionResponse":
        return VersionResponse(
            identifier=version.identifier,
            digest=version.digest,
            image_uri=version.image_uri,
            created_at=version.created_at,
        )


# -------------------------
# Deployments
# -------------------------

class DeploymentCreateRequest(BaseModel):
    target_version: str
    idempotency_key: Optional[str] = None


class RollbackRequest(BaseModel):
    idempotency_key: Optional[str] = None


class TransitionResponse(BaseModel):
    from_state: str
    to_state: str
    timestamp: datetime
    reason: str


class InstanceResponse(BaseModel):
    instance_id: str
    version: str
    state: str
    started_at: Optional[datetime] = None
    external_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def from_domain(instance: Optional[Instance]) -> Optional["InstanceResponse"]:
        if instance is None:
            return None
        return InstanceResponse(
            instance_id=instance.instance_id,
            version=instance.version,
            state=instance.state.value,
            started_at=instance.started_at,
            external_id=instance.external_id,
            metadata=dict(instance.metadata),
        )


class DeploymentResponse(BaseModel):
    deployment_id: str
    resource_id: str
    target_version: str
    idempotency_key: str
    state: str
    previous_version: Optional[str] = None
    candidate: Optional[InstanceResponse] = None
    reason: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None
    transitions: List[TransitionResponse]

    @staticmethod
    def from_domain(record: DeploymentRecord) -> "DeploymentResponse":
        return DeploymentResponse(
            deployment_id=record.deployment_id,
            resource_id=record.resource_id,
            target_version=record.target_version,
            idempotency_key=record.request.idempotency_key,
            state=record.state.value,
            previous_version=record.previous_version,
            candidate=InstanceResponse.from_domain(record.candidate),
            reason=record.reason,
            created_at=record.created_at,
            finished_at=record.finished_at,
            transitions=[
                TransitionResponse(
                    from_state=t.from_state.value,
                    to_state=t.to_state.value,
                    timestamp=t.timestamp,
                    reason=t.reason,
                )
                for t in list(record.transitions)
            ],
        )


# -------------------------
# Resource status / operator actions
# -------------------------

class LockResponse(BaseModel):
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    @staticmethod
    def from_domain(lock: Optional[Lock]) -> Optional["LockResponse"]:
        if lock is None:
            return None
        return LockResponse(
            holder_id=lock.holder_id,
            acquired_at=lock.acquired_at,
            expires_at=lock.expires_at,
        )


class ResourceStatusResponse(BaseModel):
    resource_id: str
    state: str
    current_version: Optional[str] = None
    active_instance: Optional[InstanceResponse] = None
    lock: Optional[LockResponse] = None
    last_deployment: Optional[DeploymentResponse] = None
    blocked: bool
    in_flight: bool
    failure_counts: Dict[str, int]


class ResetCircuitRequest(BaseModel):
    version: Optional[str] = None


class ForceReleaseRequest(BaseModel):
    reason: str = Field(min_length=1)
