"""Core domain models (business logic)."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentState(Enum):
    """Deployment state machine."""

    IDLE = "IDLE"
    STOPPING_OLD = "STOPPING_OLD"
    ACQUIRING_LOCK = "ACQUIRING_LOCK"
    STARTING_NEW = "STARTING_NEW"
    VERIFYING = "VERIFYING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({
    DeploymentState.COMMITTED,
    DeploymentState.ROLLED_BACK,
    DeploymentState.FAILED,
})


class InstanceState(Enum):
    """Instance lifecycle."""

    PENDING = "PENDING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class HealthStatus(Enum):
    """Single health observation."""

    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


# ============================================
# VERSION
# ============================================

@dataclass(frozen=True)
class Version:
    """Immutable artifact version (image tag or digest)."""

    identifier: str
    created_at: datetime = field(default_factory=utcnow)
    digest: Optional[str] = None
    image_uri: Optional[str] = None

    def same_artifact(self, other: "Version") -> bool:
        return self.identifier == other.identifier and self.digest == other.digest


# ============================================
# REQUEST
# ============================================

@dataclass(frozen=True)
class DeploymentRequest:
    """Caller's wish to move a resource to a version. Never mutated."""

    resource_id: str
    target_version: str
    idempotency_key: str = field(default_factory=lambda: str(uuid4()))
    requested_at: datetime = field(default_factory=utcnow)


# ============================================
# INSTANCE
# ============================================

@dataclass
class Instance:
    """Runtime handle for the single worker of a resource."""

    instance_id: str
    resource_id: str
    version: str
    state: InstanceState = InstanceState.PENDING
    started_at: Optional[datetime] = None
    external_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def new(resource_id: str, version: str) -> "Instance":
        return Instance(
            instance_id=f"{resource_id}-{uuid4().hex[:12]}",
            resource_id=resource_id,
            version=version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "resource_id": self.resource_id,
            "version": self.version,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "external_id": self.external_id,
            "metadata": dict(self.metadata),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Instance":
        started_at = data.get("started_at")
        return Instance(
            instance_id=data["instance_id"],
            resource_id=data["resource_id"],
            version=data["version"],
            state=InstanceState(data.get("state", InstanceState.PENDING.value)),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            external_id=data.get("external_id"),
            metadata=dict(data.get("metadata") or {}),
        )


# ============================================
# LOCK
# ============================================

@dataclass(frozen=True)
class Lock:
    """Lease over an exclusive resource (e.g. a data directory)."""

    resource_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at >= now

    def renewed(self, expires_at: datetime) -> "Lock":
        return replace(self, expires_at=expires_at)


# ============================================
# DEPLOYMENT RECORD
# ============================================

@dataclass(frozen=True)
class Transition:
    from_state: DeploymentState
    to_state: DeploymentState
    timestamp: datetime
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Transition":
        return Transition(
            from_state=DeploymentState(data["from_state"]),
            to_state=DeploymentState(data["to_state"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            reason=data.get("reason", ""),
        )


@dataclass
class DeploymentRecord:
    """Append-only audit trail of one deployment run."""

    deployment_id: str
    request: DeploymentRequest
    state: DeploymentState = DeploymentState.IDLE
    transitions: List[Transition] = field(default_factory=list)
    previous_version: Optional[str] = None
    candidate: Optional[Instance] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @staticmethod
    def for_request(request: DeploymentRequest) -> "DeploymentRecord":
        return DeploymentRecord(deployment_id=str(uuid4()), request=request)

    @property
    def resource_id(self) -> str:
        return self.request.resource_id

    @property
    def target_version(self) -> str:
        return self.request.target_version

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def visited(self, state: DeploymentState) -> bool:
        return any(t.to_state == state for t in self.transitions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "resource_id": self.request.resource_id,
            "target_version": self.request.target_version,
            "idempotency_key": self.request.idempotency_key,
            "requested_at": self.request.requested_at.isoformat(),
            "state": self.state.value,
            "previous_version": self.previous_version,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": [t.to_dict() for t in self.transitions],
        }


# ============================================
# RESOURCE STATE
# ============================================

@dataclass
class ResourceState:
    """Persisted per-resource summary used for status and recovery."""

    resource_id: str
    active_instance: Optional[Instance] = None
    last_deployment_id: Optional[str] = None
    blocked: bool = False
    failure_counts: Dict[str, int] = field(default_factory=dict)

    def failures_for(self, version: str) -> int:
        return self.failure_counts.get(version, 0)
