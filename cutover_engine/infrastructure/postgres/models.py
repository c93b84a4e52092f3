#cutover_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)

from cutover_engine.core.models import DeploymentState, utcnow
from cutover_engine.infrastructure.postgres.database import Base


class VersionORM(Base):
    """
    Registered artifact versions.

    `id` gives registration order; `identifier` is the natural key.
    """

    __tablename__ = "versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(255), nullable=False, unique=True)
    digest = Column(String(128), nullable=True)
    image_uri = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<VersionORM(identifier={self.identifier}, digest={self.digest})>"


class CommitORM(Base):
    """Commit history per resource (which version went live when)."""

    __tablename__ = "version_commits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_id = Column(String(128), nullable=False)
    identifier = Column(String(255), nullable=False)
    committed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_version_commits_resource", "resource_id", "id"),
    )


class LockORM(Base):
    """
    Exclusive-resource leases. One row per resource; the row is the lock.
    """

    __tablename__ = "resource_locks"

    resource_id = Column(String(128), primary_key=True)
    holder_id = Column(String(255), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<LockORM(resource_id={self.resource_id}, "
            f"holder_id={self.holder_id}, expires_at={self.expires_at})>"
        )


class DeploymentRecordORM(Base):
    """
    Deployment audit trail.

    Transitions are stored as a JSON list; records are append-only until
    pruned by the next successful deployment.
    """

    __tablename__ = "deployment_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(String(64), nullable=False, unique=True)
    resource_id = Column(String(128), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    target_version = Column(String(255), nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)

    state = Column(
        SQLEnum(DeploymentState, name="deployment_state"),
        nullable=False,
        default=DeploymentState.IDLE,
    )
    previous_version = Column(String(255), nullable=True)
    candidate = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    transitions = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("resource_id", "idempotency_key", name="uq_deployment_idempotency"),
        Index("ix_deployment_records_resource", "resource_id", "id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeploymentRecordORM(deployment_id={self.deployment_id}, "
            f"state={self.state.value})>"
        )


class ResourceStateORM(Base):
    """Per-resource summary: active instance, breaker counters, blocked flag."""

    __tablename__ = "resource_states"

    resource_id = Column(String(128), primary_key=True)
    active_instance = Column(JSON, nullable=True)
    last_deployment_id = Column(String(64), nullable=True)
    blocked = Column(Boolean, nullable=False, default=False)
    failure_counts = Column(JSON, nullable=False, default=dict)
