#cutover_engine\infrastructure\postgres\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cutover_engine.core.errors import (
    DuplicateVersion,
    PersistenceError,
    RecordNotFound,
)
from cutover_engine.core.models import (
    DeploymentRecord,
    DeploymentRequest,
    Instance,
    Lock,
    ResourceState,
    Transition,
    Version,
)
from cutover_engine.core.repository import (
    DeploymentRecordRepository,
    LockRepository,
    ResourceStateRepository,
    VersionRepository,
)
from cutover_engine.infrastructure.postgres.database import get_session_factory
from cutover_engine.infrastructure.postgres.models import (
    CommitORM,
    DeploymentRecordORM,
    LockORM,
    ResourceStateORM,
    VersionORM,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def version_to_domain(orm: VersionORM) -> Version:
    return Version(
        identifier=orm.identifier,
        created_at=_aware(orm.created_at),
        digest=orm.digest,
        image_uri=orm.image_uri,
    )


def lock_to_domain(orm: LockORM) -> Lock:
    return Lock(
        resource_id=orm.resource_id,
        holder_id=orm.holder_id,
        acquired_at=_aware(orm.acquired_at),
        expires_at=_aware(orm.expires_at),
    )


def record_to_domain(orm: DeploymentRecordORM) -> DeploymentRecord:
    return DeploymentRecord(
        deployment_id=orm.deployment_id,
        request=DeploymentRequest(
            resource_id=orm.resource_id,
            target_version=orm.target_version,
            idempotency_key=orm.idempotency_key,
            requested_at=_aware(orm.requested_at),
        ),
        state=orm.state,
        transitions=[Transition.from_dict(t) for t in (orm.transitions or [])],
        previous_version=orm.previous_version,
        candidate=Instance.from_dict(orm.candidate) if orm.candidate else None,
        reason=orm.reason,
        created_at=_aware(orm.created_at),
        finished_at=_aware(orm.finished_at),
    )


def apply_record(orm: DeploymentRecordORM, record: DeploymentRecord) -> None:
    """Copy mutable record fields onto the ORM row."""
    orm.state = record.state
    orm.previous_version = record.previous_version
    orm.candidate = record.candidate.to_dict() if record.candidate else None
    orm.reason = record.reason
    orm.transitions = [t.to_dict() for t in record.transitions]
    orm.finished_at = record.finished_at


def resource_state_to_domain(orm: ResourceStateORM) -> ResourceState:
    return ResourceState(
        resource_id=orm.resource_id,
        active_instance=Instance.from_dict(orm.active_instance) if orm.active_instance else None,
        last_deployment_id=orm.last_deployment_id,
        blocked=bool(orm.blocked),
        failure_counts=dict(orm.failure_counts or {}),
    )


class _SqlRepository:
    """Session handling shared by all SQL repositories."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses the
                default production factory.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()


# ============================================
# Versions
# ============================================

class SqlVersionRepository(_SqlRepository, VersionRepository):

    def add(self, version: Version) -> None:
        session = self._get_session()
        try:
            session.add(VersionORM(
                identifier=version.identifier,
                digest=version.digest,
                image_uri=version.image_uri,
                created_at=version.created_at,
            ))
            session.commit()
            logger.debug(f"[sql] add version {version.identifier}")
        except IntegrityError as e:
            session.rollback()
            raise DuplicateVersion(f"Version {version.identifier} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to add version: {e}") from e
        finally:
            session.close()

    def get(self, identifier: str) -> Optional[Version]:
        session = self._get_session()
        try:
            orm = session.query(VersionORM).filter(
                VersionORM.identifier == identifier
            ).first()
            return version_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_recent(self, limit: int = 5) -> List[Version]:
        session = self._get_session()
        try:
            rows = session.query(VersionORM).order_by(VersionORM.id.desc()).limit(limit).all()
            return [version_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def record_commit(self, resource_id: str, identifier: str, committed_at: datetime) -> None:
        session = self._get_session()
        try:
            session.add(CommitORM(
                resource_id=resource_id,
                identifier=identifier,
                committed_at=committed_at,
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to record commit: {e}") from e
        finally:
            session.close()

    def list_commits(self, resource_id: str, limit: int = 10) -> List[str]:
        session = self._get_session()
        try:
            rows = session.query(CommitORM).filter(
                CommitORM.resource_id == resource_id
            ).order_by(CommitORM.id.desc()).limit(limit).all()
            return [row.identifier for row in rows]
        finally:
            session.close()


# ============================================
# Locks
# ============================================

class SqlLockRepository(_SqlRepository, LockRepository):
    """Leases as rows, mutated under SELECT ... FOR UPDATE."""

    def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        session = self._get_session()
        try:
            orm = session.query(LockORM).filter(
                LockORM.resource_id == resource_id
            ).with_for_update().first()

            if orm is None:
                orm = LockORM(
                    resource_id=resource_id,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )
                session.add(orm)
            else:
                valid = _aware(orm.expires_at) >= now
                if valid and orm.holder_id != holder_id:
                    session.rollback()
                    return None
                if not valid or orm.holder_id != holder_id:
                    orm.acquired_at = now
                orm.holder_id = holder_id
                orm.expires_at = expires_at

            session.commit()
            lock = lock_to_domain(orm)
            logger.debug(f"[sql] try_acquire {resource_id} by {holder_id} -> True")
            return lock
        except IntegrityError:
            # Concurrent first insert won the race
            session.rollback()
            logger.debug(f"[sql] try_acquire {resource_id} by {holder_id} -> lost race")
            return None
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to acquire lock: {e}") from e
        finally:
            session.close()

    def renew(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        session = self._get_session()
        try:
            orm = session.query(LockORM).filter(
                LockORM.resource_id == resource_id
            ).with_for_update().first()

            if orm is None or orm.holder_id != holder_id or _aware(orm.expires_at) < now:
                session.rollback()
                return None

            orm.expires_at = expires_at
            session.commit()
            return lock_to_domain(orm)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to renew lock: {e}") from e
        finally:
            session.close()

    def release(self, resource_id: str, holder_id: str) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(LockORM).filter(
                LockORM.resource_id == resource_id,
                LockORM.holder_id == holder_id,
            ).delete(synchronize_session=False)
            session.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to release lock: {e}") from e
        finally:
            session.close()

    def get(self, resource_id: str) -> Optional[Lock]:
        session = self._get_session()
        try:
            orm = session.get(LockORM, resource_id)
            return lock_to_domain(orm) if orm else None
        finally:
            session.close()

    def database_now(self) -> datetime:
        """Database server time; every engine sharing the table reads one clock."""
        session = self._get_session()
        try:
            return _aware(session.execute(select(func.now())).scalar_one())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read database time: {e}") from e
        finally:
            session.close()

    def delete(self, resource_id: str) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(LockORM).filter(
                LockORM.resource_id == resource_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete lock: {e}") from e
        finally:
            session.close()


# ============================================
# Deployment records
# ============================================

class SqlDeploymentRecordRepository(_SqlRepository, DeploymentRecordRepository):

    def create(self, record: DeploymentRecord) -> None:
        session = self._get_session()
        try:
            orm = DeploymentRecordORM(
                deployment_id=record.deployment_id,
                resource_id=record.resource_id,
                idempotency_key=record.request.idempotency_key,
                target_version=record.target_version,
                requested_at=record.request.requested_at,
                created_at=record.created_at,
            )
            apply_record(orm, record)
            session.add(orm)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise PersistenceError(
                f"Record {record.deployment_id} or its idempotency key already exists"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create record: {e}") from e
        finally:
            session.close()

    def update(self, record: DeploymentRecord) -> None:
        session = self._get_session()
        try:
            orm = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.deployment_id == record.deployment_id
            ).with_for_update().first()

            if orm is None:
                raise RecordNotFound(f"Record {record.deployment_id} not found")

            apply_record(orm, record)
            session.commit()
        except RecordNotFound:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update record: {e}") from e
        finally:
            session.close()

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        session = self._get_session()
        try:
            orm = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.deployment_id == deployment_id
            ).first()
            return record_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_idempotency_key(
        self,
        resource_id: str,
        idempotency_key: str,
    ) -> Optional[DeploymentRecord]:
        session = self._get_session()
        try:
            orm = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.resource_id == resource_id,
                DeploymentRecordORM.idempotency_key == idempotency_key,
            ).first()
            return record_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_for_resource(
        self,
        resource_id: str,
        limit: int = 20,
    ) -> Iterable[DeploymentRecord]:
        session = self._get_session()
        try:
            rows = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.resource_id == resource_id
            ).order_by(DeploymentRecordORM.id.desc()).limit(limit).all()
            return [record_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def prune(self, resource_id: str, keep_deployment_id: str) -> int:
        session = self._get_session()
        try:
            kept = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.deployment_id == keep_deployment_id
            ).first()
            if kept is None:
                return 0

            deleted = session.query(DeploymentRecordORM).filter(
                DeploymentRecordORM.resource_id == resource_id,
                DeploymentRecordORM.id < kept.id,
            ).delete(synchronize_session=False)
            session.commit()
            logger.debug(f"[sql] pruned {deleted} record(s) for {resource_id}")
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to prune records: {e}") from e
        finally:
            session.close()

    def list_unfinished_resource_ids(self) -> List[str]:
        session = self._get_session()
        try:
            rows = session.query(DeploymentRecordORM.resource_id).filter(
                DeploymentRecordORM.finished_at.is_(None)
            ).distinct().order_by(DeploymentRecordORM.resource_id).all()
            return [row.resource_id for row in rows]
        finally:
            session.close()


# ============================================
# Resource state
# ============================================

class SqlResourceStateRepository(_SqlRepository, ResourceStateRepository):

    def get(self, resource_id: str) -> Optional[ResourceState]:
        session = self._get_session()
        try:
            orm = session.get(ResourceStateORM, resource_id)
            return resource_state_to_domain(orm) if orm else None
        finally:
            session.close()

    def save(self, state: ResourceState) -> None:
        session = self._get_session()
        try:
            orm = session.get(ResourceStateORM, state.resource_id, with_for_update=True)
            if orm is None:
                orm = ResourceStateORM(resource_id=state.resource_id)
                session.add(orm)

            orm.active_instance = state.active_instance.to_dict() if state.active_instance else None
            orm.last_deployment_id = state.last_deployment_id
            orm.blocked = state.blocked
            orm.failure_counts = dict(state.failure_counts)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save resource state: {e}") from e
        finally:
            session.close()

    def list_ids(self) -> List[str]:
        session = self._get_session()
        try:
            rows = session.query(ResourceStateORM.resource_id).order_by(
                ResourceStateORM.resource_id
            ).all()
            return [row[0] for row in rows]
        finally:
            session.close()
