# cutover_engine/infrastructure/memory/repository.py

import copy
from datetime import datetime
from threading import Lock as ThreadLock
from typing import Dict, Iterable, List, Optional, Tuple

from cutover_engine.core.errors import DuplicateVersion, PersistenceError, RecordNotFound
from cutover_engine.core.models import (
    DeploymentRecord,
    Lock,
    ResourceState,
    Version,
)
from cutover_engine.core.repository import (
    DeploymentRecordRepository,
    LockRepository,
    ResourceStateRepository,
    VersionRepository,
)


class InMemoryVersionRepository(VersionRepository):
    def __init__(self):
        self._versions: Dict[str, Version] = {}
        self._order: List[str] = []
        self._commits: Dict[str, List[Tuple[datetime, str]]] = {}
        self._lock = ThreadLock()

    def add(self, version: Version) -> None:
        with self._lock:
            if version.identifier in self._versions:
                raise DuplicateVersion(f"Version {version.identifier} already exists")
            self._versions[version.identifier] = version
            self._order.append(version.identifier)

    def get(self, identifier: str) -> Optional[Version]:
        return self._versions.get(identifier)

    def list_recent(self, limit: int = 5) -> List[Version]:
        with self._lock:
            ordered = [self._versions[i] for i in reversed(self._order)]
        return ordered[:limit]

    def record_commit(self, resource_id: str, identifier: str, committed_at: datetime) -> None:
        with self._lock:
            self._commits.setdefault(resource_id, []).append((committed_at, identifier))

    def list_commits(self, resource_id: str, limit: int = 10) -> List[str]:
        with self._lock:
            history = list(reversed(self._commits.get(resource_id, [])))
        return [identifier for _, identifier in history[:limit]]


class InMemoryLockRepository(LockRepository):
    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._lock = ThreadLock()

    def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        with self._lock:
            existing = self._locks.get(resource_id)

            if existing and existing.is_valid(now) and existing.holder_id != holder_id:
                return None

            if existing and existing.is_valid(now) and existing.holder_id == holder_id:
                lock = existing.renewed(expires_at)
            else:
                lock = Lock(
                    resource_id=resource_id,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )

            self._locks[resource_id] = lock
            return lock

    def renew(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        with self._lock:
            existing = self._locks.get(resource_id)
            if not existing:
                return None

            if existing.holder_id != holder_id:
                return None

            if not existing.is_valid(now):
                return None

            lock = existing.renewed(expires_at)
            self._locks[resource_id] = lock
            return lock

    def release(self, resource_id: str, holder_id: str) -> bool:
        with self._lock:
            existing = self._locks.get(resource_id)
            if not existing or existing.holder_id != holder_id:
                return False
            del self._locks[resource_id]
            return True

    def get(self, resource_id: str) -> Optional[Lock]:
        return self._locks.get(resource_id)

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            return self._locks.pop(resource_id, None) is not None


class InMemoryDeploymentRecordRepository(DeploymentRecordRepository):
    def __init__(self):
        # dict preserves creation order, which is the record order
        self._store: Dict[str, DeploymentRecord] = {}
        self._lock = ThreadLock()

    def create(self, record: DeploymentRecord) -> None:
        with self._lock:
            if record.deployment_id in self._store:
                raise PersistenceError(f"Record {record.deployment_id} already exists")
            self._store[record.deployment_id] = copy.deepcopy(record)

    def update(self, record: DeploymentRecord) -> None:
        with self._lock:
            if record.deployment_id not in self._store:
                raise RecordNotFound(f"Record {record.deployment_id} not found")
            self._store[record.deployment_id] = copy.deepcopy(record)

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        record = self._store.get(deployment_id)
        return copy.deepcopy(record) if record else None

    def get_by_idempotency_key(
        self,
        resource_id: str,
        idempotency_key: str,
    ) -> Optional[DeploymentRecord]:
        with self._lock:
            for record in self._store.values():
                if (
                    record.resource_id == resource_id
                    and record.request.idempotency_key == idempotency_key
                ):
                    return copy.deepcopy(record)
        return None

    def list_for_resource(
        self,
        resource_id: str,
        limit: int = 20,
    ) -> Iterable[DeploymentRecord]:
        with self._lock:
            records = [r for r in self._store.values() if r.resource_id == resource_id]
        records.reverse()
        return [copy.deepcopy(r) for r in records[:limit]]

    def prune(self, resource_id: str, keep_deployment_id: str) -> int:
        with self._lock:
            if keep_deployment_id not in self._store:
                return 0

            stale = []
            for deployment_id, record in self._store.items():
                if deployment_id == keep_deployment_id:
                    break
                if record.resource_id == resource_id:
                    stale.append(deployment_id)

            for deployment_id in stale:
                del self._store[deployment_id]
            return len(stale)

    def list_unfinished_resource_ids(self) -> List[str]:
        with self._lock:
            return sorted({r.resource_id for r in self._store.values() if r.finished_at is None})


class InMemoryResourceStateRepository(ResourceStateRepository):
    def __init__(self):
        self._store: Dict[str, ResourceState] = {}
        self._lock = ThreadLock()

    def get(self, resource_id: str) -> Optional[ResourceState]:
        state = self._store.get(resource_id)
        return copy.deepcopy(state) if state else None

    def save(self, state: ResourceState) -> None:
        with self._lock:
            self._store[state.resource_id] = copy.deepcopy(state)

    def list_ids(self) -> List[str]:
        return sorted(self._store)
