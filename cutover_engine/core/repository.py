# cutover_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from cutover_engine.core.models import (
    DeploymentRecord,
    Lock,
    ResourceState,
    Version,
)


class VersionRepository(ABC):
    """
    Persistence contract for registered versions and commit history.
    """

    @abstractmethod
    def add(self, version: Version) -> None:
        """
        Persist a new version.
        Must raise DuplicateVersion if the identifier already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, identifier: str) -> Optional[Version]:
        """
        Fetch version by identifier.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int) -> List[Version]:
        """
        Most recently registered versions first.
        """
        raise NotImplementedError

    @abstractmethod
    def record_commit(
        self,
        resource_id: str,
        identifier: str,
        committed_at: datetime,
    ) -> None:
        """
        Append a commit of identifier to the resource's history.
        """
        raise NotImplementedError

    @abstractmethod
    def list_commits(self, resource_id: str, limit: int) -> List[str]:
        """
        Committed identifiers for a resource, newest first.
        """
        raise NotImplementedError


class LockRepository(ABC):
    """
    Persistence contract for exclusive-resource leases.

    Every mutating call is a single atomic compare-and-set against the
    stored lease, evaluated with the caller-supplied `now`.
    """

    @abstractmethod
    def try_acquire(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        """
        Take the lease if it is free, expired, or already ours.
        Returns the stored lock, or None if another holder has a valid lease.
        """
        raise NotImplementedError

    @abstractmethod
    def renew(
        self,
        resource_id: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Optional[Lock]:
        """
        Extend our lease. Returns None if it expired or changed hands.
        """
        raise NotImplementedError

    @abstractmethod
    def release(self, resource_id: str, holder_id: str) -> bool:
        """
        Drop our lease. Returns False if we were not the holder.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, resource_id: str) -> Optional[Lock]:
        """
        Stored lease, expired or not.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, resource_id: str) -> bool:
        """
        Drop any lease regardless of holder (operator action).
        """
        raise NotImplementedError


class DeploymentRecordRepository(ABC):
    """
    Persistence contract for deployment audit trails.
    """

    @abstractmethod
    def create(self, record: DeploymentRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def update(self, record: DeploymentRecord) -> None:
        """
        Persist the record's current state and transitions.
        Must raise RecordNotFound if it was never created.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        raise NotImplementedError

    @abstractmethod
    def get_by_idempotency_key(
        self,
        resource_id: str,
        idempotency_key: str,
    ) -> Optional[DeploymentRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_for_resource(
        self,
        resource_id: str,
        limit: int,
    ) -> Iterable[DeploymentRecord]:
        """
        Records for a resource, newest first.
        """
        raise NotImplementedError

    @abstractmethod
    def prune(self, resource_id: str, keep_deployment_id: str) -> int:
        """
        Delete every record of the resource created before the kept one.
        Returns the number of records deleted.
        """
        raise NotImplementedError

    @abstractmethod
    def list_unfinished_resource_ids(self) -> List[str]:
        """Resources whose records include one that never reached an end state."""
        raise NotImplementedError


class ResourceStateRepository(ABC):
    """
    Persistence contract for per-resource state (active instance,
    circuit-breaker counters, blocked flag).
    """

    @abstractmethod
    def get(self, resource_id: str) -> Optional[ResourceState]:
        raise NotImplementedError

    @abstractmethod
    def save(self, state: ResourceState) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_ids(self) -> List[str]:
        raise NotImplementedError
