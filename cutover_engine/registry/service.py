# cutover_engine/registry/service.py
"""Version registry - immutable artifact versions and the committed pointer."""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from cutover_engine.core.errors import DuplicateVersion, VersionNotFound
from cutover_engine.core.models import Version, utcnow
from cutover_engine.core.repository import VersionRepository
from cutover_engine.core.validation import validate_version

logger = logging.getLogger(__name__)

TAG_FORMAT = "%Y%m%d-%H%M%S"


def generate_tag(now: Optional[datetime] = None) -> str:
    """Timestamp tag, unique per second, so every build forces a new pull."""
    return (now or utcnow()).strftime(TAG_FORMAT)


def build_image_uri(registry: str, repository: str, tag: str) -> str:
    """e.g. 123.dkr.ecr.eu-west-1.amazonaws.com/clickhouse:20250101-120000"""
    return f"{registry.rstrip('/')}/{repository}:{tag}"


class TagFile:
    """
    Last built tag, persisted so a later deploy uses the tag the build pushed.
    """

    def __init__(self, path: str | Path = ".image-tag"):
        self.path = Path(path)

    def read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        tag = self.path.read_text(encoding="utf-8").strip()
        return tag or None

    def write(self, tag: str) -> None:
        self.path.write_text(f"{tag}\n", encoding="utf-8")

    def read_or_create(self, now: Optional[datetime] = None) -> str:
        tag = self.read()
        if tag is None:
            tag = generate_tag(now)
            self.write(tag)
        return tag

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class VersionRegistry:
    """
    Tracks registered versions and which one is committed per resource.
    """

    def __init__(self, repository: VersionRepository):
        self._repo = repository

    # -------------------------
    # REGISTER
    # -------------------------

    def register(self, version: Version) -> Version:
        """
        Register a version.

        Re-registering the same identifier with the same digest is a no-op
        and returns the stored version; a different digest is a conflict.
        """
        validate_version(version)

        existing = self._repo.get(version.identifier)
        if existing:
            if existing.same_artifact(version):
                logger.debug(f"[registry] {version.identifier} already registered")
                return existing
            raise DuplicateVersion(
                f"Version {version.identifier} already registered with "
                f"digest {existing.digest}"
            )

        try:
            self._repo.add(version)
        except DuplicateVersion:
            # Lost a race with an identical registration
            existing = self._repo.get(version.identifier)
            if existing and existing.same_artifact(version):
                return existing
            raise

        logger.info(f"[registry] Registered version {version.identifier}")
        return version

    # -------------------------
    # LOOKUP
    # -------------------------

    def resolve(self, identifier: str) -> Version:
        version = self._repo.get(identifier)
        if not version:
            raise VersionNotFound(f"Version {identifier} not found")
        return version

    def list_recent(self, limit: int = 5) -> List[Version]:
        return self._repo.list_recent(limit)

    def current(self, resource_id: str) -> Optional[Version]:
        """Committed version of a resource, None before the first commit."""
        commits = self._repo.list_commits(resource_id, 1)
        if not commits:
            return None
        return self.resolve(commits[0])

    def previous(self, resource_id: str) -> Optional[Version]:
        """Last committed version that differs from the current one."""
        commits = self._repo.list_commits(resource_id, 50)
        if not commits:
            return None

        for identifier in commits[1:]:
            if identifier != commits[0]:
                return self.resolve(identifier)
        return None

    # -------------------------
    # COMMIT
    # -------------------------

    def set_current(self, resource_id: str, identifier: str) -> Version:
        version = self.resolve(identifier)
        self._repo.record_commit(resource_id, identifier, utcnow())
        logger.info(f"[registry] {resource_id} current -> {identifier}")
        return version
