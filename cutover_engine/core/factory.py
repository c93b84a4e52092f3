#cutover_engine\core\factory.py
from datetime import datetime
from typing import Optional
from uuid import uuid4

from cutover_engine.core.models import DeploymentRequest, Version, utcnow
from cutover_engine.core.validation import validate_request, validate_version


class DeploymentRequestFactory:
    @staticmethod
    def create(
        *,
        resource_id: str,
        target_version: str,
        idempotency_key: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> DeploymentRequest:
        request = DeploymentRequest(
            resource_id=resource_id,
            target_version=target_version,
            idempotency_key=idempotency_key or str(uuid4()),
            requested_at=requested_at or utcnow(),
        )

        validate_request(request)
        return request


class VersionFactory:
    @staticmethod
    def create(
        *,
        identifier: str,
        digest: Optional[str] = None,
        image_uri: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Version:
        version = Version(
            identifier=identifier,
            digest=digest,
            image_uri=image_uri,
            created_at=created_at or utcnow(),
        )

        validate_version(version)
        return version
