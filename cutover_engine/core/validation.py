#cutover_engine\core\validation.py
import re

from cutover_engine.core.errors import ValidationError
from cutover_engine.core.models import DeploymentRequest, Version


# Same charset docker accepts for tags, plus ':' and '@' for digests/refs
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:@/+-]{0,254}$")
_RESOURCE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_version(version: Version) -> None:
    if not version.identifier:
        raise ValidationError("version identifier is required")

    if not _IDENTIFIER_RE.match(version.identifier):
        raise ValidationError(f"invalid version identifier: {version.identifier!r}")

    if version.digest is not None and not version.digest.startswith("sha256:"):
        raise ValidationError("digest must be of the form sha256:<hex>")


def validate_request(request: DeploymentRequest) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not request.resource_id:
        raise ValidationError("resource_id is required")

    if not _RESOURCE_RE.match(request.resource_id):
        raise ValidationError(f"invalid resource_id: {request.resource_id!r}")

    if not request.idempotency_key:
        raise ValidationError("idempotency_key is required")

    # -------------------------
    # Target
    # -------------------------
    if not request.target_version:
        raise ValidationError("target_version is required")

    if request.requested_at.tzinfo is None:
        raise ValidationError("requested_at must be timezone-aware")
