#cutover_engine\api\errors.py
"""Maps engine errors to HTTP responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from cutover_engine.api.schemas.deployment import DeploymentResponse
from cutover_engine.core.errors import (
    CircuitOpen,
    CutoverError,
    DeploymentError,
    DeploymentInProgress,
    DuplicateVersion,
    InvalidStateTransition,
    LockAlreadyHeld,
    RecordNotFound,
    ResourceBlocked,
    ValidationError,
    VersionNotFound,
)

logger = logging.getLogger(__name__)


STATUS_CODES = [
    (VersionNotFound, 404),
    (RecordNotFound, 404),
    (DuplicateVersion, 409),
    (DeploymentInProgress, 409),
    (LockAlreadyHeld, 409),
    (InvalidStateTransition, 409),
    (CircuitOpen, 423),
    (ResourceBlocked, 423),
    (ValidationError, 422),
]


def status_code_for(error: CutoverError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def cutover_error_handler(request: Request, exc: CutoverError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"[api] {request.method} {request.url.path} failed: {exc}")

    body = {"detail": str(exc), "error": type(exc).__name__}

    record = getattr(exc, "record", None) if isinstance(exc, DeploymentError) else None
    if record is not None:
        body["last_deployment"] = DeploymentResponse.from_domain(record).model_dump(mode="json")

    return JSONResponse(status_code=status_code, content=body)
