# cutover_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class CutoverError(Exception):
    """Base class for all cutover engine errors."""
    pass


# -----------------------------
# Validation / Domain Errors
# -----------------------------

class ValidationError(CutoverError):
    """Invalid input or malformed request."""
    pass


class InvalidStateTransition(CutoverError):
    """Illegal state transition attempted."""
    pass


# -----------------------------
# Version Registry Errors
# -----------------------------

class DuplicateVersion(CutoverError):
    """Identifier already registered for a different artifact."""
    pass


class VersionNotFound(CutoverError):
    pass


# -----------------------------
# Lock / Lease Errors
# -----------------------------

class LockError(CutoverError):
    pass


class LockAlreadyHeld(LockError):
    """A non-expired lock is held by a different holder."""

    def __init__(self, message: str, holder_id: str | None = None):
        super().__init__(message)
        self.holder_id = holder_id


class LockExpired(LockError):
    """Lease lapsed (or was taken over) before renewal."""
    pass


# -----------------------------
# Instance / Health Errors
# -----------------------------

class InstanceError(CutoverError):
    """Runner failed to start or stop an instance."""
    pass


class InstanceExited(InstanceError):
    """Instance reported a terminal failure while being verified."""
    pass


class HealthTimeout(CutoverError):
    pass


class HealthCheckFailed(CutoverError):
    """Explicit health failure (threshold of UNHEALTHY probes reached)."""
    pass


# -----------------------------
# Deployment Errors
# -----------------------------

class DeploymentError(CutoverError):
    """Deployment-level error, optionally carrying the last record."""

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record


class StopTimeout(DeploymentError):
    pass


class CircuitOpen(DeploymentError):
    pass


class DeploymentCancelled(DeploymentError):
    pass


class DeploymentInProgress(DeploymentError):
    pass


class ResourceBlocked(DeploymentError):
    """Resource is FAILED and needs an operator force-release."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(CutoverError):
    pass


class RecordNotFound(PersistenceError):
    pass
