from __future__ import annotations


class GatewayError(Exception):
    """Base error rendered as ``{"error": code, "message": message}``."""

    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgumentError(GatewayError):
    """Malformed or missing input."""

    code = "INVALID_ARGUMENT"
    status_code = 400


class UnauthenticatedError(GatewayError):
    """Credential missing, malformed, unknown, inactive or expired."""

    code = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        # Internal reason for audit/debugging; never changes the response status.
        self.reason = reason


class ForbiddenError(GatewayError):
    """Authenticated caller is not allowed to act on the target."""

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(GatewayError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyExistsError(GatewayError):
    """Duplicate handle or sandbox name."""

    code = "ALREADY_EXISTS"
    status_code = 409


class UnavailableError(GatewayError):
    """Backing sandbox exists but is not ready to serve traffic."""

    code = "UNAVAILABLE"
    status_code = 503


class InternalError(GatewayError):
    """Unexpected failure in this service or a collaborator."""

    code = "INTERNAL"
    status_code = 500


class CollaboratorError(Exception):
    """Failure reported by an external collaborator."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class OrchestratorError(CollaboratorError):
    """Kubernetes API call failed or timed out."""


class StorageError(CollaboratorError):
    """Object store call failed or timed out."""
