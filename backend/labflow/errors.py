"""Error taxonomy shared by the services, the HTTP layer and the client.

Every error carries a short machine-readable ``reason`` (e.g. ``AlreadyAssigned``)
next to the human message. Only ``OperationFailed`` is retryable.
"""
from typing import Optional


class LabflowError(Exception):
    kind = "LabflowError"
    status_code = 500
    retryable = False

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail or reason
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.kind, "reason": self.reason, "detail": self.detail}


class ValidationError(LabflowError):
    kind = "ValidationError"
    status_code = 422


class AuthorizationError(LabflowError):
    kind = "AuthorizationError"
    status_code = 403


class ConflictError(LabflowError):
    kind = "ConflictError"
    status_code = 409


class GuardViolation(LabflowError):
    kind = "GuardViolation"
    status_code = 409


class NotFoundError(LabflowError):
    kind = "NotFoundError"
    status_code = 404


class OperationFailed(LabflowError):
    kind = "OperationFailed"
    status_code = 503
    retryable = True


ERROR_KINDS = {
    cls.kind: cls
    for cls in (ValidationError, AuthorizationError, ConflictError, GuardViolation, NotFoundError, OperationFailed)
}


def from_payload(payload: dict) -> LabflowError:
    """Rebuild a typed error from an HTTP error body."""
    cls = ERROR_KINDS.get(payload.get("error"), LabflowError)
    return cls(payload.get("reason") or "Unknown", payload.get("detail"))
