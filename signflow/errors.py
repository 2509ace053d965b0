"""
Typed errors raised by the workflow engine.

Every error carries enough structured context (entity id, current status,
attempted operation) for the caller to render a precise message.
"""
from typing import Any, Dict, Optional


class SignflowError(Exception):
    """Base class for every refusal the engine raises."""

    code = "signflow_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": self.context}


class NotFound(SignflowError):
    code = "not_found"
    status_code = 404


class InvalidStateTransition(SignflowError):
    """An illegal status change was attempted."""
    code = "invalid_state_transition"
    status_code = 409


class AlreadySigned(InvalidStateTransition):
    code = "already_signed"


class AlreadyDeclined(InvalidStateTransition):
    code = "already_declined"


class WorkflowViolation(SignflowError):
    """States are correct but the order or timing is not. Not retryable; wait."""
    code = "workflow_violation"
    status_code = 400


class WorkflowTimeout(WorkflowViolation):
    code = "timeout"


class InvalidExpiration(SignflowError):
    code = "invalid_expiration"
    status_code = 400


class TokenExpired(SignflowError):
    code = "token_expired"
    status_code = 410


class TokenAlreadyUsed(SignflowError):
    code = "token_already_used"
    status_code = 409


class TokenRevoked(SignflowError):
    code = "token_revoked"
    status_code = 410


class ComplianceViolation(SignflowError):
    code = "compliance_violation"
    status_code = 422


class SecurityViolation(SignflowError):
    code = "security_violation"
    status_code = 403


class ConcurrentModification(SignflowError):
    """Another request changed the same entity first; the caller may retry."""
    code = "concurrent_modification"
    status_code = 409


class SigningFailed(SignflowError):
    """The external crypto signer failed. Retried by the transport layer, never here."""
    code = "signing_failed"
    status_code = 502


def describe(entity: Optional[object]) -> Dict[str, Any]:
    """Context fields for an entity: its id and current status, when it has them."""
    if entity is None:
        return {}
    status = getattr(entity, "status", None)
    return {
        "entity_id": getattr(entity, "id", None),
        "current_status": getattr(status, "value", status),
    }
