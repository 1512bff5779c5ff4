"""Exceptions raised by the workflow engine and the signature service."""

from typing import Any, Dict, Iterable, List, Optional


class WorkflowError(Exception):
    """Base exception for workflow operations.

    Carries a machine-readable ``code`` and the HTTP status the API layer
    answers with.
    """

    code = "WORKFLOW_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(WorkflowError):
    """Raised when a case, step, user or signature does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


class UnknownAction(WorkflowError):
    """Raised when a case type has no action with the requested name."""

    code = "UNKNOWN_ACTION"
    status_code = 404

    def __init__(self, case_type: str, action: str, available: Iterable[str]):
        available = sorted(available)
        super().__init__(
            f"{case_type} has no action '{action}'",
            details={"case_type": case_type, "action": action, "available": available},
        )


class PermissionDenied(WorkflowError):
    """Raised when the actor lacks a role the action requires."""

    code = "PERMISSION_DENIED"
    status_code = 403

    def __init__(self, user_id: str, action: str, required_roles: Iterable[str]):
        roles = sorted(required_roles)
        super().__init__(
            f"User {user_id} may not perform '{action}'; requires one of: "
            f"{', '.join(roles)}",
            details={"user_id": user_id, "action": action, "required_roles": roles},
        )


class CaseClosed(WorkflowError):
    """Raised when a transition is attempted on a case in a terminal state."""

    code = "CASE_CLOSED"

    def __init__(self, case_type: str, case_id: Any, status: str):
        super().__init__(
            f"{case_type} {case_id} is closed ({status}) and cannot be changed",
            details={"case_type": case_type, "case_id": str(case_id), "status": status},
        )


class InvalidTransition(WorkflowError):
    """Raised when the requested move is not an edge of the state graph."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        case_type: str,
        from_state: str,
        to_state: str,
        allowed: Iterable[str],
        reason: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = sorted(allowed)
        message = (
            f"Cannot transition {case_type} from {from_state} to {to_state}. "
            f"Allowed: {', '.join(self.allowed) or 'none'}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            details={
                "case_type": case_type,
                "from": from_state,
                "to": to_state,
                "allowed": self.allowed,
            },
        )


class GuardFailed(WorkflowError):
    """Raised when one or more guard predicates do not hold."""

    code = "GUARD_FAILED"

    def __init__(self, action: str, failures: List[Dict[str, str]]):
        self.failures = failures
        summary = "; ".join(f["message"] for f in failures)
        super().__init__(
            f"Guard failed for '{action}': {summary}",
            details={"action": action, "unmet": failures},
        )

    @property
    def guard_names(self) -> List[str]:
        return [f["guard"] for f in self.failures]


class SignatureRequired(WorkflowError):
    """Raised when a signature-gated action is requested without credentials."""

    code = "SIGNATURE_REQUIRED"

    def __init__(self, action: str, scope: str):
        super().__init__(
            f"Action '{action}' requires an electronic signature ({scope})",
            details={"action": action, "scope": scope},
        )


class InvalidPayload(WorkflowError):
    """Raised when an action or creation payload fails validation."""

    code = "VALIDATION_ERROR"

    def __init__(self, action: str, errors: List[Dict[str, Any]]):
        super().__init__(
            f"Invalid payload for '{action}'",
            details={"action": action, "errors": errors},
        )


class AuthenticationFailed(WorkflowError):
    """Raised when re-authentication for a signature fails."""

    code = "AUTHENTICATION_FAILED"
    status_code = 401

    def __init__(self, user_id: str, reason: str = "Invalid credentials"):
        self.user_id = user_id
        super().__init__(reason, details={"user_id": user_id})


class InvalidSignatureMeaning(WorkflowError):
    """Raised when a meaning is not in the vocabulary of its scope."""

    code = "INVALID_SIGNATURE_MEANING"

    def __init__(self, scope: str, meaning: str, valid: Iterable[str]):
        super().__init__(
            f"Meaning '{meaning}' is not valid for scope {scope}",
            details={"scope": scope, "meaning": meaning, "valid": list(valid)},
        )


class DuplicateSignature(WorkflowError):
    """Raised when the signer already signed this entity under this scope."""

    code = "DUPLICATE_SIGNATURE"

    def __init__(self, scope: str, entity_type: str, entity_id: str, user_id: str):
        super().__init__(
            f"User {user_id} has already signed {entity_type} {entity_id} "
            f"for {scope}",
            details={
                "scope": scope,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "user_id": user_id,
            },
        )


class SignatureImmutable(WorkflowError):
    """Raised on every attempt to change or delete a signature."""

    code = "ESIGNATURE_IMMUTABLE"
    status_code = 403

    def __init__(self, signature_id: str, operation: str):
        super().__init__(
            "Electronic signatures cannot be modified or deleted once created",
            details={"signature_id": signature_id, "operation": operation},
        )


class ImmutableRecordError(WorkflowError):
    """Raised when a flush would update or delete an insert-only row."""

    code = "IMMUTABLE_RECORD"
    status_code = 403

    def __init__(self, table: str, operation: str):
        super().__init__(
            f"Rows in {table} are insert-only; {operation} is not permitted",
            details={"table": table, "operation": operation},
        )


class ConcurrentModification(WorkflowError):
    """Raised when another writer changed the case since it was loaded."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    retryable = True

    def __init__(self, case_type: str, case_id: Any):
        super().__init__(
            f"{case_type} {case_id} was modified concurrently; retry the request",
            details={"case_type": case_type, "case_id": str(case_id)},
        )


class StorageError(WorkflowError):
    """Raised when the database fails during a transaction."""

    code = "STORAGE_ERROR"
    status_code = 503
    retryable = True
