"""
Typed exception hierarchy for the claims engine.

Every error carries a machine-readable ``code`` and structured attributes so
callers (views, the HTTP layer) can branch on type instead of message text.

    ClaimsError (base)
    +-- ClaimValidationError   bad input, every violation listed
    +-- ClaimNotFoundError     unknown claim id
    +-- RolePermissionError    role not allowed to perform a transition
    +-- InvalidTransitionError workflow rule violated (incl. decision races)
    +-- UpstreamError          persistence/storage collaborator failed or timed out

Validation, not-found, permission and transition errors are deterministic and
surfaced directly. UpstreamError is retryable for writes; reads fall back to
the last good snapshot.
"""

from typing import Iterable, Optional


class ClaimsError(Exception):
    """Base class for all claims engine errors."""

    code: str = "CLAIMS_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Structured representation for API responses."""
        return {"code": self.code, "message": self.message}


class ClaimValidationError(ClaimsError):
    """Claim input failed validation; ``violations`` lists every problem."""

    code = "VALIDATION_ERROR"

    def __init__(self, violations: Iterable[str]):
        self.violations = list(violations)
        super().__init__("Invalid claim: " + "; ".join(self.violations))

    def to_dict(self) -> dict:
        return {**super().to_dict(), "violations": self.violations}


class ClaimNotFoundError(ClaimsError):
    """No claim with the requested id exists."""

    code = "NOT_FOUND"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim not found: {claim_id}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "claim_id": self.claim_id}


class RolePermissionError(ClaimsError, PermissionError):
    """The actor's role may not perform the requested workflow action."""

    code = "PERMISSION_DENIED"

    def __init__(self, role: str, action: str):
        self.role = role
        self.action = action
        super().__init__(f"Role '{role}' is not allowed to {action} claims")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "role": self.role, "action": self.action}


class InvalidTransitionError(ClaimsError):
    """A workflow action is not legal from the claim's current state."""

    code = "INVALID_TRANSITION"

    def __init__(self, claim_id: str, current_status: str, action: str, reason: Optional[str] = None):
        self.claim_id = claim_id
        self.current_status = current_status
        self.action = action
        message = reason or f"Cannot {action} claim {claim_id} in status '{current_status}'"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "claim_id": self.claim_id,
            "current_status": self.current_status,
            "action": self.action,
        }


class UpstreamError(ClaimsError):
    """A collaborator (persistence, storage) failed or did not answer in time."""

    code = "UPSTREAM_ERROR"

    def __init__(self, operation: str, detail: str = "", retryable: bool = True, timed_out: bool = False):
        self.operation = operation
        self.detail = detail
        self.retryable = retryable
        self.timed_out = timed_out
        what = "timed out" if timed_out else "failed"
        message = f"Upstream {operation} {what}"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "operation": self.operation,
            "retryable": self.retryable,
            "timed_out": self.timed_out,
        }
