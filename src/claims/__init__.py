"""
Expense claim records, errors and the fraud heuristic.
"""

from .errors import (
    ClaimNotFoundError,
    ClaimsError,
    ClaimValidationError,
    InvalidTransitionError,
    RolePermissionError,
    UpstreamError,
)
from .fraud import FraudAssessment, FraudRule, FraudScorer, RuleHit, risk_level, score
from .schema import (
    # Enums
    ApprovalAction,
    ClaimStatus,
    Role,
    # Constants
    EXPENSE_CATEGORIES,
    REVIEWER_ROLES,
    # Models
    ApprovalEvent,
    Attachment,
    Claim,
    ClaimInput,
    RiskSignal,
    User,
    # Helpers
    apply_patch,
    compute_tax,
    utcnow,
)

__all__ = [
    # Errors
    "ClaimsError",
    "ClaimValidationError",
    "ClaimNotFoundError",
    "RolePermissionError",
    "InvalidTransitionError",
    "UpstreamError",
    # Fraud
    "FraudAssessment",
    "FraudRule",
    "FraudScorer",
    "RuleHit",
    "risk_level",
    "score",
    # Enums
    "ApprovalAction",
    "ClaimStatus",
    "Role",
    "EXPENSE_CATEGORIES",
    "REVIEWER_ROLES",
    # Models
    "ApprovalEvent",
    "Attachment",
    "Claim",
    "ClaimInput",
    "RiskSignal",
    "User",
    "apply_patch",
    "compute_tax",
    "utcnow",
]
