"""
Canonical expense claim schema.

Defines the Pydantic models shared by the store, the workflow, the fraud
heuristic and the analytics layer. Claims are immutable values: every change
goes through ``apply_patch`` which re-validates and returns a new Claim.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)


DEFAULT_TAX_RATE = Decimal("0.15")
DEFAULT_HIGH_RISK_THRESHOLD = 70
CENTS = Decimal("0.01")


# ============================================================================
# Enums
# ============================================================================


class ClaimStatus(str, Enum):
    """Workflow status of a claim."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED})


class Role(str, Enum):
    """Directory roles."""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"
    ADMINISTRATOR = "administrator"


REVIEWER_ROLES = frozenset({Role.MANAGER, Role.HR, Role.ADMINISTRATOR})


class ApprovalAction(str, Enum):
    """Workflow actions recorded in a claim's approval history."""
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"


EXPENSE_CATEGORIES: Tuple[str, ...] = (
    "Fuel & Vehicle",
    "Meals & Entertainment",
    "Accommodation",
    "Travel & Transport",
    "Office Supplies",
    "Equipment & Tools",
    "Training & Development",
    "Communications",
    "Utilities",
    "Professional Services",
    "Maintenance & Repairs",
    "Insurance",
    "Other",
)


# ============================================================================
# Helpers
# ============================================================================


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_tax(amount: Decimal, rate: Decimal = DEFAULT_TAX_RATE) -> Decimal:
    """Tax amount for a claim amount, rounded to cents."""
    return (Decimal(amount) * Decimal(rate)).quantize(CENTS, rounding=ROUND_HALF_UP)


# ============================================================================
# Supporting records
# ============================================================================


class Attachment(BaseModel):
    """Reference to a receipt held by the attachment storage collaborator."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Attachment identifier")
    url: str = Field(description="Public or signed URL of the stored file")
    path: Optional[str] = Field(None, description="Storage path, used for deletion")
    filename: str = Field(description="Original file name")
    size: int = Field(default=0, ge=0, description="File size in bytes")
    content_type: str = Field(default="application/octet-stream")


class RiskSignal(BaseModel):
    """
    Caller-supplied anomaly input for the fraud heuristic.

    Examples are "Geographic anomaly" or "Time anomaly" raised by an upstream
    check the engine does not perform itself.
    """

    model_config = ConfigDict(frozen=True)

    flag: str = Field(min_length=1)
    weight: int = Field(ge=0, le=100)
    detail: Optional[str] = None


class ApprovalEvent(BaseModel):
    """Immutable record of a single workflow transition."""

    model_config = ConfigDict(frozen=True)

    claim_id: str
    actor_id: str
    actor_name: Optional[str] = None
    actor_role: Role
    action: ApprovalAction
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class User(BaseModel):
    """User directory entry."""
    id: str
    name: str
    email: Optional[str] = None
    role: Role = Role.EMPLOYEE
    department: str = "Unknown"


# ============================================================================
# Main Claim Schema
# ============================================================================


class Claim(BaseModel):
    """
    One expense submission.

    ``is_flagged`` is computed from ``risk_score`` and ``flags`` and therefore
    can never disagree with them.
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    id: str = Field(min_length=1, description="Unique claim identifier")
    employee_id: str = Field(min_length=1)
    employee_name: str = ""
    department: str = "Unknown"

    # Financial
    amount: Decimal = Field(ge=0)
    currency: str = "ZAR"
    tax_amount: Decimal = Field(ge=0)
    tax_overridden: bool = False

    # Classification
    category: str
    description: str = ""
    vendor: str = ""
    payment_method: Optional[str] = None

    # Temporal
    expense_date: date
    submitted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    attachments: Tuple[Attachment, ...] = ()

    # Workflow
    status: ClaimStatus = ClaimStatus.PENDING
    reviewer_id: Optional[str] = None
    reviewer_name: Optional[str] = None
    reviewer_comment: Optional[str] = None
    decided_at: Optional[datetime] = None
    escalated: bool = False
    escalation_level: int = Field(default=0, ge=0)
    approval_history: Tuple[ApprovalEvent, ...] = ()

    # Fraud
    risk_score: int = Field(default=0, ge=0, le=100)
    flags: Tuple[str, ...] = ()
    risk_signals: Tuple[RiskSignal, ...] = ()
    risk_threshold: int = Field(default=DEFAULT_HIGH_RISK_THRESHOLD, ge=0, le=100)

    version: int = Field(default=1, ge=1)
    notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_tax(cls, data: Any, info: ValidationInfo) -> Any:
        """
        Fill tax_amount from amount unless one was supplied.

        The rate comes from the ``tax_rate`` validation context entry and
        falls back to DEFAULT_TAX_RATE.
        """
        if not isinstance(data, dict):
            return data
        if data.get("tax_amount") is None:
            amount = data.get("amount")
            if amount is None:
                return data
            try:
                rate = (info.context or {}).get("tax_rate", DEFAULT_TAX_RATE)
                tax = compute_tax(Decimal(str(amount)), rate)
            except InvalidOperation:
                # the amount field itself reports the problem
                return data
            return {**data, "tax_amount": tax, "tax_overridden": False}
        if "tax_overridden" not in data:
            return {**data, "tax_overridden": True}
        return data

    @field_validator("submitted_at", "updated_at", "decided_at")
    @classmethod
    def _aware_datetimes(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_flagged(self) -> bool:
        """True iff the risk score reaches the threshold or any flag is raised."""
        return self.risk_score >= self.risk_threshold or len(self.flags) > 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def expected_tax(self, rate: Decimal = DEFAULT_TAX_RATE) -> Decimal:
        """Tax the claim would carry if it were derived from its amount."""
        return compute_tax(self.amount, rate)


def apply_patch(claim: Claim, patch: dict, tax_rate: Optional[Decimal] = None) -> Claim:
    """Return a new, re-validated Claim with ``patch`` merged onto ``claim``."""
    data = claim.model_dump()
    data.pop("is_flagged", None)
    data.update(patch)
    context = {"tax_rate": tax_rate} if tax_rate is not None else None
    return Claim.model_validate(data, context=context)


# ============================================================================
# Submission input
# ============================================================================


class ClaimInput(BaseModel):
    """
    Loosely typed submission shape.

    Every field is optional so that the store can report all missing or
    invalid fields in one ClaimValidationError instead of failing on the
    first one.
    """

    employee_id: Optional[str] = None
    employee_name: Optional[str] = None
    department: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    category: Optional[str] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    payment_method: Optional[str] = None
    expense_date: Optional[date] = None
    attachments: List[Attachment] = Field(default_factory=list)
    risk_signals: List[RiskSignal] = Field(default_factory=list)
    notes: Optional[str] = None
    draft: bool = False

    def violations(self) -> List[str]:
        """Every rule this input breaks, in field order."""
        problems = []
        if not self.employee_id or not self.employee_id.strip():
            problems.append("employee_id: is required")
        if self.amount is None:
            problems.append("amount: is required")
        elif self.amount <= 0:
            problems.append("amount: must be greater than 0")
        if self.tax_amount is not None and self.tax_amount < 0:
            problems.append("tax_amount: cannot be negative")
        if not self.category or not self.category.strip():
            problems.append("category: is required")
        elif self.category not in EXPENSE_CATEGORIES:
            problems.append(f"category: '{self.category}' is not a known expense category")
        if not self.description or not self.description.strip():
            problems.append("description: must not be empty")
        if not self.attachments:
            problems.append("attachments: at least one receipt is required")
        return problems
