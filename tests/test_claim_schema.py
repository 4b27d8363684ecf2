"""
Tests for the claim record model.

Validates:
- Tax derivation and explicit overrides
- is_flagged consistency with risk score and flags
- Submission input validation reports every violation
- Error types carry codes and structured data
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.claims.errors import (
    ClaimNotFoundError,
    ClaimValidationError,
    InvalidTransitionError,
    RolePermissionError,
    UpstreamError,
)
from src.claims.schema import (
    EXPENSE_CATEGORIES,
    Claim,
    ClaimInput,
    ClaimStatus,
    apply_patch,
    compute_tax,
    ensure_aware,
)

from conftest import claim_input, make_claim


# ============================================================================
# Tax
# ============================================================================


class TestTax:

    def test_tax_derived_from_amount(self):
        claim = make_claim("C1", amount=Decimal("450"))
        assert claim.tax_amount == Decimal("67.50")
        assert claim.tax_overridden is False

    def test_tax_rounds_half_up_to_cents(self):
        assert compute_tax(Decimal("10.03")) == Decimal("1.50")
        assert compute_tax(Decimal("0.10")) == Decimal("0.02")

    def test_explicit_tax_is_kept_and_marked_overridden(self):
        claim = make_claim("C1", amount=Decimal("450"), tax_amount=Decimal("0"))
        assert claim.tax_amount == Decimal("0")
        assert claim.tax_overridden is True

    def test_patch_preserves_tax_fields(self):
        claim = make_claim("C1", amount=Decimal("100"))
        patched = apply_patch(claim, {"description": "Fuel and tolls"})
        assert patched.tax_amount == Decimal("15.00")
        assert patched.description == "Fuel and tolls"
        assert claim.description == "Fuel for client visit"

    def test_tax_rate_taken_from_validation_context(self):
        data = make_claim("C1", amount=Decimal("450")).model_dump(exclude={"is_flagged", "tax_amount", "tax_overridden"})
        claim = Claim.model_validate(data, context={"tax_rate": Decimal("0.10")})
        assert claim.tax_amount == Decimal("45.00")
        assert claim.tax_overridden is False

    def test_cleared_override_rederived_at_given_rate(self):
        claim = make_claim("C1", amount=Decimal("450"), tax_amount=Decimal("0"))
        patched = apply_patch(claim, {"tax_amount": None}, tax_rate=Decimal("0.10"))
        assert patched.tax_amount == Decimal("45.00")
        assert patched.tax_overridden is False

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            make_claim("C1", amount=Decimal("-1"))


# ============================================================================
# Flagging
# ============================================================================


class TestIsFlagged:

    def test_unflagged_by_default(self):
        assert make_claim("C1").is_flagged is False

    def test_flagged_at_threshold(self):
        assert make_claim("C1", risk_score=70).is_flagged is True
        assert make_claim("C1", risk_score=69).is_flagged is False

    def test_flagged_by_any_flag(self):
        assert make_claim("C1", risk_score=10, flags=("Weekend submission",)).is_flagged is True

    def test_threshold_is_configurable(self):
        assert make_claim("C1", risk_score=50, risk_threshold=50).is_flagged is True

    def test_is_flagged_cannot_be_forced(self):
        claim = Claim.model_validate({**make_claim("C1").model_dump(), "is_flagged": True})
        assert claim.is_flagged is False

    def test_is_flagged_serialized(self):
        dumped = make_claim("C1", risk_score=90).model_dump(mode="json")
        assert dumped["is_flagged"] is True

    def test_claims_are_immutable(self):
        claim = make_claim("C1")
        with pytest.raises(ValidationError):
            claim.status = ClaimStatus.APPROVED


# ============================================================================
# Submission input
# ============================================================================


class TestClaimInput:

    def test_valid_input_has_no_violations(self):
        assert ClaimInput.model_validate(claim_input()).violations() == []

    def test_empty_input_lists_every_violation(self):
        violations = ClaimInput().violations()
        fields = [v.split(":")[0] for v in violations]
        assert fields == ["employee_id", "amount", "category", "description", "attachments"]

    def test_zero_amount(self):
        violations = ClaimInput.model_validate(claim_input(amount="0")).violations()
        assert violations == ["amount: must be greater than 0"]

    def test_unknown_category(self):
        violations = ClaimInput.model_validate(claim_input(category="Yachts")).violations()
        assert len(violations) == 1
        assert violations[0].startswith("category:")

    def test_blank_description(self):
        violations = ClaimInput.model_validate(claim_input(description="   ")).violations()
        assert violations == ["description: must not be empty"]

    def test_negative_tax(self):
        violations = ClaimInput.model_validate(claim_input(tax_amount="-5")).violations()
        assert violations == ["tax_amount: cannot be negative"]

    def test_categories_include_receipt_capture_list(self):
        assert "Fuel & Vehicle" in EXPENSE_CATEGORIES
        assert "Other" in EXPENSE_CATEGORIES
        assert len(set(EXPENSE_CATEGORIES)) == len(EXPENSE_CATEGORIES)


# ============================================================================
# Helpers and errors
# ============================================================================


def test_ensure_aware_treats_naive_as_utc():
    naive = datetime(2025, 1, 15, 10, 0)
    assert ensure_aware(naive).tzinfo == timezone.utc
    assert ensure_aware(None) is None


def test_error_codes_and_payloads():
    validation = ClaimValidationError(["amount: is required", "category: is required"])
    assert validation.to_dict()["violations"] == ["amount: is required", "category: is required"]
    assert validation.code == "VALIDATION_ERROR"

    assert ClaimNotFoundError("C9").to_dict()["claim_id"] == "C9"

    permission = RolePermissionError("employee", "approve")
    assert isinstance(permission, PermissionError)
    assert permission.code == "PERMISSION_DENIED"

    transition = InvalidTransitionError("C1", "approved", "approve")
    assert transition.code == "INVALID_TRANSITION"

    upstream = UpstreamError("fetch_claims", "boom", timed_out=True)
    assert upstream.retryable is True
    assert upstream.timed_out is True
