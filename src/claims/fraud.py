"""
Rule-based fraud risk scoring for expense claims.

A rule is a pure function ``(claim, peers) -> RuleHit | None``. The scorer
folds its rule table over a claim, adds the weights, clamps the total to
[0, 100] and returns the flags in a canonical order, so the result does not
depend on the order rules are listed in. Adding a rule means appending a
function to the table.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, computed_field

from .schema import DEFAULT_HIGH_RISK_THRESHOLD, DEFAULT_TAX_RATE, Claim, RiskSignal, compute_tax


DUPLICATE_DETECTION = "Duplicate detection"
HIGH_AMOUNT = "High amount"
WEEKEND_SUBMISSION = "Weekend submission"
INCONSISTENT_TAX = "Inconsistent tax rate"
ROUND_AMOUNT = "Round amount"
OLD_EXPENSE = "Old expense"
VAGUE_DESCRIPTION = "Vague description"


@dataclass(frozen=True)
class RuleHit:
    """A rule that fired: the flag it raises and the weight it adds."""
    flag: str
    weight: int


FraudRule = Callable[[Claim, Sequence[Claim]], Optional[RuleHit]]


class FraudAssessment(BaseModel):
    """Outcome of scoring one claim."""

    risk_score: int = Field(ge=0, le=100)
    flags: Tuple[str, ...] = ()
    threshold: int = DEFAULT_HIGH_RISK_THRESHOLD

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_flagged(self) -> bool:
        return self.risk_score >= self.threshold or len(self.flags) > 0

    @property
    def risk_level(self) -> str:
        return risk_level(self.risk_score)


def risk_level(score: int) -> str:
    """Map a 0-100 score onto the fraud panel's risk levels."""
    if score >= 90:
        return "critical"
    if score >= 75:
        return "high"
    if score >= 50:
        return "medium"
    return "low"


def _others(claim: Claim, peers: Iterable[Claim]) -> List[Claim]:
    return [p for p in peers if p.id != claim.id]


# ============================================================================
# Core rules
# ============================================================================


def duplicate_rule(
    window_hours: int = 48,
    amount_tolerance: Decimal = Decimal("0.01"),
    weight: int = 40,
) -> FraudRule:
    """Same employee, same category, same amount, expense dates within the window."""
    window = timedelta(hours=window_hours)

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        for peer in _others(claim, peers):
            if peer.employee_id != claim.employee_id or peer.category != claim.category:
                continue
            if abs(peer.amount - claim.amount) > amount_tolerance:
                continue
            gap = abs(
                datetime.combine(peer.expense_date, datetime.min.time())
                - datetime.combine(claim.expense_date, datetime.min.time())
            )
            if gap <= window:
                return RuleHit(DUPLICATE_DETECTION, weight)
        return None

    return rule


def high_amount_rule(multiplier: Decimal = Decimal("2"), weight: int = 25) -> FraudRule:
    """Amount exceeds the category's peer mean by more than ``multiplier``."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        same_category = [p.amount for p in _others(claim, peers) if p.category == claim.category]
        if not same_category:
            return None
        mean = sum(same_category, Decimal("0")) / len(same_category)
        if claim.amount > mean * Decimal(multiplier):
            return RuleHit(HIGH_AMOUNT, weight)
        return None

    return rule


def weekend_rule(weight: int = 10) -> FraudRule:
    """Submission timestamp falls on a Saturday or Sunday."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        if claim.submitted_at.weekday() >= 5:
            return RuleHit(WEEKEND_SUBMISSION, weight)
        return None

    return rule


def tax_consistency_rule(
    rate: Decimal = DEFAULT_TAX_RATE,
    tolerance: Decimal = Decimal("0.01"),
    weight: int = 15,
) -> FraudRule:
    """Stored tax deviates from ``amount * rate`` beyond rounding."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        if abs(claim.tax_amount - compute_tax(claim.amount, rate)) > tolerance:
            return RuleHit(INCONSISTENT_TAX, weight)
        return None

    return rule


def signal_rule(signal: RiskSignal) -> FraudRule:
    """Rule that always fires for a caller-supplied anomaly signal."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        return RuleHit(signal.flag, signal.weight)

    return rule


# ============================================================================
# Extended rules (opt-in)
# ============================================================================


def round_amount_rule(minimum: Decimal = Decimal("500"), weight: int = 15) -> FraudRule:
    """Round hundreds at or above ``minimum`` may indicate a fabricated expense."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        if claim.amount >= minimum and claim.amount % 100 == 0:
            return RuleHit(ROUND_AMOUNT, weight)
        return None

    return rule


def old_expense_rule(max_age_days: int = 90, weight: int = 20) -> FraudRule:
    """Expense incurred long before it was submitted."""

    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        if (claim.submitted_at.date() - claim.expense_date).days > max_age_days:
            return RuleHit(OLD_EXPENSE, weight)
        return None

    return rule


def vague_description_rule(min_length: int = 10, weight: int = 15) -> FraudRule:
    def rule(claim: Claim, peers: Sequence[Claim]) -> Optional[RuleHit]:
        if len(claim.description.strip()) < min_length:
            return RuleHit(VAGUE_DESCRIPTION, weight)
        return None

    return rule


def default_rules(settings=None) -> Tuple[FraudRule, ...]:
    """The core rule table, parameterised from settings when given."""
    if settings is None:
        return (duplicate_rule(), high_amount_rule(), weekend_rule(), tax_consistency_rule())
    return (
        duplicate_rule(
            settings.duplicate_window_hours,
            settings.duplicate_amount_tolerance,
            settings.duplicate_weight,
        ),
        high_amount_rule(settings.high_amount_multiplier, settings.high_amount_weight),
        weekend_rule(settings.weekend_weight),
        tax_consistency_rule(settings.tax_rate, settings.tax_tolerance, settings.tax_weight),
    )


def extended_rules() -> Tuple[FraudRule, ...]:
    return (round_amount_rule(), old_expense_rule(), vague_description_rule())


# ============================================================================
# Scoring
# ============================================================================


def score(
    claim: Claim,
    peers: Sequence[Claim],
    rules: Optional[Sequence[FraudRule]] = None,
    threshold: int = DEFAULT_HIGH_RISK_THRESHOLD,
) -> FraudAssessment:
    """
    Score a claim against its peers.

    Args:
        claim: The claim to score
        peers: Other claims in the snapshot (the claim itself is ignored if present)
        rules: Rule table (defaults to the core rules)
        threshold: Score at or above which the claim is flagged

    Returns:
        FraudAssessment with the clamped score and canonically ordered flags
    """
    table = list(rules if rules is not None else default_rules())
    table.extend(signal_rule(signal) for signal in claim.risk_signals)

    total = 0
    weights: dict = {}
    for rule in table:
        hit = rule(claim, peers)
        if hit is None:
            continue
        total += hit.weight
        weights[hit.flag] = max(weights.get(hit.flag, 0), hit.weight)

    flags = tuple(sorted(weights, key=lambda flag: (-weights[flag], flag)))
    return FraudAssessment(
        risk_score=max(0, min(100, total)),
        flags=flags,
        threshold=threshold,
    )


class FraudScorer:
    """
    Configured scorer used by the claim store and the analytics layer.

    Usage:
        scorer = FraudScorer.from_settings(settings)
        assessment = scorer.score(claim, store.snapshot().claims)
    """

    def __init__(
        self,
        rules: Optional[Sequence[FraudRule]] = None,
        threshold: int = DEFAULT_HIGH_RISK_THRESHOLD,
    ):
        self.rules: Tuple[FraudRule, ...] = tuple(rules if rules is not None else default_rules())
        self.threshold = threshold

    @classmethod
    def from_settings(cls, settings, extended: bool = False) -> "FraudScorer":
        rules = default_rules(settings)
        if extended:
            rules = rules + extended_rules()
        return cls(rules=rules, threshold=settings.high_risk_threshold)

    def with_rules(self, *extra: FraudRule) -> "FraudScorer":
        """A scorer with ``extra`` appended to this one's rule table."""
        return FraudScorer(rules=self.rules + tuple(extra), threshold=self.threshold)

    def score(self, claim: Claim, peers: Sequence[Claim]) -> FraudAssessment:
        return score(claim, peers, rules=self.rules, threshold=self.threshold)
