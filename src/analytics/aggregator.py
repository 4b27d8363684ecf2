"""
Analytics over the claim store snapshot.

Every query is a pure read of ``store.snapshot()``. Results are memoized per
store version, so asking twice without an intervening mutation returns the
identical (frozen) objects.
"""

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..claims.fraud import FraudScorer, risk_level
from ..claims.schema import CENTS, Claim, ClaimStatus
from ..storage.claim_store import ClaimStore
from ..utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ============================================================================
# Value objects
# ============================================================================


class _Summary(BaseModel):
    model_config = ConfigDict(frozen=True)


class DepartmentSummary(_Summary):
    department: str
    total_amount: Decimal
    approved_amount: Decimal
    pending_amount: Decimal
    rejected_amount: Decimal
    employee_count: int
    claim_count: int
    average_claim_amount: Decimal
    flagged_count: int


class CategorySummary(_Summary):
    category: str
    total_amount: Decimal
    approved_amount: Decimal
    pending_amount: Decimal
    rejected_amount: Decimal
    employee_count: int
    claim_count: int
    average_claim_amount: Decimal
    flagged_count: int
    highest_claim_id: str
    highest_claim_amount: Decimal
    highest_claim_owner: str = Field(description="Employee name (or id) owning the highest claim")


class EmployeeSummary(_Summary):
    employee_id: str
    employee_name: str
    department: str
    total_amount: Decimal
    approved_amount: Decimal
    pending_amount: Decimal
    rejected_amount: Decimal
    claim_count: int
    average_claim_amount: Decimal
    flagged_count: int
    last_claim_date: date


class BudgetUtilization(_Summary):
    department: str
    allocated: Decimal
    spent: Decimal = Field(description="Approved plus pending amounts")
    remaining: Decimal
    utilization_rate: float = Field(description="Spent as a percentage of allocated")
    status: str = Field(description="over, warning or good")


class TrendPoint(_Summary):
    month: str = Field(description="YYYY-MM")
    total: Decimal
    count: int


class CategoryTrend(_Summary):
    category: str
    current_month: Decimal
    previous_month: Decimal
    growth_rate: float = Field(description="Percent change versus the previous month")


class ApprovalStatistics(_Summary):
    actor_id: Optional[str] = None
    total_decisions: int
    approved_count: int
    rejected_count: int
    pending_count: int
    approved_this_month: int
    rejected_this_month: int
    total_amount_approved: Decimal
    average_approval_days: float


class FraudCase(_Summary):
    claim_id: str
    employee_id: str
    employee_name: str
    department: str
    category: str
    amount: Decimal
    status: ClaimStatus
    risk_score: int
    risk_level: str
    flags: Tuple[str, ...]


class Overview(_Summary):
    total_claims: int
    total_amount: Decimal
    average_claim_amount: Decimal
    claims_by_status: Dict[str, int]
    amount_by_status: Dict[str, Decimal]
    flagged_count: int
    department_count: int
    employee_count: int


# ============================================================================
# Helpers
# ============================================================================


def _total(claims: Sequence[Claim], status: Optional[ClaimStatus] = None) -> Decimal:
    return sum((c.amount for c in claims if status is None or c.status == status), ZERO)


def _average(total: Decimal, count: int) -> Decimal:
    if not count:
        return ZERO
    return (total / count).quantize(CENTS, rounding=ROUND_HALF_UP)


def _month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _months_back(today: date, count: int) -> List[str]:
    """``count`` month keys ending at ``today``'s month, oldest first."""
    year, month = today.year, today.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _amount_buckets(claims: Sequence[Claim]) -> dict:
    total = _total(claims)
    return {
        "total_amount": total,
        "approved_amount": _total(claims, ClaimStatus.APPROVED),
        "pending_amount": _total(claims, ClaimStatus.PENDING),
        "rejected_amount": _total(claims, ClaimStatus.REJECTED),
        "claim_count": len(claims),
        "average_claim_amount": _average(total, len(claims)),
        "flagged_count": sum(1 for c in claims if c.is_flagged),
    }


def _group(claims: Sequence[Claim], key: Callable[[Claim], str]) -> Dict[str, List[Claim]]:
    groups: Dict[str, List[Claim]] = defaultdict(list)
    for claim in claims:
        groups[key(claim)].append(claim)
    return groups


# ============================================================================
# Aggregator
# ============================================================================


class AnalyticsAggregator:
    """
    Department, category, employee, budget and trend analytics.

    Usage:
        analytics = AnalyticsAggregator(store)
        for row in analytics.department_summary():
            print(row.department, row.total_amount)
        analytics.budget_utilization("Sales").status
    """

    def __init__(
        self,
        store: ClaimStore,
        settings: Optional[Settings] = None,
        scorer: Optional[FraudScorer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings or store.settings or get_settings()
        self.scorer = scorer or store.scorer
        self._clock = clock or store.now
        self._cache: Dict[Hashable, object] = {}
        self._cache_version: Optional[int] = None

    def _memo(self, key: Hashable, compute: Callable[[Tuple[Claim, ...]], object]):
        version = self.store.version
        if version != self._cache_version:
            self._cache.clear()
            self._cache_version = version
        if key not in self._cache:
            self._cache[key] = compute(self.store.snapshot().claims)
        return self._cache[key]

    def _today(self) -> date:
        return self._clock().date()

    # =========================================================================
    # Summaries
    # =========================================================================

    def department_summary(self) -> Tuple[DepartmentSummary, ...]:
        """One row per department, largest total first."""
        return self._memo("departments", self._departments)

    def _departments(self, claims: Tuple[Claim, ...]) -> Tuple[DepartmentSummary, ...]:
        rows = [
            DepartmentSummary(
                department=department,
                employee_count=len({c.employee_id for c in group}),
                **_amount_buckets(group),
            )
            for department, group in _group(claims, lambda c: c.department).items()
        ]
        return tuple(sorted(rows, key=lambda r: (-r.total_amount, r.department)))

    def category_summary(self) -> Tuple[CategorySummary, ...]:
        """One row per category with its single highest claim, largest total first."""
        return self._memo("categories", self._categories)

    def _categories(self, claims: Tuple[Claim, ...]) -> Tuple[CategorySummary, ...]:
        rows = []
        for category, group in _group(claims, lambda c: c.category).items():
            highest = max(group, key=lambda c: (c.amount, c.id))
            rows.append(
                CategorySummary(
                    category=category,
                    employee_count=len({c.employee_id for c in group}),
                    highest_claim_id=highest.id,
                    highest_claim_amount=highest.amount,
                    highest_claim_owner=highest.employee_name or highest.employee_id,
                    **_amount_buckets(group),
                )
            )
        return tuple(sorted(rows, key=lambda r: (-r.total_amount, r.category)))

    def employee_summary(self) -> Tuple[EmployeeSummary, ...]:
        """One row per employee with at least one claim, largest total first."""
        return self._memo("employees", self._employees)

    def _employees(self, claims: Tuple[Claim, ...]) -> Tuple[EmployeeSummary, ...]:
        rows = []
        for employee_id, group in _group(claims, lambda c: c.employee_id).items():
            latest = max(group, key=lambda c: (c.submitted_at, c.id))
            buckets = _amount_buckets(group)
            rows.append(
                EmployeeSummary(
                    employee_id=employee_id,
                    employee_name=latest.employee_name,
                    department=latest.department,
                    last_claim_date=latest.submitted_at.date(),
                    **buckets,
                )
            )
        return tuple(sorted(rows, key=lambda r: (-r.total_amount, r.employee_id)))

    def budget_utilization(self, department: str) -> BudgetUtilization:
        """Allocation versus approved-plus-pending spend for one department."""
        return self._memo(("budget", department), lambda claims: self._budget(claims, department))

    def _budget(self, claims: Tuple[Claim, ...], department: str) -> BudgetUtilization:
        allocated = Decimal(self.settings.budget_for(department))
        spent = sum(
            (
                c.amount for c in claims
                if c.department == department
                and c.status in (ClaimStatus.APPROVED, ClaimStatus.PENDING)
            ),
            ZERO,
        )
        if allocated > 0:
            rate = float((spent / allocated * 100).quantize(CENTS, rounding=ROUND_HALF_UP))
        else:
            rate = 0.0 if spent == 0 else 100.0

        if spent > allocated:
            status = "over"
        elif spent > allocated * self.settings.budget_warning_ratio:
            status = "warning"
        else:
            status = "good"

        return BudgetUtilization(
            department=department,
            allocated=allocated,
            spent=spent,
            remaining=allocated - spent,
            utilization_rate=rate,
            status=status,
        )

    # =========================================================================
    # Trends
    # =========================================================================

    def trend(self, periods: int = 6) -> Tuple[TrendPoint, ...]:
        """
        Approved claims per expense month over the last ``periods`` months.

        Months without approved claims are reported with zero totals.
        """
        if periods < 1:
            raise ValueError("periods must be at least 1")
        months = _months_back(self._today(), periods)
        return self._memo(("trend", tuple(months)), lambda claims: self._trend(claims, months))

    def _trend(self, claims: Tuple[Claim, ...], months: List[str]) -> Tuple[TrendPoint, ...]:
        approved = _group(
            [c for c in claims if c.status == ClaimStatus.APPROVED],
            lambda c: _month_key(c.expense_date),
        )
        return tuple(
            TrendPoint(month=month, total=_total(approved.get(month, [])), count=len(approved.get(month, [])))
            for month in months
        )

    def category_trends(self) -> Tuple[CategoryTrend, ...]:
        """Per-category spend this month against last month, by submission date."""
        previous, current = _months_back(self._today(), 2)
        return self._memo(
            ("category_trends", current),
            lambda claims: self._category_trends(claims, previous, current),
        )

    def _category_trends(self, claims, previous: str, current: str) -> Tuple[CategoryTrend, ...]:
        by_month = _group(claims, lambda c: _month_key(c.submitted_at.date()))
        this_month = _group(by_month.get(current, []), lambda c: c.category)
        last_month = _group(by_month.get(previous, []), lambda c: c.category)

        rows = []
        for category in sorted(set(this_month) | set(last_month)):
            now_total = _total(this_month.get(category, []))
            before_total = _total(last_month.get(category, []))
            growth = 0.0
            if before_total > 0:
                growth = round(float((now_total - before_total) / before_total * 100), 2)
            rows.append(
                CategoryTrend(
                    category=category,
                    current_month=now_total,
                    previous_month=before_total,
                    growth_rate=growth,
                )
            )
        return tuple(rows)

    # =========================================================================
    # Workflow and fraud
    # =========================================================================

    def approval_statistics(self, actor_id: Optional[str] = None) -> ApprovalStatistics:
        """
        Decision counts and turnaround.

        Args:
            actor_id: Only count decisions made by this reviewer (all when None)

        Returns:
            ApprovalStatistics; average approval time is in days, one decimal
        """
        return self._memo(
            ("approvals", actor_id, _month_key(self._today())),
            lambda claims: self._approval_stats(claims, actor_id),
        )

    def _approval_stats(self, claims: Tuple[Claim, ...], actor_id: Optional[str]) -> ApprovalStatistics:
        this_month = _month_key(self._today())
        decided = [
            c for c in claims
            if c.status in (ClaimStatus.APPROVED, ClaimStatus.REJECTED)
            and (actor_id is None or c.reviewer_id == actor_id)
        ]
        approved = [c for c in decided if c.status == ClaimStatus.APPROVED]
        rejected = [c for c in decided if c.status == ClaimStatus.REJECTED]

        def decided_this_month(claim: Claim) -> bool:
            return claim.decided_at is not None and _month_key(claim.decided_at.date()) == this_month

        durations = [
            (c.decided_at - c.submitted_at).total_seconds() / 86400
            for c in decided if c.decided_at is not None
        ]
        average = round(sum(durations) / len(durations), 1) if durations else 0.0

        return ApprovalStatistics(
            actor_id=actor_id,
            total_decisions=len(decided),
            approved_count=len(approved),
            rejected_count=len(rejected),
            pending_count=sum(1 for c in claims if c.status == ClaimStatus.PENDING),
            approved_this_month=sum(1 for c in approved if decided_this_month(c)),
            rejected_this_month=sum(1 for c in rejected if decided_this_month(c)),
            total_amount_approved=_total(approved),
            average_approval_days=average,
        )

    def fraud_overview(self, min_score: int = 0) -> Tuple[FraudCase, ...]:
        """Flagged claims re-scored against the current snapshot, riskiest first."""
        return self._memo(("fraud", min_score), lambda claims: self._fraud(claims, min_score))

    def _fraud(self, claims: Tuple[Claim, ...], min_score: int) -> Tuple[FraudCase, ...]:
        cases = []
        for claim in claims:
            assessment = self.scorer.score(claim, claims)
            if not assessment.is_flagged or assessment.risk_score < min_score:
                continue
            cases.append(
                FraudCase(
                    claim_id=claim.id,
                    employee_id=claim.employee_id,
                    employee_name=claim.employee_name,
                    department=claim.department,
                    category=claim.category,
                    amount=claim.amount,
                    status=claim.status,
                    risk_score=assessment.risk_score,
                    risk_level=risk_level(assessment.risk_score),
                    flags=assessment.flags,
                )
            )
        logger.debug(f"Fraud overview: {len(cases)} flagged of {len(claims)} claims")
        return tuple(sorted(cases, key=lambda c: (-c.risk_score, c.claim_id)))

    def overview(self) -> Overview:
        """Headline totals for the HR dashboard."""
        return self._memo("overview", self._overview)

    def _overview(self, claims: Tuple[Claim, ...]) -> Overview:
        total = _total(claims)
        return Overview(
            total_claims=len(claims),
            total_amount=total,
            average_claim_amount=_average(total, len(claims)),
            claims_by_status={
                status.value: sum(1 for c in claims if c.status == status) for status in ClaimStatus
            },
            amount_by_status={status.value: _total(claims, status) for status in ClaimStatus},
            flagged_count=sum(1 for c in claims if c.is_flagged),
            department_count=len({c.department for c in claims}),
            employee_count=len({c.employee_id for c in claims}),
        )
