"""
Coordinators for the individual UI surfaces.

Each factory wires a loader to the claim store and analytics layer and
returns an unmounted ``ViewRefreshCoordinator``. A loader first pulls from
the backend; if that pull degraded to stale data it raises, so the
coordinator keeps showing the last good render marked stale.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..analytics.aggregator import AnalyticsAggregator
from ..claims.schema import Claim, ClaimStatus, Role
from ..integrations.notifications import InMemoryNotificationSink, Notification
from ..storage.claim_store import ClaimStore
from ..storage.event_bus import Topic
from ..storage.persistence import ClaimFilter
from ..workflow.approval import ApprovalWorkflow
from .coordinator import ViewRefreshCoordinator


async def _pull(store: ClaimStore, claim_filter: Optional[ClaimFilter] = None) -> None:
    result = await store.refresh(claim_filter)
    if result.stale:
        raise result.error


def _timeout(store: ClaimStore, timeout: Optional[float]) -> float:
    return timeout if timeout is not None else store.settings.fetch_timeout_seconds


# ============================================================================
# Employee dashboard
# ============================================================================


def _dashboard_data(store: ClaimStore, employee_id: str) -> Dict[str, Any]:
    claims = sorted(
        store.list_by_employee(employee_id),
        key=lambda c: (c.submitted_at, c.id),
        reverse=True,
    )
    totals = {status.value: sum(1 for c in claims if c.status == status) for status in ClaimStatus}
    return {
        "employee_id": employee_id,
        "claims": claims,
        "counts": totals,
        "total_amount": sum((c.amount for c in claims), Decimal("0")),
        "flagged": [c.id for c in claims if c.is_flagged],
    }


def employee_dashboard(
    store: ClaimStore,
    employee_id: str,
    timeout: Optional[float] = None,
) -> ViewRefreshCoordinator:
    """An employee's own claims, newest first, with status counts."""

    async def load() -> Dict[str, Any]:
        await _pull(store, ClaimFilter(employee_id=employee_id))
        return _dashboard_data(store, employee_id)

    return ViewRefreshCoordinator(
        f"employee-dashboard:{employee_id}",
        store.bus,
        load,
        topics=(Topic.CLAIMS_CHANGED, Topic.DATA_SYNC),
        timeout=_timeout(store, timeout),
        fallback=lambda: _dashboard_data(store, employee_id),
        clock=store.now,
    )


# ============================================================================
# Manager approval queue
# ============================================================================


def approval_queue(
    workflow: ApprovalWorkflow,
    role=Role.MANAGER,
    timeout: Optional[float] = None,
) -> ViewRefreshCoordinator:
    """Pending claims the role may decide on, escalations first."""
    store = workflow.store

    async def load() -> List[Claim]:
        await _pull(store, ClaimFilter(status=ClaimStatus.PENDING))
        return workflow.pending_queue(role)

    return ViewRefreshCoordinator(
        f"approval-queue:{Role(role).value}",
        store.bus,
        load,
        topics=(Topic.CLAIMS_CHANGED, Topic.DATA_SYNC),
        timeout=_timeout(store, timeout),
        fallback=lambda: workflow.pending_queue(role),
        clock=store.now,
    )


# ============================================================================
# HR analytics and fraud panel
# ============================================================================


def _hr_data(analytics: AnalyticsAggregator, periods: int) -> Dict[str, Any]:
    return {
        "overview": analytics.overview(),
        "departments": analytics.department_summary(),
        "categories": analytics.category_summary(),
        "employees": analytics.employee_summary(),
        "trend": analytics.trend(periods),
        "category_trends": analytics.category_trends(),
    }


def hr_analytics(
    analytics: AnalyticsAggregator,
    periods: int = 6,
    timeout: Optional[float] = None,
) -> ViewRefreshCoordinator:
    """Organisation-wide summaries for HR."""
    store = analytics.store

    async def load() -> Dict[str, Any]:
        await _pull(store)
        return _hr_data(analytics, periods)

    return ViewRefreshCoordinator(
        "hr-analytics",
        store.bus,
        load,
        topics=(Topic.CLAIMS_CHANGED, Topic.DATA_SYNC),
        timeout=_timeout(store, timeout),
        fallback=lambda: _hr_data(analytics, periods),
        clock=store.now,
    )


def fraud_panel(
    analytics: AnalyticsAggregator,
    min_score: int = 0,
    timeout: Optional[float] = None,
) -> ViewRefreshCoordinator:
    """Flagged claims, riskiest first."""
    store = analytics.store

    async def load():
        await _pull(store)
        return analytics.fraud_overview(min_score)

    return ViewRefreshCoordinator(
        "fraud-panel",
        store.bus,
        load,
        topics=(Topic.CLAIMS_CHANGED, Topic.DATA_SYNC),
        timeout=_timeout(store, timeout),
        fallback=lambda: analytics.fraud_overview(min_score),
        clock=store.now,
    )


# ============================================================================
# Notification center
# ============================================================================


def notification_center(
    store: ClaimStore,
    sink: InMemoryNotificationSink,
    recipient_id: str,
    timeout: Optional[float] = None,
) -> ViewRefreshCoordinator:
    """Unread notifications for one user."""

    async def load() -> List[Notification]:
        return sink.unread(recipient_id)

    return ViewRefreshCoordinator(
        f"notifications:{recipient_id}",
        store.bus,
        load,
        topics=(Topic.NOTIFICATION_CHANGED,),
        timeout=_timeout(store, timeout),
        clock=store.now,
    )
