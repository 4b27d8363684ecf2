"""
View refresh coordination for the claim surfaces.
"""

from .coordinator import Submission, ViewRefreshCoordinator, ViewState, submit_claim
from .surfaces import (
    approval_queue,
    employee_dashboard,
    fraud_panel,
    hr_analytics,
    notification_center,
)

__all__ = [
    "Submission",
    "ViewRefreshCoordinator",
    "ViewState",
    "submit_claim",
    # Surfaces
    "approval_queue",
    "employee_dashboard",
    "fraud_panel",
    "hr_analytics",
    "notification_center",
]
