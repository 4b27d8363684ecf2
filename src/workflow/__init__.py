"""
Approval workflow for expense claims.

Provides:
- Role-gated approve/reject/escalate transitions
- Pending approval queues per role
"""

from .approval import AUTHORITY_RANK, ApprovalWorkflow, DecisionResult

__all__ = [
    "ApprovalWorkflow",
    "DecisionResult",
    "AUTHORITY_RANK",
]
