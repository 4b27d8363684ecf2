"""
Expense claim approval workflow.

State machine over a claim's status:

    pending --approve--> approved   (terminal)
    pending --reject---> rejected   (terminal)
    pending --escalate-> pending    (tagged escalated, higher authority only)

Only managers, HR and administrators may decide. Decisions on one claim are
serialized by a per-claim lock, and a decision that lost a race (the claim
changed between the call and the moment it got the lock, or an earlier
decision timed out and may still land) fails with InvalidTransitionError
instead of being applied on top of the winner.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..claims.errors import (
    ClaimsError,
    ClaimValidationError,
    InvalidTransitionError,
    RolePermissionError,
)
from ..claims.schema import (
    REVIEWER_ROLES,
    ApprovalAction,
    ApprovalEvent,
    Claim,
    ClaimStatus,
    Role,
)
from ..integrations.notifications import Notification, NotificationSink, deliver
from ..storage.claim_store import ClaimStore
from ..storage.event_bus import Topic

logger = logging.getLogger(__name__)


# Higher number = higher authority
AUTHORITY_RANK = {
    Role.MANAGER: 1,
    Role.HR: 2,
    Role.ADMINISTRATOR: 3,
}
TOP_AUTHORITY = max(AUTHORITY_RANK.values())

_CHANGE_TYPES = {
    ApprovalAction.APPROVE: "claim_approved",
    ApprovalAction.REJECT: "claim_rejected",
    ApprovalAction.ESCALATE: "claim_escalated",
}


@dataclass
class DecisionResult:
    """Per-claim outcome of a bulk decision."""
    claim_id: str
    success: bool
    error_code: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "claim_id": self.claim_id,
            "success": self.success,
            "error_code": self.error_code,
            "message": self.message,
        }


def _parse_role(role: Union[Role, str], action: ApprovalAction) -> Role:
    try:
        parsed = Role(role)
    except ValueError:
        raise RolePermissionError(str(role), action.value)
    if parsed not in REVIEWER_ROLES:
        raise RolePermissionError(parsed.value, action.value)
    return parsed


class ApprovalWorkflow:
    """
    Applies approve/reject/escalate decisions through the claim store.

    Usage:
        workflow = ApprovalWorkflow(store, notifier=sink)
        await workflow.approve("CLM-1", "manager", actor_id="MGR-7")
        await workflow.reject("CLM-2", "hr", "Receipt is illegible", actor_id="HR-2")
    """

    def __init__(self, store: ClaimStore, notifier: Optional[NotificationSink] = None):
        self.store = store
        self.notifier = notifier
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, claim_id: str) -> asyncio.Lock:
        lock = self._locks.get(claim_id)
        if lock is None:
            lock = self._locks[claim_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Actions
    # =========================================================================

    async def approve(
        self,
        claim_id: str,
        actor_role: Union[Role, str],
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Claim:
        """Approve a pending claim."""
        return await self._decide(claim_id, actor_role, ApprovalAction.APPROVE, comment, actor_id, actor_name)

    async def reject(
        self,
        claim_id: str,
        actor_role: Union[Role, str],
        reason: str,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> Claim:
        """Reject a pending claim; ``reason`` is mandatory."""
        return await self._decide(claim_id, actor_role, ApprovalAction.REJECT, reason, actor_id, actor_name)

    async def escalate(
        self,
        claim_id: str,
        actor_role: Union[Role, str],
        reason: str,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> Claim:
        """Hand a pending claim to a higher authority; it stays pending."""
        return await self._decide(claim_id, actor_role, ApprovalAction.ESCALATE, reason, actor_id, actor_name)

    async def bulk_approve(
        self,
        claim_ids: Iterable[str],
        actor_role: Union[Role, str],
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> List[DecisionResult]:
        """Approve claims one after another, collecting a result per claim."""
        results = []
        for claim_id in claim_ids:
            try:
                await self.approve(claim_id, actor_role, actor_id, actor_name, comment)
                results.append(DecisionResult(claim_id, True))
            except ClaimsError as e:
                results.append(DecisionResult(claim_id, False, e.code, e.message))

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning(f"Bulk approval: {failed} of {len(results)} claims failed")
        return results

    # =========================================================================
    # Queries
    # =========================================================================

    def pending_queue(self, actor_role: Union[Role, str]) -> List[Claim]:
        """
        Pending claims the role may decide on.

        Escalated claims only appear for roles above their escalation level.
        Escalated claims come first, then the oldest submissions.
        """
        role = _parse_role(actor_role, ApprovalAction.APPROVE)
        rank = AUTHORITY_RANK[role]
        queue = [
            claim for claim in self.store.list_by_filter(status=ClaimStatus.PENDING)
            if claim.escalation_level < rank
        ]
        return sorted(queue, key=lambda c: (-c.escalation_level, c.submitted_at, c.id))

    def history(self, claim_id: str) -> Tuple[ApprovalEvent, ...]:
        return self.store.require(claim_id).approval_history

    # =========================================================================
    # Internals
    # =========================================================================

    async def _decide(
        self,
        claim_id: str,
        actor_role: Union[Role, str],
        action: ApprovalAction,
        reason: Optional[str],
        actor_id: Optional[str],
        actor_name: Optional[str],
    ) -> Claim:
        role = _parse_role(actor_role, action)
        if action != ApprovalAction.APPROVE and not (reason and reason.strip()):
            raise ClaimValidationError([f"reason: is required to {action.value} a claim"])

        seen_version = self.store.require(claim_id).version

        async with self._lock_for(claim_id):
            current = self.store.require(claim_id)
            self._check_transition(current, role, action, seen_version)

            event = ApprovalEvent(
                claim_id=claim_id,
                actor_id=actor_id or role.value,
                actor_name=actor_name,
                actor_role=role,
                action=action,
                reason=reason.strip() if reason else None,
                timestamp=self.store.now(),
            )
            patch = self._patch_for(current, event)
            updated = await self.store.update(claim_id, patch, change_type=_CHANGE_TYPES[action])

        if updated.is_terminal:
            self._locks.pop(claim_id, None)
        logger.info(f"Claim {claim_id} {action.value}d by {event.actor_id} ({role.value})")
        await self._announce(updated, event)
        return updated

    def _check_transition(
        self,
        claim: Claim,
        role: Role,
        action: ApprovalAction,
        seen_version: int,
    ) -> None:
        if claim.status != ClaimStatus.PENDING:
            raise InvalidTransitionError(claim.id, claim.status.value, action.value)
        if self.store.write_in_flight(claim.id):
            raise InvalidTransitionError(
                claim.id,
                claim.status.value,
                action.value,
                reason=f"An earlier decision on claim {claim.id} is still being saved",
            )
        if claim.version != seen_version:
            raise InvalidTransitionError(
                claim.id,
                claim.status.value,
                action.value,
                reason=f"Claim {claim.id} was decided by someone else while this {action.value} was pending",
            )
        rank = AUTHORITY_RANK[role]
        if claim.escalation_level >= rank:
            raise RolePermissionError(role.value, f"{action.value} escalated")
        if action == ApprovalAction.ESCALATE and rank >= TOP_AUTHORITY:
            raise InvalidTransitionError(
                claim.id,
                claim.status.value,
                action.value,
                reason=f"No authority above {role.value} to escalate claim {claim.id} to",
            )

    def _patch_for(self, claim: Claim, event: ApprovalEvent) -> dict:
        patch = {"approval_history": claim.approval_history + (event,)}
        if event.action == ApprovalAction.ESCALATE:
            patch.update(
                escalated=True,
                escalation_level=AUTHORITY_RANK[event.actor_role],
                reviewer_comment=event.reason,
            )
            return patch

        patch.update(
            status=ClaimStatus.APPROVED if event.action == ApprovalAction.APPROVE else ClaimStatus.REJECTED,
            reviewer_id=event.actor_id,
            reviewer_name=event.actor_name,
            reviewer_comment=event.reason,
            decided_at=event.timestamp,
        )
        return patch

    async def _announce(self, claim: Claim, event: ApprovalEvent) -> None:
        kind = _CHANGE_TYPES[event.action]
        if event.action == ApprovalAction.ESCALATE:
            # re-publish the still-pending claim for the higher-authority queue
            self.store.bus.publish(
                Topic.DATA_SYNC,
                {
                    "type": kind,
                    "claim_id": claim.id,
                    "escalation_level": claim.escalation_level,
                },
            )
            title = "Expense claim escalated"
            message = f"Your {claim.category} claim of {claim.currency} {claim.amount} was escalated for review."
        elif event.action == ApprovalAction.APPROVE:
            title = "Expense claim approved"
            message = f"Your {claim.category} claim of {claim.currency} {claim.amount} was approved."
        else:
            title = "Expense claim rejected"
            message = f"Your {claim.category} claim of {claim.currency} {claim.amount} was rejected: {event.reason}"

        notification = Notification(
            recipient_id=claim.employee_id,
            kind=kind,
            title=title,
            message=message,
            claim_id=claim.id,
            data={"actor_role": event.actor_role.value, "actor_id": event.actor_id},
        )
        await deliver(self.notifier, notification)
        self.store.bus.publish(
            Topic.NOTIFICATION_CHANGED,
            {"type": kind, "claim_id": claim.id, "recipient_id": claim.employee_id},
        )
