"""
Composition root for the claims engine.

``ClaimsEngine`` wires one store, bus, workflow and analytics layer
together. Nothing here is a module-level singleton: every engine (and every
test) owns its own instances.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from .analytics.aggregator import AnalyticsAggregator
from .claims.fraud import FraudScorer
from .claims.schema import Attachment, Role, utcnow
from .integrations.attachments import AttachmentStorage, LocalAttachmentStorage
from .integrations.notifications import InMemoryNotificationSink, NotificationSink
from .storage.claim_store import ClaimStore, RefreshResult
from .storage.event_bus import EventBus
from .storage.persistence import InMemoryPersistenceAdapter, PersistenceAdapter
from .storage.sqlite_adapter import SQLitePersistenceAdapter
from .utils.config import Settings, get_settings
from .views import surfaces
from .views.coordinator import Submission, ViewRefreshCoordinator, submit_claim
from .workflow.approval import ApprovalWorkflow

logger = logging.getLogger(__name__)


class ClaimsEngine:
    """
    Everything a surface needs, built around one claim store.

    Usage:
        engine = build_engine(in_memory=True)
        await engine.start()
        submission = await engine.submit({...})
        await engine.workflow.approve(submission.claim.id, "manager", actor_id="MGR-1")
        engine.analytics.department_summary()
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        scorer: Optional[FraudScorer] = None,
        notifier: Optional[NotificationSink] = None,
        attachments: Optional[AttachmentStorage] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.adapter = adapter
        self.bus = bus or EventBus()
        self.scorer = scorer or FraudScorer.from_settings(self.settings)
        self.store = ClaimStore(adapter, self.bus, self.settings, self.scorer, clock)
        self.notifier = notifier if notifier is not None else InMemoryNotificationSink()
        self.attachments = attachments or LocalAttachmentStorage(
            self.settings.attachments_dir, self.settings.public_base_url
        )
        self.workflow = ApprovalWorkflow(self.store, self.notifier)
        self.analytics = AnalyticsAggregator(self.store, self.settings, self.scorer)

    async def start(self) -> RefreshResult:
        """Load the user directory and the initial claim set."""
        await self.store.load_users()
        result = await self.store.refresh()
        logger.info(
            f"✅ Claims engine ready: {len(self.store)} claim(s), {len(self.store.users)} user(s)"
            + (" (stale)" if result.stale else "")
        )
        return result

    async def submit(self, claim_input, views: Iterable[ViewRefreshCoordinator] = ()) -> Submission:
        return await submit_claim(self.store, claim_input, views)

    async def attach_receipt(
        self,
        content: bytes,
        filename: str,
        owner_id: str,
        claim_id: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        """Upload a receipt; the returned reference goes into a claim's attachments."""
        return await self.attachments.upload(content, filename, owner_id, claim_id, content_type)

    # =========================================================================
    # Surfaces
    # =========================================================================

    def employee_dashboard(self, employee_id: str) -> ViewRefreshCoordinator:
        return surfaces.employee_dashboard(self.store, employee_id)

    def approval_queue(self, role=Role.MANAGER) -> ViewRefreshCoordinator:
        return surfaces.approval_queue(self.workflow, role)

    def hr_analytics(self, periods: int = 6) -> ViewRefreshCoordinator:
        return surfaces.hr_analytics(self.analytics, periods)

    def fraud_panel(self, min_score: int = 0) -> ViewRefreshCoordinator:
        return surfaces.fraud_panel(self.analytics, min_score)

    def notification_center(self, recipient_id: str) -> ViewRefreshCoordinator:
        if not isinstance(self.notifier, InMemoryNotificationSink):
            raise TypeError("The notification center needs an InMemoryNotificationSink")
        return surfaces.notification_center(self.store, self.notifier, recipient_id)


def build_engine(
    settings: Optional[Settings] = None,
    adapter: Optional[PersistenceAdapter] = None,
    in_memory: bool = False,
    extended_rules: bool = False,
    **kwargs,
) -> ClaimsEngine:
    """
    Build an engine with default collaborators.

    Args:
        settings: Settings to use (defaults to the cached environment settings)
        adapter: Persistence adapter (defaults to SQLite at ``settings.database_path``)
        in_memory: Use a process-local adapter instead of SQLite
        extended_rules: Also score with the round-amount/old-expense/vague-description rules
        **kwargs: Passed through to ClaimsEngine (bus, notifier, attachments, clock)
    """
    settings = settings or get_settings()
    if adapter is None:
        if in_memory:
            adapter = InMemoryPersistenceAdapter()
        else:
            adapter = SQLitePersistenceAdapter(settings.database_path)
    scorer = kwargs.pop("scorer", None) or FraudScorer.from_settings(settings, extended=extended_rules)
    return ClaimsEngine(adapter, settings=settings, scorer=scorer, **kwargs)
