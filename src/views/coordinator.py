"""
View refresh coordination.

A ``ViewRefreshCoordinator`` keeps one surface (dashboard, queue, panel)
current: it subscribes to the bus topics the surface cares about while
mounted, re-runs its loader when one fires, bounds every load with
``race_with_timeout`` and falls back to the last good data marked stale when
the backend is slow or failing.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

from ..claims.errors import UpstreamError
from ..claims.schema import Claim, utcnow
from ..storage.claim_store import ClaimStore
from ..storage.event_bus import EventBus, Subscription, Topic
from ..utils.timeouts import consume_result, race_with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TOPICS = (Topic.CLAIMS_CHANGED, Topic.DATA_SYNC)


@dataclass(frozen=True)
class ViewState(Generic[T]):
    """What a surface renders: its data and whether that data is stale."""
    data: Optional[T] = None
    stale: bool = False
    error: Optional[str] = None
    refreshed_at: Optional[datetime] = None
    loads: int = 0


class ViewRefreshCoordinator(Generic[T]):
    """
    Subscribe-refresh-fallback loop for one surface.

    Usage:
        view = ViewRefreshCoordinator("approval-queue", bus, loader=load_queue, timeout=5)
        await view.mount()       # subscribes and loads
        view.state.data          # rendered data
        view.unmount()           # no listeners left behind
    """

    def __init__(
        self,
        name: str,
        bus: EventBus,
        loader: Callable[[], Awaitable[T]],
        topics: Sequence[Topic] = DEFAULT_TOPICS,
        timeout: float = 5.0,
        fallback: Optional[Callable[[], T]] = None,
        on_update: Optional[Callable[[ViewState], Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.bus = bus
        self.loader = loader
        self.topics = tuple(Topic(t) for t in topics)
        self.timeout = timeout
        self.fallback = fallback
        self.on_update = on_update
        self._clock = clock
        self.state: ViewState = ViewState()
        self._subscriptions: List[Subscription] = []
        self._running = False
        self._rerun = False

    @property
    def mounted(self) -> bool:
        return bool(self._subscriptions)

    async def mount(self) -> ViewState:
        """Subscribe to this view's topics and run the initial load."""
        if not self.mounted:
            self._subscriptions = [self.bus.subscribe(topic, self._on_event) for topic in self.topics]
            logger.debug(f"View {self.name} mounted on {[t.value for t in self.topics]}")
        return await self.refresh()

    def unmount(self) -> None:
        """Drop every subscription held by this view."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        logger.debug(f"View {self.name} unmounted")

    def _on_event(self, detail=None) -> Optional[Awaitable[ViewState]]:
        if not self.mounted:
            return None
        if self._running:
            # fold into the refresh already under way
            self._rerun = True
            return None
        return self.refresh()

    async def refresh(self) -> ViewState:
        """
        Reload the view.

        Calls made while a load is running do not start a second one; the
        running load goes around once more instead.
        """
        if self._running:
            self._rerun = True
            return self.state

        self._running = True
        try:
            while True:
                self._rerun = False
                await self._load_once()
                if not self._rerun:
                    break
        finally:
            self._running = False
        return self.state

    async def _load_once(self) -> None:
        try:
            result = await race_with_timeout(self.loader(), self.timeout)
        except UpstreamError as exc:
            self._go_stale(exc)
            return

        if result.timed_out:
            result.task.add_done_callback(consume_result)
            self._go_stale(UpstreamError(f"load {self.name}", f"no response within {self.timeout}s", timed_out=True))
            return

        self._set_state(
            ViewState(
                data=result.value,
                stale=False,
                refreshed_at=self._clock(),
                loads=self.state.loads + 1,
            )
        )

    def _go_stale(self, exc: UpstreamError) -> None:
        logger.warning(f"View {self.name} showing last known data: {exc}")
        data = self.state.data
        if data is None and self.fallback is not None:
            data = self.fallback()
        self._set_state(replace(self.state, data=data, stale=True, error=str(exc), loads=self.state.loads + 1))

    def _set_state(self, state: ViewState) -> None:
        self.state = state
        if self.on_update is not None:
            self.on_update(state)


# ============================================================================
# Submission
# ============================================================================


@dataclass
class Submission:
    """A created claim plus the pending data-sync re-broadcasts."""
    claim: Claim
    rebroadcasts: "asyncio.Task[int]"
    refreshed: List[ViewState] = field(default_factory=list)

    async def settled(self) -> int:
        """Wait for the re-broadcasts; returns how many were sent."""
        return await self.rebroadcasts


async def _rebroadcast(bus: EventBus, claim: Claim, delays: Iterable[float]) -> int:
    sent = 0
    elapsed = 0.0
    for delay in sorted(delays):
        await asyncio.sleep(max(0.0, delay - elapsed))
        elapsed = delay
        sent += 1
        bus.publish(
            Topic.DATA_SYNC,
            {"type": "claim_submitted", "claim_id": claim.id, "status": claim.status.value, "attempt": sent},
        )
    return sent


async def submit_claim(
    store: ClaimStore,
    claim_input,
    views: Iterable[ViewRefreshCoordinator] = (),
    delays: Optional[Sequence[float]] = None,
) -> Submission:
    """
    Create a claim and make sure late-mounting views still catch it.

    The store publishes ``claims-changed`` once; the given views are then
    refreshed immediately, and ``data-sync`` is re-published after each
    delay for views that subscribe after that first event.

    Raises:
        ClaimValidationError: invalid input (nothing is broadcast)
        UpstreamError: the backend failed or timed out
    """
    claim = await store.create(claim_input)

    refreshed = [await view.refresh() for view in views]

    if delays is None:
        delays = store.settings.rebroadcast_delays
    task = asyncio.ensure_future(_rebroadcast(store.bus, claim, delays))
    return Submission(claim=claim, rebroadcasts=task, refreshed=refreshed)
