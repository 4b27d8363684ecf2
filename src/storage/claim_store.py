"""
In-memory claim store for the current session.

The store owns the authoritative set of claims the views read from. Writes
go through the persistence adapter first; only once the adapter call has
settled is the cache updated and exactly one ``claims-changed`` event
published, so subscribers never see a state the backend does not hold.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..claims.errors import ClaimNotFoundError, ClaimsError, ClaimValidationError, UpstreamError
from ..claims.fraud import FraudScorer
from ..claims.schema import (
    Claim,
    ClaimInput,
    ClaimStatus,
    User,
    apply_patch,
    compute_tax,
    utcnow,
)
from ..utils.config import Settings, get_settings
from ..utils.timeouts import consume_result, race_with_timeout
from .event_bus import EventBus, Topic
from .persistence import ClaimFilter, PersistenceAdapter

logger = logging.getLogger(__name__)

# Fields a patch may not touch
IMMUTABLE_FIELDS = frozenset({"id", "version", "submitted_at", "is_flagged", "risk_threshold"})

# Changing any of these re-runs the fraud heuristic
RESCORE_FIELDS = frozenset({
    "amount", "tax_amount", "category", "expense_date", "employee_id", "risk_signals", "description",
})


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store at one version."""
    version: int
    claims: Tuple[Claim, ...]
    taken_at: datetime


@dataclass
class RefreshResult:
    """Outcome of pulling claims from the backend."""
    claims: List[Claim]
    stale: bool
    error: Optional[UpstreamError] = None


class ClaimStore:
    """
    Session cache of claims backed by a persistence adapter.

    Usage:
        store = ClaimStore(adapter, bus)

        # Submit
        claim = await store.create({"employee_id": "EMP-1", "amount": "450", ...})

        # Read (synchronous, from the cache)
        store.get(claim.id)
        store.list_by_filter(department="Sales", status="pending")

        # Pull the latest backend state
        result = await store.refresh()
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        scorer: Optional[FraudScorer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.adapter = adapter
        self.bus = bus or EventBus()
        self.settings = settings or get_settings()
        self.scorer = scorer or FraudScorer.from_settings(self.settings)
        self._clock = clock
        self._claims: Dict[str, Claim] = {}
        self._users: Dict[str, User] = {}
        # claims whose last write timed out but may still land
        self._in_flight: Set[str] = set()
        self.version = 0
        self.last_refreshed_at: Optional[datetime] = None

    def now(self) -> datetime:
        return self._clock()

    def _generate_claim_id(self) -> str:
        """Generate a unique claim ID."""
        timestamp = self._clock().strftime("%Y%m%d%H%M%S")
        return f"CLM-{timestamp}-{uuid.uuid4().hex[:6].upper()}"

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, claim_id: str) -> Optional[Claim]:
        """Retrieve a cached claim, or None if unknown."""
        return self._claims.get(claim_id)

    def require(self, claim_id: str) -> Claim:
        """Retrieve a cached claim or raise ClaimNotFoundError."""
        claim = self._claims.get(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        return claim

    def list_by_employee(self, employee_id: str) -> List[Claim]:
        return [claim for claim in self._claims.values() if claim.employee_id == employee_id]

    def list_by_filter(
        self,
        department: Optional[str] = None,
        status: Optional[Union[ClaimStatus, str]] = None,
        category: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> List[Claim]:
        """List cached claims matching every given criterion."""
        try:
            claim_filter = ClaimFilter(
                department=department,
                status=status,
                category=category,
                employee_id=employee_id,
            )
        except PydanticValidationError as exc:
            raise ClaimValidationError(_describe_errors(exc)) from exc
        return [claim for claim in self._claims.values() if claim_filter.matches(claim)]

    def snapshot(self) -> StoreSnapshot:
        """Point-in-time copy of the store, ordered by submission time."""
        claims = tuple(sorted(self._claims.values(), key=lambda c: (c.submitted_at, c.id)))
        return StoreSnapshot(version=self.version, claims=claims, taken_at=self._clock())

    def write_in_flight(self, claim_id: str) -> bool:
        """True while a timed-out write to this claim may still land."""
        return claim_id in self._in_flight

    def __len__(self) -> int:
        return len(self._claims)

    def user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    @property
    def users(self) -> List[User]:
        return list(self._users.values())

    # =========================================================================
    # Backend reads
    # =========================================================================

    async def refresh(self, claim_filter: Optional[ClaimFilter] = None) -> RefreshResult:
        """
        Pull claims from the backend into the cache.

        On an upstream failure or timeout the last good snapshot is kept and
        returned with ``stale=True``. A response that arrives after the
        timeout is still merged and announced.
        """
        claim_filter = claim_filter or ClaimFilter()
        try:
            claims = await self._call(
                "fetch_claims",
                lambda: self.adapter.fetch_claims(claim_filter),
                self.settings.fetch_timeout_seconds,
                on_late=lambda fetched: self._merge_fetched(fetched, claim_filter, announce=True),
            )
        except UpstreamError as exc:
            logger.warning(f"Refresh failed, serving last known claims: {exc}")
            cached = [claim for claim in self._claims.values() if claim_filter.matches(claim)]
            return RefreshResult(claims=cached, stale=True, error=exc)

        self._merge_fetched(claims, claim_filter, announce=False)
        return RefreshResult(claims=list(claims), stale=False)

    async def load_users(self) -> List[User]:
        """Load the user directory, keeping the cached one on failure."""
        try:
            users = await self._call(
                "fetch_users",
                self.adapter.fetch_users,
                self.settings.fetch_timeout_seconds,
                on_late=self._replace_users,
            )
        except UpstreamError as exc:
            logger.warning(f"User directory unavailable, using cached entries: {exc}")
            return self.users
        self._replace_users(users)
        return self.users

    def _replace_users(self, users: List[User]) -> None:
        self._users = {user.id: user for user in users}

    def _merge_fetched(self, claims: List[Claim], claim_filter: ClaimFilter, announce: bool) -> None:
        fetched = {claim.id: claim for claim in claims}
        changed = False

        for claim_id in [cid for cid, c in self._claims.items() if claim_filter.matches(c)]:
            if claim_id not in fetched:
                del self._claims[claim_id]
                changed = True

        for claim_id, claim in fetched.items():
            cached = self._claims.get(claim_id)
            # a fetch that started before a local write must not regress it
            if cached is not None and cached.version > claim.version:
                continue
            if cached != claim:
                self._claims[claim_id] = claim
                changed = True

        self.last_refreshed_at = self._clock()
        if changed:
            self.version += 1
            logger.info(f"Merged {len(fetched)} claim(s) from backend (store version {self.version})")
            if announce:
                self.bus.publish(Topic.CLAIMS_CHANGED, {"type": "claims_refreshed", "version": self.version})

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, claim_input: Union[ClaimInput, Dict[str, Any]]) -> Claim:
        """
        Validate, score and persist a new claim.

        Raises:
            ClaimValidationError: listing every violated field
            UpstreamError: the backend failed or timed out (retryable)
        """
        parsed, violations = self._parse_input(claim_input)
        if violations:
            raise ClaimValidationError(violations)

        claim = self._build_claim(parsed)
        assessment = self.scorer.score(claim, self.snapshot().claims)
        claim = apply_patch(claim, {"risk_score": assessment.risk_score, "flags": assessment.flags})

        stored = await self._call(
            "create_claim",
            lambda: self.adapter.create_claim(claim),
            self.settings.submit_timeout_seconds,
            on_late=lambda late: self._commit(late, "claim_submitted", late=True),
            key=claim.id,
        )
        self._commit(stored, "claim_submitted")
        if stored.is_flagged:
            logger.warning(f"Claim {stored.id} flagged (score {stored.risk_score}): {', '.join(stored.flags)}")
        return stored

    async def update(
        self,
        claim_id: str,
        patch: Dict[str, Any],
        change_type: str = "claim_updated",
    ) -> Claim:
        """
        Merge ``patch`` onto a claim, persist it and announce the change.

        Raises:
            ClaimNotFoundError: unknown id
            ClaimValidationError: the patch names unknown or read-only fields, or
                produces an invalid claim
            UpstreamError: the backend failed or timed out, or an earlier
                write to the claim has not settled yet (retryable)
        """
        current = self.require(claim_id)
        self._ensure_settled("update_claim", claim_id)
        patch = self._prepare_patch(current, patch)

        try:
            candidate = apply_patch(current, patch, tax_rate=self.settings.tax_rate)
        except PydanticValidationError as exc:
            raise ClaimValidationError(_describe_errors(exc)) from exc

        if RESCORE_FIELDS & set(patch):
            peers = [c for c in self._claims.values() if c.id != claim_id]
            assessment = self.scorer.score(candidate, peers)
            patch["risk_score"] = assessment.risk_score
            patch["flags"] = assessment.flags

        stored = await self._call(
            "update_claim",
            lambda: self.adapter.update_claim(claim_id, patch),
            self.settings.submit_timeout_seconds,
            on_late=lambda late: self._commit(late, change_type, late=True),
            key=claim_id,
        )
        self._commit(stored, change_type)
        return stored

    async def remove(self, claim_id: str) -> None:
        """Delete a claim from the backend, then from the cache."""
        self.require(claim_id)
        self._ensure_settled("delete_claim", claim_id)
        await self._call(
            "delete_claim",
            lambda: self.adapter.delete_claim(claim_id),
            self.settings.submit_timeout_seconds,
            on_late=lambda _: self._forget(claim_id),
            key=claim_id,
        )
        self._forget(claim_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _parse_input(self, claim_input) -> Tuple[ClaimInput, List[str]]:
        if isinstance(claim_input, ClaimInput):
            return claim_input, claim_input.violations()

        data = dict(claim_input)
        try:
            parsed = ClaimInput.model_validate(data)
            return parsed, parsed.violations()
        except PydanticValidationError as exc:
            problems = _describe_errors(exc)
            bad_fields = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}

        cleaned = {key: value for key, value in data.items() if key not in bad_fields}
        parsed = ClaimInput.model_validate(cleaned)
        problems.extend(
            v for v in parsed.violations() if v.split(":", 1)[0] not in bad_fields
        )
        return parsed, problems

    def _build_claim(self, parsed: ClaimInput) -> Claim:
        now = self._clock()
        user = self._users.get(parsed.employee_id or "")
        data = {
            "id": self._generate_claim_id(),
            "employee_id": parsed.employee_id.strip(),
            "employee_name": parsed.employee_name or (user.name if user else ""),
            "department": parsed.department or (user.department if user else "Unknown"),
            "amount": Decimal(parsed.amount),
            "currency": parsed.currency or self.settings.default_currency,
            "category": parsed.category,
            "description": parsed.description.strip(),
            "vendor": parsed.vendor or "",
            "payment_method": parsed.payment_method,
            "expense_date": parsed.expense_date or now.date(),
            "submitted_at": now,
            "updated_at": now,
            "attachments": tuple(parsed.attachments),
            "status": ClaimStatus.DRAFT if parsed.draft else ClaimStatus.PENDING,
            "risk_signals": tuple(parsed.risk_signals),
            "risk_threshold": self.scorer.threshold,
            "notes": parsed.notes,
        }
        if parsed.tax_amount is not None:
            data["tax_amount"] = parsed.tax_amount

        # without an override the tax is derived at the configured rate
        return Claim.model_validate(data, context={"tax_rate": self.settings.tax_rate})

    def _prepare_patch(self, current: Claim, patch: Dict[str, Any]) -> Dict[str, Any]:
        patch = dict(patch)
        problems = []
        for key in patch:
            if key in IMMUTABLE_FIELDS:
                problems.append(f"{key}: is read-only")
            elif key not in Claim.model_fields:
                problems.append(f"{key}: unknown field")
        if problems:
            raise ClaimValidationError(problems)

        if "tax_amount" in patch:
            patch.setdefault("tax_overridden", True)
        elif "amount" in patch and not current.tax_overridden:
            try:
                patch["tax_amount"] = compute_tax(Decimal(str(patch["amount"])), self.settings.tax_rate)
            except ArithmeticError as exc:
                raise ClaimValidationError(["amount: must be a decimal number"]) from exc

        patch["updated_at"] = self._clock()
        patch["version"] = current.version + 1
        return patch

    def _ensure_settled(self, operation: str, claim_id: str) -> None:
        if claim_id in self._in_flight:
            raise UpstreamError(operation, f"an earlier write to claim {claim_id} has not settled yet")

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        timeout: float,
        on_late: Optional[Callable[[Any], None]] = None,
        key: Optional[str] = None,
    ) -> Any:
        """
        Run one adapter call under a timeout, translating failures to UpstreamError.

        A call that times out keeps running; ``key`` is marked in flight until
        it settles and ``on_late`` receives its result if it succeeds.
        """
        try:
            result = await race_with_timeout(call(), timeout)
        except ClaimsError:
            raise
        except Exception as exc:
            logger.warning(f"Upstream {operation} failed: {exc!r}")
            raise UpstreamError(operation, str(exc)) from exc

        if result.timed_out:
            logger.warning(f"Upstream {operation} timed out after {timeout}s")
            if key is not None:
                self._in_flight.add(key)
            result.task.add_done_callback(lambda task: self._late_arrival(operation, task, on_late, key))
            raise UpstreamError(operation, f"no response within {timeout}s", timed_out=True)
        return result.value

    def _late_arrival(
        self,
        operation: str,
        task,
        on_late: Optional[Callable[[Any], None]],
        key: Optional[str] = None,
    ) -> None:
        self._in_flight.discard(key)
        error = consume_result(task)
        if task.cancelled() or error is not None:
            logger.warning(f"Late {operation} response failed: {error!r}")
            return
        logger.info(f"Late {operation} response arrived, applying it")
        if on_late is not None:
            on_late(task.result())

    def _commit(self, claim: Claim, change_type: str, late: bool = False) -> None:
        cached = self._claims.get(claim.id)
        if cached is not None and (cached.version > claim.version or (late and cached.version == claim.version)):
            logger.debug(f"Ignoring stale write for {claim.id} (v{claim.version}, cached v{cached.version})")
            return
        self._claims[claim.id] = claim
        self.version += 1
        logger.info(f"Claim {claim.id} {change_type} (status {claim.status.value}, store version {self.version})")
        self.bus.publish(
            Topic.CLAIMS_CHANGED,
            {
                "type": change_type,
                "claim_id": claim.id,
                "status": claim.status.value,
                "version": self.version,
            },
        )

    def _forget(self, claim_id: str) -> None:
        if self._claims.pop(claim_id, None) is None:
            return
        self.version += 1
        logger.info(f"Claim {claim_id} removed (store version {self.version})")
        self.bus.publish(
            Topic.CLAIMS_CHANGED,
            {"type": "claim_deleted", "claim_id": claim_id, "version": self.version},
        )


def _describe_errors(exc: PydanticValidationError) -> List[str]:
    """Flatten pydantic errors into ``field: message`` strings."""
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "claim"
        problems.append(f"{field}: {err['msg']}")
    return problems
