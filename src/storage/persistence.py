"""
Persistence adapter contract.

The claim store reaches the durable backend only through this interface.
Every method is a coroutine: calls into the adapter are the engine's
suspension points. Any exception an adapter raises is treated by the store
as a recoverable upstream failure.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel

from ..claims.errors import ClaimNotFoundError
from ..claims.schema import Claim, ClaimStatus, User, apply_patch

logger = logging.getLogger(__name__)


class ClaimFilter(BaseModel):
    """Optional equality filters over claims; unset fields match everything."""
    employee_id: Optional[str] = None
    department: Optional[str] = None
    status: Optional[ClaimStatus] = None
    category: Optional[str] = None

    def matches(self, claim: Claim) -> bool:
        if self.employee_id is not None and claim.employee_id != self.employee_id:
            return False
        if self.department is not None and claim.department != self.department:
            return False
        if self.status is not None and claim.status != self.status:
            return False
        if self.category is not None and claim.category != self.category:
            return False
        return True


class PersistenceAdapter(ABC):
    """Abstract durable claim backend."""

    @abstractmethod
    async def fetch_claims(self, claim_filter: Optional[ClaimFilter] = None) -> List[Claim]:
        """Return claims matching the filter (all claims when None)."""

    @abstractmethod
    async def create_claim(self, claim: Claim) -> Claim:
        """Persist a new claim and return the stored version."""

    @abstractmethod
    async def update_claim(self, claim_id: str, patch: dict) -> Claim:
        """Merge ``patch`` onto a stored claim and return the result."""

    @abstractmethod
    async def delete_claim(self, claim_id: str) -> None:
        """Delete a stored claim."""

    @abstractmethod
    async def fetch_users(self) -> List[User]:
        """Return the user directory."""


class InMemoryPersistenceAdapter(PersistenceAdapter):
    """
    Process-local backend with optional simulated latency and failures.

    Used by the tests and the demo. ``fail_operations`` makes the named
    operations raise ``ConnectionError``; ``latency`` delays every call and
    ``delay_once`` delays only the next call of the named operation.
    """

    def __init__(
        self,
        claims: Optional[Iterable[Claim]] = None,
        users: Optional[Iterable[User]] = None,
        latency: float = 0.0,
    ):
        self._claims: Dict[str, Claim] = {claim.id: claim for claim in claims or ()}
        self._users: List[User] = list(users or ())
        self.latency = latency
        self.fail_operations: Set[str] = set()
        self.delay_once: Dict[str, float] = {}
        self.calls: List[str] = []

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        await asyncio.sleep(self.delay_once.pop(operation, self.latency))
        if operation in self.fail_operations:
            raise ConnectionError(f"simulated {operation} failure")

    async def fetch_claims(self, claim_filter: Optional[ClaimFilter] = None) -> List[Claim]:
        await self._enter("fetch_claims")
        claim_filter = claim_filter or ClaimFilter()
        return [claim for claim in self._claims.values() if claim_filter.matches(claim)]

    async def create_claim(self, claim: Claim) -> Claim:
        await self._enter("create_claim")
        self._claims[claim.id] = claim
        return claim

    async def update_claim(self, claim_id: str, patch: dict) -> Claim:
        await self._enter("update_claim")
        if claim_id not in self._claims:
            raise ClaimNotFoundError(claim_id)
        updated = apply_patch(self._claims[claim_id], patch)
        self._claims[claim_id] = updated
        return updated

    async def delete_claim(self, claim_id: str) -> None:
        await self._enter("delete_claim")
        self._claims.pop(claim_id, None)

    async def fetch_users(self) -> List[User]:
        await self._enter("fetch_users")
        return list(self._users)

    def stored(self, claim_id: str) -> Optional[Claim]:
        """Peek at the durable copy (test helper)."""
        return self._claims.get(claim_id)
