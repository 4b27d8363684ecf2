"""
Shared fixtures for the claims engine tests.

Every test builds its own bus, adapter and store, so no state leaks between
tests. Time is driven by a FixedClock starting on Wednesday 2025-01-15.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.claims.fraud import FraudScorer
from src.claims.schema import Attachment, Claim, ClaimStatus
from src.storage.claim_store import ClaimStore
from src.storage.event_bus import EventBus
from src.storage.persistence import InMemoryPersistenceAdapter
from src.utils.config import Settings


# Setup logging for tests
logging.basicConfig(level=logging.INFO)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_settings(**overrides) -> Settings:
    """Settings that ignore the developer's .env file."""
    return Settings(_env_file=None, **overrides)


def receipt(attachment_id: str = "ATT-1") -> dict:
    return {
        "id": attachment_id,
        "url": f"http://localhost:8000/receipts/{attachment_id}.jpg",
        "path": f"EMP-1/{attachment_id}.jpg",
        "filename": "receipt.jpg",
        "size": 2048,
        "content_type": "image/jpeg",
    }


def claim_input(**overrides) -> dict:
    """A valid submission; override any field."""
    data = {
        "employee_id": "EMP-1",
        "employee_name": "Thandi Nkosi",
        "department": "Sales",
        "amount": "450",
        "category": "Fuel & Vehicle",
        "description": "Fuel for client visit to Durban",
        "vendor": "Engen",
        "expense_date": "2025-01-10",
        "attachments": [receipt()],
    }
    data.update(overrides)
    return data


def make_claim(claim_id: str, **overrides) -> Claim:
    """A stored claim built directly, bypassing the store."""
    data = {
        "id": claim_id,
        "employee_id": "EMP-1",
        "employee_name": "Thandi Nkosi",
        "department": "Sales",
        "amount": Decimal("100"),
        "category": "Fuel & Vehicle",
        "description": "Fuel for client visit",
        "expense_date": date(2025, 1, 10),
        "submitted_at": datetime(2025, 1, 13, 9, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 13, 9, 0, tzinfo=timezone.utc),
        "attachments": (Attachment(**receipt()),),
        "status": ClaimStatus.PENDING,
    }
    data.update(overrides)
    return Claim(**data)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def adapter():
    return InMemoryPersistenceAdapter()


@pytest.fixture
def store(adapter, bus, settings, clock):
    return ClaimStore(adapter, bus, settings, FraudScorer.from_settings(settings), clock)
