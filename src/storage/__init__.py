"""
Storage module for claims.

Provides:
- The session claim store (in-memory cache, publishes invalidation events)
- The event bus carrying those events to views
- Persistence adapters (in-memory and SQLite)
"""

from .claim_store import ClaimStore, RefreshResult, StoreSnapshot
from .event_bus import EventBus, Subscription, Topic
from .persistence import ClaimFilter, InMemoryPersistenceAdapter, PersistenceAdapter
from .sqlite_adapter import SQLitePersistenceAdapter

__all__ = [
    "ClaimStore",
    "RefreshResult",
    "StoreSnapshot",
    "EventBus",
    "Subscription",
    "Topic",
    "ClaimFilter",
    "InMemoryPersistenceAdapter",
    "PersistenceAdapter",
    "SQLitePersistenceAdapter",
]
