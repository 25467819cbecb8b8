"""
Database Layer for the Certificate Registry

Provides:
- ReadModelStore abstraction (InMemory for dev, Postgres for prod)
- Projection rules that turn ledger events into read-model rows
- Read model settings

The PostgreSQL store lives in db.postgres and is imported on demand.
"""

from .store import (
    ReadModelStore,
    InMemoryReadModelStore,
    ApplyContext,
    AppliedEvent,
    LoginSession,
    SessionStatus,
    OpenRequestExists,
    StoreError,
    StoreStats,
    TransactionClosedError,
)
from .projections import Projector
from .config import ReadModelDriver, ReadModelSettings

__all__ = [
    "ReadModelStore",
    "InMemoryReadModelStore",
    "ApplyContext",
    "AppliedEvent",
    "LoginSession",
    "SessionStatus",
    "OpenRequestExists",
    "StoreError",
    "StoreStats",
    "TransactionClosedError",
    "Projector",
    "ReadModelDriver",
    "ReadModelSettings",
]
