"""
Storage layer for the mastery engine.

- store: MasteryStore interface, table names, schema parsing, errors
- memory: InMemoryStore (tests, throwaway sessions)
- sql_store: SqlAlchemyStore (local SQLite file via aiosqlite)
"""

from dsamaster.db.memory import InMemoryStore
from dsamaster.db.store import (
    ATTEMPTS,
    MASTERY_HISTORY,
    MASTERY_SCORES,
    MASTERY_TABLES,
    MISTAKE_BANK_ITEMS,
    DuplicateKeyError,
    MasteryStore,
    MissingIndexError,
    RecordNotFoundError,
    StorageError,
    StoreView,
    TransactionScopeError,
    UnknownTableError,
)

__all__ = [
    "ATTEMPTS",
    "MASTERY_HISTORY",
    "MASTERY_SCORES",
    "MASTERY_TABLES",
    "MISTAKE_BANK_ITEMS",
    "DuplicateKeyError",
    "InMemoryStore",
    "MasteryStore",
    "MissingIndexError",
    "RecordNotFoundError",
    "StorageError",
    "StoreView",
    "TransactionScopeError",
    "UnknownTableError",
]
