"""
Storage interface consumed by the mastery engine.

The engine sees the persistent store as a handful of indexed tables of
plain dict records. Any backend that satisfies ``MasteryStore`` can be
passed to the orchestrator; ``InMemoryStore`` and ``SqlAlchemyStore`` ship
with the package.

Schema strings follow the Dexie convention: primary key first, then the
indexed fields. ``*field`` marks a multi-entry index over a list field and
``[a+b]`` a compound index.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol

# Table names
ATTEMPTS = "attempts"
MASTERY_SCORES = "mastery_scores"
MASTERY_HISTORY = "mastery_history"
MISTAKE_BANK_ITEMS = "mistake_bank_items"

# Tables touched by one mastery update (attempts are read inside the same unit)
MASTERY_TABLES = (ATTEMPTS, MASTERY_SCORES, MASTERY_HISTORY, MISTAKE_BANK_ITEMS)

MASTERY_COMPOUND_INDEX = "[course_id+topic_tag]"

DEFAULT_SCHEMA: dict[str, str] = {
    ATTEMPTS: "attempt_id, session_id, question_id, course_id, *topic_tags, timestamp",
    MASTERY_SCORES: f"mastery_id, course_id, topic_tag, status, {MASTERY_COMPOUND_INDEX}",
    MASTERY_HISTORY: "history_id, mastery_id, recorded_at",
    MISTAKE_BANK_ITEMS: "mistake_id, course_id, question_id, *topic_tags",
}


# =============================================================================
# Errors
# =============================================================================


class StorageError(Exception):
    """Base class for every failure raised by a store backend."""


class UnknownTableError(StorageError):
    """Raised when a table name is not part of the store schema."""


class DuplicateKeyError(StorageError):
    """Raised by add() when the primary key already exists."""


class RecordNotFoundError(StorageError):
    """Raised by update() when no record has the given key."""


class MissingIndexError(StorageError):
    """Raised by query() for a field the table does not index."""


class TransactionScopeError(StorageError):
    """Raised when a transaction touches a table it did not lock."""


# =============================================================================
# Schema
# =============================================================================


@dataclass(frozen=True)
class TableSchema:
    """Parsed schema of one table."""

    name: str
    primary_key: str
    indexes: frozenset[str] = field(default_factory=frozenset)
    multi_entry: frozenset[str] = field(default_factory=frozenset)
    compound: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def parse(cls, name: str, spec: str) -> TableSchema:
        """
        Parse a Dexie-style schema string.

        Example:
            "attempt_id, course_id, *topic_tags, [course_id+topic_tag]"
        """
        parts = [part.strip() for part in spec.split(",") if part.strip()]
        if not parts:
            raise ValueError(f"Empty schema for table {name}")

        primary_key, *index_specs = parts
        indexes: set[str] = set()
        multi_entry: set[str] = set()
        compound: dict[str, tuple[str, ...]] = {}

        for index in index_specs:
            if index.startswith("[") and index.endswith("]"):
                compound[index] = tuple(index[1:-1].split("+"))
            elif index.startswith("*"):
                multi_entry.add(index[1:])
            else:
                indexes.add(index)

        return cls(
            name=name,
            primary_key=primary_key,
            indexes=frozenset(indexes),
            multi_entry=frozenset(multi_entry),
            compound=compound,
        )

    def is_indexed(self, index: str) -> bool:
        return (
            index == self.primary_key
            or index in self.indexes
            or index in self.multi_entry
            or index in self.compound
        )

    def matches(self, record: dict[str, Any], index: str, value: Any) -> bool:
        """Equality match of a record against an index value."""
        if index in self.compound:
            return tuple(record.get(part) for part in self.compound[index]) == tuple(value)
        if index in self.multi_entry:
            return value in (record.get(index) or [])
        return record.get(index) == value


def parse_schema(schema: dict[str, str]) -> dict[str, TableSchema]:
    return {name: TableSchema.parse(name, spec) for name, spec in schema.items()}


# =============================================================================
# Interface
# =============================================================================


class StoreView(Protocol):
    """Read/write operations available both on a store and inside a transaction."""

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Fetch one record by primary key."""
        ...

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        """Equality lookup on an indexed field, in primary key order."""
        ...

    async def add(self, table: str, record: dict[str, Any]) -> None:
        """Insert a record; DuplicateKeyError if its primary key exists."""
        ...

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        """Merge changes into a record; RecordNotFoundError if absent."""
        ...

    async def find_mastery_score(self, course_id: str, topic_tag: str) -> dict[str, Any] | None:
        """Look up the unique mastery record for (course_id, topic_tag)."""
        ...


class MasteryStore(StoreView, Protocol):
    """A store that also supports multi-table atomic transactions."""

    def transaction(self, tables: Iterable[str]) -> AbstractAsyncContextManager[StoreView]:
        """
        Lock the given tables for an atomic read-modify-write.

        Usage:
            async with store.transaction(MASTERY_TABLES) as tx:
                existing = await tx.find_mastery_score(course_id, tag)
                ...

        Writes made through ``tx`` are committed when the block exits
        normally and discarded if it raises.
        """
        ...


class MasteryLookupMixin:
    """
    ``find_mastery_score`` on top of ``query``.

    Uses the compound index when the schema declares it and falls back to a
    course_id lookup plus filter otherwise. Callers never see the fallback.
    Subclasses provide ``query``.
    """

    async def find_mastery_score(self, course_id: str, topic_tag: str) -> dict[str, Any] | None:
        try:
            rows = await self.query(MASTERY_SCORES, MASTERY_COMPOUND_INDEX, (course_id, topic_tag))
        except MissingIndexError:
            rows = [
                row
                for row in await self.query(MASTERY_SCORES, "course_id", course_id)
                if row.get("topic_tag") == topic_tag
            ]
        return rows[0] if rows else None
