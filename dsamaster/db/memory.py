"""
In-memory implementation of the mastery store.

Tables are dicts keyed by primary key. Every table has its own asyncio lock;
a transaction acquires the locks of all its tables (in sorted order, so two
transactions can never deadlock) and snapshots them for rollback.
Stand-alone calls outside a transaction lock just the table they touch.

Records are deep-copied on the way in and out, so callers can never mutate
stored state by accident.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from loguru import logger

from dsamaster.db.store import (
    DEFAULT_SCHEMA,
    DuplicateKeyError,
    MasteryLookupMixin,
    MissingIndexError,
    RecordNotFoundError,
    StorageError,
    StoreView,
    TableSchema,
    TransactionScopeError,
    UnknownTableError,
    parse_schema,
)


class InMemoryStore(MasteryLookupMixin):
    """
    Process-local store used by tests and throwaway sessions.

    Args:
        schema: Dexie-style schema strings per table (defaults to DEFAULT_SCHEMA).
            Dropping an index from the schema makes query() on it raise
            MissingIndexError, which is how index fallbacks are exercised.
    """

    def __init__(self, schema: dict[str, str] | None = None):
        self._schemas: dict[str, TableSchema] = parse_schema(schema or DEFAULT_SCHEMA)
        self._tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in self._schemas}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._schemas}

    # ------------------------------------------------------------------
    # Public API (auto-transaction per call)
    # ------------------------------------------------------------------

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        async with self._locked([table]):
            return self._get(table, key)

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        async with self._locked([table]):
            return self._query(table, index, value)

    async def add(self, table: str, record: dict[str, Any]) -> None:
        async with self._locked([table]):
            self._add(table, record)

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        async with self._locked([table]):
            self._update(table, key, changes)

    @asynccontextmanager
    async def transaction(self, tables: Iterable[str]) -> AsyncGenerator[StoreView, None]:
        """Lock tables, yield a transactional view, roll back on error."""
        names = sorted(set(tables))
        async with self._locked(names):
            snapshot = {name: copy.deepcopy(self._tables[name]) for name in names}
            tx = _MemoryTransaction(self, frozenset(names))
            try:
                yield tx
            except BaseException:
                for name, rows in snapshot.items():
                    self._tables[name] = rows
                logger.debug(f"Rolled back in-memory transaction on {', '.join(names)}")
                raise
            finally:
                tx.closed = True

    def count(self, table: str) -> int:
        """Number of records in a table."""
        return len(self._table(table))

    # ------------------------------------------------------------------
    # Internals (caller holds the table lock)
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, tables: list[str]) -> AsyncGenerator[None, None]:
        locks = [self._lock(name) for name in sorted(tables)]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _lock(self, table: str) -> asyncio.Lock:
        if table not in self._locks:
            raise UnknownTableError(f"Unknown table: {table}")
        return self._locks[table]

    def _schema(self, table: str) -> TableSchema:
        if table not in self._schemas:
            raise UnknownTableError(f"Unknown table: {table}")
        return self._schemas[table]

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        self._schema(table)
        return self._tables[table]

    def _get(self, table: str, key: str) -> dict[str, Any] | None:
        row = self._table(table).get(key)
        return copy.deepcopy(row) if row is not None else None

    def _query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        schema = self._schema(table)
        if not schema.is_indexed(index):
            raise MissingIndexError(f"Table {table} has no index on {index}")
        rows = self._tables[table]
        return [
            copy.deepcopy(rows[key])
            for key in sorted(rows)
            if schema.matches(rows[key], index, value)
        ]

    def _add(self, table: str, record: dict[str, Any]) -> None:
        schema = self._schema(table)
        key = record.get(schema.primary_key)
        if key is None:
            raise StorageError(f"Record for {table} is missing primary key {schema.primary_key}")
        rows = self._tables[table]
        if key in rows:
            raise DuplicateKeyError(f"{table} already contains {schema.primary_key}={key}")
        rows[key] = copy.deepcopy(record)

    def _update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        schema = self._schema(table)
        rows = self._tables[table]
        if key not in rows:
            raise RecordNotFoundError(f"{table} has no record with {schema.primary_key}={key}")
        if schema.primary_key in changes and changes[schema.primary_key] != key:
            raise StorageError(f"Cannot change primary key of {table} record {key}")
        rows[key].update(copy.deepcopy(changes))


class _MemoryTransaction(MasteryLookupMixin):
    """View over an InMemoryStore whose table locks are already held."""

    def __init__(self, store: InMemoryStore, tables: frozenset[str]):
        self._store = store
        self._tables = tables
        self.closed = False

    def _check(self, table: str) -> None:
        if self.closed:
            raise StorageError("Transaction already finished")
        if table not in self._tables:
            raise TransactionScopeError(
                f"Table {table} is not part of this transaction ({', '.join(sorted(self._tables))})"
            )

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        self._check(table)
        return self._store._get(table, key)

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        self._check(table)
        return self._store._query(table, index, value)

    async def add(self, table: str, record: dict[str, Any]) -> None:
        self._check(table)
        self._store._add(table, record)

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        self._check(table)
        self._store._update(table, key, changes)
