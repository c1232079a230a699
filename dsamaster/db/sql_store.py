"""
SQLAlchemy implementation of the mastery store.

Backed by an async engine (aiosqlite for the default local SQLite file).
Each transaction is one AsyncSession committed on success and rolled back
on error. Transactions from the same process are serialized by a store-wide
lock. On SQLite every transaction opens with BEGIN IMMEDIATE (see
``dsamaster.db.database``), so a connection in another store or process
waits for the write lock before its first read.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import DateTime, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dsamaster.core.models import to_utc
from dsamaster.db.database import async_session_scope, create_engine_for, create_session_factory, init_db
from dsamaster.db.models import TABLE_MODELS, Base, MasteryScoreRow
from dsamaster.db.store import (
    DEFAULT_SCHEMA,
    MASTERY_SCORES,
    DuplicateKeyError,
    MissingIndexError,
    RecordNotFoundError,
    StorageError,
    StoreView,
    TableSchema,
    TransactionScopeError,
    UnknownTableError,
    parse_schema,
)

_SCHEMAS: dict[str, TableSchema] = parse_schema(DEFAULT_SCHEMA)


def _model(table: str) -> type[Base]:
    if table not in TABLE_MODELS:
        raise UnknownTableError(f"Unknown table: {table}")
    return TABLE_MODELS[table]


def _row_to_record(row: Base) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = to_utc(value)
        record[column.key] = value
    return record


def _record_to_columns(model: type[Base], values: dict[str, Any]) -> dict[str, Any]:
    columns = model.__table__.columns
    unknown = set(values) - set(columns.keys())
    if unknown:
        raise StorageError(f"Unknown fields for {model.__tablename__}: {', '.join(sorted(unknown))}")

    converted: dict[str, Any] = {}
    for key, value in values.items():
        if value is not None and isinstance(columns[key].type, DateTime):
            # SQLite stores naive timestamps; keep them in UTC
            value = to_utc(value).replace(tzinfo=None)
        converted[key] = value
    return converted


class _SessionOps:
    """Record operations bound to one open AsyncSession."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        row = await self._session.get(_model(table), key)
        return _row_to_record(row) if row is not None else None

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        model = _model(table)
        schema = _SCHEMAS[table]
        if not schema.is_indexed(index):
            raise MissingIndexError(f"Table {table} has no index on {index}")

        pk = getattr(model, schema.primary_key)
        stmt = select(model).order_by(pk)
        if index in schema.compound:
            for part, part_value in zip(schema.compound[index], value, strict=True):
                stmt = stmt.where(getattr(model, part) == part_value)
        elif index not in schema.multi_entry:
            stmt = stmt.where(getattr(model, index) == value)

        rows = (await self._session.scalars(stmt)).all()
        records = [_row_to_record(row) for row in rows]
        if index in schema.multi_entry:
            # JSON list columns are filtered client-side
            records = [record for record in records if value in (record.get(index) or [])]
        return records

    async def add(self, table: str, record: dict[str, Any]) -> None:
        model = _model(table)
        key = record.get(_SCHEMAS[table].primary_key)
        if key is None:
            raise StorageError(f"Record for {table} is missing primary key {_SCHEMAS[table].primary_key}")
        if await self._session.get(model, key) is not None:
            raise DuplicateKeyError(f"{table} already contains {_SCHEMAS[table].primary_key}={key}")
        self._session.add(model(**_record_to_columns(model, record)))
        await self._session.flush()

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        model = _model(table)
        row = await self._session.get(model, key)
        if row is None:
            raise RecordNotFoundError(f"{table} has no record with {_SCHEMAS[table].primary_key}={key}")
        for column, value in _record_to_columns(model, changes).items():
            setattr(row, column, value)
        await self._session.flush()

    async def find_mastery_score(self, course_id: str, topic_tag: str) -> dict[str, Any] | None:
        # The unique constraint on (course_id, topic_tag) doubles as the compound index
        stmt = select(MasteryScoreRow).where(
            MasteryScoreRow.course_id == course_id,
            MasteryScoreRow.topic_tag == topic_tag,
        )
        row = (await self._session.scalars(stmt)).first()
        return _row_to_record(row) if row is not None else None


class _SqlTransaction:
    """Transactional view restricted to the tables it was opened on."""

    def __init__(self, ops: _SessionOps, tables: frozenset[str]):
        self._ops = ops
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
        return await _guard(self._ops.get(table, key))

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        self._check(table)
        return await _guard(self._ops.query(table, index, value))

    async def add(self, table: str, record: dict[str, Any]) -> None:
        self._check(table)
        await _guard(self._ops.add(table, record))

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        self._check(table)
        await _guard(self._ops.update(table, key, changes))

    async def find_mastery_score(self, course_id: str, topic_tag: str) -> dict[str, Any] | None:
        self._check(MASTERY_SCORES)
        return await _guard(self._ops.find_mastery_score(course_id, topic_tag))


async def _guard(awaitable):
    """Await a store operation, re-raising driver errors as StorageError."""
    try:
        return await awaitable
    except SQLAlchemyError as exc:
        raise StorageError(f"Database operation failed: {exc}") from exc


class SqlAlchemyStore:
    """
    Persistent mastery store over SQLAlchemy.

    Args:
        database_url: SQLAlchemy URL; plain ``sqlite://`` URLs are switched
            to the aiosqlite driver.
        echo: Log emitted SQL (useful with DEBUG logging)

    Call ``init()`` once to create missing tables and ``dispose()`` when done.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self._engine = create_engine_for(database_url, echo=echo)
        self._factory = create_session_factory(self._engine)
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        await _guard(init_db(self._engine))
        logger.info(f"SqlAlchemyStore ready at {self.database_url}")

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def transaction(self, tables: Iterable[str]) -> AsyncGenerator[StoreView, None]:
        names = frozenset(tables)
        for name in names:
            _model(name)

        async with self._lock:
            tx: _SqlTransaction | None = None
            try:
                async with async_session_scope(self._factory) as session:
                    tx = _SqlTransaction(_SessionOps(session), names)
                    yield tx
            except SQLAlchemyError as exc:
                logger.warning(f"Transaction on {', '.join(sorted(names))} rolled back: {exc}")
                raise StorageError(f"Transaction failed: {exc}") from exc
            finally:
                if tx is not None:
                    tx.closed = True

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        async with self.transaction([table]) as tx:
            return await tx.get(table, key)

    async def query(self, table: str, index: str, value: Any) -> list[dict[str, Any]]:
        async with self.transaction([table]) as tx:
            return await tx.query(table, index, value)

    async def add(self, table: str, record: dict[str, Any]) -> None:
        async with self.transaction([table]) as tx:
            await tx.add(table, record)

    async def update(self, table: str, key: str, changes: dict[str, Any]) -> None:
        async with self.transaction([table]) as tx:
            await tx.update(table, key, changes)

    async def find_mastery_score(self, course_id: str, topic_tag: str) -> dict[str, Any] | None:
        async with self.transaction([MASTERY_SCORES]) as tx:
            return await tx.find_mastery_score(course_id, topic_tag)
