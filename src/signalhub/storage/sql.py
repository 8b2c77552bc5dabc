"""SQLAlchemy-backed Repository.

Uses the session_factory callable pattern: each operation opens its own
AsyncSession via ``async for session in self._session_factory()`` and
commits before returning. Unique-constraint violations are translated into
DuplicateRecordError so callers never see driver-specific exceptions.

Keys without a dedicated column are folded into the table's
``custom_fields`` JSON column where one exists.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import DateTime, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import JSON

from src.signalhub.core.clock import ensure_utc, parse_datetime
from src.signalhub.core.database import Base
from src.signalhub.storage.models import MODELS
from src.signalhub.storage.repository import DuplicateRecordError, Repository, RepositoryError

logger = structlog.get_logger(__name__)

CUSTOM_FIELDS = "custom_fields"


def _json_safe(value: Any) -> Any:
    """Make values storable in JSON columns."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


class SQLAlchemyRepository(Repository):
    """Repository over any async SQLAlchemy engine (asyncpg, aiosqlite).

    Args:
        session_factory: Async generator callable yielding AsyncSession,
            e.g. ``src.signalhub.core.database.get_session``.
    """

    def __init__(self, session_factory: Callable[[], AsyncGenerator[AsyncSession, None]]) -> None:
        self._session_factory = session_factory

    # ── Serialization Helpers ───────────────────────────────────────────────

    def _model(self, table: str) -> type[Base]:
        model = MODELS.get(table)
        if model is None:
            raise RepositoryError(f"unknown table: {table}")
        return model

    def _split(self, model: type[Base], fields: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split fields into column values and leftover custom fields."""
        columns = model.__table__.columns
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in fields.items():
            if key in columns and key != CUSTOM_FIELDS:
                column_type = columns[key].type
                if isinstance(column_type, DateTime):
                    value = parse_datetime(value)
                elif isinstance(column_type, JSON):
                    value = _json_safe(value)
                values[key] = value
            else:
                extra[key] = _json_safe(value)

        if extra and CUSTOM_FIELDS not in columns:
            raise RepositoryError(f"{model.__tablename__} has no columns {sorted(extra)}")
        if CUSTOM_FIELDS in fields:
            extra = {**_json_safe(fields[CUSTOM_FIELDS] or {}), **extra}
        return values, extra

    def _to_dict(self, row: Base) -> dict[str, Any]:
        record: dict[str, Any] = {}
        custom: dict[str, Any] = {}
        for column in row.__table__.columns:
            value = getattr(row, column.key)
            if column.key == CUSTOM_FIELDS:
                custom = dict(value or {})
                continue
            if isinstance(value, datetime):
                # SQLite drops tzinfo; every stored timestamp is UTC
                value = ensure_utc(value)
            record[column.key] = value
        for key, value in custom.items():
            record.setdefault(key, value)
        return record

    # ── Repository API ──────────────────────────────────────────────────────

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        model = self._model(table)
        async for session in self._session_factory():
            row = await session.get(model, record_id)
            return self._to_dict(row) if row is not None else None
        return None

    async def upsert(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        values, extra = self._split(model, {k: v for k, v in fields.items() if k != "id"})
        async for session in self._session_factory():
            row = await session.get(model, record_id)
            if row is None:
                row = model(id=record_id, **values)
                if extra:
                    row.custom_fields = extra
                session.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                if extra:
                    row.custom_fields = {**(row.custom_fields or {}), **extra}
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(table, str(exc.orig)) from exc
            await session.refresh(row)
            return self._to_dict(row)
        raise RepositoryError("session factory yielded no session")

    async def query(
        self,
        table: str,
        filter: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        model = self._model(table)
        columns = model.__table__.columns
        stmt = select(model)
        for key, value in (filter or {}).items():
            if key not in columns:
                raise RepositoryError(f"cannot filter {table} on {key}")
            column = getattr(model, key)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        if order_by:
            column = getattr(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [self._to_dict(row) for row in result.scalars().all()]
        return []

    async def insert(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        values, extra = self._split(model, {k: v for k, v in fields.items() if k != "id"})
        row = model(id=fields["id"], **values)
        if extra:
            row.custom_fields = extra
        async for session in self._session_factory():
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(table, str(exc.orig)) from exc
            await session.refresh(row)
            return self._to_dict(row)
        raise RepositoryError("session factory yielded no session")

    async def insert_audit_row(self, table: str, fields: dict[str, Any]) -> None:
        await self.insert(table, {"id": str(uuid.uuid4()), **fields})
