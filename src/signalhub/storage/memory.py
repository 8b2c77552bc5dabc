"""In-process Repository used for dry runs and tests.

Enforces the same primary-key and unique constraints as the SQL schema by
reading them from the declarative metadata, so identity-mapping bijection
violations surface as DuplicateRecordError exactly as they do in PostgreSQL.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from typing import Any

from sqlalchemy import UniqueConstraint

from src.signalhub.storage.models import MODELS
from src.signalhub.storage.repository import DuplicateRecordError, Repository


def _unique_keys(table: str) -> list[tuple[str, ...]]:
    model = MODELS.get(table)
    if model is None:
        return []
    return [
        tuple(column.name for column in constraint.columns)
        for constraint in model.__table__.constraints
        if isinstance(constraint, UniqueConstraint)
    ]


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts first, mirroring NULLS FIRST for ascending order
    return (0, "") if value is None else (1, value)


class InMemoryRepository(Repository):
    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        return self.tables.setdefault(table, {})

    def _check_unique(self, table: str, record: dict[str, Any]) -> None:
        rows = self._table(table)
        for key in _unique_keys(table):
            values = tuple(record.get(column) for column in key)
            if any(v is None for v in values):
                continue
            for other_id, other in rows.items():
                if other_id == record["id"]:
                    continue
                if tuple(other.get(column) for column in key) == values:
                    raise DuplicateRecordError(table, f"{key}={values}")

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        record = self._table(table).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def upsert(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            merged = {**self._table(table).get(record_id, {}), **copy.deepcopy(fields), "id": record_id}
            self._check_unique(table, merged)
            self._table(table)[record_id] = merged
            return copy.deepcopy(merged)

    async def query(
        self,
        table: str,
        filter: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self._table(table).values()
            if all(row.get(k) == v for k, v in (filter or {}).items())
        ]
        if order_by:
            column = order_by.lstrip("-")
            rows.sort(key=lambda row: _sort_key(row.get(column)), reverse=order_by.startswith("-"))
        return rows[:limit] if limit is not None else rows

    async def insert(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            record = copy.deepcopy(fields)
            if record.get("id") in self._table(table):
                raise DuplicateRecordError(table, f"id={record['id']}")
            self._check_unique(table, record)
            self._table(table)[record["id"]] = record
            return copy.deepcopy(record)

    async def insert_audit_row(self, table: str, fields: dict[str, Any]) -> None:
        row = {"id": str(uuid.uuid4()), **copy.deepcopy(fields)}
        self._table(table)[row["id"]] = row
