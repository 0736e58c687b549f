"""Store interface consumed by the gateway core, and an in-memory implementation."""

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from llm_gateway.models import UsageRecord, UsageSummary, summarize_records

TABLE_ACCOUNTS = "upstream_accounts"
TABLE_API_KEYS = "api_keys"
TABLE_USAGE = "usage_records"

UNIQUE_COLUMNS: Dict[str, Optional[str]] = {
    TABLE_ACCOUNTS: None,
    TABLE_API_KEYS: "key_hash",
    TABLE_USAGE: "request_id",
}


class DuplicateRecordError(Exception):
    """Insert violated a table's unique column."""

    def __init__(self, table: str, column: str, value: Any):
        super().__init__(f"Duplicate {column}={value!r} in {table}")
        self.table = table
        self.column = column
        self.value = value


class Store(Protocol):
    async def find_one(self, table: str, **where: Any) -> Optional[Dict[str, Any]]: ...

    async def find_many(self, table: str, **where: Any) -> List[Dict[str, Any]]: ...

    async def create(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update(
        self, table: str, row_id: int, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    async def delete(self, table: str, row_id: int) -> bool: ...

    async def count(self, table: str, **where: Any) -> int: ...

    async def exists(self, table: str, **where: Any) -> bool: ...

    async def aggregate_usage(
        self, owner_id: str, start: datetime, end: datetime
    ) -> UsageSummary: ...

    async def close(self) -> None: ...


def _matches(row: Dict[str, Any], where: Dict[str, Any]) -> bool:
    return all(row.get(column) == value for column, value in where.items())


class MemoryStore:
    """Dict-backed store. Rows are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {
            table: {} for table in UNIQUE_COLUMNS
        }
        self._next_ids: Dict[str, int] = {table: 1 for table in UNIQUE_COLUMNS}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> Dict[int, Dict[str, Any]]:
        if table not in self._tables:
            raise KeyError(f"Unknown table: {table}")
        return self._tables[table]

    async def find_one(self, table: str, **where: Any) -> Optional[Dict[str, Any]]:
        for row in self._table(table).values():
            if _matches(row, where):
                return copy.deepcopy(row)
        return None

    async def find_many(self, table: str, **where: Any) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._table(table).values()
            if _matches(row, where)
        ]

    async def create(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            rows = self._table(table)
            unique = UNIQUE_COLUMNS[table]
            if unique is not None:
                value = row.get(unique)
                if any(existing.get(unique) == value for existing in rows.values()):
                    raise DuplicateRecordError(table, unique, value)

            stored = copy.deepcopy(row)
            row_id = stored.get("id")
            if row_id is None:
                row_id = self._next_ids[table]
                stored["id"] = row_id
            if row_id in rows:
                raise DuplicateRecordError(table, "id", row_id)
            self._next_ids[table] = max(self._next_ids[table], int(row_id) + 1)
            rows[int(row_id)] = stored
            return copy.deepcopy(stored)

    async def update(
        self, table: str, row_id: int, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._table(table).get(row_id)
            if row is None:
                return None
            row.update(copy.deepcopy(changes))
            row["id"] = row_id
            return copy.deepcopy(row)

    async def delete(self, table: str, row_id: int) -> bool:
        async with self._lock:
            return self._table(table).pop(row_id, None) is not None

    async def count(self, table: str, **where: Any) -> int:
        return sum(1 for row in self._table(table).values() if _matches(row, where))

    async def exists(self, table: str, **where: Any) -> bool:
        return any(_matches(row, where) for row in self._table(table).values())

    async def aggregate_usage(
        self, owner_id: str, start: datetime, end: datetime
    ) -> UsageSummary:
        records = []
        for row in self._table(TABLE_USAGE).values():
            if row.get("owner_id") != owner_id:
                continue
            record = UsageRecord.from_row(row)
            if start <= record.created_at < end:
                records.append(record)
        return summarize_records(records)

    async def close(self) -> None:
        return None
