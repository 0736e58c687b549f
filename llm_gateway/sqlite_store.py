"""SQLite-backed store.

Each table keeps the row body as JSON next to the few columns queries need
(unique key, owner, creation time). Work runs in a thread so the event loop
never blocks on disk.
"""

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from llm_gateway.models import UsageSummary
from llm_gateway.store import TABLE_USAGE, UNIQUE_COLUMNS, DuplicateRecordError

SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unique_key TEXT UNIQUE,
    owner_id TEXT,
    created_at TEXT,
    data TEXT NOT NULL
)
"""


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def get_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(str(Path(db_path)))
    conn.row_factory = sqlite3.Row
    return conn


class SqliteStore:
    """File-backed implementation of the store interface."""

    def __init__(self, db_path: str):
        if db_path == ":memory:":
            raise ValueError("SqliteStore needs a file path; use MemoryStore instead")
        self.db_path = db_path
        conn = get_connection(db_path)
        try:
            with conn:
                for table in UNIQUE_COLUMNS:
                    conn.execute(SCHEMA.format(table=table))
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_usage_owner_created "
                    f"ON {TABLE_USAGE} (owner_id, created_at)"
                )
        finally:
            conn.close()

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in UNIQUE_COLUMNS:
            raise KeyError(f"Unknown table: {table}")

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        data = json.loads(row["data"])
        data["id"] = row["id"]
        return data

    def _select(self, table: str, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._check_table(table)
        query = f"SELECT id, data FROM {table}"
        params: Tuple[Any, ...] = ()
        if "id" in where:
            query += " WHERE id = ?"
            params = (where["id"],)
        elif "owner_id" in where:
            query += " WHERE owner_id = ?"
            params = (where["owner_id"],)
        query += " ORDER BY id"

        conn = get_connection(self.db_path)
        try:
            rows = [self._decode(row) for row in conn.execute(query, params)]
        finally:
            conn.close()
        return [
            row
            for row in rows
            if all(row.get(column) == value for column, value in where.items())
        ]

    def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_table(table)
        unique = UNIQUE_COLUMNS[table]
        body = {k: v for k, v in row.items() if k != "id"}
        unique_value = body.get(unique) if unique else None
        created_at = body.get("created_at")

        conn = get_connection(self.db_path)
        try:
            with conn:
                cursor = conn.execute(
                    f"INSERT INTO {table} (id, unique_key, owner_id, created_at, data) "
                    f"VALUES (?, ?, ?, ?, ?)",
                    (
                        row.get("id"),
                        unique_value,
                        body.get("owner_id"),
                        _utc_iso(datetime.fromisoformat(created_at))
                        if created_at
                        else None,
                        json.dumps(body),
                    ),
                )
                row_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(
                table, unique or "id", unique_value or row.get("id")
            ) from exc
        finally:
            conn.close()
        return dict(body, id=row_id)

    def _update(
        self, table: str, row_id: int, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        conn = get_connection(self.db_path)
        try:
            with conn:
                current = conn.execute(
                    f"SELECT id, data FROM {table} WHERE id = ?", (row_id,)
                ).fetchone()
                if current is None:
                    return None
                data = json.loads(current["data"])
                data.update({k: v for k, v in changes.items() if k != "id"})
                conn.execute(
                    f"UPDATE {table} SET data = ?, owner_id = ? WHERE id = ?",
                    (json.dumps(data), data.get("owner_id"), row_id),
                )
        finally:
            conn.close()
        return dict(data, id=row_id)

    def _delete(self, table: str, row_id: int) -> bool:
        self._check_table(table)
        conn = get_connection(self.db_path)
        try:
            with conn:
                cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
                return cursor.rowcount > 0
        finally:
            conn.close()

    def _aggregate(self, owner_id: str, start: datetime, end: datetime) -> UsageSummary:
        query = f"""
            SELECT
                COUNT(*) AS total_requests,
                SUM(CASE WHEN json_extract(data, '$.status_code') < 400
                    THEN 1 ELSE 0 END) AS success_count,
                SUM(CASE WHEN json_extract(data, '$.status_code') >= 400
                    THEN 1 ELSE 0 END) AS error_count,
                SUM(json_extract(data, '$.input_tokens')) AS input_tokens,
                SUM(json_extract(data, '$.output_tokens')) AS output_tokens,
                SUM(json_extract(data, '$.cache_creation_tokens'))
                    AS cache_creation_tokens,
                SUM(json_extract(data, '$.cache_read_tokens')) AS cache_read_tokens,
                SUM(json_extract(data, '$.cost_usd')) AS total_cost_usd,
                AVG(json_extract(data, '$.response_time_ms'))
                    AS average_response_time_ms
            FROM {TABLE_USAGE}
            WHERE owner_id = ? AND created_at >= ? AND created_at < ?
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                query, (owner_id, _utc_iso(start), _utc_iso(end))
            ).fetchone()
        finally:
            conn.close()
        return UsageSummary(
            total_requests=int(row["total_requests"] or 0),
            success_count=int(row["success_count"] or 0),
            error_count=int(row["error_count"] or 0),
            input_tokens=int(row["input_tokens"] or 0),
            output_tokens=int(row["output_tokens"] or 0),
            cache_creation_tokens=int(row["cache_creation_tokens"] or 0),
            cache_read_tokens=int(row["cache_read_tokens"] or 0),
            total_cost_usd=float(row["total_cost_usd"] or 0.0),
            average_response_time_ms=float(row["average_response_time_ms"] or 0.0),
        )

    async def find_one(self, table: str, **where: Any) -> Optional[Dict[str, Any]]:
        rows = await asyncio.to_thread(self._select, table, where)
        return rows[0] if rows else None

    async def find_many(self, table: str, **where: Any) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._select, table, where)

    async def create(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._insert, table, row)

    async def update(
        self, table: str, row_id: int, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._update, table, row_id, changes)

    async def delete(self, table: str, row_id: int) -> bool:
        return await asyncio.to_thread(self._delete, table, row_id)

    async def count(self, table: str, **where: Any) -> int:
        return len(await self.find_many(table, **where))

    async def exists(self, table: str, **where: Any) -> bool:
        return await self.find_one(table, **where) is not None

    async def aggregate_usage(
        self, owner_id: str, start: datetime, end: datetime
    ) -> UsageSummary:
        return await asyncio.to_thread(self._aggregate, owner_id, start, end)

    async def close(self) -> None:
        return None
