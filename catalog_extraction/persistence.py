"""Async SQLite persistence for the job history and schema records."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import aiosqlite

JOB_HISTORY_RECORD = "job_history"
SCHEMA_RECORD = "schema"


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="seconds")


class PersistenceStore(Protocol):
    async def load_schema(self) -> Optional[List[Dict[str, Any]]]: ...

    async def save_schema(self, items: List[Dict[str, Any]]) -> None: ...

    async def load_jobs(self) -> List[Dict[str, Any]]: ...

    async def save_jobs(self, jobs: List[Dict[str, Any]]) -> None: ...

    async def clear_jobs(self) -> None: ...


class RecordStore:
    """Two named JSON records in one SQLite table.

    ``job_history`` holds the array of terminal-state jobs and ``schema`` the
    active schema snapshot. Each save replaces the whole record.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA synchronous=NORMAL;")
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                        name TEXT PRIMARY KEY,
                        payload TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                await conn.commit()
            finally:
                await conn.close()
            self._initialized = True

    async def _conn(self) -> aiosqlite.Connection:
        await self.init()
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        return conn

    async def _read(self, name: str) -> Optional[Any]:
        conn = await self._conn()
        try:
            async with conn.execute("SELECT payload FROM records WHERE name=?", (name,)) as cur:
                row = await cur.fetchone()
        finally:
            await conn.close()
        if row is None:
            return None
        return json.loads(row["payload"])

    async def _write(self, name: str, payload: Any) -> None:
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO records (name, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    payload=excluded.payload,
                    updated_at=excluded.updated_at
                """,
                (name, json.dumps(payload), _utc_now()),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def _delete(self, name: str) -> None:
        conn = await self._conn()
        try:
            await conn.execute("DELETE FROM records WHERE name=?", (name,))
            await conn.commit()
        finally:
            await conn.close()

    async def load_schema(self) -> Optional[List[Dict[str, Any]]]:
        payload = await self._read(SCHEMA_RECORD)
        return payload if isinstance(payload, list) else None

    async def save_schema(self, items: List[Dict[str, Any]]) -> None:
        await self._write(SCHEMA_RECORD, items)

    async def load_jobs(self) -> List[Dict[str, Any]]:
        payload = await self._read(JOB_HISTORY_RECORD)
        return payload if isinstance(payload, list) else []

    async def save_jobs(self, jobs: List[Dict[str, Any]]) -> None:
        await self._write(JOB_HISTORY_RECORD, jobs)

    async def clear_jobs(self) -> None:
        await self._delete(JOB_HISTORY_RECORD)


class MemoryRecordStore:
    """Process-local store with the same contract, for tests and ephemeral runs."""

    def __init__(self) -> None:
        self.records: Dict[str, str] = {}
        self.job_saves = 0

    async def load_schema(self) -> Optional[List[Dict[str, Any]]]:
        raw = self.records.get(SCHEMA_RECORD)
        return json.loads(raw) if raw is not None else None

    async def save_schema(self, items: List[Dict[str, Any]]) -> None:
        self.records[SCHEMA_RECORD] = json.dumps(items)

    async def load_jobs(self) -> List[Dict[str, Any]]:
        raw = self.records.get(JOB_HISTORY_RECORD)
        return json.loads(raw) if raw is not None else []

    async def save_jobs(self, jobs: List[Dict[str, Any]]) -> None:
        self.job_saves += 1
        self.records[JOB_HISTORY_RECORD] = json.dumps(jobs)

    async def clear_jobs(self) -> None:
        self.records.pop(JOB_HISTORY_RECORD, None)
