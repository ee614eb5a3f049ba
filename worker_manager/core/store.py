from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import IO

import aiosqlite
from pydantic import ValidationError

from worker_manager.core.errors import StoreUnavailable
from worker_manager.types import WorkerRecord

log = logging.getLogger("worker-manager.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS worker_records (
    id TEXT PRIMARY KEY,
    record TEXT NOT NULL
)
"""


def _acquire_lock(path: Path) -> IO[str] | None:
    handle = path.open("a+", encoding="utf-8")
    try:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl

            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return handle
    except OSError:
        handle.close()
        return None


def _release_lock(handle: IO[str]) -> None:
    try:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            import fcntl

            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as exc:
        log.warning("store.unlock_failed", extra={"error": str(exc)})
    finally:
        handle.close()


class WorkerRecordStore:
    """Durable one-record-per-worker store.

    Records are kept as JSON documents in a SQLite table keyed by worker id.
    A sidecar lock file gives the opening supervisor exclusive ownership; a
    second instance pointed at the same path gets ``StoreUnavailable``.

    aiosqlite runs every statement on one connection thread in submission
    order, so writes reach disk in the order they were issued.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.lock_path = self.db_path.with_name(self.db_path.name + ".lock")
        self._conn: aiosqlite.Connection | None = None
        self._lock_handle: IO[str] | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create store directory {self.db_path.parent}: {exc}") from exc
        handle = _acquire_lock(self.lock_path)
        if handle is None:
            raise StoreUnavailable(f"Worker record store {self.db_path} is locked by another instance")
        try:
            conn = await aiosqlite.connect(str(self.db_path))
        except sqlite3.Error as exc:
            _release_lock(handle)
            raise StoreUnavailable(f"Cannot open worker record store {self.db_path}: {exc}") from exc
        try:
            await conn.execute(_SCHEMA)
            await conn.commit()
        except sqlite3.Error as exc:
            await conn.close()
            _release_lock(handle)
            raise StoreUnavailable(f"Cannot open worker record store {self.db_path}: {exc}") from exc
        self._conn = conn
        self._lock_handle = handle
        log.info("store.opened", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
        if self._lock_handle is not None:
            _release_lock(self._lock_handle)
            self._lock_handle = None

    async def get(self, worker_id: str) -> WorkerRecord | None:
        conn = self._require_open()
        async with conn.execute("SELECT record FROM worker_records WHERE id = ?", (worker_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._decode(worker_id, row[0])

    async def put(self, record: WorkerRecord) -> None:
        conn = self._require_open()
        payload = json.dumps(record.to_payload(), ensure_ascii=False)
        await conn.execute(
            "INSERT INTO worker_records (id, record) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET record = excluded.record",
            (record.id, payload),
        )
        await conn.commit()

    async def delete(self, worker_id: str) -> None:
        conn = self._require_open()
        await conn.execute("DELETE FROM worker_records WHERE id = ?", (worker_id,))
        await conn.commit()

    async def list(self) -> list[WorkerRecord]:
        conn = self._require_open()
        async with conn.execute("SELECT id, record FROM worker_records ORDER BY id") as cursor:
            rows = await cursor.fetchall()
        records: list[WorkerRecord] = []
        for worker_id, raw in rows:
            record = self._decode(worker_id, raw)
            if record is not None:
                records.append(record)
        return records

    def _require_open(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailable(f"Worker record store is not open ({self.db_path})")
        return self._conn

    def _decode(self, worker_id: str, raw: str) -> WorkerRecord | None:
        try:
            return WorkerRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            log.warning("store.record_invalid", extra={"worker_id": worker_id, "error": str(exc)})
            return None
