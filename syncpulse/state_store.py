from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from syncpulse.models import SyncStatusRecord, serialize_datetime


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite persistence for the sync status record, run history and small metadata."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_status (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            sync_status TEXT NOT NULL,
            next_sync_time TEXT,
            last_sync_time TEXT,
            last_successful_sync_time TEXT,
            last_error_message TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def get_sync_status(self) -> SyncStatusRecord:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT sync_status, next_sync_time, last_sync_time,
                           last_successful_sync_time, last_error_message
                    FROM sync_status
                    WHERE id = 1
                    """
                ).fetchone()
        if row is None:
            return SyncStatusRecord()
        return SyncStatusRecord.from_dict(dict(row))

    def upsert_sync_status(self, record: SyncStatusRecord) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_status(
                        id, sync_status, next_sync_time, last_sync_time,
                        last_successful_sync_time, last_error_message, updated_at
                    )
                    VALUES (1, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        sync_status = excluded.sync_status,
                        next_sync_time = excluded.next_sync_time,
                        last_sync_time = excluded.last_sync_time,
                        last_successful_sync_time = excluded.last_successful_sync_time,
                        last_error_message = excluded.last_error_message,
                        updated_at = excluded.updated_at
                    """,
                    (
                        record.sync_status.value,
                        serialize_datetime(record.next_sync_time),
                        serialize_datetime(record.last_sync_time),
                        serialize_datetime(record.last_successful_sync_time),
                        str(record.last_error_message or ""),
                        _utc_now(),
                    ),
                )
                conn.commit()

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        run_at: datetime | None = None,
    ) -> int:
        run_at_text = serialize_datetime(run_at) or _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_at_text, trigger, status, message, int(duration_ms)),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()
