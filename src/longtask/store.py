from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .lock import ServiceLock
from .models import JobRecord, JobStatus
from .utils import utc_now_iso


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        session_id=int(row["i"]),
        description=row["description"],
        command=row["command"],
        process_id=int(row["process_id"]) if row["process_id"] is not None else None,
        status=JobStatus(int(row["status"])),
        started_at=row["started_dt"],
        updated_at=row["updated_dt"],
        json_data=row["json_data"],
        channel=row["channel"],
    )


class Store:
    """The ``longtasks`` table and the channel event bus.

    The connection runs in autocommit mode: every statement commits on its
    own unless the service lock has opened an explicit transaction, in which
    case writes are held until the outermost lock release.
    """

    def __init__(self, db_path: Path, *, busy_timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(
            str(db_path),
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.service_lock = ServiceLock(self)

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS longtasks (
                i INTEGER PRIMARY KEY AUTOINCREMENT,
                description TEXT NOT NULL,
                command TEXT NOT NULL DEFAULT '',
                process_id INTEGER,
                status INTEGER NOT NULL,
                started_dt TEXT NOT NULL,
                updated_dt TEXT NOT NULL,
                json_data TEXT,
                channel TEXT
            );

            CREATE TABLE IF NOT EXISTS channel_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_dt TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_longtasks_description
                ON longtasks(description);
            CREATE INDEX IF NOT EXISTS idx_channel_events_channel_id
                ON channel_events(channel, id);
            CREATE INDEX IF NOT EXISTS idx_channel_events_created
                ON channel_events(created_dt);
            """
        )

    @property
    def in_transaction(self) -> bool:
        return self.conn.in_transaction

    def begin_immediate(self) -> None:
        self.conn.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self.conn.execute("COMMIT")

    def rollback(self) -> None:
        self.conn.execute("ROLLBACK")

    def rollback_open_transaction(self) -> bool:
        """Abort whatever transaction is open so a following write lands on its own."""
        if not self.conn.in_transaction:
            return False
        self.rollback()
        self.service_lock.reset()
        return True

    def insert_job(
        self,
        description: str,
        command: str,
        status: JobStatus,
        process_id: int | None = None,
    ) -> int:
        now = utc_now_iso()
        cursor = self.conn.execute(
            """
            INSERT INTO longtasks(description, command, process_id, status, started_dt, updated_dt, json_data)
            VALUES (?, ?, ?, ?, ?, ?, NULL)
            """,
            (description, command, process_id, int(status), now, now),
        )
        return int(cursor.lastrowid)

    def get_job(self, session_id: int) -> JobRecord | None:
        row = self.conn.execute("SELECT * FROM longtasks WHERE i = ?", (session_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def list_jobs(self, description: str | None = None) -> list[JobRecord]:
        if description is None:
            rows = self.conn.execute("SELECT * FROM longtasks ORDER BY i").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM longtasks WHERE description = ? ORDER BY i",
                (description,),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def update_job(
        self,
        session_id: int,
        *,
        status: JobStatus | None = None,
        process_id: int | None = None,
        json_data: str | None = None,
        channel: str | None = None,
    ) -> bool:
        updates: list[str] = ["updated_dt = ?"]
        values: list[object] = [utc_now_iso()]
        if status is not None:
            updates.append("status = ?")
            values.append(int(status))
        if process_id is not None:
            updates.append("process_id = ?")
            values.append(process_id)
        if json_data is not None:
            updates.append("json_data = ?")
            values.append(json_data)
        if channel is not None:
            updates.append("channel = ?")
            values.append(channel)
        values.append(session_id)
        query = f"UPDATE longtasks SET {', '.join(updates)} WHERE i = ?"
        cursor = self.conn.execute(query, values)
        return cursor.rowcount > 0

    def claim_job(self, session_id: int, process_id: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE longtasks SET process_id = ?, status = ?, updated_dt = ? WHERE i = ? AND status = ?",
            (process_id, int(JobStatus.RUNNING), utc_now_iso(), session_id, int(JobStatus.SPAWNING)),
        )
        return cursor.rowcount > 0

    def delete_job(self, session_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM longtasks WHERE i = ?", (session_id,))
        return cursor.rowcount > 0

    def delete_jobs(self, session_ids: list[int]) -> int:
        if not session_ids:
            return 0
        placeholders = ", ".join("?" for _ in session_ids)
        cursor = self.conn.execute(f"DELETE FROM longtasks WHERE i IN ({placeholders})", list(session_ids))
        return cursor.rowcount

    def publish_event(self, channel: str, payload: dict[str, Any]) -> int:
        cursor = self.conn.execute(
            "INSERT INTO channel_events(channel, payload_json, created_dt) VALUES (?, ?, ?)",
            (channel, json.dumps(payload, sort_keys=True), utc_now_iso()),
        )
        return int(cursor.lastrowid)

    def last_event_id(self, channel: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(id), 0) AS last_id FROM channel_events WHERE channel = ?",
            (channel,),
        ).fetchone()
        return int(row["last_id"])

    def next_event(self, channel: str, after_id: int) -> tuple[int, dict[str, Any]] | None:
        row = self.conn.execute(
            "SELECT id, payload_json FROM channel_events WHERE channel = ? AND id > ? ORDER BY id LIMIT 1",
            (channel, after_id),
        ).fetchone()
        if row is None:
            return None
        return int(row["id"]), json.loads(row["payload_json"])

    def prune_events(self, created_before: str) -> int:
        cursor = self.conn.execute("DELETE FROM channel_events WHERE created_dt < ?", (created_before,))
        return cursor.rowcount
