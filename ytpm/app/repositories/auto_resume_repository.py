from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from ytpm.app.repositories.common import parse_iso_datetime, text_or_none, utc_now_iso
from ytpm.app.repositories.database import Database

AutoResumeStatus = Literal["active", "paused"]

AUTO_RESUME_ACTIVE: AutoResumeStatus = "active"
AUTO_RESUME_PAUSED: AutoResumeStatus = "paused"
PAUSED_REASON_QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class AutoResumeState:
    user_id: str
    status: AutoResumeStatus
    paused_reason: str | None
    paused_until: datetime | None
    last_attempt: datetime | None
    next_attempt: datetime | None


_STATE_COLUMNS = "user_id, status, paused_reason, paused_until, last_attempt, next_attempt"


class AutoResumeRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, user_id: str) -> AutoResumeState | None:
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    f"SELECT {_STATE_COLUMNS} FROM export_auto_resume WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        return _row_to_state(row)

    def upsert_active(self, user_id: str) -> AutoResumeState:
        now_iso = utc_now_iso()
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO export_auto_resume (
                        user_id, status, paused_reason, paused_until,
                        last_attempt, next_attempt, created_at, updated_at
                    )
                    VALUES (?, ?, NULL, NULL, NULL, NULL, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        status = excluded.status,
                        paused_reason = NULL,
                        paused_until = NULL,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, AUTO_RESUME_ACTIVE, now_iso, now_iso),
                )
        return self._require(user_id)

    def delete(self, user_id: str) -> AutoResumeState | None:
        existing = self.get(user_id)
        if existing is None:
            return None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute("DELETE FROM export_auto_resume WHERE user_id = ?", (user_id,))
        return existing

    def mark_paused(
        self,
        user_id: str,
        *,
        reason: str,
        paused_until: datetime,
        attempted_at: datetime,
    ) -> AutoResumeState | None:
        cursor_rowcount = 0
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE export_auto_resume
                    SET status = ?, paused_reason = ?, paused_until = ?,
                        last_attempt = ?, next_attempt = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (
                        AUTO_RESUME_PAUSED,
                        reason,
                        paused_until.astimezone(UTC).isoformat(),
                        attempted_at.astimezone(UTC).isoformat(),
                        paused_until.astimezone(UTC).isoformat(),
                        utc_now_iso(),
                        user_id,
                    ),
                )
                cursor_rowcount = cursor.rowcount
        if cursor_rowcount == 0:
            return None
        return self.get(user_id)

    def mark_active(self, user_id: str, *, next_attempt: datetime) -> AutoResumeState | None:
        cursor_rowcount = 0
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE export_auto_resume
                    SET status = ?, paused_reason = NULL, paused_until = NULL,
                        next_attempt = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (
                        AUTO_RESUME_ACTIVE,
                        next_attempt.astimezone(UTC).isoformat(),
                        utc_now_iso(),
                        user_id,
                    ),
                )
                cursor_rowcount = cursor.rowcount
        if cursor_rowcount == 0:
            return None
        return self.get(user_id)

    def touch_attempt(self, user_id: str, *, attempted_at: datetime) -> None:
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    UPDATE export_auto_resume
                    SET last_attempt = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (attempted_at.astimezone(UTC).isoformat(), utc_now_iso(), user_id),
                )

    def list_active_user_ids(self) -> list[str]:
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id
                    FROM export_auto_resume
                    WHERE status = ?
                    ORDER BY COALESCE(last_attempt, '') ASC, user_id ASC
                    """,
                    (AUTO_RESUME_ACTIVE,),
                ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def list_paused_ready_user_ids(self, *, now: datetime) -> list[str]:
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id
                    FROM export_auto_resume
                    WHERE status = ? AND paused_until IS NOT NULL AND paused_until <= ?
                    ORDER BY paused_until ASC
                    """,
                    (AUTO_RESUME_PAUSED, now.astimezone(UTC).isoformat()),
                ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def _require(self, user_id: str) -> AutoResumeState:
        state = self.get(user_id)
        if state is None:
            raise RuntimeError(f"auto-resume state missing after write user_id={user_id}")
        return state


def _row_to_state(row: sqlite3.Row) -> AutoResumeState:
    raw_status = text_or_none(row["status"])
    return AutoResumeState(
        user_id=str(row["user_id"]),
        status=AUTO_RESUME_PAUSED if raw_status == AUTO_RESUME_PAUSED else AUTO_RESUME_ACTIVE,
        paused_reason=text_or_none(row["paused_reason"]),
        paused_until=parse_iso_datetime(row["paused_until"]),
        last_attempt=parse_iso_datetime(row["last_attempt"]),
        next_attempt=parse_iso_datetime(row["next_attempt"]),
    )
