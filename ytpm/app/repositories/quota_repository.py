from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from ytpm.app.repositories.common import utc_now_iso
from ytpm.app.repositories.database import Database


@dataclass(frozen=True)
class QuotaDayRecord:
    user_id: str
    date_utc: str
    consumed_units: int
    daily_limit: int
    calls: int


class QuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def increment(
        self,
        *,
        user_id: str,
        date_utc: str,
        operation: str,
        units: int,
        daily_limit: int,
    ) -> None:
        units_this_call = max(0, units)
        now_iso = utc_now_iso()
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO quota_history
                    (user_id, date_utc, consumed_units, daily_limit, calls, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                    ON CONFLICT(user_id, date_utc) DO UPDATE SET
                        consumed_units = quota_history.consumed_units + excluded.consumed_units,
                        calls = quota_history.calls + 1,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, date_utc, units_this_call, daily_limit, now_iso),
                )
                conn.execute(
                    """
                    INSERT INTO quota_by_operation_daily
                    (user_id, date_utc, operation, units_used, calls, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                    ON CONFLICT(user_id, date_utc, operation) DO UPDATE SET
                        units_used = quota_by_operation_daily.units_used + excluded.units_used,
                        calls = quota_by_operation_daily.calls + 1,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, date_utc, operation, units_this_call, now_iso),
                )

    def get_day(self, *, user_id: str, date_utc: str) -> QuotaDayRecord | None:
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, date_utc, consumed_units, daily_limit, calls
                    FROM quota_history
                    WHERE user_id = ? AND date_utc = ?
                    """,
                    (user_id, date_utc),
                ).fetchone()

        if row is None:
            return None
        return _row_to_record(row)

    def list_since(self, *, user_id: str, start_date_utc: str) -> list[QuotaDayRecord]:
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id, date_utc, consumed_units, daily_limit, calls
                    FROM quota_history
                    WHERE user_id = ? AND date_utc >= ?
                    ORDER BY date_utc DESC
                    """,
                    (user_id, start_date_utc),
                ).fetchall()
        return [_row_to_record(row) for row in rows]

    def units_by_operation(self, *, user_id: str, date_utc: str) -> dict[str, int]:
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT operation, units_used
                    FROM quota_by_operation_daily
                    WHERE user_id = ? AND date_utc = ?
                    ORDER BY operation ASC
                    """,
                    (user_id, date_utc),
                ).fetchall()
        return {str(row["operation"]): int(row["units_used"]) for row in rows}


def _row_to_record(row: sqlite3.Row) -> QuotaDayRecord:
    return QuotaDayRecord(
        user_id=str(row["user_id"]),
        date_utc=str(row["date_utc"]),
        consumed_units=int(row["consumed_units"]),
        daily_limit=int(row["daily_limit"]),
        calls=int(row["calls"]),
    )
