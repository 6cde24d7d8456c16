from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from ytpm.app.repositories.common import text_or_none, utc_now_iso
from ytpm.app.repositories.database import Database

SourceType = Literal["playlist", "channel"]
SourceStatus = Literal["pending", "in_progress", "completed"]

SOURCE_STATUS_PENDING: SourceStatus = "pending"
SOURCE_STATUS_IN_PROGRESS: SourceStatus = "in_progress"
SOURCE_STATUS_COMPLETED: SourceStatus = "completed"


@dataclass(frozen=True)
class NewExportSource:
    source_type: SourceType
    source_id: str
    source_title: str | None
    original_id: str | None = None
    total_items: int = 0


@dataclass(frozen=True)
class ExportSource:
    row_id: int
    user_id: str
    source_type: SourceType
    source_id: str
    original_id: str | None
    source_title: str | None
    status: SourceStatus
    last_page_token: str | None
    total_items: int
    imported_items: int
    last_imported_at: str | None


_SOURCE_COLUMNS = """
    id, user_id, source_type, source_id, original_id, source_title, status,
    last_page_token, total_items, imported_items, last_imported_at
"""


class ExportProgressRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_sources(self, *, user_id: str, sources: Sequence[NewExportSource]) -> int:
        if not sources:
            return 0
        now_iso = utc_now_iso()
        created = 0
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                created = 0
                for source in sources:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO export_sources (
                            user_id, source_type, source_id, original_id, source_title,
                            status, last_page_token, total_items, imported_items,
                            last_imported_at, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, NULL, ?, 0, NULL, ?, ?)
                        """,
                        (
                            user_id,
                            source.source_type,
                            source.source_id,
                            source.original_id,
                            source.source_title,
                            SOURCE_STATUS_PENDING,
                            max(0, source.total_items),
                            now_iso,
                            now_iso,
                        ),
                    )
                    created += cursor.rowcount
        return created

    def count_sources(self, *, user_id: str, status: SourceStatus | None = None) -> int:
        query = "SELECT COUNT(*) AS total FROM export_sources WHERE user_id = ?"
        params: tuple[object, ...] = (user_id,)
        if status is not None:
            query += " AND status = ?"
            params = (user_id, status)

        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(query, params).fetchone()
        return int(row["total"]) if row is not None else 0

    def next_incomplete_source(self, *, user_id: str) -> ExportSource | None:
        """Pick the next source to harvest.

        Playlists drain before any channel, sources already in progress resume
        before pending ones start, and creation order breaks ties.
        """
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_SOURCE_COLUMNS}
                    FROM export_sources
                    WHERE user_id = ? AND status IN (?, ?)
                    ORDER BY
                        CASE source_type WHEN 'playlist' THEN 0 ELSE 1 END ASC,
                        CASE status WHEN 'in_progress' THEN 0 ELSE 1 END ASC,
                        id ASC
                    LIMIT 1
                    """,
                    (user_id, SOURCE_STATUS_IN_PROGRESS, SOURCE_STATUS_PENDING),
                ).fetchone()
        if row is None:
            return None
        return _row_to_source(row)

    def list_sources(self, *, user_id: str) -> list[ExportSource]:
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_SOURCE_COLUMNS}
                    FROM export_sources
                    WHERE user_id = ?
                    ORDER BY id ASC
                    """,
                    (user_id,),
                ).fetchall()
        return [_row_to_source(row) for row in rows]

    def mark_in_progress(self, row_id: int) -> None:
        # Only pending rows move; status never goes backwards.
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    UPDATE export_sources
                    SET status = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (SOURCE_STATUS_IN_PROGRESS, utc_now_iso(), row_id, SOURCE_STATUS_PENDING),
                )

    def record_page(
        self,
        row_id: int,
        *,
        next_page_token: str | None,
        page_item_count: int,
        total_items: int | None,
    ) -> SourceStatus:
        status = SOURCE_STATUS_COMPLETED if next_page_token is None else SOURCE_STATUS_IN_PROGRESS
        now_iso = utc_now_iso()
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    UPDATE export_sources
                    SET last_page_token = ?,
                        imported_items = imported_items + ?,
                        total_items = COALESCE(?, total_items),
                        last_imported_at = ?,
                        status = ?,
                        updated_at = ?
                    WHERE id = ? AND status != ?
                    """,
                    (
                        next_page_token,
                        max(0, page_item_count),
                        total_items if total_items else None,
                        now_iso,
                        status,
                        now_iso,
                        row_id,
                        SOURCE_STATUS_COMPLETED,
                    ),
                )
        return status

    def mark_completed(self, row_id: int) -> None:
        now_iso = utc_now_iso()
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    UPDATE export_sources
                    SET status = ?, last_page_token = NULL, last_imported_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (SOURCE_STATUS_COMPLETED, now_iso, now_iso, row_id),
                )

    def latest_imported_at(self, *, user_id: str) -> str | None:
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT MAX(last_imported_at) AS latest
                    FROM export_sources
                    WHERE user_id = ? AND last_imported_at IS NOT NULL
                    """,
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        return text_or_none(row["latest"])


def _row_to_source(row: sqlite3.Row) -> ExportSource:
    source_type = str(row["source_type"])
    status = str(row["status"])
    return ExportSource(
        row_id=int(row["id"]),
        user_id=str(row["user_id"]),
        source_type="channel" if source_type == "channel" else "playlist",
        source_id=str(row["source_id"]),
        original_id=text_or_none(row["original_id"]),
        source_title=text_or_none(row["source_title"]),
        status=_coerce_status(status),
        last_page_token=text_or_none(row["last_page_token"]),
        total_items=int(row["total_items"]),
        imported_items=int(row["imported_items"]),
        last_imported_at=text_or_none(row["last_imported_at"]),
    )


def _coerce_status(raw_status: str) -> SourceStatus:
    if raw_status == SOURCE_STATUS_IN_PROGRESS:
        return SOURCE_STATUS_IN_PROGRESS
    if raw_status == SOURCE_STATUS_COMPLETED:
        return SOURCE_STATUS_COMPLETED
    return SOURCE_STATUS_PENDING
