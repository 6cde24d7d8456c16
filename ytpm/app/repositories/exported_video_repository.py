from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass

from ytpm.app.repositories.common import text_or_none, utc_now_iso
from ytpm.app.repositories.database import Database


@dataclass(frozen=True)
class HarvestedVideo:
    video_id: str
    title: str
    channel_id: str | None = None
    channel_title: str | None = None
    language: str | None = None
    published_at: str | None = None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class ExportedVideo:
    row_id: int
    video_id: str
    title: str
    channel_id: str | None
    channel_title: str | None
    language: str | None
    source_type: str
    source_id: str
    source_title: str | None
    published_at: str | None
    thumbnail_url: str | None


class ExportedVideoRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_videos(
        self,
        *,
        user_id: str,
        source_type: str,
        source_id: str,
        source_title: str | None,
        videos: Sequence[HarvestedVideo],
    ) -> int:
        """Insert harvested videos, skipping ones the user already has.

        Existing rows are never updated: the first source that produced a
        video keeps the provenance. Returns the number of new rows.
        """
        if not videos:
            return 0
        now_iso = utc_now_iso()
        inserted = 0
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                inserted = 0
                for video in videos:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO exported_videos (
                            user_id, video_id, title, channel_id, channel_title, language,
                            source_type, source_id, source_title, published_at,
                            thumbnail_url, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user_id,
                            video.video_id,
                            video.title,
                            video.channel_id or None,
                            video.channel_title or None,
                            video.language or None,
                            source_type,
                            source_id,
                            source_title,
                            video.published_at or None,
                            video.thumbnail_url or None,
                            now_iso,
                        ),
                    )
                    inserted += cursor.rowcount
        return inserted

    def count_videos(self, *, user_id: str, language_prefix: str | None = None) -> int:
        where_sql, params = _where_clause(user_id, language_prefix)
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    f"SELECT COUNT(*) AS total FROM exported_videos WHERE {where_sql}",
                    params,
                ).fetchone()
        return int(row["total"]) if row is not None else 0

    def list_videos(
        self,
        *,
        user_id: str,
        language_prefix: str | None,
        offset: int,
        limit: int,
    ) -> list[ExportedVideo]:
        where_sql, params = _where_clause(user_id, language_prefix)
        rows = []
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, video_id, title, channel_id, channel_title, language,
                           source_type, source_id, source_title, published_at, thumbnail_url
                    FROM exported_videos
                    WHERE {where_sql}
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (*params, max(1, limit), max(0, offset)),
                ).fetchall()
        return [_row_to_video(row) for row in rows]


def _where_clause(user_id: str, language_prefix: str | None) -> tuple[str, tuple[object, ...]]:
    if language_prefix is None or not language_prefix.strip():
        return "user_id = ?", (user_id,)
    prefix = language_prefix.strip()
    return (
        "user_id = ? AND language IS NOT NULL AND substr(language, 1, ?) = ?",
        (user_id, len(prefix), prefix),
    )


def _row_to_video(row: sqlite3.Row) -> ExportedVideo:
    return ExportedVideo(
        row_id=int(row["id"]),
        video_id=str(row["video_id"]),
        title=str(row["title"]),
        channel_id=text_or_none(row["channel_id"]),
        channel_title=text_or_none(row["channel_title"]),
        language=text_or_none(row["language"]),
        source_type=str(row["source_type"]),
        source_id=str(row["source_id"]),
        source_title=text_or_none(row["source_title"]),
        published_at=text_or_none(row["published_at"]),
        thumbnail_url=text_or_none(row["thumbnail_url"]),
    )
