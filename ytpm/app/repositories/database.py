from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

LOGGER = logging.getLogger("ytpm.storage")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS export_sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    original_id TEXT NULL,
    source_title TEXT NULL,
    status TEXT NOT NULL,
    last_page_token TEXT NULL,
    total_items INTEGER NOT NULL DEFAULT 0,
    imported_items INTEGER NOT NULL DEFAULT 0,
    last_imported_at TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, source_type, source_id)
);

CREATE INDEX IF NOT EXISTS idx_export_sources_user_status
ON export_sources(user_id, status);

CREATE TABLE IF NOT EXISTS exported_videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    video_id TEXT NOT NULL,
    title TEXT NOT NULL,
    channel_id TEXT NULL,
    channel_title TEXT NULL,
    language TEXT NULL,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    source_title TEXT NULL,
    published_at TEXT NULL,
    thumbnail_url TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, video_id)
);

CREATE INDEX IF NOT EXISTS idx_exported_videos_user_language
ON exported_videos(user_id, language);

CREATE TABLE IF NOT EXISTS quota_history (
    user_id TEXT NOT NULL,
    date_utc TEXT NOT NULL,
    consumed_units INTEGER NOT NULL,
    daily_limit INTEGER NOT NULL,
    calls INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, date_utc)
);

CREATE TABLE IF NOT EXISTS quota_by_operation_daily (
    user_id TEXT NOT NULL,
    date_utc TEXT NOT NULL,
    operation TEXT NOT NULL,
    units_used INTEGER NOT NULL,
    calls INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, date_utc, operation)
);

CREATE TABLE IF NOT EXISTS export_auto_resume (
    user_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    paused_reason TEXT NULL,
    paused_until TEXT NULL,
    last_attempt TEXT NULL,
    next_attempt TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_export_auto_resume_status
ON export_auto_resume(status, paused_until);

CREATE TABLE IF NOT EXISTS user_oauth_tokens (
    user_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_TRANSIENT_ERROR_MARKERS: tuple[str, ...] = (
    "database is locked",
    "database is busy",
    "database table is locked",
)


class Database:
    def __init__(
        self,
        path: Path,
        *,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self._path = path
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff_seconds = max(0.0, retry_backoff_seconds)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def retrying(self) -> Retrying:
        """Retry policy wrapped around each storage operation.

        Only lock/busy contention is retried; anything else is raised on the
        first attempt.
        """
        return Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff_seconds, max=2.0),
            retry=retry_if_exception(is_transient_storage_error),
            before_sleep=_log_storage_retry,
            reraise=True,
        )

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)


def is_transient_storage_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_ERROR_MARKERS)


def _log_storage_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "storage operation retry attempt=%s error=%s",
        retry_state.attempt_number,
        error,
    )
