from __future__ import annotations

from ytpm.app.repositories.common import utc_now_iso
from ytpm.app.repositories.database import Database


class OAuthTokenRepository:
    """Latest Google access token per user, fed by the session layer."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def store_access_token(self, *, user_id: str, access_token: str) -> None:
        normalized = access_token.strip()
        if not normalized:
            raise ValueError("access_token must not be empty")
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO user_oauth_tokens (user_id, access_token, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        access_token = excluded.access_token,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, normalized, utc_now_iso()),
                )

    def get_access_token(self, user_id: str) -> str | None:
        row = None
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                row = conn.execute(
                    "SELECT access_token FROM user_oauth_tokens WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        token = str(row["access_token"]).strip()
        return token or None

    def delete_access_token(self, user_id: str) -> bool:
        rowcount = 0
        for attempt in self._db.retrying():
            with attempt, self._db.connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM user_oauth_tokens WHERE user_id = ?",
                    (user_id,),
                )
                rowcount = cursor.rowcount
        return rowcount > 0
