from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from ytpm.app.repositories.common import utc_date_iso
from ytpm.app.repositories.quota_repository import QuotaRepository

LOGGER = logging.getLogger("ytpm.quota")

DEFAULT_DAILY_QUOTA_LIMIT = 10_000

# YouTube Data API v3 unit prices per call.
QUOTA_COSTS: Mapping[str, int] = {
    "playlists.list": 1,
    "playlists.insert": 50,
    "playlistItems.list": 1,
    "playlistItems.insert": 50,
    "playlistItems.delete": 50,
    "videos.list": 1,
    "subscriptions.list": 1,
    "channels.list": 1,
    "search.list": 100,
}


@dataclass(frozen=True)
class QuotaStatus:
    date: str
    consumed_units: int
    daily_limit: int
    remaining_units: int
    percent_used: float


@dataclass(frozen=True)
class QuotaHistoryItem:
    date: str
    consumed_units: int
    daily_limit: int


def _utc_now() -> datetime:
    return datetime.now(UTC)


class QuotaLedger:
    def __init__(
        self,
        repository: QuotaRepository,
        *,
        daily_limit: int = DEFAULT_DAILY_QUOTA_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._daily_limit = max(1, daily_limit)
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def today(self) -> str:
        return utc_date_iso(self._clock())

    def track_quota_usage(self, user_id: str, operation: str, multiplier: int = 1) -> int:
        """Record the units an already-issued API call consumed.

        Storage failures are logged and swallowed: the provider call has
        happened regardless of whether the ledger could record it.
        """
        cost = QUOTA_COSTS.get(operation, 0) * max(0, multiplier)
        date_utc = self.today()
        LOGGER.debug(
            "quota track user_id=%s operation=%s cost=%s multiplier=%s date=%s",
            user_id,
            operation,
            cost,
            multiplier,
            date_utc,
        )
        try:
            self._repository.increment(
                user_id=user_id,
                date_utc=date_utc,
                operation=operation,
                units=cost,
                daily_limit=self._daily_limit,
            )
        except Exception:
            LOGGER.error(
                "quota track failed user_id=%s operation=%s cost=%s",
                user_id,
                operation,
                cost,
                exc_info=True,
            )
        return cost

    def get_quota_status(self, user_id: str) -> QuotaStatus:
        date_utc = self.today()
        record = self._repository.get_day(user_id=user_id, date_utc=date_utc)
        consumed_units = record.consumed_units if record is not None else 0
        status = QuotaStatus(
            date=date_utc,
            consumed_units=consumed_units,
            daily_limit=self._daily_limit,
            remaining_units=self._daily_limit - consumed_units,
            percent_used=(consumed_units / self._daily_limit) * 100,
        )
        LOGGER.debug(
            "quota status user_id=%s consumed=%s remaining=%s percent_used=%.1f",
            user_id,
            status.consumed_units,
            status.remaining_units,
            status.percent_used,
        )
        return status

    def get_operation_breakdown(self, user_id: str) -> dict[str, int]:
        """Units billed today per API operation, from the audit table."""
        return self._repository.units_by_operation(user_id=user_id, date_utc=self.today())

    def check_quota_available(self, user_id: str, required_units: int) -> bool:
        # Check-then-act without a reservation: callers serialize per user.
        status = self.get_quota_status(user_id)
        available = status.remaining_units >= required_units
        LOGGER.info(
            "quota check user_id=%s required=%s remaining=%s available=%s",
            user_id,
            required_units,
            status.remaining_units,
            available,
        )
        return available

    def get_quota_history(self, user_id: str, days: int = 7) -> list[QuotaHistoryItem]:
        start = self._clock() - timedelta(days=max(0, days))
        records = self._repository.list_since(
            user_id=user_id,
            start_date_utc=utc_date_iso(start),
        )
        return [
            QuotaHistoryItem(
                date=record.date_utc,
                consumed_units=record.consumed_units,
                daily_limit=record.daily_limit,
            )
            for record in records
        ]
