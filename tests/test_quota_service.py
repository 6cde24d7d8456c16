from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from ytpm.app.repositories.database import Database
from ytpm.app.repositories.quota_repository import QuotaRepository
from ytpm.app.services.quota_service import QUOTA_COSTS, QuotaLedger


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _ledger(db: Database, clock: _Clock, *, daily_limit: int = 10_000) -> QuotaLedger:
    return QuotaLedger(QuotaRepository(db), daily_limit=daily_limit, clock=clock)


def test_track_quota_usage_sums_cost_times_multiplier(db: Database) -> None:
    clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
    ledger = _ledger(db, clock)
    calls = [
        ("playlistItems.list", 1),
        ("videos.list", 1),
        ("search.list", 2),
        ("playlistItems.insert", 3),
        ("unknown.operation", 5),
    ]

    observed: list[int] = []
    for operation, multiplier in calls:
        ledger.track_quota_usage("u1", operation, multiplier)
        observed.append(ledger.get_quota_status("u1").consumed_units)

    expected_total = sum(QUOTA_COSTS.get(op, 0) * multiplier for op, multiplier in calls)
    assert expected_total == 1 + 1 + 200 + 150
    assert observed[-1] == expected_total
    assert observed == sorted(observed)


def test_get_quota_status_without_usage_creates_nothing(db: Database) -> None:
    clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
    ledger = _ledger(db, clock, daily_limit=500)

    status = ledger.get_quota_status("u1")

    assert status.consumed_units == 0
    assert status.remaining_units == 500
    assert status.percent_used == 0
    assert status.date == "2026-03-01"
    assert QuotaRepository(db).get_day(user_id="u1", date_utc="2026-03-01") is None


def test_check_quota_available_compares_remaining(db: Database) -> None:
    clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
    ledger = _ledger(db, clock, daily_limit=100)
    ledger.track_quota_usage("u1", "playlists.insert")
    ledger.track_quota_usage("u1", "playlistItems.insert")

    assert ledger.get_quota_status("u1").remaining_units == 0
    assert ledger.check_quota_available("u1", 0) is True
    assert ledger.check_quota_available("u1", 1) is False
    assert ledger.check_quota_available("u2", 100) is True


def test_new_utc_day_starts_fresh_and_keeps_history(db: Database) -> None:
    clock = _Clock(datetime(2026, 3, 1, 23, 30, tzinfo=UTC))
    ledger = _ledger(db, clock)
    ledger.track_quota_usage("u1", "search.list")

    clock.now = clock.now + timedelta(hours=1)
    assert ledger.get_quota_status("u1").consumed_units == 0
    ledger.track_quota_usage("u1", "videos.list")

    history = ledger.get_quota_history("u1", days=7)
    assert [(item.date, item.consumed_units) for item in history] == [
        ("2026-03-02", 1),
        ("2026-03-01", 100),
    ]


def test_track_quota_usage_swallows_storage_failures(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
    repository = QuotaRepository(db)
    ledger = QuotaLedger(repository, clock=clock)

    def _boom(**_kwargs: object) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "increment", _boom)

    assert ledger.track_quota_usage("u1", "search.list") == 100
