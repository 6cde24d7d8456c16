from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, cast

import pytest

from ytpm.app.config import load_settings
from ytpm.app.services.auto_resume_service import AutoResumeCycleBusyError, AutoResumeRunSummary
from ytpm.app.services.process_lock import ProcessLock
from ytpm.app.services.scheduler_service import SchedulerService


class _FakeAutoResumeService:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls = 0
        self._fail = fail

    def run_auto_resume_cycle(self) -> AutoResumeRunSummary:
        self.calls += 1
        if self._fail:
            raise RuntimeError("cycle failed")
        return AutoResumeRunSummary(timestamp="2026-03-01T00:00:00+00:00", processed=1)


def test_scheduler_service_runs_cycles() -> None:
    service = _FakeAutoResumeService()
    scheduler = SchedulerService(cast(Any, service), poll_interval_seconds=1)

    assert scheduler.start() is True
    time.sleep(1.2)
    scheduler.stop()

    assert service.calls >= 1


def test_scheduler_tick_survives_cycle_failure() -> None:
    service = _FakeAutoResumeService(fail=True)
    scheduler = SchedulerService(cast(Any, service), poll_interval_seconds=60)

    scheduler.run_tick()
    scheduler.run_tick()

    assert service.calls == 2


def test_scheduler_lock_allows_single_instance(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "scheduler.lock"
    first = SchedulerService(
        cast(Any, _FakeAutoResumeService()),
        poll_interval_seconds=60,
        lock_path=lock_path,
    )
    second = SchedulerService(
        cast(Any, _FakeAutoResumeService()),
        poll_interval_seconds=60,
        lock_path=lock_path,
    )

    assert first.start() is True
    try:
        assert second.start() is False
    finally:
        first.stop()

    assert second.start() is True
    second.stop()


class _BlockingAutoResumeService:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def run_auto_resume_cycle(self) -> AutoResumeRunSummary:
        self.entered.set()
        self.release.wait(5)
        return AutoResumeRunSummary(timestamp="2026-03-01T00:00:00+00:00")


class _BusyAutoResumeService:
    def run_auto_resume_cycle(self) -> AutoResumeRunSummary:
        raise AutoResumeCycleBusyError()


def test_scheduler_keeps_lock_until_running_tick_finishes(tmp_path: Path) -> None:
    lock_path = tmp_path / "scheduler.lock"
    service = _BlockingAutoResumeService()
    first = SchedulerService(cast(Any, service), poll_interval_seconds=60, lock_path=lock_path)
    second = SchedulerService(
        cast(Any, _FakeAutoResumeService()),
        poll_interval_seconds=60,
        lock_path=lock_path,
    )

    assert first.start() is True
    assert service.entered.wait(2)
    first.stop(timeout=0.05)
    try:
        assert second.start() is False
    finally:
        service.release.set()

    deadline = time.monotonic() + 2
    while not second.start() and time.monotonic() < deadline:
        time.sleep(0.02)
    assert second.running is True
    second.stop()


def test_scheduler_tick_skips_busy_cycle() -> None:
    scheduler = SchedulerService(cast(Any, _BusyAutoResumeService()), poll_interval_seconds=60)

    scheduler.run_tick()


def test_process_lock_excludes_other_holders_in_process(tmp_path: Path) -> None:
    lock_path = tmp_path / "nested" / "cycle.lock"
    lock = ProcessLock(lock_path)
    other = ProcessLock(lock_path)

    assert lock.acquire() is True
    assert lock.held is True
    assert lock.acquire() is False
    assert other.acquire() is False

    lock.release()
    assert lock.held is False
    assert other.acquire() is True
    other.release()
    lock.release()


def test_load_settings_parses_bool_and_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    data_dir = tmp_path / "data"
    monkeypatch.setenv("YTPM_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YTPM_ENABLE_SCHEDULER", "false")
    monkeypatch.setenv("YTPM_YOUTUBE_DAILY_QUOTA_LIMIT", "12000")
    monkeypatch.setenv("YTPM_EXPORT_QUOTA_CEILING_PERCENT", "0.5")
    monkeypatch.setenv("YTPM_AUTO_RESUME_PAUSE_SECONDS", "3600")
    monkeypatch.setenv("YTPM_AUTO_RESUME_MAX_BATCHES_PER_RUN", "4")
    monkeypatch.setenv("YTPM_CRON_SECRET", "  s3cret  ")
    monkeypatch.setenv("YTPM_CRON_TRUSTED_HEADER", " X-Cron-Caller ")
    monkeypatch.setenv("YTPM_TELEMETRY_ENABLED", "off")
    monkeypatch.setenv("YTPM_TELEMETRY_SINK", " LOG ")
    monkeypatch.delenv("YTPM_DB_PATH", raising=False)
    monkeypatch.delenv("YTPM_LOG_DIR", raising=False)

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.db_path == (data_dir / "state.db").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()
    assert settings.scheduler_enabled is False
    assert settings.youtube_daily_quota_limit == 12_000
    assert settings.export_quota_ceiling_percent == 0.5
    assert settings.auto_resume_pause_seconds == 3600
    assert settings.auto_resume_max_batches_per_run == 4
    assert settings.cron_secret == "s3cret"
    assert settings.cron_trusted_header == "x-cron-caller"
    assert settings.telemetry_enabled is False
    assert settings.telemetry_sink == "log"


def test_load_settings_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in (
        "YTPM_DATA_DIR",
        "YTPM_DB_PATH",
        "YTPM_ENABLE_SCHEDULER",
        "YTPM_CRON_SECRET",
        "YTPM_CRON_TRUSTED_HEADER",
        "YTPM_EXPORT_QUOTA_CEILING_PERCENT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.db_path == (tmp_path / ".ytpm" / "state.db").resolve()
    assert settings.youtube_daily_quota_limit == 10_000
    assert settings.export_quota_ceiling_percent == 0.8
    assert settings.auto_resume_pause_seconds == 8 * 60 * 60
    assert settings.auto_resume_poll_interval_seconds == 30 * 60
    assert settings.auto_resume_max_batches_per_run == 15
    assert settings.scheduler_enabled is True
    assert settings.cron_secret is None
    assert settings.cron_trusted_header == "x-vercel-id"


def test_load_settings_keeps_explicit_db_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("YTPM_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("YTPM_DB_PATH", str(tmp_path / "elsewhere" / "export.db"))

    settings = load_settings()

    assert settings.db_path == (tmp_path / "elsewhere" / "export.db").resolve()


@pytest.mark.parametrize("value", ["0", "1.5", "-0.2"])
def test_load_settings_rejects_invalid_ceiling(
    value: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("YTPM_EXPORT_QUOTA_CEILING_PERCENT", value)

    with pytest.raises(ValueError, match="YTPM_EXPORT_QUOTA_CEILING_PERCENT"):
        load_settings()


def test_load_settings_rejects_unknown_telemetry_sink(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("YTPM_TELEMETRY_SINK", "statsd")

    with pytest.raises(ValueError, match="YTPM_TELEMETRY_SINK"):
        load_settings()


def test_load_settings_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "runtime"
    (tmp_path / ".env").write_text(
        "\n".join(
            [
                f"YTPM_DATA_DIR={data_dir}",
                "YTPM_CRON_SECRET=dotenv-secret",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YTPM_DATA_DIR", raising=False)
    monkeypatch.delenv("YTPM_CRON_SECRET", raising=False)

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.cron_secret == "dotenv-secret"
