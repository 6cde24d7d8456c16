from __future__ import annotations

import logging
import threading
from pathlib import Path
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from ytpm.app.services.auto_resume_service import AutoResumeCycleBusyError, AutoResumeService
from ytpm.app.services.process_lock import ProcessLock
from ytpm.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("ytpm.scheduler")
TICK_TYPE = "auto_resume"


class SchedulerService:
    """Runs auto-resume cycles on a daemon thread every poll interval.

    With a `lock_path`, only one scheduler per data directory runs even when
    several server workers start one.
    """

    def __init__(
        self,
        auto_resume_service: AutoResumeService,
        poll_interval_seconds: int,
        *,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._auto_resume_service = auto_resume_service
        self._interval = max(1, poll_interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._lock = ProcessLock(lock_path) if lock_path is not None else None
        self._wakeup = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.running:
            return True
        if self._lock is not None and not self._lock.acquire():
            LOGGER.info("scheduler not started; lock held elsewhere path=%s", self._lock.path)
            return False

        self._wakeup.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="ytpm-auto-resume-scheduler",
            daemon=True,
        )
        self._thread.start()
        LOGGER.info("scheduler started interval_seconds=%s", self._interval)
        return True

    def stop(self, timeout: float = 3.0) -> None:
        self._wakeup.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                LOGGER.warning("scheduler stop timed out; lock released when the tick ends")

    def run_tick(self) -> None:
        """Run one auto-resume cycle; failures are logged, never raised."""
        tick_id = uuid4().hex
        context_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type=TICK_TYPE)
        try:
            with self._telemetry.span("scheduler.tick", tick_id=tick_id, tick_type=TICK_TYPE) as out:
                summary = self._auto_resume_service.run_auto_resume_cycle()
                out.update(
                    processed=summary.processed,
                    paused=summary.paused,
                    completed=summary.completed,
                    resumed=summary.resumed,
                    errors=len(summary.errors),
                )
        except AutoResumeCycleBusyError:
            LOGGER.info("scheduler tick skipped; cycle running elsewhere tick_id=%s", tick_id)
        except Exception:
            LOGGER.warning("scheduler tick failed tick_id=%s", tick_id, exc_info=True)
        finally:
            reset_contextvars(**context_tokens)

    def _loop(self) -> None:
        try:
            while not self._wakeup.is_set():
                self.run_tick()
                self._wakeup.wait(self._interval)
        finally:
            if self._lock is not None:
                self._lock.release()
