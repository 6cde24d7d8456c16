from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

from ytpm.app.repositories.auto_resume_repository import (
    AUTO_RESUME_ACTIVE,
    AUTO_RESUME_PAUSED,
    PAUSED_REASON_QUOTA_EXCEEDED,
    AutoResumeRepository,
    AutoResumeState,
)
from ytpm.app.repositories.oauth_token_repository import OAuthTokenRepository
from ytpm.app.services.export_service import ExportService
from ytpm.app.services.process_lock import ProcessLock
from ytpm.app.services.youtube_client import YouTubePageClient
from ytpm.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("ytpm.auto_resume")

DEFAULT_PAUSE_SECONDS = 8 * 60 * 60
DEFAULT_MAX_BATCHES_PER_RUN = 15
CYCLE_LOCK_FILE_NAME = "auto-resume-cycle.lock"

AutoResumeOutcomeKind = Literal["progress", "paused", "complete", "error"]
PageClientFactory = Callable[[str, str], YouTubePageClient]


class MissingAccessTokenError(Exception):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No Google OAuth access token stored for user {user_id}")
        self.user_id = user_id


class AutoResumeCycleBusyError(Exception):
    def __init__(self) -> None:
        super().__init__("An auto-resume cycle is already running")


@dataclass(frozen=True)
class AutoResumeOutcome:
    kind: AutoResumeOutcomeKind
    message: str | None = None
    videos_imported: int = 0


@dataclass(frozen=True)
class AutoResumeUserError:
    user_id: str
    error: str


@dataclass
class AutoResumeRunSummary:
    timestamp: str
    processed: int = 0
    paused: int = 0
    completed: int = 0
    resumed: int = 0
    errors: list[AutoResumeUserError] = field(default_factory=list)
    duration_ms: int = 0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AutoResumeService:
    def __init__(
        self,
        *,
        repository: AutoResumeRepository,
        token_repository: OAuthTokenRepository,
        export_service: ExportService,
        client_factory: PageClientFactory,
        pause_seconds: int = DEFAULT_PAUSE_SECONDS,
        max_batches_per_run: int = DEFAULT_MAX_BATCHES_PER_RUN,
        clock: Callable[[], datetime] = _utc_now,
        telemetry: TelemetryClient | None = None,
        cycle_lock: ProcessLock | None = None,
    ) -> None:
        self._repository = repository
        self._tokens = token_repository
        self._export_service = export_service
        self._client_factory = client_factory
        self._pause_seconds = max(1, pause_seconds)
        self._max_batches_per_run = max(1, max_batches_per_run)
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._cycle_lock = cycle_lock

    def init_auto_resume(self, user_id: str) -> AutoResumeState:
        state = self._repository.upsert_active(user_id)
        LOGGER.info("auto-resume enabled user_id=%s", user_id)
        return state

    def disable_auto_resume(self, user_id: str) -> AutoResumeState | None:
        removed = self._repository.delete(user_id)
        LOGGER.info("auto-resume disabled user_id=%s existed=%s", user_id, removed is not None)
        return removed

    def pause_auto_resume_for_quota(self, user_id: str) -> AutoResumeState | None:
        now = self._clock()
        paused_until = now + timedelta(seconds=self._pause_seconds)
        state = self._repository.mark_paused(
            user_id,
            reason=PAUSED_REASON_QUOTA_EXCEEDED,
            paused_until=paused_until,
            attempted_at=now,
        )
        LOGGER.info(
            "auto-resume paused for quota user_id=%s paused_until=%s",
            user_id,
            paused_until.isoformat(),
        )
        return state

    def resume_auto_resume_if_ready(self, user_id: str) -> AutoResumeState | None:
        state = self._repository.get(user_id)
        if state is None:
            return None
        now = self._clock()
        if not _pause_expired(state, now):
            return state
        LOGGER.info("auto-resume pause expired; resuming user_id=%s", user_id)
        return self._repository.mark_active(user_id, next_attempt=now)

    def get_auto_resume_status(self, user_id: str) -> AutoResumeState | None:
        state = self._repository.get(user_id)
        if state is not None and _pause_expired(state, self._clock()):
            return self.resume_auto_resume_if_ready(user_id)
        return state

    def list_active_user_ids(self) -> list[str]:
        return self._repository.list_active_user_ids()

    def list_ready_paused_user_ids(self) -> list[str]:
        return self._repository.list_paused_ready_user_ids(now=self._clock())

    def process_auto_resume_for_user(self, user_id: str) -> AutoResumeOutcome:
        """Run one export batch for a user with auto-resume enabled.

        Never raises: every failure is reported as an `error` outcome so a
        driver can keep going with the remaining users.
        """
        try:
            state = self.resume_auto_resume_if_ready(user_id)
            if state is None:
                return AutoResumeOutcome(kind="error", message="Auto-resume not enabled")
            if state.status != AUTO_RESUME_ACTIVE:
                return AutoResumeOutcome(
                    kind="error",
                    message=f"Auto-resume paused: {state.paused_reason}",
                )

            export_status = self._export_service.get_export_status(user_id)
            if not export_status.has_incomplete_work:
                LOGGER.info("auto-resume found export complete user_id=%s", user_id)
                return AutoResumeOutcome(kind="complete", message="Export already complete")

            access_token = self._tokens.get_access_token(user_id)
            if access_token is None:
                raise MissingAccessTokenError(user_id)

            self._repository.touch_attempt(user_id, attempted_at=self._clock())
            client = self._client_factory(user_id, access_token)
            result = self._export_service.process_batch(user_id, client)

            if result.should_stop:
                LOGGER.info(
                    "auto-resume hit quota ceiling user_id=%s quota_used=%s ceiling=%s",
                    user_id,
                    result.quota_used_today,
                    result.quota_ceiling,
                )
                self.pause_auto_resume_for_quota(user_id)
                return AutoResumeOutcome(kind="paused", videos_imported=result.videos_imported)
            if result.export_complete:
                return AutoResumeOutcome(kind="complete", message="Export complete")

            LOGGER.info(
                "auto-resume batch done user_id=%s source_id=%s videos_imported=%s",
                user_id,
                result.source_id,
                result.videos_imported,
            )
            return AutoResumeOutcome(kind="progress", videos_imported=result.videos_imported)
        except Exception as exc:
            LOGGER.error("auto-resume batch failed user_id=%s", user_id, exc_info=True)
            return AutoResumeOutcome(kind="error", message=str(exc) or type(exc).__name__)

    def run_auto_resume_cycle(self) -> AutoResumeRunSummary:
        """Resume expired pauses, then run one batch per active user.

        Raises `AutoResumeCycleBusyError` when the cycle lock is held by the
        scheduler or a cron request in this or another process.
        """
        if self._cycle_lock is None:
            return self._run_cycle()
        if not self._cycle_lock.acquire():
            LOGGER.info("auto-resume cycle skipped; lock held path=%s", self._cycle_lock.path)
            raise AutoResumeCycleBusyError()
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> AutoResumeRunSummary:
        started_at = time.perf_counter()
        summary = AutoResumeRunSummary(timestamp=self._clock().isoformat())
        self._telemetry.emit("auto_resume.cycle.start")

        for user_id in self.list_ready_paused_user_ids():
            try:
                self.resume_auto_resume_if_ready(user_id)
                summary.resumed += 1
            except Exception as exc:
                LOGGER.error("auto-resume resume failed user_id=%s", user_id, exc_info=True)
                summary.errors.append(AutoResumeUserError(user_id=user_id, error=str(exc)))

        active_user_ids = self.list_active_user_ids()
        batches = 0
        for user_id in active_user_ids:
            if batches >= self._max_batches_per_run:
                LOGGER.info(
                    "auto-resume batch limit reached batches=%s remaining_users=%s",
                    batches,
                    len(active_user_ids) - batches,
                )
                break
            outcome = self.process_auto_resume_for_user(user_id)
            batches += 1
            if outcome.kind == "progress":
                summary.processed += 1
            elif outcome.kind == "paused":
                summary.paused += 1
            elif outcome.kind == "complete":
                summary.completed += 1
            else:
                summary.errors.append(
                    AutoResumeUserError(user_id=user_id, error=outcome.message or "Unknown error")
                )

        summary.duration_ms = int((time.perf_counter() - started_at) * 1000)
        LOGGER.info(
            "auto-resume cycle done processed=%s paused=%s completed=%s resumed=%s errors=%s",
            summary.processed,
            summary.paused,
            summary.completed,
            summary.resumed,
            len(summary.errors),
        )
        self._telemetry.emit(
            "auto_resume.cycle.finish",
            processed=summary.processed,
            paused=summary.paused,
            completed=summary.completed,
            resumed=summary.resumed,
            errors=len(summary.errors),
            duration_ms=summary.duration_ms,
        )
        return summary


def _pause_expired(state: AutoResumeState, now: datetime) -> bool:
    return (
        state.status == AUTO_RESUME_PAUSED
        and state.paused_until is not None
        and now >= state.paused_until
    )
