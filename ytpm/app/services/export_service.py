from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from fractions import Fraction

from ytpm.app.repositories.export_progress_repository import (
    SOURCE_STATUS_COMPLETED,
    SOURCE_STATUS_IN_PROGRESS,
    SOURCE_STATUS_PENDING,
    ExportProgressRepository,
    ExportSource,
    NewExportSource,
    SourceType,
)
from ytpm.app.repositories.exported_video_repository import (
    ExportedVideo,
    ExportedVideoRepository,
)
from ytpm.app.services.quota_service import QuotaLedger, QuotaStatus
from ytpm.app.services.youtube_client import (
    YouTubePageClient,
    YouTubeQuotaExceededError,
    YouTubeSourceNotFoundError,
)
from ytpm.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("ytpm.export")

DEFAULT_QUOTA_CEILING_PERCENT = 0.8
DEFAULT_REQUIRED_UNITS_PER_BATCH = 2
DEFAULT_VIDEOS_PAGE_LIMIT = 100
MAX_VIDEOS_PAGE_LIMIT = 100_000
ENGLISH_LANGUAGE_PREFIX = "en"


@dataclass(frozen=True)
class ExportInitResult:
    playlist_sources: int
    channel_sources: int
    total_sources: int
    already_completed: int


@dataclass(frozen=True)
class ExportBatchResult:
    source_id: str | None
    source_title: str | None
    source_type: SourceType | None
    videos_imported: int
    has_more: bool
    quota_used_today: int
    quota_ceiling: int
    should_stop: bool
    export_complete: bool


@dataclass(frozen=True)
class ExportStatusResult:
    total_sources: int
    completed_sources: int
    in_progress_sources: int
    pending_sources: int
    total_videos_imported: int
    english_videos_count: int
    quota_used_today: int
    quota_ceiling: int
    last_imported_at: str | None
    has_incomplete_work: bool


@dataclass(frozen=True)
class ExportVideosPage:
    videos: list[ExportedVideo]
    total: int
    page: int
    limit: int
    total_pages: int


def channel_id_to_uploads_playlist_id(channel_id: str) -> str:
    """Map a `UC...` channel id to its `UU...` uploads playlist id.

    Ids that do not follow the `UC` convention are returned unchanged.
    """
    if channel_id.startswith("UC"):
        return f"UU{channel_id[2:]}"
    return channel_id


def quota_ceiling_for(daily_limit: int, percent: float) -> int:
    # Decimal value of the setting, so 0.29 of 100 is 29 and not 28.
    return math.floor(Fraction(str(percent)) * daily_limit)


class ExportService:
    def __init__(
        self,
        *,
        progress_repository: ExportProgressRepository,
        video_repository: ExportedVideoRepository,
        quota_ledger: QuotaLedger,
        quota_ceiling_percent: float = DEFAULT_QUOTA_CEILING_PERCENT,
        required_units_per_batch: int = DEFAULT_REQUIRED_UNITS_PER_BATCH,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._progress = progress_repository
        self._videos = video_repository
        self._quota_ledger = quota_ledger
        self._quota_ceiling_percent = quota_ceiling_percent
        self._required_units_per_batch = max(0, required_units_per_batch)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def quota_ceiling(self) -> int:
        return quota_ceiling_for(self._quota_ledger.daily_limit, self._quota_ceiling_percent)

    def init_export(self, user_id: str, client: YouTubePageClient) -> ExportInitResult:
        existing_count = self._progress.count_sources(user_id=user_id)
        if existing_count > 0:
            completed = self._progress.count_sources(
                user_id=user_id,
                status=SOURCE_STATUS_COMPLETED,
            )
            LOGGER.info(
                "export init skipped; already initialized user_id=%s existing=%s completed=%s",
                user_id,
                existing_count,
                completed,
            )
            return ExportInitResult(
                playlist_sources=0,
                channel_sources=0,
                total_sources=existing_count,
                already_completed=completed,
            )

        playlists = client.list_playlists()
        channels = client.list_subscribed_channels()

        new_sources: list[NewExportSource] = [
            NewExportSource(
                source_type="playlist",
                source_id=playlist.playlist_id,
                source_title=playlist.title,
                total_items=playlist.item_count,
            )
            for playlist in playlists
        ]
        new_sources.extend(
            NewExportSource(
                source_type="channel",
                source_id=channel_id_to_uploads_playlist_id(channel.channel_id),
                source_title=channel.title,
                original_id=channel.channel_id,
            )
            for channel in channels
        )
        self._progress.create_sources(user_id=user_id, sources=new_sources)

        LOGGER.info(
            "export initialized user_id=%s playlists=%s channels=%s",
            user_id,
            len(playlists),
            len(channels),
        )
        self._telemetry.emit(
            "export.init.finish",
            playlist_sources=len(playlists),
            channel_sources=len(channels),
        )
        return ExportInitResult(
            playlist_sources=len(playlists),
            channel_sources=len(channels),
            total_sources=len(playlists) + len(channels),
            already_completed=0,
        )

    def process_batch(self, user_id: str, client: YouTubePageClient) -> ExportBatchResult:
        """Advance the user's export by at most one page of one source.

        Progress is committed before returning, so the call can be
        interrupted and repeated at any point. Provider failures other than
        quota exhaustion and missing sources propagate with the source left
        `in_progress` at its last committed cursor.
        """
        started_at = time.perf_counter()
        ceiling = self.quota_ceiling
        quota = self._quota_ledger.get_quota_status(user_id)
        if quota.consumed_units >= ceiling or not self._quota_ledger.check_quota_available(
            user_id, self._required_units_per_batch
        ):
            LOGGER.info(
                "export batch stopped at quota ceiling user_id=%s consumed=%s ceiling=%s",
                user_id,
                quota.consumed_units,
                ceiling,
            )
            self._telemetry.emit(
                "export.batch.finish",
                outcome="quota_ceiling",
                quota_used_today=quota.consumed_units,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
            )
            return ExportBatchResult(
                source_id=None,
                source_title=None,
                source_type=None,
                videos_imported=0,
                has_more=True,
                quota_used_today=quota.consumed_units,
                quota_ceiling=ceiling,
                should_stop=True,
                export_complete=False,
            )

        while True:
            source = self._progress.next_incomplete_source(user_id=user_id)
            if source is None:
                LOGGER.info("export complete user_id=%s", user_id)
                self._telemetry.emit(
                    "export.batch.finish",
                    outcome="complete",
                    quota_used_today=quota.consumed_units,
                    duration_ms=int((time.perf_counter() - started_at) * 1000),
                )
                return ExportBatchResult(
                    source_id=None,
                    source_title=None,
                    source_type=None,
                    videos_imported=0,
                    has_more=False,
                    quota_used_today=quota.consumed_units,
                    quota_ceiling=ceiling,
                    should_stop=False,
                    export_complete=True,
                )

            if source.status == SOURCE_STATUS_PENDING:
                self._progress.mark_in_progress(source.row_id)

            try:
                page = client.list_playlist_items_page(source.source_id, source.last_page_token)
            except YouTubeSourceNotFoundError:
                LOGGER.warning(
                    "export source not found; marking completed user_id=%s source_id=%s",
                    user_id,
                    source.source_id,
                )
                self._progress.mark_completed(source.row_id)
                continue
            except YouTubeQuotaExceededError:
                LOGGER.warning(
                    "export batch hit provider quota user_id=%s source_id=%s",
                    user_id,
                    source.source_id,
                )
                return self._report(
                    user_id,
                    source,
                    videos_imported=0,
                    has_more=True,
                    force_stop=True,
                    started_at=started_at,
                )

            inserted = self._videos.insert_videos(
                user_id=user_id,
                source_type=source.source_type,
                source_id=source.source_id,
                source_title=source.source_title,
                videos=page.videos,
            )
            new_status = self._progress.record_page(
                source.row_id,
                next_page_token=page.next_page_token,
                page_item_count=len(page.videos),
                total_items=page.total_results,
            )
            LOGGER.info(
                "export page persisted user_id=%s source_id=%s page_videos=%s inserted=%s status=%s",
                user_id,
                source.source_id,
                len(page.videos),
                inserted,
                new_status,
            )
            return self._report(
                user_id,
                source,
                videos_imported=inserted,
                has_more=new_status == SOURCE_STATUS_IN_PROGRESS,
                force_stop=False,
                started_at=started_at,
            )

    def list_sources(self, user_id: str) -> list[ExportSource]:
        return self._progress.list_sources(user_id=user_id)

    def get_export_status(self, user_id: str) -> ExportStatusResult:
        completed = self._progress.count_sources(user_id=user_id, status=SOURCE_STATUS_COMPLETED)
        in_progress = self._progress.count_sources(
            user_id=user_id,
            status=SOURCE_STATUS_IN_PROGRESS,
        )
        pending = self._progress.count_sources(user_id=user_id, status=SOURCE_STATUS_PENDING)
        quota = self._quota_ledger.get_quota_status(user_id)
        return ExportStatusResult(
            total_sources=completed + in_progress + pending,
            completed_sources=completed,
            in_progress_sources=in_progress,
            pending_sources=pending,
            total_videos_imported=self._videos.count_videos(user_id=user_id),
            english_videos_count=self._videos.count_videos(
                user_id=user_id,
                language_prefix=ENGLISH_LANGUAGE_PREFIX,
            ),
            quota_used_today=quota.consumed_units,
            quota_ceiling=self.quota_ceiling,
            last_imported_at=self._progress.latest_imported_at(user_id=user_id),
            has_incomplete_work=(in_progress + pending) > 0,
        )

    def get_exported_videos(
        self,
        user_id: str,
        *,
        language: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_VIDEOS_PAGE_LIMIT,
    ) -> ExportVideosPage:
        normalized_page = max(1, page)
        normalized_limit = min(max(1, limit), MAX_VIDEOS_PAGE_LIMIT)
        total = self._videos.count_videos(user_id=user_id, language_prefix=language)
        videos = self._videos.list_videos(
            user_id=user_id,
            language_prefix=language,
            offset=(normalized_page - 1) * normalized_limit,
            limit=normalized_limit,
        )
        return ExportVideosPage(
            videos=videos,
            total=total,
            page=normalized_page,
            limit=normalized_limit,
            total_pages=math.ceil(total / normalized_limit),
        )

    def _report(
        self,
        user_id: str,
        source: ExportSource,
        *,
        videos_imported: int,
        has_more: bool,
        force_stop: bool,
        started_at: float,
    ) -> ExportBatchResult:
        ceiling = self.quota_ceiling
        quota: QuotaStatus = self._quota_ledger.get_quota_status(user_id)
        should_stop = force_stop or quota.consumed_units >= ceiling
        self._telemetry.emit(
            "export.batch.finish",
            outcome="provider_quota" if force_stop else "page",
            source_type=source.source_type,
            videos_imported=videos_imported,
            has_more=has_more,
            should_stop=should_stop,
            quota_used_today=quota.consumed_units,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return ExportBatchResult(
            source_id=source.source_id,
            source_title=source.source_title,
            source_type=source.source_type,
            videos_imported=videos_imported,
            has_more=has_more,
            quota_used_today=quota.consumed_units,
            quota_ceiling=ceiling,
            should_stop=should_stop,
            export_complete=False,
        )
