from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ytpm.app.repositories.auto_resume_repository import AutoResumeState
from ytpm.app.repositories.exported_video_repository import ExportedVideo
from ytpm.app.services.auto_resume_service import AutoResumeRunSummary
from ytpm.app.services.export_service import (
    ExportBatchResult,
    ExportInitResult,
    ExportStatusResult,
    ExportVideosPage,
)
from ytpm.app.services.quota_service import QuotaHistoryItem, QuotaStatus


class AccessTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1, max_length=4096)

    @field_validator("access_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must not be blank")
        return normalized


class AccessTokenStoredResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool = True


class ExportInitResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    playlist_sources: int
    channel_sources: int
    total_sources: int
    already_completed: int

    @classmethod
    def from_result(cls, result: ExportInitResult) -> ExportInitResponse:
        return cls(
            playlist_sources=result.playlist_sources,
            channel_sources=result.channel_sources,
            total_sources=result.total_sources,
            already_completed=result.already_completed,
        )


class ExportBatchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_id: str | None
    source_title: str | None
    source_type: Literal["playlist", "channel"] | None
    videos_imported: int
    has_more: bool
    quota_used_today: int
    quota_ceiling: int
    should_stop: bool
    export_complete: bool

    @classmethod
    def from_result(cls, result: ExportBatchResult) -> ExportBatchResponse:
        return cls(
            source_id=result.source_id,
            source_title=result.source_title,
            source_type=result.source_type,
            videos_imported=result.videos_imported,
            has_more=result.has_more,
            quota_used_today=result.quota_used_today,
            quota_ceiling=result.quota_ceiling,
            should_stop=result.should_stop,
            export_complete=result.export_complete,
        )


class ExportStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

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

    @classmethod
    def from_result(cls, result: ExportStatusResult) -> ExportStatusResponse:
        return cls(
            total_sources=result.total_sources,
            completed_sources=result.completed_sources,
            in_progress_sources=result.in_progress_sources,
            pending_sources=result.pending_sources,
            total_videos_imported=result.total_videos_imported,
            english_videos_count=result.english_videos_count,
            quota_used_today=result.quota_used_today,
            quota_ceiling=result.quota_ceiling,
            last_imported_at=result.last_imported_at,
            has_incomplete_work=result.has_incomplete_work,
        )


class ExportedVideoItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

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

    @classmethod
    def from_video(cls, video: ExportedVideo) -> ExportedVideoItem:
        return cls(
            video_id=video.video_id,
            title=video.title,
            channel_id=video.channel_id,
            channel_title=video.channel_title,
            language=video.language,
            source_type=video.source_type,
            source_id=video.source_id,
            source_title=video.source_title,
            published_at=video.published_at,
            thumbnail_url=video.thumbnail_url,
        )


class ExportVideosResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    videos: list[ExportedVideoItem]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: ExportVideosPage) -> ExportVideosResponse:
        return cls(
            videos=[ExportedVideoItem.from_video(video) for video in page.videos],
            total=page.total,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        )


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    consumed_units: int
    daily_limit: int
    remaining_units: int
    percent_used: float
    by_operation: dict[str, int]

    @classmethod
    def from_status(
        cls,
        status: QuotaStatus,
        by_operation: dict[str, int],
    ) -> QuotaStatusResponse:
        return cls(
            date=status.date,
            consumed_units=status.consumed_units,
            daily_limit=status.daily_limit,
            remaining_units=status.remaining_units,
            percent_used=round(status.percent_used, 2),
            by_operation=by_operation,
        )


class QuotaHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    consumed_units: int
    daily_limit: int


class QuotaHistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    history: list[QuotaHistoryEntry]

    @classmethod
    def from_items(cls, items: list[QuotaHistoryItem]) -> QuotaHistoryResponse:
        return cls(
            history=[
                QuotaHistoryEntry(
                    date=item.date,
                    consumed_units=item.consumed_units,
                    daily_limit=item.daily_limit,
                )
                for item in items
            ]
        )


class AutoResumeStateItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    status: Literal["active", "paused"]
    paused_reason: str | None
    paused_until: datetime | None
    last_attempt: datetime | None
    next_attempt: datetime | None

    @classmethod
    def from_state(cls, state: AutoResumeState) -> AutoResumeStateItem:
        return cls(
            user_id=state.user_id,
            status=state.status,
            paused_reason=state.paused_reason,
            paused_until=state.paused_until,
            last_attempt=state.last_attempt,
            next_attempt=state.next_attempt,
        )


class AutoResumeStateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auto_resume: AutoResumeStateItem | None

    @classmethod
    def from_state(cls, state: AutoResumeState | None) -> AutoResumeStateResponse:
        return cls(auto_resume=AutoResumeStateItem.from_state(state) if state is not None else None)


class AutoResumeUserErrorItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    error: str


class AutoResumeRunResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    processed: int
    paused: int
    completed: int
    resumed: int
    errors: list[AutoResumeUserErrorItem]
    timestamp: str
    duration_ms: int

    @classmethod
    def from_summary(cls, summary: AutoResumeRunSummary) -> AutoResumeRunResponse:
        return cls(
            processed=summary.processed,
            paused=summary.paused,
            completed=summary.completed,
            resumed=summary.resumed,
            errors=[
                AutoResumeUserErrorItem(user_id=error.user_id, error=error.error)
                for error in summary.errors
            ],
            timestamp=summary.timestamp,
            duration_ms=summary.duration_ms,
        )
