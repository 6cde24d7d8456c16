from __future__ import annotations

from functools import lru_cache

from ytpm.app.config import AppSettings, load_settings
from ytpm.app.repositories.auto_resume_repository import AutoResumeRepository
from ytpm.app.repositories.database import Database
from ytpm.app.repositories.export_progress_repository import ExportProgressRepository
from ytpm.app.repositories.exported_video_repository import ExportedVideoRepository
from ytpm.app.repositories.oauth_token_repository import OAuthTokenRepository
from ytpm.app.repositories.quota_repository import QuotaRepository
from ytpm.app.services.auto_resume_service import (
    CYCLE_LOCK_FILE_NAME,
    AutoResumeService,
    PageClientFactory,
)
from ytpm.app.services.export_service import ExportService
from ytpm.app.services.process_lock import ProcessLock
from ytpm.app.services.quota_service import QuotaLedger
from ytpm.app.services.youtube_client import GoogleYouTubePageClient, YouTubePageClient
from ytpm.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    settings = get_settings()
    database = Database(
        settings.db_path,
        retry_attempts=settings.storage_retry_attempts,
        retry_backoff_seconds=settings.storage_retry_backoff_seconds,
    )
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_quota_ledger() -> QuotaLedger:
    return QuotaLedger(
        QuotaRepository(get_database()),
        daily_limit=get_settings().youtube_daily_quota_limit,
    )


@lru_cache(maxsize=1)
def get_token_repository() -> OAuthTokenRepository:
    return OAuthTokenRepository(get_database())


@lru_cache(maxsize=1)
def get_export_service() -> ExportService:
    settings = get_settings()
    database = get_database()
    return ExportService(
        progress_repository=ExportProgressRepository(database),
        video_repository=ExportedVideoRepository(database),
        quota_ledger=get_quota_ledger(),
        quota_ceiling_percent=settings.export_quota_ceiling_percent,
        required_units_per_batch=settings.export_required_units_per_batch,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_auto_resume_service() -> AutoResumeService:
    settings = get_settings()
    return AutoResumeService(
        repository=AutoResumeRepository(get_database()),
        token_repository=get_token_repository(),
        export_service=get_export_service(),
        client_factory=build_page_client,
        pause_seconds=settings.auto_resume_pause_seconds,
        max_batches_per_run=settings.auto_resume_max_batches_per_run,
        telemetry=get_telemetry(),
        cycle_lock=ProcessLock(settings.data_dir / CYCLE_LOCK_FILE_NAME),
    )


def get_page_client_factory() -> PageClientFactory:
    return build_page_client


def build_page_client(user_id: str, access_token: str) -> YouTubePageClient:
    return GoogleYouTubePageClient(
        user_id=user_id,
        access_token=access_token,
        quota_ledger=get_quota_ledger(),
    )


def reset_cached_dependencies() -> None:
    get_auto_resume_service.cache_clear()
    get_export_service.cache_clear()
    get_token_repository.cache_clear()
    get_quota_ledger.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
