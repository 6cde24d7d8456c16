from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from structlog.contextvars import bind_contextvars, reset_contextvars

from ytpm.app.config import AppSettings
from ytpm.app.dependencies import (
    get_auto_resume_service,
    get_export_service,
    get_page_client_factory,
    get_quota_ledger,
    get_settings,
    get_token_repository,
)
from ytpm.app.models.export_contracts import (
    AccessTokenRequest,
    AccessTokenStoredResponse,
    AutoResumeRunResponse,
    AutoResumeStateResponse,
    ExportBatchResponse,
    ExportInitResponse,
    ExportStatusResponse,
    ExportVideosResponse,
    QuotaHistoryResponse,
    QuotaStatusResponse,
)
from ytpm.app.repositories.oauth_token_repository import OAuthTokenRepository
from ytpm.app.services.auto_resume_service import (
    AutoResumeCycleBusyError,
    AutoResumeService,
    PageClientFactory,
)
from ytpm.app.services.export_service import (
    DEFAULT_VIDEOS_PAGE_LIMIT,
    MAX_VIDEOS_PAGE_LIMIT,
    ExportService,
)
from ytpm.app.services.quota_service import QuotaLedger
from ytpm.app.services.youtube_client import YouTubePageClient

LOGGER = logging.getLogger("ytpm.api")

router = APIRouter()


def require_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """Caller identity as established by the upstream session layer."""
    normalized = x_user_id.strip() if x_user_id is not None else ""
    if not normalized:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return normalized


def require_page_client(
    user_id: Annotated[str, Depends(require_user_id)],
    token_repository: Annotated[OAuthTokenRepository, Depends(get_token_repository)],
    client_factory: Annotated[PageClientFactory, Depends(get_page_client_factory)],
    x_youtube_access_token: Annotated[str | None, Header()] = None,
) -> YouTubePageClient:
    access_token = x_youtube_access_token.strip() if x_youtube_access_token is not None else ""
    if not access_token:
        access_token = token_repository.get_access_token(user_id) or ""
    if not access_token:
        raise HTTPException(status_code=401, detail="No Google OAuth access token available")
    return client_factory(user_id, access_token)


def require_cron_caller(
    request: Request,
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> None:
    trusted_header = settings.cron_trusted_header
    if trusted_header is not None and request.headers.get(trusted_header):
        return

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if (
        settings.cron_secret is not None
        and scheme.lower() == "bearer"
        and secrets.compare_digest(credentials.strip(), settings.cron_secret)
    ):
        return

    LOGGER.warning(
        "unauthorized cron request client=%s user_agent=%s",
        request.client.host if request.client is not None else None,
        request.headers.get("user-agent"),
    )
    raise HTTPException(status_code=401, detail="Unauthorized")


@router.put(
    "/oauth/token",
    response_model=AccessTokenStoredResponse,
    tags=["auth"],
    operation_id="store_access_token",
)
def store_access_token(
    payload: AccessTokenRequest,
    user_id: Annotated[str, Depends(require_user_id)],
    token_repository: Annotated[OAuthTokenRepository, Depends(get_token_repository)],
) -> AccessTokenStoredResponse:
    token_repository.store_access_token(user_id=user_id, access_token=payload.access_token)
    return AccessTokenStoredResponse()


@router.post(
    "/export/init",
    response_model=ExportInitResponse,
    tags=["export"],
    operation_id="export_init",
)
def export_init(
    user_id: Annotated[str, Depends(require_user_id)],
    client: Annotated[YouTubePageClient, Depends(require_page_client)],
    export_service: Annotated[ExportService, Depends(get_export_service)],
) -> ExportInitResponse:
    context_tokens = bind_contextvars(user_id=user_id)
    try:
        return ExportInitResponse.from_result(export_service.init_export(user_id, client))
    finally:
        reset_contextvars(**context_tokens)


@router.post(
    "/export/batch",
    response_model=ExportBatchResponse,
    tags=["export"],
    operation_id="export_batch",
)
def export_batch(
    user_id: Annotated[str, Depends(require_user_id)],
    client: Annotated[YouTubePageClient, Depends(require_page_client)],
    export_service: Annotated[ExportService, Depends(get_export_service)],
) -> ExportBatchResponse:
    context_tokens = bind_contextvars(user_id=user_id)
    try:
        return ExportBatchResponse.from_result(export_service.process_batch(user_id, client))
    finally:
        reset_contextvars(**context_tokens)


@router.get(
    "/export/status",
    response_model=ExportStatusResponse,
    tags=["export"],
    operation_id="export_status",
)
def export_status(
    user_id: Annotated[str, Depends(require_user_id)],
    export_service: Annotated[ExportService, Depends(get_export_service)],
) -> ExportStatusResponse:
    return ExportStatusResponse.from_result(export_service.get_export_status(user_id))


@router.get(
    "/export/videos",
    response_model=ExportVideosResponse,
    tags=["export"],
    operation_id="export_videos",
)
def export_videos(
    user_id: Annotated[str, Depends(require_user_id)],
    export_service: Annotated[ExportService, Depends(get_export_service)],
    language: Annotated[str | None, Query(max_length=16)] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_VIDEOS_PAGE_LIMIT)] = DEFAULT_VIDEOS_PAGE_LIMIT,
) -> ExportVideosResponse:
    return ExportVideosResponse.from_page(
        export_service.get_exported_videos(user_id, language=language, page=page, limit=limit)
    )


@router.get(
    "/quota",
    response_model=QuotaStatusResponse,
    tags=["quota"],
    operation_id="quota_status",
)
def quota_status(
    user_id: Annotated[str, Depends(require_user_id)],
    quota_ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaStatusResponse:
    return QuotaStatusResponse.from_status(
        quota_ledger.get_quota_status(user_id),
        quota_ledger.get_operation_breakdown(user_id),
    )


@router.get(
    "/quota/history",
    response_model=QuotaHistoryResponse,
    tags=["quota"],
    operation_id="quota_history",
)
def quota_history(
    user_id: Annotated[str, Depends(require_user_id)],
    quota_ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
    days: Annotated[int, Query(ge=1, le=90)] = 7,
) -> QuotaHistoryResponse:
    return QuotaHistoryResponse.from_items(quota_ledger.get_quota_history(user_id, days=days))


@router.post(
    "/export/auto-resume/enable",
    response_model=AutoResumeStateResponse,
    tags=["auto-resume"],
    operation_id="auto_resume_enable",
)
def auto_resume_enable(
    user_id: Annotated[str, Depends(require_user_id)],
    service: Annotated[AutoResumeService, Depends(get_auto_resume_service)],
) -> AutoResumeStateResponse:
    return AutoResumeStateResponse.from_state(service.init_auto_resume(user_id))


@router.post(
    "/export/auto-resume/disable",
    response_model=AutoResumeStateResponse,
    tags=["auto-resume"],
    operation_id="auto_resume_disable",
)
def auto_resume_disable(
    user_id: Annotated[str, Depends(require_user_id)],
    service: Annotated[AutoResumeService, Depends(get_auto_resume_service)],
) -> AutoResumeStateResponse:
    service.disable_auto_resume(user_id)
    return AutoResumeStateResponse.from_state(None)


@router.get(
    "/export/auto-resume/status",
    response_model=AutoResumeStateResponse,
    tags=["auto-resume"],
    operation_id="auto_resume_status",
)
def auto_resume_status(
    user_id: Annotated[str, Depends(require_user_id)],
    service: Annotated[AutoResumeService, Depends(get_auto_resume_service)],
) -> AutoResumeStateResponse:
    return AutoResumeStateResponse.from_state(service.get_auto_resume_status(user_id))


@router.get(
    "/cron/auto-resume-export",
    response_model=AutoResumeRunResponse,
    tags=["cron"],
    operation_id="cron_auto_resume_export",
    dependencies=[Depends(require_cron_caller)],
)
def cron_auto_resume_export(
    service: Annotated[AutoResumeService, Depends(get_auto_resume_service)],
) -> AutoResumeRunResponse:
    try:
        summary = service.run_auto_resume_cycle()
    except AutoResumeCycleBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return AutoResumeRunResponse.from_summary(summary)
