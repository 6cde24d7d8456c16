from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from importlib import import_module
from typing import Any, Protocol, cast

from ytpm.app.repositories.exported_video_repository import HarvestedVideo
from ytpm.app.services.quota_service import QuotaLedger

LOGGER = logging.getLogger("ytpm.youtube")

PAGE_SIZE = 50
# Rate-limit reasons are transient and stay plain `YouTubeClientError`s.
_QUOTA_REASONS: frozenset[str] = frozenset({"quotaexceeded", "dailylimitexceeded"})
_NOT_FOUND_REASONS: frozenset[str] = frozenset(
    {
        "playlistnotfound",
        "channelnotfound",
        "notfound",
        "subscriptionnotfound",
    }
)
_QUOTA_MESSAGE_MARKERS: tuple[str, ...] = (
    "quotaexceeded",
    "dailylimitexceeded",
    "quota exceeded",
    "exceeded your quota",
)


@dataclass(frozen=True)
class YouTubePlaylist:
    playlist_id: str
    title: str
    item_count: int
    published_at: str | None = None


@dataclass(frozen=True)
class YouTubeChannel:
    channel_id: str
    title: str
    subscribed_at: str | None = None


@dataclass(frozen=True)
class PlaylistItemsPage:
    videos: list[HarvestedVideo]
    next_page_token: str | None
    total_results: int


class YouTubeClientError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class YouTubeQuotaExceededError(YouTubeClientError):
    pass


class YouTubeSourceNotFoundError(YouTubeClientError):
    pass


class YouTubePageClient(Protocol):
    def list_playlists(self) -> list[YouTubePlaylist]:
        ...

    def list_subscribed_channels(self) -> list[YouTubeChannel]:
        ...

    def list_playlist_items_page(
        self,
        source_id: str,
        page_token: str | None = None,
    ) -> PlaylistItemsPage:
        ...


class GoogleYouTubePageClient:
    """YouTube Data API v3 access on behalf of one user.

    Every successful call is recorded on the quota ledger under its
    operation name, so callers never account for units themselves.
    """

    def __init__(
        self,
        *,
        user_id: str,
        access_token: str,
        quota_ledger: QuotaLedger,
        client: Any | None = None,
    ) -> None:
        self._user_id = user_id
        self._quota_ledger = quota_ledger
        self._client = client if client is not None else _build_youtube_client(access_token)

    def list_playlists(self) -> list[YouTubePlaylist]:
        playlists: list[YouTubePlaylist] = []
        page_token: str | None = None
        pages = 0
        while True:
            pages += 1
            query_kwargs: dict[str, object] = {
                "part": "snippet,contentDetails",
                "mine": True,
                "maxResults": PAGE_SIZE,
            }
            if page_token is not None:
                query_kwargs["pageToken"] = page_token
            response = self._execute(
                "playlists.list",
                lambda: self._client.playlists().list(**query_kwargs).execute(),
                resource_id="mine",
            )

            for item in _as_list(response.get("items")):
                item_dict = _as_dict(item)
                playlist_id = _coerce_nonempty_string(item_dict.get("id"))
                if playlist_id is None:
                    continue
                snippet = _as_dict(item_dict.get("snippet"))
                content_details = _as_dict(item_dict.get("contentDetails"))
                playlists.append(
                    YouTubePlaylist(
                        playlist_id=playlist_id,
                        title=_coerce_nonempty_string(snippet.get("title")) or "",
                        item_count=_coerce_int(content_details.get("itemCount")) or 0,
                        published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
                    )
                )

            page_token = _next_page_token(response)
            if page_token is None:
                break

        LOGGER.info(
            "youtube playlists listed user_id=%s playlists=%s pages=%s",
            self._user_id,
            len(playlists),
            pages,
        )
        return playlists

    def list_subscribed_channels(self) -> list[YouTubeChannel]:
        channels: list[YouTubeChannel] = []
        seen_channel_ids: set[str] = set()
        page_token: str | None = None
        pages = 0
        while True:
            pages += 1
            query_kwargs: dict[str, object] = {
                "part": "snippet",
                "mine": True,
                "maxResults": PAGE_SIZE,
            }
            if page_token is not None:
                query_kwargs["pageToken"] = page_token
            response = self._execute(
                "subscriptions.list",
                lambda: self._client.subscriptions().list(**query_kwargs).execute(),
                resource_id="mine",
            )

            for item in _as_list(response.get("items")):
                snippet = _as_dict(_as_dict(item).get("snippet"))
                resource = _as_dict(snippet.get("resourceId"))
                channel_id = _coerce_nonempty_string(resource.get("channelId"))
                if channel_id is None or channel_id in seen_channel_ids:
                    continue
                seen_channel_ids.add(channel_id)
                channels.append(
                    YouTubeChannel(
                        channel_id=channel_id,
                        title=_coerce_nonempty_string(snippet.get("title")) or "",
                        subscribed_at=_coerce_nonempty_string(snippet.get("publishedAt")),
                    )
                )

            page_token = _next_page_token(response)
            if page_token is None:
                break

        LOGGER.info(
            "youtube subscriptions listed user_id=%s channels=%s pages=%s",
            self._user_id,
            len(channels),
            pages,
        )
        return channels

    def list_playlist_items_page(
        self,
        source_id: str,
        page_token: str | None = None,
    ) -> PlaylistItemsPage:
        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails",
            "playlistId": source_id,
            "maxResults": PAGE_SIZE,
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token
        response = self._execute(
            "playlistItems.list",
            lambda: self._client.playlistItems().list(**query_kwargs).execute(),
            resource_id=source_id,
        )

        items = [_as_dict(item) for item in _as_list(response.get("items"))]
        next_page_token = _next_page_token(response)
        total_results = _coerce_int(_as_dict(response.get("pageInfo")).get("totalResults")) or 0

        video_ids: list[str] = []
        for item in items:
            video_id = _playlist_item_video_id(item)
            if video_id is not None:
                video_ids.append(video_id)

        if not video_ids:
            return PlaylistItemsPage(
                videos=[],
                next_page_token=next_page_token,
                total_results=total_results,
            )

        details_response = self._execute(
            "videos.list",
            lambda: self._client.videos()
            .list(part="snippet,contentDetails", id=",".join(video_ids), maxResults=PAGE_SIZE)
            .execute(),
            resource_id=source_id,
        )
        details_by_id: dict[str, dict[str, Any]] = {}
        for detail in _as_list(details_response.get("items")):
            detail_dict = _as_dict(detail)
            detail_id = _coerce_nonempty_string(detail_dict.get("id"))
            if detail_id is not None:
                details_by_id[detail_id] = detail_dict

        videos: list[HarvestedVideo] = []
        for item in items:
            video_id = _playlist_item_video_id(item)
            if video_id is None:
                continue
            videos.append(_merge_video(video_id, item, details_by_id.get(video_id)))

        LOGGER.info(
            "youtube playlist page fetched user_id=%s source_id=%s videos=%s has_next=%s",
            self._user_id,
            source_id,
            len(videos),
            next_page_token is not None,
        )
        return PlaylistItemsPage(
            videos=videos,
            next_page_token=next_page_token,
            total_results=total_results,
        )

    def _execute(
        self,
        operation: str,
        call: Any,
        *,
        resource_id: str,
    ) -> dict[str, Any]:
        started_at = time.perf_counter()
        try:
            raw_response = call()
        except YouTubeClientError:
            raise
        except Exception as exc:
            error = classify_youtube_error(exc, operation=operation, resource_id=resource_id)
            LOGGER.warning(
                "youtube call failed user_id=%s operation=%s resource_id=%s "
                "status=%s error_type=%s duration_ms=%s",
                self._user_id,
                operation,
                resource_id,
                error.status,
                type(error).__name__,
                int((time.perf_counter() - started_at) * 1000),
            )
            raise error from exc

        self._quota_ledger.track_quota_usage(self._user_id, operation)
        LOGGER.debug(
            "youtube call ok user_id=%s operation=%s resource_id=%s duration_ms=%s",
            self._user_id,
            operation,
            resource_id,
            int((time.perf_counter() - started_at) * 1000),
        )
        return _as_dict(raw_response)


def classify_youtube_error(
    exc: Exception,
    *,
    operation: str,
    resource_id: str,
) -> YouTubeClientError:
    status = _extract_http_status(exc)
    reasons = _extract_error_reasons(exc)
    summary = _summarize_exception_message(exc)
    message = f"{operation} failed for {resource_id}: {summary}"
    lowered = summary.lower()

    if reasons & _QUOTA_REASONS or any(marker in lowered for marker in _QUOTA_MESSAGE_MARKERS):
        return YouTubeQuotaExceededError(message, status=status)
    if status == 404 or reasons & _NOT_FOUND_REASONS:
        return YouTubeSourceNotFoundError(message, status=status)
    return YouTubeClientError(message, status=status)


def _build_youtube_client(access_token: str) -> Any:
    normalized_token = access_token.strip()
    if not normalized_token:
        raise YouTubeClientError("A Google OAuth access token is required")
    try:
        credentials_module = import_module("google.oauth2.credentials")
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeClientError(
            "YouTube access requires google-api-python-client and google-auth dependencies"
        ) from exc

    credentials_cls: Any = credentials_module.Credentials
    build_fn: Any = discovery_module.build
    credentials = credentials_cls(token=normalized_token)
    return build_fn("youtube", "v3", credentials=credentials, cache_discovery=False)


def _merge_video(
    video_id: str,
    item: dict[str, Any],
    detail: dict[str, Any] | None,
) -> HarvestedVideo:
    item_snippet = _as_dict(item.get("snippet"))
    detail_snippet = _as_dict(detail.get("snippet")) if detail is not None else {}

    return HarvestedVideo(
        video_id=video_id,
        title=(
            _coerce_nonempty_string(detail_snippet.get("title"))
            or _coerce_nonempty_string(item_snippet.get("title"))
            or ""
        ),
        channel_id=(
            _coerce_nonempty_string(detail_snippet.get("channelId"))
            or _coerce_nonempty_string(item_snippet.get("videoOwnerChannelId"))
        ),
        channel_title=(
            _coerce_nonempty_string(detail_snippet.get("channelTitle"))
            or _coerce_nonempty_string(item_snippet.get("videoOwnerChannelTitle"))
        ),
        language=_coerce_nonempty_string(detail_snippet.get("defaultAudioLanguage")),
        published_at=_coerce_nonempty_string(detail_snippet.get("publishedAt")),
        thumbnail_url=(
            _thumbnail_url(detail_snippet) or _thumbnail_url(item_snippet)
        ),
    )


def _playlist_item_video_id(item: dict[str, Any]) -> str | None:
    content_details = _as_dict(item.get("contentDetails"))
    video_id = _coerce_nonempty_string(content_details.get("videoId"))
    if video_id is not None:
        return video_id
    resource = _as_dict(_as_dict(item.get("snippet")).get("resourceId"))
    return _coerce_nonempty_string(resource.get("videoId"))


def _thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in ("medium", "high", "default"):
        url = _coerce_nonempty_string(_as_dict(thumbnails.get(quality)).get("url"))
        if url is not None:
            return url
    return None


def _next_page_token(response: dict[str, Any]) -> str | None:
    raw_next = response.get("nextPageToken")
    return raw_next if isinstance(raw_next, str) and raw_next.strip() else None


def _extract_http_status(exc: Exception) -> int | None:
    status = _coerce_int(getattr(exc, "status_code", None))
    if status is not None:
        return status
    response = getattr(exc, "resp", None)
    if response is not None:
        return _coerce_int(getattr(response, "status", None))
    return None


def _extract_error_reasons(exc: Exception) -> set[str]:
    reasons: set[str] = set()
    for detail in _as_list(getattr(exc, "error_details", None)):
        reason = _coerce_nonempty_string(_as_dict(detail).get("reason"))
        if reason is not None:
            reasons.add(reason.lower())

    content = getattr(exc, "content", None)
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    if isinstance(content, str) and content.strip():
        try:
            payload = json.loads(content)
        except json.JSONDecodeError:
            payload = None
        error_payload = _as_dict(_as_dict(payload).get("error"))
        for entry in _as_list(error_payload.get("errors")):
            reason = _coerce_nonempty_string(_as_dict(entry).get("reason"))
            if reason is not None:
                reasons.add(reason.lower())
    return reasons


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
