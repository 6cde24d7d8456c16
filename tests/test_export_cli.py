from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from ytpm.app.dependencies import get_quota_ledger, reset_cached_dependencies
from ytpm.app.repositories.exported_video_repository import HarvestedVideo
from ytpm.app.scripts.export_cli import main
from ytpm.app.services.auto_resume_service import CYCLE_LOCK_FILE_NAME
from ytpm.app.services.process_lock import ProcessLock
from ytpm.app.services.youtube_client import (
    PlaylistItemsPage,
    YouTubeChannel,
    YouTubePlaylist,
)


class _FakePageClient:
    def list_playlists(self) -> list[YouTubePlaylist]:
        return [YouTubePlaylist(playlist_id="PL1", title="Saved", item_count=1)]

    def list_subscribed_channels(self) -> list[YouTubeChannel]:
        return []

    def list_playlist_items_page(
        self,
        source_id: str,
        page_token: str | None = None,
    ) -> PlaylistItemsPage:
        return PlaylistItemsPage(
            videos=[HarvestedVideo(video_id="v1", title="Only video", language="en")],
            next_page_token=None,
            total_results=1,
        )


@pytest.fixture
def cli_env(app_env: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[list[tuple[str, str]]]:
    _ = app_env
    calls: list[tuple[str, str]] = []

    def _build(user_id: str, access_token: str) -> _FakePageClient:
        calls.append((user_id, access_token))
        return _FakePageClient()

    monkeypatch.setattr("ytpm.app.scripts.export_cli.build_page_client", _build)
    yield calls
    reset_cached_dependencies()


def test_cli_runs_export_until_complete(
    cli_env: list[tuple[str, str]],
    capsys: pytest.CaptureFixture[str],
) -> None:
    main(["token", "set", "--user-id", "u1", "--access-token", "ya29.cli"])
    main(["init", "--user-id", "u1"])
    main(["batch", "--user-id", "u1", "--until-stop"])
    main(["status", "--user-id", "u1"])
    main(["videos", "--user-id", "u1", "--language", "en"])

    output = capsys.readouterr().out
    assert "Stored access token for user u1." in output
    assert "Created 1 playlist sources and 0 channel sources." in output
    assert "playlist PL1 (Saved): imported=1 has_more=False" in output
    assert "Export complete." in output
    assert "Imported 1 new videos." in output
    assert "videos\t1 (english=1)" in output
    assert "v1\ten\t-\tOnly video" in output
    assert cli_env == [("u1", "ya29.cli"), ("u1", "ya29.cli")]


def test_cli_reports_existing_initialization(
    cli_env: list[tuple[str, str]],
    capsys: pytest.CaptureFixture[str],
) -> None:
    main(["init", "--user-id", "u1", "--access-token", "ya29.flag"])
    main(["init", "--user-id", "u1", "--access-token", "ya29.flag"])

    output = capsys.readouterr().out
    assert "Already initialized: 1 sources, 0 completed." in output


def test_cli_requires_token(cli_env: list[tuple[str, str]]) -> None:
    with pytest.raises(SystemExit, match="token set"):
        main(["batch", "--user-id", "nobody"])
    assert cli_env == []


def test_cli_auto_resume_commands(
    cli_env: list[tuple[str, str]],
    capsys: pytest.CaptureFixture[str],
) -> None:
    main(["auto-resume", "enable", "--user-id", "u1"])
    main(["auto-resume", "status", "--user-id", "u1"])
    main(["auto-resume", "run"])
    main(["auto-resume", "disable", "--user-id", "u1"])

    output = capsys.readouterr().out
    assert "status\tactive" in output
    assert "processed=0 paused=0 completed=1 resumed=0 errors=0" in output
    assert output.rstrip().endswith("Auto-resume disabled.")


def test_cli_auto_resume_run_exits_while_cycle_running(
    cli_env: list[tuple[str, str]],
    app_env: Path,
) -> None:
    running_cycle = ProcessLock(app_env.resolve() / CYCLE_LOCK_FILE_NAME)
    assert running_cycle.acquire() is True
    try:
        with pytest.raises(SystemExit, match="already running"):
            main(["auto-resume", "run"])
    finally:
        running_cycle.release()

    assert cli_env == []


def test_cli_lists_sources_and_quota_breakdown(
    cli_env: list[tuple[str, str]],
    capsys: pytest.CaptureFixture[str],
) -> None:
    main(["init", "--user-id", "u1", "--access-token", "ya29.flag"])
    main(["batch", "--user-id", "u1", "--access-token", "ya29.flag"])
    get_quota_ledger().track_quota_usage("u1", "playlistItems.list", multiplier=3)
    get_quota_ledger().track_quota_usage("u1", "videos.list")
    capsys.readouterr()

    main(["status", "--user-id", "u1", "--sources"])
    main(["quota", "--user-id", "u1"])

    output = capsys.readouterr().out
    assert "completed\tplaylist\tPL1\timported=1\tSaved" in output
    assert "4/10000 (0.0%) remaining=9996" in output
    assert "playlistItems.list\t3" in output
    assert "videos.list\t1" in output
