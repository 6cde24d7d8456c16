from __future__ import annotations

import argparse
from collections.abc import Sequence

from ytpm.app.dependencies import (
    build_page_client,
    get_auto_resume_service,
    get_export_service,
    get_quota_ledger,
    get_token_repository,
)
from ytpm.app.repositories.auto_resume_repository import AutoResumeState
from ytpm.app.services.auto_resume_service import AutoResumeCycleBusyError
from ytpm.app.services.export_service import ExportBatchResult
from ytpm.app.services.youtube_client import YouTubePageClient

DEFAULT_MAX_BATCHES = 200


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    user_parent = argparse.ArgumentParser(add_help=False)
    user_parent.add_argument("--user-id", required=True, help="Export owner user id.")

    token_parent = argparse.ArgumentParser(add_help=False)
    token_parent.add_argument(
        "--access-token",
        default=None,
        help="Google OAuth access token; defaults to the token stored for the user.",
    )

    parser = argparse.ArgumentParser(
        description="Operate the incremental YouTube export for a user.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    token_parser = subparsers.add_parser("token", help="Manage stored OAuth access tokens.")
    token_subparsers = token_parser.add_subparsers(dest="token_command", required=True)
    token_set_parser = token_subparsers.add_parser(
        "set",
        parents=[user_parent],
        help="Store the access token used by auto-resume.",
    )
    token_set_parser.add_argument("--access-token", required=True, help="Google access token.")

    subparsers.add_parser(
        "init",
        parents=[user_parent, token_parent],
        help="Seed export sources from the user's playlists and subscriptions.",
    )

    batch_parser = subparsers.add_parser(
        "batch",
        parents=[user_parent, token_parent],
        help="Process one export batch.",
    )
    batch_parser.add_argument(
        "--until-stop",
        action="store_true",
        help="Keep processing until the quota ceiling or the end of the export.",
    )
    batch_parser.add_argument(
        "--max-batches",
        type=int,
        default=DEFAULT_MAX_BATCHES,
        help=f"Upper bound for --until-stop (default: {DEFAULT_MAX_BATCHES}).",
    )

    status_parser = subparsers.add_parser(
        "status",
        parents=[user_parent],
        help="Show export progress.",
    )
    status_parser.add_argument(
        "--sources",
        action="store_true",
        help="Also list every source with its status and imported count.",
    )

    subparsers.add_parser(
        "quota",
        parents=[user_parent],
        help="Show today's quota usage broken down by API operation.",
    )

    videos_parser = subparsers.add_parser(
        "videos",
        parents=[user_parent],
        help="List exported videos, newest first.",
    )
    videos_parser.add_argument("--language", default=None, help="Language code prefix (e.g. en).")
    videos_parser.add_argument("--page", type=int, default=1)
    videos_parser.add_argument("--limit", type=int, default=20)

    auto_parser = subparsers.add_parser("auto-resume", help="Manage auto-resume.")
    auto_subparsers = auto_parser.add_subparsers(dest="auto_command", required=True)
    auto_subparsers.add_parser("enable", parents=[user_parent], help="Enable auto-resume.")
    auto_subparsers.add_parser("disable", parents=[user_parent], help="Disable auto-resume.")
    auto_subparsers.add_parser("status", parents=[user_parent], help="Show auto-resume state.")
    auto_subparsers.add_parser("run", help="Run one auto-resume cycle for all users now.")

    return parser.parse_args(argv)


def _page_client(user_id: str, access_token: str | None) -> YouTubePageClient:
    token = access_token or get_token_repository().get_access_token(user_id)
    if not token:
        raise SystemExit(f"No access token for user {user_id}; run `token set` first.")
    return build_page_client(user_id, token)


def _print_batch(result: ExportBatchResult) -> None:
    if result.export_complete:
        print("Export complete.")
        return
    if result.source_id is not None:
        print(
            f"{result.source_type} {result.source_id} ({result.source_title or '-'}): "
            f"imported={result.videos_imported} has_more={result.has_more}"
        )
    print(f"Quota: {result.quota_used_today}/{result.quota_ceiling}")
    if result.should_stop:
        print("Quota ceiling reached; resume tomorrow or enable auto-resume.")


def _print_auto_resume(state: AutoResumeState | None) -> None:
    if state is None:
        print("Auto-resume disabled.")
        return
    print(f"status\t{state.status}")
    print(f"paused_reason\t{state.paused_reason or '-'}")
    print(f"paused_until\t{state.paused_until.isoformat() if state.paused_until else '-'}")
    print(f"last_attempt\t{state.last_attempt.isoformat() if state.last_attempt else '-'}")
    print(f"next_attempt\t{state.next_attempt.isoformat() if state.next_attempt else '-'}")


def _run_batches(args: argparse.Namespace) -> None:
    export_service = get_export_service()
    client = _page_client(args.user_id, args.access_token)
    limit = max(1, args.max_batches) if args.until_stop else 1
    total_imported = 0
    for _ in range(limit):
        result = export_service.process_batch(args.user_id, client)
        total_imported += result.videos_imported
        _print_batch(result)
        if result.should_stop or result.export_complete:
            break
    if args.until_stop:
        print(f"Imported {total_imported} new videos.")


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.command == "token":
        get_token_repository().store_access_token(
            user_id=args.user_id,
            access_token=args.access_token,
        )
        print(f"Stored access token for user {args.user_id}.")
        return

    if args.command == "init":
        client = _page_client(args.user_id, args.access_token)
        result = get_export_service().init_export(args.user_id, client)
        created = result.playlist_sources + result.channel_sources
        if created == 0 and result.total_sources > 0:
            print(
                f"Already initialized: {result.total_sources} sources, "
                f"{result.already_completed} completed."
            )
        else:
            print(
                f"Created {result.playlist_sources} playlist sources and "
                f"{result.channel_sources} channel sources."
            )
        return

    if args.command == "batch":
        _run_batches(args)
        return

    if args.command == "status":
        status = get_export_service().get_export_status(args.user_id)
        print(
            f"sources\t{status.total_sources} (completed={status.completed_sources} "
            f"in_progress={status.in_progress_sources} pending={status.pending_sources})"
        )
        print(f"videos\t{status.total_videos_imported} (english={status.english_videos_count})")
        print(f"quota\t{status.quota_used_today}/{status.quota_ceiling}")
        print(f"last_imported_at\t{status.last_imported_at or '-'}")
        print(f"incomplete\t{status.has_incomplete_work}")
        if args.sources:
            for source in get_export_service().list_sources(args.user_id):
                print(
                    f"{source.status}\t{source.source_type}\t{source.source_id}\t"
                    f"imported={source.imported_items}\t{source.source_title or '-'}"
                )
        return

    if args.command == "quota":
        ledger = get_quota_ledger()
        quota = ledger.get_quota_status(args.user_id)
        print(
            f"{quota.date}\t{quota.consumed_units}/{quota.daily_limit} "
            f"({quota.percent_used:.1f}%) remaining={quota.remaining_units}"
        )
        for operation, units in ledger.get_operation_breakdown(args.user_id).items():
            print(f"{operation}\t{units}")
        return

    if args.command == "videos":
        page = get_export_service().get_exported_videos(
            args.user_id,
            language=args.language,
            page=args.page,
            limit=args.limit,
        )
        if not page.videos:
            print("No exported videos found.")
            return
        print("video_id\tlanguage\tchannel_title\ttitle")
        for video in page.videos:
            print(
                "\t".join(
                    [video.video_id, video.language or "-", video.channel_title or "-", video.title]
                )
            )
        print(f"page {page.page}/{page.total_pages} total={page.total}")
        return

    if args.command == "auto-resume":
        service = get_auto_resume_service()
        if args.auto_command == "enable":
            _print_auto_resume(service.init_auto_resume(args.user_id))
            return
        if args.auto_command == "disable":
            service.disable_auto_resume(args.user_id)
            _print_auto_resume(None)
            return
        if args.auto_command == "status":
            _print_auto_resume(service.get_auto_resume_status(args.user_id))
            return
        if args.auto_command == "run":
            try:
                summary = service.run_auto_resume_cycle()
            except AutoResumeCycleBusyError as exc:
                raise SystemExit(f"{exc}; try again later.") from exc
            print(
                f"processed={summary.processed} paused={summary.paused} "
                f"completed={summary.completed} resumed={summary.resumed} "
                f"errors={len(summary.errors)} duration_ms={summary.duration_ms}"
            )
            for error in summary.errors:
                print(f"error\t{error.user_id}\t{error.error}")
            return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
