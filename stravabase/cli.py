import argparse
import sys


def _load_config_or_none():
    from stravabase.config import load_config

    try:
        return load_config()
    except FileNotFoundError:
        return None


def _open(config):
    from stravabase.db import create_schema, get_connection

    conn = get_connection(config)
    create_schema(conn)
    return conn


def _fail(conn, error):
    """Print a failed run's error and the progress its sync log recorded, then exit 1."""
    from stravabase.store import get_recent_sync_logs

    print(f"\nError: {error}")
    logs = get_recent_sync_logs(conn, limit=1) if conn is not None else []
    if logs:
        log = logs[0]
        print(f"  Sync log #{log['id']} ({log['mode']}): {log['status']}, "
              f"{log['items_processed']} processed")
    sys.exit(1)


def cmd_db_init(args):
    from stravabase.db import init_db

    init_db(_load_config_or_none())


def cmd_auth(args):
    from stravabase.ingest.strava_auth import run_auth_flow
    from stravabase.ingest.strava_client import StravaError

    config = _load_config_or_none()
    conn = _open(config)
    try:
        athlete = run_auth_flow(config, conn, open_browser=not args.no_browser)
    except StravaError as e:
        _fail(None, e)
    finally:
        conn.close()

    name = " ".join(p for p in (athlete.get("firstname"), athlete.get("lastname")) if p)
    print(f"\nAuthorized as {name or athlete.get('id')}. Tokens saved to the active profile.")
    print("You can now run: stravabase sync --initial")


def _report_partial(error, print_summary):
    """A run that failed mid-way attaches its partial result to the error."""
    partial = getattr(error, "result", None)
    if partial is not None:
        print_summary(partial, "failed")


def cmd_sync(args):
    from stravabase.config import get_sync_settings
    from stravabase.ingest.strava_client import get_client
    from stravabase.ingest.strava_sync import (
        sync_activities,
        sync_initial_activities,
        sync_recent_activities,
    )
    from stravabase.store import get_active_user_id, get_user_settings

    config = _load_config_or_none()
    conn = _open(config)
    settings = get_sync_settings(config, get_user_settings(conn, get_active_user_id(conn)))

    include_streams = settings["include_streams"] and not args.no_streams
    include_segments = settings["include_segments"]
    if args.segments is not None:
        include_segments = args.segments

    label = "Full sync"
    if args.recent or args.initial:
        days = args.days or settings["initial_days" if args.initial else "recent_days"]
        label = f"{'Initial' if args.initial else 'Recent'} sync ({days} days)"

    def print_summary(result, status):
        _print_sync_summary(label, result, status)

    try:
        client = get_client(config, conn, verbose=args.verbose)
        if args.recent or args.initial:
            sync = sync_initial_activities if args.initial else sync_recent_activities
            result = sync(conn, client, days=days, include_streams=include_streams,
                          include_segments=include_segments, verbose=args.verbose)
        else:
            # Full history only pulls segments when asked for explicitly
            result = sync_activities(conn, client, include_streams=include_streams,
                                     include_segments=bool(args.segments),
                                     verbose=args.verbose)
    except Exception as e:
        _report_partial(e, print_summary)
        _fail(conn, e)
    finally:
        conn.close()

    print_summary(result, "complete")


def _print_warnings(result: dict):
    if result["errors"] > 0:
        print("\nErrors:")
        for d in result["details"]:
            if d["status"] == "error":
                print(f"  strava:{d['strava_id']}: {d['error']}")
    elif result["warnings"]:
        print("\nWarnings:")
        for w in result["warnings"]:
            print(f"  {w}")


def _print_rate_limited(result: dict):
    if result["rate_limited"]:
        print("\n  Stopped early: Strava rate limit reached. Re-run later to continue.")


def _print_sync_summary(label: str, result: dict, status: str = "complete"):
    print(f"\n{label} {status}:")
    print(f"  Fetched:         {result['fetched']}")
    print(f"  Processed:       {result['processed']}")
    print(f"  Errors:          {result['errors']}")
    print(f"  Stream channels: {result['streams']}")
    print(f"  Segment efforts: {result['segment_efforts']}")
    print(f"  Gear:            {result['gear']}")
    if result["photos"]:
        print(f"  Photos:          {result['photos']}")
    _print_rate_limited(result)
    _print_warnings(result)


def _run_backfill(args, setting: str, run, print_summary):
    from stravabase.config import get_sync_settings
    from stravabase.ingest.strava_client import get_client
    from stravabase.store import get_active_user_id, get_user_settings

    config = _load_config_or_none()
    conn = _open(config)
    settings = get_sync_settings(config, get_user_settings(conn, get_active_user_id(conn)))
    limit = args.limit or settings["backfill"][setting]

    try:
        client = get_client(config, conn, verbose=args.verbose)
        result = run(conn, client, limit=limit, verbose=args.verbose)
    except Exception as e:
        _report_partial(e, print_summary)
        _fail(conn, e)
    finally:
        conn.close()

    print_summary(result, "complete")


def _print_backfill_tail(result: dict):
    print(f"  Errors:          {result['errors']}")
    print(f"  Remaining:       {result['remaining']}")
    _print_rate_limited(result)
    _print_warnings(result)


def _print_stream_backfill(result: dict, status: str):
    print(f"\nStream backfill {status}:")
    print(f"  Processed:       {result['processed']}")
    print(f"  Stream channels: {result['added']}")
    _print_backfill_tail(result)


def _print_segment_backfill(result: dict, status: str):
    print(f"\nSegment backfill {status}:")
    print(f"  Processed:       {result['processed']}")
    print(f"  Segment efforts: {result['efforts']}")
    _print_backfill_tail(result)


def _print_photo_sync(result: dict, status: str):
    print(f"\nPhoto sync {status}:")
    print(f"  Processed:       {result['processed']}")
    print(f"  Photos:          {result['photos']}")
    _print_backfill_tail(result)


def cmd_backfill(args):
    from stravabase.ingest.strava_sync import backfill_streams

    _run_backfill(args, "streams_limit", backfill_streams, _print_stream_backfill)


def cmd_backfill_segments(args):
    from stravabase.ingest.strava_sync import backfill_segments

    _run_backfill(args, "segments_limit", backfill_segments, _print_segment_backfill)


def cmd_sync_photos(args):
    from stravabase.ingest.photos import sync_photos

    _run_backfill(args, "photos_limit", sync_photos, _print_photo_sync)


def cmd_download_photos(args):
    from stravabase.config import get_sync_settings
    from stravabase.ingest.photos import download_photos, get_photo_dir
    from stravabase.store import get_active_user_id, get_user_settings

    config = _load_config_or_none()
    conn = _open(config)
    settings = get_sync_settings(config, get_user_settings(conn, get_active_user_id(conn)))
    limit = args.limit or settings["backfill"]["downloads_limit"]
    photo_dir = get_photo_dir(config)

    def print_summary(result, status):
        print(f"\nPhoto download {status} ({photo_dir}):")
        print(f"  Downloaded:      {result['downloaded']}")
        print(f"  Errors:          {result['errors']}")
        print(f"  Remaining:       {result['remaining']}")
        if result["errors"]:
            print("\nErrors:")
            for d in result["details"]:
                print(f"  photo:{d['unique_id']}: {d['error']}")

    try:
        result = download_photos(conn, photo_dir, limit=limit, verbose=args.verbose)
    except Exception as e:
        _report_partial(e, print_summary)
        _fail(conn, e)
    finally:
        conn.close()

    print_summary(result, "complete")


def cmd_status(args):
    from stravabase.reconcile.segment_efforts import SEGMENT_ELIGIBLE_TYPES
    from stravabase.store import (
        count_activities_missing_photos,
        count_activities_missing_segments,
        count_activities_missing_streams,
        count_photos_missing_local_path,
        get_recent_sync_logs,
    )

    conn = _open(_load_config_or_none())
    total = conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0]
    last_sync = conn.execute(
        "SELECT MAX(last_sync_at) FROM user_profile"
    ).fetchone()[0]

    print(f"Activities:                 {total}")
    print(f"Last sync:                  {last_sync or 'never'}")
    print(f"Missing streams:            {count_activities_missing_streams(conn)}")
    print(f"Missing segment efforts:    "
          f"{count_activities_missing_segments(conn, SEGMENT_ELIGIBLE_TYPES)}")
    print(f"Missing photo metadata:     {count_activities_missing_photos(conn)}")
    print(f"Photos not downloaded:      {count_photos_missing_local_path(conn)}")

    logs = get_recent_sync_logs(conn, limit=args.logs)
    if logs:
        print("\nRecent runs:")
        for log in logs:
            print(f"  #{log['id']:<4} {log['mode'] or '?':<18} {log['status']:<10} "
                  f"{log['items_processed']:>5} processed  {log['started_at']}")
            if log["error_message"]:
                print(f"        {log['error_message']}")
    conn.close()


def main():
    parser = argparse.ArgumentParser(prog="stravabase",
                                     description="stravabase: Strava activity sync")
    subparsers = parser.add_subparsers(dest="command")

    # db subcommand with its own subcommands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_init = db_sub.add_parser("init", help="Initialize the database schema")
    db_init.set_defaults(func=cmd_db_init)

    auth_parser = subparsers.add_parser("auth", help="Authorize with Strava (one-time OAuth setup)")
    auth_parser.add_argument("--no-browser", action="store_true",
                             help="Print the authorization URL without opening a browser")
    auth_parser.set_defaults(func=cmd_auth)

    # sync subcommand
    sync_parser = subparsers.add_parser("sync", help="Sync activities from Strava")
    mode = sync_parser.add_mutually_exclusive_group()
    mode.add_argument("--recent", action="store_true", help="Only activities from the last N days")
    mode.add_argument("--initial", action="store_true", help="Onboarding sync (default 180 days)")
    sync_parser.add_argument("--days", type=int, help="Window for --recent/--initial")
    sync_parser.add_argument("--no-streams", action="store_true",
                             help="Skip stream data (faster sync)")
    segments = sync_parser.add_mutually_exclusive_group()
    segments.add_argument("--segments", dest="segments", action="store_true", default=None,
                          help="Fetch segment efforts for eligible activities")
    segments.add_argument("--no-segments", dest="segments", action="store_false",
                          help="Skip segment efforts")
    sync_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    sync_parser.set_defaults(func=cmd_sync)

    backfills = [
        ("backfill", "Fetch streams for activities missing them", cmd_backfill),
        ("backfill-segments", "Fetch segment efforts for activities missing them",
         cmd_backfill_segments),
        ("sync-photos", "Fetch photo metadata for activities missing it", cmd_sync_photos),
        ("download-photos", "Download photos that have no local copy", cmd_download_photos),
    ]
    for name, help_text, func in backfills:
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--limit", type=int, help="Maximum items this run (default from config)")
        p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
        p.set_defaults(func=func)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--logs", type=int, default=5, help="Number of sync logs to show")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    if args.command == "db" and not getattr(args, "db_command", None):
        db_parser.print_help()
        sys.exit(1)
    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
