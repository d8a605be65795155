"""Strava sync orchestration: full, recent/initial and backfill runs.

Each run opens a sync_logs row and closes it on exit. Every activity is
committed as soon as it is done, so an interrupted or rate-limited run keeps
its progress and the next run's "missing X" selects pick up the rest.
"""

import time as time_mod

from stravabase.ingest.photos import sync_activity_photos
from stravabase.ingest.strava_client import STREAM_KEYS, StravaRateLimitError
from stravabase.models import Activity, Gear, start_timestamp
from stravabase.reconcile.segment_efforts import (
    SEGMENT_ELIGIBLE_TYPES,
    is_segment_eligible,
    sync_segments_for_activity,
)
from stravabase.store import (
    complete_sync_log,
    count_activities_missing_segments,
    count_activities_missing_streams,
    fail_sync_log,
    find_activities_missing_segments,
    find_activities_missing_streams,
    get_active_user_id,
    replace_stream,
    set_positive_setting_if_missing,
    stamp_last_sync,
    start_sync_log,
    update_profile_from_athlete,
    upsert_activity,
    upsert_athlete_stats,
    upsert_gear,
)

SECONDS_PER_DAY = 24 * 60 * 60

SEGMENT_DELAY_S = 1.5
FULL_SYNC_PHOTO_DELAY_S = 0.5


def _new_result() -> dict:
    return {
        "fetched": 0, "processed": 0, "errors": 0,
        "streams": 0, "segment_efforts": 0, "gear": 0, "photos": 0,
        "rate_limited": False, "warnings": [], "details": [],
    }


def _record_error(result: dict, key, error, verbose: bool, label: str = "ERROR"):
    result["errors"] += 1
    result["warnings"].append(f"{key}: {error}")
    result["details"].append({"strava_id": key, "status": "error", "error": str(error)})
    if verbose:
        print(f"  {label} {key}: {error}")


def _warn(result: dict, message: str, verbose: bool):
    result["warnings"].append(message)
    if verbose:
        print(f"  WARN {message}")


def _stop_early(result: dict, error, verbose: bool):
    result["rate_limited"] = True
    result["warnings"].append(f"rate limited after {result['processed']} activities")
    if verbose:
        print(f"  RATE LIMIT {error}; stopping early")


# ---------------------------------------------------------------------------
# Per-activity pipeline
# ---------------------------------------------------------------------------

def _store_streams(conn, client, activity_id: int) -> int:
    """Fetch all stream channels for an activity. Returns channels stored."""
    streams = client.get_activity_streams(activity_id, STREAM_KEYS)
    stored = 0
    for stream in streams:
        if stream.get("type") and stream.get("data") is not None:
            replace_stream(conn, activity_id, stream["type"], stream["data"])
            stored += 1
    return stored


def _sync_one_activity(conn, client, raw: dict, include_streams: bool,
                       include_segments: bool, result: dict, verbose: bool):
    activity = Activity.from_strava(raw)
    upsert_activity(conn, activity)
    conn.commit()

    if activity.manual:
        return

    if include_streams:
        stored = _store_streams(conn, client, activity.strava_activity_id)
        conn.commit()
        result["streams"] += stored
        if verbose and stored:
            print(f"    STREAMS {stored} channels")

    if include_segments and is_segment_eligible(activity.type):
        result["segment_efforts"] += sync_segments_for_activity(
            conn, client, activity.strava_activity_id, verbose=verbose)


def _run_activity_pipeline(conn, client, activities: list, include_streams: bool,
                           include_segments: bool, result: dict, verbose: bool):
    for raw in activities:
        strava_id = raw.get("id")
        try:
            if verbose:
                print(f"  ACTIVITY {strava_id} {raw.get('start_date', '?')} "
                      f"{raw.get('type', '?')} \"{raw.get('name', '')}\"")
            _sync_one_activity(conn, client, raw, include_streams,
                               include_segments, result, verbose)
            result["processed"] += 1
            result["details"].append({"strava_id": strava_id, "status": "synced"})
        except StravaRateLimitError:
            conn.rollback()
            raise
        except Exception as e:
            conn.rollback()
            _record_error(result, strava_id, e, verbose)


def _sync_gear(conn, client, activities: list, result: dict, verbose: bool):
    gear_ids = sorted({a["gear_id"] for a in activities if a.get("gear_id")})
    for gear_id in gear_ids:
        try:
            gear = client.get_gear(gear_id)
            if gear is None:
                continue
            upsert_gear(conn, Gear.from_strava(gear))
            conn.commit()
            result["gear"] += 1
            if verbose:
                print(f"  GEAR {gear_id} {gear.get('name', '')}")
        except StravaRateLimitError:
            conn.rollback()
            raise
        except Exception as e:
            conn.rollback()
            _warn(result, f"gear {gear_id}: {e}", verbose)


def _sync_athlete_stats(conn, client, athlete_id: int):
    upsert_athlete_stats(conn, client.get_athlete_stats(athlete_id))
    conn.commit()


def _sync_athlete_profile(conn, client, result: dict, verbose: bool):
    """Refresh stats, profile fields and body weight. Failures are warnings."""
    try:
        athlete = client.get_athlete()
        user_id = get_active_user_id(conn)
        if user_id is not None:
            update_profile_from_athlete(conn, user_id, athlete)
            if set_positive_setting_if_missing(conn, user_id, "athlete_weight",
                                               athlete.get("weight")):
                if verbose:
                    print(f"  PROFILE athlete_weight = {athlete['weight']}")
        conn.commit()
        _sync_athlete_stats(conn, client, athlete["id"])
    except StravaRateLimitError:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        _warn(result, f"athlete profile: {e}", verbose)


def _fail(conn, log_id: int, result: dict, error: Exception):
    if isinstance(error, StravaRateLimitError):
        result["rate_limited"] = True
    fail_sync_log(conn, log_id, result, error)


# ---------------------------------------------------------------------------
# Full / recent / initial sync
# ---------------------------------------------------------------------------

def sync_activities(conn, client, include_streams: bool = True,
                    include_segments: bool = False, verbose: bool = False) -> dict:
    """Full sync of the athlete's entire history.

    Returns summary dict with keys: fetched, processed, errors, streams,
    segment_efforts, gear, photos, warnings, details.
    """
    log_id = start_sync_log(conn, "full")
    result = _new_result()

    try:
        if verbose:
            print("Fetching full activity list from Strava...")
        activities = client.get_all_activities()
        result["fetched"] = len(activities)
        if verbose:
            print(f"Found {len(activities)} activities on Strava")

        _run_activity_pipeline(conn, client, activities, include_streams,
                               include_segments, result, verbose)

        try:
            _sync_athlete_stats(conn, client, client.get_athlete()["id"])
        except StravaRateLimitError:
            raise
        except Exception as e:
            conn.rollback()
            _record_error(result, "athlete_stats", e, verbose)

        _sync_gear(conn, client, activities, result, verbose)

        with_photos = [a for a in activities if (a.get("total_photo_count") or 0) > 0]
        for i, raw in enumerate(with_photos):
            if i:
                time_mod.sleep(FULL_SYNC_PHOTO_DELAY_S)
            try:
                result["photos"] += sync_activity_photos(conn, client, raw["id"])
            except StravaRateLimitError:
                raise
            except Exception as e:
                conn.rollback()
                _warn(result, f"photos {raw['id']}: {e}", verbose)
    except Exception as e:
        _fail(conn, log_id, result, e)
        raise

    complete_sync_log(conn, log_id, result["processed"], warnings=result["warnings"])
    return result


def sync_recent_activities(conn, client, days: int = 7, include_streams: bool = True,
                           include_segments: bool = True, verbose: bool = False,
                           mode: str = "recent", now: float | None = None) -> dict:
    """Sync activities that started within the last `days` days.

    Also refreshes the athlete profile/stats, the gear those activities use,
    and stamps last_sync_at on the active profile.
    """
    now = now if now is not None else time_mod.time()
    after = now - days * SECONDS_PER_DAY
    log_id = start_sync_log(conn, mode)
    result = _new_result()

    try:
        if verbose:
            print(f"Fetching activities from the last {days} days...")
        fetched = client.get_activities_since(after)
        recent = [a for a in fetched if (start_timestamp(a.get("start_date")) or 0) > after]
        result["fetched"] = len(recent)
        if verbose:
            print(f"Found {len(recent)} recent activities")

        _run_activity_pipeline(conn, client, recent, include_streams,
                               include_segments, result, verbose)
        _sync_athlete_profile(conn, client, result, verbose)
        _sync_gear(conn, client, recent, result, verbose)

        user_id = get_active_user_id(conn)
        if user_id is not None:
            stamp_last_sync(conn, user_id)
            conn.commit()
    except Exception as e:
        _fail(conn, log_id, result, e)
        raise

    complete_sync_log(conn, log_id, result["processed"], warnings=result["warnings"])
    return result


def sync_initial_activities(conn, client, days: int = 180, include_streams: bool = True,
                            include_segments: bool = True, verbose: bool = False) -> dict:
    """Onboarding sync: a recent sync over a wider window."""
    return sync_recent_activities(conn, client, days=days,
                                  include_streams=include_streams,
                                  include_segments=include_segments,
                                  verbose=verbose, mode="initial")


# ---------------------------------------------------------------------------
# Backfills
# ---------------------------------------------------------------------------

def backfill_streams(conn, client, limit: int = 200, verbose: bool = False) -> dict:
    """Fetch streams for activities stored without them (or without power).

    Stops at the first rate-limit error. Returns dict with keys: processed,
    added, errors, rate_limited, remaining, warnings, details.
    """
    log_id = start_sync_log(conn, "backfill_streams")
    result = {"processed": 0, "added": 0, "errors": 0, "rate_limited": False,
              "remaining": 0, "warnings": [], "details": []}

    try:
        activity_ids = find_activities_missing_streams(conn, limit)
        if verbose:
            print(f"Found {len(activity_ids)} activities needing streams.")

        for activity_id in activity_ids:
            try:
                added = _store_streams(conn, client, activity_id)
                conn.commit()
                result["processed"] += 1
                result["added"] += added
                if verbose:
                    print(f"  STREAMS {activity_id}: {added} channels")
            except StravaRateLimitError as e:
                conn.rollback()
                _stop_early(result, e, verbose)
                break
            except Exception as e:
                conn.rollback()
                _record_error(result, activity_id, e, verbose)

        result["remaining"] = count_activities_missing_streams(conn)
    except Exception as e:
        _fail(conn, log_id, result, e)
        raise

    complete_sync_log(conn, log_id, result["processed"], warnings=result["warnings"])
    return result


def backfill_segments(conn, client, limit: int = 200, verbose: bool = False) -> dict:
    """Fetch segment efforts for eligible activities that have none stored.

    Returns dict with keys: processed, efforts, errors, rate_limited,
    remaining, warnings, details.
    """
    log_id = start_sync_log(conn, "backfill_segments")
    result = {"processed": 0, "efforts": 0, "errors": 0, "rate_limited": False,
              "remaining": 0, "warnings": [], "details": []}

    try:
        rows = find_activities_missing_segments(conn, SEGMENT_ELIGIBLE_TYPES, limit)
        if verbose:
            print(f"Found {len(rows)} activities needing segment efforts.")

        for i, (activity_id, name) in enumerate(rows):
            if i:
                time_mod.sleep(SEGMENT_DELAY_S)
            try:
                count = sync_segments_for_activity(conn, client, activity_id)
                result["processed"] += 1
                result["efforts"] += count
                if verbose:
                    print(f"  SEGMENTS {activity_id} ({name or '?'}): {count} efforts")
            except StravaRateLimitError as e:
                conn.rollback()
                _stop_early(result, e, verbose)
                break
            except Exception as e:
                conn.rollback()
                _record_error(result, activity_id, e, verbose)

        result["remaining"] = count_activities_missing_segments(conn, SEGMENT_ELIGIBLE_TYPES)
    except Exception as e:
        _fail(conn, log_id, result, e)
        raise

    complete_sync_log(conn, log_id, result["processed"], warnings=result["warnings"])
    return result
