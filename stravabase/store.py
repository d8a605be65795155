"""Persistence gateway: idempotent upserts keyed by Strava ids.

Every write here is a plain statement on the caller's connection; callers
decide when to commit (the sync loops commit once per activity).
"""

import json
from dataclasses import asdict
from datetime import datetime, timezone

from stravabase.models import Activity, Gear, Photo, Segment, SegmentEffort


def _upsert(conn, table: str, row: dict, key: str, touch: bool = True):
    """INSERT ... ON CONFLICT(key) DO UPDATE for every column except key."""
    cols = list(row)
    placeholders = ", ".join("?" for _ in cols)
    updates = [f"{c} = excluded.{c}" for c in cols if c != key]
    if touch:
        updates.append("updated_at = datetime('now')")
    conn.execute(
        f"""INSERT INTO {table} ({", ".join(cols)})
            VALUES ({placeholders})
            ON CONFLICT({key}) DO UPDATE SET {", ".join(updates)}""",
        [row[c] for c in cols],
    )


# ---------------------------------------------------------------------------
# Profiles and settings
# ---------------------------------------------------------------------------

def get_active_user_id(conn) -> int | None:
    """Lowest-id active profile, falling back to the lowest-id profile."""
    row = conn.execute(
        "SELECT id FROM user_profile WHERE is_active = 1 ORDER BY id LIMIT 1"
    ).fetchone()
    if row:
        return row[0]
    row = conn.execute("SELECT id FROM user_profile ORDER BY id LIMIT 1").fetchone()
    return row[0] if row else None


def load_profile_tokens(conn, user_id: int) -> dict:
    row = conn.execute(
        """SELECT strava_access_token, strava_refresh_token, strava_token_expires_at
           FROM user_profile WHERE id = ?""",
        (user_id,),
    ).fetchone()
    if not row:
        return {}
    return {"access_token": row[0], "refresh_token": row[1], "expires_at": row[2]}


def save_profile_tokens(conn, user_id: int, access_token: str, refresh_token: str,
                        expires_at: int, scope: str | None = None,
                        athlete_id: int | None = None):
    conn.execute(
        """UPDATE user_profile
           SET strava_access_token = ?,
               strava_refresh_token = ?,
               strava_token_expires_at = ?,
               strava_scope = COALESCE(?, strava_scope),
               strava_athlete_id = COALESCE(?, strava_athlete_id),
               updated_at = datetime('now')
           WHERE id = ?""",
        (access_token, refresh_token, expires_at, scope, athlete_id, user_id),
    )
    conn.commit()


def update_profile_from_athlete(conn, user_id: int, athlete: dict):
    """Copy name/location/photo from GET /athlete; blanks never overwrite."""
    conn.execute(
        """UPDATE user_profile
           SET strava_athlete_id = COALESCE(?, strava_athlete_id),
               username = COALESCE(NULLIF(?, ''), username),
               firstname = COALESCE(NULLIF(?, ''), firstname),
               lastname = COALESCE(NULLIF(?, ''), lastname),
               profile_photo = COALESCE(NULLIF(?, ''), profile_photo),
               city = COALESCE(NULLIF(?, ''), city),
               country = COALESCE(NULLIF(?, ''), country),
               updated_at = datetime('now')
           WHERE id = ?""",
        (athlete.get("id"), athlete.get("username"), athlete.get("firstname"),
         athlete.get("lastname"), athlete.get("profile"), athlete.get("city"),
         athlete.get("country"), user_id),
    )


def stamp_last_sync(conn, user_id: int, when: str | None = None):
    when = when or datetime.now(timezone.utc).isoformat()
    conn.execute(
        "UPDATE user_profile SET last_sync_at = ?, updated_at = datetime('now') WHERE id = ?",
        (when, user_id),
    )


def get_user_settings(conn, user_id: int | None) -> dict:
    if user_id is None:
        return {}
    rows = conn.execute(
        "SELECT key, value FROM user_settings WHERE user_id = ?", (user_id,)
    ).fetchall()
    return {k: v for k, v in rows}


def set_setting(conn, user_id: int, key: str, value):
    conn.execute(
        """INSERT INTO user_settings (user_id, key, value)
           VALUES (?, ?, ?)
           ON CONFLICT(user_id, key)
           DO UPDATE SET value = excluded.value, updated_at = datetime('now')""",
        (user_id, key, str(value)),
    )


def set_positive_setting_if_missing(conn, user_id: int, key: str, value) -> bool:
    """Write a numeric setting unless a positive value is already stored.

    Returns True when the setting was written.
    """
    if value is None or float(value) <= 0:
        return False
    current = get_user_settings(conn, user_id).get(key)
    try:
        stored = float(current) if current is not None else 0
    except ValueError:
        stored = 0
    if stored > 0:
        return False
    set_setting(conn, user_id, key, value)
    return True


# ---------------------------------------------------------------------------
# Activities and streams
# ---------------------------------------------------------------------------

def upsert_activity(conn, activity: Activity, user_id: int | None = None):
    """Insert or update one activity; user_id defaults to the active user."""
    row = asdict(activity)
    row["user_id"] = user_id if user_id is not None else get_active_user_id(conn)
    _upsert(conn, "activities", row, "strava_activity_id")


def get_activity_user_id(conn, strava_activity_id: int) -> int | None:
    row = conn.execute(
        "SELECT user_id FROM activities WHERE strava_activity_id = ?",
        (strava_activity_id,),
    ).fetchone()
    return row[0] if row else None


def replace_stream(conn, activity_id: int, stream_type: str, data: list):
    """Store one channel, replacing any previous copy."""
    conn.execute(
        "DELETE FROM activity_streams WHERE activity_id = ? AND stream_type = ?",
        (activity_id, stream_type),
    )
    conn.execute(
        "INSERT INTO activity_streams (activity_id, stream_type, data) VALUES (?, ?, ?)",
        (activity_id, stream_type, json.dumps(data)),
    )


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

def upsert_segment(conn, segment: Segment):
    _upsert(conn, "segments", asdict(segment), "id")


def upsert_segment_effort(conn, effort: SegmentEffort):
    _upsert(conn, "segment_efforts", asdict(effort), "effort_id")


def delete_segment_efforts(conn, activity_id: int, source: str = "strava") -> int:
    cursor = conn.execute(
        "DELETE FROM segment_efforts WHERE activity_id = ? AND source = ?",
        (activity_id, source),
    )
    return cursor.rowcount


# ---------------------------------------------------------------------------
# Gear, photos, stats
# ---------------------------------------------------------------------------

def upsert_gear(conn, gear: Gear):
    _upsert(conn, "gear", asdict(gear), "id")


def upsert_photo(conn, photo: Photo):
    # local_path belongs to download_photos; metadata refreshes must not reset it
    row = asdict(photo)
    row.pop("local_path")
    _upsert(conn, "activity_photos", row, "unique_id", touch=False)


def update_photo_count(conn, activity_id: int, count: int):
    conn.execute(
        """UPDATE activities SET photo_count = ?, updated_at = datetime('now')
           WHERE strava_activity_id = ?""",
        (count, activity_id),
    )


def update_photo_local_path(conn, unique_id: str, local_path: str):
    conn.execute(
        "UPDATE activity_photos SET local_path = ? WHERE unique_id = ?",
        (local_path, unique_id),
    )


_STATS_GROUPS = [
    ("recent_ride_totals", True), ("recent_run_totals", True), ("recent_swim_totals", False),
    ("ytd_ride_totals", True), ("ytd_run_totals", True), ("ytd_swim_totals", False),
    ("all_ride_totals", True), ("all_run_totals", True), ("all_swim_totals", False),
]


def upsert_athlete_stats(conn, stats: dict, recorded_at: str | None = None):
    """Store today's snapshot of GET /athletes/{id}/stats (one row per day)."""
    row = {"recorded_at": recorded_at or datetime.now(timezone.utc).date().isoformat()}
    for group, has_elevation in _STATS_GROUPS:
        totals = stats.get(group) or {}
        row[f"{group}_count"] = totals.get("count") or 0
        row[f"{group}_distance"] = totals.get("distance") or 0
        row[f"{group}_time"] = totals.get("moving_time") or 0
        if has_elevation:
            row[f"{group}_elevation"] = totals.get("elevation_gain") or 0
    _upsert(conn, "athlete_stats", row, "recorded_at", touch=False)


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------

def start_sync_log(conn, mode: str) -> int:
    cursor = conn.execute(
        "INSERT INTO sync_logs (mode, status, items_processed) VALUES (?, 'running', 0)",
        (mode,),
    )
    conn.commit()
    return cursor.lastrowid


def complete_sync_log(conn, log_id: int, processed: int,
                      warnings: list | None = None, error: str | None = None):
    """Close a sync log row as 'failed' (error given) or 'completed'.

    A failed log keeps the per-item warnings recorded before the error.
    """
    message = None
    if error:
        payload = {"error": error}
        if warnings:
            payload["warnings"] = warnings
        message = json.dumps(payload)
    elif warnings:
        message = json.dumps({"warnings": warnings})
    conn.execute(
        """UPDATE sync_logs
           SET completed_at = datetime('now'), status = ?,
               items_processed = ?, error_message = ?
           WHERE id = ?""",
        ("failed" if error else "completed", processed, message, log_id),
    )
    conn.commit()


def fail_sync_log(conn, log_id: int, result: dict, error: Exception,
                  processed_key: str = "processed"):
    """Roll back the item in flight, close the log as 'failed' and attach the
    partial result to the error so callers can still report it."""
    conn.rollback()
    complete_sync_log(conn, log_id, result[processed_key],
                      warnings=result["warnings"], error=str(error))
    error.result = result


def get_recent_sync_logs(conn, limit: int = 5) -> list[dict]:
    rows = conn.execute(
        """SELECT id, mode, started_at, completed_at, status, items_processed, error_message
           FROM sync_logs ORDER BY id DESC LIMIT ?""",
        (limit,),
    ).fetchall()
    keys = ("id", "mode", "started_at", "completed_at", "status",
            "items_processed", "error_message")
    return [dict(zip(keys, r)) for r in rows]


# ---------------------------------------------------------------------------
# "Missing derived resource" selects (resumption points for backfills)
# ---------------------------------------------------------------------------

_MISSING_STREAMS_WHERE = """
    a.manual = 0 AND a.distance > 0
    AND (
        NOT EXISTS (SELECT 1 FROM activity_streams s
                    WHERE s.activity_id = a.strava_activity_id)
        OR (a.average_watts IS NOT NULL
            AND NOT EXISTS (SELECT 1 FROM activity_streams s
                            WHERE s.activity_id = a.strava_activity_id
                              AND s.stream_type = 'watts'))
    )
"""


def _missing_segments_where(eligible_types) -> tuple[str, list]:
    marks = ", ".join("?" for _ in eligible_types)
    where = f"""
        a.manual = 0 AND a.distance > 0 AND a.type IN ({marks})
        AND NOT EXISTS (SELECT 1 FROM segment_efforts e
                        WHERE e.activity_id = a.strava_activity_id)
    """
    return where, list(eligible_types)


_MISSING_PHOTOS_WHERE = """
    a.photo_count > 0
    AND NOT EXISTS (SELECT 1 FROM activity_photos p
                    WHERE p.activity_id = a.strava_activity_id)
"""

_MISSING_LOCAL_WHERE = "local_path IS NULL AND url_medium IS NOT NULL"


def find_activities_missing_streams(conn, limit: int) -> list[int]:
    rows = conn.execute(
        f"""SELECT a.strava_activity_id FROM activities a
            WHERE {_MISSING_STREAMS_WHERE}
            ORDER BY a.start_date DESC LIMIT ?""",
        (limit,),
    ).fetchall()
    return [r[0] for r in rows]


def count_activities_missing_streams(conn) -> int:
    return conn.execute(
        f"SELECT COUNT(*) FROM activities a WHERE {_MISSING_STREAMS_WHERE}"
    ).fetchone()[0]


def find_activities_missing_segments(conn, eligible_types, limit: int) -> list[tuple]:
    """Returns (strava_activity_id, name) pairs, newest first."""
    where, params = _missing_segments_where(eligible_types)
    return conn.execute(
        f"""SELECT a.strava_activity_id, a.name FROM activities a
            WHERE {where}
            ORDER BY a.start_date DESC LIMIT ?""",
        params + [limit],
    ).fetchall()


def count_activities_missing_segments(conn, eligible_types) -> int:
    where, params = _missing_segments_where(eligible_types)
    return conn.execute(
        f"SELECT COUNT(*) FROM activities a WHERE {where}", params
    ).fetchone()[0]


def find_activities_missing_photos(conn, limit: int) -> list[int]:
    rows = conn.execute(
        f"""SELECT a.strava_activity_id FROM activities a
            WHERE {_MISSING_PHOTOS_WHERE}
            ORDER BY a.start_date DESC LIMIT ?""",
        (limit,),
    ).fetchall()
    return [r[0] for r in rows]


def count_activities_missing_photos(conn) -> int:
    return conn.execute(
        f"SELECT COUNT(*) FROM activities a WHERE {_MISSING_PHOTOS_WHERE}"
    ).fetchone()[0]


def find_photos_missing_local_path(conn, limit: int) -> list[dict]:
    rows = conn.execute(
        f"""SELECT unique_id, activity_id, url_small, url_medium, url_large
            FROM activity_photos
            WHERE {_MISSING_LOCAL_WHERE}
            ORDER BY id LIMIT ?""",
        (limit,),
    ).fetchall()
    keys = ("unique_id", "activity_id", "url_small", "url_medium", "url_large")
    return [dict(zip(keys, r)) for r in rows]


def count_photos_missing_local_path(conn) -> int:
    return conn.execute(
        f"SELECT COUNT(*) FROM activity_photos WHERE {_MISSING_LOCAL_WHERE}"
    ).fetchone()[0]
