"""Segment effort reconciliation for a single activity.

Strava is the source of truth for an activity's efforts: the stored
strava-sourced set is dropped and rebuilt from the activity detail, so a
re-run converges on exactly what Strava reports.
"""

from stravabase.ingest.strava_client import StravaNotFoundError
from stravabase.models import Segment, SegmentEffort
from stravabase.store import (
    delete_segment_efforts,
    get_activity_user_id,
    upsert_segment,
    upsert_segment_effort,
)

# Segment efforts only exist for these activity types
SEGMENT_ELIGIBLE_TYPES = ("Ride", "VirtualRide", "Run", "TrailRun")


def is_segment_eligible(activity_type: str | None) -> bool:
    return activity_type in SEGMENT_ELIGIBLE_TYPES


def sync_segments_for_activity(conn, client, activity_id: int,
                               verbose: bool = False) -> int:
    """Rebuild stored efforts for one activity. Returns the number written."""
    try:
        detail = client.get_activity_with_segments(activity_id)
    except StravaNotFoundError:
        if verbose:
            print(f"    SEGMENTS {activity_id}: activity not found")
        return 0

    efforts = [e for e in (detail.get("segment_efforts") or []) if e.get("segment")]
    if not efforts:
        return 0

    user_id = get_activity_user_id(conn, activity_id)
    delete_segment_efforts(conn, activity_id, "strava")

    for raw in efforts:
        upsert_segment(conn, Segment.from_strava(raw["segment"]))
        upsert_segment_effort(conn, SegmentEffort.from_strava(raw, activity_id, user_id))

    conn.commit()
    if verbose:
        print(f"    SEGMENTS {activity_id}: {len(efforts)} efforts")
    return len(efforts)
