import json
import sqlite3
from datetime import datetime, timezone

import pytest

from stravabase.ingest.strava_client import StravaRateLimitError
from stravabase.ingest.strava_sync import (
    SECONDS_PER_DAY,
    backfill_segments,
    backfill_streams,
    sync_activities,
    sync_initial_activities,
    sync_recent_activities,
)
from stravabase.store import get_active_user_id, get_user_settings, replace_stream

NOW = 1_717_243_200  # 2024-06-01T12:00:00Z


def _count(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def _streams(*types):
    return [{"type": t, "data": [1, 2, 3]} for t in types]


def _last_log(conn):
    return conn.execute(
        "SELECT mode, status, items_processed, error_message FROM sync_logs ORDER BY id DESC"
    ).fetchone()


def _iso(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Full sync
# ---------------------------------------------------------------------------

def test_full_sync_stores_activities_streams_gear_and_photos(conn, fake_client, activity):
    client = fake_client(
        activities=[
            activity(1, gear_id="b100", total_photo_count=1),
            activity(2, gear_id="g200"),
        ],
        streams={1: _streams("time", "heartrate"), 2: _streams("time")},
        gear={"b100": {"id": "b100", "name": "Road bike"},
              "g200": {"id": "g200", "name": "Trainers"}},
        photos={1: [{"unique_id": "p1", "urls": {"600": "https://cdn/p1.jpg"}}]},
    )

    result = sync_activities(conn, client)

    assert result["processed"] == 2
    assert result["errors"] == 0
    assert _count(conn, "activities") == 2
    assert _count(conn, "activity_streams") == 3
    assert _count(conn, "activity_photos") == 1
    assert _count(conn, "athlete_stats") == 1
    types = dict(conn.execute("SELECT id, type FROM gear").fetchall())
    assert types == {"b100": "bike", "g200": "shoes"}


def test_full_sync_is_idempotent(conn, fake_client, activity):
    def make_client():
        return fake_client(
            activities=[activity(1, gear_id="b1", total_photo_count=1), activity(2)],
            streams={1: _streams("time", "watts"), 2: _streams("time")},
            gear={"b1": {"id": "b1", "name": "Bike"}},
            photos={1: [{"unique_id": "p1", "urls": {"600": "https://cdn/p1.jpg"}}]},
        )

    sync_activities(conn, make_client())
    tables = ["activities", "activity_streams", "gear", "activity_photos", "athlete_stats"]
    first = {t: _count(conn, t) for t in tables}

    sync_activities(conn, make_client())
    assert {t: _count(conn, t) for t in tables} == first


def test_full_sync_skips_segments_unless_requested(conn, fake_client, activity):
    client = fake_client(activities=[activity(1, type="Ride")])
    sync_activities(conn, client)
    assert client.called("get_activity_with_segments") == []


def test_manual_activity_fetches_no_streams_or_segments(conn, fake_client, activity):
    client = fake_client(activities=[activity(1, manual=True)])
    sync_activities(conn, client, include_segments=True)

    assert client.called("get_activity_streams") == []
    assert client.called("get_activity_with_segments") == []
    assert _count(conn, "activities") == 1


def test_swim_never_triggers_segment_fetch(conn, fake_client, activity):
    client = fake_client(activities=[activity(1, type="Swim"), activity(2, type="Ride")])
    sync_activities(conn, client, include_segments=True)

    assert client.called("get_activity_with_segments") == [2]


def test_stream_404_is_not_an_error(conn, fake_client, activity):
    # StravaClient maps a 404 on streams to []
    client = fake_client(activities=[activity(1)], streams={})
    result = sync_activities(conn, client)

    assert result["errors"] == 0
    assert result["details"] == [{"strava_id": 1, "status": "synced"}]
    assert _count(conn, "activity_streams") == 0


def test_per_activity_failure_is_recorded_and_loop_continues(conn, fake_client, activity):
    client = fake_client(
        activities=[activity(1), activity(2), activity(3)],
        streams={1: _streams("time"), 3: _streams("time")},
        errors={("get_activity_streams", 2): RuntimeError("boom")},
    )
    result = sync_activities(conn, client)

    assert result["processed"] == 2
    assert result["errors"] == 1
    assert result["details"][1] == {"strava_id": 2, "status": "error", "error": "boom"}

    mode, status, processed, message = _last_log(conn)
    assert (mode, status, processed) == ("full", "completed", 2)
    assert json.loads(message) == {"warnings": ["2: boom"]}


def test_rate_limit_in_full_sync_fails_the_log(conn, fake_client, activity):
    client = fake_client(
        activities=[activity(1), activity(2)],
        streams={1: _streams("time"), 2: _streams("time")},
        fail_after={"get_activity_streams": 1},
    )
    with pytest.raises(StravaRateLimitError):
        sync_activities(conn, client)

    mode, status, processed, message = _last_log(conn)
    assert (mode, status, processed) == ("full", "failed", 1)
    assert "error" in json.loads(message)
    # progress before the failure is kept
    assert _count(conn, "activity_streams") == 1


def test_failed_sync_keeps_item_errors_and_rate_limit_flag(conn, fake_client, activity):
    client = fake_client(
        activities=[activity(1), activity(2), activity(3)],
        streams={2: _streams("time")},
        errors={("get_activity_streams", 1): RuntimeError("boom")},
        fail_after={"get_activity_streams": 2},
    )
    with pytest.raises(StravaRateLimitError) as excinfo:
        sync_activities(conn, client)

    partial = excinfo.value.result
    assert (partial["processed"], partial["errors"]) == (1, 1)
    assert partial["rate_limited"] is True

    _, status, processed, message = _last_log(conn)
    assert (status, processed) == ("failed", 1)
    assert json.loads(message) == {
        "error": "Rate limited on get_activity_streams",
        "warnings": ["1: boom"],
    }


# ---------------------------------------------------------------------------
# Recent / initial sync
# ---------------------------------------------------------------------------

def test_recent_sync_keeps_only_activities_inside_window(conn, fake_client, activity):
    client = fake_client(activities=[
        activity(1, start_date=_iso(NOW - 8 * SECONDS_PER_DAY)),
        activity(2, start_date=_iso(NOW - 7 * SECONDS_PER_DAY)),
        activity(3, start_date=_iso(NOW - 6 * SECONDS_PER_DAY)),
        activity(4, start_date=_iso(NOW - 3600)),
    ])
    result = sync_recent_activities(conn, client, days=7, now=NOW)

    stored = [r[0] for r in conn.execute(
        "SELECT strava_activity_id FROM activities ORDER BY strava_activity_id")]
    assert stored == [3, 4]
    assert result["fetched"] == 2
    assert client.called("get_activities_since") == [NOW - 7 * SECONDS_PER_DAY]


def test_recent_sync_refreshes_profile_and_stamps_last_sync(conn, fake_client, activity):
    client = fake_client(activities=[activity(1, start_date=_iso(NOW - 3600), gear_id="g1")],
                         gear={"g1": {"id": "g1", "name": "Shoes"}})
    sync_recent_activities(conn, client, days=7, now=NOW)

    user_id = get_active_user_id(conn)
    row = conn.execute(
        "SELECT strava_athlete_id, firstname, city, last_sync_at FROM user_profile WHERE id = ?",
        (user_id,),
    ).fetchone()
    assert row[:3] == (42, "Ada", "London")
    assert row[3] is not None
    assert get_user_settings(conn, user_id)["athlete_weight"] == "61.5"
    assert _count(conn, "gear") == 1
    assert _count(conn, "athlete_stats") == 1


def test_recent_sync_profile_failure_is_a_warning(conn, fake_client, activity):
    client = fake_client(activities=[activity(1, start_date=_iso(NOW - 3600))],
                         errors={("get_athlete", None): RuntimeError("profile down")})
    result = sync_recent_activities(conn, client, days=7, now=NOW)

    assert result["errors"] == 0
    assert result["warnings"] == ["athlete profile: profile down"]
    assert _last_log(conn)[1] == "completed"


def test_recent_sync_includes_segments_by_default(conn, fake_client, activity, effort):
    client = fake_client(
        activities=[activity(1, start_date=_iso(NOW - 3600))],
        details={1: {"id": 1, "segment_efforts": [effort(11, 501), effort(12, 502)]}},
    )
    result = sync_recent_activities(conn, client, days=7, now=NOW)

    assert result["segment_efforts"] == 2
    assert _count(conn, "segment_efforts") == 2


def test_initial_sync_uses_its_own_mode(conn, fake_client):
    sync_initial_activities(conn, fake_client())
    assert _last_log(conn)[:2] == ("initial", "completed")


# ---------------------------------------------------------------------------
# Backfills
# ---------------------------------------------------------------------------

def _seed_without_streams(conn, client_factory, activity, count):
    client = client_factory(activities=[
        activity(i, start_date=f"2024-05-{i:02d}T07:00:00Z") for i in range(1, count + 1)
    ])
    sync_activities(conn, client, include_streams=False)


def test_backfill_streams_resumes_after_rate_limit(conn, fake_client, activity):
    _seed_without_streams(conn, fake_client, activity, 5)
    streams = {i: _streams("time") for i in range(1, 6)}

    first = backfill_streams(conn, fake_client(streams=streams,
                                               fail_after={"get_activity_streams": 2}))
    assert first["processed"] == 2
    assert first["rate_limited"] is True
    assert first["remaining"] == 3

    second_client = fake_client(streams=streams)
    second = backfill_streams(conn, second_client)
    assert second["processed"] == 3
    assert second["rate_limited"] is False
    assert second["remaining"] == 0
    # newest first
    assert second_client.called("get_activity_streams") == [3, 2, 1]


def test_backfill_streams_targets_missing_power(conn, fake_client, activity):
    client = fake_client(activities=[
        activity(1, average_watts=210.0),
        activity(2),
        activity(3, distance=0),
    ])
    sync_activities(conn, client, include_streams=False)
    replace_stream(conn, 1, "time", [0, 1])
    replace_stream(conn, 2, "time", [0, 1])
    conn.commit()

    backfill_client = fake_client(streams={1: _streams("time", "watts")})
    result = backfill_streams(conn, backfill_client)

    assert backfill_client.called("get_activity_streams") == [1]
    assert result["added"] == 2
    assert result["remaining"] == 0


def test_backfill_streams_respects_limit(conn, fake_client, activity):
    _seed_without_streams(conn, fake_client, activity, 4)
    result = backfill_streams(conn, fake_client(streams={}), limit=2)
    assert result["processed"] == 2
    assert _last_log(conn)[:3] == ("backfill_streams", "completed", 2)


def test_backfill_segments_only_eligible_types(conn, fake_client, activity, effort, sleeps):
    client = fake_client(activities=[
        activity(1, type="Run", start_date="2024-05-01T07:00:00Z"),
        activity(2, type="Swim", start_date="2024-05-02T07:00:00Z"),
        activity(3, type="VirtualRide", start_date="2024-05-03T07:00:00Z"),
        activity(4, type="Ride", manual=True, start_date="2024-05-04T07:00:00Z"),
    ])
    sync_activities(conn, client, include_streams=False)
    sleeps.clear()

    backfill_client = fake_client(details={
        1: {"id": 1, "segment_efforts": [effort(11, 501)]},
        3: {"id": 3, "segment_efforts": [effort(31, 502), effort(32, 503)]},
    })
    result = backfill_segments(conn, backfill_client)

    assert backfill_client.called("get_activity_with_segments") == [3, 1]
    assert result["processed"] == 2
    assert result["efforts"] == 3
    assert result["remaining"] == 0
    assert sleeps == [1.5]


def test_backfill_segments_stops_on_rate_limit(conn, fake_client, activity):
    _seed_without_streams(conn, fake_client, activity, 3)
    result = backfill_segments(conn, fake_client(
        fail_after={"get_activity_with_segments": 1}))

    assert result["processed"] == 1
    assert result["rate_limited"] is True
    assert _last_log(conn)[1] == "completed"


def _locked(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")


def test_backfill_streams_storage_error_fails_the_log(conn, fake_client, monkeypatch):
    monkeypatch.setattr("stravabase.ingest.strava_sync.find_activities_missing_streams", _locked)

    with pytest.raises(sqlite3.OperationalError) as excinfo:
        backfill_streams(conn, fake_client())

    assert excinfo.value.result["processed"] == 0
    mode, status, processed, message = _last_log(conn)
    assert (mode, status, processed) == ("backfill_streams", "failed", 0)
    assert json.loads(message) == {"error": "database is locked"}


def test_backfill_segments_storage_error_keeps_progress(conn, fake_client, activity, effort,
                                                        monkeypatch):
    _seed_without_streams(conn, fake_client, activity, 1)
    monkeypatch.setattr("stravabase.ingest.strava_sync.count_activities_missing_segments",
                        _locked)

    client = fake_client(details={1: {"id": 1, "segment_efforts": [effort(11, 501)]}})
    with pytest.raises(sqlite3.OperationalError):
        backfill_segments(conn, client)

    assert _last_log(conn)[:3] == ("backfill_segments", "failed", 1)
    assert _count(conn, "segment_efforts") == 1
