import sqlite3
import time

import pytest

from stravabase.db import create_schema
from stravabase.ingest.strava_client import StravaNotFoundError, StravaRateLimitError


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    connection.execute("PRAGMA foreign_keys=ON")
    create_schema(connection)
    yield connection
    connection.close()


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Record instead of performing every time.sleep call."""
    calls = []
    monkeypatch.setattr(time, "sleep", lambda seconds: calls.append(seconds))
    return calls


def make_activity(activity_id, start_date="2024-05-01T07:00:00Z", type="Run", **overrides):
    activity = {
        "id": activity_id,
        "name": f"Activity {activity_id}",
        "type": type,
        "sport_type": type,
        "start_date": start_date,
        "start_date_local": start_date.replace("Z", ""),
        "timezone": "(GMT+00:00) UTC",
        "distance": 10000.0,
        "moving_time": 3000,
        "elapsed_time": 3100,
        "total_elevation_gain": 55.0,
        "average_speed": 3.3,
        "max_speed": 5.1,
        "manual": False,
        "trainer": False,
        "commute": False,
        "private": False,
        "total_photo_count": 0,
    }
    activity.update(overrides)
    return activity


def make_effort(effort_id, segment_id, **overrides):
    effort = {
        "id": effort_id,
        "name": f"Segment {segment_id}",
        "start_date": "2024-05-01T07:10:00Z",
        "start_date_local": "2024-05-01T07:10:00",
        "elapsed_time": 300,
        "moving_time": 295,
        "distance": 1200.0,
        "pr_rank": None,
        "kom_rank": None,
        "segment": {
            "id": segment_id,
            "name": f"Segment {segment_id}",
            "activity_type": "Run",
            "distance": 1200.0,
            "average_grade": 2.5,
            "start_latlng": [51.5, -0.1],
            "end_latlng": [51.51, -0.11],
        },
    }
    effort.update(overrides)
    return effort


class FakeStravaClient:
    """In-memory stand-in for StravaClient.

    fail_after maps a method name to the number of calls that succeed before
    it starts raising StravaRateLimitError. errors maps (method, key) to an
    exception raised for that call.
    """

    def __init__(self, activities=None, streams=None, details=None, photos=None,
                 gear=None, athlete=None, stats=None, fail_after=None, errors=None):
        self.activities = activities or []
        self.streams = streams or {}
        self.details = details or {}
        self.photos = photos or {}
        self.gear = gear or {}
        self.athlete = athlete or {"id": 42, "firstname": "Ada", "lastname": "Lovelace",
                                   "city": "London", "country": "UK", "weight": 61.5}
        self.stats = stats or {"all_run_totals": {"count": 3, "distance": 30000.0,
                                                  "moving_time": 9000, "elevation_gain": 150.0}}
        self.fail_after = dict(fail_after or {})
        self.errors = errors or {}
        self.calls = []

    def _call(self, method, key=None):
        self.calls.append((method, key))
        if method in self.fail_after:
            if self.fail_after[method] <= 0:
                raise StravaRateLimitError(f"Rate limited on {method}")
            self.fail_after[method] -= 1
        if (method, key) in self.errors:
            raise self.errors[(method, key)]

    def called(self, method):
        return [key for name, key in self.calls if name == method]

    def get_all_activities(self):
        self._call("get_all_activities")
        return list(self.activities)

    def get_activities_since(self, after, before=None):
        self._call("get_activities_since", after)
        return list(self.activities)

    def get_activity_streams(self, activity_id, keys=None):
        self._call("get_activity_streams", activity_id)
        return self.streams.get(activity_id, [])

    def get_activity_with_segments(self, activity_id):
        self._call("get_activity_with_segments", activity_id)
        if activity_id not in self.details:
            raise StravaNotFoundError(f"/activities/{activity_id}")
        return self.details[activity_id]

    def get_gear(self, gear_id):
        self._call("get_gear", gear_id)
        return self.gear.get(gear_id)

    def get_activity_photos(self, activity_id):
        self._call("get_activity_photos", activity_id)
        return self.photos.get(activity_id, [])

    def get_athlete(self):
        self._call("get_athlete")
        return self.athlete

    def get_athlete_stats(self, athlete_id):
        self._call("get_athlete_stats", athlete_id)
        return self.stats


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = content
        self.text = "" if payload is None else str(payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")


class FakeSession:
    """Returns queued responses in order and records each request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers,
                              "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_client():
    return FakeStravaClient


@pytest.fixture
def activity():
    return make_activity


@pytest.fixture
def effort():
    return make_effort


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def fake_session():
    return FakeSession
