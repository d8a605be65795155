import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

# Photo size keys returned by /activities/{id}/photos, best first per bucket
SMALL_PHOTO_SIZES = ("100", "128")
MEDIUM_PHOTO_SIZES = ("600", "540")
LARGE_PHOTO_SIZES = ("2048", "1800")


def _json_or_none(value):
    return json.dumps(value) if value is not None else None


@dataclass
class Activity:
    strava_activity_id: int
    start_date: str
    name: Optional[str] = None
    type: Optional[str] = None
    sport_type: Optional[str] = None
    start_date_local: Optional[str] = None
    timezone: Optional[str] = None
    distance: Optional[float] = None
    moving_time: Optional[int] = None
    elapsed_time: Optional[int] = None
    total_elevation_gain: Optional[float] = None
    average_speed: Optional[float] = None
    max_speed: Optional[float] = None
    average_heartrate: Optional[float] = None
    max_heartrate: Optional[float] = None
    average_watts: Optional[float] = None
    max_watts: Optional[float] = None
    average_cadence: Optional[float] = None
    kilojoules: Optional[float] = None
    calories: Optional[float] = None
    gear_id: Optional[str] = None
    device_name: Optional[str] = None
    achievement_count: int = 0
    kudos_count: int = 0
    comment_count: int = 0
    photo_count: int = 0
    trainer: bool = False
    commute: bool = False
    manual: bool = False
    private: bool = False

    @classmethod
    def from_strava(cls, data: dict) -> "Activity":
        return cls(
            strava_activity_id=int(data["id"]),
            start_date=data["start_date"],
            name=data.get("name"),
            type=data.get("type"),
            sport_type=data.get("sport_type"),
            start_date_local=data.get("start_date_local"),
            timezone=data.get("timezone"),
            distance=data.get("distance"),
            moving_time=data.get("moving_time"),
            elapsed_time=data.get("elapsed_time"),
            total_elevation_gain=data.get("total_elevation_gain"),
            average_speed=data.get("average_speed"),
            max_speed=data.get("max_speed"),
            average_heartrate=data.get("average_heartrate"),
            max_heartrate=data.get("max_heartrate"),
            average_watts=data.get("average_watts"),
            max_watts=data.get("max_watts"),
            average_cadence=data.get("average_cadence"),
            kilojoules=data.get("kilojoules"),
            calories=data.get("calories"),
            gear_id=data.get("gear_id") or None,
            device_name=data.get("device_name"),
            achievement_count=data.get("achievement_count") or 0,
            kudos_count=data.get("kudos_count") or 0,
            comment_count=data.get("comment_count") or 0,
            photo_count=data.get("total_photo_count") or 0,
            trainer=bool(data.get("trainer")),
            commute=bool(data.get("commute")),
            manual=bool(data.get("manual")),
            private=bool(data.get("private")),
        )


@dataclass
class Segment:
    id: int
    name: Optional[str] = None
    activity_type: Optional[str] = None
    distance: Optional[float] = None
    average_grade: Optional[float] = None
    maximum_grade: Optional[float] = None
    elevation_high: Optional[float] = None
    elevation_low: Optional[float] = None
    start_latlng: Optional[str] = None
    end_latlng: Optional[str] = None
    climb_category: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    source: str = "strava"

    @classmethod
    def from_strava(cls, data: dict) -> "Segment":
        return cls(
            id=int(data["id"]),
            name=data.get("name"),
            activity_type=data.get("activity_type"),
            distance=data.get("distance"),
            average_grade=data.get("average_grade"),
            maximum_grade=data.get("maximum_grade"),
            elevation_high=data.get("elevation_high"),
            elevation_low=data.get("elevation_low"),
            start_latlng=_json_or_none(data.get("start_latlng") or None),
            end_latlng=_json_or_none(data.get("end_latlng") or None),
            climb_category=data.get("climb_category"),
            city=data.get("city"),
            state=data.get("state"),
            country=data.get("country"),
        )


@dataclass
class SegmentEffort:
    effort_id: int
    segment_id: int
    activity_id: int
    user_id: Optional[int] = None
    name: Optional[str] = None
    start_date: Optional[str] = None
    start_date_local: Optional[str] = None
    elapsed_time: Optional[int] = None
    moving_time: Optional[int] = None
    distance: Optional[float] = None
    average_watts: Optional[float] = None
    average_heartrate: Optional[float] = None
    pr_rank: Optional[int] = None
    kom_rank: Optional[int] = None
    rank: Optional[int] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    device_watts: Optional[bool] = None
    hidden: Optional[bool] = None
    source: str = "strava"

    @classmethod
    def from_strava(cls, data: dict, activity_id: int,
                    user_id: int | None = None) -> "SegmentEffort":
        segment = data["segment"]
        return cls(
            effort_id=int(data["id"]),
            segment_id=int(segment["id"]),
            activity_id=activity_id,
            user_id=user_id,
            name=data.get("name") or segment.get("name"),
            start_date=data.get("start_date"),
            start_date_local=data.get("start_date_local"),
            elapsed_time=data.get("elapsed_time"),
            moving_time=data.get("moving_time"),
            distance=data.get("distance"),
            average_watts=data.get("average_watts"),
            average_heartrate=data.get("average_heartrate"),
            pr_rank=data.get("pr_rank"),
            kom_rank=data.get("kom_rank"),
            rank=data.get("rank"),
            start_index=data.get("start_index"),
            end_index=data.get("end_index"),
            device_watts=data.get("device_watts"),
            hidden=data.get("hidden"),
        )


def infer_gear_type(gear: dict) -> str | None:
    """Classify gear as 'bike' or 'shoes' from its type, else its id prefix."""
    raw_type = (gear.get("type") or "").lower()
    if "bike" in raw_type:
        return "bike"
    if "shoe" in raw_type:
        return "shoes"

    gear_id = (gear.get("id") or "").lower()
    if gear_id.startswith("b"):
        return "bike"
    if gear_id.startswith("g"):
        return "shoes"
    return None


@dataclass
class Gear:
    id: str
    name: Optional[str] = None
    brand_name: Optional[str] = None
    model_name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    distance: Optional[float] = None
    retired: bool = False

    @classmethod
    def from_strava(cls, data: dict) -> "Gear":
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            brand_name=data.get("brand_name"),
            model_name=data.get("model_name"),
            description=data.get("description"),
            type=infer_gear_type(data),
            distance=data.get("distance"),
            retired=bool(data.get("retired")),
        )


def _pick_url(urls: dict, sizes: tuple, fallback: str | None) -> str | None:
    for size in sizes:
        if urls.get(size):
            return urls[size]
    return fallback


@dataclass
class Photo:
    unique_id: str
    activity_id: int
    caption: Optional[str] = None
    source: Optional[int] = None
    url_small: Optional[str] = None
    url_medium: Optional[str] = None
    url_large: Optional[str] = None
    local_path: Optional[str] = None
    is_primary: bool = False
    location: Optional[str] = None
    uploaded_at: Optional[str] = None

    @classmethod
    def from_strava(cls, data: dict, activity_id: int, position: int = 0) -> "Photo":
        """Map a photo payload; position is its index in the activity's photo list."""
        urls = data.get("urls") or {}
        first_url = next(iter(urls.values()), None)
        url_small = _pick_url(urls, SMALL_PHOTO_SIZES, first_url)
        url_medium = _pick_url(urls, MEDIUM_PHOTO_SIZES, url_small)
        url_large = _pick_url(urls, LARGE_PHOTO_SIZES, url_medium)

        return cls(
            unique_id=str(data["unique_id"]),
            activity_id=activity_id,
            caption=data.get("caption"),
            source=data.get("source"),
            url_small=url_small,
            url_medium=url_medium,
            url_large=url_large,
            is_primary=bool(data.get("default_photo")) or position == 0,
            location=_json_or_none(data.get("location") or None),
            uploaded_at=data.get("uploaded_at"),
        )


def start_timestamp(start_date: str | None) -> float | None:
    """Epoch seconds for a Strava ISO-8601 UTC timestamp ("...Z")."""
    if not start_date:
        return None
    return datetime.fromisoformat(start_date.replace("Z", "+00:00")).timestamp()
