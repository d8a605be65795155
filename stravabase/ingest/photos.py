"""Activity photo metadata sync and local image download."""

import time as time_mod
from pathlib import Path
from urllib.parse import urlparse

import requests

from stravabase.ingest.strava_client import StravaRateLimitError
from stravabase.models import Photo
from stravabase.store import (
    complete_sync_log,
    count_activities_missing_photos,
    count_photos_missing_local_path,
    fail_sync_log,
    find_activities_missing_photos,
    find_photos_missing_local_path,
    start_sync_log,
    update_photo_count,
    update_photo_local_path,
    upsert_photo,
)

DEFAULT_PHOTO_DIR = Path.home() / "stravabase" / "data" / "photos"

PHOTO_SYNC_DELAY_S = 1.0
DOWNLOAD_DELAY_S = 0.2
DOWNLOAD_TIMEOUT_S = 30


def get_photo_dir(config=None) -> Path:
    """Resolve the photo directory from config or fall back to default."""
    if config and "paths" in config and "photos" in config["paths"]:
        return Path(config["paths"]["photos"])
    return DEFAULT_PHOTO_DIR


def sync_activity_photos(conn, client, activity_id: int) -> int:
    """Fetch and store one activity's photo metadata. Returns photos stored.

    photo_count is overwritten with the fetched count; photos that disappeared
    upstream are left in place.
    """
    photos = client.get_activity_photos(activity_id)
    for position, raw in enumerate(photos):
        upsert_photo(conn, Photo.from_strava(raw, activity_id, position))
    update_photo_count(conn, activity_id, len(photos))
    conn.commit()
    return len(photos)


def sync_photos(conn, client, limit: int = 100, verbose: bool = False) -> dict:
    """Fetch photo metadata for activities that report photos but have none stored.

    Returns dict with keys: processed, photos, errors, rate_limited, remaining,
    warnings, details.
    """
    log_id = start_sync_log(conn, "photos")
    result = {"processed": 0, "photos": 0, "errors": 0, "rate_limited": False,
              "remaining": 0, "warnings": [], "details": []}

    try:
        activity_ids = find_activities_missing_photos(conn, limit)
        if verbose:
            print(f"Found {len(activity_ids)} activities needing photos.")

        for i, activity_id in enumerate(activity_ids):
            if i:
                time_mod.sleep(PHOTO_SYNC_DELAY_S)
            try:
                count = sync_activity_photos(conn, client, activity_id)
                result["processed"] += 1
                result["photos"] += count
                if verbose:
                    print(f"  PHOTOS {activity_id}: {count}")
            except StravaRateLimitError as e:
                conn.rollback()
                result["rate_limited"] = True
                result["warnings"].append(f"rate limited after {result['processed']} activities")
                if verbose:
                    print(f"  RATE LIMIT {e}; stopping early")
                break
            except Exception as e:
                conn.rollback()
                result["errors"] += 1
                result["warnings"].append(f"{activity_id}: {e}")
                result["details"].append({"strava_id": activity_id, "status": "error",
                                          "error": str(e)})
                if verbose:
                    print(f"  ERROR {activity_id}: {e}")

        result["remaining"] = count_activities_missing_photos(conn)
    except Exception as e:
        fail_sync_log(conn, log_id, result, e)
        raise

    complete_sync_log(conn, log_id, result["processed"], warnings=result["warnings"])
    return result


def _source_url(photo: dict) -> str | None:
    return photo.get("url_medium") or photo.get("url_large") or photo.get("url_small")


def _extension(url: str) -> str:
    return Path(urlparse(url).path).suffix or ".jpg"


def download_photos(conn, photo_dir, limit: int = 100,
                    session: requests.Session | None = None,
                    verbose: bool = False) -> dict:
    """Download stored photos that have no local copy yet.

    Files land at <photo_dir>/<activity_id>/<unique_id><ext>; the path relative
    to photo_dir is recorded on the row. Returns dict with keys: downloaded,
    errors, remaining, warnings, details.
    """
    photo_dir = Path(photo_dir)
    session = session or requests.Session()
    log_id = start_sync_log(conn, "download_photos")
    result = {"downloaded": 0, "errors": 0, "remaining": 0, "warnings": [], "details": []}

    try:
        photos = find_photos_missing_local_path(conn, limit)
        if verbose:
            print(f"Found {len(photos)} photos to download.")

        for i, photo in enumerate(photos):
            if i:
                time_mod.sleep(DOWNLOAD_DELAY_S)
            url = _source_url(photo)
            try:
                response = session.get(url, timeout=DOWNLOAD_TIMEOUT_S)
                response.raise_for_status()

                name = f"{photo['unique_id']}{_extension(url)}"
                relative = Path(str(photo["activity_id"])) / name
                target = photo_dir / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(response.content)

                update_photo_local_path(conn, photo["unique_id"], relative.as_posix())
                conn.commit()
                result["downloaded"] += 1
                if verbose:
                    print(f"  PHOTO {relative}")
            except Exception as e:
                conn.rollback()
                result["errors"] += 1
                result["warnings"].append(f"{photo['unique_id']}: {e}")
                result["details"].append({"unique_id": photo["unique_id"], "status": "error",
                                          "error": str(e)})
                if verbose:
                    print(f"  ERROR photo {photo['unique_id']}: {e}")

        result["remaining"] = count_photos_missing_local_path(conn)
    except Exception as e:
        fail_sync_log(conn, log_id, result, e, processed_key="downloaded")
        raise

    complete_sync_log(conn, log_id, result["downloaded"], warnings=result["warnings"])
    return result
