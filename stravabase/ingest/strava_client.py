"""Strava API client with proactive token refresh and 429 backoff.

OAuth token exchange goes through stravalib; resource calls go through a
plain requests.Session so rate-limit headers and 404s are visible to us.
"""

import time as time_mod
from dataclasses import dataclass
from typing import Callable

import requests
from stravalib import Client

from stravabase.config import get_strava_setting
from stravabase.models import start_timestamp
from stravabase.store import get_active_user_id, load_profile_tokens, save_profile_tokens

STRAVA_API_BASE = "https://www.strava.com/api/v3"

TOKEN_REFRESH_MARGIN_S = 300
MAX_RETRIES = 3
MAX_BACKOFF_S = 900
SHORT_WINDOW_WAIT_S = 15 * 60
LONG_WINDOW_WAIT_S = 60 * 60
REQUEST_TIMEOUT_S = 30

PAGE_SIZE = 100
PAGE_DELAY_S = 1.0

STREAM_KEYS = ["latlng", "heartrate", "watts", "cadence", "altitude",
               "time", "distance", "velocity_smooth"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StravaError(Exception):
    """Base class for all Strava client failures."""


class StravaConfigError(StravaError):
    """Client id, secret or refresh token missing."""


class StravaAuthError(StravaError):
    """Token refresh rejected upstream."""


class StravaRateLimitError(StravaError):
    """Still rate limited after the retry budget was spent."""


class StravaNotFoundError(StravaError):
    pass


class StravaAPIError(StravaError):
    def __init__(self, status_code: int, message: str = ""):
        detail = f": {message}" if message else ""
        super().__init__(f"Strava API error {status_code}{detail}")
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass
class StravaCredentials:
    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    expires_at: int = 0

    def needs_refresh(self, now: float) -> bool:
        return not self.access_token or self.expires_at <= now + TOKEN_REFRESH_MARGIN_S

    def apply(self, token_response):
        """Take the new access/refresh/expiry triple from a token response."""
        self.access_token = token_response["access_token"]
        self.expires_at = int(token_response["expires_at"])
        if token_response.get("refresh_token"):
            self.refresh_token = token_response["refresh_token"]


def refresh_with_stravalib(credentials: StravaCredentials):
    client = Client()
    return client.refresh_access_token(
        client_id=int(credentials.client_id),
        client_secret=credentials.client_secret,
        refresh_token=credentials.refresh_token,
    )


# ---------------------------------------------------------------------------
# Backoff policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryDecision:
    """Outcome of one HTTP attempt: ok, retry (after wait seconds), not_found or fail."""
    kind: str
    wait: float = 0
    status_code: int | None = None


def _header(headers, name: str) -> str | None:
    for key, value in (headers or {}).items():
        if key.lower() == name.lower():
            return value
    return None


def _parse_pair(value: str | None) -> list:
    if not value:
        return []
    parsed = []
    for part in value.split(","):
        try:
            parsed.append(int(part.strip()))
        except ValueError:
            parsed.append(None)
    return parsed


def compute_retry_delay(headers, attempt: int) -> int:
    """Seconds to wait before retrying a 429.

    Retry-After wins; otherwise an exhausted 15-minute window waits 900 s and
    an exhausted daily window 3600 s; otherwise linear backoff capped at 900 s.
    """
    retry_after = _header(headers, "Retry-After")
    if retry_after:
        try:
            seconds = int(retry_after)
        except ValueError:
            seconds = 0
        if seconds > 0:
            return seconds

    usage = _parse_pair(_header(headers, "X-RateLimit-Usage"))
    limits = _parse_pair(_header(headers, "X-RateLimit-Limit"))
    if len(usage) >= 2 and len(limits) >= 2:
        if usage[0] is not None and limits[0] is not None and usage[0] >= limits[0]:
            return SHORT_WINDOW_WAIT_S
        if usage[1] is not None and limits[1] is not None and usage[1] >= limits[1]:
            return LONG_WINDOW_WAIT_S

    return min(MAX_BACKOFF_S, (attempt + 1) * 60)


def classify_response(response, attempt: int, max_retries: int = MAX_RETRIES) -> RetryDecision:
    status = response.status_code
    if 200 <= status < 300:
        return RetryDecision("ok", status_code=status)
    if status == 404:
        return RetryDecision("not_found", status_code=status)
    if status == 429 and attempt < max_retries:
        return RetryDecision("retry", wait=compute_retry_delay(response.headers, attempt),
                             status_code=status)
    return RetryDecision("fail", status_code=status)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class StravaClient:
    """Authenticated, rate-limit-aware access to the Strava v3 API."""

    def __init__(self, credentials: StravaCredentials,
                 session: requests.Session | None = None,
                 refresher: Callable | None = None,
                 on_token_refresh: Callable | None = None,
                 sleep: Callable | None = None,
                 clock: Callable | None = None,
                 verbose: bool = False):
        missing = [name for name in ("client_id", "client_secret", "refresh_token")
                   if not getattr(credentials, name)]
        if missing:
            raise StravaConfigError(f"Missing Strava credentials: {', '.join(missing)}")

        self.credentials = credentials
        self.session = session or requests.Session()
        self.refresher = refresher or refresh_with_stravalib
        self.on_token_refresh = on_token_refresh
        self.sleep = sleep or time_mod.sleep
        self.clock = clock or time_mod.time
        self.verbose = verbose

    def ensure_valid_token(self) -> str:
        if not self.credentials.needs_refresh(self.clock()):
            return self.credentials.access_token

        if self.verbose:
            print("  AUTH refreshing Strava access token")
        try:
            token_response = self.refresher(self.credentials)
        except Exception as e:
            raise StravaAuthError(f"Token refresh failed: {e}") from e

        self.credentials.apply(token_response)
        if self.on_token_refresh:
            self.on_token_refresh(self.credentials)
        return self.credentials.access_token

    def _get(self, path: str, params: dict | None = None):
        """GET a JSON resource, retrying 429s; raises StravaNotFoundError on 404."""
        url = f"{STRAVA_API_BASE}{path}"
        for attempt in range(MAX_RETRIES + 1):
            token = self.ensure_valid_token()
            response = self.session.get(
                url, params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=REQUEST_TIMEOUT_S,
            )
            decision = classify_response(response, attempt)

            if decision.kind == "ok":
                return response.json()
            if decision.kind == "retry":
                if self.verbose:
                    print(f"  RATE LIMIT {path}: waiting {decision.wait}s "
                          f"(retry {attempt + 1}/{MAX_RETRIES})")
                self.sleep(decision.wait)
                continue
            if decision.kind == "not_found":
                raise StravaNotFoundError(path)
            if decision.status_code == 429:
                raise StravaRateLimitError(
                    f"Rate limited on {path} after {MAX_RETRIES} retries")
            raise StravaAPIError(decision.status_code, response.text[:200])

        raise StravaRateLimitError(f"Rate limited on {path}")

    # -- athlete ------------------------------------------------------------

    def get_athlete(self) -> dict:
        return self._get("/athlete")

    def get_athlete_stats(self, athlete_id: int) -> dict:
        return self._get(f"/athletes/{athlete_id}/stats")

    # -- activities ---------------------------------------------------------

    def get_activities(self, page: int = 1, per_page: int = PAGE_SIZE,
                       after: int | None = None, before: int | None = None) -> list:
        params = {"page": page, "per_page": per_page}
        if after is not None:
            params["after"] = int(after)
        if before is not None:
            params["before"] = int(before)
        return self._get("/athlete/activities", params)

    def get_all_activities(self, per_page: int = PAGE_SIZE) -> list:
        activities = []
        page = 1
        while True:
            batch = self.get_activities(page=page, per_page=per_page)
            activities.extend(batch)
            if self.verbose:
                print(f"  PAGE {page}: {len(batch)} activities")
            if len(batch) < per_page:
                break
            page += 1
            self.sleep(PAGE_DELAY_S)
        return activities

    def get_activities_since(self, after: float, before: float | None = None,
                             per_page: int = PAGE_SIZE) -> list:
        """Activities starting strictly after `after` (and before `before`)."""
        activities = []
        page = 1
        while True:
            batch = self.get_activities(page=page, per_page=per_page,
                                        after=after, before=before)
            in_window = []
            for item in batch:
                ts = start_timestamp(item.get("start_date"))
                if ts is not None and ts > after and (before is None or ts < before):
                    in_window.append(item)
            activities.extend(in_window)

            if len(batch) < per_page or len(in_window) < len(batch):
                break
            page += 1
            self.sleep(PAGE_DELAY_S)
        return activities

    def get_activity(self, activity_id: int, include_all_efforts: bool = False) -> dict:
        params = {"include_all_efforts": "true"} if include_all_efforts else None
        return self._get(f"/activities/{activity_id}", params)

    def get_activity_with_segments(self, activity_id: int) -> dict:
        return self.get_activity(activity_id, include_all_efforts=True)

    def get_activity_streams(self, activity_id: int, keys: list | None = None) -> list:
        """Streams as a list of {"type", "data", ...}; [] when Strava has none."""
        params = {"keys": ",".join(keys or STREAM_KEYS), "key_by_type": "true"}
        try:
            payload = self._get(f"/activities/{activity_id}/streams", params)
        except StravaNotFoundError:
            return []
        if isinstance(payload, dict):
            return [dict(stream, type=stream.get("type", key))
                    for key, stream in payload.items()]
        return payload or []

    def get_activity_photos(self, activity_id: int, size: int = 600) -> list:
        params = {"photo_sources": "true", "size": size}
        try:
            return self._get(f"/activities/{activity_id}/photos", params) or []
        except StravaNotFoundError:
            return []

    # -- gear ---------------------------------------------------------------

    def get_gear(self, gear_id: str) -> dict | None:
        try:
            return self._get(f"/gear/{gear_id}")
        except StravaNotFoundError:
            return None


# ---------------------------------------------------------------------------
# Construction from config + active profile
# ---------------------------------------------------------------------------

def load_credentials(config: dict | None, conn) -> StravaCredentials:
    """Client id/secret from config or env; tokens from the active profile,
    then strava.refresh_token, then $STRAVA_REFRESH_TOKEN.
    """
    client_id = get_strava_setting(config, "client_id", "STRAVA_CLIENT_ID")
    client_secret = get_strava_setting(config, "client_secret", "STRAVA_CLIENT_SECRET")

    tokens = {}
    user_id = get_active_user_id(conn)
    if user_id is not None:
        tokens = load_profile_tokens(conn, user_id)

    refresh_token = tokens.get("refresh_token") or get_strava_setting(
        config, "refresh_token", "STRAVA_REFRESH_TOKEN")

    return StravaCredentials(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        access_token=tokens.get("access_token"),
        expires_at=int(tokens.get("expires_at") or 0),
    )


def get_client(config: dict | None, conn, verbose: bool = False) -> StravaClient:
    """Build a client whose refreshed tokens are written back to the active profile."""
    credentials = load_credentials(config, conn)

    def persist(creds: StravaCredentials):
        user_id = get_active_user_id(conn)
        if user_id is not None:
            save_profile_tokens(conn, user_id, creds.access_token,
                                creds.refresh_token, creds.expires_at)

    return StravaClient(credentials, on_token_refresh=persist, verbose=verbose)
