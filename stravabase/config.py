import math
import os
from pathlib import Path

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"

DEFAULT_SYNC_SETTINGS = {
    "recent_days": 7,
    "initial_days": 180,
    "include_streams": True,
    "include_segments": True,
    "backfill": {
        "streams_limit": 200,
        "segments_limit": 200,
        "photos_limit": 100,
        "downloads_limit": 100,
    },
}

# (setting, user_settings key, min, max)
_NUMERIC_SETTINGS = [
    ("recent_days", "sync_activity_recent_days", 1, 90),
    ("initial_days", "sync_initial_days", 1, 3650),
]
_BOOLEAN_SETTINGS = [
    ("include_streams", "sync_activity_include_streams"),
    ("include_segments", "sync_activity_include_segments"),
]
_BACKFILL_LIMITS = [
    ("streams_limit", "sync_backfill_streams_limit", 0, 2000),
    ("segments_limit", "sync_backfill_segments_limit", 0, 1000),
    ("photos_limit", "sync_backfill_photos_limit", 0, 1000),
    ("downloads_limit", "sync_backfill_downloads_limit", 0, 1000),
]


def _expand(value):
    """Recursively expand ~ and env vars in string values."""
    if isinstance(value, str):
        return os.path.expandvars(os.path.expanduser(value))
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def load_config(path=None):
    """Load YAML config, expanding ~ and $ENV_VARS in all string values.

    Lookup order: explicit path, $STRAVABASE_CONFIG, config/config.yaml.
    """
    if path is None and os.environ.get("STRAVABASE_CONFIG"):
        path = os.environ["STRAVABASE_CONFIG"]
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return _expand(raw)


def get_strava_setting(config: dict | None, key: str, env_var: str) -> str | None:
    """Read a strava.* value, falling back to an environment variable.

    Unexpanded "$VAR" placeholders left behind by os.path.expandvars count
    as missing.
    """
    value = None
    if config:
        value = (config.get("strava") or {}).get(key)
    if value is not None:
        value = str(value).strip()
    if not value or value.startswith("$"):
        value = os.environ.get(env_var) or None
    return value


def parse_bool(value, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return fallback


def parse_number(value, fallback: int, min_value: int, max_value: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return min(max_value, max(min_value, round(parsed)))


def get_sync_settings(config: dict | None = None, user_settings: dict | None = None) -> dict:
    """Resolve sync settings: defaults <- config `sync:` section <- user_settings rows.

    user_settings is a {key: value} map as stored in the user_settings table.
    A backfill limit of 0 falls back to its default.
    """
    file_cfg = (config or {}).get("sync") or {}
    file_backfill = file_cfg.get("backfill") or {}
    overrides = user_settings or {}
    defaults = DEFAULT_SYNC_SETTINGS

    settings = {"backfill": {}}
    for name, key, lo, hi in _NUMERIC_SETTINGS:
        value = parse_number(file_cfg.get(name), defaults[name], lo, hi)
        settings[name] = parse_number(overrides.get(key), value, lo, hi)
    for name, key in _BOOLEAN_SETTINGS:
        value = parse_bool(file_cfg.get(name), defaults[name])
        settings[name] = parse_bool(overrides.get(key), value)
    for name, key, lo, hi in _BACKFILL_LIMITS:
        default = defaults["backfill"][name]
        value = parse_number(file_backfill.get(name), default, lo, hi)
        value = parse_number(overrides.get(key), value, lo, hi)
        settings["backfill"][name] = value or default

    return settings
