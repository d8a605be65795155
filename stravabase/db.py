import sqlite3
from pathlib import Path

SCHEMA_SQL = """\
-- Athlete profiles; exactly one is "active" (see store.get_active_user_id)
CREATE TABLE IF NOT EXISTS user_profile (
    id                      INTEGER PRIMARY KEY,
    strava_athlete_id       INTEGER UNIQUE NOT NULL,
    username                TEXT,
    firstname               TEXT,
    lastname                TEXT,
    profile_photo           TEXT,
    city                    TEXT,
    country                 TEXT,
    strava_access_token     TEXT,
    strava_refresh_token    TEXT,
    strava_token_expires_at INTEGER,
    strava_scope            TEXT,
    last_sync_at            TEXT,
    is_active               BOOLEAN DEFAULT TRUE,
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now'))
);

-- Per-user key/value settings (athlete_weight, sync_* overrides)
CREATE TABLE IF NOT EXISTS user_settings (
    id                  INTEGER PRIMARY KEY,
    user_id             INTEGER REFERENCES user_profile(id) ON DELETE CASCADE,
    key                 TEXT NOT NULL,
    value               TEXT NOT NULL,
    updated_at          TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, key)
);

-- One row per Strava activity
CREATE TABLE IF NOT EXISTS activities (
    id                      INTEGER PRIMARY KEY,
    user_id                 INTEGER REFERENCES user_profile(id) ON DELETE CASCADE,
    strava_activity_id      INTEGER UNIQUE NOT NULL,
    name                    TEXT,
    type                    TEXT,
    sport_type              TEXT,
    start_date              TEXT NOT NULL,
    start_date_local        TEXT,
    timezone                TEXT,
    distance                REAL,
    moving_time             INTEGER,
    elapsed_time            INTEGER,
    total_elevation_gain    REAL,
    average_speed           REAL,
    max_speed               REAL,
    average_heartrate       REAL,
    max_heartrate           REAL,
    average_watts           REAL,
    max_watts               REAL,
    average_cadence         REAL,
    kilojoules              REAL,
    calories                REAL,
    gear_id                 TEXT,
    device_name             TEXT,
    achievement_count       INTEGER DEFAULT 0,
    kudos_count             INTEGER DEFAULT 0,
    comment_count           INTEGER DEFAULT 0,
    photo_count             INTEGER DEFAULT 0,
    trainer                 BOOLEAN DEFAULT FALSE,
    commute                 BOOLEAN DEFAULT FALSE,
    manual                  BOOLEAN DEFAULT FALSE,
    private                 BOOLEAN DEFAULT FALSE,
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now'))
);

-- One row per (activity, channel); data is a JSON array
CREATE TABLE IF NOT EXISTS activity_streams (
    id                  INTEGER PRIMARY KEY,
    activity_id         INTEGER REFERENCES activities(strava_activity_id) ON DELETE CASCADE,
    stream_type         TEXT NOT NULL,
    data                TEXT NOT NULL,
    created_at          TEXT DEFAULT (datetime('now')),
    UNIQUE(activity_id, stream_type)
);

-- Segment definitions, deduplicated by Strava segment id
CREATE TABLE IF NOT EXISTS segments (
    id                  INTEGER PRIMARY KEY,
    name                TEXT,
    activity_type       TEXT,
    distance            REAL,
    average_grade       REAL,
    maximum_grade       REAL,
    elevation_high      REAL,
    elevation_low       REAL,
    start_latlng        TEXT,
    end_latlng          TEXT,
    climb_category      INTEGER,
    city                TEXT,
    state               TEXT,
    country             TEXT,
    source              TEXT DEFAULT 'strava',
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- One activity's attempt at one segment
CREATE TABLE IF NOT EXISTS segment_efforts (
    id                  INTEGER PRIMARY KEY,
    effort_id           INTEGER UNIQUE NOT NULL,
    segment_id          INTEGER REFERENCES segments(id) ON DELETE CASCADE,
    activity_id         INTEGER REFERENCES activities(strava_activity_id) ON DELETE CASCADE,
    user_id             INTEGER REFERENCES user_profile(id) ON DELETE SET NULL,
    name                TEXT,
    start_date          TEXT,
    start_date_local    TEXT,
    elapsed_time        INTEGER,
    moving_time         INTEGER,
    distance            REAL,
    average_watts       REAL,
    average_heartrate   REAL,
    pr_rank             INTEGER,
    kom_rank            INTEGER,
    rank                INTEGER,
    start_index         INTEGER,
    end_index           INTEGER,
    device_watts        BOOLEAN,
    hidden              BOOLEAN,
    source              TEXT DEFAULT 'strava',
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- Bikes and shoes
CREATE TABLE IF NOT EXISTS gear (
    id                  TEXT PRIMARY KEY,
    name                TEXT,
    brand_name          TEXT,
    model_name          TEXT,
    description         TEXT,
    type                TEXT,
    distance            REAL DEFAULT 0,
    retired             BOOLEAN DEFAULT FALSE,
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- Photo metadata; local_path is set once the image has been downloaded
CREATE TABLE IF NOT EXISTS activity_photos (
    id                  INTEGER PRIMARY KEY,
    activity_id         INTEGER REFERENCES activities(strava_activity_id) ON DELETE CASCADE,
    unique_id           TEXT UNIQUE NOT NULL,
    caption             TEXT,
    source              INTEGER DEFAULT 1,
    url_small           TEXT,
    url_medium          TEXT,
    url_large           TEXT,
    local_path          TEXT,
    is_primary          BOOLEAN DEFAULT FALSE,
    location            TEXT,
    uploaded_at         TEXT,
    created_at          TEXT DEFAULT (datetime('now'))
);

-- Daily snapshot of athlete totals
CREATE TABLE IF NOT EXISTS athlete_stats (
    id                          INTEGER PRIMARY KEY,
    recorded_at                 TEXT NOT NULL UNIQUE,
    recent_ride_totals_count    INTEGER DEFAULT 0,
    recent_ride_totals_distance REAL DEFAULT 0,
    recent_ride_totals_time     INTEGER DEFAULT 0,
    recent_ride_totals_elevation REAL DEFAULT 0,
    recent_run_totals_count     INTEGER DEFAULT 0,
    recent_run_totals_distance  REAL DEFAULT 0,
    recent_run_totals_time      INTEGER DEFAULT 0,
    recent_run_totals_elevation REAL DEFAULT 0,
    recent_swim_totals_count    INTEGER DEFAULT 0,
    recent_swim_totals_distance REAL DEFAULT 0,
    recent_swim_totals_time     INTEGER DEFAULT 0,
    ytd_ride_totals_count       INTEGER DEFAULT 0,
    ytd_ride_totals_distance    REAL DEFAULT 0,
    ytd_ride_totals_time        INTEGER DEFAULT 0,
    ytd_ride_totals_elevation   REAL DEFAULT 0,
    ytd_run_totals_count        INTEGER DEFAULT 0,
    ytd_run_totals_distance     REAL DEFAULT 0,
    ytd_run_totals_time         INTEGER DEFAULT 0,
    ytd_run_totals_elevation    REAL DEFAULT 0,
    ytd_swim_totals_count       INTEGER DEFAULT 0,
    ytd_swim_totals_distance    REAL DEFAULT 0,
    ytd_swim_totals_time        INTEGER DEFAULT 0,
    all_ride_totals_count       INTEGER DEFAULT 0,
    all_ride_totals_distance    REAL DEFAULT 0,
    all_ride_totals_time        INTEGER DEFAULT 0,
    all_ride_totals_elevation   REAL DEFAULT 0,
    all_run_totals_count        INTEGER DEFAULT 0,
    all_run_totals_distance     REAL DEFAULT 0,
    all_run_totals_time         INTEGER DEFAULT 0,
    all_run_totals_elevation    REAL DEFAULT 0,
    all_swim_totals_count       INTEGER DEFAULT 0,
    all_swim_totals_distance    REAL DEFAULT 0,
    all_swim_totals_time        INTEGER DEFAULT 0
);

-- One row per sync/backfill invocation
CREATE TABLE IF NOT EXISTS sync_logs (
    id                  INTEGER PRIMARY KEY,
    mode                TEXT,
    started_at          TEXT DEFAULT (datetime('now')),
    completed_at        TEXT,
    status              TEXT,
    items_processed     INTEGER DEFAULT 0,
    error_message       TEXT
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_activities_start_date ON activities(start_date);
CREATE INDEX IF NOT EXISTS idx_activities_type ON activities(type);
CREATE INDEX IF NOT EXISTS idx_activities_gear ON activities(gear_id);
CREATE INDEX IF NOT EXISTS idx_activities_user_id ON activities(user_id);
CREATE INDEX IF NOT EXISTS idx_activity_streams_activity ON activity_streams(activity_id);
CREATE INDEX IF NOT EXISTS idx_segment_efforts_activity ON segment_efforts(activity_id);
CREATE INDEX IF NOT EXISTS idx_segment_efforts_segment ON segment_efforts(segment_id);
CREATE INDEX IF NOT EXISTS idx_activity_photos_activity ON activity_photos(activity_id);
CREATE INDEX IF NOT EXISTS idx_user_profile_active ON user_profile(is_active);
"""

DEFAULT_DB_PATH = Path.home() / "stravabase" / "data" / "stravabase.db"


def get_db_path(config=None):
    """Resolve the database path from config or fall back to default."""
    if config and "paths" in config and "db" in config["paths"]:
        return Path(config["paths"]["db"])
    return DEFAULT_DB_PATH


def get_connection(config=None):
    """Return a sqlite3 connection using the configured db path."""
    db_path = get_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _migrate_schema(conn):
    """Add columns that may be missing from existing databases."""
    migrations = [
        ("activities", "start_date_local", "TEXT"),
        ("activities", "timezone", "TEXT"),
        ("activities", "user_id", "INTEGER REFERENCES user_profile(id)"),
        ("segment_efforts", "source", "TEXT DEFAULT 'strava'"),
        ("segments", "source", "TEXT DEFAULT 'strava'"),
        ("activity_photos", "local_path", "TEXT"),
        ("sync_logs", "mode", "TEXT"),
    ]

    existing = {}
    for table, col, col_type in migrations:
        if table not in existing:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            existing[table] = {r[1] for r in rows}
        if col not in existing[table]:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {col_type}")

    conn.commit()


def _seed_default_profile(conn):
    """Ensure at least one profile exists so activities have an owner."""
    row = conn.execute("SELECT COUNT(*) FROM user_profile").fetchone()
    if row[0] == 0:
        conn.execute(
            """INSERT INTO user_profile (strava_athlete_id, username, firstname, is_active)
               VALUES (0, 'default', 'Athlete', TRUE)"""
        )
        conn.commit()


def create_schema(conn):
    """Create tables, apply migrations and seed the default profile."""
    conn.executescript(SCHEMA_SQL)
    _migrate_schema(conn)
    _seed_default_profile(conn)


def init_db(config=None):
    """Create all tables and indexes."""
    conn = get_connection(config)
    create_schema(conn)
    conn.close()
    db_path = get_db_path(config)
    print(f"Database initialized at {db_path}")
    return db_path
