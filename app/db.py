import sqlite3
from pathlib import Path

def get_conn(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)  # autocommit
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn

DDL = [
    # Per-ticker metrics snapshots (durable cache tier)
    """
CREATE TABLE IF NOT EXISTS market_data_snapshots (
  ticker TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  has_overview INTEGER NOT NULL DEFAULT 0
);
""",

    # Singleton payloads (warm state)
    """
CREATE TABLE IF NOT EXISTS cache_singletons (
  key TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",

    # Metadata
    """
CREATE TABLE IF NOT EXISTS metadata (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
""",

    # Investable universe snapshots
    """
CREATE TABLE IF NOT EXISTS asset_universe_snapshots (
  id TEXT PRIMARY KEY,
  as_of TEXT NOT NULL,
  source TEXT,
  created_at_utc TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS asset_universe_members (
  snapshot_id TEXT NOT NULL,
  ticker TEXT NOT NULL,
  name TEXT,
  PRIMARY KEY (snapshot_id, ticker)
);
""",
    "CREATE INDEX IF NOT EXISTS ix_universe_snapshots_as_of ON asset_universe_snapshots(as_of DESC);",

    # Scoring weeks and lineups (read-only here, owned by the league service)
    """
CREATE TABLE IF NOT EXISTS weeks (
  id TEXT PRIMARY KEY,
  league_id TEXT NOT NULL,
  week_start TEXT NOT NULL,  -- YYYY-MM-DD
  week_end TEXT NOT NULL     -- YYYY-MM-DD
);
""",
    """
CREATE TABLE IF NOT EXISTS lineups (
  id TEXT PRIMARY KEY,
  league_id TEXT NOT NULL,
  week_id TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_lineups_league_week ON lineups(league_id, week_id);",
    """
CREATE TABLE IF NOT EXISTS lineup_positions (
  lineup_id TEXT NOT NULL,
  ticker TEXT NOT NULL,
  weight REAL,
  PRIMARY KEY (lineup_id, ticker)
);
""",

    # Settlement-grade weekly prices
    """
CREATE TABLE IF NOT EXISTS weekly_prices (
  week_id TEXT NOT NULL,
  ticker TEXT NOT NULL,
  open_price REAL NOT NULL,
  close_price REAL NOT NULL,
  open_date TEXT,
  close_date TEXT,
  resolved_at_utc TEXT NOT NULL,
  PRIMARY KEY (week_id, ticker)
);
""",

    # Settlement runs
    """
CREATE TABLE IF NOT EXISTS settlement_runs (
  run_id TEXT PRIMARY KEY,
  league_id TEXT NOT NULL,
  week_id TEXT NOT NULL,
  started_at_utc TEXT NOT NULL,
  finished_at_utc TEXT,
  status TEXT NOT NULL,   -- 'running'|'succeeded'|'failed'
  resolved_count INTEGER,
  missing_json TEXT,
  error_message TEXT
);
""",
]

def migrate(conn: sqlite3.Connection):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    conn.commit()
