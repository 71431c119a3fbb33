from __future__ import annotations

import csv
import hashlib
import json
import os
import sqlite3
from datetime import date

from ..db import get_conn, migrate
from ..errors import UniverseUnavailable
from ..utils import normalize_ticker, now_utc_iso


class SnapshotStore:
    """
    Durable tier behind the metrics cache.
    - market_data_snapshots: one row per ticker, last writer wins
    - cache_singletons: keyed payloads (warm state)
    - universe, weeks/lineups and weekly_prices for the background jobs
    Every call opens its own connection, so the store is safe to share
    between request handlers, background tasks and worker threads.
    """
    def __init__(self, db_path: str):
        self.db_path = db_path
        conn = get_conn(self.db_path)
        try:
            migrate(conn)
        finally:
            conn.close()

    def _conn(self) -> sqlite3.Connection:
        return get_conn(self.db_path)

    def ping(self) -> bool:
        conn = self._conn()
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        finally:
            conn.close()

    # Snapshots

    def upsert(self, ticker: str, payload: dict, updated_at: str, has_overview: bool):
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO market_data_snapshots(ticker, payload_json, updated_at_utc, has_overview)
                VALUES(?,?,?,?)
                ON CONFLICT(ticker) DO UPDATE SET
                  payload_json=excluded.payload_json,
                  updated_at_utc=excluded.updated_at_utc,
                  has_overview=excluded.has_overview
                """,
                (ticker, json.dumps(payload, ensure_ascii=False), updated_at, 1 if has_overview else 0),
            )
        finally:
            conn.close()

    def get_many(self, tickers: list[str]) -> dict[str, dict]:
        tickers = sorted({t for t in tickers if t})
        if not tickers:
            return {}
        placeholders = ",".join("?" for _ in tickers)
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT ticker, payload_json, updated_at_utc, has_overview FROM market_data_snapshots WHERE ticker IN ({placeholders})",
                tickers,
            ).fetchall()
        finally:
            conn.close()
        out: dict[str, dict] = {}
        for ticker, payload_json, updated_at, has_overview in rows:
            try:
                payload = json.loads(payload_json)
            except ValueError:
                continue
            if not isinstance(payload, dict) or not updated_at:
                continue
            out[ticker] = {
                "payload": payload,
                "updated_at_utc": updated_at,
                "has_overview": bool(has_overview),
            }
        return out

    # Singletons

    def get_singleton(self, key: str) -> tuple[dict | None, str | None]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT payload_json, updated_at_utc FROM cache_singletons WHERE key=?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None, None
        try:
            payload = json.loads(row[0])
        except ValueError:
            payload = None
        return (payload if isinstance(payload, dict) else None), row[1]

    def upsert_singleton(self, key: str, payload: dict, updated_at: str | None = None):
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO cache_singletons(key, payload_json, updated_at_utc) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET payload_json=excluded.payload_json, updated_at_utc=excluded.updated_at_utc
                """,
                (key, json.dumps(payload, ensure_ascii=False), updated_at or now_utc_iso()),
            )
        finally:
            conn.close()

    # Universe

    def latest_universe(self) -> tuple[list[str], str | None]:
        try:
            conn = self._conn()
            try:
                latest = conn.execute(
                    "SELECT id FROM asset_universe_snapshots ORDER BY as_of DESC, created_at_utc DESC LIMIT 1"
                ).fetchone()
                if not latest:
                    return [], None
                rows = conn.execute(
                    "SELECT ticker FROM asset_universe_members WHERE snapshot_id=?", (latest[0],)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise UniverseUnavailable(f"universe_read_failed: {exc}") from exc
        tickers = sorted({normalize_ticker(row[0]) for row in rows if row[0]})
        return tickers, (latest[0] if tickers else None)

    def import_universe_csv(self, csv_path: str, as_of: str | None = None) -> str | None:
        """Load a ticker CSV as the latest universe snapshot; the id is the content hash, so re-importing an older file makes it current again."""
        if not os.path.exists(csv_path):
            return None
        with open(csv_path, "rb") as f:
            csv_bytes = f.read()
        snapshot_id = hashlib.sha256(csv_bytes).hexdigest()[:16]
        text = csv_bytes.decode("utf-8", errors="ignore")
        members: dict[str, str] = {}
        for row in csv.DictReader(text.splitlines()):
            ticker = normalize_ticker(row.get("ticker") or row.get("symbol") or row.get("Symbol") or row.get("Ticker"))
            if not ticker:
                continue
            members[ticker] = (row.get("name") or row.get("Name") or row.get("description") or "").strip()
        if not members:
            return None
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO asset_universe_snapshots(id, as_of, source, created_at_utc) VALUES(?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET as_of=excluded.as_of, source=excluded.source, created_at_utc=excluded.created_at_utc
                """,
                (snapshot_id, as_of or date.today().isoformat(), os.path.basename(csv_path), now_utc_iso()),
            )
            cur.executemany(
                "INSERT OR REPLACE INTO asset_universe_members(snapshot_id, ticker, name) VALUES(?,?,?)",
                [(snapshot_id, ticker, name) for ticker, name in sorted(members.items())],
            )
            cur.execute(
                "INSERT OR REPLACE INTO metadata(key, value) VALUES('universe_csv_sha', ?)", (snapshot_id,)
            )
        finally:
            conn.close()
        return snapshot_id

    # Weeks and settlement

    def get_week(self, league_id: str, week_id: str) -> dict | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT id, league_id, week_start, week_end FROM weeks WHERE id=? AND league_id=?",
                (week_id, league_id),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return {"id": row[0], "league_id": row[1], "week_start": row[2], "week_end": row[3]}

    def lineup_tickers(self, league_id: str, week_id: str) -> list[str] | None:
        """Union of lineup tickers for the week; None when the week has no lineups."""
        conn = self._conn()
        try:
            lineup_ids = [
                row[0]
                for row in conn.execute(
                    "SELECT id FROM lineups WHERE league_id=? AND week_id=?", (league_id, week_id)
                ).fetchall()
            ]
            if not lineup_ids:
                return None
            placeholders = ",".join("?" for _ in lineup_ids)
            rows = conn.execute(
                f"SELECT ticker FROM lineup_positions WHERE lineup_id IN ({placeholders})", lineup_ids
            ).fetchall()
        finally:
            conn.close()
        return sorted({normalize_ticker(row[0]) for row in rows if row[0]})

    def upsert_weekly_prices(self, week_id: str, prices: list[dict]):
        if not prices:
            return
        resolved_at = now_utc_iso()
        conn = self._conn()
        try:
            conn.executemany(
                """
                INSERT INTO weekly_prices(week_id, ticker, open_price, close_price, open_date, close_date, resolved_at_utc)
                VALUES(?,?,?,?,?,?,?)
                ON CONFLICT(week_id, ticker) DO UPDATE SET
                  open_price=excluded.open_price,
                  close_price=excluded.close_price,
                  open_date=excluded.open_date,
                  close_date=excluded.close_date,
                  resolved_at_utc=excluded.resolved_at_utc
                """,
                [
                    (
                        week_id,
                        price["ticker"],
                        float(price["open_price"]),
                        float(price["close_price"]),
                        price.get("open_date"),
                        price.get("close_date"),
                        resolved_at,
                    )
                    for price in prices
                ],
            )
        finally:
            conn.close()

    def weekly_prices(self, week_id: str) -> list[dict]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT ticker, open_price, close_price, open_date, close_date FROM weekly_prices WHERE week_id=? ORDER BY ticker",
                (week_id,),
            ).fetchall()
        finally:
            conn.close()
        return [
            {"ticker": r[0], "open_price": r[1], "close_price": r[2], "open_date": r[3], "close_date": r[4]}
            for r in rows
        ]

    def start_settlement_run(self, run_id: str, league_id: str, week_id: str):
        conn = self._conn()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO settlement_runs(run_id, league_id, week_id, started_at_utc, status) VALUES(?,?,?,?,?)",
                (run_id, league_id, week_id, now_utc_iso(), "running"),
            )
        finally:
            conn.close()

    def finish_settlement_run(self, run_id: str, resolved_count: int, missing: list[str], error: str | None = None):
        conn = self._conn()
        try:
            conn.execute(
                """
                UPDATE settlement_runs
                SET finished_at_utc=?, status=?, resolved_count=?, missing_json=?, error_message=?
                WHERE run_id=?
                """,
                (
                    now_utc_iso(),
                    "failed" if error else "succeeded",
                    resolved_count,
                    json.dumps(missing),
                    error[:1000] if error else None,
                    run_id,
                ),
            )
        finally:
            conn.close()
