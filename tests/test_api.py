import os
import tempfile
import unittest

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routes import router
from app.config import Settings
from app.db import get_conn
from app.pipeline.snapshots import MetricsSnapshot
from app.services.container import build_container

DAILY = {
    "Time Series (Daily)": {
        "2024-06-10": {"1. open": "200", "4. close": "202"},
        "2024-06-11": {"1. open": "204", "4. close": "204"},
        "2024-06-12": {"1. open": "102", "4. close": "103"},
        "2024-06-14": {"1. open": "106", "4. close": "107"},
    }
}


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cfg = Settings(
            MARKET_DATA_API_KEY="demo",
            DB_PATH=os.path.join(self.tmp.name, "app.db"),
            CACHE_DIR=os.path.join(self.tmp.name, "cache"),
            CACHE_DB_PATH=os.path.join(self.tmp.name, "cache.sqlite3"),
            EDGAR_ENABLE=0,
            UNIVERSE_FALLBACK_TICKERS="",
            SETTLEMENT_CALL_DELAY_SECONDS=0,
            SCORING_CRON_SECRET="s3cret",
            LOG_ERROR_FILE=os.path.join(self.tmp.name, "error.log"),
        )
        self.requests = []
        transport = httpx.MockTransport(self._handler)
        self.services = build_container(self.cfg, transport=transport)
        app = FastAPI()
        app.include_router(router)
        app.state.services = self.services
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        self.tmp.cleanup()

    def _handler(self, request):
        self.requests.append(dict(request.url.params))
        return httpx.Response(200, json=DAILY)

    def test_metrics_requires_tickers(self):
        resp = self.client.get("/metrics")
        self.assertEqual(resp.status_code, 400)
        resp = self.client.get("/metrics", params={"tickers": " , "})
        self.assertEqual(resp.status_code, 400)

    def test_metrics_cache_only_serves_cached_and_syncing(self):
        self.services.cache.put("AAPL", MetricsSnapshot(schema_version=self.cfg.metrics_schema_version, ticker="AAPL", name="Apple"), "full")
        resp = self.client.get("/metrics", params={"ticker": "aapl,zzzz", "cache_only": "1"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["data"]["AAPL"]["name"], "Apple")
        self.assertEqual(body["errors"], {"ZZZZ": "Market data is syncing."})

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["rate_budget"]["minute"]["limit"], 5)
        self.assertEqual(body["warm"]["cursor"], 0)

    def test_warm_trigger_accepted(self):
        resp = self.client.post("/cache/warm")
        self.assertEqual(resp.status_code, 202)
        self.assertTrue(resp.json()["ok"])

    def test_weekly_prices_requires_bearer_secret(self):
        resp = self.client.post("/prices/weekly", json={"league_id": "L1", "week_id": "w1"})
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post("/prices/weekly", json={"league_id": "L1", "week_id": "w1"},
                                headers={"Authorization": "Bearer wrong"})
        self.assertEqual(resp.status_code, 401)

    def test_weekly_prices_validation_and_not_found(self):
        headers = {"Authorization": "Bearer s3cret"}
        resp = self.client.post("/prices/weekly", json={"league_id": "L1"}, headers=headers)
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/prices/weekly", json={"league_id": "L1", "week_id": "w9"}, headers=headers)
        self.assertEqual(resp.status_code, 404)

    def test_weekly_prices_resolves(self):
        conn = get_conn(self.cfg.db_path)
        conn.execute("INSERT INTO weeks(id, league_id, week_start, week_end) VALUES('w1','L1','2024-06-10','2024-06-14')")
        conn.execute("INSERT INTO lineups(id, league_id, week_id) VALUES('l1','L1','w1')")
        conn.execute("INSERT INTO lineup_positions(lineup_id, ticker, weight) VALUES('l1','NVDA',1.0)")
        conn.close()
        resp = self.client.post("/prices/weekly", json={"league_id": "L1", "week_id": "w1"},
                                headers={"Authorization": "Bearer s3cret"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["resolved"], 2)
        self.assertEqual(body["missing"], [])
        prices = {p["ticker"]: p for p in self.services.store.weekly_prices("w1")}
        self.assertEqual(prices["NVDA"]["open_price"], 100.0)
        self.assertEqual({r["symbol"] for r in self.requests}, {"NVDA", "SPY"})

    def test_logs_tail(self):
        with open(self.cfg.log_error_file, "w", encoding="utf-8") as f:
            f.write("one\ntwo\nthree\n")
        resp = self.client.get("/logs", params={"lines": 2})
        self.assertEqual(resp.json()["lines"], ["two", "three"])


if __name__ == "__main__":
    unittest.main()
