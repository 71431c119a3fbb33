import os
import tempfile
import unittest

import httpx
from freezegun import freeze_time

from app.cache_layer import CacheLayer
from app.providers.edgar_adapter import EdgarAdapter, choose_latest_value, extract_fundamentals, pad_cik

TICKERS = {"0": {"cik_str": 320193, "ticker": "AAPL", "title": "Apple Inc."}}
FACTS = {
    "facts": {
        "us-gaap": {
            "Revenues": {"units": {"USD": [
                {"val": 100.0, "end": "2023-09-30", "filed": "2023-11-01", "form": "10-K"},
                {"val": 30.0, "end": "2024-03-30", "filed": "2024-05-01", "form": "10-Q"},
            ]}},
            "NetIncomeLoss": {"units": {"USD": [{"val": 20.0, "end": "2023-09-30", "form": "10-K"}]}},
            "EarningsPerShareDiluted": {"units": {"USD/shares": [{"val": 6.1, "end": "2023-09-30", "form": "10-K"}]}},
        },
        "dei": {
            "EntityCommonStockSharesOutstanding": {"units": {"shares": [{"val": 15e9, "end": "2024-01-15", "form": "10-Q"}]}},
        },
    }
}


class FundamentalsTests(unittest.TestCase):
    def test_pad_cik(self):
        self.assertEqual(pad_cik(320193), "0000320193")
        self.assertEqual(pad_cik("CIK-42"), "0000000042")

    def test_annual_form_preferred_over_later_quarter(self):
        entries = FACTS["facts"]["us-gaap"]["Revenues"]["units"]["USD"]
        self.assertEqual(choose_latest_value(entries)["val"], 100.0)
        self.assertIsNone(choose_latest_value([{"val": "n/a"}]))

    def test_extract_fundamentals(self):
        out = extract_fundamentals(FACTS)
        self.assertEqual(out["revenue"], 100.0)
        self.assertEqual(out["net_income"], 20.0)
        self.assertEqual(out["eps"], 6.1)
        self.assertEqual(out["shares_outstanding"], 15e9)
        self.assertIsNone(out["assets"])
        self.assertEqual(out["as_of"], "2024-01-15")


class CacheLayerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cache = CacheLayer(os.path.join(self.tmp.name, "cache"), os.path.join(self.tmp.name, "cache.sqlite3"))

    def tearDown(self):
        self.tmp.cleanup()

    def test_entries_expire_after_ttl(self):
        key = self.cache.make_key("sec", "companyfacts", "0000320193")
        with freeze_time("2025-01-06 12:00:00") as frozen:
            self.cache.set(key, {"facts": {}}, ttl_seconds=60)
            payload, age = self.cache.get(key)
            self.assertEqual(payload, {"facts": {}})
            self.assertEqual(age, 0)
            frozen.tick(61)
            payload, age = self.cache.get(key)
            self.assertIsNone(payload)
            self.assertEqual(age, 61)

    def test_fetch_does_not_store_none(self):
        key = self.cache.make_key("sec", "company_tickers")
        self.assertEqual(self.cache.fetch(key, lambda: None), (None, False))
        self.assertEqual(self.cache.fetch(key, lambda: {"a": 1}), ({"a": 1}, False))
        self.assertEqual(self.cache.fetch(key, lambda: {"a": 2}), ({"a": 1}, True))


class EdgarAdapterTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cache = CacheLayer(os.path.join(self.tmp.name, "cache"), os.path.join(self.tmp.name, "cache.sqlite3"))
        self.paths = []

    def tearDown(self):
        self.tmp.cleanup()

    def _handler(self, request):
        self.paths.append(request.url.path)
        if request.url.path.endswith("company_tickers.json"):
            return httpx.Response(200, json=TICKERS)
        if request.url.path.endswith("CIK0000320193.json"):
            return httpx.Response(200, json=FACTS)
        return httpx.Response(404)

    def test_fundamentals_are_cached_on_disk(self):
        adapter = EdgarAdapter("tests (ops@example.com)", cache=self.cache, transport=httpx.MockTransport(self._handler))
        first = adapter.fundamentals("aapl")
        second = adapter.fundamentals("AAPL")
        self.assertEqual(first["cik"], "0000320193")
        self.assertEqual(first["title"], "Apple Inc.")
        self.assertEqual(second["revenue"], 100.0)
        self.assertEqual(len(self.paths), 2)

    def test_unknown_ticker(self):
        adapter = EdgarAdapter("tests", cache=self.cache, transport=httpx.MockTransport(self._handler))
        self.assertIsNone(adapter.fundamentals("ZZZZ"))

    def test_sec_outage_is_best_effort(self):
        adapter = EdgarAdapter(
            "tests",
            cache=None,
            retry_attempts=1,
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        self.assertIsNone(adapter.fundamentals("AAPL"))


if __name__ == "__main__":
    unittest.main()
