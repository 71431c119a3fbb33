import asyncio
import math
import os
import tempfile
import unittest
from collections import Counter
from datetime import datetime, timedelta, timezone

from app.errors import ProviderRateLimited, ProviderUnavailable
from app.pipeline.metrics_cache import MetricsCache
from app.pipeline.snapshots import MetricsSnapshot
from app.pipeline.storage import SnapshotStore
from app.pipeline.warm import WARM_STATE_KEY, WarmScheduler, hash_ticker, scatter_order


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeRefresher:
    """Writes a returns-level snapshot; can be told to fail for some tickers."""

    def __init__(self, cache):
        self.cache = cache
        self.calls = []
        self.rate_limited = set()
        self.unavailable = set()
        self.broken = set()

    async def refresh(self, ticker, level="returns", use_daily=False, previous=None):
        self.calls.append((ticker, level, use_daily))
        if ticker in self.rate_limited:
            raise ProviderRateLimited("minute_budget_exhausted", ticker=ticker)
        if ticker in self.unavailable:
            raise ProviderUnavailable("monthly_adjusted_series_missing", ticker=ticker)
        if ticker in self.broken:
            raise ValueError(f"cannot build snapshot for {ticker}")
        snapshot = MetricsSnapshot(schema_version=self.cache.schema_version, ticker=ticker, annual_return=0.1)
        return self.cache.put(ticker, snapshot, level, previous)


class ScatterOrderTests(unittest.TestCase):
    def test_hash_is_unsigned_32_bit_djb2_xor(self):
        self.assertEqual(hash_ticker(""), 5381)
        self.assertEqual(hash_ticker("A"), (5381 * 33) ^ ord("A"))
        big = hash_ticker("SUPERCALIFRAGILISTIC")
        self.assertTrue(0 <= big < 2 ** 32)

    def test_scatter_is_a_permutation_and_deterministic(self):
        tickers = [f"T{i:03d}" for i in range(50)]
        order = scatter_order(tickers)
        self.assertEqual(sorted(order), sorted(tickers))
        self.assertEqual(order, scatter_order(list(reversed(tickers))))

    def test_stride_interleave(self):
        tickers = ["A", "B", "C", "D", "E"]
        by_hash = sorted(tickers, key=lambda t: (hash_ticker(t), t))
        stride = max(2, round(math.sqrt(5)))
        expected = [t for offset in range(stride) for t in by_hash[offset::stride]]
        self.assertEqual(scatter_order(tickers), expected)

    def test_small_lists_unchanged(self):
        self.assertEqual(scatter_order(["ONLY"]), ["ONLY"])
        self.assertEqual(scatter_order([]), [])


class WarmSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.csv_dir = self.tmp.name
        self.store = SnapshotStore(os.path.join(self.tmp.name, "app.db"))
        self.clock = FakeClock()
        self.cache = MetricsCache(self.store, 1, clock=self.clock)
        self.refresher = FakeRefresher(self.cache)

    def tearDown(self):
        self.tmp.cleanup()

    def _load_universe(self, tickers, name="universe.csv", as_of=None):
        path = os.path.join(self.csv_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write("ticker,name\n")
            for t in tickers:
                f.write(f"{t},{t} Corp\n")
        return self.store.import_universe_csv(path, as_of=as_of)

    def _scheduler(self, batch_size=3, fallback=None):
        return WarmScheduler(
            self.store,
            self.cache,
            self.refresher,
            benchmark_ticker="SPY",
            fallback_tickers=fallback,
            interval_seconds=60,
            batch_size=batch_size,
            universe_ttl_seconds=21600,
            clock=self.clock,
        )

    async def test_full_coverage_in_ceil_n_over_batch_passes(self):
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN", "META", "TSLA", "JPM"])
        warm = self._scheduler(batch_size=3)
        n = 8  # universe plus benchmark
        for _ in range(math.ceil(n / 3)):
            await warm.run_pass()
            self.clock.advance(61)
        counts = Counter(t for t, _level, _daily in self.refresher.calls)
        self.assertEqual(set(counts), {"AAPL", "MSFT", "NVDA", "AMZN", "META", "TSLA", "JPM", "SPY"})
        self.assertTrue(all(c == 1 for c in counts.values()))
        self.assertTrue(all(level == "returns" and not daily for _t, level, daily in self.refresher.calls))

    async def test_interval_gate(self):
        self._load_universe(["AAPL", "MSFT"])
        warm = self._scheduler()
        self.assertIsNotNone(await warm.run_pass())
        self.clock.advance(30)
        self.assertIsNone(await warm.run_pass())
        self.clock.advance(30)
        self.assertIsNotNone(await warm.run_pass())

    async def test_cursor_persists_and_wraps(self):
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN"])
        warm = self._scheduler(batch_size=3)
        first = await warm.run_pass()
        self.assertEqual(first["cursor"], 0)
        self.assertEqual(first["next_cursor"], 3)
        self.clock.advance(61)
        second = await self._scheduler(batch_size=3).run_pass()
        self.assertEqual(second["cursor"], 3)
        self.assertEqual(second["next_cursor"], (3 + 3) % 5)
        payload, _ = self.store.get_singleton(WARM_STATE_KEY)
        self.assertEqual(payload["cursor"], 1)

    async def test_universe_change_resets_cursor(self):
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN"])
        warm = self._scheduler(batch_size=2)
        await warm.run_pass()
        self.clock.advance(61)
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN", "META"], name="universe2.csv")
        # Universe is cached in process; a new scheduler sees the new snapshot.
        result = await self._scheduler(batch_size=2).run_pass()
        self.assertEqual(result["cursor"], 0)

    async def test_reimporting_an_older_file_makes_it_current(self):
        first = self._load_universe(["AAPL", "MSFT"], name="jan.csv", as_of="2025-01-01")
        second = self._load_universe(["AAPL", "MSFT", "NVDA"], name="feb.csv", as_of="2025-02-01")
        self.assertNotEqual(first, second)
        self.assertEqual(self.store.latest_universe(), (["AAPL", "MSFT", "NVDA"], second))
        again = self._load_universe(["AAPL", "MSFT"], name="jan.csv", as_of="2025-03-01")
        self.assertEqual(again, first)
        self.assertEqual(self.store.latest_universe(), (["AAPL", "MSFT"], first))

    async def test_out_of_range_cursor_resets(self):
        snapshot_id = self._load_universe(["AAPL", "MSFT"])
        self.store.upsert_singleton(WARM_STATE_KEY, {"cursor": 40, "universe_snapshot_id": snapshot_id, "last_run_at": None})
        result = await self._scheduler().run_pass()
        self.assertEqual(result["cursor"], 0)

    async def test_rate_limit_stops_batch(self):
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN", "META"])
        warm = self._scheduler(batch_size=6)
        order = scatter_order(warm.load_universe()[0])
        self.refresher.rate_limited.add(order[2])
        result = await warm.run_pass()
        self.assertEqual(result["processed"], 2)
        self.assertEqual(result["next_cursor"], 2)
        self.assertEqual([t for t, _l, _d in self.refresher.calls], order[:3])

    async def test_provider_failure_counts_as_processed(self):
        self._load_universe(["AAPL", "MSFT", "NVDA"])
        warm = self._scheduler(batch_size=4)
        order = scatter_order(warm.load_universe()[0])
        self.refresher.unavailable.add(order[0])
        result = await warm.run_pass()
        self.assertEqual(result["processed"], 4)

    async def test_unexpected_failure_counts_as_processed_and_cursor_advances(self):
        self._load_universe(["AAPL", "MSFT", "NVDA", "AMZN", "META", "TSLA", "JPM"])
        warm = self._scheduler(batch_size=3)
        order = scatter_order(warm.load_universe()[0])
        self.refresher.broken.add(order[1])
        cursors = []
        for _ in range(3):
            result = await warm.run_pass()
            cursors.append(result["cursor"])
            self.clock.advance(61)
        self.assertEqual(cursors, [0, 3, 6])
        counts = Counter(t for t, _level, _daily in self.refresher.calls)
        self.assertEqual(counts[order[1]], 1)
        self.assertEqual(set(counts), set(order))

    async def test_state_is_saved_when_a_batch_blows_up(self):
        self._load_universe(["AAPL", "MSFT"])
        warm = self._scheduler()

        async def explode(_tickers):
            raise RuntimeError("snapshot store unavailable")

        warm.warm_tickers = explode
        self.assertIsNone(await warm.run_once())
        self.assertFalse(warm.in_flight)
        state = warm.state()
        self.assertEqual(state.cursor, 0)
        self.assertEqual(state.last_run_at, self.clock.now.isoformat())
        # The interval gate holds after a failed pass.
        self.assertIsNone(await warm.run_pass())

    async def test_fresh_entries_skip_provider(self):
        self._load_universe(["AAPL", "MSFT"])
        for t in ("AAPL", "MSFT", "SPY"):
            self.cache.put(t, MetricsSnapshot(schema_version=1, ticker=t), "returns")
        result = await self._scheduler().run_pass()
        self.assertEqual(result["processed"], 3)
        self.assertEqual(self.refresher.calls, [])

    async def test_fallback_universe_includes_benchmark(self):
        warm = self._scheduler(fallback=["aapl", "MSFT"])
        tickers, snapshot_id = warm.load_universe()
        self.assertEqual(tickers, ["AAPL", "MSFT", "SPY"])
        self.assertEqual(snapshot_id, "fallback")

    async def test_no_universe_and_no_fallback_skips_pass(self):
        self.assertIsNone(await self._scheduler(fallback=[]).run_pass())
        self.assertEqual(self.refresher.calls, [])

    async def test_trigger_is_single_flight(self):
        self._load_universe(["AAPL", "MSFT"])
        warm = self._scheduler()
        self.assertTrue(warm.trigger())
        self.assertTrue(warm.in_flight)
        self.assertFalse(warm.trigger())
        self.assertIsNone(await warm.run_once())
        while warm.in_flight:
            await asyncio.sleep(0)
        self.assertEqual(len(self.refresher.calls), 3)


if __name__ == "__main__":
    unittest.main()
