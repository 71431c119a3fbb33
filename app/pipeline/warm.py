from __future__ import annotations

import asyncio
import math
from dataclasses import asdict, dataclass

import structlog

from ..errors import MarketDataError, ProviderRateLimited, UniverseUnavailable
from ..utils import normalize_ticker, now_utc, parse_utc_iso
from .metrics_cache import MetricsCache
from .refresh import MetricsRefresher
from .storage import SnapshotStore

log = structlog.get_logger()

WARM_STATE_KEY = "warm_state"
FALLBACK_SNAPSHOT_ID = "fallback"


def hash_ticker(value: str) -> int:
    """djb2 with xor, kept to unsigned 32 bits."""
    h = 5381
    for ch in value:
        h = ((h * 33) ^ ord(ch)) & 0xFFFFFFFF
    return h


def scatter_order(tickers: list[str]) -> list[str]:
    """Stable hash order, then a sqrt(n) stride interleave so batches skip across the alphabet."""
    if len(tickers) < 2:
        return list(tickers)
    ordered = sorted(tickers, key=lambda t: (hash_ticker(t), t))
    stride = max(2, round(math.sqrt(len(ordered))))
    out = []
    for offset in range(stride):
        out.extend(ordered[offset::stride])
    return out


@dataclass
class WarmState:
    cursor: int = 0
    universe_snapshot_id: str | None = None
    last_run_at: str | None = None

    @classmethod
    def from_payload(cls, payload: dict | None) -> "WarmState":
        payload = payload or {}
        cursor = payload.get("cursor")
        if isinstance(cursor, bool) or not isinstance(cursor, (int, float)) or not math.isfinite(cursor):
            cursor = 0
        return cls(int(cursor), payload.get("universe_snapshot_id"), payload.get("last_run_at"))


class WarmScheduler:
    """
    Background refresh of the universe in bounded batches. Passes are
    dispatched as asyncio tasks behind an in-flight flag; progress is kept
    in the durable warm_state singleton so restarts resume at the cursor.
    """
    def __init__(
        self,
        store: SnapshotStore,
        cache: MetricsCache,
        refresher: MetricsRefresher,
        benchmark_ticker: str = "SPY",
        fallback_tickers: list[str] | None = None,
        interval_seconds: float = 60,
        batch_size: int = 20,
        universe_ttl_seconds: float = 21600,
        clock=now_utc,
    ):
        self.store = store
        self.cache = cache
        self.refresher = refresher
        self.benchmark_ticker = normalize_ticker(benchmark_ticker)
        self.fallback_tickers = [normalize_ticker(t) for t in (fallback_tickers or []) if normalize_ticker(t)]
        self.interval_seconds = float(interval_seconds)
        self.batch_size = max(1, int(batch_size))
        self.universe_ttl_seconds = float(universe_ttl_seconds)
        self._clock = clock
        self._in_flight = False
        self._universe: tuple[list[str], str | None] | None = None
        self._universe_loaded_at = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def state(self) -> WarmState:
        payload, _updated_at = self.store.get_singleton(WARM_STATE_KEY)
        return WarmState.from_payload(payload)

    def load_universe(self) -> tuple[list[str], str | None]:
        now = self._clock()
        if self._universe is not None and (now - self._universe_loaded_at).total_seconds() < self.universe_ttl_seconds:
            return self._universe
        try:
            tickers, snapshot_id = self.store.latest_universe()
        except UniverseUnavailable as exc:
            log.warning("universe_unavailable", error=str(exc), fallback=len(self.fallback_tickers))
            tickers, snapshot_id = [], None
        if not tickers:
            if not self.fallback_tickers:
                raise UniverseUnavailable("no universe snapshot and no fallback tickers")
            tickers, snapshot_id = list(self.fallback_tickers), FALLBACK_SNAPSHOT_ID
        if self.benchmark_ticker and self.benchmark_ticker not in tickers:
            tickers = tickers + [self.benchmark_ticker]
        self._universe = (sorted(set(tickers)), snapshot_id)
        self._universe_loaded_at = now
        return self._universe

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def trigger(self) -> bool:
        """Dispatch a pass without waiting on it; False when one is already running."""
        if self._in_flight:
            return False
        self._in_flight = True
        self._spawn(self._run_claimed())
        return True

    def schedule_tickers(self, tickers: list[str]) -> asyncio.Task | None:
        targets = scatter_order(sorted({normalize_ticker(t) for t in tickers if normalize_ticker(t)}))
        targets = targets[: self.batch_size]
        if not targets:
            return None
        return self._spawn(self._warm_quietly(targets))

    async def _warm_quietly(self, tickers: list[str]):
        try:
            await self.warm_tickers(tickers)
        except Exception:
            log.exception("warm_tickers_failed", tickers=tickers)

    async def run_once(self) -> dict | None:
        if self._in_flight:
            return None
        self._in_flight = True
        return await self._run_claimed()

    async def _run_claimed(self) -> dict | None:
        try:
            return await self.run_pass()
        except Exception:
            log.exception("warm_pass_failed")
            return None
        finally:
            self._in_flight = False

    async def run_pass(self) -> dict | None:
        state = self.state()
        last_run = parse_utc_iso(state.last_run_at)
        if last_run and (self._clock() - last_run).total_seconds() < self.interval_seconds:
            return None
        try:
            tickers, snapshot_id = self.load_universe()
        except UniverseUnavailable as exc:
            log.warning("warm_pass_skipped", reason=str(exc))
            return None
        order = scatter_order(tickers)
        n = len(order)
        cursor = state.cursor
        if state.universe_snapshot_id != snapshot_id or not 0 <= cursor < n:
            cursor = 0
        batch = [order[(cursor + i) % n] for i in range(min(self.batch_size, n))]
        processed = 0
        try:
            processed = await self.warm_tickers(batch)
        finally:
            next_state = WarmState((cursor + processed) % n, snapshot_id, self._clock().isoformat())
            self.store.upsert_singleton(WARM_STATE_KEY, asdict(next_state))
        log.info(
            "warm_pass_done",
            cursor=cursor,
            next_cursor=next_state.cursor,
            processed=processed,
            batch=len(batch),
            universe=n,
            snapshot_id=snapshot_id,
        )
        return {"cursor": cursor, "next_cursor": next_state.cursor, "processed": processed, "batch": batch}

    async def warm_tickers(self, tickers: list[str]) -> int:
        """Refresh tickers in order at returns level; returns how many were handled."""
        cached = self.cache.get_many(tickers)
        processed = 0
        for ticker in tickers:
            entry = cached.get(ticker)
            if self.cache.is_fresh(entry, "returns"):
                processed += 1
                continue
            try:
                await self.refresher.refresh(ticker, "returns", use_daily=False, previous=entry)
            except ProviderRateLimited as exc:
                log.info("warm_budget_exhausted", ticker=ticker, reason=str(exc), processed=processed)
                break
            except MarketDataError as exc:
                log.info("warm_refresh_failed", ticker=ticker, error=str(exc))
            except Exception:
                log.exception("warm_refresh_failed", ticker=ticker)
            processed += 1
        return processed
