from __future__ import annotations

import asyncio
import math
import time

import pandas as pd
import structlog

from ..errors import MarketDataError
from ..providers.edgar_adapter import EdgarAdapter
from . import metrics
from .market import MarketDataClient
from .metrics_cache import CacheEntry, MetricsCache
from .snapshots import CacheLevel, MetricsSnapshot
from .splits import apply_splits, extract_explicit_splits, infer_splits, merge_split_events

log = structlog.get_logger()

FUNDAMENTAL_FIELDS = ("revenue", "net_income", "eps", "shares_outstanding", "assets", "liabilities", "equity")


def adjust_series(df: pd.DataFrame) -> pd.DataFrame:
    events = merge_split_events(extract_explicit_splits(df), infer_splits(df))
    return apply_splits(df, events)


def _to_float(value) -> float | None:
    if value is None:
        return None
    try:
        out = float(str(value).replace(",", ""))
    except ValueError:
        return None
    return out if math.isfinite(out) else None


def _text(value) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text if text and text not in ("None", "-") else None


def overview_fields(overview: dict | None, fundamentals: dict | None, last_price: float | None) -> dict:
    """Provider overview first; EDGAR fills fundamentals and derived market cap / P/E."""
    overview = overview or {}
    fundamentals = fundamentals or {}
    out = {
        "name": _text(overview.get("Name")) or _text(fundamentals.get("title")),
        "description": _text(overview.get("Description")),
        "website": _text(overview.get("OfficialSite")),
        "market_cap": metrics.format_market_cap(_to_float(overview.get("MarketCapitalization"))),
        "pe": _to_float(overview.get("PERatio")),
    }
    for name in FUNDAMENTAL_FIELDS:
        out[name] = _to_float(fundamentals.get(name))
    if out["eps"] is None:
        out["eps"] = _to_float(overview.get("EPS"))
    if out["market_cap"] is None and out["shares_outstanding"] and last_price:
        out["market_cap"] = metrics.format_market_cap(out["shares_outstanding"] * last_price)
    if out["pe"] is None and out["eps"] and out["eps"] > 0 and last_price:
        out["pe"] = round(last_price / out["eps"], 2)
    return out


class MetricsRefresher:
    """Fetch, adjust and score one ticker, then merge the result into the cache."""

    def __init__(
        self,
        client: MarketDataClient,
        cache: MetricsCache,
        edgar: EdgarAdapter | None = None,
        benchmark_ticker: str = "SPY",
        benchmark_ttl_seconds: float = 1800,
        clock=time.monotonic,
    ):
        self.client = client
        self.cache = cache
        self.edgar = edgar
        self.benchmark_ticker = benchmark_ticker
        self.benchmark_ttl_seconds = float(benchmark_ttl_seconds)
        self._clock = clock
        self._benchmark: pd.Series | None = None
        self._benchmark_at: float | None = None
        self._benchmark_lock = asyncio.Lock()

    async def benchmark_returns(self) -> pd.Series | None:
        """Benchmark monthly returns; a stale copy is reused when the refresh fails."""
        async with self._benchmark_lock:
            now = self._clock()
            if self._benchmark is not None and now - self._benchmark_at < self.benchmark_ttl_seconds:
                return self._benchmark
            try:
                monthly = await self.client.fetch(self.benchmark_ticker, "monthly_adjusted")
            except MarketDataError as exc:
                log.info("benchmark_refresh_failed", ticker=self.benchmark_ticker, error=str(exc),
                         stale=self._benchmark is not None)
                return self._benchmark
            self._benchmark = metrics.monthly_returns(adjust_series(monthly))
            self._benchmark_at = now
            return self._benchmark

    async def build_snapshot(
        self, ticker: str, level: CacheLevel = "returns", use_daily: bool = False
    ) -> tuple[MetricsSnapshot, CacheLevel]:
        """
        Return (snapshot, achieved level). The monthly series is required;
        daily, overview and EDGAR data are optional and degrade to None.
        """
        monthly = adjust_series(await self.client.fetch(ticker, "monthly_adjusted"))
        if ticker == self.benchmark_ticker:
            bench = metrics.monthly_returns(monthly)
        else:
            bench = await self.benchmark_returns()
        fields = metrics.return_metrics(monthly, bench)
        fields.pop("monthly_returns")

        if use_daily:
            try:
                daily = adjust_series(await self.client.fetch(ticker, "daily"))
            except MarketDataError as exc:
                log.info("daily_series_unavailable", ticker=ticker, error=str(exc))
            else:
                one_year, latest_date, latest_close = metrics.trailing_one_year_return(daily)
                fields["one_year_return"] = metrics.round_value(one_year)
                if latest_close is not None:
                    fields["last_price"] = metrics.round_value(latest_close)
                    fields["as_of"] = latest_date.isoformat()
        if fields.get("one_year_return") is None:
            fields["one_year_return"] = fields["annual_return"]

        achieved: CacheLevel = "returns"
        if level == "full":
            overview = None
            try:
                overview = await self.client.fetch(ticker, "overview")
            except MarketDataError as exc:
                log.info("overview_unavailable", ticker=ticker, error=str(exc))
            fundamentals = None
            if self.edgar is not None:
                fundamentals = await asyncio.to_thread(self.edgar.fundamentals, ticker)
            fields.update(overview_fields(overview, fundamentals, fields.get("last_price")))
            if fields["beta"] is None and overview:
                fields["beta"] = _to_float(overview.get("Beta"))
            if overview is not None:
                achieved = "full"

        snapshot = MetricsSnapshot(schema_version=self.cache.schema_version, ticker=ticker, **fields)
        return snapshot, achieved

    async def refresh(
        self,
        ticker: str,
        level: CacheLevel = "returns",
        use_daily: bool = False,
        previous: CacheEntry | None = None,
    ) -> CacheEntry:
        snapshot, achieved = await self.build_snapshot(ticker, level, use_daily)
        if previous is None:
            previous = self.cache.peek(ticker)
        entry = self.cache.put(ticker, snapshot, achieved, previous)
        log.info("metrics_refreshed", ticker=ticker, level=achieved, use_daily=use_daily)
        return entry
