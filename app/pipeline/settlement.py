from __future__ import annotations

import time
import uuid
from datetime import date

import pandas as pd
import structlog

from ..errors import NoLineupTickers, NothingResolved, ProviderUnavailable, WeekNotFound
from ..providers.alpha_vantage_adapter import AlphaVantageAdapter
from ..utils import RateLimiter, normalize_ticker
from .splits import infer_splits, split_factor_between
from .storage import SnapshotStore

log = structlog.get_logger()


def _as_date(value) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def week_prices_from_series(df: pd.DataFrame | None, week_start, week_end) -> dict | None:
    """
    Open of the first bar on/after week_start and close of the last bar on/before
    week_end. The open is restated in post-split shares for splits inside the week.
    """
    if df is None or df.empty:
        return None
    week_start, week_end = _as_date(week_start), _as_date(week_end)
    d = df.sort_values("date")
    opens = d[d["date"] >= week_start]
    closes = d[d["date"] <= week_end]
    if opens.empty or closes.empty:
        return None
    open_row, close_row = opens.iloc[0], closes.iloc[-1]
    open_date, close_date = open_row["date"], close_row["date"]
    if open_date > close_date:
        return None
    raw_open, raw_close = float(open_row["open"]), float(close_row["close"])
    if pd.isna(raw_open) or pd.isna(raw_close):
        return None
    factor = split_factor_between(infer_splits(d), open_date, close_date)
    return {
        "open_price": raw_open / factor,
        "close_price": raw_close,
        "open_date": open_date.isoformat(),
        "close_date": close_date.isoformat(),
        "split_factor": factor,
    }


class WeeklySettlementResolver:
    """
    Resolves split-adjusted weekly open/close prices. Runs synchronously with a
    fixed delay between provider calls, outside the shared rate budget.
    """
    def __init__(
        self,
        adapter: AlphaVantageAdapter,
        store: SnapshotStore,
        benchmark_ticker: str = "SPY",
        call_delay_seconds: float = 12.0,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.adapter = adapter
        self.store = store
        self.benchmark_ticker = normalize_ticker(benchmark_ticker)
        self.pacer = RateLimiter(call_delay_seconds, sleep=sleep, clock=clock)

    def resolve(self, week_id: str, week_start, week_end, tickers: list[str]) -> dict:
        if not self.adapter.enabled:
            raise ProviderUnavailable("missing_api_key")
        wanted = {normalize_ticker(t) for t in tickers if normalize_ticker(t)}
        if self.benchmark_ticker:
            wanted.add(self.benchmark_ticker)
        prices, missing = [], []
        for ticker in sorted(wanted):
            self.pacer.wait()
            try:
                df = self.adapter.daily_compact_sync(ticker)
            except ProviderUnavailable as exc:
                log.info("settlement_series_unavailable", week_id=week_id, ticker=ticker, error=str(exc)[:200])
                missing.append(ticker)
                continue
            price = week_prices_from_series(df, week_start, week_end)
            if price is None:
                missing.append(ticker)
                continue
            price["ticker"] = ticker
            prices.append(price)
        self.store.upsert_weekly_prices(week_id, prices)
        return {"prices": prices, "missing": missing}

    def resolve_week(self, league_id: str, week_id: str) -> dict:
        week = self.store.get_week(league_id, week_id)
        if week is None:
            raise WeekNotFound("Week not found.")
        tickers = self.store.lineup_tickers(league_id, week_id)
        if tickers is None:
            raise NoLineupTickers("No lineups found for this week.")

        run_id = uuid.uuid4().hex
        self.store.start_settlement_run(run_id, league_id, week_id)
        log.info("settlement_started", run_id=run_id, league_id=league_id, week_id=week_id, tickers=len(tickers))
        try:
            result = self.resolve(week_id, week["week_start"], week["week_end"], tickers)
        except Exception as exc:
            self.store.finish_settlement_run(run_id, 0, [], error=str(exc))
            log.exception("settlement_failed", run_id=run_id, week_id=week_id)
            raise
        resolved = len(result["prices"])
        if not resolved:
            self.store.finish_settlement_run(run_id, 0, result["missing"], error="no_prices_resolved")
            raise NothingResolved("No weekly prices resolved.", missing=result["missing"])
        self.store.finish_settlement_run(run_id, resolved, result["missing"])
        log.info("settlement_done", run_id=run_id, week_id=week_id, resolved=resolved, missing=len(result["missing"]))
        return {"run_id": run_id, "resolved_count": resolved, "missing": result["missing"]}
