from __future__ import annotations

import structlog

from ..errors import ProviderRateLimited, ProviderUnavailable
from ..providers.rate_budget import RateBudgetLimiter
from ..utils import normalize_ticker
from .metrics_cache import MetricsCache
from .refresh import MetricsRefresher
from .warm import WarmScheduler

log = structlog.get_logger()

SYNCING_MESSAGE = "Market data is syncing."
UNAVAILABLE_MESSAGE = "Market data unavailable."


def parse_tickers(raw: str | None) -> list[str]:
    out: list[str] = []
    for part in (raw or "").split(","):
        ticker = normalize_ticker(part)
        if ticker and ticker not in out:
            out.append(ticker)
    return out


class MetricsLookup:
    """Read path for GET /metrics: cached snapshots first, budgeted refresh for the rest."""

    def __init__(
        self,
        cache: MetricsCache,
        refresher: MetricsRefresher,
        warm: WarmScheduler,
        limiter: RateBudgetLimiter,
    ):
        self.cache = cache
        self.refresher = refresher
        self.warm = warm
        self.limiter = limiter

    async def lookup(
        self,
        tickers: list[str],
        include_overview: bool = True,
        use_daily: bool = True,
        cache_only: bool = False,
    ) -> dict:
        tickers = [t for t in dict.fromkeys(normalize_ticker(t) for t in tickers) if t]
        level = "full" if include_overview else "returns"
        use_daily = bool(use_daily and include_overview)
        self.warm.trigger()

        data: dict[str, dict] = {}
        errors: dict[str, str] = {}
        cached = self.cache.get_many(tickers)
        missing, stale = [], []
        for ticker in tickers:
            entry = cached.get(ticker)
            if entry is None:
                missing.append(ticker)
                continue
            data[ticker] = entry.snapshot.model_dump()
            if not self.cache.is_fresh(entry, level):
                stale.append(ticker)

        if cache_only:
            if missing or stale:
                self.warm.schedule_tickers(missing + stale)
            for ticker in missing:
                errors[ticker] = SYNCING_MESSAGE
            return {"data": data, "errors": errors}

        for ticker in missing + stale:
            entry = cached.get(ticker)
            if not self.limiter.can_acquire():
                if entry is None:
                    errors[ticker] = SYNCING_MESSAGE
                continue
            try:
                fresh = await self.refresher.refresh(ticker, level, use_daily=use_daily, previous=entry)
            except ProviderRateLimited as exc:
                log.info("metrics_refresh_rate_limited", ticker=ticker, reason=str(exc))
                if entry is None:
                    errors[ticker] = SYNCING_MESSAGE
                continue
            except ProviderUnavailable as exc:
                log.warning("metrics_refresh_failed", ticker=ticker, error=str(exc))
                if entry is None:
                    errors[ticker] = UNAVAILABLE_MESSAGE
                continue
            except Exception:
                log.exception("metrics_refresh_failed", ticker=ticker)
                if entry is None:
                    errors[ticker] = UNAVAILABLE_MESSAGE
                continue
            data[ticker] = fresh.snapshot.model_dump()
        return {"data": data, "errors": errors}
