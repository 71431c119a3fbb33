from __future__ import annotations

from dataclasses import dataclass

from ..cache_layer import CacheLayer
from ..config import Settings, settings as default_settings
from ..pipeline.lookup import MetricsLookup
from ..pipeline.market import MarketDataClient
from ..pipeline.metrics_cache import MetricsCache
from ..pipeline.refresh import MetricsRefresher
from ..pipeline.settlement import WeeklySettlementResolver
from ..pipeline.storage import SnapshotStore
from ..pipeline.warm import WarmScheduler
from ..providers.alpha_vantage_adapter import AlphaVantageAdapter
from ..providers.edgar_adapter import EdgarAdapter
from ..providers.rate_budget import RateBudgetLimiter


@dataclass
class ServiceContainer:
    """Process-wide services, built once at startup and shared by handlers and jobs."""
    settings: Settings
    store: SnapshotStore
    limiter: RateBudgetLimiter
    adapter: AlphaVantageAdapter
    client: MarketDataClient
    cache: MetricsCache
    refresher: MetricsRefresher
    warm: WarmScheduler
    lookup: MetricsLookup
    settlement: WeeklySettlementResolver


def build_container(cfg: Settings | None = None, transport=None) -> ServiceContainer:
    cfg = cfg or default_settings
    store = SnapshotStore(cfg.db_path)
    limiter = RateBudgetLimiter(
        cfg.market_data_tickers_per_minute,
        cfg.market_data_tickers_per_day,
        cooldown_seconds=cfg.rate_limit_cooldown_seconds,
    )
    adapter = AlphaVantageAdapter(
        cfg.market_data_api_key,
        base_url=cfg.market_data_base_url,
        timeout=cfg.http_timeout_seconds,
        transport=transport,
    )
    client = MarketDataClient(adapter, limiter)
    cache = MetricsCache(
        store,
        cfg.metrics_schema_version,
        memory_ttl_seconds=cfg.cache_memory_ttl_seconds,
        durable_ttl_seconds=cfg.cache_durable_ttl_seconds,
    )
    edgar = None
    if cfg.edgar_enable:
        edgar = EdgarAdapter(
            cfg.sec_user_agent,
            cache=CacheLayer(cfg.cache_dir, cfg.cache_db_path),
            retry_attempts=cfg.http_retry_attempts,
            retry_backoff=cfg.http_retry_backoff_seconds,
        )
    refresher = MetricsRefresher(
        client,
        cache,
        edgar=edgar,
        benchmark_ticker=cfg.benchmark_ticker,
        benchmark_ttl_seconds=cfg.cache_memory_ttl_seconds,
    )
    warm = WarmScheduler(
        store,
        cache,
        refresher,
        benchmark_ticker=cfg.benchmark_ticker,
        fallback_tickers=cfg.fallback_tickers(),
        interval_seconds=cfg.market_data_warm_interval_seconds,
        batch_size=cfg.market_data_warm_batch_size,
        universe_ttl_seconds=cfg.warm_universe_ttl_seconds,
    )
    lookup = MetricsLookup(cache, refresher, warm, limiter)
    settlement = WeeklySettlementResolver(
        adapter,
        store,
        benchmark_ticker=cfg.benchmark_ticker,
        call_delay_seconds=cfg.settlement_call_delay_seconds,
    )
    return ServiceContainer(
        settings=cfg,
        store=store,
        limiter=limiter,
        adapter=adapter,
        client=client,
        cache=cache,
        refresher=refresher,
        warm=warm,
        lookup=lookup,
        settlement=settlement,
    )
