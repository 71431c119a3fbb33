from __future__ import annotations

import structlog

from ..errors import ProviderRateLimited, ProviderUnavailable
from ..providers.alpha_vantage_adapter import AlphaVantageAdapter, extract_message, parse_payload
from ..providers.rate_budget import RateBudgetLimiter, is_rate_limit_message

log = structlog.get_logger()


class MarketDataClient:
    """
    Budgeted access to the market data provider.
    fetch() charges the shared budget before every call, so timeouts and
    failures still count; a provider rate-limit notice saturates the budget.
    """
    def __init__(self, adapter: AlphaVantageAdapter, limiter: RateBudgetLimiter):
        self.adapter = adapter
        self.limiter = limiter

    async def fetch(self, ticker: str, kind: str):
        if not self.adapter.enabled:
            raise ProviderUnavailable("missing_api_key", ticker=ticker)
        self.limiter.acquire(ticker)
        payload = await self.adapter.query(kind, ticker)
        message = extract_message(payload)
        if message:
            if is_rate_limit_message(message):
                self.limiter.note_rate_limit(message)
                raise ProviderRateLimited("provider_rate_limited", ticker=ticker)
            log.info("provider_notice", ticker=ticker, kind=kind, message=message[:200])
            raise ProviderUnavailable(message, ticker=ticker)
        return parse_payload(kind, ticker, payload)
