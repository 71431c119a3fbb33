from __future__ import annotations


class MarketDataError(Exception):
    """Base class for failures on the market data path."""

    code = "market_data_error"

    def __init__(self, message: str | None = None, ticker: str | None = None):
        self.ticker = ticker
        super().__init__(message or self.code)


class ProviderRateLimited(MarketDataError):
    """Budget exhausted locally, cooldown active, or the provider signalled a limit."""

    code = "provider_rate_limited"


class ProviderUnavailable(MarketDataError):
    """Malformed or missing series, transport failure or timeout."""

    code = "provider_unavailable"


class UniverseUnavailable(MarketDataError):
    code = "universe_unavailable"


class SettlementError(Exception):
    """Weekly settlement could not run for the requested league-week."""

    code = "settlement_error"

    def __init__(self, message: str | None = None, missing: list[str] | None = None):
        self.missing = list(missing or [])
        super().__init__(message or self.code)


class WeekNotFound(SettlementError):
    code = "week_not_found"


class NoLineupTickers(SettlementError):
    code = "no_lineups"


class NothingResolved(SettlementError):
    code = "no_prices_resolved"
