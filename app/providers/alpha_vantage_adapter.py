from __future__ import annotations

from typing import Optional

import httpx
import pandas as pd

from ..errors import ProviderUnavailable
from .common import normalize_series

# kind -> (query params, payload key holding the series; None for non-series payloads)
SERIES_KINDS = {
    "monthly_adjusted": ({"function": "TIME_SERIES_MONTHLY_ADJUSTED"}, "Monthly Adjusted Time Series"),
    "daily": ({"function": "TIME_SERIES_DAILY", "outputsize": "full"}, "Time Series (Daily)"),
    "daily_compact": ({"function": "TIME_SERIES_DAILY", "outputsize": "compact"}, "Time Series (Daily)"),
    "overview": ({"function": "OVERVIEW"}, None),
}

MESSAGE_KEYS = ("Note", "Information", "Error Message")


def extract_message(payload) -> str | None:
    """Free-text notice the provider sends instead of data (limits, bad symbols)."""
    if not isinstance(payload, dict):
        return None
    for key in MESSAGE_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    return None


def parse_payload(kind: str, symbol: str, payload) -> pd.DataFrame | dict:
    if kind not in SERIES_KINDS:
        raise ValueError(f"unknown series kind: {kind}")
    if not isinstance(payload, dict):
        raise ProviderUnavailable("malformed_payload", ticker=symbol)
    _params, series_key = SERIES_KINDS[kind]
    if series_key is None:
        if not payload.get("Symbol"):
            raise ProviderUnavailable("overview_empty", ticker=symbol)
        return payload
    df = normalize_series(payload.get(series_key), symbol)
    if df is None or df.empty:
        raise ProviderUnavailable(f"{kind}_series_missing", ticker=symbol)
    return df


class AlphaVantageAdapter:
    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://www.alphavantage.co/query",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport | httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _params(self, kind: str, symbol: str) -> dict:
        if kind not in SERIES_KINDS:
            raise ValueError(f"unknown series kind: {kind}")
        params = dict(SERIES_KINDS[kind][0])
        params["symbol"] = symbol
        params["apikey"] = self.api_key or ""
        return params

    def _decode(self, resp: httpx.Response, symbol: str) -> dict:
        if resp.status_code != 200:
            raise ProviderUnavailable(f"provider_status_{resp.status_code}", ticker=symbol)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderUnavailable("malformed_payload", ticker=symbol) from exc

    async def query(self, kind: str, symbol: str) -> dict:
        params = self._params(kind, symbol)
        kwargs = {"timeout": self.timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                resp = await client.get(self.base_url, params=params)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("provider_timeout", ticker=symbol) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"provider_http_error: {type(exc).__name__}", ticker=symbol) from exc
        return self._decode(resp, symbol)

    def query_sync(self, kind: str, symbol: str) -> dict:
        params = self._params(kind, symbol)
        kwargs = {"timeout": self.timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        try:
            with httpx.Client(**kwargs) as client:
                resp = client.get(self.base_url, params=params)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("provider_timeout", ticker=symbol) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"provider_http_error: {type(exc).__name__}", ticker=symbol) from exc
        return self._decode(resp, symbol)

    def daily_compact_sync(self, symbol: str) -> pd.DataFrame:
        """Compact daily series for settlement; any provider notice means no data."""
        payload = self.query_sync("daily_compact", symbol)
        message = extract_message(payload)
        if message:
            raise ProviderUnavailable(message, ticker=symbol)
        return parse_payload("daily_compact", symbol, payload)
