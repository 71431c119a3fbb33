from __future__ import annotations

import re
from datetime import date
from typing import Optional

import httpx
import structlog

from ..cache_layer import CacheLayer
from ..utils import normalize_ticker, retry_call

log = structlog.get_logger()

SEC_TICKERS_URL = "https://www.sec.gov/files/company_tickers.json"
SEC_COMPANY_FACTS_URL = "https://data.sec.gov/api/xbrl/companyfacts/CIK{cik}.json"
TICKER_MAP_TTL_SECONDS = 60 * 60 * 24
FACTS_TTL_SECONDS = 60 * 60 * 6

FORM_RANK = {"10-K": 3, "20-F": 3, "40-F": 3, "10-Q": 2, "8-K": 1}

# field -> (taxonomy, tags in preference order, unit candidates)
FUNDAMENTAL_FACTS = {
    "revenue": ("us-gaap", ["Revenues", "RevenueFromContractWithCustomerExcludingAssessedTax"], ["USD"]),
    "net_income": ("us-gaap", ["NetIncomeLoss"], ["USD"]),
    "eps": ("us-gaap", ["EarningsPerShareDiluted", "EarningsPerShareBasic"], ["USD/shares", "USD / shares", "USD/share"]),
    "shares_outstanding": ("dei", ["EntityCommonStockSharesOutstanding"], ["shares"]),
    "assets": ("us-gaap", ["Assets"], ["USD"]),
    "liabilities": ("us-gaap", ["Liabilities"], ["USD"]),
    "equity": (
        "us-gaap",
        ["StockholdersEquity", "StockholdersEquityIncludingPortionAttributableToNoncontrollingInterest"],
        ["USD"],
    ),
}


def pad_cik(value) -> str:
    raw = re.sub(r"\D", "", str(value if value is not None else ""))
    return raw.zfill(10)


def _parse_day(val) -> date | None:
    try:
        return date.fromisoformat(str(val)[:10]) if val else None
    except ValueError:
        return None


def choose_latest_value(entries: list[dict] | None) -> dict | None:
    """Prefer annual forms, then the latest period end, then the latest filing."""
    usable = [e for e in (entries or []) if isinstance(e.get("val"), (int, float))]
    if not usable:
        return None
    return max(
        usable,
        key=lambda e: (
            FORM_RANK.get(str(e.get("form") or "").upper(), 0),
            _parse_day(e.get("end")) or date.min,
            _parse_day(e.get("filed")) or date.min,
        ),
    )


def _resolve_units(units: dict, candidates: list[str]):
    lowered = {key.lower(): key for key in units}
    for cand in candidates:
        if cand in units:
            return units[cand]
        if cand.lower() in lowered:
            return units[lowered[cand.lower()]]
    for cand in candidates:
        for key in units:
            if cand.lower() in key.lower():
                return units[key]
    return next(iter(units.values()), None)


def pick_fact_value(facts: dict, tags: list[str], unit_candidates: list[str]) -> dict | None:
    for tag in tags:
        units = (facts.get(tag) or {}).get("units")
        if not units:
            continue
        latest = choose_latest_value(_resolve_units(units, unit_candidates))
        if latest is not None:
            return latest
    return None


def extract_fundamentals(company_facts: dict) -> dict:
    facts = (company_facts or {}).get("facts") or {}
    out: dict = {}
    ends: list[date] = []
    for field, (taxonomy, tags, units) in FUNDAMENTAL_FACTS.items():
        entry = pick_fact_value(facts.get(taxonomy) or {}, tags, units)
        if entry is None and field == "shares_outstanding":
            entry = pick_fact_value(facts.get("us-gaap") or {}, ["CommonStockSharesOutstanding"], ["shares"])
        out[field] = float(entry["val"]) if entry else None
        end = _parse_day(entry.get("end")) if entry else None
        if end:
            ends.append(end)
    out["as_of"] = max(ends).isoformat() if ends else None
    return out


class EdgarAdapter:
    def __init__(self, user_agent: str, cache: CacheLayer | None = None, timeout: float = 15.0,
                 retry_attempts: int = 2, retry_backoff: float = 1.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.cache = cache
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.transport = transport
        self.headers = {
            "User-Agent": user_agent,
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }

    def _get_json(self, url: str):
        def _call():
            kwargs = {"headers": self.headers, "timeout": self.timeout}
            if self.transport is not None:
                kwargs["transport"] = self.transport
            with httpx.Client(**kwargs) as client:
                resp = client.get(url)
            if resp.status_code == 404:
                return None
            if resp.status_code != 200:
                raise RuntimeError(f"edgar_status_{resp.status_code}")
            return resp.json()
        return retry_call(_call, attempts=self.retry_attempts, base_delay=self.retry_backoff)

    def _cached(self, endpoint: str, key_part: str, url: str, ttl_seconds: int):
        if not self.cache:
            return self._get_json(url)
        key = self.cache.make_key("sec", endpoint, key_part)
        payload, _hit = self.cache.fetch(key, lambda: self._get_json(url), ttl_seconds=ttl_seconds)
        return payload

    def ticker_map(self) -> dict[str, dict]:
        data = self._cached("company_tickers", "", SEC_TICKERS_URL, TICKER_MAP_TTL_SECONDS) or {}
        out = {}
        for entry in (data.values() if isinstance(data, dict) else []):
            ticker = normalize_ticker(entry.get("ticker"))
            if ticker and entry.get("cik_str") is not None:
                out[ticker] = {"cik": pad_cik(entry["cik_str"]), "title": entry.get("title")}
        return out

    def fundamentals(self, ticker: str) -> dict | None:
        """Best effort: None when the ticker is unknown or SEC is unreachable."""
        ticker = normalize_ticker(ticker)
        try:
            entry = self.ticker_map().get(ticker)
            if not entry:
                return None
            cik = entry["cik"]
            facts = self._cached("companyfacts", cik, SEC_COMPANY_FACTS_URL.format(cik=cik), FACTS_TTL_SECONDS)
        except (httpx.HTTPError, RuntimeError, ValueError, OSError) as exc:
            log.warning("edgar_fetch_failed", ticker=ticker, error=str(exc))
            return None
        out = extract_fundamentals(facts or {})
        out.update({"ticker": ticker, "cik": cik, "title": entry.get("title")})
        return out
