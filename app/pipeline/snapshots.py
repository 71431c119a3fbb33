from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

CacheLevel = Literal["returns", "full"]


class YearlyReturn(BaseModel):
    year: int
    value: float


class MonthlyYear(BaseModel):
    year: int
    months: list[Optional[float]] = Field(default_factory=lambda: [None] * 12)


class MetricsSnapshot(BaseModel):
    schema_version: int
    ticker: str
    # Overview
    name: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    market_cap: Optional[str] = None
    pe: Optional[float] = None
    revenue: Optional[float] = None
    net_income: Optional[float] = None
    eps: Optional[float] = None
    shares_outstanding: Optional[float] = None
    assets: Optional[float] = None
    liabilities: Optional[float] = None
    equity: Optional[float] = None
    # Returns
    last_price: Optional[float] = None
    as_of: Optional[str] = None
    annual_return: Optional[float] = None
    one_year_return: Optional[float] = None
    annual_volatility: Optional[float] = None
    sharpe: Optional[float] = None
    beta: Optional[float] = None
    alpha: Optional[float] = None
    yearly_returns: list[YearlyReturn] = Field(default_factory=list)
    monthly_by_year: list[MonthlyYear] = Field(default_factory=list)


def _is_absent(value) -> bool:
    return value is None or (isinstance(value, list) and not value)


def merge_snapshots(new: MetricsSnapshot, previous: MetricsSnapshot | None) -> MetricsSnapshot:
    """Fields of `new` win unless absent (None or empty list); then the previous value is kept."""
    if previous is None:
        return new
    merged = previous.model_dump()
    for name, value in new.model_dump().items():
        if not _is_absent(value):
            merged[name] = value
    merged["schema_version"] = new.schema_version
    merged["ticker"] = new.ticker
    return MetricsSnapshot.model_validate(merged)


def snapshot_from_payload(payload: dict | None) -> MetricsSnapshot | None:
    """Decode a stored payload; unreadable payloads behave like a miss."""
    if not isinstance(payload, dict):
        return None
    try:
        return MetricsSnapshot.model_validate(payload)
    except ValueError:
        return None
