from __future__ import annotations

import math

import numpy as np
import pandas as pd
from dateutil.relativedelta import relativedelta

MONTHS_PER_YEAR = 12
MIN_BETA_PAIRS = 6


def monthly_returns(adjusted: pd.DataFrame | None) -> pd.Series:
    """Month-over-month returns of adjusted month-end closes, indexed by 'YYYY-MM'."""
    if adjusted is None or adjusted.empty or len(adjusted) < 2:
        return pd.Series(dtype=float)
    d = adjusted.sort_values("date")
    closes = d["adj_close"].astype(float).reset_index(drop=True)
    keys = [dt.strftime("%Y-%m") for dt in d["date"]]
    prev = closes.shift(1)
    rets = closes / prev - 1.0
    valid = prev.notna() & (prev != 0) & np.isfinite(rets)
    out = pd.Series(rets[valid].to_numpy(), index=[keys[i] for i in rets[valid].index], dtype=float)
    return out[~out.index.duplicated(keep="last")]


def annualized_return(returns: pd.Series | None, periods: int = MONTHS_PER_YEAR) -> float | None:
    if returns is None or returns.empty:
        return None
    growth = float((1.0 + returns).prod())
    if not math.isfinite(growth) or growth < 0:
        return None
    return float(growth ** (periods / len(returns)) - 1.0)


def annualized_volatility(returns: pd.Series | None, periods: int = MONTHS_PER_YEAR) -> float | None:
    if returns is None or len(returns) < 2:
        return None
    vol = float(returns.std(ddof=0) * np.sqrt(periods))
    return vol if math.isfinite(vol) else None


def sharpe_ratio(annual_return: float | None, annual_volatility: float | None) -> float | None:
    if annual_return is None or annual_volatility in (None, 0.0):
        return None
    return float(annual_return / annual_volatility)


def beta_and_alpha(stock_returns: pd.Series | None, benchmark_returns: pd.Series | None,
                   min_pairs: int = MIN_BETA_PAIRS) -> tuple[float | None, float | None]:
    """Pair by month key; population covariance over benchmark variance."""
    if stock_returns is None or benchmark_returns is None:
        return None, None
    df = pd.concat([stock_returns.rename("stock"), benchmark_returns.rename("bench")], axis=1, join="inner").dropna()
    if df.shape[0] < min_pairs:
        return None, None
    stock = df["stock"].to_numpy(dtype=float)
    bench = df["bench"].to_numpy(dtype=float)
    stock_mean = stock.mean()
    bench_mean = bench.mean()
    covariance = float(((stock - stock_mean) * (bench - bench_mean)).mean())
    variance = float(((bench - bench_mean) ** 2).mean())
    if not math.isfinite(covariance) or not math.isfinite(variance) or variance == 0:
        return None, None
    beta = covariance / variance
    if not math.isfinite(beta):
        return None, None
    alpha = float(stock_mean - beta * bench_mean)
    return float(beta), alpha


def trailing_one_year_return(daily_adjusted: pd.DataFrame | None) -> tuple[float | None, object, float | None]:
    """Return (one_year_return, latest_date, latest_adj_close) from a daily adjusted series."""
    if daily_adjusted is None or daily_adjusted.empty:
        return None, None, None
    d = daily_adjusted.sort_values("date")
    latest = d.iloc[-1]
    latest_close = float(latest["adj_close"])
    if len(d) < 2:
        return None, latest["date"], latest_close
    target = latest["date"] - relativedelta(years=1)
    prior = d[d["date"] <= target]
    if prior.empty:
        return None, latest["date"], latest_close
    base = float(prior.iloc[-1]["adj_close"])
    if not base:
        return None, latest["date"], latest_close
    return float(latest_close / base - 1.0), latest["date"], latest_close


def yearly_returns(adjusted: pd.DataFrame | None) -> list[dict]:
    """Per calendar year: last adjusted close over the first one in that year."""
    if adjusted is None or adjusted.empty:
        return []
    d = adjusted.sort_values("date")
    out = []
    for year, group in d.groupby(d["date"].map(lambda dt: dt.year), sort=True):
        first = float(group["adj_close"].iloc[0])
        last = float(group["adj_close"].iloc[-1])
        out.append({"year": int(year), "value": (last / first - 1.0) if first else 0.0})
    return out


def monthly_by_year(returns: pd.Series | None) -> list[dict]:
    if returns is None or returns.empty:
        return []
    grid: dict[int, list] = {}
    for key, value in returns.items():
        year, month = int(key[:4]), int(key[5:7])
        grid.setdefault(year, [None] * 12)[month - 1] = float(value)
    return [{"year": year, "months": grid[year]} for year in sorted(grid)]


def return_metrics(monthly_adjusted: pd.DataFrame, benchmark_returns: pd.Series | None = None) -> dict:
    """Snapshot return/risk fields from an adjusted monthly series."""
    rets = monthly_returns(monthly_adjusted)
    trailing = rets.tail(MONTHS_PER_YEAR)
    annual = annualized_return(trailing) if len(trailing) >= MONTHS_PER_YEAR else None
    vol = annualized_volatility(trailing)
    beta, alpha = beta_and_alpha(rets, benchmark_returns)
    last = monthly_adjusted.sort_values("date").iloc[-1] if not monthly_adjusted.empty else None
    return {
        "monthly_returns": rets,
        "annual_return": round_value(annual),
        "annual_volatility": round_value(vol),
        "sharpe": round_value(sharpe_ratio(annual, vol)),
        "beta": round_value(beta),
        "alpha": round_value(alpha),
        "yearly_returns": [{"year": r["year"], "value": round_value(r["value"])} for r in yearly_returns(monthly_adjusted)],
        "monthly_by_year": [
            {"year": row["year"], "months": [round_value(v) for v in row["months"]]}
            for row in monthly_by_year(rets)
        ],
        "last_price": round_value(float(last["adj_close"])) if last is not None else None,
        "as_of": last["date"].isoformat() if last is not None else None,
    }


def format_market_cap(value: float | None) -> str | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    for divisor, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M")):
        if value >= divisor:
            return f"{value / divisor:.2f}".rstrip("0").rstrip(".") + suffix
    return f"{value:.0f}"


def round_value(val: float | None, digits: int = 6) -> float | None:
    return None if val is None else round(val, digits)
