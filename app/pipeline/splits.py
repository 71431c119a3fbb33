from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Iterable

import pandas as pd

SPLIT_CANDIDATES = (2, 3, 4, 5, 6, 7, 8, 9, 10, 12, 15, 20, 25)
DISCONTINUITY_THRESHOLD = 1.4
MAX_RELATIVE_ERROR = 0.25


@dataclass(frozen=True)
class SplitEvent:
    date: date
    factor: float
    source: str = "explicit"  # 'explicit'|'inferred'


def _sorted_desc(events: Iterable[SplitEvent]) -> list[SplitEvent]:
    return sorted(events, key=lambda e: e.date, reverse=True)


def extract_explicit_splits(df: pd.DataFrame | None) -> list[SplitEvent]:
    """Bars whose split coefficient differs from 1 become events with factor 1/coefficient."""
    if df is None or df.empty or "split_coefficient" not in df.columns:
        return []
    events = []
    for row in df.itertuples(index=False):
        coefficient = getattr(row, "split_coefficient", None)
        if coefficient is None or not math.isfinite(coefficient) or coefficient == 1:
            continue
        factor = 1.0 / coefficient if coefficient else 0.0
        if not math.isfinite(factor) or factor <= 0:
            continue
        events.append(SplitEvent(row.date, factor, "explicit"))
    return _sorted_desc(events)


def best_split_candidate(ratio: float, candidates=SPLIT_CANDIDATES) -> tuple[int | None, float]:
    best, best_error = None, math.inf
    for factor in candidates:
        error = abs(ratio - factor) / factor
        if error < best_error:
            best, best_error = factor, error
    return best, best_error


def infer_splits(
    df: pd.DataFrame | None,
    threshold: float = DISCONTINUITY_THRESHOLD,
    candidates=SPLIT_CANDIDATES,
    max_error: float = MAX_RELATIVE_ERROR,
) -> list[SplitEvent]:
    """
    Infer splits from close-to-close drops. A drop of at least `threshold`x is
    matched to the nearest candidate factor and kept when the relative error
    is below `max_error`. The event is dated on the first post-split bar.
    """
    if df is None or df.empty:
        return []
    points = df[["date", "close"]].dropna().sort_values("date")
    events = []
    prev_close = None
    for row in points.itertuples(index=False):
        close = float(row.close)
        if prev_close and close:
            ratio = prev_close / close
            if math.isfinite(ratio) and ratio >= threshold:
                factor, error = best_split_candidate(ratio, candidates)
                if factor and error < max_error:
                    events.append(SplitEvent(row.date, float(factor), "inferred"))
        prev_close = close
    return _sorted_desc(events)


def merge_split_events(explicit: list[SplitEvent], inferred: list[SplitEvent]) -> list[SplitEvent]:
    by_date: dict[date, SplitEvent] = {}
    for event in explicit:
        by_date[event.date] = event
    for event in inferred:
        by_date.setdefault(event.date, event)
    return _sorted_desc(by_date.values())


def apply_splits(df: pd.DataFrame, splits: list[SplitEvent]) -> pd.DataFrame:
    """
    Add adj_close: each close divided by the product of factors of all splits
    dated strictly after it. Returned ascending by date.
    """
    points = df.sort_values("date", ascending=False).reset_index(drop=True)
    ordered = _sorted_desc(splits)
    cumulative = 1.0
    idx = 0
    adjusted = []
    for row in points.itertuples(index=False):
        while idx < len(ordered) and row.date < ordered[idx].date:
            cumulative *= ordered[idx].factor or 1.0
            idx += 1
        adjusted.append(float(row.close) / cumulative)
    points["adj_close"] = adjusted
    return points.sort_values("date").reset_index(drop=True)


def split_factor_between(splits: list[SplitEvent], after: date, through: date) -> float:
    """Product of factors for splits with after < date <= through."""
    factor = 1.0
    for event in splits:
        if after < event.date <= through:
            factor *= event.factor
    return factor
