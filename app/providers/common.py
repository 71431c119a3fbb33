import pandas as pd

CANON_COLS = ["date", "open", "high", "low", "close", "split_coefficient", "volume", "symbol"]

# Alpha Vantage bar fields ("1. open", "4. close", ...) by suffix.
FIELD_MAP = {
    "open": "open",
    "high": "high",
    "low": "low",
    "close": "close",
    "volume": "volume",
    "split coefficient": "split_coefficient",
}

def _field_name(key: str) -> str | None:
    text = str(key).strip().lower()
    if ". " in text:
        text = text.split(". ", 1)[1]
    return FIELD_MAP.get(text)

def normalize_series(series: dict | None, symbol: str):
    """Provider time series {date: {field: value}} -> canonical frame sorted by date."""
    if not series or not isinstance(series, dict):
        return None
    records = []
    for raw_date, fields in series.items():
        if not isinstance(fields, dict):
            continue
        record = {"date": raw_date}
        for key, value in fields.items():
            name = _field_name(key)
            if name:
                record[name] = value
        records.append(record)
    if not records:
        return None
    d = pd.DataFrame.from_records(records)
    if "close" not in d.columns:
        return None
    if "split_coefficient" not in d.columns:
        d["split_coefficient"] = 1.0
    d["symbol"] = symbol
    keep = [c for c in CANON_COLS if c in d.columns]
    d = d[keep]
    d["date"] = pd.to_datetime(d["date"], errors="coerce").dt.date
    for c in ["open", "high", "low", "close", "split_coefficient"]:
        if c in d.columns:
            d[c] = pd.to_numeric(d[c], errors="coerce")
    d["split_coefficient"] = d["split_coefficient"].fillna(1.0)
    if "volume" in d.columns:
        d["volume"] = pd.to_numeric(d["volume"], errors="coerce").fillna(0).astype("int64")
    d = d.dropna(subset=["date", "close"])
    if d.empty:
        return None
    return d.sort_values("date").drop_duplicates(subset=["date"], keep="last").reset_index(drop=True)
