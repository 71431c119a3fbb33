from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

import structlog

from ..utils import now_utc, parse_utc_iso
from .snapshots import CacheLevel, MetricsSnapshot, merge_snapshots, snapshot_from_payload
from .storage import SnapshotStore

log = structlog.get_logger()


@dataclass(frozen=True)
class CacheEntry:
    snapshot: MetricsSnapshot
    updated_at: datetime
    has_overview: bool


class MetricsCache:
    """
    Two tiers of per-ticker snapshots:
    - memory: short TTL accelerator, per process
    - durable: SnapshotStore rows, judged fresh against the durable TTL
    Freshness also requires the current schema version, and has_overview
    when the caller needs the full level.
    """
    def __init__(
        self,
        store: SnapshotStore,
        schema_version: int,
        memory_ttl_seconds: float = 1800,
        durable_ttl_seconds: float = 86400,
        clock=now_utc,
    ):
        self.store = store
        self.schema_version = int(schema_version)
        self.memory_ttl_seconds = float(memory_ttl_seconds)
        self.durable_ttl_seconds = float(durable_ttl_seconds)
        self._clock = clock
        self._memory: dict[str, tuple[CacheEntry, datetime]] = {}
        self._lock = threading.Lock()

    def is_fresh(self, entry: CacheEntry | None, level: CacheLevel = "returns") -> bool:
        if entry is None:
            return False
        if entry.snapshot.schema_version != self.schema_version:
            return False
        age = (self._clock() - entry.updated_at).total_seconds()
        if age >= self.durable_ttl_seconds:
            return False
        return level == "returns" or entry.has_overview

    def _from_memory(self, ticker: str) -> CacheEntry | None:
        with self._lock:
            hit = self._memory.get(ticker)
            if hit is None:
                return None
            entry, loaded_at = hit
            if (self._clock() - loaded_at).total_seconds() >= self.memory_ttl_seconds:
                self._memory.pop(ticker, None)
                return None
            return entry

    def _remember(self, ticker: str, entry: CacheEntry):
        with self._lock:
            self._memory[ticker] = (entry, self._clock())

    def get_many(self, tickers: list[str]) -> dict[str, CacheEntry]:
        """Cached entries regardless of freshness; callers decide with is_fresh()."""
        out: dict[str, CacheEntry] = {}
        missing = []
        for ticker in tickers:
            entry = self._from_memory(ticker)
            if entry is not None:
                out[ticker] = entry
            else:
                missing.append(ticker)
        if not missing:
            return out
        for ticker, row in self.store.get_many(missing).items():
            snapshot = snapshot_from_payload(row["payload"])
            updated_at = parse_utc_iso(row["updated_at_utc"])
            if snapshot is None or updated_at is None:
                log.info("metrics_cache_row_unreadable", ticker=ticker)
                continue
            entry = CacheEntry(snapshot, updated_at, row["has_overview"])
            self._remember(ticker, entry)
            out[ticker] = entry
        return out

    def peek(self, ticker: str) -> CacheEntry | None:
        return self.get_many([ticker]).get(ticker)

    def get(self, ticker: str, level: CacheLevel = "returns") -> CacheEntry | None:
        entry = self.peek(ticker)
        return entry if self.is_fresh(entry, level) else None

    def put(
        self,
        ticker: str,
        snapshot: MetricsSnapshot,
        level: CacheLevel,
        previous: CacheEntry | None = None,
    ) -> CacheEntry:
        merged = merge_snapshots(snapshot, previous.snapshot if previous else None)
        has_overview = level == "full" or bool(previous and previous.has_overview)
        updated_at = self._clock()
        self.store.upsert(ticker, merged.model_dump(), updated_at.isoformat(), has_overview)
        entry = CacheEntry(merged, updated_at, has_overview)
        self._remember(ticker, entry)
        return entry
