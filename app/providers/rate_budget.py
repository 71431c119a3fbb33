from __future__ import annotations

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field

import structlog

from ..errors import ProviderRateLimited

log = structlog.get_logger()

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86400.0
MIN_COOLDOWN_SECONDS = 60.0

_LIMIT_SIGNAL = re.compile(
    r"rate limit|call frequency|(?:requests?|calls?)\s+per\s+(?:minute|day)|per\s+(?:minute|day)",
    re.IGNORECASE,
)
_MINUTE_LIMIT = [
    re.compile(r"(\d+)\s+(?:requests?|calls?)\s+per\s+minute", re.IGNORECASE),
    re.compile(r"(\d+)\s+per\s+minute", re.IGNORECASE),
]
_DAY_LIMIT = [
    re.compile(r"(\d+)\s+(?:requests?|calls?)\s+per\s+day", re.IGNORECASE),
    re.compile(r"(\d+)\s+per\s+day", re.IGNORECASE),
]


def is_rate_limit_message(message: str | None) -> bool:
    if not message:
        return False
    return bool(_LIMIT_SIGNAL.search(message))


def _first_int(patterns: list[re.Pattern], message: str) -> int | None:
    for pattern in patterns:
        match = pattern.search(message)
        if match:
            value = int(match.group(1))
            return value if value > 0 else None
    return None


def parse_rate_limit_message(message: str | None) -> tuple[int | None, int | None]:
    """Return (per_minute, per_day) limits stated in a provider message."""
    if not message:
        return None, None
    return _first_int(_MINUTE_LIMIT, message), _first_int(_DAY_LIMIT, message)


@dataclass
class RateBudget:
    """
    Calls charged inside one rolling window. A call stops counting span_seconds
    after it was made, so the window starts at the oldest call still counted.
    """
    span_seconds: float
    limit: int
    calls: deque = field(default_factory=deque)

    @property
    def window_start(self) -> float | None:
        return self.calls[0] if self.calls else None

    @property
    def count(self) -> int:
        return len(self.calls)

    def roll(self, now: float):
        while self.calls and now - self.calls[0] >= self.span_seconds:
            self.calls.popleft()

    def exhausted(self) -> bool:
        return self.count >= self.limit

    def charge(self, now: float):
        self.calls.append(now)

    def saturate(self, now: float):
        while self.count < self.limit:
            self.calls.append(now)

    def as_dict(self) -> dict:
        return {"window_start": self.window_start, "count": self.count, "limit": self.limit}


class RateBudgetLimiter:
    """Process-wide provider call budget (per minute and per day) with cooldown."""

    def __init__(
        self,
        minute_limit: int,
        day_limit: int,
        cooldown_seconds: float = MIN_COOLDOWN_SECONDS,
        clock=time.time,
    ):
        self.minute = RateBudget(MINUTE_SECONDS, max(1, int(minute_limit)))
        self.day = RateBudget(DAY_SECONDS, max(1, int(day_limit)))
        self.cooldown_seconds = max(MIN_COOLDOWN_SECONDS, float(cooldown_seconds or 0.0))
        self.cooldown_until = 0.0
        self._clock = clock
        self._lock = threading.Lock()

    def _denial_reason(self, now: float) -> str | None:
        if self.cooldown_until and now < self.cooldown_until:
            return "cooldown"
        self.minute.roll(now)
        self.day.roll(now)
        if self.minute.exhausted():
            return "minute_budget_exhausted"
        if self.day.exhausted():
            return "day_budget_exhausted"
        return None

    def can_acquire(self) -> bool:
        with self._lock:
            return self._denial_reason(self._clock()) is None

    def acquire(self, ticker: str | None = None):
        """Charge one provider call or raise ProviderRateLimited without calling out."""
        with self._lock:
            now = self._clock()
            reason = self._denial_reason(now)
            if reason is None:
                self.minute.charge(now)
                self.day.charge(now)
                return
        raise ProviderRateLimited(reason, ticker=ticker)

    def note_rate_limit(self, message: str | None = None):
        minute_limit, day_limit = parse_rate_limit_message(message)
        with self._lock:
            now = self._clock()
            if minute_limit:
                self.minute.limit = minute_limit
            if day_limit:
                self.day.limit = day_limit
            self.minute.roll(now)
            self.minute.saturate(now)
            if day_limit:
                self.day.roll(now)
                self.day.saturate(now)
            self.cooldown_until = max(self.cooldown_until, now + self.cooldown_seconds)
        log.warning(
            "rate_limit_noted",
            minute_limit=self.minute.limit,
            day_limit=self.day.limit,
            parsed_minute=minute_limit,
            parsed_day=day_limit,
            cooldown_until=self.cooldown_until,
        )

    def status(self) -> dict:
        with self._lock:
            now = self._clock()
            self.minute.roll(now)
            self.day.roll(now)
            return {
                "minute": self.minute.as_dict(),
                "day": self.day.as_dict(),
                "cooldown_remaining_seconds": round(max(0.0, self.cooldown_until - now), 3),
            }
