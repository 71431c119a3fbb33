import time as time_module
from datetime import datetime, timezone

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def now_utc_iso() -> str:
    return now_utc().isoformat()

def parse_utc_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def normalize_ticker(ticker: str | None) -> str:
    return (ticker or "").strip().upper()

def retry_call(
    fn,
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 5.0,
    deadline: float | None = None,
    retry_on_result=None,
):
    last_exc = None
    last_result = None
    for attempt in range(1, attempts + 1):
        if deadline is not None and time_module.monotonic() >= deadline:
            raise TimeoutError("time_budget_exceeded")
        try:
            result = fn()
            last_result = result
            if retry_on_result and retry_on_result(result) and attempt < attempts:
                _sleep_with_deadline(base_delay, attempt, max_delay, deadline)
                continue
            return result
        except Exception as exc:
            last_exc = exc
            if attempt >= attempts:
                raise
            _sleep_with_deadline(base_delay, attempt, max_delay, deadline)
    if last_exc:
        raise last_exc
    return last_result

def _sleep_with_deadline(base_delay: float, attempt: int, max_delay: float, deadline: float | None):
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    if deadline is not None:
        remaining = deadline - time_module.monotonic()
        if remaining <= 0:
            raise TimeoutError("time_budget_exceeded")
        delay = min(delay, max(0.0, remaining))
    if delay > 0:
        time_module.sleep(delay)


class RateLimiter:
    """Fixed spacing between calls. Blocks the calling thread."""

    def __init__(self, min_interval_seconds: float, sleep=time_module.sleep, clock=time_module.monotonic):
        self.min_interval_seconds = float(min_interval_seconds or 0.0)
        self._last_call = None
        self._sleep = sleep
        self._clock = clock

    def wait(self, deadline: float | None = None):
        if self.min_interval_seconds <= 0:
            return
        now = self._clock()
        if self._last_call is None:
            self._last_call = now
            return
        elapsed = now - self._last_call
        sleep_for = self.min_interval_seconds - elapsed
        if sleep_for > 0:
            if deadline is not None and now + sleep_for > deadline:
                raise TimeoutError("time_budget_exceeded")
            self._sleep(sleep_for)
        self._last_call = self._clock()
