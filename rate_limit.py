# rate_limit.py
# -----------------------------------------------------------------------------
# Fixed-window rate limiting behind an injected clock + window store.
#   RateLimiter.allow(key) -> bool
# MemoryWindowStore: process-local (tests, single instance)
# PgWindowStore:     shared across instances via one upsert on public.rate_limits
# -----------------------------------------------------------------------------

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX") or 20)
RATE_LIMIT_WINDOW_SEC = int(os.getenv("RATE_LIMIT_WINDOW_SEC") or 60)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryWindowStore:
    def __init__(self):
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()
        self._next_sweep: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: datetime, window_seconds: int) -> None:
        # at most once per window; drops keys whose window already closed
        if self._next_sweep is not None and now < self._next_sweep:
            return
        for k in [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]:
            del self._windows[k]
        self._next_sweep = now + timedelta(seconds=window_seconds)

    def hit(self, key: str, now: datetime, window_seconds: int) -> int:
        with self._lock:
            self._sweep(now, window_seconds)
            count, reset_at = self._windows.get(key, (0, now))
            if now >= reset_at:
                count, reset_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._windows[key] = (count, reset_at)
            return count


class PgWindowStore:
    """runner: db module (or anything with execute_returning)."""

    def __init__(self, runner):
        self.db = runner

    def hit(self, key: str, now: datetime, window_seconds: int) -> int:
        reset_at = now + timedelta(seconds=window_seconds)
        rows = self.db.execute_returning("""
            INSERT INTO public.rate_limits (key, count, reset_at)
            VALUES (%s, 1, %s)
            ON CONFLICT (key) DO UPDATE
               SET count    = CASE WHEN public.rate_limits.reset_at <= %s THEN 1
                                   ELSE public.rate_limits.count + 1 END,
                   reset_at = CASE WHEN public.rate_limits.reset_at <= %s THEN EXCLUDED.reset_at
                                   ELSE public.rate_limits.reset_at END
            RETURNING count;
        """, (key, reset_at, now, now))
        return int(rows[0]["count"])


class RateLimiter:
    def __init__(self, store, limit: Optional[int] = None, window_seconds: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.limit = int(limit if limit is not None else RATE_LIMIT_MAX)
        self.window_seconds = int(window_seconds if window_seconds is not None else RATE_LIMIT_WINDOW_SEC)
        self.clock = clock or _utcnow

    def allow(self, key: str) -> bool:
        count = self.store.hit(key, self.clock(), self.window_seconds)
        if count > self.limit:
            print(f"[ratelimit] deny key={key} count={count} limit={self.limit}", flush=True)
            return False
        return True
