from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Tuple

from siteqa import db
from siteqa.config import Settings

logger = logging.getLogger("siteqa.ratelimit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Fixed-window request counter keyed by caller."""

    def __init__(self, max_hits: int, window_sec: int, clock: Callable[[], float] = time.time) -> None:
        self.max_hits = max(1, int(max_hits))
        self.window_sec = max(1, int(window_sec))
        self.clock = clock

    def _window(self) -> Tuple[int, int]:
        now = int(self.clock())
        start = now - (now % self.window_sec)
        return start, now

    def _result(self, hits: int, start: int, now: int) -> RateLimitResult:
        if hits > self.max_hits:
            return RateLimitResult(False, 0, max(1, start + self.window_sec - now))
        return RateLimitResult(True, self.max_hits - hits)

    def hit(self, key: str) -> RateLimitResult:
        raise NotImplementedError


class NullRateLimiter(RateLimiter):
    def __init__(self) -> None:
        super().__init__(1, 1)

    def hit(self, key: str) -> RateLimitResult:
        return RateLimitResult(True, self.max_hits)


class InMemoryRateLimiter(RateLimiter):
    """Per-process counters. Fine for a single worker."""

    def __init__(self, max_hits: int, window_sec: int, clock: Callable[[], float] = time.time) -> None:
        super().__init__(max_hits, window_sec, clock)
        self._lock = Lock()
        self._buckets: Dict[str, Tuple[int, int]] = {}

    def hit(self, key: str) -> RateLimitResult:
        start, now = self._window()
        with self._lock:
            window_start, hits = self._buckets.get(key, (start, 0))
            if window_start != start:
                hits = 0
            hits += 1
            self._buckets[key] = (start, hits)
        return self._result(hits, start, now)


class SqliteRateLimiter(RateLimiter):
    """Counters in the shared database, so every worker process sees the same window."""

    def __init__(
        self,
        db_path: Path | str,
        max_hits: int,
        window_sec: int,
        clock: Callable[[], float] = time.time,
        timeout_sec: float = 30.0,
    ) -> None:
        super().__init__(max_hits, window_sec, clock)
        self.db_path = db_path
        self.timeout_sec = timeout_sec

    def hit(self, key: str) -> RateLimitResult:
        start, now = self._window()
        with db.db_conn(self.db_path, self.timeout_sec, immediate=True) as con:
            con.execute(
                """
                INSERT INTO rate_limits(bucket, window_start, hits) VALUES(?, ?, 1)
                ON CONFLICT(bucket) DO UPDATE SET
                  hits = CASE WHEN rate_limits.window_start = excluded.window_start
                              THEN rate_limits.hits + 1 ELSE 1 END,
                  window_start = excluded.window_start
                """,
                (key, start),
            )
            row = con.execute("SELECT hits FROM rate_limits WHERE bucket=?", (key,)).fetchone()
        return self._result(int(row["hits"]), start, now)


def build_rate_limiter(settings: Settings) -> RateLimiter:
    backend = settings.rate_limit_backend
    if backend == "off":
        return NullRateLimiter()
    if backend == "sqlite":
        return SqliteRateLimiter(
            settings.db_path,
            settings.rate_limit_max,
            settings.rate_limit_window_sec,
            timeout_sec=settings.sqlite_timeout_sec,
        )
    return InMemoryRateLimiter(settings.rate_limit_max, settings.rate_limit_window_sec)
