"""Fixed-window request limiter keyed by caller identity.

Each key owns a window of ``window_ms`` milliseconds starting at its first
request. Windows roll lazily: the first request at or after ``reset_time``
opens a new one. The background sweeper only reclaims memory of expired keys.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_MS = 5 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_time_ms: int

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(0, math.ceil((self.reset_time_ms - now_ms) / 1000))


@dataclass
class _Window:
    count: int
    reset_time_ms: int


@dataclass(frozen=True)
class RateLimiterStats:
    tracked_keys: int
    allowed: int
    rejected: int
    max_requests: int
    window_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms < 1:
            raise ValueError("window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock or _now_ms
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._allowed = 0
        self._rejected = 0
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    def now_ms(self) -> int:
        return self._clock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_time_ms:
                window = _Window(count=1, reset_time_ms=now + self.window_ms)
                self._windows[key] = window
            else:
                window.count += 1
            allowed = window.count <= self.max_requests
            if allowed:
                self._allowed += 1
            else:
                self._rejected += 1
            return RateLimitDecision(
                allowed=allowed,
                remaining=max(0, self.max_requests - window.count),
                reset_time_ms=window.reset_time_ms,
            )

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def sweep(self, now_ms: int | None = None) -> int:
        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_time_ms]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Rate limiter swept %d expired keys", len(expired))
        return len(expired)

    def stats(self) -> RateLimiterStats:
        with self._lock:
            return RateLimiterStats(
                tracked_keys=len(self._windows),
                allowed=self._allowed,
                rejected=self._rejected,
                max_requests=self.max_requests,
                window_ms=self.window_ms,
            )

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval_seconds,), name="rate-limit-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        thread = self._sweeper
        self._sweeper = None
        if thread is not None:
            thread.join(timeout=1.0)

    def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Rate limiter sweep failed")


def rate_limit_key(wallet_id: str | None, client_address: str | None = None) -> str:
    wallet = (wallet_id or "").strip()
    if wallet:
        return f"sync:{wallet}"
    address = (client_address or "").strip()
    if address:
        return f"sync:ip:{address}"
    return "sync:unknown"


def client_address_from_headers(headers: Mapping[str, str], peer: str | None = None) -> str | None:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or None
