"""
In-memory fixed-window rate limiting.

Each key gets a counter and a window boundary. The first request (or the
first one after the boundary) resets the counter to 1 and opens a new window;
later requests just increment. This is single-process state: several app
workers each keep their own table, so the effective limit scales with the
worker count. Sliding windows and a shared store are out of scope.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from xr_ingest.settings import DEFAULT_RATE_LIMIT, RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float
    limit: int

    def retry_after(self, now: float) -> float:
        """Seconds until the window resets (never negative)."""
        return max(0.0, self.reset_time - now)


class RateLimiter:
    """
    Thread-safe fixed-window counter table.

    Construct one per app (or per test); `clock` returns epoch seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._store: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def now(self) -> float:
        return self._clock()

    def check(self, key: str, config: RateLimitConfig = DEFAULT_RATE_LIMIT) -> RateLimitResult:
        """Count one request for `key` and report whether it is within budget."""
        now = self._clock()
        with self._lock:
            record = self._store.get(key)
            if record is None or now > record.reset_time:
                record = RateLimitRecord(count=1, reset_time=now + config.window_seconds)
                self._store[key] = record
                return RateLimitResult(
                    allowed=True,
                    remaining=config.max_requests - 1,
                    reset_time=record.reset_time,
                    limit=config.max_requests,
                )

            record.count += 1
            allowed = record.count <= config.max_requests
            remaining = max(0, config.max_requests - record.count)
            reset_time = record.reset_time

        if not allowed:
            logger.warning(f"⚠️ Rate limit exceeded for {key} ({config.max_requests} per {config.window_seconds:.0f}s)")
        return RateLimitResult(allowed=allowed, remaining=remaining, reset_time=reset_time, limit=config.max_requests)

    def sweep(self) -> int:
        """Drop every record whose window already ended. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._store.items() if record.reset_time < now]
            for key in expired:
                del self._store[key]
        if expired:
            logger.info(f"🧹 Removed {len(expired)} expired rate-limit records")
        return len(expired)

    def get(self, key: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._store.get(key)
            return RateLimitRecord(record.count, record.reset_time) if record else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def start_sweeper(self, interval: float) -> None:
        """Run `sweep()` every `interval` seconds on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval):
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"❌ Rate-limit sweep failed: {e}", exc_info=True)

        self._sweeper = threading.Thread(target=_loop, name="rate-limit-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1)
            self._sweeper = None


def get_client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("X-Forwarded-For") or ""
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    real_ip = (headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return remote_addr or "unknown"


def get_rate_limit_key(identifier: str, prefix: str = "api") -> str:
    return f"{prefix}:{identifier}"
