"""
Rate limiting for the request-trust pipeline.

Provides two layers:
- SlidingWindowLimiter: per-key fixed window counter with an escalated
  block once a window is exceeded (global HTTP layer and bulk actions)
- Login throttle: slowapi limiter guarding the admin login endpoint

Failure policy:
- A limiter check never raises. If the window store fails, the request is
  allowed (fail open) or rejected (fail closed) depending on configuration,
  and a warning is logged either way.
"""

import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from doctools_server.logging_config import get_logger, log_rate_limit_exceeded

logger = get_logger("rate_limiter")

DEFAULT_WINDOW_MS = 60_000
DEFAULT_BLOCK_DURATION_MS = 300_000
GLOBAL_MAX_REQUESTS = 100
CLIENT_MAX_REQUESTS = 30

Clock = Callable[[], float]


def now_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP for rate limiting and blocking.

    Always the socket peer address. Forwarded headers are applied to the
    peer upstream by ProxyHeadersMiddleware, and only for trusted proxies
    (FORWARDED_ALLOW_IPS).
    """
    return get_remote_address(request) or "unknown"


@dataclass
class Window:
    """Counter state for one rate key."""
    count: int
    window_start: float
    blocked_until: Optional[float] = None


@dataclass
class RateLimitResult:
    """Outcome of a limiter check."""
    allowed: bool
    retry_after_seconds: Optional[int] = None
    remaining: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"allowed": self.allowed}
        if self.retry_after_seconds is not None:
            data["retryAfter"] = self.retry_after_seconds
        if self.remaining is not None:
            data["remaining"] = self.remaining
        if self.reason:
            data["reason"] = self.reason
        return data


class InMemoryWindowStore:
    """Window table kept in process memory."""

    def __init__(self):
        self._windows: Dict[str, Window] = {}

    def get(self, key: str) -> Optional[Window]:
        return self._windows.get(key)

    def set(self, key: str, window: Window) -> None:
        self._windows[key] = window

    def delete(self, key: str) -> None:
        self._windows.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Window]]:
        return iter(list(self._windows.items()))

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


class SlidingWindowLimiter:
    """
    Per-key request limiter with escalating block.

    Each key owns a counter and a window start. Once the counter passes
    max_requests inside one window, the key is blocked for block_duration_ms,
    which is longer than the window itself.
    """

    def __init__(
        self,
        max_requests: int = GLOBAL_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
        block_duration_ms: int = DEFAULT_BLOCK_DURATION_MS,
        store: Optional[InMemoryWindowStore] = None,
        clock: Optional[Clock] = None,
        fail_open: bool = True,
        name: str = "global",
    ):
        """
        Initialize limiter

        Args:
            max_requests: Requests allowed per window
            window_ms: Window length in milliseconds
            block_duration_ms: Cooldown applied after a window violation
            store: Window table (in-memory by default)
            clock: Callable returning epoch milliseconds
            fail_open: Allow requests when the store is unavailable
            name: Limiter name used in logs
        """
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.block_duration_ms = block_duration_ms
        self.fail_open = fail_open
        self.name = name
        self._store = store if store is not None else InMemoryWindowStore()
        self._clock = clock or now_ms
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitResult:
        """
        Count one request for key and decide whether it may proceed.

        Returns:
            RateLimitResult with remaining on success, retry_after_seconds
            on rejection
        """
        try:
            with self._lock:
                result, count = self._evaluate(key, self._clock())
        except Exception as e:
            logger.warning(
                "rate_limit_store_unavailable",
                limiter=self.name,
                key=key,
                error=str(e),
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return RateLimitResult(allowed=True, reason="limiter_unavailable")
            return RateLimitResult(
                allowed=False,
                retry_after_seconds=math.ceil(self.window_ms / 1000),
                reason="limiter_unavailable",
            )

        if result.reason == "rate_limited":
            log_rate_limit_exceeded(
                key=key,
                limit_type=self.name,
                limit_value=self.max_requests,
                current_count=count,
                retry_after=result.retry_after_seconds,
            )
        return result

    def _evaluate(self, key: str, now: float) -> Tuple[RateLimitResult, int]:
        window = self._store.get(key)

        if window is not None and window.blocked_until is not None:
            if window.blocked_until > now:
                retry_after = math.ceil((window.blocked_until - now) / 1000)
                return RateLimitResult(False, retry_after_seconds=retry_after, reason="blocked"), window.count
            # Block served: start over with an empty window
            self._store.delete(key)
            window = None

        if window is None or now - window.window_start >= self.window_ms:
            window = Window(count=0, window_start=now)

        window.count += 1

        if window.count > self.max_requests:
            window.blocked_until = now + self.block_duration_ms
            self._store.set(key, window)
            retry_after = math.ceil(self.block_duration_ms / 1000)
            return RateLimitResult(False, retry_after_seconds=retry_after, reason="rate_limited"), window.count

        self._store.set(key, window)
        return RateLimitResult(True, remaining=self.max_requests - window.count), window.count

    def status(self, key: str) -> Dict[str, object]:
        """Current counter state for key without counting a request."""
        with self._lock:
            now = self._clock()
            window = self._store.get(key)
            if window is None:
                return {
                    "requestsInWindow": 0,
                    "maxRequests": self.max_requests,
                    "blocked": False,
                    "blockedUntil": None,
                }
            blocked = window.blocked_until is not None and window.blocked_until > now
            in_window = window.count if now - window.window_start < self.window_ms or blocked else 0
            return {
                "requestsInWindow": in_window,
                "maxRequests": self.max_requests,
                "blocked": blocked,
                "blockedUntil": window.blocked_until if blocked else None,
            }

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when key is None."""
        with self._lock:
            if key is None:
                self._store.clear()
            else:
                self._store.delete(key)

    def sweep(self) -> int:
        """Drop idle windows that neither count nor block anymore."""
        removed = 0
        with self._lock:
            now = self._clock()
            for key, window in self._store.items():
                blocked = window.blocked_until is not None and window.blocked_until > now
                if not blocked and now - window.window_start >= self.window_ms:
                    self._store.delete(key)
                    removed += 1
        if removed:
            logger.debug("rate_limit_windows_swept", limiter=self.name, removed=removed)
        return removed


# Login throttle (slowapi). Limits are strings such as "5/15minutes".
LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "5/15minutes")

login_limiter = Limiter(
    key_func=get_client_ip,
    storage_uri="memory://",
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for login throttle violations.

    Returns JSON response with:
    - Error message
    - Retry-After header derived from the limit's window
    """
    retry_after = exc.limit.limit.get_expiry()
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "error": "Too many login attempts, please try again later.",
            "retryAfter": retry_after,
            "limit": str(exc.limit.limit),
        },
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(exc.limit.limit),
        }
    )
