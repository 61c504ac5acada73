"""
Explicit IP block list and rapid-request detection.

Blocks expire lazily: an entry whose expiry has passed is treated as absent
on lookup, and a periodic sweep removes what nobody asked about. No timers
are scheduled per entry, so expiry is deterministic under an injected clock.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from doctools_server.logging_config import get_logger
from doctools_server.rate_limiting import DEFAULT_BLOCK_DURATION_MS, Clock, now_ms

logger = get_logger("ip_blocklist")

RAPID_THRESHOLD = 20
RAPID_WINDOW_MS = 10_000
RAPID_IDLE_MS = 60_000


@dataclass
class BlockEntry:
    """A blocked IP and the epoch-ms instant its block ends."""
    ip: str
    blocked_until: float

    def to_dict(self) -> Dict[str, object]:
        return {"ip": self.ip, "blockedUntil": self.blocked_until}


class IPBlockRegistry:
    """Manual and automatic IP blocks with TTL-based expiry."""

    def __init__(
        self,
        default_duration_ms: int = DEFAULT_BLOCK_DURATION_MS,
        clock: Optional[Clock] = None,
    ):
        self.default_duration_ms = default_duration_ms
        self._clock = clock or now_ms
        self._entries: Dict[str, BlockEntry] = {}
        self._lock = threading.Lock()

    def block(self, ip: str, duration_ms: Optional[int] = None) -> BlockEntry:
        """
        Block ip for duration_ms.

        Re-blocking an already blocked ip moves its expiry to the new
        duration when that ends later; existing coverage is never shortened.
        """
        duration = duration_ms if duration_ms is not None else self.default_duration_ms
        with self._lock:
            now = self._clock()
            blocked_until = now + duration
            entry = self._entries.get(ip)
            if entry is not None and entry.blocked_until > now:
                entry.blocked_until = max(entry.blocked_until, blocked_until)
            else:
                self._entries.pop(ip, None)
                entry = BlockEntry(ip=ip, blocked_until=blocked_until)
                self._entries[ip] = entry
        logger.info("ip_blocked", ip=ip, duration_ms=duration, blocked_until=entry.blocked_until)
        return entry

    def unblock(self, ip: str) -> bool:
        """Remove ip from the list. Returns True if it was actively blocked."""
        with self._lock:
            entry = self._entries.pop(ip, None)
            was_blocked = entry is not None and entry.blocked_until > self._clock()
        if was_blocked:
            logger.info("ip_unblocked", ip=ip)
        return was_blocked

    def is_blocked(self, ip: str) -> bool:
        with self._lock:
            return self._active_entry(ip) is not None

    def retry_after_seconds(self, ip: str) -> Optional[int]:
        """Seconds left on ip's block, or None if it is not blocked."""
        with self._lock:
            entry = self._active_entry(ip)
            if entry is None:
                return None
            return max(1, math.ceil((entry.blocked_until - self._clock()) / 1000))

    def list(self) -> List[str]:
        """Currently blocked IPs in the order they were blocked."""
        return [entry.ip for entry in self.entries()]

    def entries(self) -> List[BlockEntry]:
        with self._lock:
            now = self._clock()
            return [
                BlockEntry(ip=entry.ip, blocked_until=entry.blocked_until)
                for entry in self._entries.values()
                if entry.blocked_until > now
            ]

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [ip for ip, entry in self._entries.items() if entry.blocked_until <= now]
            for ip in expired:
                del self._entries[ip]
        if expired:
            logger.debug("ip_blocks_expired", count=len(expired))
        return len(expired)

    def _active_entry(self, ip: str) -> Optional[BlockEntry]:
        entry = self._entries.get(ip)
        if entry is None:
            return None
        if entry.blocked_until <= self._clock():
            del self._entries[ip]
            return None
        return entry

    def __len__(self) -> int:
        return len(self.list())


@dataclass
class _RapidCounter:
    count: int
    first_request: float
    last_request: float


class RapidRequestDetector:
    """
    Coarse per-IP burst detector.

    Flags an IP that sends more than threshold requests within window_ms of
    its first counted request. The caller decides what to do (normally a
    block in IPBlockRegistry).
    """

    def __init__(
        self,
        threshold: int = RAPID_THRESHOLD,
        window_ms: int = RAPID_WINDOW_MS,
        idle_ms: int = RAPID_IDLE_MS,
        clock: Optional[Clock] = None,
    ):
        self.threshold = threshold
        self.window_ms = window_ms
        self.idle_ms = idle_ms
        self._clock = clock or now_ms
        self._counters: Dict[str, _RapidCounter] = {}
        self._lock = threading.Lock()

    def hit(self, ip: str) -> bool:
        """Count one request from ip. Returns True when ip is bursting."""
        with self._lock:
            now = self._clock()
            counter = self._counters.get(ip)
            if counter is None or now - counter.first_request >= self.window_ms:
                counter = _RapidCounter(count=0, first_request=now, last_request=now)
                self._counters[ip] = counter
            counter.count += 1
            counter.last_request = now
            return counter.count > self.threshold

    def count(self, ip: str) -> int:
        with self._lock:
            counter = self._counters.get(ip)
            if counter is None or self._clock() - counter.first_request >= self.window_ms:
                return 0
            return counter.count

    def sweep(self) -> int:
        """Forget IPs that have been quiet for idle_ms."""
        with self._lock:
            now = self._clock()
            idle = [ip for ip, c in self._counters.items() if now - c.last_request > self.idle_ms]
            for ip in idle:
                del self._counters[ip]
        return len(idle)
