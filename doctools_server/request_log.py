"""
Request audit log.

Every finished request produces one immutable LogEntry which lands in two
independent places:
- a fixed-capacity ring buffer answering recent()/stats() queries
- an append-only JSON-lines file, written by a background task so the
  response never waits on disk

A write failure on the file is logged and dropped.
"""

import asyncio
import json
import random
import re
import string
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import aiofiles

from doctools_server.logging_config import (
    get_logger,
    log_persistence_failure,
    log_suspicious_request,
)

logger = get_logger("request_log")

MAX_LOGS = 10_000

# Matched against path + serialized query + user agent
SUSPICIOUS_PATTERNS = {
    "path_traversal": re.compile(r"\.\./"),
    "xss": re.compile(r"<script|javascript:", re.IGNORECASE),
    "sql_injection": re.compile(r"union.*select|or\s+1\s*=\s*1", re.IGNORECASE),
    "code_injection": re.compile(r"eval\(", re.IGNORECASE),
    "admin_scan": re.compile(r"wp-admin|phpmyadmin|admin.*password", re.IGNORECASE),
    "executable_scan": re.compile(r"\.(?:php|exe)", re.IGNORECASE),
}

LOGIN_PATH = "/api/auth/login"

_BASE36 = string.ascii_lowercase + string.digits


def generate_request_id() -> str:
    """Request id of the form req_<epoch ms>_<9 random chars>."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def serialize_query(query: Optional[Dict[str, Any]]) -> str:
    return json.dumps(query or {}, separators=(",", ":"), sort_keys=False, default=str)


def _format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class LogEntry:
    """One completed request."""
    timestamp: datetime
    method: str
    path: str
    ip: str
    user_agent: str
    request_id: str
    status_code: int
    response_time_ms: int
    query: Dict[str, Any] = field(default_factory=dict)
    referer: Optional[str] = None
    content_length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _format_timestamp(self.timestamp),
            "method": self.method,
            "path": self.path,
            "query": self.query,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "referer": self.referer,
            "requestId": self.request_id,
            "statusCode": self.status_code,
            "responseTime": self.response_time_ms,
            "contentLength": self.content_length,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            method=data.get("method", ""),
            path=data.get("path", ""),
            query=data.get("query") or {},
            ip=data.get("ip", "unknown"),
            user_agent=data.get("userAgent") or "unknown",
            referer=data.get("referer"),
            request_id=data.get("requestId", ""),
            status_code=int(data.get("statusCode", 0)),
            response_time_ms=int(data.get("responseTime") or 0),
            content_length=int(data.get("contentLength") or 0),
        )

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str) + "\n"


def find_suspicious_patterns(entry: LogEntry) -> Set[str]:
    """Names of the attack patterns present in path, query or user agent."""
    haystack = f"{entry.path}{serialize_query(entry.query)}{entry.user_agent}"
    return {name for name, pattern in SUSPICIOUS_PATTERNS.items() if pattern.search(haystack)}


@dataclass
class RequestStats:
    """Rolling aggregates recomputed from the ring buffer."""
    total_requests: int
    last_hour: int
    last_day: int
    unique_visitors: int
    top_paths: List[List[Any]]
    status_codes: Dict[int, int]
    avg_response_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "lastHour": self.last_hour,
            "lastDay": self.last_day,
            "uniqueVisitors": self.unique_visitors,
            "topPaths": self.top_paths,
            "statusCodes": {str(code): count for code, count in self.status_codes.items()},
            "avgResponseTime": self.avg_response_time,
        }


class RequestAuditLog:
    """Ring buffer of recent requests backed by an append-only JSONL file."""

    def __init__(
        self,
        log_file: Optional[Path] = None,
        capacity: int = MAX_LOGS,
        clock=None,
    ):
        """
        Args:
            log_file: Durable log path; None keeps the log in memory only
            capacity: Ring buffer size
            clock: Callable returning an aware UTC datetime
        """
        self.log_file = Path(log_file) if log_file else None
        self.capacity = capacity
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._file_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self.dropped_writes = 0

    def now(self) -> datetime:
        return self._clock()

    def record(self, entry: LogEntry) -> None:
        """Store entry in the buffer and queue its durable append."""
        with self._lock:
            self._entries.append(entry)

        patterns = find_suspicious_patterns(entry)
        if patterns:
            log_suspicious_request(entry.to_dict(), patterns)

        if self.log_file is not None:
            self._schedule_append(entry.to_json_line())

    def _schedule_append(self, line: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside the server loop (CLI, sync tests)
            self._append_sync(line)
            return
        task = loop.create_task(self._append(line))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, line: str) -> None:
        async with self._file_lock:
            try:
                async with aiofiles.open(self.log_file, "a", encoding="utf-8") as f:
                    await f.write(line)
            except OSError as e:
                self.dropped_writes += 1
                log_persistence_failure("request_log", str(self.log_file), e)

    def _append_sync(self, line: str) -> None:
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            self.dropped_writes += 1
            log_persistence_failure("request_log", str(self.log_file), e)

    async def flush(self) -> None:
        """Wait for queued durable writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def restore(self) -> int:
        """
        Prime the ring buffer from the tail of the durable log.

        Invalid lines are skipped. Returns the number of entries loaded.
        """
        if self.log_file is None or not self.log_file.exists():
            return 0

        tail: Deque[LogEntry] = deque(maxlen=self.capacity)
        try:
            # Torn writes can leave invalid bytes; they fail JSON parsing below
            with open(self.log_file, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        tail.append(LogEntry.from_dict(json.loads(line)))
                    except (ValueError, KeyError, TypeError):
                        continue
        except OSError as e:
            log_persistence_failure("request_log", str(self.log_file), e, operation="restore")
            return 0

        with self._lock:
            for entry in tail:
                self._entries.append(entry)
        logger.info("request_log_restored", entries=len(tail), path=str(self.log_file))
        return len(tail)

    def _snapshot(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def recent(self, limit: int = 100) -> List[LogEntry]:
        """Most recent entries first."""
        if limit <= 0:
            return []
        entries = self._snapshot()
        return list(reversed(entries[-limit:]))

    def by_path(self, fragment: str, limit: int = 50) -> List[LogEntry]:
        """Most recent entries whose path contains fragment."""
        if limit <= 0:
            return []
        matching = [entry for entry in self._snapshot() if fragment in entry.path]
        return list(reversed(matching[-limit:]))

    def stats(self) -> RequestStats:
        entries = self._snapshot()
        now = self._clock()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)

        last_hour = [entry for entry in entries if entry.timestamp > hour_ago]
        last_day = [entry for entry in entries if entry.timestamp > day_ago]

        path_counts = Counter(entry.path for entry in last_day)
        status_counts = Counter(entry.status_code for entry in last_day)
        unique_ips = {entry.ip for entry in last_day}

        avg_response_time = 0
        if last_day:
            avg_response_time = round(sum(entry.response_time_ms for entry in last_day) / len(last_day))

        return RequestStats(
            total_requests=len(entries),
            last_hour=len(last_hour),
            last_day=len(last_day),
            unique_visitors=len(unique_ips),
            top_paths=[[path, count] for path, count in path_counts.most_common(10)],
            status_codes=dict(status_counts),
            avg_response_time=avg_response_time,
        )

    def count_rejections(self, last: int = 20) -> int:
        """How many of the last entries were rejected with 403 or 429."""
        return sum(1 for entry in self.recent(last) if entry.status_code in (403, 429))

    def analyze_threats(self, limit: int = 500) -> Dict[str, Any]:
        """
        Classify the most recent entries by threat type.

        Returns:
            Dictionary with:
            - threats: counts per category
            - suspiciousIPs: top 10 IPs by pattern matches
            - totalThreats: sum of all counts
            - analyzedLogs: number of entries inspected
        """
        logs = self.recent(limit)
        threats = {
            "pathTraversal": 0,
            "sqlInjection": 0,
            "xssAttempt": 0,
            "bruteForce": 0,
            "botActivity": 0,
            "rateLimited": 0,
        }
        suspicious_ips: Counter = Counter()

        for entry in logs:
            test_string = f"{entry.path}{serialize_query(entry.query)}"

            if SUSPICIOUS_PATTERNS["path_traversal"].search(test_string):
                threats["pathTraversal"] += 1
                suspicious_ips[entry.ip] += 1

            if SUSPICIOUS_PATTERNS["sql_injection"].search(test_string):
                threats["sqlInjection"] += 1
                suspicious_ips[entry.ip] += 1

            if SUSPICIOUS_PATTERNS["xss"].search(test_string):
                threats["xssAttempt"] += 1
                suspicious_ips[entry.ip] += 1

            if entry.path == LOGIN_PATH and entry.status_code == 401:
                threats["bruteForce"] += 1

            if entry.status_code == 403:
                threats["botActivity"] += 1

            if entry.status_code == 429:
                threats["rateLimited"] += 1

        return {
            "threats": threats,
            "suspiciousIPs": [{"ip": ip, "count": count} for ip, count in suspicious_ips.most_common(10)],
            "totalThreats": sum(threats.values()),
            "analyzedLogs": len(logs),
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def entries_to_dicts(entries: Iterable[LogEntry]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in entries]
