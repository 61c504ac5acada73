"""
Usage analytics store.

Application events (page views, tool uses, processed files, client errors,
session starts) are folded into one JSON document on disk. Each ingest is a
read-modify-write of the whole document, serialized by an asyncio lock, and
every save is atomic (temp file + rename) so a crash never leaves a torn file.

Failure policy:
- Missing or corrupted file on read: start from an empty structure
- Failed save: retried, then AnalyticsPersistenceError (HTTP 500)
"""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from doctools_server.logging_config import get_logger, log_persistence_failure

logger = get_logger("analytics")

RETENTION_DAYS = 30
TOP_TOOLS_LIMIT = 10
ROLLUP_DAYS = 7

KNOWN_EVENTS = ("pageview", "tool_use", "file_processed", "error", "session_start")


class AnalyticsPersistenceError(Exception):
    """The analytics file could not be read or written."""


class AnalyticsImportError(ValueError):
    """An imported analytics document is not usable."""


class DailyStat(BaseModel):
    """Counters for one calendar day."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    page_views: int = Field(default=0, alias="pageViews")
    tool_uses: int = Field(default=0, alias="toolUses")
    unique_visitors: int = Field(default=0, alias="uniqueVisitors")
    files_processed: int = Field(default=0, alias="filesProcessed")
    bytes_processed: int = Field(default=0, alias="bytesProcessed")
    errors: int = 0
    pages: Dict[str, int] = Field(default_factory=dict)
    tools: Dict[str, int] = Field(default_factory=dict)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class GlobalAnalytics(BaseModel):
    """The whole persisted analytics document."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    created: str = Field(default_factory=_utc_timestamp)
    daily_stats: Dict[str, DailyStat] = Field(default_factory=dict, alias="dailyStats")
    tool_usage: Dict[str, int] = Field(default_factory=dict, alias="toolUsage")
    page_views: Dict[str, int] = Field(default_factory=dict, alias="pageViews")
    sessions: List[Any] = Field(default_factory=list)
    total_page_views: int = Field(default=0, alias="totalPageViews")
    total_tool_uses: int = Field(default=0, alias="totalToolUses")
    unique_visitors: Set[str] = Field(default_factory=set, alias="uniqueVisitors")

    @field_validator("unique_visitors", mode="before")
    @classmethod
    def coerce_visitors(cls, v: Any) -> Any:
        """
        Accept the visitor set in any shape it has been stored in.

        A set that went through a naive JSON encoder comes back as {};
        treat that (and null) as empty.
        """
        if v is None or isinstance(v, dict):
            return set()
        return v

    @field_serializer("unique_visitors")
    def serialize_visitors(self, visitors: Set[str]) -> List[str]:
        return sorted(visitors)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AnalyticsStore:
    """Single owner of the analytics document."""

    def __init__(
        self,
        path: Path,
        retention_days: int = RETENTION_DAYS,
        today: Optional[Callable[[], date]] = None,
        save_attempts: int = 3,
        retry_delay: float = 0.05,
    ):
        """
        Initialize store

        Args:
            path: Location of analytics.json
            retention_days: Number of most recent dates kept by prune()
            today: Callable returning the current UTC date
            save_attempts: Write attempts before a save is reported failed
            retry_delay: Base backoff between write attempts, in seconds
        """
        self.path = Path(path)
        self.retention_days = retention_days
        self.save_attempts = max(1, save_attempts)
        self.retry_delay = retry_delay
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self._lock = asyncio.Lock()

    def today_key(self) -> str:
        return self._today().isoformat()

    async def _load(self) -> GlobalAnalytics:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return GlobalAnalytics()
        except OSError as e:
            raise AnalyticsPersistenceError(f"Cannot read {self.path}: {e}") from e

        try:
            return GlobalAnalytics.model_validate(json.loads(raw))
        except (ValueError, TypeError) as e:
            # json.JSONDecodeError and pydantic ValidationError are ValueErrors
            logger.warning(
                "analytics_file_corrupted",
                path=str(self.path),
                error=str(e)[:200],
            )
            return GlobalAnalytics()

    async def _save(self, analytics: GlobalAnalytics) -> None:
        payload = json.dumps(analytics.to_json(), indent=2)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        last_error: Optional[Exception] = None

        for attempt in range(1, self.save_attempts + 1):
            try:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(payload)
                await aiofiles.os.replace(tmp_path, self.path)
                return
            except OSError as e:
                last_error = e
                will_retry = attempt < self.save_attempts
                log_persistence_failure(
                    "analytics",
                    str(self.path),
                    e,
                    will_retry=will_retry,
                    attempt=attempt,
                )
                if will_retry:
                    await asyncio.sleep(self.retry_delay * attempt)

        raise AnalyticsPersistenceError(
            f"Failed to save analytics after {self.save_attempts} attempts: {last_error}"
        ) from last_error

    def _ensure_day(self, analytics: GlobalAnalytics, key: str) -> DailyStat:
        day = analytics.daily_stats.get(key)
        if day is None:
            day = DailyStat()
            analytics.daily_stats[key] = day
        return day

    async def ingest(
        self,
        event: str,
        data: Optional[Dict[str, Any]] = None,
        visitor_id: Optional[str] = None,
    ) -> bool:
        """
        Fold one event into today's counters and persist.

        Returns:
            True if the event name is known; unknown events are accepted but
            change nothing beyond creating today's record
        """
        data = data or {}
        async with self._lock:
            analytics = await self._load()
            key = self.today_key()
            day = self._ensure_day(analytics, key)
            known = True

            if event == "pageview":
                page = str(data.get("page") or "/")
                day.page_views += 1
                analytics.total_page_views += 1
                day.pages[page] = day.pages.get(page, 0) + 1

            elif event == "tool_use":
                tool = str(data.get("tool") or "unknown")
                day.tool_uses += 1
                analytics.total_tool_uses += 1
                day.tools[tool] = day.tools.get(tool, 0) + 1
                analytics.tool_usage[tool] = analytics.tool_usage.get(tool, 0) + 1

            elif event == "file_processed":
                day.files_processed += 1
                size = data.get("size") or 0
                if isinstance(size, (int, float)) and not isinstance(size, bool) and size > 0:
                    day.bytes_processed += int(size)

            elif event == "error":
                day.errors += 1

            elif event == "session_start":
                if visitor_id and visitor_id not in analytics.unique_visitors:
                    analytics.unique_visitors.add(visitor_id)
                    day.unique_visitors += 1

            else:
                known = False
                logger.debug("analytics_unknown_event", event_name=str(event)[:50])

            await self._save(analytics)
        return known

    async def snapshot(self) -> Dict[str, Any]:
        """Dashboard view: today, totals, 7-day rollup, top tools, all days."""
        async with self._lock:
            analytics = await self._load()

        today = self._today()
        today_stat = analytics.daily_stats.get(today.isoformat()) or DailyStat()

        last_7_days = {"pageViews": 0, "toolUses": 0, "files": 0}
        for offset in range(ROLLUP_DAYS):
            day = analytics.daily_stats.get((today - timedelta(days=offset)).isoformat())
            if day is None:
                continue
            last_7_days["pageViews"] += day.page_views
            last_7_days["toolUses"] += day.tool_uses
            last_7_days["files"] += day.files_processed

        # sorted() is stable, so equal counts keep first-use order
        ranked = sorted(analytics.tool_usage.items(), key=lambda item: item[1], reverse=True)
        top_tools = [{"tool": tool, "count": count} for tool, count in ranked[:TOP_TOOLS_LIMIT]]

        serialized = analytics.to_json()
        return {
            "today": today_stat.model_dump(mode="json", by_alias=True),
            "total": {
                "pageViews": analytics.total_page_views,
                "toolUses": analytics.total_tool_uses,
                "uniqueVisitors": len(analytics.unique_visitors),
            },
            "last7Days": last_7_days,
            "topTools": top_tools,
            "dailyStats": serialized["dailyStats"],
        }

    async def export_all(self) -> Dict[str, Any]:
        async with self._lock:
            analytics = await self._load()
        return analytics.to_json()

    async def import_all(self, data: Any) -> None:
        """
        Replace the stored document with an exported one.

        Raises:
            AnalyticsImportError: data is not a mapping with dailyStats, or
                does not validate
        """
        if not isinstance(data, dict) or data.get("dailyStats") is None:
            raise AnalyticsImportError("Invalid analytics data format")
        try:
            analytics = GlobalAnalytics.model_validate(data)
        except ValidationError as e:
            raise AnalyticsImportError("Invalid analytics data format") from e

        async with self._lock:
            await self._save(analytics)
        logger.info("analytics_imported", days=len(analytics.daily_stats))

    async def clear(self) -> None:
        async with self._lock:
            await self._save(GlobalAnalytics())
        logger.info("analytics_cleared")

    async def prune(self) -> int:
        """Keep only the retention_days most recent dates. Returns dates removed."""
        async with self._lock:
            analytics = await self._load()
            dates = sorted(analytics.daily_stats)
            expired = dates[:-self.retention_days] if len(dates) > self.retention_days else []
            if not expired:
                return 0
            for key in expired:
                del analytics.daily_stats[key]
            await self._save(analytics)
        logger.info("analytics_pruned", removed=len(expired), kept=self.retention_days)
        return len(expired)
