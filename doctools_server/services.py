"""
Service container for the request-trust pipeline.

All stateful components are built once at startup by build_services() and
attached to app.state, so tests can build an isolated set with their own
directories and clocks.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional, Set

from fastapi import Request

from doctools_server.analytics import AnalyticsStore
from doctools_server.auth import AdminAuthManager
from doctools_server.bot_detection import BotSignatureClassifier, ChallengeStore, HumanVerifier
from doctools_server.config import Settings
from doctools_server.gateway import SecurityGateway
from doctools_server.ip_blocklist import RAPID_IDLE_MS, IPBlockRegistry, RapidRequestDetector
from doctools_server.logging_config import get_logger, log_exception
from doctools_server.rate_limiting import Clock, SlidingWindowLimiter, now_ms
from doctools_server.request_log import RequestAuditLog

logger = get_logger("services")


@dataclass
class TrustServices:
    """Everything the HTTP layer needs, built once per app."""
    settings: Settings
    registry: IPBlockRegistry
    rapid_detector: RapidRequestDetector
    limiter: SlidingWindowLimiter
    action_limiter: SlidingWindowLimiter
    classifier: BotSignatureClassifier
    challenges: ChallengeStore
    audit_log: RequestAuditLog
    analytics: AnalyticsStore
    gateway: SecurityGateway
    auth: AdminAuthManager


def build_services(
    settings: Settings,
    clock: Optional[Clock] = None,
    today: Optional[Callable[[], date]] = None,
) -> TrustServices:
    """
    Create directories and wire every component.

    Raises:
        OSError: data or log directory cannot be created (fatal at startup)
    """
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.log_dir.mkdir(parents=True, exist_ok=True)

    clock = clock or now_ms

    def utcnow() -> datetime:
        return datetime.fromtimestamp(clock() / 1000, tz=timezone.utc)

    today = today or (lambda: utcnow().date())

    registry = IPBlockRegistry(default_duration_ms=settings.block_duration_ms, clock=clock)
    rapid_detector = RapidRequestDetector(
        threshold=settings.rapid_threshold,
        window_ms=settings.rapid_window_ms,
        idle_ms=RAPID_IDLE_MS,
        clock=clock,
    )
    limiter = SlidingWindowLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
        block_duration_ms=settings.block_duration_ms,
        clock=clock,
        fail_open=settings.rate_limit_fail_open,
        name="global",
    )
    action_limiter = SlidingWindowLimiter(
        max_requests=settings.client_rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
        block_duration_ms=settings.block_duration_ms,
        clock=clock,
        fail_open=settings.rate_limit_fail_open,
        name="action",
    )
    classifier = BotSignatureClassifier()
    challenges = ChallengeStore(ttl_ms=settings.challenge_ttl_ms, clock=clock)
    audit_log = RequestAuditLog(
        log_file=settings.request_log_file,
        capacity=settings.request_log_capacity,
        clock=utcnow,
    )
    analytics = AnalyticsStore(
        path=settings.analytics_file,
        retention_days=settings.analytics_retention_days,
        today=today,
        save_attempts=settings.analytics_save_attempts,
    )
    gateway = SecurityGateway(
        registry=registry,
        rapid_detector=rapid_detector,
        limiter=limiter,
        classifier=classifier,
        audit_log=audit_log,
        action_limiter=action_limiter,
        verifier=HumanVerifier(threshold=settings.humanness_threshold),
        challenges=challenges,
        block_duration_ms=settings.block_duration_ms,
    )
    auth = AdminAuthManager(
        credential_file=settings.admin_file,
        secret_key=settings.jwt_secret,
        default_password=settings.admin_password,
        session_ttl_seconds=settings.session_ttl_seconds,
        max_attempts=settings.max_login_attempts,
        lockout_minutes=settings.lockout_minutes,
        bcrypt_rounds=settings.bcrypt_rounds,
    )

    logger.info(
        "services_built",
        data_dir=str(settings.data_dir),
        log_dir=str(settings.log_dir),
        rate_limit_max=settings.rate_limit_max_requests,
        rate_limit_window_ms=settings.rate_limit_window_ms,
    )

    return TrustServices(
        settings=settings,
        registry=registry,
        rapid_detector=rapid_detector,
        limiter=limiter,
        action_limiter=action_limiter,
        classifier=classifier,
        challenges=challenges,
        audit_log=audit_log,
        analytics=analytics,
        gateway=gateway,
        auth=auth,
    )


def get_services(request: Request) -> TrustServices:
    """FastAPI dependency returning the app's service container."""
    return request.app.state.services


class PeriodicSweeper:
    """
    Background maintenance loops.

    - gateway sweep (expired blocks, idle counters, stale challenges)
    - analytics retention
    """

    def __init__(
        self,
        services: TrustServices,
        block_interval: float = 60.0,
        retention_interval: float = 86400.0,
    ):
        self.services = services
        self.block_interval = block_interval
        self.retention_interval = retention_interval
        self._background_tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        self._spawn(self._run_every(self.block_interval, "gateway", self.services.gateway.sweep))
        self._spawn(self._run_every(self.retention_interval, "analytics", self.services.analytics.prune))
        logger.info(
            "sweeper_started",
            block_interval=self.block_interval,
            retention_interval=self.retention_interval,
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def stop(self) -> None:
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sweeper_stopped")

    @property
    def running(self) -> bool:
        return bool(self._background_tasks)

    async def _run_every(self, interval: float, name: str, func: Callable) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = func()
                if inspect.isawaitable(result):
                    result = await result
                logger.debug("sweep_completed", sweep=name, result=result)
            except Exception as e:
                # A failed sweep must not end the loop
                log_exception(e, context={"sweep": name})
