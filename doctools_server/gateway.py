"""
Security gateway: the ordered admission decision for every inbound request.

Order (first failing check wins):
1. IP on the block list          -> 403
2. Burst from one IP             -> IP gets blocked, 429
3. Global per-IP window limit    -> 429 with retryAfter
4. Known automation user agent   -> 403
5. Otherwise the request proceeds and is audited when it completes

Bulk actions triggered from the browser get a second, finer check through
check_action(): per-IP action limit, honeypot, and a humanness score that
may call for an arithmetic challenge.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from doctools_server.bot_detection import (
    SUSPICION_WARNING_SCORE,
    BotSignatureClassifier,
    BotType,
    BotVerdict,
    Challenge,
    ChallengeStore,
    HumanVerifier,
    RequestMetadata,
)
from doctools_server.ip_blocklist import IPBlockRegistry, RapidRequestDetector
from doctools_server.logging_config import get_logger, log_bad_bot, log_request_rejected
from doctools_server.rate_limiting import RateLimitResult, SlidingWindowLimiter
from doctools_server.request_log import LogEntry, RequestAuditLog

logger = get_logger("gateway")

# Paths served without admission checks
EXEMPT_PATHS = frozenset({"/api/health", "/api/ready"})

SENSITIVE_ACTIONS = frozenset({"bulk_process", "export_all", "delete_all"})

HONEYPOT_RETRY_AFTER = 300

# More than this many 403/429 among the last 20 requests flips the status
WARNING_REJECTIONS = 5
WARNING_SAMPLE = 20


class RejectionReason(str, Enum):
    IP_BLOCKED = "ip_blocked"
    RAPID_REQUESTS = "rapid_requests"
    RATE_LIMITED = "rate_limited"
    BAD_BOT = "bad_bot"


@dataclass
class RejectionDecision:
    """Why a request was turned away and how the client should back off."""
    status_code: int
    reason: RejectionReason
    message: str
    retry_after: Optional[int] = None

    def to_response_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "reason": self.reason.value,
        }
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body

    def headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


@dataclass
class GatewayDecision:
    """Result of evaluate(): either a rejection or the classifier verdict."""
    rejection: Optional[RejectionDecision] = None
    verdict: Optional[BotVerdict] = None
    rate: Optional[RateLimitResult] = None

    @property
    def allowed(self) -> bool:
        return self.rejection is None


@dataclass
class ActionDecision:
    """Outcome of a bulk-action check."""
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    requires_captcha: bool = False
    challenge: Optional[Challenge] = None
    remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            data["reason"] = self.reason
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        if self.requires_captcha:
            data["requiresCaptcha"] = True
        if self.challenge is not None:
            data["challenge"] = self.challenge.to_dict()
        if self.remaining is not None:
            data["remaining"] = self.remaining
        return data


def is_exempt(path: str) -> bool:
    return path in EXEMPT_PATHS


class SecurityGateway:
    """
    Composes the block list, burst detector, limiter and bot classifier into
    one decision, and hands completed requests to the audit log.
    """

    def __init__(
        self,
        registry: IPBlockRegistry,
        rapid_detector: RapidRequestDetector,
        limiter: SlidingWindowLimiter,
        classifier: BotSignatureClassifier,
        audit_log: RequestAuditLog,
        action_limiter: Optional[SlidingWindowLimiter] = None,
        verifier: Optional[HumanVerifier] = None,
        challenges: Optional[ChallengeStore] = None,
        block_duration_ms: Optional[int] = None,
    ):
        self.registry = registry
        self.rapid_detector = rapid_detector
        self.limiter = limiter
        self.classifier = classifier
        self.audit_log = audit_log
        self.action_limiter = action_limiter
        self.verifier = verifier or HumanVerifier()
        self.challenges = challenges or ChallengeStore()
        self.block_duration_ms = (
            block_duration_ms if block_duration_ms is not None else registry.default_duration_ms
        )

        if self.classifier.on_bad_bot is None:
            self.classifier.on_bad_bot = self._on_bad_bot

    @staticmethod
    def _on_bad_bot(meta: RequestMetadata, verdict: BotVerdict) -> None:
        log_bad_bot(meta.ip, meta.user_agent, verdict.suspicious_score, path=meta.path)

    def evaluate(self, meta: RequestMetadata) -> GatewayDecision:
        """Run the admission checks for one request in order."""
        ip = meta.ip

        if self.registry.is_blocked(ip):
            return self._reject(
                meta,
                RejectionDecision(
                    status_code=403,
                    reason=RejectionReason.IP_BLOCKED,
                    message="Access temporarily blocked",
                    retry_after=self.registry.retry_after_seconds(ip),
                ),
            )

        if self.rapid_detector.hit(ip):
            logger.warning(
                "rapid_requests_detected",
                client_ip=ip,
                count=self.rapid_detector.count(ip),
                window_ms=self.rapid_detector.window_ms,
            )
            self.registry.block(ip, self.block_duration_ms)
            return self._reject(
                meta,
                RejectionDecision(
                    status_code=429,
                    reason=RejectionReason.RAPID_REQUESTS,
                    message="Too many requests. Please slow down.",
                    retry_after=math.ceil(self.block_duration_ms / 1000),
                ),
            )

        rate = self.limiter.check(ip)
        if not rate.allowed:
            return self._reject(
                meta,
                RejectionDecision(
                    status_code=429,
                    reason=RejectionReason.RATE_LIMITED,
                    message="Too many requests, please try again later.",
                    retry_after=rate.retry_after_seconds,
                ),
                rate=rate,
            )

        verdict = self.classifier.classify(meta)
        if verdict.is_bot and verdict.bot_type is BotType.BAD:
            return self._reject(
                meta,
                RejectionDecision(
                    status_code=403,
                    reason=RejectionReason.BAD_BOT,
                    message="Automated access not allowed",
                ),
                rate=rate,
                verdict=verdict,
            )

        if verdict.suspicious_score > SUSPICION_WARNING_SCORE:
            logger.warning(
                "suspicious_client",
                client_ip=ip,
                path=meta.path,
                suspicious_score=verdict.suspicious_score,
            )

        return GatewayDecision(verdict=verdict, rate=rate)

    def _reject(
        self,
        meta: RequestMetadata,
        rejection: RejectionDecision,
        rate: Optional[RateLimitResult] = None,
        verdict: Optional[BotVerdict] = None,
    ) -> GatewayDecision:
        log_request_rejected(
            client_ip=meta.ip,
            reason=rejection.reason.value,
            status_code=rejection.status_code,
            path=meta.path,
        )
        return GatewayDecision(rejection=rejection, verdict=verdict, rate=rate)

    def complete(
        self,
        meta: RequestMetadata,
        request_id: str,
        status_code: int,
        response_time_ms: float,
        content_length: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> LogEntry:
        """Audit a finished request, allowed or rejected."""
        entry = LogEntry(
            timestamp=timestamp or self.audit_log.now(),
            method=meta.method,
            path=meta.path,
            query=dict(meta.query),
            ip=meta.ip,
            user_agent=meta.user_agent or "unknown",
            referer=meta.referer or None,
            request_id=request_id,
            status_code=status_code,
            response_time_ms=int(round(response_time_ms)),
            content_length=content_length,
        )
        self.audit_log.record(entry)
        return entry

    def check_action(
        self,
        action_type: str,
        ip: str,
        honeypot: Optional[str] = None,
        humanness_score: Optional[int] = None,
        signals: Optional[Mapping[str, bool]] = None,
        challenge_id: Optional[str] = None,
        challenge_answer: Any = None,
    ) -> ActionDecision:
        """
        Decide whether a browser-initiated action may run.

        A low humanness score on a sensitive action is answered with a fresh
        challenge; resubmitting with the challenge id and a correct answer
        lets the action through.
        """
        remaining = None
        if self.action_limiter is not None:
            rate = self.action_limiter.check(f"action:{ip}")
            if not rate.allowed:
                reason = "blocked" if rate.reason == "blocked" else "rate_limited"
                return ActionDecision(allowed=False, reason=reason, retry_after=rate.retry_after_seconds)
            remaining = rate.remaining

        if honeypot and honeypot.strip():
            logger.warning("honeypot_triggered", client_ip=ip, action=action_type)
            return ActionDecision(allowed=False, reason="bot_detected", retry_after=HONEYPOT_RETRY_AFTER)

        if action_type in SENSITIVE_ACTIONS:
            score = humanness_score if humanness_score is not None else self.verifier.score(signals or {})
            if not self.verifier.is_human(score):
                if challenge_id and self.challenges.verify(challenge_id, challenge_answer):
                    logger.info("challenge_passed", client_ip=ip, action=action_type)
                    return ActionDecision(allowed=True, remaining=remaining)
                logger.info("verification_required", client_ip=ip, action=action_type, score=score)
                return ActionDecision(
                    allowed=False,
                    reason="verification_required",
                    requires_captcha=True,
                    challenge=self.challenges.issue(),
                )

        return ActionDecision(allowed=True, remaining=remaining)

    def security_status(self) -> Dict[str, Any]:
        """Summary for the admin security dashboard."""
        stats = self.audit_log.stats()
        rejections = self.audit_log.count_rejections(WARNING_SAMPLE)
        blocked = self.registry.list()
        return {
            "status": "warning" if rejections > WARNING_REJECTIONS else "secure",
            "blockedIPs": len(blocked),
            "blockedIPList": blocked,
            "recentRequests": stats.last_hour,
            "uniqueVisitors": stats.unique_visitors,
            "suspiciousRequests": rejections,
            "avgResponseTime": stats.avg_response_time,
            "statusCodes": stats.to_dict()["statusCodes"],
        }

    def sweep(self) -> Dict[str, int]:
        """Drop expired blocks, idle burst counters, idle windows and stale challenges."""
        swept = {
            "blocks": self.registry.sweep(),
            "rapid": self.rapid_detector.sweep(),
            "windows": self.limiter.sweep(),
            "challenges": self.challenges.sweep(),
        }
        if self.action_limiter is not None:
            swept["actionWindows"] = self.action_limiter.sweep()
        return swept
