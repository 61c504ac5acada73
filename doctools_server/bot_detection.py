"""
Bot detection for inbound requests.

Three pieces:
- BotSignatureClassifier: stateless user-agent/header scoring per request
- HumanVerifier: server-side mirror of the browser humanness score, used
  only to decide whether a sensitive action needs a challenge
- ChallengeStore: single-use arithmetic challenges for that case
"""

import random
import re
import secrets
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from doctools_server.logging_config import get_logger
from doctools_server.rate_limiting import Clock, now_ms

logger = get_logger("bot_detection")

# Search and social crawlers. A match is authoritative.
KNOWN_GOOD_BOTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"googlebot",
        r"bingbot",
        r"slurp",  # Yahoo
        r"duckduckbot",
        r"baiduspider",
        r"yandexbot",
        r"facebookexternalhit",
        r"twitterbot",
        r"linkedinbot",
    )
]

# Scripting clients, headless browsers and generic crawler tokens
KNOWN_BAD_BOTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"bot",
        r"spider",
        r"crawl",
        r"scrape",
        r"curl",
        r"wget",
        r"python-requests",
        r"java/",
        r"perl",
        r"ruby",
        r"phantomjs",
        r"headless",
        r"selenium",
        r"puppeteer",
    )
]

# Proxy / host override headers
SUSPICIOUS_HEADERS = ("x-forwarded-host", "x-original-url", "x-rewrite-url")

BROWSER_SIGNATURE = re.compile(r"mozilla|chrome|safari|firefox|edge|opera", re.IGNORECASE)

MIN_USER_AGENT_LENGTH = 20
SUSPICION_WARNING_SCORE = 5


class BotType(str, Enum):
    """Bot classification"""
    GOOD = "good"
    BAD = "bad"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RequestMetadata:
    """What the trust pipeline knows about a request before it is handled."""
    ip: str
    method: str
    path: str
    user_agent: str = ""
    referer: str = ""
    query: Dict[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @classmethod
    def from_request(cls, request, client_ip: str) -> "RequestMetadata":
        """Build metadata from a Starlette request."""
        headers = {key.lower(): value for key, value in request.headers.items()}
        return cls(
            ip=client_ip,
            method=request.method,
            path=request.url.path,
            user_agent=headers.get("user-agent", ""),
            referer=headers.get("referer", ""),
            query=dict(request.query_params),
            headers=headers,
        )


@dataclass
class BotVerdict:
    """Classification result for one request"""
    is_bot: bool
    bot_type: BotType
    suspicious_score: int
    name: Optional[str] = None
    user_agent: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "isBot": self.is_bot,
            "botType": self.bot_type.value,
            "suspiciousScore": self.suspicious_score,
            "userAgent": self.user_agent,
        }
        if self.name:
            data["name"] = self.name
        return data


class BotSignatureClassifier:
    """
    Heuristic scorer over request metadata.

    Pure apart from the optional on_bad_bot callback, which fires once per
    request classified as a bad bot.
    """

    def __init__(self, on_bad_bot: Optional[Callable[[RequestMetadata, BotVerdict], None]] = None):
        self.on_bad_bot = on_bad_bot

    def classify(self, meta: RequestMetadata) -> BotVerdict:
        user_agent = meta.user_agent or ""
        score = 0
        is_bot = False
        bot_type = BotType.UNKNOWN

        if not user_agent:
            score += 3

        for pattern in KNOWN_GOOD_BOTS:
            match = pattern.search(user_agent)
            if match:
                return BotVerdict(
                    is_bot=True,
                    bot_type=BotType.GOOD,
                    suspicious_score=0,
                    name=match.group(0),
                    user_agent=user_agent[:100],
                )

        for pattern in KNOWN_BAD_BOTS:
            if pattern.search(user_agent):
                is_bot = True
                bot_type = BotType.BAD
                score += 5
                break

        if not meta.referer and not meta.path.startswith("/api/"):
            score += 1

        for header in SUSPICIOUS_HEADERS:
            if meta.header(header):
                score += 2

        if len(user_agent) < MIN_USER_AGENT_LENGTH:
            score += 2

        if user_agent and not BROWSER_SIGNATURE.search(user_agent):
            score += 2

        verdict = BotVerdict(
            is_bot=is_bot,
            bot_type=bot_type,
            suspicious_score=score,
            user_agent=user_agent[:100],
        )

        if bot_type is BotType.BAD and self.on_bad_bot is not None:
            self.on_bad_bot(meta, verdict)

        return verdict


# Weights of the browser-side humanness signals (sum to 100)
HUMANNESS_WEIGHTS = {
    "mouse_movement": 20,
    "keyboard_activity": 15,
    "scroll_activity": 15,
    "touch_activity": 20,
    "time_on_page": 20,
    "session_valid": 10,
}

HUMAN_THRESHOLD = 35


@dataclass
class HumannessAssessment:
    score: int
    confidence: str
    is_human: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "confidence": self.confidence, "isHuman": self.is_human}


class HumanVerifier:
    """
    Scores browser interaction signals the same way the client does.

    Advisory only: a low score never rejects a request by itself, it only
    asks for a challenge before a sensitive bulk action.
    """

    def __init__(self, threshold: int = HUMAN_THRESHOLD):
        self.threshold = threshold

    @staticmethod
    def score(signals: Mapping[str, bool]) -> int:
        return sum(weight for name, weight in HUMANNESS_WEIGHTS.items() if signals.get(name))

    @staticmethod
    def confidence(score: int) -> str:
        if score >= 70:
            return "high"
        if score >= 40:
            return "medium"
        return "low"

    def is_human(self, score: int) -> bool:
        return score >= self.threshold

    def assess(self, signals: Mapping[str, bool]) -> HumannessAssessment:
        score = self.score(signals)
        return HumannessAssessment(
            score=score,
            confidence=self.confidence(score),
            is_human=self.is_human(score),
        )


@dataclass
class Challenge:
    """An arithmetic question awaiting an answer"""
    challenge_id: str
    question: str
    answer: int
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        # The answer never leaves the server
        return {"challengeId": self.challenge_id, "question": self.question}


class ChallengeStore:
    """Issues and verifies single-use arithmetic challenges."""

    def __init__(
        self,
        ttl_ms: int = 300_000,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.ttl_ms = ttl_ms
        self._clock = clock or now_ms
        self._rng = rng or random.SystemRandom()
        self._pending: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def issue(self) -> Challenge:
        a = self._rng.randint(1, 10)
        b = self._rng.randint(1, 10)
        op = self._rng.choice(["+", "-"])
        answer = a + b if op == "+" else a - b

        challenge = Challenge(
            challenge_id=secrets.token_urlsafe(16),
            question=f"What is {a} {op} {b}?",
            answer=answer,
            expires_at=self._clock() + self.ttl_ms,
        )
        with self._lock:
            self._pending[challenge.challenge_id] = challenge
        return challenge

    def verify(self, challenge_id: str, answer: Any) -> bool:
        """Check an answer. A challenge can be answered once, right or wrong."""
        with self._lock:
            challenge = self._pending.pop(challenge_id, None)
            now = self._clock()

        if challenge is None or challenge.expires_at <= now:
            logger.info("captcha_failed", challenge_id=challenge_id, reason="unknown_or_expired")
            return False

        try:
            correct = int(answer) == challenge.answer
        except (TypeError, ValueError):
            correct = False

        if not correct:
            logger.info("captcha_failed", challenge_id=challenge_id, reason="wrong_answer")
        return correct

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [cid for cid, c in self._pending.items() if c.expires_at <= now]
            for cid in expired:
                del self._pending[cid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._pending)
