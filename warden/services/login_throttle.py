"""Per-IP login throttle with arithmetic CAPTCHA challenges.

An IP moves through three states:

* clean   - no live record (never failed, or the window elapsed)
* warming - failures below the CAPTCHA threshold
* gated   - failures at or above the threshold; a solved CAPTCHA and a fixed
            delay are required before the credential check runs

A successful login clears the record. The window elapsing is noticed lazily
on the next read, not by a timer.
"""

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock

from warden.config import get_settings
from warden.services.attempts import AttemptTracker, InMemoryAttemptTracker

logger = logging.getLogger("warden")


@dataclass(frozen=True)
class ThrottleStatus:
    requires_captcha: bool
    delay_seconds: int
    failed_attempts: int


@dataclass(frozen=True)
class CaptchaChallenge:
    captcha_id: str
    question: str
    expires_at: datetime


@dataclass(frozen=True)
class _StoredChallenge:
    answer: str
    expires_at: datetime


def mask_ip(ip: str) -> str:
    """Hide the host part of an address before it reaches the logs."""
    if "." in ip:
        parts = ip.split(".")
        if len(parts) >= 2:
            return f"{parts[0]}.{parts[1]}.xxx.xxx"
    return ip[:8] + "..."


def _math_question() -> tuple[str, int]:
    """A small +, - or * problem. Subtraction never goes negative."""
    operator = secrets.choice("+-*")
    if operator == "+":
        left, right = secrets.randbelow(20) + 1, secrets.randbelow(20) + 1
        return f"What is {left} + {right}?", left + right
    if operator == "-":
        left = secrets.randbelow(20) + 10
        right = secrets.randbelow(left)
        return f"What is {left} - {right}?", left - right
    left, right = secrets.randbelow(10) + 1, secrets.randbelow(10) + 1
    return f"What is {left} * {right}?", left * right


class LoginThrottle:
    """Tracks failed logins per IP and issues CAPTCHA challenges."""

    def __init__(
        self,
        captcha_threshold: int = 2,
        delay_seconds: int = 10,
        window_seconds: int = 15 * 60,
        captcha_expiry_seconds: int = 5 * 60,
        tracker: AttemptTracker | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.captcha_threshold = captcha_threshold
        self.delay_seconds = delay_seconds
        self.window = timedelta(seconds=window_seconds)
        self.captcha_expiry = timedelta(seconds=captcha_expiry_seconds)
        self._tracker = tracker or InMemoryAttemptTracker()
        self._challenges: dict[str, _StoredChallenge] = {}
        self._challenges_lock = Lock()
        self._now = now
        self._sleep = sleep

    def get_status(self, ip: str) -> ThrottleStatus:
        """Pure read of the current state for ``ip``."""
        record = self._tracker.get(ip, self._now())
        if record is None:
            return ThrottleStatus(requires_captcha=False, delay_seconds=0, failed_attempts=0)
        requires_captcha = record.count >= self.captcha_threshold
        return ThrottleStatus(
            requires_captcha=requires_captcha,
            delay_seconds=self.delay_seconds if requires_captcha else 0,
            failed_attempts=record.count,
        )

    def record_failed_attempt(self, ip: str) -> ThrottleStatus:
        record = self._tracker.record(ip, self._now(), self.window)
        logger.info("Failed login attempt recorded for IP %s: %d attempts", mask_ip(ip), record.count)
        return self.get_status(ip)

    def clear_attempts(self, ip: str) -> None:
        if self._tracker.clear(ip):
            logger.debug("Cleared login attempts for IP %s", mask_ip(ip))

    def generate_captcha(self) -> CaptchaChallenge:
        question, answer = _math_question()
        captcha_id = secrets.token_hex(16)
        expires_at = self._now() + self.captcha_expiry
        with self._challenges_lock:
            self._challenges[captcha_id] = _StoredChallenge(answer=str(answer), expires_at=expires_at)
        return CaptchaChallenge(captcha_id=captcha_id, question=question, expires_at=expires_at)

    def verify_captcha(self, captcha_id: str, answer: str) -> bool:
        """Check an answer. The challenge is consumed whatever the outcome."""
        with self._challenges_lock:
            challenge = self._challenges.pop(captcha_id, None)
        if challenge is None:
            logger.warning("CAPTCHA verification failed: unknown challenge")
            return False
        if self._now() >= challenge.expires_at:
            logger.warning("CAPTCHA verification failed: challenge expired")
            return False
        if challenge.answer != answer.strip():
            logger.warning("CAPTCHA verification failed: wrong answer")
            return False
        return True

    async def apply_delay(self, ip: str) -> None:
        """Wait out the configured delay while ``ip`` is gated, without holding a worker thread."""
        status = self.get_status(ip)
        if status.delay_seconds > 0:
            logger.info("Applying %ds login delay for IP %s", status.delay_seconds, mask_ip(ip))
            await self._sleep(status.delay_seconds)

    def cleanup(self) -> tuple[int, int]:
        """Purge expired attempt records and challenges."""
        now = self._now()
        attempts = self._tracker.cleanup(now)
        with self._challenges_lock:
            expired = [key for key, challenge in self._challenges.items() if now >= challenge.expires_at]
            for key in expired:
                del self._challenges[key]
        if attempts or expired:
            logger.debug("Throttle cleanup: %d attempt records, %d CAPTCHAs", attempts, len(expired))
        return attempts, len(expired)

    @property
    def pending_challenges(self) -> int:
        with self._challenges_lock:
            return len(self._challenges)


_login_throttle: LoginThrottle | None = None


def get_login_throttle() -> LoginThrottle:
    """Get singleton login throttle configured from settings."""
    global _login_throttle
    if _login_throttle is None:
        settings = get_settings()
        _login_throttle = LoginThrottle(
            captcha_threshold=settings.CAPTCHA_THRESHOLD,
            delay_seconds=settings.CAPTCHA_DELAY_SECONDS,
            window_seconds=settings.LOGIN_ATTEMPT_WINDOW,
            captcha_expiry_seconds=settings.CAPTCHA_EXPIRY,
        )
    return _login_throttle
