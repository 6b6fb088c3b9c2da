"""
Rate Limiting and Brute Force Protection
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from werkzeug.wrappers import Request

from cleanup import PeriodicSweeper
from config import SecurityConfig
from models import (
    BruteForceCheck,
    BruteForceEntry,
    BruteForceResult,
    RateLimitEntry,
    RateLimitResult,
)
from utils import extract_client_info, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = timedelta(minutes=5)


class RateLimiter:
    """
    Fixed-window request counter keyed by (client IP, path) or a caller identifier.

    Once a key exceeds `max_requests` inside its window it is blocked for
    `block_duration`, independent of when the window itself would have reset.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window: timedelta,
        block_duration: timedelta,
        skip_successful_requests: bool = False,
        clock: Callable[[], datetime] = utc_now,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window = window
        self.block_duration = block_duration
        self.skip_successful_requests = skip_successful_requests
        self._clock = clock
        self._store: Dict[str, RateLimitEntry] = {}
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper(f"rate-limit-{name}", sweep_interval, self.cleanup)

    def start(self):
        self._sweeper.start()

    def shutdown(self):
        self._sweeper.stop()

    def _get_key(self, request: Request, identifier: Optional[str] = None) -> str:
        if identifier:
            return identifier
        ip = extract_client_info(request).ip_address
        return f"{ip}:{request.path}"

    def check(self, request: Request, identifier: Optional[str] = None) -> RateLimitResult:
        """
        Count one request against its key.

        Returns:
            RateLimitResult with `allowed` False while the key is blocked or on
            the request that pushes the count past the limit.
        """
        key = self._get_key(request, identifier)

        with self._lock:
            now = self._clock()
            entry = self._store.get(key)

            if entry is not None and entry.blocked:
                if entry.block_until and entry.block_until > now:
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        reset_time=entry.reset_time,
                        blocked=True,
                        block_until=entry.block_until,
                    )
                # Block period expired - start over
                entry = None

            if entry is None or now >= entry.reset_time:
                entry = RateLimitEntry(count=0, reset_time=now + self.window)

            entry.count += 1

            if entry.count > self.max_requests:
                entry.blocked = True
                entry.block_until = now + self.block_duration
                self._store[key] = entry
                logger.warning("Rate limit %s exceeded for %s, blocked until %s",
                               self.name, key, entry.block_until.isoformat())
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=entry.reset_time,
                    blocked=True,
                    block_until=entry.block_until,
                )

            self._store[key] = entry
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - entry.count,
                reset_time=entry.reset_time,
                blocked=False,
            )

    def record_success(self, request: Request, identifier: Optional[str] = None):
        """Clear the key after a successful request when configured to skip successes"""
        if self.skip_successful_requests:
            self.reset(request, identifier)

    def reset(self, request: Request, identifier: Optional[str] = None):
        """Reset rate limit (e.g., after successful login)"""
        key = self._get_key(request, identifier)
        with self._lock:
            self._store.pop(key, None)

    def cleanup(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [
                key for key, entry in self._store.items()
                if entry.reset_time <= now
                and (entry.block_until is None or entry.block_until <= now)
            ]
            for key in stale:
                del self._store[key]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


# ==================== PRESETS ====================

def build_login_limiter(config: SecurityConfig, clock: Callable[[], datetime] = utc_now) -> RateLimiter:
    """5 attempts per 15 minutes, 30 minute block"""
    return RateLimiter(
        "login",
        max_requests=config.LOGIN_RATE_LIMIT,
        window=config.LOGIN_RATE_WINDOW,
        block_duration=config.LOGIN_RATE_BLOCK,
        skip_successful_requests=True,
        clock=clock,
        sweep_interval=config.SWEEP_INTERVAL,
    )


def build_api_limiter(config: SecurityConfig, clock: Callable[[], datetime] = utc_now) -> RateLimiter:
    """100 requests per minute, 5 minute block"""
    return RateLimiter(
        "api",
        max_requests=config.API_RATE_LIMIT,
        window=config.API_RATE_WINDOW,
        block_duration=config.API_RATE_BLOCK,
        clock=clock,
        sweep_interval=config.SWEEP_INTERVAL,
    )


def build_strict_limiter(config: SecurityConfig, clock: Callable[[], datetime] = utc_now) -> RateLimiter:
    """10 requests per minute, 10 minute block"""
    return RateLimiter(
        "strict",
        max_requests=config.STRICT_RATE_LIMIT,
        window=config.STRICT_RATE_WINDOW,
        block_duration=config.STRICT_RATE_BLOCK,
        clock=clock,
        sweep_interval=config.SWEEP_INTERVAL,
    )


# ==================== BRUTE FORCE ====================

class BruteForceTracker:
    """
    Failed-login counter keyed by a semantic identity (normalized email, IP).

    Unlike RateLimiter, a single successful attempt deletes all history for
    the identifier.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        block_duration: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
    ):
        self.max_attempts = max_attempts
        self.window = window
        self.block_duration = block_duration
        self._clock = clock
        self._attempts: Dict[str, BruteForceEntry] = {}
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper("brute-force", sweep_interval, self.cleanup)

    @classmethod
    def from_config(cls, config: SecurityConfig, clock: Callable[[], datetime] = utc_now):
        return cls(
            max_attempts=config.MAX_LOGIN_ATTEMPTS,
            window=config.LOGIN_ATTEMPT_WINDOW,
            block_duration=config.ACCOUNT_LOCKOUT_DURATION,
            clock=clock,
            sweep_interval=config.SWEEP_INTERVAL,
        )

    def start(self):
        self._sweeper.start()

    def shutdown(self):
        self._sweeper.stop()

    def _is_active_block(self, entry: BruteForceEntry, now: datetime) -> bool:
        return entry.blocked and entry.block_until is not None and entry.block_until > now

    def _is_stale(self, entry: BruteForceEntry, now: datetime) -> bool:
        return entry.blocked or now - entry.last_attempt > self.window

    def check_attempt(self, identifier: str) -> BruteForceCheck:
        """Read-only precheck before accepting a login attempt"""
        with self._lock:
            now = self._clock()
            entry = self._attempts.get(identifier)

            if entry is None:
                return BruteForceCheck(allowed=True, attempts_remaining=self.max_attempts)

            if self._is_active_block(entry, now):
                return BruteForceCheck(
                    allowed=False, attempts_remaining=0, block_until=entry.block_until
                )

            if self._is_stale(entry, now):
                return BruteForceCheck(allowed=True, attempts_remaining=self.max_attempts)

            return BruteForceCheck(
                allowed=True, attempts_remaining=max(0, self.max_attempts - entry.count)
            )

    def record_failed_attempt(self, identifier: str) -> BruteForceResult:
        with self._lock:
            now = self._clock()
            entry = self._attempts.get(identifier)

            if entry is not None and self._is_active_block(entry, now):
                entry.count += 1
                entry.last_attempt = now
                return BruteForceResult(
                    blocked=True, attempts_remaining=0, block_until=entry.block_until
                )

            if entry is None or self._is_stale(entry, now):
                entry = BruteForceEntry(count=0, last_attempt=now)

            entry.count += 1
            entry.last_attempt = now

            if entry.count >= self.max_attempts:
                entry.blocked = True
                entry.block_until = now + self.block_duration
                logger.warning("Brute force lockout for %s until %s",
                               identifier, entry.block_until.isoformat())

            self._attempts[identifier] = entry
            return BruteForceResult(
                blocked=entry.blocked,
                attempts_remaining=max(0, self.max_attempts - entry.count),
                block_until=entry.block_until,
            )

    def record_successful_attempt(self, identifier: str):
        with self._lock:
            self._attempts.pop(identifier, None)

    def is_blocked(self, identifier: str) -> bool:
        with self._lock:
            entry = self._attempts.get(identifier)
            if entry is None or not entry.blocked:
                return False

            now = self._clock()
            if entry.block_until is None or entry.block_until <= now:
                # Block expired
                entry.blocked = False
                entry.block_until = None
                entry.count = 0
                return False
            return True

    def cleanup(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [
                key for key, entry in self._attempts.items()
                if not self._is_active_block(entry, now)
                and now - entry.last_attempt > self.window
            ]
            for key in stale:
                del self._attempts[key]
            return len(stale)
