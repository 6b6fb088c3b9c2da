"""
Two-Factor Code Module

Issues short numeric one-time codes delivered out of band (email/SMS):
- At most one active code per user; a new code replaces the old one
- Bounded verification attempts, constant-time comparison
- Resend cooldown tracked separately from the code's own expiry
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from cleanup import PeriodicSweeper
from config import SecurityConfig
from crypto import constant_time_equals, generate_secure_token
from errors import (
    CodeExhaustedError,
    CodeExpiredError,
    CodeMismatchError,
    CodeNotFoundError,
    TwoFactorError,
)
from models import CodeIssueResult, CodeStatus, CodeVerifyResult, TwoFactorCode
from utils import utc_now

logger = logging.getLogger(__name__)


class TwoFactorManager:
    """
    Per-user state machine: NONE -> ISSUED -> VERIFIED | EXPIRED | EXHAUSTED.

    A verified code is kept until it expires or is invalidated so callers can
    re-check the verification inside its validity window.
    """

    def __init__(
        self,
        code_length: int = 6,
        expiration: timedelta = timedelta(minutes=10),
        max_attempts: int = 3,
        resend_cooldown: timedelta = timedelta(minutes=1),
        clock: Callable[[], datetime] = utc_now,
        sweep_interval: timedelta = timedelta(minutes=5),
    ):
        self.code_length = code_length
        self.expiration = expiration
        self.max_attempts = max_attempts
        self.resend_cooldown = resend_cooldown
        self._clock = clock
        self._codes: Dict[str, TwoFactorCode] = {}
        self._resend_cooldowns: Dict[str, datetime] = {}
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper("two-factor", sweep_interval, self.cleanup)

    @classmethod
    def from_config(cls, config: SecurityConfig, clock: Callable[[], datetime] = utc_now):
        return cls(
            code_length=config.TWO_FACTOR_CODE_LENGTH,
            expiration=config.TWO_FACTOR_CODE_EXPIRES,
            max_attempts=config.TWO_FACTOR_MAX_ATTEMPTS,
            resend_cooldown=config.TWO_FACTOR_RESEND_COOLDOWN,
            clock=clock,
            sweep_interval=config.SWEEP_INTERVAL,
        )

    def start(self):
        self._sweeper.start()

    def shutdown(self):
        self._sweeper.stop()

    def generate_code(self, user_id: str, email: str) -> CodeIssueResult:
        with self._lock:
            now = self._clock()

            cooldown_end = self._resend_cooldowns.get(user_id)
            if cooldown_end and now < cooldown_end:
                return CodeIssueResult(
                    success=False,
                    cooldown_until=cooldown_end,
                    error="Please wait before requesting a new code",
                )

            code = generate_secure_token(self.code_length)
            expires_at = now + self.expiration
            self._codes[user_id] = TwoFactorCode(
                code=code,
                user_id=user_id,
                email=email,
                expires_at=expires_at,
                attempts=0,
                max_attempts=self.max_attempts,
                verified=False,
                created_at=now,
            )
            self._resend_cooldowns[user_id] = now + self.resend_cooldown

        logger.info("Issued two-factor code for user %s (expires %s)", user_id, expires_at.isoformat())
        return CodeIssueResult(success=True, code=code, expires_at=expires_at)

    def verify_code(self, user_id: str, input_code: str) -> CodeVerifyResult:
        try:
            self.check_code(user_id, input_code)
        except TwoFactorError as exc:
            return CodeVerifyResult(
                success=False,
                verified=False,
                attempts_remaining=exc.attempts_remaining,
                error=exc.message,
                reason=exc.code,
            )
        return CodeVerifyResult(success=True, verified=True)

    def check_code(self, user_id: str, input_code: str):
        """Raise the matching TwoFactorError unless the code verifies"""
        with self._lock:
            code_data = self._codes.get(user_id)
            if code_data is None:
                raise CodeNotFoundError()

            now = self._clock()
            if now > code_data.expires_at:
                del self._codes[user_id]
                raise CodeExpiredError()

            if code_data.verified:
                return

            if code_data.attempts >= code_data.max_attempts:
                del self._codes[user_id]
                raise CodeExhaustedError()

            code_data.attempts += 1

            if constant_time_equals(input_code or "", code_data.code):
                code_data.verified = True
                return

            remaining = code_data.max_attempts - code_data.attempts
            if remaining <= 0:
                del self._codes[user_id]
                logger.warning("Two-factor attempts exhausted for user %s", user_id)
                raise CodeExhaustedError()
            raise CodeMismatchError(remaining)

    def is_code_verified(self, user_id: str) -> bool:
        with self._lock:
            code_data = self._codes.get(user_id)
            if code_data is None:
                return False
            if self._clock() > code_data.expires_at:
                del self._codes[user_id]
                return False
            return code_data.verified

    def invalidate_code(self, user_id: str) -> bool:
        with self._lock:
            return self._codes.pop(user_id, None) is not None

    def get_code_status(self, user_id: str) -> CodeStatus:
        """Introspect a user's code without consuming an attempt"""
        with self._lock:
            now = self._clock()
            cooldown_end = self._resend_cooldowns.get(user_id)
            can_resend = cooldown_end is None or now >= cooldown_end
            cooldown_until: Optional[datetime] = None if can_resend else cooldown_end

            code_data = self._codes.get(user_id)
            if code_data is not None and now > code_data.expires_at:
                del self._codes[user_id]
                code_data = None

            if code_data is None:
                return CodeStatus(
                    exists=False, can_resend=can_resend, resend_cooldown_until=cooldown_until
                )

            return CodeStatus(
                exists=True,
                can_resend=can_resend,
                verified=code_data.verified,
                expires_at=code_data.expires_at,
                attempts_remaining=code_data.max_attempts - code_data.attempts,
                resend_cooldown_until=cooldown_until,
            )

    def get_stats(self) -> Dict[str, float]:
        with self._lock:
            now = self._clock()
            active = verified = expired = total_attempts = 0
            for code_data in self._codes.values():
                if now > code_data.expires_at:
                    expired += 1
                else:
                    active += 1
                    if code_data.verified:
                        verified += 1
                total_attempts += code_data.attempts

            count = len(self._codes)
            return {
                "active_codes": active,
                "verified_codes": verified,
                "expired_codes": expired,
                "average_attempts": total_attempts / count if count else 0,
            }

    def cleanup(self) -> int:
        """Purge expired codes and lapsed cooldowns independently"""
        with self._lock:
            now = self._clock()
            expired_codes = [uid for uid, c in self._codes.items() if now > c.expires_at]
            for uid in expired_codes:
                del self._codes[uid]

            expired_cooldowns = [uid for uid, end in self._resend_cooldowns.items() if now > end]
            for uid in expired_cooldowns:
                del self._resend_cooldowns[uid]

            return len(expired_codes) + len(expired_cooldowns)
