"""
Security Exceptions

Denials that are part of normal policy (rate limits, lockouts) are returned
as result objects by the guards; these exceptions are raised where the login
layer or the token utilities cannot continue.
"""

from datetime import datetime
from typing import Optional


class SecurityError(Exception):
    """Base class for all pipeline errors"""

    code = 'SECURITY_ERROR'
    status_code = 400


class ConfigurationError(SecurityError):
    """A required secret or setting is missing - fatal, never defaulted"""

    code = 'CONFIGURATION_ERROR'
    status_code = 500


class AuthenticationError(SecurityError):
    code = 'UNAUTHORIZED'
    status_code = 401


class InvalidTokenError(AuthenticationError):
    """JWT failed verification. Expired and tampered tokens are not distinguished."""

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class SessionInvalidError(AuthenticationError):
    """
    Session could not be validated.

    `reason` is the internal cause (not found, IP or user agent mismatch)
    kept for the audit trail; the HTTP response stays uniform.
    """

    def __init__(self, reason: str, message: str = "Invalid or expired session"):
        super().__init__(message)
        self.reason = reason


class BruteForceBlocked(SecurityError):
    code = 'TOO_MANY_ATTEMPTS'
    status_code = 429

    def __init__(self, block_until: Optional[datetime],
                 message: str = "Too many failed login attempts. Please try again later."):
        super().__init__(message)
        self.block_until = block_until


class CSRFValidationError(SecurityError):
    code = 'CSRF_TOKEN_INVALID'
    status_code = 403

    def __init__(self, reason: str = "Invalid CSRF token"):
        super().__init__(reason)
        self.reason = reason


# ==================== TWO-FACTOR ====================

class TwoFactorError(SecurityError):
    """Base for one-time-code failures; none are fatal to the process"""

    code = 'TWO_FACTOR_FAILED'
    status_code = 401

    def __init__(self, message: str, attempts_remaining: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.attempts_remaining = attempts_remaining


class CodeNotFoundError(TwoFactorError):
    code = 'CODE_NOT_FOUND'

    def __init__(self):
        super().__init__("No verification code found. Please request a new one.")


class CodeExpiredError(TwoFactorError):
    code = 'CODE_EXPIRED'

    def __init__(self):
        super().__init__("Verification code has expired. Please request a new one.")


class CodeExhaustedError(TwoFactorError):
    code = 'CODE_EXHAUSTED'
    status_code = 429

    def __init__(self):
        super().__init__("Too many failed attempts. Please request a new code.",
                         attempts_remaining=0)


class CodeMismatchError(TwoFactorError):
    code = 'CODE_MISMATCH'

    def __init__(self, attempts_remaining: int):
        super().__init__(
            f"Invalid verification code. {attempts_remaining} attempts remaining.",
            attempts_remaining=attempts_remaining,
        )


class ResendCooldownError(TwoFactorError):
    code = 'RESEND_COOLDOWN'
    status_code = 429

    def __init__(self, cooldown_until: datetime):
        super().__init__("Please wait before requesting a new code")
        self.cooldown_until = cooldown_until
