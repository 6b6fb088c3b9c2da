"""
Authentication Module
Password login with brute-force tracking, optional emailed second factor,
and session issuance
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from werkzeug.wrappers import Request

from audit import AuditLogger
from config import SecurityConfig
from crypto import hash_password, verify_password
from errors import (
    BruteForceBlocked,
    InvalidCredentialsError,
    InvalidTokenError,
    ResendCooldownError,
    TwoFactorError,
)
from mfa import TwoFactorManager
from models import CodeIssueResult, SecurityEventType, SessionData, Severity, User
from rate_limiter import BruteForceTracker, RateLimiter
from session import SessionManager
from tokens import TokenService

logger = logging.getLogger(__name__)

PENDING_PURPOSE = "two_factor"

CodeSender = Callable[[User, str], None]


class UserStore:
    """Process-local account registry keyed by normalized email"""

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()

    def add_user(self, email: str, password: str, role: str = "user",
                 two_factor_enabled: bool = False, phone: Optional[str] = None) -> User:
        email = normalize_email(email)
        user = User(
            id=uuid.uuid4().hex,
            email=email,
            password_hash=hash_password(password),
            role=role,
            two_factor_enabled=two_factor_enabled,
            phone=phone,
        )
        with self._lock:
            self._users[email] = user
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            return self._users.get(normalize_email(email))

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.id == user_id:
                    return user
        return None


def normalize_email(email: str) -> str:
    return (email or "").lower().strip()


@dataclass
class LoginResult:
    """Either a live session, or a pending second factor"""
    user: User
    session: Optional[SessionData] = None
    requires_two_factor: bool = False
    pending_token: Optional[str] = None
    code_expires_at: Optional[datetime] = None


class AuthService:
    """Complete authentication management with security controls"""

    def __init__(
        self,
        config: SecurityConfig,
        users: UserStore,
        session_manager: SessionManager,
        brute_force: BruteForceTracker,
        two_factor: TwoFactorManager,
        login_limiter: RateLimiter,
        audit_logger: AuditLogger,
        tokens: TokenService,
        code_sender: CodeSender,
    ):
        self.config = config
        self.users = users
        self.session_manager = session_manager
        self.brute_force = brute_force
        self.two_factor = two_factor
        self.login_limiter = login_limiter
        self.audit = audit_logger
        self.tokens = tokens
        self.code_sender = code_sender
        self._dummy_hash: Optional[str] = None

    def _equalize_timing(self, password: str):
        # Unknown accounts still pay for one Argon2 verification
        if self._dummy_hash is None:
            self._dummy_hash = hash_password(uuid.uuid4().hex)
        verify_password(password or "", self._dummy_hash)

    def login(self, email: str, password: str, request: Request) -> LoginResult:
        """
        Authenticate user with password and, when enabled, start the second factor.

        Security Checks:
        - Brute-force lockout per normalized email
        - Argon2 password verification
        - Uniform error for unknown accounts and wrong passwords

        Raises:
            BruteForceBlocked: identifier is locked out
            InvalidCredentialsError: bad email/password
        """
        email = normalize_email(email)

        check = self.brute_force.check_attempt(email)
        if not check.allowed:
            self.audit.log_suspicious_activity(request, "brute_force_blocked", {
                "email": email,
                "blockUntil": check.block_until.isoformat(),
            })
            raise BruteForceBlocked(check.block_until)

        user = self.users.get_by_email(email)
        if user is None:
            self._equalize_timing(password)
            self._record_failure(request, email, "user_not_found")
            raise InvalidCredentialsError()

        if not verify_password(password or "", user.password_hash):
            self._record_failure(request, email, "invalid_password", user_id=user.id)
            raise InvalidCredentialsError()

        if user.two_factor_enabled:
            issued = self._issue_code(user)
            expires_at = issued.expires_at
            if not issued.success:
                # Inside the resend cooldown the code already sent stays valid
                status = self.two_factor.get_code_status(user.id)
                if not status.exists:
                    raise ResendCooldownError(issued.cooldown_until)
                expires_at = status.expires_at
            pending = self.tokens.create_secure_jwt(
                {"sub": user.id, "email": user.email, "purpose": PENDING_PURPOSE},
                ttl=self.config.TWO_FACTOR_CODE_EXPIRES,
            )
            logger.info("Password accepted for %s, awaiting second factor", user.id)
            return LoginResult(
                user=user,
                requires_two_factor=True,
                pending_token=pending,
                code_expires_at=expires_at,
            )

        session = self._complete_login(user, request, two_factor_verified=False)
        return LoginResult(user=user, session=session)

    def verify_two_factor(self, pending_token: str, code: str, request: Request) -> LoginResult:
        user = self._pending_user(pending_token)

        try:
            self.two_factor.check_code(user.id, code)
        except TwoFactorError as exc:
            self.audit.log_login_attempt(
                request, user.email, success=False,
                error_message=exc.message, user_id=user.id,
            )
            raise

        self.two_factor.invalidate_code(user.id)
        session = self._complete_login(user, request, two_factor_verified=True)
        return LoginResult(user=user, session=session)

    def resend_code(self, pending_token: str) -> CodeIssueResult:
        user = self._pending_user(pending_token)
        issued = self._issue_code(user)
        if not issued.success:
            raise ResendCooldownError(issued.cooldown_until)
        return issued

    def logout(self, session: SessionData, request: Request) -> bool:
        destroyed = self.session_manager.destroy_session(session.session_id)
        self.audit.log_logout(request, session.user_id, session.session_id)
        return destroyed

    def logout_all(self, session: SessionData, request: Request) -> int:
        """Panic button: terminate every session of the current user"""
        count = self.session_manager.destroy_all_user_sessions(session.user_id)
        self.audit.log_security_event(
            SecurityEventType.LOGOUT, request, severity=Severity.MEDIUM,
            user_id=session.user_id, session_id=session.session_id,
            details={"scope": "all", "sessionsDestroyed": count},
        )
        return count

    # ==================== HELPERS ====================

    def _pending_user(self, pending_token: str) -> User:
        claims = self.tokens.verify_secure_jwt(pending_token or "")
        if claims.get("purpose") != PENDING_PURPOSE:
            raise InvalidTokenError()
        user = self.users.get_by_id(claims.get("sub", ""))
        if user is None:
            raise InvalidTokenError()
        return user

    def _issue_code(self, user: User) -> CodeIssueResult:
        issued = self.two_factor.generate_code(user.id, user.email)
        if issued.success:
            self.code_sender(user, issued.code)
        return issued

    def _record_failure(self, request: Request, email: str, reason: str,
                        user_id: Optional[str] = None):
        result = self.brute_force.record_failed_attempt(email)
        self.audit.log_login_attempt(request, email, success=False,
                                     error_message=reason, user_id=user_id)
        if result.blocked:
            self.audit.log_security_event(
                SecurityEventType.BRUTE_FORCE_DETECTED, request,
                severity=Severity.HIGH, user_id=user_id,
                details={"email": email, "blockUntil": result.block_until.isoformat()},
            )

    def _complete_login(self, user: User, request: Request, two_factor_verified: bool) -> SessionData:
        session = self.session_manager.create_session(
            user.id, user.email, user.role, request,
            two_factor_verified=two_factor_verified,
        )
        self.brute_force.record_successful_attempt(user.email)
        self.login_limiter.record_success(request)
        self.audit.log_login_attempt(request, user.email, success=True, user_id=user.id)
        return session
