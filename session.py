"""
Session Management Module

Implements server-side session management:
- Cryptographically secure session ID generation (256-bit entropy)
- Session binding (IP, user-agent validation) for the whole session lifetime
- Idle timeout, checked lazily on access and by a background sweep
- Bulk invalidation per user ("log out everywhere")
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from werkzeug.wrappers import Request, Response

from cleanup import PeriodicSweeper
from config import SecurityConfig
from crypto import generate_csrf_token, generate_session_id
from models import LoginMethod, SessionData, SessionValidation
from utils import extract_client_info, utc_now

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "Session not found or expired"
REASON_IP_MISMATCH = "IP address mismatch"
REASON_UA_MISMATCH = "User agent mismatch"

_TICK = timedelta(microseconds=1)


class SessionManager:
    """
    Manages authenticated sessions with security controls.

    Security Features:
    - 256-bit entropy session IDs and per-session CSRF tokens
    - Session hijacking protection (IP + user agent binding, never re-bindable)
    - Idle timeout measured from last activity
    - Secure cookie attributes
    """

    def __init__(self, config: SecurityConfig, clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.max_age = config.SESSION_MAX_AGE
        self._clock = clock
        self._sessions: Dict[str, SessionData] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper("sessions", config.SWEEP_INTERVAL, self.cleanup_expired_sessions)

    def start(self):
        self._sweeper.start()

    def shutdown(self):
        self._sweeper.stop()

    def create_session(
        self,
        user_id: str,
        email: str,
        role: str,
        request: Request,
        two_factor_verified: bool = False,
    ) -> SessionData:
        """
        Create new session for an authenticated user.

        Args:
            user_id: User ID
            email: User email
            role: User role
            request: Request whose IP and user agent become the session binding
            two_factor_verified: Whether a second factor was completed

        Returns:
            The stored SessionData
        """
        client = extract_client_info(request)

        with self._lock:
            now = self._clock()
            session_id = generate_session_id()
            while session_id in self._sessions:
                session_id = generate_session_id()

            session = SessionData(
                session_id=session_id,
                user_id=user_id,
                email=email,
                role=role,
                csrf_token=generate_csrf_token(),
                created_at=now,
                last_activity=now,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                two_factor_verified=two_factor_verified,
                login_method=LoginMethod.TWO_FACTOR if two_factor_verified else LoginMethod.PASSWORD,
            )
            self._sessions[session_id] = session
            self._user_sessions.setdefault(user_id, set()).add(session_id)

        logger.info("Session created for user %s from %s", user_id, client.ip_address)
        return session

    def _is_expired(self, session: SessionData, now: datetime) -> bool:
        return now > session.last_activity + self.max_age

    def get_session(self, session_id: str) -> Optional[SessionData]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self._is_expired(session, self._clock()):
                self._remove(session_id)
                return None
            return session

    def validate_session(self, session_id: str, request: Request) -> SessionValidation:
        """
        Validate a presented session against the current request.

        Security Checks (in order):
        - Session exists and is not idle-expired
        - IP address matches the binding
        - User agent matches the binding

        Any mismatch destroys the session immediately.
        """
        client = extract_client_info(request)

        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return SessionValidation(valid=False, reason=REASON_NOT_FOUND)

            if session.ip_address != client.ip_address:
                self._remove(session_id)
                logger.warning("Session hijack suspected for user %s: IP %s != %s",
                               session.user_id, client.ip_address, session.ip_address)
                return SessionValidation(valid=False, reason=REASON_IP_MISMATCH)

            if session.user_agent != client.user_agent:
                self._remove(session_id)
                logger.warning("Session hijack suspected for user %s: user agent changed",
                               session.user_id)
                return SessionValidation(valid=False, reason=REASON_UA_MISMATCH)

            now = self._clock()
            if now <= session.last_activity:
                # Keep last_activity strictly increasing on every valid use
                now = session.last_activity + _TICK
            session.last_activity = now
            return SessionValidation(valid=True, session=session)

    def destroy_session(self, session_id: str) -> bool:
        with self._lock:
            return self._remove(session_id)

    def destroy_all_user_sessions(self, user_id: str) -> int:
        """Panic Button / Password Reset / Security Breach"""
        with self._lock:
            session_ids = self._user_sessions.pop(user_id, set())
            for session_id in session_ids:
                self._sessions.pop(session_id, None)
        if session_ids:
            logger.info("Destroyed %d sessions for user %s", len(session_ids), user_id)
        return len(session_ids)

    def get_user_sessions(self, user_id: str) -> List[SessionData]:
        with self._lock:
            return [
                self._sessions[sid]
                for sid in self._user_sessions.get(user_id, ())
                if sid in self._sessions
            ]

    def get_session_stats(self) -> Dict[str, float]:
        with self._lock:
            total_sessions = len(self._sessions)
            total_users = len(self._user_sessions)
            return {
                "total_sessions": total_sessions,
                "total_users": total_users,
                "average_sessions_per_user": total_sessions / total_users if total_users else 0,
            }

    def _remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        user_set = self._user_sessions.get(session.user_id)
        if user_set is not None:
            user_set.discard(session_id)
            if not user_set:
                del self._user_sessions[session.user_id]
        return True

    def cleanup_expired_sessions(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
            for session_id in expired:
                self._remove(session_id)
            return len(expired)

    # ==================== COOKIES ====================

    def set_session_cookie(self, response: Response, session_id: str) -> Response:
        response.set_cookie(
            self.config.SESSION_COOKIE_NAME,
            session_id,
            max_age=int(self.max_age.total_seconds()),
            secure=self.config.COOKIE_SECURE,
            httponly=True,
            samesite=self.config.COOKIE_SAMESITE,
            domain=self.config.COOKIE_DOMAIN,
            path=self.config.COOKIE_PATH,
        )
        return response

    def clear_session_cookie(self, response: Response) -> Response:
        response.delete_cookie(
            self.config.SESSION_COOKIE_NAME,
            path=self.config.COOKIE_PATH,
            domain=self.config.COOKIE_DOMAIN,
            secure=self.config.COOKIE_SECURE,
            httponly=True,
            samesite=self.config.COOKIE_SAMESITE,
        )
        return response


def get_session_id_from_request(request: Request, cookie_name: str = "session-id") -> Optional[str]:
    """Cookie first, then an `Authorization: Bearer` header"""
    session_id = request.cookies.get(cookie_name)
    if session_id:
        return session_id

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return None
