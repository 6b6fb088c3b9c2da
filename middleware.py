"""
Security Middleware

Runs every inbound request through an ordered pipeline; the first stage that
denies short-circuits the rest:

1. Path classification (public / admin)
2. IP allow-list (admin paths only)
3. Rate limiting (always, public paths included)
4. Session validation (non-public paths)
5. CSRF check (non-public, state-changing methods)
6. Audit log write (non-public paths)
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlencode

from flask import Flask, g, request as current_request
from werkzeug.utils import redirect
from werkzeug.wrappers import Request, Response

from audit import AuditLogger
from config import SecurityConfig
from crypto import verify_csrf_token
from errors import CSRFValidationError
from models import Category, RateLimitResult, SecurityEventType, SessionData, Severity
from rate_limiter import RateLimiter
from session import REASON_NOT_FOUND, SessionManager, get_session_id_from_request
from utils import extract_client_info, is_ip_whitelisted, utc_now

logger = logging.getLogger(__name__)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://cdnjs.cloudflare.com; "
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
    "font-src 'self' https://fonts.gstatic.com; "
    "img-src 'self' data: https:; "
    "connect-src 'self' https:; "
    "frame-ancestors 'none';"
)

ROLE_PERMISSIONS = {
    "admin": ["*"],
    "moderator": ["read", "update"],
    "user": ["read"],
}


@dataclass
class MiddlewareDecision:
    """Outcome of the pipeline: a short-circuit response, or headers to forward"""
    response: Optional[Response] = None
    headers: Dict[str, str] = field(default_factory=dict)
    session: Optional[SessionData] = None

    @property
    def passed(self) -> bool:
        return self.response is None


def _matches(path: str, prefixes: List[str]) -> bool:
    for prefix in prefixes:
        base = prefix.rstrip("/") or "/"
        if path == prefix or path == base or path.rstrip("/") == base:
            return True
        if base != "/" and path.startswith(base + "/"):
            return True
    return False


def _text_response(body: str, status: int, headers: Optional[Dict[str, str]] = None) -> Response:
    response = Response(body, status=status, mimetype="text/plain")
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


class SecurityMiddleware:
    def __init__(
        self,
        config: SecurityConfig,
        session_manager: SessionManager,
        login_limiter: RateLimiter,
        api_limiter: RateLimiter,
        audit_logger: AuditLogger,
        clock=utc_now,
    ):
        self.config = config
        self.session_manager = session_manager
        self.login_limiter = login_limiter
        self.api_limiter = api_limiter
        self.audit_logger = audit_logger
        self._clock = clock

    # ==================== CLASSIFICATION ====================

    def is_public_path(self, path: str) -> bool:
        return _matches(path, self.config.PUBLIC_PATHS)

    def is_admin_path(self, path: str) -> bool:
        return _matches(path, self.config.ADMIN_PATHS)

    # ==================== PIPELINE ====================

    def handle(self, request: Request) -> MiddlewareDecision:
        path = request.path
        method = request.method.upper()
        is_public = self.is_public_path(path)
        is_admin = self.is_admin_path(path)
        audit = self.config.ENABLE_AUDIT_LOGGING

        # 1. IP whitelist (admin paths)
        if self.config.ENABLE_IP_WHITELIST and is_admin and self.config.ALLOWED_IPS:
            client = extract_client_info(request)
            if not is_ip_whitelisted(client.ip_address, self.config.ALLOWED_IPS):
                logger.warning("Admin path %s denied for %s", path, client.ip_address)
                if audit:
                    self.audit_logger.log_unauthorized_access(request, path, reason="ip_not_allowed")
                return MiddlewareDecision(response=_text_response("Access denied", 403))

        # 2. Rate limiting
        if self.config.ENABLE_RATE_LIMIT:
            limiter = self._select_limiter(path)
            result = limiter.check(request)
            if not result.allowed:
                if audit:
                    self.audit_logger.log_suspicious_activity(request, "rate_limit_exceeded", {
                        "path": path,
                        "limiter": limiter.name,
                        "remaining": result.remaining,
                        "resetTime": _epoch_ms(result.reset_time),
                        "blockUntil": _epoch_ms(result.block_until) if result.block_until else None,
                    })
                return MiddlewareDecision(response=self._rate_limited_response(limiter, result))

        decision = MiddlewareDecision()

        # 3. Session validation
        if self.config.ENABLE_SESSION_VALIDATION and not is_public:
            session_id = get_session_id_from_request(request, self.config.SESSION_COOKIE_NAME)
            if session_id:
                validation = self.session_manager.validate_session(session_id, request)
                reason = validation.reason
            else:
                validation = None
                reason = "No session ID provided"

            if validation is None or not validation.valid:
                if audit:
                    self.audit_logger.log_unauthorized_access(request, path, reason=reason)
                    if reason not in (REASON_NOT_FOUND, "No session ID provided"):
                        self.audit_logger.log_security_event(
                            SecurityEventType.SESSION_HIJACK, request,
                            severity=Severity.CRITICAL,
                            session_id=session_id,
                            details={"reason": reason, "path": path},
                        )
                return MiddlewareDecision(response=self._unauthorized_response(path))

            session = validation.session
            decision.session = session
            decision.headers = {
                "X-User-ID": session.user_id,
                "X-User-Email": session.email,
                "X-User-Role": session.role,
                "X-Session-ID": session.session_id,
            }

        # 4. CSRF protection
        if (self.config.ENABLE_CSRF_PROTECTION
                and method in STATE_CHANGING_METHODS
                and not is_public):
            try:
                self.validate_csrf(request, decision.session)
            except CSRFValidationError as exc:
                logger.warning("CSRF check failed for %s %s: %s", method, path, exc.reason)
                if audit:
                    self.audit_logger.log_suspicious_activity(request, "csrf_token_invalid", {
                        "path": path,
                        "method": method,
                        "reason": exc.reason,
                    })
                response = _json_response({
                    "error": "Forbidden",
                    "message": "Invalid CSRF token",
                    "code": CSRFValidationError.code,
                }, 403)
                return MiddlewareDecision(response=response)

        # 5. Audit logging
        if audit and not is_public:
            session = decision.session
            self.audit_logger.log(
                f"{method}_request",
                path,
                request,
                success=True,
                user_id=session.user_id if session else None,
                session_id=session.session_id if session else None,
                category=Category.ADMIN if is_admin else Category.DATA,
                severity=Severity.LOW,
            )

        return decision

    def _select_limiter(self, path: str) -> RateLimiter:
        if "/login" in path or "/auth" in path:
            return self.login_limiter
        return self.api_limiter

    def _rate_limited_response(self, limiter: RateLimiter, result: RateLimitResult) -> Response:
        target = result.block_until if result.blocked and result.block_until else result.reset_time
        retry_after = max(1, math.ceil((target - self._clock()).total_seconds()))
        return _text_response("Rate limit exceeded", 429, {
            "X-RateLimit-Limit": str(limiter.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(_epoch_ms(target)),
            "Retry-After": str(retry_after),
        })

    def _unauthorized_response(self, path: str) -> Response:
        if path.startswith("/api/"):
            return _json_response({
                "error": "Unauthorized",
                "message": "Invalid or expired session",
                "code": "UNAUTHORIZED",
            }, 401)
        return redirect(f"{self.config.LOGIN_PAGE}?{urlencode({'redirect': path})}")

    def validate_csrf(self, request: Request, session: Optional[SessionData]):
        """
        Permissive by default: AJAX-tagged and JSON requests are accepted and
        untagged form posts are let through as well. CSRF_STRICT_MODE turns on
        synchronizer-token verification for every state-changing request.
        """
        if self.config.CSRF_STRICT_MODE:
            token = request.headers.get("X-CSRF-Token") or request.form.get("csrf_token")
            if not token:
                raise CSRFValidationError("Missing CSRF token")
            if session is None or not verify_csrf_token(token, session.csrf_token):
                raise CSRFValidationError("CSRF token mismatch")
            return

        # TODO: default to strict mode once the dashboard forms send X-CSRF-Token

    # ==================== RESPONSE HEADERS ====================

    def add_security_headers(self, response: Response) -> Response:
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-XSS-Protection"] = "1; mode=block"

        # HSTS (only in production with HTTPS)
        if self.config.IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        # Remove server information
        response.headers.pop("Server", None)
        response.headers.pop("X-Powered-By", None)
        return response

    def apply_cors(self, request: Request, response: Response) -> Response:
        if not request.path.startswith("/api/"):
            return response

        origin = request.headers.get("Origin")
        if origin and origin in self.config.CORS_ALLOWED_ORIGINS:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        elif not origin:
            response.headers["Access-Control-Allow-Origin"] = "*"

        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = (
            "Content-Type, Authorization, X-Requested-With, X-CSRF-Token"
        )
        return response

    # ==================== FLASK INTEGRATION ====================

    def init_app(self, app: Flask):
        app.extensions["security_middleware"] = self
        app.before_request(self._before_request)
        app.after_request(self._after_request)

    def _before_request(self):
        if current_request.method == "OPTIONS" and current_request.path.startswith("/api/"):
            return Response(status=200)

        decision = self.handle(current_request)
        g.security_headers = decision.headers
        g.current_session = decision.session
        if not decision.passed:
            return decision.response
        return None

    def _after_request(self, response: Response) -> Response:
        for name, value in getattr(g, "security_headers", {}).items():
            response.headers.setdefault(name, value)
        self.apply_cors(current_request, response)
        return self.add_security_headers(response)


def _json_response(body: Dict[str, str], status: int) -> Response:
    return Response(json.dumps(body), status=status, mimetype="application/json")


def _epoch_ms(moment) -> int:
    return int(moment.timestamp() * 1000)


# ==================== ROLE HELPERS ====================

def has_required_role(user_role: str, required_roles: List[str]) -> bool:
    return user_role in required_roles


def can_access_resource(user_role: str, resource: str, action: str) -> bool:
    """Coarse role-based check; admins can do everything"""
    permissions = ROLE_PERMISSIONS.get(user_role, [])
    return "*" in permissions or action in permissions
