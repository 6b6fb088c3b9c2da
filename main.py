"""
Admin portal application factory.

Wires the security services into a Flask app: the middleware runs on every
request, the auth routes drive login / second factor / logout, and the admin
routes expose the audit trail.
"""

import atexit
import functools
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from flask import Flask, g, jsonify, make_response, request
from werkzeug.http import HTTP_STATUS_CODES

from audit import AuditLogger
from auth import AuthService, UserStore
from config import SecurityConfig, get_config
from email_service import deliver_two_factor_code
from errors import BruteForceBlocked, ConfigurationError, SecurityError, TwoFactorError
from middleware import SecurityMiddleware, can_access_resource, has_required_role
from mfa import TwoFactorManager
from rate_limiter import BruteForceTracker, build_api_limiter, build_login_limiter, build_strict_limiter
from session import SessionManager
from tokens import TokenService
from utils import utc_now

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(config: SecurityConfig):
    logging.basicConfig(
        level=logging.INFO if not config.IS_PRODUCTION else logging.WARNING,
        format=LOG_FORMAT,
    )
    # Alerts are always emitted, whatever the root level
    logging.getLogger("security.alerts").setLevel(logging.WARNING)


class SecurityServices:
    """Owns every stateful security service and their cleanup sweepers"""

    def __init__(self, config: SecurityConfig, clock: Callable[[], datetime] = utc_now,
                 code_sender=None, users: Optional[UserStore] = None):
        self.config = config
        self.users = users or UserStore()
        self.sessions = SessionManager(config, clock)
        self.login_limiter = build_login_limiter(config, clock)
        self.api_limiter = build_api_limiter(config, clock)
        self.strict_limiter = build_strict_limiter(config, clock)
        self.brute_force = BruteForceTracker.from_config(config, clock)
        self.two_factor = TwoFactorManager.from_config(config, clock)
        self.audit = AuditLogger(config, clock)
        self.tokens = TokenService(config)
        self.auth = AuthService(
            config,
            self.users,
            self.sessions,
            self.brute_force,
            self.two_factor,
            self.login_limiter,
            self.audit,
            self.tokens,
            code_sender or functools.partial(deliver_two_factor_code, config),
        )
        self.middleware = SecurityMiddleware(
            config, self.sessions, self.login_limiter, self.api_limiter, self.audit, clock
        )

    def _services(self):
        return (self.sessions, self.login_limiter, self.api_limiter,
                self.strict_limiter, self.brute_force, self.two_factor)

    def start(self):
        for service in self._services():
            service.start()

    def shutdown(self):
        for service in self._services():
            service.shutdown()


def bootstrap_admin(config: SecurityConfig, users: UserStore):
    if not (config.ADMIN_EMAIL and config.ADMIN_PASSWORD):
        logger.warning("ADMIN_EMAIL / ADMIN_PASSWORD not set; no admin account available")
        return None
    return users.add_user(
        config.ADMIN_EMAIL,
        config.ADMIN_PASSWORD,
        role=config.ADMIN_ROLE,
        two_factor_enabled=config.ADMIN_REQUIRE_TWO_FACTOR,
    )


def _error(status: int, message: str, code: str, **extra):
    body = {"error": HTTP_STATUS_CODES.get(status, "Error"), "message": message, "code": code}
    body.update(extra)
    response = jsonify(body)
    response.status_code = status
    return response


def _user_payload(session):
    return {
        "id": session.user_id,
        "email": session.email,
        "role": session.role,
        "twoFactorVerified": session.two_factor_verified,
    }


def create_app(config: Optional[SecurityConfig] = None,
               clock: Callable[[], datetime] = utc_now,
               code_sender=None,
               users: Optional[UserStore] = None) -> Flask:
    config = config or get_config()
    configure_logging(config)

    app = Flask(__name__)
    services = SecurityServices(config, clock, code_sender=code_sender, users=users)
    app.extensions["security"] = services
    services.middleware.init_app(app)

    if users is None:
        bootstrap_admin(config, services.users)

    if config.ENABLE_BACKGROUND_SWEEPS:
        services.start()
        atexit.register(services.shutdown)

    # --- ERROR HANDLERS ---

    @app.errorhandler(SecurityError)
    def handle_security_error(exc):
        if isinstance(exc, ConfigurationError):
            logger.exception("Security configuration error")
            return _error(500, "Internal server error", exc.code)

        extra = {}
        if isinstance(exc, TwoFactorError) and exc.attempts_remaining is not None:
            extra["attemptsRemaining"] = exc.attempts_remaining
        response = _error(exc.status_code, str(exc), exc.code, **extra)

        if isinstance(exc, BruteForceBlocked) and exc.block_until is not None:
            seconds = int((exc.block_until - clock()).total_seconds())
            response.headers["Retry-After"] = str(max(1, seconds))
        return response

    # --- AUTH ROUTES ---

    def _session_response(result, status=200):
        session = result.session
        response = make_response(jsonify({
            "success": True,
            "user": _user_payload(session),
            "csrfToken": session.csrf_token,
        }), status)
        services.sessions.set_session_cookie(response, session.session_id)
        return response

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password:
            return _error(400, "Email and password are required", "VALIDATION_ERROR")

        result = services.auth.login(email, password, request)
        if result.requires_two_factor:
            return jsonify({
                "success": True,
                "requiresTwoFactor": True,
                "pendingToken": result.pending_token,
                "expiresAt": result.code_expires_at.isoformat(),
            })
        return _session_response(result)

    @app.route("/api/auth/2fa/verify", methods=["POST"])
    def verify_two_factor():
        data = request.get_json(silent=True) or {}
        if not data.get("pendingToken") or not data.get("code"):
            return _error(400, "Verification code is required", "VALIDATION_ERROR")

        result = services.auth.verify_two_factor(data["pendingToken"], str(data["code"]), request)
        return _session_response(result)

    @app.route("/api/auth/2fa/resend", methods=["POST"])
    def resend_two_factor():
        data = request.get_json(silent=True) or {}
        if not data.get("pendingToken"):
            return _error(400, "Pending token is required", "VALIDATION_ERROR")

        issued = services.auth.resend_code(data["pendingToken"])
        return jsonify({"success": True, "expiresAt": issued.expires_at.isoformat()})

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        services.auth.logout(g.current_session, request)
        response = make_response(jsonify({"success": True}))
        return services.sessions.clear_session_cookie(response)

    @app.route("/api/auth/logout-all", methods=["POST"])
    def logout_all():
        count = services.auth.logout_all(g.current_session, request)
        response = make_response(jsonify({"success": True, "sessionsTerminated": count}))
        return services.sessions.clear_session_cookie(response)

    @app.route("/api/session", methods=["GET"])
    def current_session():
        session = g.current_session
        return jsonify({
            "user": _user_payload(session),
            "csrfToken": session.csrf_token,
            "createdAt": session.created_at.isoformat(),
            "lastActivity": session.last_activity.isoformat(),
            "loginMethod": session.login_method.value,
        })

    # --- ADMIN ROUTES ---

    def _require_admin(action: str):
        session = g.current_session
        if not (has_required_role(session.role, [config.ADMIN_ROLE])
                and can_access_resource(session.role, "audit", action)):
            services.audit.log_unauthorized_access(
                request, request.path, user_id=session.user_id, reason="insufficient_role"
            )
            return _error(403, "Insufficient permissions", "FORBIDDEN")
        return None

    @app.route("/api/admin/audit", methods=["GET"])
    def audit_logs():
        denied = _require_admin("read")
        if denied is not None:
            return denied

        args = request.args
        success = args.get("success")
        try:
            logs = services.audit.get_logs(
                user_id=args.get("userId"),
                action=args.get("action"),
                category=args.get("category"),
                severity=args.get("severity"),
                success=None if success is None else success.lower() == "true",
                start_date=_parse_date(args.get("startDate")),
                end_date=_parse_date(args.get("endDate")),
                ip_address=args.get("ipAddress"),
                limit=args.get("limit", type=int) or 100,
            )
        except ValueError as exc:
            return _error(400, str(exc), "VALIDATION_ERROR")

        stats = services.audit.get_security_stats()
        return jsonify({
            "logs": [log.to_dict() for log in logs],
            "stats": {
                "totalEvents": stats.total_events,
                "failedLogins": stats.failed_logins,
                "successfulLogins": stats.successful_logins,
                "suspiciousActivities": stats.suspicious_activities,
                "uniqueIPs": stats.unique_ips,
                "topFailedIPs": [{"ip": f.ip, "count": f.count} for f in stats.top_failed_ips],
            },
        })

    @app.route("/api/admin/audit/export", methods=["GET"])
    def export_audit_logs():
        denied = _require_admin("read")
        if denied is not None:
            return denied

        # Exports are expensive; they get the strict limiter on top of the API one
        limited = services.strict_limiter.check(request)
        if not limited.allowed:
            return _error(429, "Too many export requests", "RATE_LIMITED")

        export_format = request.args.get("format", "json")
        try:
            body = services.audit.export_logs(export_format)
        except ValueError as exc:
            return _error(400, str(exc), "VALIDATION_ERROR")

        mimetype = "text/csv" if export_format == "csv" else "application/json"
        response = make_response(body)
        response.mimetype = mimetype
        response.headers["Content-Disposition"] = f"attachment; filename=audit-logs.{export_format}"
        return response

    return app


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


if __name__ == "__main__":
    # In production, run with Gunicorn behind a TLS-terminating proxy
    create_app().run(debug=False)
