import json

import pytest
from werkzeug.wrappers import Response

from audit import AuditLogger
from config import ProductionConfig
from middleware import SecurityMiddleware, can_access_resource, has_required_role
from rate_limiter import build_api_limiter, build_login_limiter
from session import SessionManager

from conftest import PASSWORD, SecurityTestConfig, client_headers, make_request, session_cookie


def build_middleware(config, clock):
    sessions = SessionManager(config, clock)
    audit = AuditLogger(config, clock)
    middleware = SecurityMiddleware(
        config, sessions, build_login_limiter(config, clock), build_api_limiter(config, clock),
        audit, clock,
    )
    return middleware, sessions, audit


@pytest.fixture()
def pipeline(config, clock):
    return build_middleware(config, clock)


def _login(client, ip="198.51.100.20", user_agent="agent-A"):
    response = client.post("/api/auth/login",
                           json={"email": "editor@example.com", "password": PASSWORD},
                           headers=client_headers(ip, user_agent))
    assert response.status_code == 200
    return session_cookie(response), response.get_json()


# ==================== PATH CLASSIFICATION ====================

def test_path_classification(pipeline):
    middleware = pipeline[0]

    assert middleware.is_public_path("/")
    assert middleware.is_public_path("/about/")
    assert middleware.is_public_path("/api/auth/2fa/verify")
    assert not middleware.is_public_path("/aboutus")
    assert not middleware.is_public_path("/dashboard")
    assert middleware.is_admin_path("/dashboard/users")
    assert middleware.is_admin_path("/api/admin")
    assert not middleware.is_admin_path("/api/administrator")


def test_public_path_passes_without_session(pipeline):
    middleware, _, audit = pipeline

    decision = middleware.handle(make_request("/api/search"))

    assert decision.passed
    assert decision.headers == {}
    assert len(audit) == 0


# ==================== SESSION VALIDATION ====================

def test_api_request_without_session_is_unauthorized(pipeline):
    middleware, _, audit = pipeline

    decision = middleware.handle(make_request("/api/dashboard/stats"))

    assert decision.response.status_code == 401
    body = json.loads(decision.response.get_data(as_text=True))
    assert body == {"error": "Unauthorized", "message": "Invalid or expired session",
                    "code": "UNAUTHORIZED"}
    entry = audit.get_logs(action="unauthorized_access")[0]
    assert entry.metadata["reason"] == "No session ID provided"


def test_page_request_without_session_redirects_to_login(pipeline):
    decision = pipeline[0].handle(make_request("/dashboard"))

    assert decision.response.status_code == 302
    assert "/login?redirect=%2Fdashboard" in decision.response.headers["Location"]


def test_valid_session_forwards_identity(pipeline):
    middleware, sessions, audit = pipeline
    session = sessions.create_session("user-1", "u@example.com", "admin",
                                      make_request(ip="10.1.1.1"))

    decision = middleware.handle(make_request(
        "/api/dashboard/stats", ip="10.1.1.1",
        headers={"Authorization": f"Bearer {session.session_id}"},
    ))

    assert decision.passed
    assert decision.session is session
    assert decision.headers == {
        "X-User-ID": "user-1",
        "X-User-Email": "u@example.com",
        "X-User-Role": "admin",
        "X-Session-ID": session.session_id,
    }
    entry = audit.get_logs(action="GET_request")[0]
    assert entry.category.value == "admin"
    assert entry.user_id == "user-1"


def test_polling_current_session_uses_api_limiter(client):
    _login(client)
    headers = client_headers("198.51.100.20", "agent-A")

    statuses = [client.get("/api/session", headers=headers).status_code for _ in range(10)]

    assert statuses == [200] * 10


def test_session_replayed_from_other_agent_is_rejected(client, services):
    """Login, replay the cookie from another browser, then retry from the original one"""
    _login(client, user_agent="agent-A")

    ok = client.get("/api/session", headers=client_headers("198.51.100.20", "agent-A"))
    assert ok.status_code == 200
    assert ok.headers["X-User-Email"] == "editor@example.com"

    stolen = client.get("/api/session", headers=client_headers("198.51.100.20", "agent-B"))
    assert stolen.status_code == 401
    assert stolen.get_json()["code"] == "UNAUTHORIZED"

    again = client.get("/api/session", headers=client_headers("198.51.100.20", "agent-A"))
    assert again.status_code == 401

    reasons = [e.metadata.get("reason")
               for e in services.audit.get_logs(action="unauthorized_access")]
    assert "User agent mismatch" in reasons
    assert "Session not found or expired" in reasons
    assert services.audit.get_logs(action="session_hijack")


# ==================== RATE LIMITING ====================

def test_repeated_failed_logins_alert_then_rate_limit(client, services):
    headers = client_headers("1.2.3.4")
    for _ in range(5):
        response = client.post("/api/auth/login",
                               json={"email": "admin@example.com", "password": "wrong-password"},
                               headers=headers)
        assert response.status_code == 401

    alerts = services.audit.get_logs(action="security_alert", ip_address="1.2.3.4")
    assert alerts
    assert alerts[-1].severity.value == "high"
    assert alerts[-1].category.value == "security"

    limited = client.post("/api/auth/login",
                          json={"email": "admin@example.com", "password": "wrong-password"},
                          headers=headers)

    assert limited.status_code == 429
    assert limited.get_data(as_text=True) == "Rate limit exceeded"
    assert limited.headers["X-RateLimit-Limit"] == "5"
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert int(limited.headers["Retry-After"]) > 0
    assert int(limited.headers["X-RateLimit-Reset"]) > 0

    suspicious = services.audit.get_logs(action="suspicious_activity", ip_address="1.2.3.4")
    assert suspicious[0].metadata["activity"] == "rate_limit_exceeded"
    assert suspicious[0].severity.value == "high"


def test_retry_after_tracks_block_duration(pipeline, clock):
    middleware = pipeline[0]
    request = make_request("/api/auth/login", "POST")
    for _ in range(5):
        assert middleware.handle(request).passed

    response = middleware.handle(request).response

    assert response.status_code == 429
    assert response.headers["Retry-After"] == str(30 * 60)

    clock.advance(minutes=10)
    response = middleware.handle(request).response
    assert response.headers["Retry-After"] == str(20 * 60)


def test_api_paths_use_api_limiter(pipeline):
    middleware = pipeline[0]
    request = make_request("/api/search")

    for _ in range(100):
        assert middleware.handle(request).passed

    response = middleware.handle(request).response
    assert response.status_code == 429
    assert response.headers["X-RateLimit-Limit"] == "100"


# ==================== IP ALLOW-LIST ====================

def test_ip_allow_list_guards_admin_paths(clock):
    class Restricted(SecurityTestConfig):
        ENABLE_IP_WHITELIST = True
        ALLOWED_IPS = ["10.0.0.0/8"]

    middleware, _, audit = build_middleware(Restricted(), clock)

    denied = middleware.handle(make_request("/api/admin/audit", ip="203.0.113.9"))
    allowed = middleware.handle(make_request("/api/admin/audit", ip="10.2.3.4"))
    public = middleware.handle(make_request("/api/search", ip="203.0.113.9"))

    assert denied.response.status_code == 403
    assert denied.response.get_data(as_text=True) == "Access denied"
    assert audit.get_logs(action="unauthorized_access")[-1].metadata["reason"] == "ip_not_allowed"
    # Past the allow-list, the missing session is what stops the request
    assert allowed.response.status_code == 401
    assert public.passed


# ==================== CSRF ====================

def test_state_changing_request_allowed_in_permissive_mode(client):
    _login(client)

    response = client.post("/api/auth/logout", data={"x": "1"},
                           headers=client_headers("198.51.100.20", "agent-A"))

    assert response.status_code == 200


def test_strict_mode_requires_matching_csrf_token(make_app):
    class Strict(SecurityTestConfig):
        CSRF_STRICT_MODE = True

    client = make_app(Strict).test_client()
    _, body = _login(client)
    headers = client_headers("198.51.100.20", "agent-A")

    missing = client.post("/api/auth/logout", headers=headers)
    forged = client.post("/api/auth/logout", headers=dict(headers, **{"X-CSRF-Token": "0" * 64}))
    valid = client.post("/api/auth/logout",
                        headers=dict(headers, **{"X-CSRF-Token": body["csrfToken"]}))

    assert missing.status_code == 403
    assert missing.get_json()["code"] == "CSRF_TOKEN_INVALID"
    assert forged.status_code == 403
    assert valid.status_code == 200


# ==================== RESPONSE HEADERS ====================

def test_security_headers_on_every_response(client):
    response = client.get("/", headers=client_headers())

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]
    assert "Strict-Transport-Security" not in response.headers
    assert "X-Powered-By" not in response.headers


def test_hsts_only_in_production(clock):
    middleware, _, _ = build_middleware(ProductionConfig(), clock)
    response = middleware.add_security_headers(Response("ok", headers={"Server": "gunicorn"}))

    assert response.headers["Strict-Transport-Security"].startswith("max-age=31536000")
    assert "Server" not in response.headers


def test_cors_preflight_for_allowed_origin(client):
    response = client.options("/api/session",
                              headers={"Origin": "http://localhost:3000",
                                       "Access-Control-Request-Method": "GET"})

    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"
    assert "X-CSRF-Token" in response.headers["Access-Control-Allow-Headers"]


def test_cors_ignores_unknown_origin(client):
    response = client.options("/api/session", headers={"Origin": "https://evil.example"})

    assert "Access-Control-Allow-Origin" not in response.headers


# ==================== ROLES ====================

def test_role_helpers():
    assert has_required_role("admin", ["admin", "moderator"])
    assert not has_required_role("user", ["admin"])
    assert can_access_resource("admin", "audit", "delete")
    assert can_access_resource("moderator", "posts", "update")
    assert not can_access_resource("moderator", "posts", "delete")
    assert can_access_resource("user", "posts", "read")
    assert not can_access_resource("guest", "posts", "read")
