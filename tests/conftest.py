from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from auth import UserStore
from config import DevelopmentConfig
from main import create_app

PASSWORD = "correct horse battery staple"
USER_AGENT = "Mozilla/5.0 (pytest)"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class SecurityTestConfig(DevelopmentConfig):
    JWT_SECRET_KEY = "unit-test-secret-0123456789abcdef0123456789abcdef"
    ENABLE_BACKGROUND_SWEEPS = False
    ENABLE_IP_WHITELIST = False
    CSRF_STRICT_MODE = False
    ALLOWED_IPS = []
    ADMIN_EMAIL = ""
    ADMIN_PASSWORD = ""


def make_request(path="/", method="GET", ip="203.0.113.5", user_agent=USER_AGENT,
                 headers=None, **kwargs):
    all_headers = {"User-Agent": user_agent}
    if ip is not None:
        all_headers["X-Forwarded-For"] = ip
    all_headers.update(headers or {})
    builder = EnvironBuilder(path=path, method=method, headers=all_headers, **kwargs)
    try:
        return Request(builder.get_environ())
    finally:
        builder.close()


def client_headers(ip="203.0.113.5", user_agent=USER_AGENT, **extra):
    headers = {"X-Forwarded-For": ip, "User-Agent": user_agent}
    headers.update(extra)
    return headers


def session_cookie(response, name="session-id"):
    for header in response.headers.getlist("Set-Cookie"):
        key, _, rest = header.partition("=")
        if key == name:
            return rest.split(";", 1)[0]
    return None


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def config():
    return SecurityTestConfig()


@pytest.fixture()
def sent_codes():
    return []


@pytest.fixture()
def users():
    store = UserStore()
    store.add_user("admin@example.com", PASSWORD, role="admin", two_factor_enabled=True)
    store.add_user("Editor@Example.com", PASSWORD, role="user")
    return store


@pytest.fixture()
def make_app(clock, sent_codes, users):
    def factory(config_class=SecurityTestConfig):
        return create_app(
            config_class(),
            clock=clock,
            code_sender=lambda user, code: sent_codes.append((user.email, code)),
            users=users,
        )
    return factory


@pytest.fixture()
def app(make_app):
    return make_app()


@pytest.fixture()
def services(app):
    return app.extensions["security"]


@pytest.fixture()
def client(app):
    return app.test_client()
