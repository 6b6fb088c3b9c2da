"""
Configuration Module for the Admin Portal Security Pipeline

This module manages all security configuration parameters.
CRITICAL: Load all secrets from environment variables in production.
"""

import os
from datetime import timedelta
from typing import List

from dotenv import load_dotenv

# Local .env for development; real deployments set the environment directly
load_dotenv()


def _env_list(name: str, default: str = '') -> List[str]:
    """Split a comma-separated environment variable into a clean list."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(',') if item.strip()]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class SecurityConfig:
    """
    Central configuration class for the request-security pipeline.
    All security-critical parameters are defined here with secure defaults.
    """

    IS_PRODUCTION = True

    # ==================== CRYPTOGRAPHIC SETTINGS ====================

    # No fallback: a missing signing secret is a configuration error
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY')
    JWT_ALGORITHM = 'HS256'
    JWT_ISSUER = 'aky-admin-portal'
    JWT_AUDIENCE = 'aky-admin-users'
    JWT_DEFAULT_TTL = timedelta(hours=1)

    # Argon2id parameters - memory-hard KDF resistant to GPU attacks
    ARGON2_TIME_COST = 3  # Number of iterations
    ARGON2_MEMORY_COST = 65536  # 64 MB memory usage
    ARGON2_PARALLELISM = 4  # Number of parallel threads
    ARGON2_HASH_LENGTH = 32  # Output hash length in bytes
    ARGON2_SALT_LENGTH = 16  # Salt length in bytes

    # Session ID / CSRF token entropy - 256 bits
    TOKEN_BYTES = 32

    # ==================== SESSION MANAGEMENT ====================

    # Idle timeout measured from last activity
    SESSION_MAX_AGE = timedelta(hours=1)
    SESSION_COOKIE_NAME = 'session-id'

    # ==================== COOKIE SECURITY ====================

    COOKIE_SECURE = True  # HTTPS only
    COOKIE_HTTPONLY = True  # Prevent JavaScript access (XSS protection)
    COOKIE_SAMESITE = 'Strict'
    COOKIE_DOMAIN = os.getenv('COOKIE_DOMAIN') or None
    COOKIE_PATH = '/'

    # ==================== RATE LIMITING ====================

    # Strict limiter for login / auth endpoints
    LOGIN_RATE_LIMIT = 5
    LOGIN_RATE_WINDOW = timedelta(minutes=15)
    LOGIN_RATE_BLOCK = timedelta(minutes=30)

    # General API limiter
    API_RATE_LIMIT = 100
    API_RATE_WINDOW = timedelta(minutes=1)
    API_RATE_BLOCK = timedelta(minutes=5)

    # Sensitive operations limiter
    STRICT_RATE_LIMIT = 10
    STRICT_RATE_WINDOW = timedelta(minutes=1)
    STRICT_RATE_BLOCK = timedelta(minutes=10)

    # ==================== BRUTE FORCE PROTECTION ====================

    MAX_LOGIN_ATTEMPTS = 5
    LOGIN_ATTEMPT_WINDOW = timedelta(minutes=15)
    ACCOUNT_LOCKOUT_DURATION = timedelta(minutes=30)

    # ==================== TWO-FACTOR SETTINGS ====================

    TWO_FACTOR_CODE_LENGTH = 6
    TWO_FACTOR_CODE_EXPIRES = timedelta(minutes=10)
    TWO_FACTOR_MAX_ATTEMPTS = 3
    TWO_FACTOR_RESEND_COOLDOWN = timedelta(minutes=1)

    # ==================== AUDIT LOGGING ====================

    AUDIT_MAX_ENTRIES = 10000
    ALERT_FAILED_LOGINS = 5
    ALERT_SUSPICIOUS_ACTIVITY = 3
    ALERT_WINDOW = timedelta(minutes=15)
    AUDIT_STATS_WINDOW = timedelta(hours=24)

    # ==================== BACKGROUND CLEANUP ====================

    SWEEP_INTERVAL = timedelta(minutes=5)
    ENABLE_BACKGROUND_SWEEPS = True

    # ==================== MIDDLEWARE ====================

    ENABLE_RATE_LIMIT = True
    ENABLE_IP_WHITELIST = _env_flag('ENABLE_IP_WHITELIST', False)
    ENABLE_SESSION_VALIDATION = True
    ENABLE_AUDIT_LOGGING = True
    ENABLE_CSRF_PROTECTION = True
    # Opt-in synchronizer-token check on every state-changing request
    CSRF_STRICT_MODE = _env_flag('CSRF_STRICT_MODE', False)

    ALLOWED_IPS = _env_list('ALLOWED_IPS')

    PUBLIC_PATHS = [
        '/',
        '/about',
        '/contact',
        '/news',
        '/api/contact',
        '/api/newsletter',
        '/api/search',
        '/login',
        '/api/auth/login',
        '/api/auth/2fa',
    ]
    ADMIN_PATHS = [
        '/dashboard',
        '/api/dashboard',
        '/api/admin',
    ]
    LOGIN_PAGE = '/login'

    CORS_ALLOWED_ORIGINS = _env_list(
        'CORS_ALLOWED_ORIGINS',
        'https://abbakabiryusuf.com,https://www.abbakabiryusuf.com,'
        'http://localhost:3000,http://localhost:3001,http://127.0.0.1:3000',
    )

    # ==================== ADMIN ACCOUNT ====================

    ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', '')
    ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', '')
    ADMIN_ROLE = os.getenv('ADMIN_ROLE', 'admin')
    ADMIN_REQUIRE_TWO_FACTOR = _env_flag('ADMIN_REQUIRE_TWO_FACTOR', True)

    # ==================== EMAIL SETTINGS ====================

    SMTP_HOST = os.getenv('SMTP_HOST', 'localhost')
    SMTP_PORT = int(os.getenv('SMTP_PORT', '587'))
    SMTP_USERNAME = os.getenv('SMTP_USERNAME', '')
    SMTP_PASSWORD = os.getenv('SMTP_PASSWORD', '')
    SMTP_USE_TLS = True
    EMAIL_FROM = os.getenv('EMAIL_FROM', 'noreply@abbakabiryusuf.com')


class DevelopmentConfig(SecurityConfig):
    """Development configuration - less strict for local testing"""
    IS_PRODUCTION = False
    COOKIE_SECURE = False  # Allow HTTP in development


class ProductionConfig(SecurityConfig):
    """Production configuration - maximum security"""
    IS_PRODUCTION = True
    COOKIE_SECURE = True


def get_config() -> SecurityConfig:
    """
    Returns appropriate configuration based on environment.
    Default to production for safety.
    """
    env = os.getenv('FLASK_ENV', 'production')
    if env == 'development':
        return DevelopmentConfig()
    return ProductionConfig()
