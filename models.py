"""
In-memory data model for the security pipeline.

All records live in process-local maps owned by the service objects; nothing
here is persisted.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class LoginMethod(enum.Enum):
    PASSWORD = "password"
    TWO_FACTOR = "2fa"


class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(enum.Enum):
    AUTH = "auth"
    ADMIN = "admin"
    DATA = "data"
    SYSTEM = "system"
    SECURITY = "security"


class SecurityEventType(enum.Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    SESSION_HIJACK = "session_hijack"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    BRUTE_FORCE_DETECTED = "brute_force_detected"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DATA_ACCESS = "data_access"
    ADMIN_ACTION = "admin_action"
    SYSTEM_ERROR = "system_error"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


# Event types that always record success=False
FAILURE_EVENTS = frozenset({
    SecurityEventType.LOGIN_FAILURE,
    SecurityEventType.UNAUTHORIZED_ACCESS,
    SecurityEventType.SESSION_HIJACK,
})


@dataclass
class User:
    """Account record handed to the login layer by the user store"""
    id: str
    email: str
    password_hash: str
    role: str = "user"
    two_factor_enabled: bool = False
    phone: Optional[str] = None


@dataclass(frozen=True)
class ClientInfo:
    ip_address: str
    user_agent: str
    origin: str
    referer: str


# ==================== SESSIONS ====================

@dataclass
class SessionData:
    session_id: str
    user_id: str
    email: str
    role: str
    csrf_token: str
    created_at: datetime
    last_activity: datetime
    ip_address: str
    user_agent: str
    two_factor_verified: bool = False
    login_method: LoginMethod = LoginMethod.PASSWORD


@dataclass
class SessionValidation:
    valid: bool
    session: Optional[SessionData] = None
    reason: Optional[str] = None


# ==================== RATE LIMITING ====================

@dataclass
class RateLimitEntry:
    count: int
    reset_time: datetime
    blocked: bool = False
    block_until: Optional[datetime] = None


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    blocked: bool
    block_until: Optional[datetime] = None


@dataclass
class BruteForceEntry:
    count: int
    last_attempt: datetime
    blocked: bool = False
    block_until: Optional[datetime] = None


@dataclass
class BruteForceCheck:
    allowed: bool
    attempts_remaining: int
    block_until: Optional[datetime] = None


@dataclass
class BruteForceResult:
    blocked: bool
    attempts_remaining: int
    block_until: Optional[datetime] = None


# ==================== TWO-FACTOR ====================

@dataclass
class TwoFactorCode:
    code: str
    user_id: str
    email: str
    expires_at: datetime
    attempts: int
    max_attempts: int
    verified: bool
    created_at: datetime


@dataclass
class CodeIssueResult:
    success: bool
    code: Optional[str] = None
    expires_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class CodeVerifyResult:
    success: bool
    verified: bool
    attempts_remaining: Optional[int] = None
    error: Optional[str] = None
    # Machine-readable failure kind, one of the TwoFactorError codes
    reason: Optional[str] = None


@dataclass
class CodeStatus:
    exists: bool
    can_resend: bool
    verified: Optional[bool] = None
    expires_at: Optional[datetime] = None
    attempts_remaining: Optional[int] = None
    resend_cooldown_until: Optional[datetime] = None


# ==================== AUDIT ====================

@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    timestamp: datetime
    action: str
    resource: str
    method: str
    path: str
    ip_address: str
    user_agent: str
    success: bool
    severity: Severity = Severity.LOW
    category: Category = Category.SYSTEM
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation with camelCase keys, as exported to JSON"""
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'userId': self.user_id,
            'sessionId': self.session_id,
            'action': self.action,
            'resource': self.resource,
            'method': self.method,
            'path': self.path,
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'success': self.success,
            'errorMessage': self.error_message,
            'metadata': dict(self.metadata),
            'severity': self.severity.value,
            'category': self.category.value,
        }


@dataclass
class FailedIP:
    ip: str
    count: int


@dataclass
class SecurityStats:
    total_events: int
    failed_logins: int
    successful_logins: int
    suspicious_activities: int
    unique_ips: int
    top_failed_ips: List[FailedIP] = field(default_factory=list)
