"""
Audit Logging Module

Append-only, in-memory record of security-relevant events:
- Ring buffer capped at AUDIT_MAX_ENTRIES (oldest evicted first)
- Per-IP threshold alerting after every write
- Filtered queries, dashboard statistics and JSON/CSV export
"""

import csv
import io
import json
import logging
import threading
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from werkzeug.wrappers import Request

from config import SecurityConfig
from models import (
    FAILURE_EVENTS,
    AuditLogEntry,
    Category,
    FailedIP,
    SecurityEventType,
    SecurityStats,
    Severity,
)
from utils import extract_client_info, utc_now

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("security.alerts")

CSV_COLUMNS = [
    "id", "timestamp", "userId", "sessionId", "action", "resource",
    "method", "path", "ipAddress", "userAgent", "success", "errorMessage",
    "severity", "category",
]

FAILED_LOGIN_ACTIONS = frozenset({
    SecurityEventType.LOGIN_ATTEMPT.value,
    SecurityEventType.LOGIN_FAILURE.value,
})
ALERT_ACTION = "security_alert"
_ELEVATED = (Severity.HIGH, Severity.CRITICAL)

AlertHandler = Callable[[str, Dict[str, Any]], None]


def _is_failed_login(entry: AuditLogEntry) -> bool:
    return entry.action in FAILED_LOGIN_ACTIONS and not entry.success


def _csv_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _csv_line(fields: List[Any], quoting: int = csv.QUOTE_MINIMAL) -> str:
    output = io.StringIO()
    csv.writer(output, quoting=quoting, lineterminator="").writerow(
        [_csv_value(field) for field in fields]
    )
    return output.getvalue()


class AuditLogger:
    """Security audit trail with threshold-based alerting"""

    def __init__(
        self,
        config: SecurityConfig,
        clock: Callable[[], datetime] = utc_now,
        alert_handler: Optional[AlertHandler] = None,
    ):
        self.config = config
        self.max_logs = config.AUDIT_MAX_ENTRIES
        self.failed_login_threshold = config.ALERT_FAILED_LOGINS
        self.suspicious_threshold = config.ALERT_SUSPICIOUS_ACTIVITY
        self.alert_window = config.ALERT_WINDOW
        self.alert_handler = alert_handler
        self._clock = clock
        self._logs: Deque[AuditLogEntry] = deque(maxlen=self.max_logs)
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._logs)

    def log(
        self,
        action: str,
        resource: str,
        request: Request,
        *,
        success: bool,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.LOW,
        category: Category = Category.SYSTEM,
    ) -> AuditLogEntry:
        client = extract_client_info(request)
        entry = AuditLogEntry(
            id=uuid.uuid4().hex,
            timestamp=self._clock(),
            user_id=user_id,
            session_id=session_id,
            action=action,
            resource=resource,
            method=request.method,
            path=request.path,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            success=success,
            error_message=error_message,
            metadata=dict(metadata or {}),
            severity=severity,
            category=category,
        )

        with self._lock:
            self._logs.append(entry)

        if not self.config.IS_PRODUCTION:
            logger.info("[AUDIT] %s: %s on %s success=%s user=%s ip=%s error=%s",
                        severity.value.upper(), action, resource, success,
                        user_id, client.ip_address, error_message)

        self.check_security_alerts(entry)
        return entry

    def log_security_event(
        self,
        event_type: SecurityEventType,
        request: Request,
        severity: Severity,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        client = extract_client_info(request)
        metadata = {"eventType": event_type.value}
        metadata.update(details or {})
        metadata.update({
            "ipAddress": client.ip_address,
            "userAgent": client.user_agent,
            "origin": client.origin,
            "referer": client.referer,
        })
        return self.log(
            event_type.value,
            "security",
            request,
            user_id=user_id,
            session_id=session_id,
            success=event_type not in FAILURE_EVENTS,
            metadata=metadata,
            severity=severity,
            category=Category.SECURITY,
        )

    # ==================== ALERTING ====================

    def check_security_alerts(self, entry: AuditLogEntry):
        """Raise alerts when one client IP crosses a threshold inside the window"""
        try:
            window_start = self._clock() - self.alert_window
            with self._lock:
                recent = [
                    log for log in self._logs
                    if log.ip_address == entry.ip_address
                    and log.timestamp > window_start
                    and log.action != ALERT_ACTION
                ]

            if _is_failed_login(entry):
                failures = sum(1 for log in recent if _is_failed_login(log))
                if failures >= self.failed_login_threshold:
                    self.trigger_security_alert(
                        "Multiple failed login attempts",
                        {
                            "ipAddress": entry.ip_address,
                            "attempts": failures,
                            "timeWindow": int(self.alert_window.total_seconds() // 60),
                        },
                        severity=Severity.HIGH,
                        source=entry,
                    )

            if entry.severity in _ELEVATED:
                suspicious = sum(1 for log in recent if log.severity in _ELEVATED)
                if suspicious >= self.suspicious_threshold:
                    self.trigger_security_alert(
                        "Multiple suspicious activities detected",
                        {
                            "ipAddress": entry.ip_address,
                            "activities": suspicious,
                            "timeWindow": int(self.alert_window.total_seconds() // 60),
                        },
                        severity=Severity.CRITICAL,
                        source=entry,
                    )
        except Exception:
            logger.exception("Security alert evaluation failed")

    def trigger_security_alert(
        self,
        message: str,
        details: Dict[str, Any],
        severity: Severity = Severity.HIGH,
        source: Optional[AuditLogEntry] = None,
    ):
        """
        Escalate an alert: log it prominently and record it in the audit trail.

        External delivery (paging, chat, email) goes through `alert_handler`;
        its failures are logged, never raised to the caller.
        """
        alert_logger.error("[SECURITY ALERT] %s %s", message, details)

        alert = AuditLogEntry(
            id=uuid.uuid4().hex,
            timestamp=self._clock(),
            user_id=source.user_id if source else None,
            session_id=source.session_id if source else None,
            action=ALERT_ACTION,
            resource="security",
            method=source.method if source else "",
            path=source.path if source else "",
            ip_address=details.get("ipAddress", source.ip_address if source else "unknown"),
            user_agent=source.user_agent if source else "unknown",
            success=False,
            error_message=message,
            metadata=dict(details, message=message),
            severity=severity,
            category=Category.SECURITY,
        )
        # Appended directly: alerts do not re-enter threshold evaluation
        with self._lock:
            self._logs.append(alert)

        if self.alert_handler is not None:
            try:
                self.alert_handler(message, details)
            except Exception:
                logger.exception("Security alert handler failed")

    # ==================== CONVENIENCE EVENTS ====================

    def log_login_attempt(self, request: Request, email: str, success: bool,
                          error_message: Optional[str] = None, user_id: Optional[str] = None):
        return self.log_security_event(
            SecurityEventType.LOGIN_SUCCESS if success else SecurityEventType.LOGIN_FAILURE,
            request,
            severity=Severity.LOW if success else Severity.MEDIUM,
            user_id=user_id,
            details={"email": email, "errorMessage": error_message},
        )

    def log_logout(self, request: Request, user_id: str, session_id: str):
        return self.log_security_event(
            SecurityEventType.LOGOUT, request, severity=Severity.LOW,
            user_id=user_id, session_id=session_id,
        )

    def log_unauthorized_access(self, request: Request, resource: str,
                                user_id: Optional[str] = None, reason: Optional[str] = None):
        details = {"resource": resource, "path": request.path}
        if reason:
            details["reason"] = reason
        return self.log_security_event(
            SecurityEventType.UNAUTHORIZED_ACCESS, request, severity=Severity.HIGH,
            user_id=user_id, details=details,
        )

    def log_suspicious_activity(self, request: Request, activity: str, details: Dict[str, Any]):
        return self.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, request, severity=Severity.HIGH,
            details=dict(details, activity=activity),
        )

    # ==================== QUERIES ====================

    def get_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        category: Union[Category, str, None] = None,
        severity: Union[Severity, str, None] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """Filtered entries, newest first; every filter is optional and composable"""
        if isinstance(category, str):
            category = Category(category)
        if isinstance(severity, str):
            severity = Severity(severity)

        with self._lock:
            logs = list(reversed(self._logs))

        if user_id:
            logs = [log for log in logs if log.user_id == user_id]
        if action:
            logs = [log for log in logs if action in log.action]
        if category:
            logs = [log for log in logs if log.category == category]
        if severity:
            logs = [log for log in logs if log.severity == severity]
        if success is not None:
            logs = [log for log in logs if log.success == success]
        if start_date:
            logs = [log for log in logs if log.timestamp >= start_date]
        if end_date:
            logs = [log for log in logs if log.timestamp <= end_date]
        if ip_address:
            logs = [log for log in logs if log.ip_address == ip_address]

        logs.sort(key=lambda log: log.timestamp, reverse=True)

        if limit:
            logs = logs[:limit]
        return logs

    def get_security_stats(self, window: Optional[timedelta] = None) -> SecurityStats:
        window_start = self._clock() - (window or self.config.AUDIT_STATS_WINDOW)
        with self._lock:
            recent = [log for log in self._logs if log.timestamp > window_start]

        failed = [log for log in recent if _is_failed_login(log)]
        failed_by_ip = Counter(log.ip_address for log in failed)

        return SecurityStats(
            total_events=len(recent),
            failed_logins=len(failed),
            successful_logins=sum(
                1 for log in recent if log.action == SecurityEventType.LOGIN_SUCCESS.value
            ),
            suspicious_activities=sum(1 for log in recent if log.severity in _ELEVATED),
            unique_ips=len({log.ip_address for log in recent}),
            top_failed_ips=[FailedIP(ip=ip, count=count) for ip, count in failed_by_ip.most_common(10)],
        )

    def export_logs(self, format: str = "json") -> str:
        with self._lock:
            logs = list(self._logs)

        if format == "csv":
            rows = [_csv_line(CSV_COLUMNS)]
            for log in logs:
                # User agents are always quoted, the other columns only when needed
                rows.append(",".join([
                    _csv_line([
                        log.id, log.timestamp.isoformat(), log.user_id, log.session_id,
                        log.action, log.resource, log.method, log.path, log.ip_address,
                    ]),
                    _csv_line([log.user_agent], quoting=csv.QUOTE_ALL),
                    _csv_line([
                        log.success, log.error_message, log.severity.value, log.category.value,
                    ]),
                ]))
            return "\n".join(rows)

        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")
        return json.dumps([log.to_dict() for log in logs], indent=2, default=str)

    def clear(self):
        with self._lock:
            self._logs.clear()
