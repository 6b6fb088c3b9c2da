import csv
import json

import pytest

from audit import CSV_COLUMNS, AuditLogger
from models import Category, SecurityEventType, Severity

from conftest import SecurityTestConfig, make_request


@pytest.fixture()
def audit(clock):
    return AuditLogger(SecurityTestConfig(), clock)


def _alerts(audit, ip=None):
    return audit.get_logs(action="security_alert", ip_address=ip)


def _fail_logins(audit, count, ip="1.2.3.4"):
    for _ in range(count):
        audit.log_login_attempt(make_request("/api/auth/login", "POST", ip=ip),
                                "admin@example.com", success=False,
                                error_message="invalid_password")


def test_log_records_request_context(audit, clock):
    request = make_request("/api/dashboard/stats", ip="198.51.100.3", user_agent="agent-A")

    entry = audit.log("GET_request", "/api/dashboard/stats", request, success=True,
                      user_id="user-1", category=Category.ADMIN)

    assert entry.timestamp == clock.now
    assert entry.ip_address == "198.51.100.3"
    assert entry.user_agent == "agent-A"
    assert entry.method == "GET"
    assert entry.path == "/api/dashboard/stats"
    assert entry.severity is Severity.LOW
    assert entry.category is Category.ADMIN
    assert len(audit) == 1


def test_entry_ids_are_unique(audit):
    ids = {audit.log("x", "r", make_request(), success=True).id for _ in range(20)}

    assert len(ids) == 20


def test_ring_buffer_evicts_oldest(clock):
    class Small(SecurityTestConfig):
        AUDIT_MAX_ENTRIES = 5

    audit = AuditLogger(Small(), clock)
    for i in range(7):
        audit.log(f"action_{i}", "r", make_request(ip=f"10.0.0.{i}"), success=True)

    actions = [entry.action for entry in audit.get_logs()]

    assert len(audit) == 5
    assert actions == ["action_6", "action_5", "action_4", "action_3", "action_2"]


def test_security_event_metadata_and_success(audit):
    request = make_request(ip="198.51.100.4", headers={"Origin": "https://evil.example"})

    hijack = audit.log_security_event(SecurityEventType.SESSION_HIJACK, request,
                                      severity=Severity.CRITICAL, details={"reason": "ua"})
    logout = audit.log_security_event(SecurityEventType.LOGOUT, request, severity=Severity.LOW)

    assert hijack.success is False
    assert hijack.category is Category.SECURITY
    assert hijack.metadata["eventType"] == "session_hijack"
    assert hijack.metadata["reason"] == "ua"
    assert hijack.metadata["origin"] == "https://evil.example"
    assert logout.success is True


def test_failed_login_alert_at_threshold(audit):
    _fail_logins(audit, 4)
    assert _alerts(audit) == []

    _fail_logins(audit, 1)
    alerts = _alerts(audit, ip="1.2.3.4")

    assert len(alerts) == 1
    assert alerts[0].severity is Severity.HIGH
    assert alerts[0].category is Category.SECURITY
    assert alerts[0].metadata["attempts"] == 5
    assert alerts[0].error_message == "Multiple failed login attempts"


def test_failed_logins_are_counted_per_ip(audit):
    _fail_logins(audit, 4, ip="1.2.3.4")
    _fail_logins(audit, 4, ip="5.6.7.8")

    assert _alerts(audit) == []


def test_failed_logins_outside_window_do_not_alert(audit, clock):
    _fail_logins(audit, 4)
    clock.advance(minutes=16)
    _fail_logins(audit, 1)

    assert _alerts(audit) == []


def test_suspicious_activity_alert(audit):
    for _ in range(3):
        audit.log_unauthorized_access(make_request("/api/admin", ip="9.9.9.9"), "/api/admin")

    alerts = _alerts(audit, ip="9.9.9.9")

    assert len(alerts) == 1
    assert alerts[0].severity is Severity.CRITICAL
    assert alerts[0].error_message == "Multiple suspicious activities detected"


def test_alert_handler_receives_alerts(clock):
    received = []
    audit = AuditLogger(SecurityTestConfig(), clock,
                        alert_handler=lambda message, details: received.append((message, details)))

    _fail_logins(audit, 5)

    assert received == [("Multiple failed login attempts",
                         {"ipAddress": "1.2.3.4", "attempts": 5, "timeWindow": 15})]


def test_failing_alert_handler_does_not_break_logging(clock):
    def broken(message, details):
        raise RuntimeError("pager down")

    audit = AuditLogger(SecurityTestConfig(), clock, alert_handler=broken)

    _fail_logins(audit, 6)

    assert len(audit.get_logs(action="login_failure")) == 6


def test_get_logs_filters(audit, clock):
    audit.log_login_attempt(make_request(ip="1.1.1.1"), "a@example.com", success=True, user_id="u1")
    clock.advance(minutes=1)
    audit.log_login_attempt(make_request(ip="2.2.2.2"), "b@example.com", success=False)
    clock.advance(minutes=1)
    audit.log("GET_request", "/api/dashboard", make_request(ip="1.1.1.1"), success=True,
              user_id="u1", category=Category.ADMIN)

    assert [e.action for e in audit.get_logs()] == ["GET_request", "login_failure", "login_success"]
    assert len(audit.get_logs(user_id="u1")) == 2
    assert len(audit.get_logs(action="login")) == 2
    assert len(audit.get_logs(category="admin")) == 1
    assert len(audit.get_logs(category=Category.SECURITY)) == 2
    assert len(audit.get_logs(success=False)) == 1
    assert len(audit.get_logs(severity="medium")) == 1
    assert len(audit.get_logs(ip_address="1.1.1.1")) == 2
    assert len(audit.get_logs(limit=1)) == 1
    assert len(audit.get_logs(start_date=clock.now)) == 1


def test_security_stats(audit):
    _fail_logins(audit, 3, ip="1.2.3.4")
    _fail_logins(audit, 1, ip="5.6.7.8")
    audit.log_login_attempt(make_request(ip="5.6.7.8"), "a@example.com", success=True)
    audit.log_suspicious_activity(make_request(ip="7.7.7.7"), "port_scan", {})

    stats = audit.get_security_stats()

    assert stats.total_events == 6
    assert stats.failed_logins == 4
    assert stats.successful_logins == 1
    assert stats.suspicious_activities == 1
    assert stats.unique_ips == 3
    assert [(f.ip, f.count) for f in stats.top_failed_ips] == [("1.2.3.4", 3), ("5.6.7.8", 1)]


def test_stats_ignore_old_entries(audit, clock):
    _fail_logins(audit, 2)
    clock.advance(hours=25)

    assert audit.get_security_stats().total_events == 0


def test_export_json(audit):
    audit.log_login_attempt(make_request(ip="1.1.1.1"), "a@example.com", success=True, user_id="u1")

    exported = json.loads(audit.export_logs("json"))

    assert exported[0]["userId"] == "u1"
    assert exported[0]["ipAddress"] == "1.1.1.1"
    assert exported[0]["severity"] == "low"
    assert exported[0]["category"] == "security"
    assert exported[0]["metadata"]["email"] == "a@example.com"


def test_export_csv_quotes_user_agent(audit):
    audit.log("x", "r", make_request(user_agent='Agent "quoted", v1'), success=False)

    lines = audit.export_logs("csv").split("\n")

    assert lines[0] == ",".join(CSV_COLUMNS)
    assert '"Agent ""quoted"", v1"' in lines[1]
    assert ",false," in lines[1]


def test_export_csv_quotes_other_fields_only_when_needed(audit):
    audit.log("x", "r", make_request(user_agent="agent-A"), success=True,
              error_message="bad, input")

    line = audit.export_logs("csv").split("\n")[1]

    assert ',x,r,GET,/,203.0.113.5,"agent-A",true,"bad, input",low,system' in line
    row = next(csv.reader([line]))
    assert dict(zip(CSV_COLUMNS, row))["errorMessage"] == "bad, input"


def test_export_rejects_unknown_format(audit):
    with pytest.raises(ValueError):
        audit.export_logs("xml")


def test_clear(audit):
    audit.log("x", "r", make_request(), success=True)
    audit.clear()

    assert len(audit) == 0
