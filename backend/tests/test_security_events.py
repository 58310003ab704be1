"""
Tests for the security event log and its burst detector.
"""

from datetime import timedelta
from unittest.mock import patch

from adsync.services.security_events import (
    ALERT_EVENT,
    SUSPICIOUS_ACTIVITY_THRESHOLD,
    SecurityEventLog,
)
from adsync.utils import utcnow


def test_events_are_recorded(events):
    events.log_security_event("token_accessed", {"force_refresh": False}, user_id=7, account_id="acc")
    recorded = events.recent_events("token_accessed")
    assert len(recorded) == 1
    assert recorded[0].user_id == "7"
    assert recorded[0].details == {"force_refresh": False}


def test_alert_after_threshold_for_same_user(events):
    for _ in range(SUSPICIOUS_ACTIVITY_THRESHOLD - 1):
        events.log_security_event("token_refresh_failed", user_id="u1")
    assert events.recent_events(ALERT_EVENT) == []

    events.log_security_event("token_refresh_failed", user_id="u1")
    alerts = events.recent_events(ALERT_EVENT)
    assert len(alerts) == 1
    assert alerts[0].details["event_type"] == "token_refresh_failed"
    assert alerts[0].details["event_count"] == SUSPICIOUS_ACTIVITY_THRESHOLD


def test_different_users_do_not_trigger(events):
    for i in range(SUSPICIOUS_ACTIVITY_THRESHOLD):
        events.log_security_event("token_refresh_failed", user_id=f"u{i}")
    assert events.recent_events(ALERT_EVENT) == []


def test_same_ip_triggers(events):
    for i in range(SUSPICIOUS_ACTIVITY_THRESHOLD):
        events.log_security_event("oauth_code_exchange_failed", user_id=f"u{i}", ip_address="10.0.0.1")
    assert len(events.recent_events(ALERT_EVENT)) == 1


def test_clear_old_events(events):
    events.log_security_event("token_accessed", user_id="u1")
    events.log_security_event("token_accessed", user_id="u1")
    assert events.clear_old_events(now=utcnow() + timedelta(days=1, minutes=1)) == 2
    assert len(events) == 0


def test_recent_events_filters_by_user(events):
    events.log_security_event("token_accessed", user_id="a")
    events.log_security_event("token_accessed", user_id="b")
    assert [e.user_id for e in events.recent_events(user_id="b")] == ["b"]


def test_logging_failure_does_not_raise():
    log = SecurityEventLog()
    with patch.object(log, "_check_for_suspicious_activity", side_effect=RuntimeError("boom")):
        log.log_security_event("token_accessed", user_id="u1")
    assert len(log) == 1
