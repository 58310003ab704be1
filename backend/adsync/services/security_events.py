"""
Security Events — in-memory audit trail of token access, refreshes,
revocations and failures, with a simple burst detector.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from adsync.utils import utcnow

logger = logging.getLogger(__name__)

SUSPICIOUS_ACTIVITY_THRESHOLD = 10
SUSPICIOUS_ACTIVITY_WINDOW = timedelta(hours=1)
RETENTION = timedelta(days=1)
MAX_EVENTS = 10_000

ALERT_EVENT = "security_alert"


@dataclass
class SecurityEvent:
    type: str
    details: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class SecurityEventLog:
    def __init__(self, max_events: int = MAX_EVENTS):
        self._events: deque[SecurityEvent] = deque(maxlen=max_events)

    def log_security_event(
        self,
        event_type: str,
        details: Optional[dict[str, Any]] = None,
        user_id: Optional[Any] = None,
        account_id: Optional[Any] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Record an event. Never raises: a broken audit sink must not break the caller."""
        try:
            event = SecurityEvent(
                type=event_type,
                details=dict(details or {}),
                user_id=str(user_id) if user_id is not None else None,
                account_id=str(account_id) if account_id is not None else None,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self._events.append(event)
            logger.info(f"Security event: {event_type} user={event.user_id} account={event.account_id} {event.details}")
            if event_type != ALERT_EVENT:
                self._check_for_suspicious_activity(event)
        except Exception as e:
            logger.error(f"Failed to record security event {event_type}: {e}")

    def _check_for_suspicious_activity(self, event: SecurityEvent) -> None:
        since = event.timestamp - SUSPICIOUS_ACTIVITY_WINDOW
        similar = [
            e for e in self._events
            if e.type == event.type
            and e.timestamp >= since
            and (
                (event.user_id is not None and e.user_id == event.user_id)
                or (event.ip_address is not None and e.ip_address == event.ip_address)
            )
        ]
        if len(similar) >= SUSPICIOUS_ACTIVITY_THRESHOLD:
            self.send_security_alert(
                "suspicious_activity_detected",
                f"Suspicious activity detected: {event.type}",
                {
                    "event_type": event.type,
                    "event_count": len(similar),
                    "user_id": event.user_id,
                    "ip_address": event.ip_address,
                },
            )

    def send_security_alert(self, alert_type: str, message: str, details: Optional[dict] = None) -> None:
        logger.warning(f"Security Alert: {alert_type} - {message} {details or {}}")
        self.log_security_event(ALERT_EVENT, {"type": alert_type, "message": message, **(details or {})})

    def recent_events(
        self,
        event_type: Optional[str] = None,
        user_id: Optional[Any] = None,
        limit: int = 50,
    ) -> list[SecurityEvent]:
        events = [
            e for e in self._events
            if (event_type is None or e.type == event_type)
            and (user_id is None or e.user_id == str(user_id))
        ]
        return events[-limit:]

    def clear_old_events(self, now: Optional[datetime] = None) -> int:
        """Drop events older than one day. Returns how many were removed."""
        cutoff = (now or utcnow()) - RETENTION
        kept = [e for e in self._events if e.timestamp >= cutoff]
        removed = len(self._events) - len(kept)
        self._events.clear()
        self._events.extend(kept)
        return removed

    def __len__(self) -> int:
        return len(self._events)


security_events = SecurityEventLog()


def log_security_event(event_type: str, details: Optional[dict[str, Any]] = None, **kwargs) -> None:
    security_events.log_security_event(event_type, details, **kwargs)
