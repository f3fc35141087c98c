"""
Corrective Action Tracker
Notification domain model.

Records:
    - Notification: recipient-addressed, typed message with read tracking.
      Produced only as a side effect of workflow events or the deadline sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from capa.utils.helpers import iso, parse_datetime, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

class NotificationType(str, Enum):
    PENDING_ANALYSIS = "pending-analysis"
    PENDING_VERIFICATION = "pending-verification"
    PENDING_CLOSURE = "pending-closure"
    CLOSED = "closed"
    DIRECTOR_REVIEW = "director-review"
    BIS_GENERATED = "bis-generated"
    MULTIPLE_BIS_WARNING = "multiple-bis-warning"
    OVERDUE = "overdue"
    UPCOMING_DEADLINE = "upcoming-deadline"
    PERSISTENCE_ERROR = "persistence-error"


NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


@dataclass
class Notification:
    """
    In-app notification.

    One record per recipient per event. Never mutates an action.
    """
    id: str
    recipient: str
    type: NotificationType
    title: str
    message: str = ""
    severity: str = "info"
    action_id: str | None = None
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime | None = None

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "action_id": self.action_id,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data["id"],
            recipient=data["recipient"],
            type=NotificationType(data["type"]),
            title=data.get("title") or "",
            message=data.get("message") or "",
            severity=data.get("severity") or "info",
            action_id=data.get("action_id"),
            is_read=bool(data.get("is_read")),
            read_at=parse_datetime(data.get("read_at")),
            created_at=parse_datetime(data.get("created_at")),
        )

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
