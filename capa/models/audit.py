"""
Corrective Action Tracker
Audit domain model.

Records:
    - AuditEntry: immutable, append-only audit trail entry for one mutation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from capa.utils.helpers import iso, parse_datetime


class AuditKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    CLOSED = "closed"
    COMMENTED = "commented"
    ASSIGNED = "assigned"


@dataclass(frozen=True)
class AuditEntry:
    """
    One row per create / batched update / status change / closure / comment.

    ``changes`` carries ``{field: {"old": ..., "new": ...}}`` snapshots.
    """
    id: str
    action_id: str
    kind: AuditKind
    actor_id: str
    actor_name: str
    timestamp: datetime
    description: str = ""
    changes: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action_id": self.action_id,
            "kind": self.kind.value,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "timestamp": iso(self.timestamp),
            "description": self.description,
            "changes": self.changes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        return cls(
            id=data["id"],
            action_id=data["action_id"],
            kind=AuditKind(data["kind"]),
            actor_id=data.get("actor_id") or "system",
            actor_name=data.get("actor_name") or "",
            timestamp=parse_datetime(data["timestamp"]),
            description=data.get("description") or "",
            changes=data.get("changes") or {},
        )
