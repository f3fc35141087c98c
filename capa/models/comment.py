"""
Corrective Action Tracker
Comment domain model.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from capa.utils.helpers import iso, parse_datetime


@dataclass
class Comment:
    id: str
    action_id: str
    user_id: str
    user_name: str
    text: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action_id": self.action_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "text": self.text,
            "created_at": iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Comment:
        return cls(
            id=data["id"],
            action_id=data["action_id"],
            user_id=data.get("user_id") or "",
            user_name=data.get("user_name") or "",
            text=data.get("text") or "",
            created_at=parse_datetime(data.get("created_at")),
        )
