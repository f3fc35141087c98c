"""
Corrective Action Tracker
Storage domain model.

Models:
    - StorageBlob: one row per collection key, holding the full serialized
      collection. Writes always replace the whole payload.
"""

import json
from datetime import datetime, timezone

from capa.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ACTIONS_KEY = "corrective-actions-data"
COMMENTS_KEY = "corrective-actions-comments"
NOTIFICATIONS_KEY = "notifications-data"
AUDIT_KEY = "audit-history-data"


class StorageBlob(db.Model):
    """Key → JSON array blob with full-overwrite semantics."""

    __tablename__ = "storage_blobs"

    key = db.Column(db.String(80), primary_key=True)
    payload = db.Column(db.Text, nullable=False, default="[]",
                        comment="JSON array; the whole collection")
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def items(self) -> list:
        try:
            return json.loads(self.payload or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    def __repr__(self):
        return f"<StorageBlob {self.key}>"
