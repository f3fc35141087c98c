"""
Corrective Action Tracker
Audit Trail: append-only mutation log.

One entry per create, per batched field update, per status change, per
closure, per comment and per (re)assignment. Entries are never edited.
The collection is capped at ``retention`` entries; the oldest are evicted
first.

Usage:
    from capa.services.audit import AuditTrail

    trail = AuditTrail(blob_store, retention=1000)
    trail.log_status_changed("CA-0001", actor, "draft", "pending_analysis")
    trail.history("CA-0001")
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable

from capa.core.exceptions import PersistenceError
from capa.models.action import CorrectiveAction
from capa.models.audit import AuditEntry, AuditKind
from capa.models.storage import AUDIT_KEY
from capa.services.authorization import Actor
from capa.services.blob_store import BlobStore
from capa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 1000


class AuditTrail:
    """Bounded, append-only audit log keyed by action id."""

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        retention: int = DEFAULT_RETENTION,
        on_persistence_error: Callable[[PersistenceError], None] | None = None,
    ):
        self._blob = blob_store
        self._retention = retention
        self._on_persistence_error = on_persistence_error
        self._entries: list[AuditEntry] = [AuditEntry.from_dict(e) for e in blob_store.get(AUDIT_KEY)]

    # ── Writers ───────────────────────────────────────────────────────────

    def log_created(self, action: CorrectiveAction, actor: Actor) -> AuditEntry:
        desc = f"Action created: {action.title}"
        if action.is_bis:
            desc = f"BIS action created from {action.original_action_id}: {action.title}"
        return self._append(action.id, AuditKind.CREATED, actor, desc,
                            {"status": {"old": None, "new": action.status.value}})

    def log_updated(self, action_id: str, actor: Actor, changes: dict) -> AuditEntry | None:
        """One batched entry for all fields changed in a single update."""
        if not changes:
            return None
        fields = ", ".join(sorted(changes))
        return self._append(action_id, AuditKind.UPDATED, actor, f"Updated fields: {fields}", changes)

    def log_status_changed(self, action_id: str, actor: Actor, old: str, new: str) -> AuditEntry:
        return self._append(action_id, AuditKind.STATUS_CHANGED, actor,
                            f"Status changed from {old} to {new}",
                            {"status": {"old": old, "new": new}})

    def log_closed(self, action: CorrectiveAction, actor: Actor) -> AuditEntry:
        kind = action.closure_kind.value if action.closure_kind else None
        return self._append(action.id, AuditKind.CLOSED, actor,
                            f"Action closed ({kind or 'unspecified'})",
                            {"closure_kind": {"old": None, "new": kind}})

    def log_commented(self, action_id: str, actor: Actor, text: str) -> AuditEntry:
        preview = text if len(text) <= 80 else text[:77] + "..."
        return self._append(action_id, AuditKind.COMMENTED, actor, f"Comment added: {preview}")

    def log_assigned(self, action_id: str, actor: Actor, changes: dict) -> AuditEntry:
        who = ", ".join(f"{f}={c['new']}" for f, c in sorted(changes.items()))
        return self._append(action_id, AuditKind.ASSIGNED, actor, f"Reassigned: {who}", changes)

    def _append(self, action_id: str, kind: AuditKind, actor: Actor, description: str,
                changes: dict | None = None) -> AuditEntry:
        entry = AuditEntry(
            id=uuid.uuid4().hex,
            action_id=action_id,
            kind=kind,
            actor_id=actor.user_id,
            actor_name=actor.display_name,
            timestamp=utcnow(),
            description=description,
            changes=changes or {},
        )
        self._entries.append(entry)
        overflow = len(self._entries) - self._retention
        if overflow > 0:
            del self._entries[:overflow]
        self._persist()
        return entry

    def _persist(self) -> None:
        try:
            self._blob.put(AUDIT_KEY, [e.to_dict() for e in self._entries])
        except PersistenceError as exc:
            logger.error("Audit trail not persisted: %s", exc, extra={"storage_key": AUDIT_KEY})
            if self._on_persistence_error:
                self._on_persistence_error(exc)

    # ── Queries ───────────────────────────────────────────────────────────

    def entries(self, *, actor_id: str | None = None, kind: str | None = None,
                limit: int | None = None) -> list[AuditEntry]:
        """All entries, newest first, optionally filtered."""
        result = list(reversed(self._entries))
        if actor_id:
            result = [e for e in result if e.actor_id == actor_id]
        if kind:
            result = [e for e in result if e.kind.value == kind]
        if limit is not None:
            result = result[:limit]
        return result

    def history(self, action_id: str) -> list[AuditEntry]:
        return [e for e in reversed(self._entries) if e.action_id == action_id]

    def user_activity(self, user_id: str) -> list[AuditEntry]:
        return self.entries(actor_id=user_id)

    def activity_metrics(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)

        by_kind = Counter(e.kind.value for e in self._entries)
        by_user = Counter(e.actor_name or e.actor_id for e in self._entries)
        return {
            "total": len(self._entries),
            "this_week": sum(1 for e in self._entries if e.timestamp >= week_ago),
            "this_month": sum(1 for e in self._entries if e.timestamp >= month_ago),
            "by_kind": dict(by_kind),
            "by_user": dict(by_user),
            "top_users": [{"user": u, "count": c} for u, c in by_user.most_common(5)],
        }

    def __len__(self):
        return len(self._entries)
