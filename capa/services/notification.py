"""
Corrective Action Tracker
Notification Service.

Produces recipient-addressed, typed notifications for workflow events
(status changes, director review, BIS generation) and for the periodic
deadline sweep. Delivery is an external side channel: the default
``LogDeliveryChannel`` writes a simulated email and toast to the log.
No retries and no delivery acknowledgement.

The sweep types (overdue, upcoming-deadline) are deduplicated: at most one
notification of each type per action, whatever its read state.

The collection is capped at ``retention`` entries. Read notifications are
evicted first, oldest first; unread ones go only when nothing read is left.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import date, timedelta

from capa.core.exceptions import PersistenceError
from capa.models.action import ActionStatus, CorrectiveAction, TERMINAL_STATUSES
from capa.models.notification import NOTIFICATION_SEVERITIES, Notification, NotificationType
from capa.models.storage import NOTIFICATIONS_KEY
from capa.services.blob_store import BlobStore
from capa.utils.helpers import utcnow

logger = logging.getLogger(__name__)
delivery_logger = logging.getLogger("capa.delivery")

DEFAULT_RETENTION = 500

BROADCAST = "all"

# status reached → (notification type, title template)
_STATUS_NOTIFICATIONS = {
    ActionStatus.PENDING_ANALYSIS: (NotificationType.PENDING_ANALYSIS, "Action {id} is pending analysis"),
    ActionStatus.PENDING_VERIFICATION: (NotificationType.PENDING_VERIFICATION, "Action {id} is pending verification"),
    ActionStatus.PENDING_CLOSURE: (NotificationType.PENDING_CLOSURE, "Action {id} is pending closure"),
    ActionStatus.CLOSED: (NotificationType.CLOSED, "Action {id} has been closed"),
}


def resolve_status_recipient(action: CorrectiveAction, status: ActionStatus) -> str | None:
    """Who must act on *action* once it reaches *status*; None if nobody is configured."""
    if status == ActionStatus.PENDING_ANALYSIS:
        recipient = action.analysis_responsible
    elif status == ActionStatus.PENDING_VERIFICATION:
        recipient = action.implementation_responsible
    elif status == ActionStatus.PENDING_CLOSURE:
        recipient = action.closure_responsible or action.created_by
    elif status == ActionStatus.CLOSED:
        recipient = action.created_by
    else:
        recipient = None
    return recipient or None


class LogDeliveryChannel:
    """Simulated delivery: one email line and one toast line per notification."""

    def deliver(self, notification: Notification) -> None:
        delivery_logger.info(
            "email to=%s subject=%r", notification.recipient, notification.title,
            extra={"recipient": notification.recipient, "channel": "email",
                   "notification_type": notification.type.value,
                   "action_id": notification.action_id},
        )
        delivery_logger.info(
            "toast %s: %s", notification.title, notification.message,
            extra={"recipient": notification.recipient, "channel": "toast",
                   "notification_type": notification.type.value,
                   "action_id": notification.action_id},
        )


class NotificationService:
    """Notification collection plus the policies that feed it."""

    def __init__(self, blob_store: BlobStore, *, quality_direction: str = "quality-direction",
                 delivery=None, retention: int = DEFAULT_RETENTION):
        self._blob = blob_store
        self._retention = retention
        self.quality_direction = quality_direction
        self._delivery = delivery or LogDeliveryChannel()
        self._items: list[Notification] = [Notification.from_dict(n) for n in blob_store.get(NOTIFICATIONS_KEY)]

    # ── Create ────────────────────────────────────────────────────────────

    def create(self, *, recipient, type, title, message="", severity="info", action_id=None):
        """
        Create, store and deliver a single notification.

        Returns:
            A copy of the created Notification.

        Raises:
            ValueError: on an unknown type or severity.
        """
        if severity not in NOTIFICATION_SEVERITIES:
            raise ValueError(f"Unknown notification severity: {severity}")
        notif = Notification(
            id=uuid.uuid4().hex,
            recipient=recipient,
            type=NotificationType(type),
            title=title,
            message=message,
            severity=severity,
            action_id=action_id,
            created_at=utcnow(),
        )
        self._items.append(notif)
        self._evict()
        self._persist()
        try:
            self._delivery.deliver(notif)
        except Exception:
            logger.warning("Delivery failed for notification %s", notif.id, exc_info=True)
        return copy.deepcopy(notif)

    # ── Workflow events ───────────────────────────────────────────────────

    def notify_status_change(self, action: CorrectiveAction, new_status: ActionStatus):
        """Notify the party responsible for *new_status*; skip silently if none is set."""
        entry = _STATUS_NOTIFICATIONS.get(new_status)
        if entry is None:
            return None
        recipient = resolve_status_recipient(action, new_status)
        if not recipient:
            logger.debug("No recipient for %s on %s", new_status.value, action.id,
                         extra={"action_id": action.id})
            return None
        ntype, title = entry
        return self.create(
            recipient=recipient,
            type=ntype,
            title=title.format(id=action.id),
            message=action.title,
            severity="success" if new_status == ActionStatus.CLOSED else "info",
            action_id=action.id,
        )

    def notify_director_review_required(self, action: CorrectiveAction):
        return self.create(
            recipient=self.quality_direction,
            type=NotificationType.DIRECTOR_REVIEW,
            title=f"Action {action.id} needs review before closure",
            message=f"{action.title}: closure is marked non-conforming.",
            severity="warning",
            action_id=action.id,
        )

    def notify_bis_generated(self, original: CorrectiveAction, bis: CorrectiveAction):
        return self.create(
            recipient=self.quality_direction,
            type=NotificationType.BIS_GENERATED,
            title=f"BIS action {bis.id} generated",
            message=f"{original.id} was closed as non-conforming; follow-up {bis.title!r} created.",
            severity="warning",
            action_id=bis.id,
        )

    def check_multiple_bis_actions(self, bis: CorrectiveAction, related_count: int):
        """Warn quality direction when related BIS actions reach two or more."""
        if related_count < 2:
            return None
        return self.create(
            recipient=self.quality_direction,
            type=NotificationType.MULTIPLE_BIS_WARNING,
            title=f"{related_count} related BIS actions detected",
            message=(f"BIS action {bis.id} shares type, department or centre with "
                     f"{related_count - 1} other BIS action(s). Review for a recurring problem."),
            severity="error",
            action_id=bis.id,
        )

    def alert_persistence_failure(self, exc: PersistenceError):
        """Surface a failed storage write; the in-memory state stays authoritative."""
        return self.create(
            recipient=BROADCAST,
            type=NotificationType.PERSISTENCE_ERROR,
            title="Changes could not be saved",
            message=str(exc),
            severity="error",
        )

    # ── Deadline sweep ────────────────────────────────────────────────────

    def sweep_deadlines(self, actions: list[CorrectiveAction], *, today: date | None = None,
                        warning_days: int = 10) -> dict:
        """
        Create overdue / upcoming-deadline notifications for open actions.

        Returns:
            {"scanned", "overdue", "upcoming", "skipped_duplicates"}
        """
        today = today or date.today()
        horizon = today + timedelta(days=warning_days)
        results = {"scanned": 0, "overdue": 0, "upcoming": 0, "skipped_duplicates": 0}

        for action in actions:
            if action.status in TERMINAL_STATUSES or not action.due_date:
                continue
            results["scanned"] += 1
            if action.due_date < today:
                ntype = NotificationType.OVERDUE
                title = f"Action {action.id} is overdue"
                message = f"{action.title}: due date was {action.due_date.isoformat()}."
                severity = "warning"
            elif action.due_date <= horizon:
                ntype = NotificationType.UPCOMING_DEADLINE
                days = (action.due_date - today).days
                title = f"Action {action.id} is due in {days} day(s)"
                message = f"{action.title}: due {action.due_date.isoformat()}."
                severity = "info"
            else:
                continue

            if self.has_notification(action.id, ntype):
                results["skipped_duplicates"] += 1
                continue
            if not action.assigned_to:
                continue

            self.create(recipient=action.assigned_to, type=ntype, title=title,
                        message=message, severity=severity, action_id=action.id)
            results["overdue" if ntype == NotificationType.OVERDUE else "upcoming"] += 1

        logger.info("Deadline sweep: %s", results)
        return results

    def has_notification(self, action_id: str, ntype: NotificationType) -> bool:
        return any(n.action_id == action_id and n.type == ntype for n in self._items)

    # ── Query ─────────────────────────────────────────────────────────────

    def list_for_recipient(self, recipient=BROADCAST, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient (plus broadcasts), newest first.

        Returns:
            (items, total)
        """
        matching = [n for n in reversed(self._items) if n.recipient in (recipient, BROADCAST)]
        if unread_only:
            matching = [n for n in matching if not n.is_read]
        total = len(matching)
        page = matching[offset:offset + limit]
        return [copy.deepcopy(n) for n in page], total

    def all(self) -> list[Notification]:
        return [copy.deepcopy(n) for n in self._items]

    def unread_count(self, recipient=BROADCAST):
        return sum(1 for n in self._items
                   if n.recipient in (recipient, BROADCAST) and not n.is_read)

    def metrics(self, recipient=None) -> dict:
        pool = self._items
        if recipient:
            pool = [n for n in pool if n.recipient in (recipient, BROADCAST)]
        return {
            "total": len(pool),
            "unread": sum(1 for n in pool if not n.is_read),
            "overdue": sum(1 for n in pool if n.type == NotificationType.OVERDUE),
            "upcoming": sum(1 for n in pool if n.type == NotificationType.UPCOMING_DEADLINE),
        }

    # ── Actions ───────────────────────────────────────────────────────────

    def mark_read(self, notification_id):
        """Mark a single notification as read. Returns None if it does not exist."""
        for notif in self._items:
            if notif.id == notification_id:
                if not notif.is_read:
                    notif.mark_read()
                    self._persist()
                return copy.deepcopy(notif)
        return None

    def mark_all_read(self, recipient=BROADCAST):
        """Mark all notifications for a recipient as read; returns how many changed."""
        count = 0
        for notif in self._items:
            if notif.recipient in (recipient, BROADCAST) and not notif.is_read:
                notif.mark_read()
                count += 1
        if count:
            self._persist()
        return count

    def delete(self, notification_id) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        if len(self._items) == before:
            return False
        self._persist()
        return True

    # ── Persistence ───────────────────────────────────────────────────────

    def _evict(self) -> None:
        overflow = len(self._items) - self._retention
        if overflow <= 0:
            return
        # _items is in creation order
        read_ids = [n.id for n in self._items if n.is_read][:overflow]
        if read_ids:
            evicted = set(read_ids)
            self._items = [n for n in self._items if n.id not in evicted]
            overflow -= len(read_ids)
        if overflow > 0:
            del self._items[:overflow]
        logger.debug("Notification retention applied, %d kept", len(self._items))

    def _persist(self) -> None:
        # No alert on failure here: the alert itself is a notification
        try:
            self._blob.put(NOTIFICATIONS_KEY, [n.to_dict() for n in self._items])
        except PersistenceError as exc:
            logger.error("Notifications not persisted: %s", exc,
                         extra={"storage_key": NOTIFICATIONS_KEY})


