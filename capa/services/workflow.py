"""
Corrective Action Tracker
Workflow Engine: corrective action lifecycle.

Manages the status state machine with:
  - Forward transitions (one successor per status) + annulment
  - Per-status completion predicate (``can_advance``) returned as data
  - Per-status edit permission, re-checked on every mutation
  - Side effects: status history, audit, notifications, sign-off stamps
  - BIS generation on non-conforming closure (exactly once per original)
  - Similarity-check gating for the analysis stage

Forward order:
    draft → pending_analysis → pending_verification → pending_closure → closed
    annulled is reachable from any non-terminal status.

Usage:
    from capa.services.workflow import WorkflowEngine

    engine = WorkflowEngine(store, audit, notifications)
    action = engine.create_action({"title": "Hand hygiene audit"}, actor)
    result = engine.change_status(action.id, "pending_analysis", actor)
    if not result["applied"]:
        render(result["missing"])
"""

from __future__ import annotations

import logging

from capa.core.exceptions import (
    ConfigurationError,
    ConflictError,
    PermissionDenied,
    TransitionError,
    ValidationError,
)
from capa.models.action import (
    ASSIGNMENT_FIELDS,
    IMMUTABLE_FIELDS,
    PRIORITIES,
    STAGE_FIELDS,
    ActionStatus,
    ClosureData,
    ClosureKind,
    CorrectiveAction,
    FORWARD_TRANSITIONS,
    StatusHistoryEntry,
    TERMINAL_STATUSES,
    VerificationData,
    VerificationStatus,
    stage_reached,
)
from capa.models.comment import Comment
from capa.services.action_store import ActionStore
from capa.services.audit import AuditTrail
from capa.services.authorization import Actor, Authorizer, RoleBasedAuthorizer, SYSTEM_ACTOR
from capa.services.bis_generator import (
    BIS_ANALYSIS_DAYS,
    BIS_DUE_DAYS,
    count_related_bis,
    generate_bis_action,
    should_generate_bis,
)
from capa.services.notification import NotificationService
from capa.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)

_ACTION_FIELDS = frozenset(CorrectiveAction.__dataclass_fields__)
_DATE_FIELDS = ("due_date", "analysis_deadline", "implementation_deadline", "closure_deadline")

# Free-text fields; None clears them
_TEXT_FIELDS = (
    "title", "description", "type", "category", "sub_category", "priority",
    "centre", "department", "origin", "incident_id", *ASSIGNMENT_FIELDS,
)
_LIST_FIELDS = ("functional_areas", "attachments")
_STAGE_TEXT_FIELDS = {
    "analysis_data": ("root_causes",),
    "verification_data": ("implementation_check",),
    "closure_data": ("closure_notes", "effectiveness_evaluation"),
}
_ITEM_TEXT_FIELDS = ("description", "assigned_to", "verification_comments")


def _type_errors(fields: dict) -> dict:
    """Field → reason for every value whose JSON type the record cannot hold."""
    errors = {}
    for name in _TEXT_FIELDS:
        if fields.get(name) is not None and not isinstance(fields[name], str):
            errors[name] = "must be a string"
    for name in _LIST_FIELDS:
        value = fields.get(name)
        if value is not None and not (isinstance(value, list) and all(isinstance(v, str) for v in value)):
            errors[name] = "must be a list of strings"
    for block, text_fields in _STAGE_TEXT_FIELDS.items():
        data = fields.get(block)
        if data is None:
            continue
        if not isinstance(data, dict):
            errors[block] = "must be an object"
            continue
        for name in text_fields:
            if data.get(name) is not None and not isinstance(data[name], str):
                errors[f"{block}.{name}"] = "must be a string"
    analysis = fields.get("analysis_data")
    items = analysis.get("proposed_actions") if isinstance(analysis, dict) else None
    if items is not None and not isinstance(items, list):
        errors["analysis_data.proposed_actions"] = "must be a list"
    elif items:
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                errors[f"analysis_data.proposed_actions[{i}]"] = "must be an object"
                continue
            for name in _ITEM_TEXT_FIELDS:
                if item.get(name) is not None and not isinstance(item[name], str):
                    errors[f"analysis_data.proposed_actions[{i}].{name}"] = "must be a string"

    verification = fields.get("verification_data")
    evidence = verification.get("evidence_attachments") if isinstance(verification, dict) else None
    if evidence is not None and not isinstance(evidence, list):
        errors["verification_data.evidence_attachments"] = "must be a list"
    return errors


# ═════════════════════════════════════════════════════════════════════════════
# State machine (pure)
# ═════════════════════════════════════════════════════════════════════════════

def next_status(current: ActionStatus) -> ActionStatus | None:
    """Forward successor of *current*; None from closed/annulled."""
    return FORWARD_TRANSITIONS.get(ActionStatus(current))


def can_advance(action: CorrectiveAction) -> dict:
    """
    Completion predicate for the action's current status.

    Never raises. Returns:
        {"valid": bool, "status": str, "missing": [reason, ...]}
    """
    status = action.status
    missing: list[str] = []

    if status == ActionStatus.DRAFT:
        if not action.description.strip():
            missing.append("description")
        if not action.type:
            missing.append("type")
        if not action.category:
            missing.append("category")
        if not action.sub_category.strip():
            missing.append("sub_category")
        if not action.analysis_responsible:
            missing.append("analysis_responsible")

    elif status == ActionStatus.PENDING_ANALYSIS:
        analysis = action.analysis_data
        if analysis is None or not analysis.root_causes.strip():
            missing.append("root_causes")
        items = action.proposed_actions
        if not items:
            missing.append("proposed_actions")
        for i, item in enumerate(items):
            if not item.description.strip():
                missing.append(f"proposed_actions[{i}].description")
            if not item.assigned_to.strip():
                missing.append(f"proposed_actions[{i}].assigned_to")
            if not item.due_date:
                missing.append(f"proposed_actions[{i}].due_date")
        if not action.is_bis and not action.has_checked_similarity:
            missing.append("similarity_check")

    elif status == ActionStatus.PENDING_VERIFICATION:
        items = action.proposed_actions
        if not items:
            missing.append("proposed_actions")
        for i, item in enumerate(items):
            if item.verification_status == VerificationStatus.NOT_VERIFIED:
                missing.append(f"proposed_actions[{i}].verification_status")

    elif status == ActionStatus.PENDING_CLOSURE:
        closure = action.closure_data
        if closure is None or not closure.closure_notes.strip():
            missing.append("closure_notes")
        if closure is None or not closure.effectiveness_evaluation.strip():
            missing.append("effectiveness_evaluation")
        if action.closure_kind is None:
            missing.append("closure_kind")

    else:
        missing.append("terminal_status")

    return {"valid": not missing, "status": status.value, "missing": missing}


def available_transitions(action: CorrectiveAction) -> list[str]:
    """Statuses reachable from the current one (forward successor + annulled)."""
    if action.status in TERMINAL_STATUSES:
        return []
    nxt = next_status(action.status)
    return [nxt.value, ActionStatus.ANNULLED.value] if nxt else [ActionStatus.ANNULLED.value]


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowEngine:
    """
    Single entry point for every corrective-action mutation.

    Constructed once at application start and long-lived. Every operation
    re-reads the latest snapshot from the store before checking and
    mutating it.
    """

    def __init__(
        self,
        store: ActionStore,
        audit: AuditTrail,
        notifications: NotificationService,
        *,
        authorizer: Authorizer | None = None,
        similarity_detector=None,
        suggester=None,
        bis_due_days: int = BIS_DUE_DAYS,
        bis_analysis_days: int = BIS_ANALYSIS_DAYS,
    ):
        self.store = store
        self.audit = audit
        self.notifications = notifications
        self.authorizer = authorizer or RoleBasedAuthorizer()
        self.similarity_detector = similarity_detector
        self.suggester = suggester
        self.bis_due_days = bis_due_days
        self.bis_analysis_days = bis_analysis_days
        self._similarity_in_flight: set[str] = set()

    # ── Permission ────────────────────────────────────────────────────────

    def _require_edit(self, action: CorrectiveAction, actor: Actor, operation: str,
                      status: ActionStatus | None = None) -> None:
        status = status or action.status
        if not self.authorizer.can_edit(action, actor, status):
            logger.info("Denied %s on %s for %s", operation, action.id, actor.user_id,
                        extra={"action_id": action.id, "actor": actor.user_id})
            raise PermissionDenied(actor.user_id, operation, status.value)

    # ── Create ────────────────────────────────────────────────────────────

    def create_action(self, data: dict, actor: Actor) -> CorrectiveAction:
        """
        Create a new action in ``draft``.

        Raises:
            ValidationError: missing title, forbidden or unknown fields,
                stage data supplied before its stage.
        """
        data = self._as_fields(data)
        title = data.get("title")
        title = title.strip() if isinstance(title, str) else ""
        if not title:
            raise ValidationError("title is required", details={"title": "required"})

        forbidden = sorted(set(data) & IMMUTABLE_FIELDS)
        if forbidden:
            raise ValidationError(f"Fields cannot be set on create: {', '.join(forbidden)}",
                                  details={f: "read-only" for f in forbidden})
        self._check_fields(data, ActionStatus.DRAFT)

        now = utcnow()
        raw = {
            **data,
            "id": self.store.next_id(),
            "title": title,
            "status": ActionStatus.DRAFT.value,
            "created_by": actor.user_id,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "status_history": [
                StatusHistoryEntry(ActionStatus.DRAFT, now, actor.user_id, actor.display_name).to_dict()
            ],
        }
        action = self._build(raw)
        action = self.store.create(action)
        self.audit.log_created(action, actor)
        logger.info("Created action %s", action.id, extra={"action_id": action.id, "actor": actor.user_id})
        return action

    # ── Update ────────────────────────────────────────────────────────────

    def update_action(self, action_id: str, changes: dict, actor: Actor) -> CorrectiveAction:
        """
        Apply field changes and write one batched ``updated`` audit entry.

        Status is never changed here; use ``change_status``. On a closed
        action only a missing ``closure_kind`` may still be recorded.

        Raises:
            NotFoundError, PermissionDenied, ValidationError
        """
        action = self.store.get(action_id)
        changes = self._as_fields(changes)
        if not changes:
            return action

        forbidden = sorted(set(changes) & IMMUTABLE_FIELDS)
        if forbidden:
            raise ValidationError(f"Read-only fields: {', '.join(forbidden)}",
                                  details={f: "read-only" for f in forbidden})

        permission_status = action.status
        if action.status == ActionStatus.CLOSED:
            if set(changes) != {"closure_kind"} or action.closure_kind is not None:
                raise PermissionDenied(actor.user_id, "update", action.status.value)
            permission_status = ActionStatus.PENDING_CLOSURE
        self._require_edit(action, actor, "update", permission_status)
        self._check_fields(changes, action.status)

        before = action.to_dict()
        merged = dict(before)
        for field_name, value in changes.items():
            if field_name in ("analysis_data", "verification_data", "closure_data") and isinstance(value, dict):
                value = {**(before.get(field_name) or {}), **value}
                if field_name == "analysis_data":
                    value = self._number_proposed_items(action_id, value)
            merged[field_name] = value
        updated = self._build(merged)
        after = updated.to_dict()

        diff = {
            f: {"old": before.get(f), "new": after.get(f)}
            for f in changes
            if before.get(f) != after.get(f)
        }
        if not diff:
            return action

        updated.updated_at = utcnow()
        updated = self.store.replace(updated)
        self.audit.log_updated(action_id, actor, diff)

        assigned = {f: c for f, c in diff.items() if f in ASSIGNMENT_FIELDS}
        if assigned:
            self.audit.log_assigned(action_id, actor, assigned)

        if "closure_kind" in diff and updated.closure_kind == ClosureKind.NON_CONFORMING:
            if updated.status == ActionStatus.PENDING_CLOSURE:
                self.notifications.notify_director_review_required(updated)
            elif updated.status == ActionStatus.CLOSED:
                # closure_kind recorded after the close: re-check the BIS trigger
                self.evaluate_bis_trigger(action_id)
                updated = self.store.get(action_id)

        return updated

    # ── Status changes ────────────────────────────────────────────────────

    def change_status(self, action_id: str, new_status, actor: Actor, *,
                      updates: dict | None = None) -> dict:
        """
        Execute one status transition.

        ``updates`` are applied first (same rules as ``update_action``) so a
        form can save its fields and advance in one call.

        Returns:
            {"action_id", "previous_status", "new_status", "applied",
             "missing", "bis_action_id", "action"}
            ``applied`` is False (with ``missing`` reasons) when the
            completion predicate fails; nothing is mutated in that case
            apart from ``updates``.

        Raises:
            NotFoundError, PermissionDenied, TransitionError, ValidationError
        """
        try:
            target = ActionStatus(new_status)
        except (ValueError, TypeError):
            raise ValidationError(f"Unknown status: {new_status}",
                                  details={"status": f"must be one of {[s.value for s in ActionStatus]}"})

        action = self.store.get(action_id)
        if action.status in TERMINAL_STATUSES:
            raise TransitionError(action.id, action.status.value, target.value,
                                  "no transition out of a terminal status")
        self._require_edit(action, actor, f"change status to {target.value}")

        if target == ActionStatus.ANNULLED:
            return self._annul(action, actor)

        expected = next_status(action.status)
        if target != expected:
            raise TransitionError(action.id, action.status.value, target.value,
                                  f"next status is '{expected.value}'")

        if updates:
            self.update_action(action_id, updates, actor)
            action = self.store.get(action_id)

        check = can_advance(action)
        previous = action.status
        if not check["valid"]:
            logger.info("Transition %s → %s blocked: %s", previous.value, target.value, check["missing"],
                        extra={"action_id": action.id, "from_status": previous.value, "to_status": target.value})
            return self._result(action, previous, applied=False, missing=check["missing"])

        now = utcnow()
        self._stamp_sign_off(action, previous, target, actor, now)
        action.status = target
        action.status_history.append(StatusHistoryEntry(target, now, actor.user_id, actor.display_name))
        action.updated_at = now
        action = self.store.replace(action)

        self.audit.log_status_changed(action.id, actor, previous.value, target.value)
        self.notifications.notify_status_change(action, target)
        logger.info("Action %s moved %s → %s", action.id, previous.value, target.value,
                    extra={"action_id": action.id, "from_status": previous.value,
                           "to_status": target.value, "actor": actor.user_id})

        if target == ActionStatus.PENDING_CLOSURE and action.closure_kind == ClosureKind.NON_CONFORMING:
            self.notifications.notify_director_review_required(action)

        bis = None
        if target == ActionStatus.CLOSED:
            self.audit.log_closed(action, actor)
            bis = self.evaluate_bis_trigger(action.id)

        return self._result(action, previous, applied=True, bis=bis)

    def advance(self, action_id: str, actor: Actor, *, updates: dict | None = None) -> dict:
        """Move to the forward successor of the current status."""
        action = self.store.get(action_id)
        target = next_status(action.status)
        if target is None:
            raise TransitionError(action.id, action.status.value, None,
                                  "no transition out of a terminal status")
        return self.change_status(action_id, target, actor, updates=updates)

    def annul(self, action_id: str, actor: Actor) -> dict:
        """Annul from any non-terminal status. Irreversible; no BIS, no notification."""
        return self.change_status(action_id, ActionStatus.ANNULLED, actor)

    def _annul(self, action: CorrectiveAction, actor: Actor) -> dict:
        previous = action.status
        now = utcnow()
        action.status = ActionStatus.ANNULLED
        action.status_history.append(
            StatusHistoryEntry(ActionStatus.ANNULLED, now, actor.user_id, actor.display_name))
        action.updated_at = now
        action = self.store.replace(action)
        self.audit.log_status_changed(action.id, actor, previous.value, ActionStatus.ANNULLED.value)
        logger.info("Action %s annulled from %s", action.id, previous.value,
                    extra={"action_id": action.id, "from_status": previous.value, "actor": actor.user_id})
        return self._result(action, previous, applied=True)

    @staticmethod
    def _stamp_sign_off(action: CorrectiveAction, previous: ActionStatus, target: ActionStatus,
                        actor: Actor, now) -> None:
        if previous == ActionStatus.PENDING_ANALYSIS and action.analysis_data:
            action.analysis_data.analysis_date = now
            action.analysis_data.analysis_by = actor.display_name
        elif previous == ActionStatus.PENDING_VERIFICATION:
            if action.verification_data is None:
                action.verification_data = VerificationData()
            action.verification_data.verification_date = now
            action.verification_data.verification_by = actor.display_name
        if target == ActionStatus.CLOSED:
            if action.closure_data is None:
                action.closure_data = ClosureData()
            action.closure_data.closure_date = now
            action.closure_data.closure_by = actor.display_name

    @staticmethod
    def _result(action: CorrectiveAction, previous: ActionStatus, *, applied: bool,
                missing: list | None = None, bis: CorrectiveAction | None = None) -> dict:
        return {
            "action_id": action.id,
            "previous_status": previous.value,
            "new_status": action.status.value,
            "applied": applied,
            "missing": missing or [],
            "bis_action_id": bis.id if bis else None,
            "action": action.to_dict(),
        }

    # ── BIS ───────────────────────────────────────────────────────────────

    def evaluate_bis_trigger(self, action_id: str) -> CorrectiveAction | None:
        """
        Create the BIS follow-up for a non-conforming closure, at most once.

        Safe to call any number of times: the store's BIS index is the
        idempotence guard.
        """
        original = self.store.get(action_id)
        if not should_generate_bis(original):
            return None
        if self.store.has_bis(original.id):
            logger.debug("BIS already exists for %s", original.id, extra={"action_id": original.id})
            return None

        bis = generate_bis_action(
            original,
            new_id=self.store.next_id(),
            due_days=self.bis_due_days,
            analysis_days=self.bis_analysis_days,
        )
        bis = self.store.create(bis)
        self.audit.log_created(bis, SYSTEM_ACTOR)
        logger.info("Generated BIS %s from %s", bis.id, original.id,
                    extra={"action_id": original.id})

        self.notifications.notify_bis_generated(original, bis)
        self.notifications.notify_status_change(bis, ActionStatus.PENDING_ANALYSIS)
        related = count_related_bis(bis, self.store.all())
        self.notifications.check_multiple_bis_actions(bis, related)
        return bis

    # ── Similarity ────────────────────────────────────────────────────────

    def run_similarity_check(self, action_id: str, actor: Actor) -> dict:
        """
        Compare the action against every non-draft action.

        Sets ``has_checked_similarity`` on any completed run, including an
        empty result. An exception from the detector propagates and leaves
        the flag untouched.

        Raises:
            NotFoundError, PermissionDenied, TransitionError,
            ConflictError (a check for this action is already running),
            ConfigurationError, SimilarityError
        """
        action = self.store.get(action_id)
        if action.status in TERMINAL_STATUSES:
            raise TransitionError(action.id, action.status.value, None,
                                  "similarity check is not available on a terminal action")
        self._require_edit(action, actor, "run similarity check")
        if self.similarity_detector is None:
            raise ConfigurationError("No similarity detector configured")
        if action_id in self._similarity_in_flight:
            raise ConflictError("SimilarityCheck", "action_id", action_id)

        self._similarity_in_flight.add(action_id)
        try:
            pool = [a for a in self.store.all() if a.status != ActionStatus.DRAFT]
            matches = self.similarity_detector.find_similar(action, pool, exclude_id=action.id)
        finally:
            self._similarity_in_flight.discard(action_id)

        # Re-read: the record may have changed while the detector was running
        latest = self.store.get(action_id)
        if not latest.has_checked_similarity:
            latest.has_checked_similarity = True
            latest.updated_at = utcnow()
            self.store.replace(latest)

        return {
            "action_id": action_id,
            "checked": True,
            "matches": [m.to_dict() for m in matches],
            "has_high_similarity": any(m.is_high for m in matches),
        }

    # ── Suggestions ───────────────────────────────────────────────────────

    def suggest_proposals(self, action_id: str, *, root_causes: str | None = None) -> list[dict]:
        """Draft proposed-action items from the suggestion collaborator. Never mutates."""
        action = self.store.get(action_id)
        if self.suggester is None:
            raise ConfigurationError("No suggestion collaborator configured")
        if root_causes is None and action.analysis_data:
            root_causes = action.analysis_data.root_causes
        items = self.suggester.suggest(action, root_causes=root_causes)
        return [item.to_dict() for item in items]

    # ── Comments ──────────────────────────────────────────────────────────

    def add_comment(self, action_id: str, actor: Actor, text: str) -> Comment:
        action = self.store.get(action_id)
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            raise ValidationError("Comment text is required", details={"text": "required"})
        comment = Comment(
            id=f"{action.id}-C{len(self.store.comments_for(action.id)) + 1}",
            action_id=action.id,
            user_id=actor.user_id,
            user_name=actor.display_name,
            text=text,
            created_at=utcnow(),
        )
        comment = self.store.add_comment(comment)
        self.audit.log_commented(action.id, actor, text)
        return comment

    # ── Introspection ─────────────────────────────────────────────────────

    def validation(self, action_id: str, actor: Actor | None = None) -> dict:
        """Readiness report for a UI: completion predicate + reachable statuses."""
        action = self.store.get(action_id)
        report = can_advance(action)
        nxt = next_status(action.status)
        report["next_status"] = nxt.value if nxt else None
        report["available_transitions"] = available_transitions(action)
        if actor is not None:
            report["can_edit"] = self.authorizer.can_edit(action, actor, action.status)
        return report

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _check_fields(fields: dict, status: ActionStatus) -> None:
        unknown = sorted(set(fields) - _ACTION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}",
                                  details={f: "unknown" for f in unknown})
        early = {
            f: f"editable from '{stage.value}'"
            for f, stage in STAGE_FIELDS.items()
            if f in fields and fields[f] is not None and not stage_reached(status, stage)
        }
        if early:
            raise ValidationError("Stage data supplied before its stage", details=early)
        bad_types = _type_errors(fields)
        if bad_types:
            raise ValidationError("Invalid field types", details=bad_types)
        priority = fields.get("priority")
        if priority is not None and priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority: {priority}",
                                  details={"priority": f"must be one of {sorted(PRIORITIES)}"})
        bad_dates = {f: "invalid date" for f in _DATE_FIELDS if fields.get(f) and parse_date(fields[f]) is None}
        if bad_dates:
            raise ValidationError("Invalid date value", details=bad_dates)

    @staticmethod
    def _as_fields(data) -> dict:
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("Action fields must be an object")
        return dict(data)

    @staticmethod
    def _number_proposed_items(action_id: str, analysis: dict) -> dict:
        """Give new proposed-action items a stable id."""
        items = analysis.get("proposed_actions") or []
        taken = {str(i.get("id")) for i in items if isinstance(i, dict) and i.get("id")}
        n = 0
        numbered = []
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError("proposed_actions items must be objects")
            item = dict(item)
            if not item.get("id"):
                n += 1
                while f"{action_id}-P{n}" in taken:
                    n += 1
                item["id"] = f"{action_id}-P{n}"
                taken.add(item["id"])
            numbered.append(item)
        return {**analysis, "proposed_actions": numbered}

    @staticmethod
    def _build(raw: dict) -> CorrectiveAction:
        try:
            return CorrectiveAction.from_dict(raw)
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise ValidationError(f"Invalid action data: {exc}") from exc
