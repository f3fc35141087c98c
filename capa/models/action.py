"""
Corrective Action Tracker
Corrective action domain model.

Records:
    - CorrectiveAction: the central entity, driven through a fixed status workflow
    - AnalysisData / ProposedActionItem: root-cause analysis and remediation steps
    - VerificationData, ClosureData: later stage blocks with their own sign-off
    - StatusHistoryEntry: one per accepted transition, plus the creation entry

Records are dataclasses serialised to plain dicts so the whole collection
can be written as one JSON blob.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from capa.utils.helpers import iso, parse_date, parse_datetime


# ═════════════════════════════════════════════════════════════════════════════
# Enums & state machine tables
# ═════════════════════════════════════════════════════════════════════════════

class ActionStatus(str, Enum):
    DRAFT = "draft"
    PENDING_ANALYSIS = "pending_analysis"
    PENDING_VERIFICATION = "pending_verification"
    PENDING_CLOSURE = "pending_closure"
    CLOSED = "closed"
    ANNULLED = "annulled"


STATUS_ORDER = [
    ActionStatus.DRAFT,
    ActionStatus.PENDING_ANALYSIS,
    ActionStatus.PENDING_VERIFICATION,
    ActionStatus.PENDING_CLOSURE,
    ActionStatus.CLOSED,
]

# Forward transitions: exactly one successor per non-terminal status
FORWARD_TRANSITIONS = {
    ActionStatus.DRAFT: ActionStatus.PENDING_ANALYSIS,
    ActionStatus.PENDING_ANALYSIS: ActionStatus.PENDING_VERIFICATION,
    ActionStatus.PENDING_VERIFICATION: ActionStatus.PENDING_CLOSURE,
    ActionStatus.PENDING_CLOSURE: ActionStatus.CLOSED,
}

TERMINAL_STATUSES = frozenset({ActionStatus.CLOSED, ActionStatus.ANNULLED})


class ClosureKind(str, Enum):
    CONFORMING = "conforming"
    NON_CONFORMING = "non-conforming"


class ImplementationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VerificationStatus(str, Enum):
    NOT_VERIFIED = "not-verified"
    IMPLEMENTED = "implemented"
    PARTIALLY_IMPLEMENTED = "partially-implemented"
    NOT_IMPLEMENTED = "not-implemented"


PRIORITIES = {"low", "medium", "high", "critical"}


def stage_reached(current: ActionStatus, stage: ActionStatus) -> bool:
    """True when *current* is at or past *stage* in the forward order."""
    if current == ActionStatus.ANNULLED:
        return False
    return STATUS_ORDER.index(current) >= STATUS_ORDER.index(stage)


# ═════════════════════════════════════════════════════════════════════════════
# Stage blocks
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ProposedActionItem:
    """A discrete remediation step inside the analysis stage."""
    id: str
    description: str = ""
    assigned_to: str = ""
    due_date: date | None = None
    implementation_status: ImplementationStatus = ImplementationStatus.PENDING
    verification_status: VerificationStatus = VerificationStatus.NOT_VERIFIED
    verification_comments: str = ""
    verified_by: str | None = None
    verified_at: datetime | None = None

    def is_complete(self) -> bool:
        return bool(self.description.strip() and self.assigned_to.strip() and self.due_date)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "assigned_to": self.assigned_to,
            "due_date": iso(self.due_date),
            "implementation_status": self.implementation_status.value,
            "verification_status": self.verification_status.value,
            "verification_comments": self.verification_comments,
            "verified_by": self.verified_by,
            "verified_at": iso(self.verified_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProposedActionItem:
        return cls(
            id=str(data["id"]),
            description=data.get("description") or "",
            assigned_to=data.get("assigned_to") or "",
            due_date=parse_date(data.get("due_date")),
            implementation_status=ImplementationStatus(
                data.get("implementation_status") or ImplementationStatus.PENDING.value),
            verification_status=VerificationStatus(
                data.get("verification_status") or VerificationStatus.NOT_VERIFIED.value),
            verification_comments=data.get("verification_comments") or "",
            verified_by=data.get("verified_by"),
            verified_at=parse_datetime(data.get("verified_at")),
        )


@dataclass
class AnalysisData:
    root_causes: str = ""
    proposed_actions: list[ProposedActionItem] = field(default_factory=list)
    analysis_date: datetime | None = None
    analysis_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "root_causes": self.root_causes,
            "proposed_actions": [p.to_dict() for p in self.proposed_actions],
            "analysis_date": iso(self.analysis_date),
            "analysis_by": self.analysis_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AnalysisData:
        return cls(
            root_causes=data.get("root_causes") or "",
            proposed_actions=[ProposedActionItem.from_dict(p) for p in data.get("proposed_actions") or []],
            analysis_date=parse_datetime(data.get("analysis_date")),
            analysis_by=data.get("analysis_by"),
        )


@dataclass
class VerificationData:
    implementation_check: str = ""
    evidence_attachments: list[str] = field(default_factory=list)
    verification_date: datetime | None = None
    verification_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "implementation_check": self.implementation_check,
            "evidence_attachments": list(self.evidence_attachments),
            "verification_date": iso(self.verification_date),
            "verification_by": self.verification_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> VerificationData:
        return cls(
            implementation_check=data.get("implementation_check") or "",
            evidence_attachments=list(data.get("evidence_attachments") or []),
            verification_date=parse_datetime(data.get("verification_date")),
            verification_by=data.get("verification_by"),
        )


@dataclass
class ClosureData:
    closure_notes: str = ""
    effectiveness_evaluation: str = ""
    closure_date: datetime | None = None
    closure_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "closure_notes": self.closure_notes,
            "effectiveness_evaluation": self.effectiveness_evaluation,
            "closure_date": iso(self.closure_date),
            "closure_by": self.closure_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ClosureData:
        return cls(
            closure_notes=data.get("closure_notes") or "",
            effectiveness_evaluation=data.get("effectiveness_evaluation") or "",
            closure_date=parse_datetime(data.get("closure_date")),
            closure_by=data.get("closure_by"),
        )


@dataclass
class StatusHistoryEntry:
    status: ActionStatus
    timestamp: datetime
    user_id: str
    user_name: str

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "timestamp": iso(self.timestamp),
            "user_id": self.user_id,
            "user_name": self.user_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StatusHistoryEntry:
        return cls(
            status=ActionStatus(data["status"]),
            timestamp=parse_datetime(data["timestamp"]),
            user_id=data.get("user_id") or "",
            user_name=data.get("user_name") or "",
        )


# ═════════════════════════════════════════════════════════════════════════════
# Corrective action
# ═════════════════════════════════════════════════════════════════════════════

# Fields a caller may never set through an update
IMMUTABLE_FIELDS = frozenset({
    "id", "status", "is_bis", "original_action_id", "status_history",
    "created_by", "created_at", "updated_at", "has_checked_similarity",
})

# Stage blocks → first status in which they may be written
STAGE_FIELDS = {
    "analysis_data": ActionStatus.PENDING_ANALYSIS,
    "verification_data": ActionStatus.PENDING_VERIFICATION,
    "closure_data": ActionStatus.PENDING_CLOSURE,
    "closure_kind": ActionStatus.PENDING_CLOSURE,
}

ASSIGNMENT_FIELDS = (
    "assigned_to", "analysis_responsible", "implementation_responsible", "closure_responsible",
)

_DATE_FIELDS = ("due_date", "analysis_deadline", "implementation_deadline", "closure_deadline")


@dataclass
class CorrectiveAction:
    """
    A quality/compliance remediation record.

    Created in ``draft`` (or ``pending_analysis`` for BIS follow-ups) and
    mutated exclusively through ``capa.services.workflow.WorkflowEngine``.
    Never deleted; annulment is a terminal status.
    """
    id: str
    title: str = ""
    description: str = ""
    type: str = ""
    category: str = ""
    sub_category: str = ""
    status: ActionStatus = ActionStatus.DRAFT
    priority: str = "medium"
    centre: str = ""
    department: str = ""
    origin: str = ""
    functional_areas: list[str] = field(default_factory=list)
    incident_id: str | None = None
    attachments: list[str] = field(default_factory=list)

    # People
    created_by: str = ""
    assigned_to: str = ""
    analysis_responsible: str = ""
    implementation_responsible: str = ""
    closure_responsible: str = ""

    # Deadlines
    due_date: date | None = None
    analysis_deadline: date | None = None
    implementation_deadline: date | None = None
    closure_deadline: date | None = None

    # Lineage
    is_bis: bool = False
    original_action_id: str | None = None

    # Stage blocks
    analysis_data: AnalysisData | None = None
    verification_data: VerificationData | None = None
    closure_data: ClosureData | None = None
    closure_kind: ClosureKind | None = None

    has_checked_similarity: bool = False
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def proposed_actions(self) -> list[ProposedActionItem]:
        return self.analysis_data.proposed_actions if self.analysis_data else []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "category": self.category,
            "sub_category": self.sub_category,
            "status": self.status.value,
            "priority": self.priority,
            "centre": self.centre,
            "department": self.department,
            "origin": self.origin,
            "functional_areas": list(self.functional_areas),
            "incident_id": self.incident_id,
            "attachments": list(self.attachments),
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "analysis_responsible": self.analysis_responsible,
            "implementation_responsible": self.implementation_responsible,
            "closure_responsible": self.closure_responsible,
            "due_date": iso(self.due_date),
            "analysis_deadline": iso(self.analysis_deadline),
            "implementation_deadline": iso(self.implementation_deadline),
            "closure_deadline": iso(self.closure_deadline),
            "is_bis": self.is_bis,
            "original_action_id": self.original_action_id,
            "analysis_data": self.analysis_data.to_dict() if self.analysis_data else None,
            "verification_data": self.verification_data.to_dict() if self.verification_data else None,
            "closure_data": self.closure_data.to_dict() if self.closure_data else None,
            "closure_kind": self.closure_kind.value if self.closure_kind else None,
            "has_checked_similarity": self.has_checked_similarity,
            "status_history": [h.to_dict() for h in self.status_history],
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CorrectiveAction:
        analysis = data.get("analysis_data")
        verification = data.get("verification_data")
        closure = data.get("closure_data")
        kind = data.get("closure_kind")
        action = cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            type=data.get("type") or "",
            category=data.get("category") or "",
            sub_category=data.get("sub_category") or "",
            status=ActionStatus(data.get("status") or ActionStatus.DRAFT.value),
            priority=data.get("priority") or "medium",
            centre=data.get("centre") or "",
            department=data.get("department") or "",
            origin=data.get("origin") or "",
            functional_areas=list(data.get("functional_areas") or []),
            incident_id=data.get("incident_id"),
            attachments=list(data.get("attachments") or []),
            created_by=data.get("created_by") or "",
            assigned_to=data.get("assigned_to") or "",
            analysis_responsible=data.get("analysis_responsible") or "",
            implementation_responsible=data.get("implementation_responsible") or "",
            closure_responsible=data.get("closure_responsible") or "",
            is_bis=bool(data.get("is_bis")),
            original_action_id=data.get("original_action_id"),
            analysis_data=AnalysisData.from_dict(analysis) if analysis is not None else None,
            verification_data=VerificationData.from_dict(verification) if verification is not None else None,
            closure_data=ClosureData.from_dict(closure) if closure is not None else None,
            closure_kind=ClosureKind(kind) if kind else None,
            has_checked_similarity=bool(data.get("has_checked_similarity")),
            status_history=[StatusHistoryEntry.from_dict(h) for h in data.get("status_history") or []],
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )
        for name in _DATE_FIELDS:
            setattr(action, name, parse_date(data.get(name)))
        return action

    def __repr__(self):
        return f"<CorrectiveAction {self.id} [{self.status.value}] {self.title[:40]!r}>"
