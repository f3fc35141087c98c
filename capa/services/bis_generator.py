"""
Corrective Action Tracker
BIS Generator: follow-up actions for non-conforming closures.

When an action is closed as non-conforming, a BIS ("re-attempt") action is
derived from it: same classification and people, fresh deadlines, status
forced to pending_analysis and root causes pre-seeded from the original.

Lineage is one level deep: a BIS action always points at a non-BIS
original and never itself produces a BIS. The exactly-once guard lives in
the workflow engine (store-level BIS index); this module is pure.

Usage:
    from capa.services.bis_generator import should_generate_bis, generate_bis_action

    if should_generate_bis(action):
        bis = generate_bis_action(action, new_id=store.next_id())
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from capa.models.action import (
    ActionStatus,
    AnalysisData,
    ClosureKind,
    CorrectiveAction,
    ProposedActionItem,
    StatusHistoryEntry,
)
from capa.services.authorization import SYSTEM_ACTOR
from capa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

BIS_SUFFIX = "(BIS)"
BIS_DUE_DAYS = 30
BIS_ANALYSIS_DAYS = 15
ROOT_CAUSES_PLACEHOLDER = "Not specified"
RETHINK_PROPOSAL = (
    "Review and rethink the corrective action: the previous implementation "
    "was not effective."
)


def should_generate_bis(action: CorrectiveAction) -> bool:
    """Closed, non-conforming and not itself a BIS action."""
    return (
        action.status == ActionStatus.CLOSED
        and action.closure_kind == ClosureKind.NON_CONFORMING
        and not action.is_bis
    )


def generate_bis_action(
    original: CorrectiveAction,
    *,
    new_id: str,
    now: datetime | None = None,
    due_days: int = BIS_DUE_DAYS,
    analysis_days: int = BIS_ANALYSIS_DAYS,
) -> CorrectiveAction:
    """Build (but do not store) the BIS follow-up for *original*."""
    if original.is_bis:
        raise ValueError(f"{original.id} is a BIS action; BIS lineage is one level deep")

    now = now or utcnow()
    today = now.date()
    original_root_causes = (
        original.analysis_data.root_causes if original.analysis_data else ""
    ) or ROOT_CAUSES_PLACEHOLDER

    description = (
        f"BIS action generated automatically from action {original.id}, "
        f"closed as NON-CONFORMING.\n\n"
        f"Original description:\n{original.description}"
    )
    root_causes = (
        f"BIS action generated by the non-conforming closure of action {original.id}.\n\n"
        f"Root causes of the original action:\n{original_root_causes}"
    )

    return CorrectiveAction(
        id=new_id,
        title=f"{original.title} {BIS_SUFFIX}",
        description=description,
        type=original.type,
        category=original.category,
        sub_category=original.sub_category,
        status=ActionStatus.PENDING_ANALYSIS,
        priority=original.priority,
        centre=original.centre,
        department=original.department,
        origin=original.origin,
        functional_areas=list(original.functional_areas),
        created_by=SYSTEM_ACTOR.user_id,
        assigned_to=original.assigned_to,
        analysis_responsible=original.analysis_responsible,
        implementation_responsible=original.implementation_responsible,
        closure_responsible=original.closure_responsible,
        due_date=today + timedelta(days=due_days),
        analysis_deadline=today + timedelta(days=analysis_days),
        is_bis=True,
        original_action_id=original.id,
        analysis_data=AnalysisData(
            root_causes=root_causes,
            # Assignee and due date left blank so the analyst must confirm them
            proposed_actions=[ProposedActionItem(id=f"{new_id}-P1", description=RETHINK_PROPOSAL)],
        ),
        status_history=[StatusHistoryEntry(
            status=ActionStatus.PENDING_ANALYSIS,
            timestamp=now,
            user_id=SYSTEM_ACTOR.user_id,
            user_name=SYSTEM_ACTOR.display_name,
        )],
        created_at=now,
        updated_at=now,
    )


def is_related_bis(a: CorrectiveAction, b: CorrectiveAction) -> bool:
    """Same type OR same department OR same centre (blank values never match)."""
    return any(
        getattr(a, f) and getattr(a, f) == getattr(b, f)
        for f in ("type", "department", "centre")
    )


def count_related_bis(bis: CorrectiveAction, actions: list[CorrectiveAction]) -> int:
    """Number of BIS actions related to *bis*, counting *bis* itself."""
    others = [a for a in actions if a.is_bis and a.id != bis.id and is_related_bis(a, bis)]
    return len(others) + 1


def get_bis_history(actions: list[CorrectiveAction], action_id: str) -> list[CorrectiveAction]:
    """The original of *action_id* plus every BIS derived from it, oldest first."""
    by_id = {a.id: a for a in actions}
    target = by_id.get(action_id)
    if target is None:
        return []
    root = by_id.get(target.original_action_id, target) if target.is_bis else target
    chain = [root] + [a for a in actions if a.is_bis and a.original_action_id == root.id]
    return sorted(chain, key=lambda a: a.created_at or utcnow())


def get_bis_metrics(actions: list[CorrectiveAction]) -> dict:
    bis_actions = [a for a in actions if a.is_bis]
    bis_origins = {a.original_action_id for a in bis_actions}
    originals_with_bis = [a for a in actions if not a.is_bis and a.id in bis_origins]

    if originals_with_bis:
        rate = (len(originals_with_bis) - len(bis_actions)) / len(originals_with_bis) * 100
    else:
        rate = 100.0

    return {
        "total_bis": len(bis_actions),
        "originals_with_bis": len(originals_with_bis),
        "by_status": dict(Counter(a.status.value for a in bis_actions)),
        "effectiveness_rate": round(rate, 1),
    }
