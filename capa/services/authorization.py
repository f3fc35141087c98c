"""
Corrective Action Tracker
Authorization collaborator: per-status edit permission.

The workflow engine treats the authorizer as an opaque predicate
``can_edit(action, actor, status) -> bool`` and calls it before every
mutation. Nothing here caches a decision.

Default rules (RoleBasedAuthorizer):
    draft                 → creator
    pending_analysis      → analysis responsible, quality direction, any director
    pending_verification  → implementation responsible, quality direction
    pending_closure       → closure responsible, creator, quality direction
    closed / annulled     → nobody

The ``system`` actor (BIS generation, deadline sweep) bypasses the check.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from capa.models.action import ActionStatus, CorrectiveAction

logger = logging.getLogger(__name__)

QUALITY_DIRECTION_ROLE = "quality_direction"
DIRECTOR_ROLE_PREFIX = "director"
SYSTEM_ROLE = "system"


@dataclass(frozen=True)
class Actor:
    """The user performing an operation."""
    user_id: str
    name: str = ""
    roles: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.user_id

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_director(self) -> bool:
        return any(r.startswith(DIRECTOR_ROLE_PREFIX) for r in self.roles)

    @property
    def is_system(self) -> bool:
        return SYSTEM_ROLE in self.roles


SYSTEM_ACTOR = Actor(user_id="system", name="System", roles=(SYSTEM_ROLE,))


class Authorizer(ABC):
    """Opaque edit-permission predicate consulted by the workflow engine."""

    @abstractmethod
    def can_edit(self, action: CorrectiveAction, actor: Actor, status: ActionStatus) -> bool:
        ...


class RoleBasedAuthorizer(Authorizer):
    """Creator / responsible / role based rules per status."""

    def can_edit(self, action: CorrectiveAction, actor: Actor, status: ActionStatus) -> bool:
        if actor.is_system:
            return True

        uid = actor.user_id
        quality = actor.has_role(QUALITY_DIRECTION_ROLE)

        if status == ActionStatus.DRAFT:
            return action.created_by == uid
        if status == ActionStatus.PENDING_ANALYSIS:
            return action.analysis_responsible == uid or quality or actor.is_director
        if status == ActionStatus.PENDING_VERIFICATION:
            return action.implementation_responsible == uid or quality
        if status == ActionStatus.PENDING_CLOSURE:
            return action.closure_responsible == uid or action.created_by == uid or quality
        return False
