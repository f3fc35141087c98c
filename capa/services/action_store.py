"""
Corrective Action Tracker
Action Store: in-memory action collection backed by a BlobStore.

Owns the create/replace primitives for corrective actions and their
comments. Every write serializes the whole collection back to the blob
store (read-modify-write of the full array).

Callers always receive deep copies: a record returned by ``get`` is a
snapshot, and mutating it has no effect until it is handed back through
``replace``. Re-read before every check-then-mutate sequence.

A failed blob write is logged and reported through ``on_persistence_error``;
the in-memory collection stays authoritative for the session.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Callable

from capa.core.exceptions import NotFoundError, PersistenceError
from capa.models.action import CorrectiveAction
from capa.models.comment import Comment
from capa.models.storage import ACTIONS_KEY, COMMENTS_KEY
from capa.services.blob_store import BlobStore

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^CA-(\d+)$")


class ActionStore:
    """Shared mutable collection of corrective actions."""

    def __init__(self, blob_store: BlobStore, on_persistence_error: Callable[[PersistenceError], None] | None = None):
        self._blob = blob_store
        self._on_persistence_error = on_persistence_error
        self._actions: dict[str, CorrectiveAction] = {}
        self._comments: list[Comment] = []
        # original id → ids of BIS actions derived from it
        self._bis_index: dict[str, list[str]] = {}
        self._writing = False
        self.reload()
        self._unsubscribe = blob_store.subscribe(self._on_blob_put)

    # ── Loading ───────────────────────────────────────────────────────────

    def reload(self) -> None:
        """Rebuild the in-memory collection and BIS index from the blob store."""
        self._actions = {}
        for raw in self._blob.get(ACTIONS_KEY):
            action = CorrectiveAction.from_dict(raw)
            self._actions[action.id] = action
        self._comments = [Comment.from_dict(c) for c in self._blob.get(COMMENTS_KEY)]
        self._rebuild_bis_index()
        logger.debug("ActionStore loaded %d actions, %d comments",
                     len(self._actions), len(self._comments))

    def _rebuild_bis_index(self) -> None:
        self._bis_index = {}
        for action in self._actions.values():
            if action.is_bis and action.original_action_id:
                self._bis_index.setdefault(action.original_action_id, []).append(action.id)

    def _on_blob_put(self, key: str, items: list) -> None:
        # Another writer replaced the actions blob: pick up its snapshot
        if self._writing or key not in (ACTIONS_KEY, COMMENTS_KEY):
            return
        self.reload()

    # ── Queries ───────────────────────────────────────────────────────────

    def all(self) -> list[CorrectiveAction]:
        """All actions in creation order (deep copies)."""
        return [copy.deepcopy(a) for a in self._actions.values()]

    def find(self, action_id: str) -> CorrectiveAction | None:
        action = self._actions.get(action_id)
        return copy.deepcopy(action) if action else None

    def get(self, action_id: str) -> CorrectiveAction:
        """Latest snapshot of one action.

        Raises:
            NotFoundError: if no action has this id.
        """
        action = self.find(action_id)
        if action is None:
            raise NotFoundError(resource="CorrectiveAction", resource_id=action_id)
        return action

    def bis_ids_for(self, original_id: str) -> list[str]:
        return list(self._bis_index.get(original_id, []))

    def has_bis(self, original_id: str) -> bool:
        return bool(self._bis_index.get(original_id))

    def next_id(self) -> str:
        highest = 0
        for action_id in self._actions:
            match = _ID_PATTERN.match(action_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"CA-{highest + 1:04d}"

    # ── Mutations ─────────────────────────────────────────────────────────

    def create(self, action: CorrectiveAction) -> CorrectiveAction:
        if action.id in self._actions:
            raise ValueError(f"Action id already in use: {action.id}")
        stored = copy.deepcopy(action)
        self._actions[stored.id] = stored
        if stored.is_bis and stored.original_action_id:
            self._bis_index.setdefault(stored.original_action_id, []).append(stored.id)
        self._persist_actions()
        return copy.deepcopy(stored)

    def replace(self, action: CorrectiveAction) -> CorrectiveAction:
        """Overwrite an existing action with *action* and persist the collection."""
        if action.id not in self._actions:
            raise NotFoundError(resource="CorrectiveAction", resource_id=action.id)
        stored = copy.deepcopy(action)
        self._actions[stored.id] = stored
        self._persist_actions()
        return copy.deepcopy(stored)

    # ── Comments ──────────────────────────────────────────────────────────

    def add_comment(self, comment: Comment) -> Comment:
        self._comments.append(copy.deepcopy(comment))
        self._persist(COMMENTS_KEY, [c.to_dict() for c in self._comments])
        return copy.deepcopy(comment)

    def comments_for(self, action_id: str) -> list[Comment]:
        return [copy.deepcopy(c) for c in self._comments if c.action_id == action_id]

    # ── Persistence ───────────────────────────────────────────────────────

    def _persist_actions(self) -> None:
        self._persist(ACTIONS_KEY, [a.to_dict() for a in self._actions.values()])

    def _persist(self, key: str, items: list) -> None:
        self._writing = True
        try:
            self._blob.put(key, items)
        except PersistenceError as exc:
            logger.error("Could not persist %s; in-memory state kept: %s", key, exc,
                         extra={"storage_key": key})
            if self._on_persistence_error:
                self._on_persistence_error(exc)
        finally:
            self._writing = False
