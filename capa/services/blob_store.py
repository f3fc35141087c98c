"""
Corrective Action Tracker
Blob Store: key → JSON collection persistence.

Every collection (actions, comments, notifications, audit entries) is
written as one serialized array under a fixed key. Writes always replace
the whole collection; there are no partial or patch writes.

Backends:
    - MemoryBlobStore: process-local, used by tests and the testing config
    - SqlBlobStore:    one StorageBlob row per key via Flask-SQLAlchemy

Usage:
    store = SqlBlobStore()
    store.put("corrective-actions-data", [a.to_dict() for a in actions])
    items = store.get("corrective-actions-data")
    unsubscribe = store.subscribe(lambda key, items: ...)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from capa.core.exceptions import PersistenceError
from capa.models import db
from capa.models.storage import StorageBlob

logger = logging.getLogger(__name__)

Listener = Callable[[str, list], None]


class BlobStore(ABC):
    """Abstract key/value store holding one JSON array per key."""

    def __init__(self):
        self._listeners: list[Listener] = []

    @abstractmethod
    def get(self, key: str) -> list:
        """Return the stored collection for *key* (empty list if absent)."""
        ...

    @abstractmethod
    def _write(self, key: str, payload: str) -> None:
        ...

    def put(self, key: str, items: list) -> None:
        """Overwrite the collection for *key* and notify subscribers.

        Raises:
            PersistenceError: if the payload cannot be serialized or written.
        """
        try:
            payload = json.dumps(items, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(key, f"not serializable: {exc}") from exc
        self._write(key, payload)
        for listener in list(self._listeners):
            try:
                listener(key, items)
            except Exception:
                logger.warning("Blob listener failed for key %s", key, exc_info=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for every successful put; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class MemoryBlobStore(BlobStore):
    """Process-local store. Payloads are kept serialized so reads never alias writes."""

    def __init__(self, initial: dict[str, list] | None = None):
        super().__init__()
        self._data: dict[str, str] = {}
        for key, items in (initial or {}).items():
            self._data[key] = json.dumps(items, ensure_ascii=False)

    def get(self, key: str) -> list:
        raw = self._data.get(key)
        if raw is None:
            return []
        return json.loads(raw)

    def _write(self, key: str, payload: str) -> None:
        self._data[key] = payload

    def keys(self) -> list[str]:
        return list(self._data)


class SqlBlobStore(BlobStore):
    """StorageBlob-backed store. Must be used inside a Flask app context."""

    def get(self, key: str) -> list:
        blob = db.session.get(StorageBlob, key)
        if blob is None:
            return []
        return blob.items

    def _write(self, key: str, payload: str) -> None:
        try:
            blob = db.session.get(StorageBlob, key)
            if blob is None:
                blob = StorageBlob(key=key, payload=payload)
                db.session.add(blob)
            else:
                blob.payload = payload
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Blob write failed for key %s", key, extra={"storage_key": key})
            raise PersistenceError(key, str(exc)) from exc
