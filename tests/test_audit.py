"""
Corrective Action Tracker
Tests: Audit Trail.

Covers:
    - entry kinds and their change payloads
    - newest-first queries and filters
    - bounded retention (oldest evicted first)
    - activity metrics
    - persistence round trip and failure callback
"""

from datetime import timedelta

import pytest

from capa.core.exceptions import PersistenceError
from capa.models.action import ActionStatus, ClosureKind, CorrectiveAction
from capa.models.audit import AuditKind
from capa.models.storage import AUDIT_KEY
from capa.services.audit import AuditTrail
from capa.services.authorization import Actor
from capa.services.blob_store import MemoryBlobStore
from capa.utils.helpers import utcnow

ALICE = Actor(user_id="u-alice", name="Alice")
BOB = Actor(user_id="u-bob", name="Bob")


@pytest.fixture()
def trail():
    return AuditTrail(MemoryBlobStore())


def _action(**overrides):
    data = dict(id="CA-0001", title="Wrong wristband", status=ActionStatus.DRAFT)
    data.update(overrides)
    return CorrectiveAction(**data)


# ═════════════════════════════════════════════════════════════════════════════
# WRITERS
# ═════════════════════════════════════════════════════════════════════════════

class TestWriters:

    def test_created(self, trail):
        entry = trail.log_created(_action(), ALICE)
        assert entry.kind == AuditKind.CREATED
        assert entry.actor_id == "u-alice"
        assert entry.actor_name == "Alice"
        assert entry.changes == {"status": {"old": None, "new": "draft"}}

    def test_created_bis_mentions_original(self, trail):
        entry = trail.log_created(_action(id="CA-0002", is_bis=True, original_action_id="CA-0001"), ALICE)
        assert "CA-0001" in entry.description

    def test_updated_batches_fields(self, trail):
        changes = {"title": {"old": "a", "new": "b"}, "priority": {"old": "low", "new": "high"}}
        entry = trail.log_updated("CA-0001", ALICE, changes)
        assert entry.kind == AuditKind.UPDATED
        assert entry.changes == changes
        assert "priority" in entry.description and "title" in entry.description

    def test_updated_without_changes_writes_nothing(self, trail):
        assert trail.log_updated("CA-0001", ALICE, {}) is None
        assert len(trail) == 0

    def test_status_changed(self, trail):
        entry = trail.log_status_changed("CA-0001", ALICE, "draft", "pending_analysis")
        assert entry.changes == {"status": {"old": "draft", "new": "pending_analysis"}}

    def test_closed_records_kind(self, trail):
        entry = trail.log_closed(_action(status=ActionStatus.CLOSED, closure_kind=ClosureKind.NON_CONFORMING), BOB)
        assert entry.kind == AuditKind.CLOSED
        assert entry.changes["closure_kind"]["new"] == "non-conforming"

    def test_comment_preview_is_truncated(self, trail):
        entry = trail.log_commented("CA-0001", ALICE, "x" * 200)
        assert entry.kind == AuditKind.COMMENTED
        assert entry.description.endswith("...")
        assert len(entry.description) < 120


# ═════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════════

class TestQueries:

    def _seed(self, trail):
        trail.log_created(_action(), ALICE)
        trail.log_updated("CA-0001", BOB, {"title": {"old": "a", "new": "b"}})
        trail.log_created(_action(id="CA-0002"), BOB)
        trail.log_status_changed("CA-0001", ALICE, "draft", "pending_analysis")

    def test_history_newest_first(self, trail):
        self._seed(trail)
        kinds = [e.kind for e in trail.history("CA-0001")]
        assert kinds == [AuditKind.STATUS_CHANGED, AuditKind.UPDATED, AuditKind.CREATED]

    def test_filters(self, trail):
        self._seed(trail)
        assert len(trail.entries(actor_id="u-bob")) == 2
        assert len(trail.entries(kind="created")) == 2
        assert len(trail.entries(limit=1)) == 1
        assert [e.action_id for e in trail.user_activity("u-alice")] == ["CA-0001", "CA-0001"]

    def test_retention_evicts_oldest(self):
        trail = AuditTrail(MemoryBlobStore(), retention=3)
        for i in range(5):
            trail.log_status_changed(f"CA-{i:04d}", ALICE, "draft", "pending_analysis")
        assert len(trail) == 3
        assert [e.action_id for e in trail.entries()] == ["CA-0004", "CA-0003", "CA-0002"]

    def test_activity_metrics(self, trail):
        self._seed(trail)
        metrics = trail.activity_metrics()
        assert metrics["total"] == 4
        assert metrics["this_week"] == 4
        assert metrics["by_kind"] == {"created": 2, "updated": 1, "status_changed": 1}
        assert metrics["by_user"] == {"Alice": 2, "Bob": 2}
        assert len(metrics["top_users"]) == 2

    def test_activity_metrics_windows(self, trail):
        self._seed(trail)
        later = utcnow() + timedelta(days=8)
        metrics = trail.activity_metrics(now=later)
        assert metrics["this_week"] == 0
        assert metrics["this_month"] == 4


# ═════════════════════════════════════════════════════════════════════════════
# PERSISTENCE
# ═════════════════════════════════════════════════════════════════════════════

class TestPersistence:

    def test_reload(self):
        blob = MemoryBlobStore()
        AuditTrail(blob).log_created(_action(), ALICE)
        assert len(blob.get(AUDIT_KEY)) == 1
        reloaded = AuditTrail(blob)
        [entry] = reloaded.entries()
        assert entry.kind == AuditKind.CREATED
        assert entry.timestamp.tzinfo is not None

    def test_failure_reported_and_memory_kept(self):
        class _FailingBlob(MemoryBlobStore):
            def _write(self, key, payload):
                raise PersistenceError(key, "quota exceeded")

        failures = []
        trail = AuditTrail(_FailingBlob(), on_persistence_error=failures.append)
        trail.log_created(_action(), ALICE)
        assert len(trail) == 1
        assert len(failures) == 1
        assert failures[0].key == AUDIT_KEY
