"""
Corrective Action Tracker
Tests: HTTP API (actions, notifications, scheduler, audit).

Exercises the blueprints through the Flask test client; the acting user
is passed in X-User-* headers.
"""

import pytest

from conftest import ANALYST, CREATOR, OUTSIDER, analysis_payload, headers_for

from capa.ai.gateway import LLMGateway
from capa.models.action import ActionStatus, ClosureKind, CorrectiveAction
from capa.utils.helpers import actor_from_request


def _create(client, payload, actor=CREATOR):
    res = client.post("/api/v1/actions", json=payload, headers=headers_for(actor))
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _transition(client, action_id, status, actor, updates=None):
    body = {"status": status}
    if updates:
        body["updates"] = updates
    return client.post(f"/api/v1/actions/{action_id}/transition", json=body, headers=headers_for(actor))


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

class TestActionsCrud:

    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"
        assert res.get_json()["llm_configured"] is True

    def test_create(self, client, draft_payload):
        data = _create(client, draft_payload)
        assert data["id"] == "CA-0001"
        assert data["status"] == "draft"
        assert data["created_by"] == CREATOR.user_id
        assert len(data["status_history"]) == 1

    def test_create_requires_title(self, client):
        res = client.post("/api/v1/actions", json={"description": "x"}, headers=headers_for(CREATOR))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_create_rejects_read_only_fields(self, client, draft_payload):
        draft_payload["status"] = "closed"
        res = client.post("/api/v1/actions", json=draft_payload, headers=headers_for(CREATOR))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"status": "read-only"}

    def test_get_unknown(self, client):
        res = client.get("/api/v1/actions/CA-9999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_filters(self, client, draft_payload):
        _create(client, draft_payload)
        _create(client, {"title": "Label printer jams", "department": "Pharmacy"})
        assert client.get("/api/v1/actions").get_json()["total"] == 2
        assert client.get("/api/v1/actions?department=Pharmacy").get_json()["total"] == 1
        assert client.get("/api/v1/actions?q=fall").get_json()["total"] == 1
        assert client.get("/api/v1/actions?status=draft").get_json()["total"] == 2
        assert client.get("/api/v1/actions?is_bis=true").get_json()["total"] == 0

    def test_list_invalid_status(self, client):
        res = client.get("/api/v1/actions?status=finished")
        assert res.status_code == 400

    def test_patch(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={"priority": "low"}, headers=headers_for(CREATOR))
        assert res.status_code == 200
        assert res.get_json()["priority"] == "low"

    def test_patch_empty_body(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={}, headers=headers_for(CREATOR))
        assert res.status_code == 400

    def test_patch_invalid_priority(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={"priority": "bogus"}, headers=headers_for(CREATOR))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_RULE"

    def test_patch_forbidden(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={"priority": "low"}, headers=headers_for(OUTSIDER))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_transition_applied(self, client, draft_payload):
        _create(client, draft_payload)
        res = _transition(client, "CA-0001", "pending_analysis", CREATOR)
        assert res.status_code == 200
        body = res.get_json()
        assert body["applied"] is True
        assert body["previous_status"] == "draft"
        assert body["action"]["status"] == "pending_analysis"

    def test_transition_blocked(self, client):
        _create(client, {"title": "Only a title"})
        res = _transition(client, "CA-0001", "pending_analysis", CREATOR)
        assert res.status_code == 422
        body = res.get_json()
        assert body["applied"] is False
        assert "description" in body["missing"]
        assert client.get("/api/v1/actions/CA-0001").get_json()["status"] == "draft"

    def test_transition_skipping_a_stage(self, client, draft_payload):
        _create(client, draft_payload)
        res = _transition(client, "CA-0001", "closed", CREATOR)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_TRANSITION_INVALID"
        assert body["details"]["from"] == "draft"

    def test_transition_unknown_status(self, client, draft_payload):
        _create(client, draft_payload)
        assert _transition(client, "CA-0001", "finished", CREATOR).status_code == 422

    def test_transition_requires_status(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/transition", json={}, headers=headers_for(CREATOR))
        assert res.status_code == 400

    def test_similarity_gate_then_advance_with_updates(self, client, draft_payload):
        _create(client, draft_payload)
        _transition(client, "CA-0001", "pending_analysis", CREATOR)

        blocked = client.post("/api/v1/actions/CA-0001/advance",
                              json={"updates": {"analysis_data": analysis_payload()}},
                              headers=headers_for(ANALYST))
        assert blocked.status_code == 422
        assert blocked.get_json()["missing"] == ["similarity_check"]

        check = client.post("/api/v1/actions/CA-0001/similarity-check", headers=headers_for(ANALYST))
        assert check.status_code == 200
        assert check.get_json() == {"action_id": "CA-0001", "checked": True,
                                    "matches": [], "has_high_similarity": False}

        res = client.post("/api/v1/actions/CA-0001/advance", headers=headers_for(ANALYST))
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "pending_verification"

    def test_validation_report(self, client, draft_payload):
        _create(client, draft_payload)
        body = client.get("/api/v1/actions/CA-0001/validation", headers=headers_for(CREATOR)).get_json()
        assert body["valid"] is True
        assert body["next_status"] == "pending_analysis"
        assert body["available_transitions"] == ["pending_analysis", "annulled"]
        assert body["can_edit"] is True

    def test_annul(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/annul", headers=headers_for(CREATOR))
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "annulled"

        again = client.post("/api/v1/actions/CA-0001/annul", headers=headers_for(CREATOR))
        assert again.status_code == 409

    def test_annul_forbidden(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/annul", headers=headers_for(OUTSIDER))
        assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════════
# AI, BIS & COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

class TestCollaboratorsAndBis:

    def test_suggestions(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/suggestions", json={"root_causes": "Night rounds"},
                          headers=headers_for(CREATOR))
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 3
        assert body["items"][0]["assigned_to"] == "Quality unit"
        assert client.get("/api/v1/actions/CA-0001").get_json()["analysis_data"] is None

    def test_similarity_unconfigured(self, client, engine, draft_payload):
        _create(client, draft_payload)
        _transition(client, "CA-0001", "pending_analysis", CREATOR)
        # A non-draft action so the pool is not empty
        engine.store.create(CorrectiveAction(id="CA-0002", title="Earlier fall", status=ActionStatus.CLOSED))
        engine.similarity_detector.gateway = LLMGateway(provider="gemini", api_key="")

        res = client.post("/api/v1/actions/CA-0001/similarity-check", headers=headers_for(ANALYST))
        assert res.status_code == 503
        assert res.get_json()["code"] == "AI_NOT_CONFIGURED"
        assert client.get("/api/v1/actions/CA-0001").get_json()["has_checked_similarity"] is False

    def test_bis_chain_and_metrics(self, client, walk_to, draft_payload):
        _create(client, draft_payload)
        walk_to("CA-0001", "closed", closure_kind=ClosureKind.NON_CONFORMING)

        original = client.get("/api/v1/actions/CA-0001").get_json()
        assert original["bis_action_ids"] == ["CA-0002"]

        chain = client.get("/api/v1/actions/CA-0002/bis-chain").get_json()
        assert [a["id"] for a in chain["items"]] == ["CA-0001", "CA-0002"]

        metrics = client.get("/api/v1/actions/bis-metrics").get_json()
        assert metrics["total_bis"] == 1
        assert client.get("/api/v1/actions?is_bis=1").get_json()["total"] == 1

    def test_bis_chain_unknown(self, client):
        assert client.get("/api/v1/actions/CA-9999/bis-chain").status_code == 404

    def test_comments(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/comments", json={"text": "Checked with ward lead"},
                          headers=headers_for(OUTSIDER))
        assert res.status_code == 201
        assert res.get_json()["id"] == "CA-0001-C1"
        assert res.get_json()["user_name"] == OUTSIDER.name

        listed = client.get("/api/v1/actions/CA-0001/comments").get_json()
        assert listed["total"] == 1

    def test_empty_comment(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/comments", json={"text": "  "}, headers=headers_for(CREATOR))
        assert res.status_code == 400

    def test_comment_on_unknown_action(self, client):
        res = client.post("/api/v1/actions/CA-9999/comments", json={"text": "hi"}, headers=headers_for(CREATOR))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS & SCHEDULER
# ═════════════════════════════════════════════════════════════════════════════

class TestNotificationsApi:

    @pytest.fixture()
    def notified(self, client, draft_payload):
        _create(client, draft_payload)
        _transition(client, "CA-0001", "pending_analysis", CREATOR)

    def test_list_for_acting_user(self, client, notified):
        body = client.get("/api/v1/notifications", headers=headers_for(ANALYST)).get_json()
        assert body["total"] == 1
        assert body["items"][0]["type"] == "pending-analysis"
        assert body["items"][0]["action_id"] == "CA-0001"
        assert client.get("/api/v1/notifications", headers=headers_for(CREATOR)).get_json()["total"] == 0

    def test_read_and_counts(self, client, notified):
        headers = headers_for(ANALYST)
        assert client.get("/api/v1/notifications/unread-count", headers=headers).get_json() == {"unread_count": 1}
        notif_id = client.get("/api/v1/notifications", headers=headers).get_json()["items"][0]["id"]

        res = client.patch(f"/api/v1/notifications/{notif_id}/read", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True
        assert client.get("/api/v1/notifications?unread_only=true", headers=headers).get_json()["total"] == 0

    def test_mark_all_read(self, client, notified):
        res = client.post("/api/v1/notifications/mark-all-read", headers=headers_for(ANALYST))
        assert res.get_json() == {"marked_read": 1}

    def test_delete(self, client, notified):
        headers = headers_for(ANALYST)
        notif_id = client.get("/api/v1/notifications", headers=headers).get_json()["items"][0]["id"]
        assert client.delete(f"/api/v1/notifications/{notif_id}").status_code == 200
        assert client.delete(f"/api/v1/notifications/{notif_id}").status_code == 404
        assert client.patch(f"/api/v1/notifications/{notif_id}/read").status_code == 404

    def test_metrics(self, client, notified):
        body = client.get(f"/api/v1/notifications/metrics?recipient={ANALYST.user_id}").get_json()
        assert body["total"] == 1
        assert body["unread"] == 1

    def test_sweep(self, client, draft_payload):
        draft_payload["due_date"] = "2020-01-31"
        _create(client, draft_payload)
        res = client.post("/api/v1/notifications/sweep")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "success"
        assert body["result"]["overdue"] == 1

        overdue = client.get("/api/v1/notifications", headers=headers_for(ANALYST)).get_json()
        assert overdue["items"][0]["type"] == "overdue"

        again = client.post("/api/v1/notifications/sweep").get_json()
        assert again["result"]["skipped_duplicates"] == 1

    def test_scheduler_jobs(self, client):
        client.post("/api/v1/scheduler/jobs/deadline_sweep/run")
        jobs = {j["job_name"]: j for j in client.get("/api/v1/scheduler/jobs").get_json()["items"]}
        assert "deadline_sweep" in jobs
        assert jobs["deadline_sweep"]["last_run"]["status"] == "success"

    def test_unknown_job(self, client):
        assert client.post("/api/v1/scheduler/jobs/nope/run").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# AUDIT
# ═════════════════════════════════════════════════════════════════════════════

class TestAuditApi:

    def test_action_history(self, client, draft_payload):
        _create(client, draft_payload)
        client.patch("/api/v1/actions/CA-0001", json={"priority": "low"}, headers=headers_for(CREATOR))
        body = client.get("/api/v1/audit/actions/CA-0001").get_json()
        assert [e["kind"] for e in body["items"]] == ["updated", "created"]
        assert body["items"][0]["changes"]["priority"] == {"old": "high", "new": "low"}

    def test_filters(self, client, draft_payload):
        _create(client, draft_payload)
        assert client.get("/api/v1/audit?kind=created").get_json()["total"] == 1
        assert client.get(f"/api/v1/audit?actor={ANALYST.user_id}").get_json()["total"] == 0
        assert client.get(f"/api/v1/audit/users/{CREATOR.user_id}").get_json()["total"] == 1

    def test_invalid_kind(self, client):
        res = client.get("/api/v1/audit?kind=deleted")
        assert res.status_code == 400

    def test_metrics(self, client, draft_payload):
        _create(client, draft_payload)
        body = client.get("/api/v1/audit/metrics").get_json()
        assert body["total"] == 1
        assert body["by_kind"] == {"created": 1}


# ═════════════════════════════════════════════════════════════════════════════
# INPUT TYPES & IDENTITY
# ═════════════════════════════════════════════════════════════════════════════

class TestInputTypes:

    def test_create_non_string_title(self, client):
        res = client.post("/api/v1/actions", json={"title": 5}, headers=headers_for(CREATOR))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    @pytest.mark.parametrize("body", [[{"title": "Fall"}], "Fall", 5])
    def test_create_body_not_an_object(self, client, body):
        res = client.post("/api/v1/actions", json=body, headers=headers_for(CREATOR))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_RULE"

    def test_patch_non_string_field_keeps_record_usable(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={"description": 5}, headers=headers_for(CREATOR))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"description": "must be a string"}

        report = client.get("/api/v1/actions/CA-0001/validation", headers=headers_for(CREATOR))
        assert report.status_code == 200
        assert report.get_json()["valid"] is True
        assert _transition(client, "CA-0001", "pending_analysis", CREATOR).status_code == 200

    def test_patch_body_not_an_object(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json=["description"], headers=headers_for(CREATOR))
        assert res.status_code == 422

    def test_transition_updates_not_an_object(self, client, draft_payload):
        _create(client, draft_payload)
        res = _transition(client, "CA-0001", "pending_analysis", CREATOR, updates="description")
        assert res.status_code == 422
        assert client.get("/api/v1/actions/CA-0001").get_json()["status"] == "draft"

    def test_transition_non_string_status(self, client, draft_payload):
        _create(client, draft_payload)
        assert _transition(client, "CA-0001", ["closed"], CREATOR).status_code == 422

    def test_non_string_comment(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/comments", json={"text": 42}, headers=headers_for(CREATOR))
        assert res.status_code == 400

    def test_non_string_root_causes(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/suggestions", json={"root_causes": ["a"]},
                          headers=headers_for(CREATOR))
        assert res.status_code == 400


class TestReservedRoles:

    SPOOFED = {"X-User-Id": "mallory", "X-User-Roles": "system"}

    def test_header_system_role_cannot_edit(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.patch("/api/v1/actions/CA-0001", json={"title": "hijacked"}, headers=self.SPOOFED)
        assert res.status_code == 403
        assert client.get("/api/v1/actions/CA-0001").get_json()["title"] == draft_payload["title"]

    def test_header_system_role_cannot_annul(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/annul", headers=self.SPOOFED)
        assert res.status_code == 403
        assert client.get("/api/v1/actions/CA-0001").get_json()["status"] == "draft"

    def test_header_system_role_cannot_transition(self, client, draft_payload):
        _create(client, draft_payload)
        res = client.post("/api/v1/actions/CA-0001/transition", json={"status": "pending_analysis"},
                          headers=self.SPOOFED)
        assert res.status_code == 403

    def test_other_roles_survive(self, app):
        with app.test_request_context(headers={"X-User-Id": "u-q", "X-User-Roles": "system, quality_direction"}):
            actor = actor_from_request()
        assert actor.roles == ("quality_direction",)
        assert actor.is_system is False
