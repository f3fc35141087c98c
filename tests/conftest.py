"""
Shared pytest fixtures for the Corrective Action Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test app context with a freshly wired engine (autouse)
    - client: Flask test client (function-scoped)
    - engine: the app's WorkflowEngine
    - actors: creator / analyst / implementer / closer / quality direction
    - draft_payload: a Draft payload that satisfies the Draft completion predicate
    - walk_to: helper that drives an action forward to a given status
"""

import pytest

from capa import build_engine, create_app
from capa.models import db as _db
from capa.models.action import ActionStatus, ClosureKind
from capa.services.authorization import Actor


CREATOR = Actor(user_id="u-creator", name="Carla Creator")
ANALYST = Actor(user_id="u-analyst", name="Arnau Analyst")
IMPLEMENTER = Actor(user_id="u-impl", name="Iris Implementer")
CLOSER = Actor(user_id="u-closer", name="Clara Closer")
QUALITY = Actor(user_id="u-quality", name="Quality Direction", roles=("quality_direction",))
OUTSIDER = Actor(user_id="u-outsider", name="Oscar Outsider")

HEADERS = {"X-User-Id": CREATOR.user_id, "X-User-Name": CREATOR.name}


def headers_for(actor):
    return {
        "X-User-Id": actor.user_id,
        "X-User-Name": actor.name,
        "X-User-Roles": ",".join(actor.roles),
    }


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rewire an empty engine, reset tables after."""
    with app.app_context():
        app.extensions["capa"] = build_engine(app)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["capa"]


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def draft_payload():
    """Draft fields that satisfy the Draft completion predicate."""
    return {
        "title": "Patient fall in ward 3",
        "description": "Patient fell while getting out of bed during the night shift.",
        "type": "incident",
        "category": "patient-safety",
        "sub_category": "falls",
        "priority": "high",
        "centre": "Hospital Central",
        "department": "Internal Medicine",
        "assigned_to": ANALYST.user_id,
        "analysis_responsible": ANALYST.user_id,
        "implementation_responsible": IMPLEMENTER.user_id,
        "closure_responsible": CLOSER.user_id,
        "due_date": "2026-12-31",
    }


def analysis_payload():
    return {
        "root_causes": "Bed rails not raised; night round interval too long.",
        "proposed_actions": [
            {"description": "Raise bed rails for all high-risk patients",
             "assigned_to": IMPLEMENTER.user_id, "due_date": "2026-11-30"},
        ],
    }


def verified_items(action):
    items = []
    for item in action.proposed_actions:
        data = item.to_dict()
        data["verification_status"] = "implemented"
        items.append(data)
    return {"proposed_actions": items}


def closure_payload(kind=ClosureKind.CONFORMING):
    return {
        "closure_data": {
            "closure_notes": "All measures in place.",
            "effectiveness_evaluation": "No falls in the following quarter.",
        },
        "closure_kind": kind.value,
    }


@pytest.fixture()
def walk_to(engine):
    """Drive an action forward to *target* using the responsible actor at each step."""

    def _walk(action_id, target, *, closure_kind=ClosureKind.CONFORMING):
        target = ActionStatus(target)
        while True:
            action = engine.store.get(action_id)
            if action.status == target:
                return action
            if action.status == ActionStatus.DRAFT:
                result = engine.change_status(action_id, ActionStatus.PENDING_ANALYSIS, CREATOR)
            elif action.status == ActionStatus.PENDING_ANALYSIS:
                engine.update_action(action_id, {"analysis_data": analysis_payload()}, ANALYST)
                engine.run_similarity_check(action_id, ANALYST)
                result = engine.change_status(action_id, ActionStatus.PENDING_VERIFICATION, ANALYST)
            elif action.status == ActionStatus.PENDING_VERIFICATION:
                engine.update_action(action_id, {"analysis_data": verified_items(action)}, IMPLEMENTER)
                result = engine.change_status(action_id, ActionStatus.PENDING_CLOSURE, IMPLEMENTER)
            elif action.status == ActionStatus.PENDING_CLOSURE:
                engine.update_action(action_id, closure_payload(closure_kind), CLOSER)
                result = engine.change_status(action_id, ActionStatus.CLOSED, CLOSER)
            else:
                raise AssertionError(f"cannot walk from {action.status.value}")
            assert result["applied"], result["missing"]

    return _walk
