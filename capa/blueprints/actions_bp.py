"""
Corrective Action Tracker
Actions Blueprint.

Endpoint groups:
  CRUD                  GET/POST  /api/v1/actions
                        GET/PATCH /api/v1/actions/<id>
  Lifecycle             POST /api/v1/actions/<id>/transition   {"status", "updates"?}
                        POST /api/v1/actions/<id>/advance      {"updates"?}
                        POST /api/v1/actions/<id>/annul
                        GET  /api/v1/actions/<id>/validation
  AI collaborators      POST /api/v1/actions/<id>/similarity-check
                        POST /api/v1/actions/<id>/suggestions  {"root_causes"?}
  BIS                   GET  /api/v1/actions/<id>/bis-chain
                        GET  /api/v1/actions/bis-metrics
  Comments              GET/POST /api/v1/actions/<id>/comments

The acting user comes from the X-User-* headers. A blocked transition
(completion predicate not met) answers 422 with the result body, whose
``missing`` list names every unmet requirement.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from capa import limiter
from capa.blueprints import get_engine, json_body, register_error_handlers
from capa.models.action import ActionStatus
from capa.services.bis_generator import get_bis_history, get_bis_metrics
from capa.utils.errors import E, api_error
from capa.utils.helpers import actor_from_request

logger = logging.getLogger(__name__)

actions_bp = register_error_handlers(Blueprint("actions_bp", __name__, url_prefix="/api/v1"))


def _ai_rate_limit():
    return current_app.config.get("AI_RATE_LIMIT", "30 per minute")


def _transition_response(result: dict):
    return jsonify(result), (200 if result["applied"] else 422)


# ═══════════════════════════════════════════════════════════════════════════
#  CRUD
# ═══════════════════════════════════════════════════════════════════════════

@actions_bp.route("/actions", methods=["GET"])
def list_actions():
    """List actions. Filters: status, is_bis, assigned_to, centre, department, q."""
    actions = get_engine().store.all()

    status = request.args.get("status")
    if status:
        if status not in {s.value for s in ActionStatus}:
            return api_error(E.VALIDATION_INVALID, f"Invalid status: {status}")
        actions = [a for a in actions if a.status.value == status]
    is_bis = request.args.get("is_bis")
    if is_bis is not None:
        wanted = is_bis.lower() in ("1", "true", "yes")
        actions = [a for a in actions if a.is_bis == wanted]
    for field in ("assigned_to", "centre", "department"):
        value = request.args.get(field)
        if value:
            actions = [a for a in actions if getattr(a, field) == value]
    q = (request.args.get("q") or "").strip().lower()
    if q:
        actions = [a for a in actions if q in a.title.lower() or q in a.description.lower()]

    return jsonify({"items": [a.to_dict() for a in actions], "total": len(actions)})


@actions_bp.route("/actions", methods=["POST"])
def create_action():
    data = json_body()
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    action = get_engine().create_action(data, actor_from_request())
    return jsonify(action.to_dict()), 201


# Declared before /actions/<action_id> so "bis-metrics" is not taken for an id
@actions_bp.route("/actions/bis-metrics", methods=["GET"])
def bis_metrics():
    return jsonify(get_bis_metrics(get_engine().store.all()))


@actions_bp.route("/actions/<action_id>", methods=["GET"])
def get_action(action_id):
    engine = get_engine()
    action = engine.store.get(action_id)
    body = action.to_dict()
    body["bis_action_ids"] = engine.store.bis_ids_for(action_id)
    return jsonify(body)


@actions_bp.route("/actions/<action_id>", methods=["PATCH"])
def update_action(action_id):
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    action = get_engine().update_action(action_id, data, actor_from_request())
    return jsonify(action.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════

@actions_bp.route("/actions/<action_id>/transition", methods=["POST"])
def transition_action(action_id):
    data = json_body()
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = get_engine().change_status(action_id, status, actor_from_request(),
                                        updates=data.get("updates"))
    return _transition_response(result)


@actions_bp.route("/actions/<action_id>/advance", methods=["POST"])
def advance_action(action_id):
    data = json_body()
    result = get_engine().advance(action_id, actor_from_request(), updates=data.get("updates"))
    return _transition_response(result)


@actions_bp.route("/actions/<action_id>/annul", methods=["POST"])
def annul_action(action_id):
    result = get_engine().annul(action_id, actor_from_request())
    return jsonify(result)


@actions_bp.route("/actions/<action_id>/validation", methods=["GET"])
def validate_action(action_id):
    return jsonify(get_engine().validation(action_id, actor_from_request()))


# ═══════════════════════════════════════════════════════════════════════════
#  AI COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════

@actions_bp.route("/actions/<action_id>/similarity-check", methods=["POST"])
@limiter.limit(_ai_rate_limit)
def similarity_check(action_id):
    return jsonify(get_engine().run_similarity_check(action_id, actor_from_request()))


@actions_bp.route("/actions/<action_id>/suggestions", methods=["POST"])
@limiter.limit(_ai_rate_limit)
def suggest_proposals(action_id):
    data = json_body()
    root_causes = data.get("root_causes")
    if root_causes is not None and not isinstance(root_causes, str):
        return api_error(E.VALIDATION_INVALID, "root_causes must be a string")
    items = get_engine().suggest_proposals(action_id, root_causes=root_causes)
    return jsonify({"action_id": action_id, "items": items, "total": len(items)})


# ═══════════════════════════════════════════════════════════════════════════
#  BIS + COMMENTS
# ═══════════════════════════════════════════════════════════════════════════

@actions_bp.route("/actions/<action_id>/bis-chain", methods=["GET"])
def bis_chain(action_id):
    engine = get_engine()
    engine.store.get(action_id)
    chain = get_bis_history(engine.store.all(), action_id)
    return jsonify({"action_id": action_id, "items": [a.to_dict() for a in chain], "total": len(chain)})


@actions_bp.route("/actions/<action_id>/comments", methods=["GET"])
def list_comments(action_id):
    engine = get_engine()
    engine.store.get(action_id)
    comments = engine.store.comments_for(action_id)
    return jsonify({"items": [c.to_dict() for c in comments], "total": len(comments)})


@actions_bp.route("/actions/<action_id>/comments", methods=["POST"])
def add_comment(action_id):
    data = json_body()
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    comment = get_engine().add_comment(action_id, actor_from_request(), text)
    return jsonify(comment.to_dict()), 201
