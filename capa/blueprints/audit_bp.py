"""
Corrective Action Tracker
Audit Blueprint.

Read-only access to the audit trail:
    GET /api/v1/audit                   ?actor=&kind=&limit=
    GET /api/v1/audit/actions/<id>      history of one action
    GET /api/v1/audit/users/<user_id>   activity of one user
    GET /api/v1/audit/metrics           activity counts
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from capa.blueprints import get_engine, register_error_handlers
from capa.models.audit import AuditKind
from capa.utils.errors import E, api_error

logger = logging.getLogger(__name__)

audit_bp = register_error_handlers(Blueprint("audit_bp", __name__, url_prefix="/api/v1"))


@audit_bp.route("/audit", methods=["GET"])
def list_audit():
    kind = request.args.get("kind")
    if kind and kind not in {k.value for k in AuditKind}:
        return api_error(E.VALIDATION_INVALID, f"Invalid kind: {kind}",
                         details={"kind": sorted(k.value for k in AuditKind)})
    limit = min(request.args.get("limit", 100, type=int), 1000)

    entries = get_engine().audit.entries(actor_id=request.args.get("actor"), kind=kind, limit=limit)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


@audit_bp.route("/audit/actions/<action_id>", methods=["GET"])
def action_history(action_id):
    entries = get_engine().audit.history(action_id)
    return jsonify({"action_id": action_id, "items": [e.to_dict() for e in entries],
                    "total": len(entries)})


@audit_bp.route("/audit/users/<user_id>", methods=["GET"])
def user_activity(user_id):
    entries = get_engine().audit.user_activity(user_id)
    return jsonify({"user_id": user_id, "items": [e.to_dict() for e in entries],
                    "total": len(entries)})


@audit_bp.route("/audit/metrics", methods=["GET"])
def audit_metrics():
    return jsonify(get_engine().audit.activity_metrics())
