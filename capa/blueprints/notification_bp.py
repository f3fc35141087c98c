"""
Corrective Action Tracker
Notification & Scheduling Blueprint.

Provides:
    - Notification listing, unread counts and metrics per recipient
    - Read / mark-all-read / delete
    - Deadline sweep trigger (also runnable as a scheduled job)
    - Scheduled job listing and manual trigger

The recipient defaults to the acting user (X-User-Id); broadcast
notifications ("all") are always included.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from capa.blueprints import get_engine, register_error_handlers
from capa.services.scheduler_service import SchedulerService, get_registered_jobs
from capa.utils.errors import E, api_error
from capa.utils.helpers import actor_from_request

logger = logging.getLogger(__name__)

notification_bp = register_error_handlers(
    Blueprint("notification_bp", __name__, url_prefix="/api/v1")
)


def _recipient() -> str:
    return request.args.get("recipient") or actor_from_request().user_id


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for a recipient, newest first. Params: recipient, unread_only, limit, offset."""
    unread_only = request.args.get("unread_only", "false").lower() in ("1", "true", "yes")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = get_engine().notifications.list_for_recipient(
        _recipient(), unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": get_engine().notifications.unread_count(_recipient())})


@notification_bp.route("/notifications/metrics", methods=["GET"])
def notification_metrics():
    return jsonify(get_engine().notifications.metrics(request.args.get("recipient")))


@notification_bp.route("/notifications/<notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    notif = get_engine().notifications.mark_read(notification_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    count = get_engine().notifications.mark_all_read(_recipient())
    return jsonify({"marked_read": count})


@notification_bp.route("/notifications/<notification_id>", methods=["DELETE"])
def delete_notification(notification_id):
    if not get_engine().notifications.delete(notification_id):
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify({"deleted": True, "id": notification_id})


@notification_bp.route("/notifications/sweep", methods=["POST"])
def sweep_deadlines():
    """Run the deadline sweep now."""
    return _run_job("deadline_sweep")


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()})


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return _run_job(job_name)


def _run_job(job_name: str):
    run = SchedulerService.run_job(job_name)
    if run["status"] != "success":
        return api_error(E.INTERNAL, run.get("error") or "Job failed", details={"job_name": job_name})
    return jsonify(run)
