"""
Corrective Action Tracker
Scheduled Jobs.

Jobs:
    - deadline_sweep: overdue / upcoming-deadline notifications for open actions
"""

from __future__ import annotations

import logging
from typing import Any

from capa.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("deadline_sweep")
def sweep_deadlines(app) -> dict[str, Any]:
    """Notify assignees of overdue and soon-due corrective actions."""
    engine = app.extensions["capa"]
    results = engine.notifications.sweep_deadlines(
        engine.store.all(),
        warning_days=app.config.get("DEADLINE_WARNING_DAYS", 10),
    )
    logger.info("deadline_sweep: %d overdue, %d upcoming", results["overdue"], results["upcoming"])
    return results
