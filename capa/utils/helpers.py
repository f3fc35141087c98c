"""Shared utility functions used by services and blueprints.

parse_date:          returns None on bad input
utcnow / iso:        timestamp helpers for history, audit and notifications
actor_from_request:  builds the acting user from request headers
"""
import logging
from datetime import date, datetime, timezone

from flask import request

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise a date/datetime to ISO-8601, passing None through."""
    if value is None:
        return None
    return value.isoformat()


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value):
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def actor_from_request():
    """Build the acting user from ``X-User-*`` headers.

    Authentication is handled upstream; this layer only needs an identity
    and a role list to hand to the authorization collaborator. The
    ``system`` role is reserved for in-process jobs and is never taken
    from a request.
    """
    from capa.services.authorization import SYSTEM_ROLE, Actor

    user_id = (request.headers.get("X-User-Id") or "").strip() or "anonymous"
    name = (request.headers.get("X-User-Name") or "").strip() or user_id
    roles_raw = request.headers.get("X-User-Roles", "")
    roles = tuple(r.strip() for r in roles_raw.split(",") if r.strip())
    if SYSTEM_ROLE in roles:
        logger.warning("Dropped reserved role %r claimed by %s", SYSTEM_ROLE, user_id)
        roles = tuple(r for r in roles if r != SYSTEM_ROLE)
    return Actor(user_id=user_id, name=name, roles=roles)
