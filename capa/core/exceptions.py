"""
Service-layer exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Usage:
    from capa.core.exceptions import NotFoundError, TransitionError

    raise NotFoundError(resource="CorrectiveAction", resource_id="CA-0001")
    raise TransitionError("CA-0001", "closed", "draft", "No transition from a terminal status")

Readiness failures (``can_advance`` false) are NOT exceptions: they are
returned to the caller as a list of missing-field reasons.
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "CorrectiveAction").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique record. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class TransitionError(Exception):
    """Raised when a requested status change is not defined from the current status.

    Maps to HTTP 409.
    """

    def __init__(self, action_id: str, current: str, target: str | None, reason: str | None = None):
        msg = f"Cannot move action {action_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.action_id = action_id
        self.current_status = current
        self.target_status = target
        self.reason = reason


class PermissionDenied(Exception):
    """Raised when the authorization collaborator refuses a mutation. Maps to HTTP 403."""

    def __init__(self, actor_id: str, operation: str, status: str | None = None):
        self.actor_id = actor_id
        self.operation = operation
        self.status = status
        msg = f"User {actor_id} may not {operation}"
        if status:
            msg += f" while the action is '{status}'"
        super().__init__(msg)


class ConfigurationError(Exception):
    """Raised when an external collaborator lacks its credential or setup.

    Blocks only the AI-backed features; core CRUD and transitions never
    raise it. Maps to HTTP 503.
    """


class PersistenceError(Exception):
    """Raised by a blob store when a collection cannot be written."""

    def __init__(self, key: str, reason: str | None = None):
        self.key = key
        self.reason = reason
        msg = f"Could not persist '{key}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SimilarityError(Exception):
    """Raised when the similarity collaborator returns an unusable response. Maps to HTTP 502."""
