"""Flask blueprints and the service-exception → HTTP mapping they share."""

import logging

from flask import current_app, request

from capa.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    PersistenceError,
    SimilarityError,
    TransitionError,
    ValidationError,
)
from capa.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_engine():
    """The application's WorkflowEngine."""
    return current_app.extensions["capa"]


def json_body() -> dict:
    """The request's JSON object body; an absent body reads as ``{}``.

    Raises:
        ValidationError: the body is JSON but not an object.
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def register_error_handlers(bp):
    """Attach the standard service-exception handlers to *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(TransitionError)
    def _handle_transition(error: TransitionError):
        return api_error(E.TRANSITION_INVALID, str(error), details={
            "from": error.current_status,
            "to": error.target_status,
            "reason": error.reason,
        })

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(ConfigurationError)
    def _handle_not_configured(error: ConfigurationError):
        return api_error(E.AI_NOT_CONFIGURED, str(error))

    @bp.errorhandler(SimilarityError)
    def _handle_bad_ai_response(error: SimilarityError):
        logger.warning("AI collaborator error: %s", error)
        return api_error(E.AI_BAD_RESPONSE, str(error))

    @bp.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        return api_error(E.PERSISTENCE, str(error))

    return bp
