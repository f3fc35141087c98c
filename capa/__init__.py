"""
Corrective Action Tracker
Flask Application Factory.

Usage:
    from capa import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from capa.config import config
from capa.middleware.logging_config import configure_logging
from capa.models import db

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, AI endpoints only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def build_engine(app):
    """
    Wire the workflow engine and its collaborators from app config.

    Must run inside an app context when BLOB_BACKEND is "sql".
    """
    from capa.ai.assistants.proposal_suggester import ProposalSuggester
    from capa.ai.assistants.similarity_detector import SimilarityDetector
    from capa.ai.gateway import LLMGateway
    from capa.services.action_store import ActionStore
    from capa.services.audit import AuditTrail
    from capa.services.authorization import RoleBasedAuthorizer
    from capa.services.blob_store import MemoryBlobStore, SqlBlobStore
    from capa.services.notification import NotificationService
    from capa.services.workflow import WorkflowEngine

    backend = app.config.get("BLOB_BACKEND", "sql")
    blob_store = MemoryBlobStore() if backend == "memory" else SqlBlobStore()

    notifications = NotificationService(
        blob_store,
        quality_direction=app.config["QUALITY_DIRECTION_RECIPIENT"],
        retention=app.config["NOTIFICATION_RETENTION"],
    )
    store = ActionStore(blob_store, on_persistence_error=notifications.alert_persistence_failure)
    audit = AuditTrail(
        blob_store,
        retention=app.config["AUDIT_RETENTION"],
        on_persistence_error=notifications.alert_persistence_failure,
    )
    gateway = LLMGateway.from_config(app.config)

    engine = WorkflowEngine(
        store,
        audit,
        notifications,
        authorizer=RoleBasedAuthorizer(),
        similarity_detector=SimilarityDetector(gateway),
        suggester=ProposalSuggester(gateway),
        bis_due_days=app.config["BIS_DUE_DAYS"],
        bis_analysis_days=app.config["BIS_ANALYSIS_DAYS"],
    )
    logger.info("Workflow engine ready: %d actions, blob backend=%s, llm=%s",
                len(store.all()), backend, gateway.provider_name)
    return engine


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Database + engine ────────────────────────────────────────────────
    from capa.models import storage as _storage_models  # noqa: F401

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        db.create_all()
        app.extensions["capa"] = build_engine(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from capa.blueprints.actions_bp import actions_bp
    from capa.blueprints.audit_bp import audit_bp
    from capa.blueprints.notification_bp import notification_bp

    app.register_blueprint(actions_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(audit_bp)

    @app.route("/api/v1/health")
    def health():
        engine = app.extensions["capa"]
        return {
            "status": "ok",
            "actions": len(engine.store.all()),
            "llm_configured": engine.similarity_detector.gateway.is_configured(),
        }

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Scheduler (importing the jobs module registers them) ────────────
    from capa.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
