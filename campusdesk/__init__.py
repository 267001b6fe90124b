"""
CampusDesk
Flask Application Factory.

Usage:
    from campusdesk import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from campusdesk.auth import init_auth
from campusdesk.chat.gateway import init_gateway
from campusdesk.config import config
from campusdesk.core.exceptions import (
    AlreadyDecided,
    CompletionServiceUnavailable,
    ConflictError,
    ImmutableRecordError,
    MalformedProposal,
    NotFoundError,
    PermissionDenied,
    StaleTarget,
    StorageUnavailable,
    TurnCancelled,
    UnknownCapability,
    ValidationError,
)
from campusdesk.middleware.logging_config import configure_logging
from campusdesk.middleware.rate_limiter import init_rate_limits
from campusdesk.middleware.timing import init_request_timing
from campusdesk.models import db
from campusdesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
)


def _register_error_handlers(app):
    """Map the exception taxonomy onto the ``{error, code, details?}`` envelope."""

    @app.errorhandler(NotFoundError)
    def _not_found_error(e):
        logger.info("Not found: %s", e)
        return api_error(E.NOT_FOUND, f"{e.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        return api_error(E.VALIDATION_CONSTRAINT, str(e), details=e.details or None)

    @app.errorhandler(MalformedProposal)
    def _malformed(e):
        return api_error(E.MALFORMED_PROPOSAL, str(e), details=e.details or None)

    @app.errorhandler(UnknownCapability)
    def _unknown_capability(e):
        return api_error(E.UNKNOWN_CAPABILITY, str(e))

    @app.errorhandler(ConflictError)
    def _conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(AlreadyDecided)
    def _already_decided(e):
        return api_error(E.CONFLICT_DECIDED, str(e), details={"status": e.current_status})

    @app.errorhandler(ImmutableRecordError)
    def _immutable(e):
        logger.error("Attempt to rewrite immutable record: %s", e)
        return api_error(E.CONFLICT_STATE, str(e))

    @app.errorhandler(PermissionDenied)
    def _permission_denied(e):
        details = {"required_role": e.required_role} if e.required_role else None
        return api_error(E.FORBIDDEN, str(e), details=details)

    @app.errorhandler(StaleTarget)
    def _stale_target(e):
        return api_error(E.STALE_TARGET, str(e), details=e.details or None)

    @app.errorhandler(TurnCancelled)
    def _cancelled(e):
        return api_error(E.CANCELLED, str(e) or "Turn cancelled")

    @app.errorhandler(CompletionServiceUnavailable)
    def _completion_unavailable(e):
        details = {"provider": e.provider, "retryable": True}
        return api_error(E.UPSTREAM_UNAVAILABLE, str(e), details=details)

    @app.errorhandler(StorageUnavailable)
    def _storage_unavailable(e):
        return api_error(E.STORAGE_UNAVAILABLE, str(e), details={"retryable": True})

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})
        return {"error": "Not found"}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None, gateway_factory=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        gateway_factory: Optional ``factory(app) -> gateway`` used to build
                     the completion client per request (tests inject a fake).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Authentication & CSRF middleware ──────────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Completion service client (built per request) ────────────────────
    init_gateway(app, gateway_factory)

    # ── Request guards (input length) ────────────────────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")

    # ── Import all models so Alembic can detect them ─────────────────────
    from campusdesk.models import audit as _audit_models    # noqa: F401
    from campusdesk.models import chat as _chat_models      # noqa: F401
    from campusdesk.models import school as _school_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from campusdesk.blueprints.approval_bp import approval_bp
    from campusdesk.blueprints.audit_bp import audit_bp
    from campusdesk.blueprints.chat_bp import chat_bp
    from campusdesk.blueprints.health_bp import health_bp
    from campusdesk.blueprints.knowledge_bp import knowledge_bp
    from campusdesk.blueprints.student_bp import student_bp

    app.register_blueprint(chat_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(student_bp)
    app.register_blueprint(knowledge_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    _register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    def seed_demo_cmd():
        """Load a small demo data set (classes, students, invoices, attendance, articles)."""
        from campusdesk.services.demo_data import seed_demo_data
        counts = seed_demo_data()
        db.session.commit()
        logger.info("Seeded demo data: %s", counts)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
