"""
Takharrujy workflow core
Flask Application Factory.

The factory wires configuration, logging and the database session the
lifecycle services run in, and maps the core exceptions to JSON error
responses for whatever transport registers routes on the app.

Usage:
    from takharrujy import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from takharrujy.config import config
from takharrujy.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from takharrujy.middleware.logging_config import configure_logging
from takharrujy.models import db
from takharrujy.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def register_error_handlers(app):
    """Translate the core exception hierarchy into ``api_error`` responses."""

    @app.errorhandler(ValidationError)
    def _validation(e):
        return api_error(E.VALIDATION_INVALID, str(e), details=e.details)

    @app.errorhandler(NotFoundError)
    def _not_found(e):
        # Resource id stays in the log only
        logger.debug("Not found: %s", e)
        return api_error(E.NOT_FOUND, f"{e.resource} not found")

    @app.errorhandler(ForbiddenError)
    def _forbidden(e):
        return api_error(E.FORBIDDEN, ForbiddenError.MESSAGE)

    @app.errorhandler(TransitionError)
    def _transition(e):
        return api_error(E.CONFLICT_STATE, str(e), details={"status": e.current_status})

    @app.errorhandler(ConflictError)
    def _conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(500)
    def _internal(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)

    register_error_handlers(app)

    # ── Import all models so metadata is complete ────────────────────────
    from takharrujy.models import audit as _audit_models              # noqa: F401
    from takharrujy.models import deliverable as _deliverable_models  # noqa: F401
    from takharrujy.models import notification as _notification_models  # noqa: F401
    from takharrujy.models import project as _project_models          # noqa: F401
    from takharrujy.models import task as _task_models                # noqa: F401
    from takharrujy.models import university as _university_models    # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config.get("AUTO_CREATE_TABLES"):
        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
            os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    return app
