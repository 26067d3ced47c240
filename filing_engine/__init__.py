"""
Regulatory Filing Platform
Flask Application Factory.

Usage:
    from filing_engine import create_app
    app = create_app()           # APP_ENV or "development"
    app = create_app("testing")

Start-up order: logging first; event subscribers are attached before any
blueprint can publish; rate limits are applied once the blueprints exist;
the scheduler starts last.
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine

from filing_engine.config import config
from filing_engine.middleware.logging_config import configure_logging
from filing_engine.middleware.rate_limiter import init_rate_limits
from filing_engine.middleware.timing import init_request_timing
from filing_engine.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@sa_event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE on tenant FKs unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def _register_event_subscribers(app, publisher):
    """In-app notices for filing outcomes and failed workflow executions."""
    from filing_engine.models.filing import Filing
    from filing_engine.models.workflow import WorkflowExecution
    from filing_engine.services import event_publisher as events
    from filing_engine.services.notification import NotificationService

    def on_filing_outcome(event):
        with app.app_context():
            filing = db.session.get(Filing, event.payload.get("filing_id"))
            if filing is not None:
                NotificationService.notify_filing_outcome(filing)

    def on_execution_failed(event):
        with app.app_context():
            execution = db.session.get(WorkflowExecution, event.payload.get("execution_id"))
            if execution is not None:
                NotificationService.notify_execution_failed(
                    execution,
                    failed_step_id=event.payload.get("failed_step_id"),
                    reason=event.payload.get("reason"),
                )

    publisher.subscribe(events.FILING_FILED, on_filing_outcome)
    publisher.subscribe(events.FILING_REJECTED, on_filing_outcome)
    publisher.subscribe(events.WORKFLOW_FAILED, on_execution_failed)


def _register_blueprints(app, publisher):
    from filing_engine.blueprints.filing_bp import filing_bp
    from filing_engine.blueprints.notification_bp import notification_bp
    from filing_engine.blueprints.workflow_bp import workflow_bp

    for bp in (filing_bp, workflow_bp, notification_bp):
        app.register_blueprint(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Regulatory Filing Platform", "events": publisher.stats()}


def _register_app_error_handlers(app):
    """JSON bodies for errors raised outside any blueprint (unknown routes, rate limits)."""

    @app.errorhandler(404)
    def not_found(_e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return {"error": "Method not allowed", "method": request.method, "path": request.path}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429


def create_app(config_name=None):
    """Build the app for ``config_name`` ("development", "testing" or "production")."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    configure_logging(app)

    _init_extensions(app)
    init_request_timing(app)

    # Table registration
    from filing_engine.models import base, filing, notification, scheduling, workflow  # noqa: F401

    from filing_engine.integrations.submission_gateway import build_submission_gateway
    from filing_engine.services import event_publisher

    publisher = event_publisher.init_app(app)
    _register_event_subscribers(app, publisher)
    app.extensions["submission_gateway"] = build_submission_gateway(app.config)

    _register_blueprints(app, publisher)
    _register_app_error_handlers(app)
    init_rate_limits(app, limiter)

    from filing_engine.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        SchedulerService.start()

    logger.info("Regulatory Filing Platform started (config=%s, gateway=%s)", config_name,
                type(app.extensions["submission_gateway"]).__name__)
    return app
