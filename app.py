"""Application factory and request hooks for the billing API."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_wtf.csrf import CSRFError
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from errors import BillingError
from extensions import csrf, db, limiter
from models import Account
from routes import register_blueprints
from services.accounts import register_account_guards
from services.invoice import register_ledger_guards
from services.plans import register_plan_guards, seed_default_plans
from utils import safe_int

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _error_response(code: str, message: str, status_code: int, details=None):
    return jsonify({"error": {"code": code, "message": message, "details": details}}), status_code


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, stripe_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["STRIPE_CONFIG"] = stripe_cfg
    app.config["WTF_CSRF_HEADERS"] = ["X-CSRFToken", "X-CSRF-Token"]

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    # Flush-time guards: account isolation, immutable plans, frozen ledger rows
    register_account_guards(app)
    register_plan_guards(app)
    register_ledger_guards(app)

    with app.app_context():
        db.create_all()
        seed_default_plans(billing_cfg.currency)
        db.session.commit()

    # Register all blueprints
    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_account():
        """Set ``g.current_account`` from the ``X-Account-Id`` header.

        The header is set by the upstream auth layer; unknown or inactive
        accounts leave ``g.current_account`` unset.
        """
        g.current_account = None
        account_id = safe_int(request.headers.get("X-Account-Id"), 0)
        if not account_id:
            return None
        account = db.session.get(Account, account_id)
        if account and account.is_active:
            g.current_account = account
        else:
            logger.warning("Request for unknown or inactive account %s", account_id)
        return None

    @app.teardown_request
    def rollback_on_error(exc):
        if exc is not None:
            db.session.rollback()

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            logger.error("%s: %s", error.code, error.message)
        else:
            logger.info("%s: %s", error.code, error.message)
        return jsonify({"error": error.to_dict()}), error.status_code

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        return _error_response("CSRF_FAILED", error.description, 400)

    @app.errorhandler(404)
    def not_found(_error):
        return _error_response("NOT_FOUND", "Resource not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return _error_response("METHOD_NOT_ALLOWED", "Method not allowed", 405)

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return _error_response("INTERNAL_ERROR", "Internal server error", 500)

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return _error_response("RATE_LIMITED", "Too many requests; try again later", 429)

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
