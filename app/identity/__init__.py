import logging
import uuid

from flask import Flask, g, jsonify
from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from app.identity.config import load_config
from app.identity.db import init_db, teardown_db_session
from app.identity.models import Base  # noqa: F401  (registers every table before blueprints import models)
from app.identity.routes import bp as routes_bp
from app.identity.modules.customer_linking.api import bp as customer_linking_bp
from app.identity.modules.customer_linking.errors import (
    CustomerIdentityError,
    DifferentUserConflict,
    GuestIdentityConflict,
    InvalidAccountRole,
)


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("app.identity").setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    _configure_logging(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(customer_linking_bp, url_prefix="/api")

    @app.before_request
    def _assign_request_id():
        if not getattr(g, "request_id", None):
            g.request_id = uuid.uuid4().hex

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(GuestIdentityConflict)
    @app.errorhandler(DifferentUserConflict)
    def _err_identity_conflict(e: CustomerIdentityError):  # type: ignore[no-redef]
        return jsonify(e.to_dict()), 409

    @app.errorhandler(InvalidAccountRole)
    def _err_invalid_role(e: InvalidAccountRole):  # type: ignore[no-redef]
        return jsonify(e.to_dict()), 400

    @app.errorhandler(IntegrityError)
    def _err_integrity(e: IntegrityError):  # type: ignore[no-redef]
        # Concurrent checkout with the same email lost the race on the unique
        # constraint; the client retries and lands on the row the winner created.
        app.logger.warning("Uniqueness violation (request_id=%s): %s", getattr(g, "request_id", None), e.orig)
        return jsonify(
            {
                "error": "conflict",
                "message": "This customer was just created by another request. Please retry.",
                "retryable": True,
            }
        ), 409

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": e.name.lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_server_error"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
