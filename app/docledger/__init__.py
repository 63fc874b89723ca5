import logging

from dotenv import load_dotenv
from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from app.docledger.config import load_config
from app.docledger.db import init_db, teardown_db_session
from app.docledger.errors import DocLedgerError
from app.docledger.models import Base  # noqa: F401  (registers all tables)
from app.docledger.routes import bp as routes_bp
from app.docledger.auth import bp as auth_bp, load_current_identity
from app.docledger.modules.documents.api import bp as documents_bp
from app.docledger.services import build_services


def _error_body(kind: str, message: str, **extra) -> dict:
    body = {"success": False, "error": kind, "message": message, "request_id": getattr(g, "request_id", None)}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def create_app(config_overrides: dict | None = None, *, storage=None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)

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
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage, ledger and identity handles live for the whole process.
    app.extensions["docledger"] = build_services(app.config, storage=storage)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")

    app.before_request(load_current_identity)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(DocLedgerError)
    def _err_docledger(e: DocLedgerError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            identity = getattr(g, "identity", None)
            app.logger.error(
                "%s (request_id=%s actor=%s): %s",
                e.kind,
                getattr(g, "request_id", None),
                identity.custom_id if identity else None,
                e,
            )
        body = _error_body(e.kind, e.message, existing_document_id=getattr(e, "existing_document_id", None))
        return jsonify(body), e.http_status

    @app.errorhandler(RequestEntityTooLarge)
    def _err_413(e):  # type: ignore[no-redef]
        limit = app.config.get("MAX_FILE_SIZE_BYTES")
        return jsonify(_error_body("validation_error", f"File too large. Maximum size is {limit} bytes.")), 400

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify(_error_body(e.name.lower().replace(" ", "_"), e.description or e.name)), e.code

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        # Stack trace goes to the log only.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify(_error_body("internal_error", "Internal server error")), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
