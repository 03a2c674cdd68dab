import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException

from app.docportal.auth import bp as auth_bp, load_current_user
from app.docportal.config import load_config
from app.docportal.db import init_db, teardown_db_session
from app.docportal.errors import PortalError
from app.docportal.modules.document_lifecycle.admin import bp as documents_bp
from app.docportal.modules.document_lifecycle.portal import bp as portal_bp
from app.docportal.modules.enrichment.service import init_enrichment
from app.docportal.modules.notifications.admin import bp as notifications_bp
from app.docportal.routes import bp as routes_bp
from app.docportal.security import install_csrf_guard

logger = logging.getLogger(__name__)

S3_REQUIRED = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _check_production_config(app: Flask) -> None:
    if (app.config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _check_storage(app: Flask) -> None:
    """Log (do not raise) when the S3 bucket is misconfigured or unreachable."""
    if app.config.get("STORAGE_BACKEND") != "s3":
        return
    missing = [k for k in S3_REQUIRED if not app.config.get(k)]
    if missing:
        app.logger.error("STORAGE CONFIG ERROR: missing S3 settings: %s", ", ".join(missing))
        return

    from botocore.exceptions import BotoCoreError, ClientError

    from app.docportal.storage import S3Storage, storage_from_config

    storage = storage_from_config(app.config)
    if not isinstance(storage, S3Storage):
        return
    try:
        storage._client().head_bucket(Bucket=storage.bucket)
        app.logger.info("Storage reachable: bucket %r", storage.bucket)
    except (BotoCoreError, ClientError) as e:
        app.logger.error("STORAGE CONFIG ERROR: cannot reach bucket %r: %s", storage.bucket, e)


def _dispose_engine_after_fork(app: Flask) -> None:
    # gunicorn forks workers; pooled connections must not cross the fork.
    if not hasattr(os, "register_at_fork"):
        return

    def _after_fork_child():
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose()
            app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_after_fork_child)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PortalError)
    def _portal_error(e: PortalError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            app.logger.error("%s (request_id=%s): %s", type(e).__name__, getattr(g, "request_id", None), e.message)
        return jsonify({"error": e.message, "type": type(e).__name__}), e.http_status

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        if e.code == 403:
            app.logger.warning(
                "Forbidden: missing_permission=%s request_id=%s",
                getattr(g, "missing_permission", None),
                getattr(g, "request_id", None),
            )
        if e.code == 413:
            limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
            return jsonify({"error": f"File too large. Maximum size is {limit_mb}MB."}), 413
        return jsonify({"error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error"}), 500


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production_config(app)
    install_csrf_guard(app)

    init_db(app)
    _dispose_engine_after_fork(app)
    _check_storage(app)

    init_enrichment(app)
    if not app.config.get("GEMINI_API_KEY"):
        app.logger.warning("GEMINI_API_KEY not set; documents will be stored without AI summaries.")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api")
    app.register_blueprint(portal_bp, url_prefix="/api/my")
    app.register_blueprint(notifications_bp, url_prefix="/api/my")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)
    _register_error_handlers(app)

    logger.info("create_app() complete; app ready to serve")
    return app
