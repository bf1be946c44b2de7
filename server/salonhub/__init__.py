# salonhub/__init__.py
from __future__ import annotations

import logging
import os as _os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
import redis
from flask import Flask, jsonify, request
from flask_wtf.csrf import CSRFError
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from salonhub.config import Config
from salonhub.errors import BillingError
from salonhub.extensions import db, csrf, migrate, limiter

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _mask_uri(uri: str) -> str:
    """Hide password in logs."""
    if "@" in uri and "://" in uri:
        head, tail = uri.split("://", 1)
        creds, rest = tail.split("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{head}://{user}:***@{rest}"
    return uri


def _configure_logging(app: Flask) -> None:
    """stderr (UTF-8) + optional rotating file."""
    # Reconfigure in place: a wrapper around sys.stderr.buffer closes it when collected
    stream = sys.stderr
    if (getattr(stream, "encoding", None) or "").lower() != "utf-8" and hasattr(stream, "reconfigure"):
        stream.reconfigure(encoding="utf-8", errors="replace")
    stderr_handler = logging.StreamHandler(stream)
    stderr_handler.setLevel(logging.INFO)
    stderr_handler.setFormatter(logging.Formatter(_LOG_FORMAT))

    app.logger.handlers.clear()
    app.logger.addHandler(stderr_handler)

    if app.config.get("LOG_TO_FILE", True):
        log_path = app.config.get("APP_ERROR_LOG") or _os.path.join(_os.path.expanduser("~"), "salonhub_error.log")
        try:
            _os.makedirs(_os.path.dirname(log_path) or ".", exist_ok=True)
            file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            app.logger.addHandler(file_handler)
        except OSError as e:
            app.logger.warning(f"File logging disabled ({log_path}): {e}")

    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)
    app.logger.propagate = False


def _probe_redis(app: Flask, url: str) -> bool:
    if not url or url == "memory://":
        return False
    try:
        client = redis.from_url(url, decode_responses=True, socket_timeout=2)
        client.ping()
        return True
    except (redis.RedisError, ValueError) as e:
        app.logger.warning(f"Redis probe failed: {e}")
        return False


def _init_limiter(app: Flask) -> None:
    """Redis-backed rate limits when reachable, in-memory otherwise."""
    preferred = app.config.get("RATELIMIT_STORAGE_URI") or app.config.get("REDIS_URL", "")
    storage_uri = preferred if app.config.get("RATELIMIT_ENABLED", True) and _probe_redis(app, preferred) else "memory://"
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_IN_MEMORY_FALLBACK_ENABLED", True)
    limiter.init_app(app)
    app.logger.info(f"Rate limit storage: {storage_uri}")


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(BillingError)
    def _billing_error(err: BillingError):
        level = logging.ERROR if err.status_code >= 500 else logging.INFO
        app.logger.log(level, f"{request.method} {request.path} -> {err.status_code} {err.code}: {err.message}")
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(CSRFError)
    def _csrf_error(err):
        app.logger.warning(f"CSRF failed: {getattr(err, 'description', str(err))}")
        return jsonify({"success": False, "message": "CSRF token missing or invalid", "code": "CSRF"}), 400

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException):
        return jsonify({"success": False, "message": err.description, "code": err.name.upper().replace(" ", "_")}), err.code

    @app.errorhandler(Exception)
    def _500(err):
        app.logger.exception("Unhandled exception")
        db.session.rollback()
        return jsonify({"success": False, "message": "Internal Server Error", "code": "INTERNAL_ERROR"}), 500


def _register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db():
        """Create all tables (use migrations in production)."""
        db.create_all()
        click.echo("Tables created")

    @app.cli.command("memberships-cleanup-orphans")
    def cleanup_orphans_command():
        """Delete memberships whose user no longer exists."""
        from salonhub.services.membership_service import cleanup_orphans
        deleted = cleanup_orphans()
        click.echo(f"Deleted {len(deleted)} orphaned memberships")

    @app.cli.command("memberships-expire-lapsed")
    def expire_lapsed_command():
        """Expire non-renewing memberships whose period has ended."""
        from salonhub.services.membership_service import expire_lapsed
        expired = expire_lapsed()
        click.echo(f"Expired {len(expired)} memberships")


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=False)

    # ---- Config ---------------------------------------------------------------
    app.config.from_object(config_object or Config)

    cfg_env = _os.getenv("APP_CONFIG_FILE")
    if cfg_env and Path(cfg_env).exists() and not app.config.get("TESTING"):
        app.config.from_pyfile(cfg_env)

    _configure_logging(app)
    if cfg_env and not app.config.get("TESTING"):
        app.logger.info(f"Loaded config from APP_CONFIG_FILE={cfg_env}")

    # ---- DB / Extensions init -------------------------------------------------
    from salonhub import models, models_billing, models_audit  # noqa: F401

    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    _init_limiter(app)

    from salonhub.auth import init_auth
    init_auth(app)

    from salonhub.monitoring import init_sentry
    init_sentry(app)

    # ---- Payment gateway (one client per app, injected into services) ---------
    from salonhub.services.stripe_service import build_gateway
    app.extensions["payment_gateway"] = build_gateway(app)

    app.logger.info(f"Logger initialized. DB: {_mask_uri(app.config['SQLALCHEMY_DATABASE_URI'])}")

    # ---- Security headers -----------------------------------------------------
    @app.after_request
    def _security_headers(resp):
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return resp

    # ---- Register blueprints --------------------------------------------------
    from salonhub.auth import auth_bp
    from salonhub.billing.routes import memberships_bp
    from salonhub.admin.routes import admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(memberships_bp)
    app.register_blueprint(admin_bp)
    app.logger.info("auth_bp, memberships_bp, admin_bp registered")

    # JSON API: session cookie is SameSite=Lax; the webhook is verified by signature
    csrf.exempt(auth_bp)
    csrf.exempt(memberships_bp)
    csrf.exempt(admin_bp)

    _register_error_handlers(app)

    @app.route("/__health__")
    def __health__():
        try:
            db.session.execute(text("SELECT 1"))
            db_ok = True
        except Exception as e:
            app.logger.warning(f"Health check DB failure: {e}")
            db_ok = False
        return jsonify({
            "ok": db_ok,
            "db": db_ok,
            "stripe": app.extensions.get("payment_gateway") is not None,
        }), (200 if db_ok else 503)

    _register_cli(app)

    # ---- Notifications + background jobs --------------------------------------
    from salonhub.services.notifier import init_notifier
    from salonhub.background_jobs import init_scheduler
    init_notifier(app)
    init_scheduler(app)

    return app
