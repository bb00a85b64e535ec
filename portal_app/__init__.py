import os
import secrets
import time
from datetime import timedelta
from functools import wraps

from flask import Flask, session, request, current_app
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def _rate_key():
    ip = request.headers.get("X-Forwarded-For") or request.remote_addr or "local"
    token = session.get("rlid") or ""
    path = getattr(request, "path", "/") or "/"
    return f"{ip}|{token}|{path}"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def create_app():
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(
        minutes=int(os.environ.get("SESSION_LIFETIME_MINUTES", "30"))
    )

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    app.config["RATELIMIT_ENABLED"] = (os.environ.get("RATELIMIT_ENABLED", "true").lower() == "true")

    # Global upload cap (can be overridden via env)
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_CONTENT_LENGTH", str(8 * 1024 * 1024)))
    # CSRF token TTL (seconds)
    app.config["CSRF_TOKEN_TTL"] = int(os.environ.get("CSRF_TOKEN_TTL", "7200"))

    # Engine settings
    # Used only when an uploaded sheet carries no max marks of its own.
    app.config["DEFAULT_MAX_MARKS"] = float(os.environ.get("DEFAULT_MAX_MARKS", "100"))
    # "student": every payment counts toward every fee row of the student.
    # "fee": payments only count toward the fee structure they were made against.
    app.config["FEE_PAYMENT_SCOPE"] = (os.environ.get("FEE_PAYMENT_SCOPE", "student").strip().lower())
    app.config["RESULTS_CACHE_TIMEOUT"] = int(os.environ.get("RESULTS_CACHE_TIMEOUT", "300"))
    app.config["CACHE_DEFAULT_TIMEOUT"] = app.config["RESULTS_CACHE_TIMEOUT"]

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "portal.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        app.logger.setLevel(log_level.upper())

    if app.config["FEE_PAYMENT_SCOPE"] not in ("student", "fee"):
        raise RuntimeError("FEE_PAYMENT_SCOPE must be 'student' or 'fee'.")

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)

    # Auth: Flask-Login
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @app.before_request
    def ensure_rate_key():
        if not session.get("rlid"):
            session["rlid"] = secrets.token_urlsafe(16)

    @login_manager.user_loader
    def load_user(user_id: str):
        from .models import User
        try:
            return db.session.get(User, int(user_id))
        except ValueError:
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Login required.", 401)

    # Blueprints
    from .main.routes import main_bp
    app.register_blueprint(main_bp)

    from .exams import exams_bp
    app.register_blueprint(exams_bp, url_prefix="/api")

    from .fees import fees_bp
    app.register_blueprint(fees_bp, url_prefix="/api")

    from .errors import PortalError

    @app.errorhandler(PortalError)
    def handle_portal_error(e):
        from .api_utils import api_error
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        return api_error(e.code, e.message, e.status_code, details=e.details)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_large_upload(e):
        from .api_utils import api_error
        limit_bytes = app.config.get("MAX_CONTENT_LENGTH") or (8 * 1024 * 1024)
        limit_mb = max(1, int(limit_bytes / (1024 * 1024)))
        return api_error("upload_too_large", f"Upload exceeds the global size limit (max {limit_mb} MB).", 413)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()

    return app


def issue_csrf_token():
    """Return the session CSRF token, minting a fresh one if missing or expired."""
    token = session.get("csrf_token")
    issued_at = session.get("csrf_token_issued_at")
    ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
    now = int(time.time())
    if (not token) or (not issued_at) or (ttl > 0 and (now - int(issued_at)) > ttl):
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
        session["csrf_token_issued_at"] = now
    return token


def csrf_required(view_func):
    @wraps(view_func)
    def _wrapped(*args, **kwargs):
        method = (request.method or "GET").upper()
        if method in ("POST", "PUT", "PATCH", "DELETE"):
            from .api_utils import api_error
            token = (request.headers.get("X-CSRF-Token") or request.form.get("csrf_token") or "").strip()
            sess_token = session.get("csrf_token") or ""
            issued_at = session.get("csrf_token_issued_at")
            ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
            now = int(time.time())
            # Expired token
            if not issued_at or (ttl > 0 and (now - int(issued_at)) > ttl):
                return api_error("csrf_expired", "Refresh the page or login again", 403)
            # Missing token in request
            if not token:
                return api_error("csrf_missing", "Refresh the page or login again", 403)
            # Mismatch
            if not secrets.compare_digest(token, sess_token):
                return api_error("csrf_mismatch", "Refresh the page or login again", 403)
        return view_func(*args, **kwargs)
    return _wrapped
