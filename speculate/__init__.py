import logging
import os

from flask import Flask, jsonify, request
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

from config import config

logger = logging.getLogger(__name__)

db = SQLAlchemy()
login_manager = LoginManager()
cache = Cache()
migrate = Migrate()
csrf = CSRFProtect()


def get_real_ip():
    """
    Get the real client IP address, accounting for reverse proxies.
    Checks X-Forwarded-For, X-Real-IP, and falls back to remote_addr.
    """
    # X-Forwarded-For: client, proxy1, proxy2, ...
    if request.headers.get("X-Forwarded-For"):
        return request.headers.get("X-Forwarded-For").split(",")[0].strip()
    if request.headers.get("X-Real-IP"):
        return request.headers.get("X-Real-IP")
    return get_remote_address()


# Use Redis in production for shared rate limiting across multiple workers
limiter_storage_uri = "memory://"
redis_url = os.environ.get("REDIS_URL") or os.environ.get("CACHE_REDIS_URL")
if redis_url:
    try:
        import redis

        redis_client = redis.Redis.from_url(redis_url)
        redis_client.ping()
        limiter_storage_uri = redis_url
        logger.info(f"Rate limiter using Redis storage at {redis_url}")
    except (ImportError, redis.exceptions.ConnectionError) as e:
        logger.warning(f"Redis not available for rate limiter, using memory storage: {e}")

limiter = Limiter(
    key_func=get_real_ip,
    default_limits=["10000 per day", "1000 per hour"],
    storage_uri=limiter_storage_uri,
)


def create_app(config_name=None):
    app = Flask(__name__)

    # Determine configuration
    if config_name is None:
        config_name = os.environ.get("FLASK_CONFIG", "default")

    app.config.from_object(config[config_name]())

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    cache.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # Import and register blueprints
    from speculate.routes.api import bp as api_bp

    app.register_blueprint(api_bp, url_prefix="/api")

    from speculate.routes.admin import bp as admin_bp

    app.register_blueprint(admin_bp, url_prefix="/api/admin")

    # JSON API clients authenticate through the identity header, not cookies
    csrf.exempt(api_bp)
    csrf.exempt(admin_bp)

    # Identity loading for Flask-Login
    from speculate.auth import register_identity_loader

    register_identity_loader(login_manager)

    # Register error handlers
    register_error_handlers(app)

    # Setup logging
    from speculate.utils.logging_config import setup_logging

    setup_logging(app)

    # Create database tables
    with app.app_context():
        db.create_all()

    # Initialize and start background scheduler
    if not app.config.get("TESTING", False):
        from speculate.services.scheduler_service import scheduler_service

        scheduler_service.init_app(app)

    # Background task queue (inline only with TASKS_EAGER)
    from speculate.services.task_queue import task_queue

    task_queue.init_app(app)

    return app


def register_error_handlers(app):
    """Register global error handlers"""
    from speculate.errors import SpeculateError

    @app.after_request
    def after_request(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"

        if not app.config.get("DEBUG"):
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response

    @app.errorhandler(SpeculateError)
    def handle_speculate_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message} - Path: {request.path}")
        else:
            app.logger.info(f"{error.code}: {error.message} - Path: {request.path}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return (
            jsonify({"error": "method_not_allowed", "message": "Method not allowed"}),
            405,
        )

    @app.errorhandler(429)
    def too_many_requests_error(error):
        return (
            jsonify({"error": "rate_limited", "message": "Too many requests"}),
            429,
        )

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return (
            jsonify({"error": "internal_error", "message": "Internal server error"}),
            500,
        )


from speculate import models  # noqa: F401, E402 - imported for model registration
