# backend/storefront/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


DEFAULT_ALLOWED_ORIGINS = {
    "http://localhost:8888",
    "http://localhost:3000",
}


def _allowed_origins(app: Flask) -> set:
    origins = set(DEFAULT_ALLOWED_ORIGINS)
    for key in ("SITE_URL", "URL"):
        value = app.config.get(key)
        if value:
            origins.add(value.rstrip("/"))
    origins.update(origin.rstrip("/") for origin in app.config.get("ALLOWED_ORIGINS") or [])
    return origins


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Refuse to start in production without a PII key
    from .services import crypto_service
    crypto_service.check_config(app.config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services import payment_gateways
    payment_gateways.init_app(app)

    # Register blueprints
    from .routes.checkout import checkout_bp
    from .routes.webhooks import webhooks_bp
    from .routes.orders import orders_bp
    from .routes.admin_auth import admin_auth_bp
    from .routes.admin_mfa import admin_mfa_bp
    from .routes.admin import admin_bp

    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(admin_auth_bp)
    app.register_blueprint(admin_mfa_bp)
    app.register_blueprint(admin_bp)

    allowed_origins = _allowed_origins(app)

    @app.before_request
    def answer_preflight():
        if request.method == "OPTIONS":
            return app.response_class(status=200)
        return None

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, X-CSRF-Token"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
