# backend/storefront/config.py
from __future__ import annotations
import os


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _database_uri() -> str:
    # SUPABASE_URL is accepted as an alias when it carries a SQLAlchemy URL
    supabase_url = os.environ.get("SUPABASE_URL", "")
    if supabase_url.startswith(("postgresql://", "postgresql+", "sqlite:")):
        fallback = supabase_url
    else:
        fallback = "sqlite:///storefront.sqlite3"
    return os.environ.get("DATABASE_URL", fallback)


def _engine_options(uri: str, timeout_seconds: int) -> dict:
    """Apply the store-call timeout at the driver level."""
    options: dict = {"pool_pre_ping": True}
    if uri.startswith("postgresql"):
        options["pool_timeout"] = timeout_seconds
        options["connect_args"] = {"options": f"-c statement_timeout={timeout_seconds * 1000}"}
    elif uri.startswith("sqlite"):
        options["connect_args"] = {"timeout": timeout_seconds}
    return options


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    APP_ENV = os.environ.get("APP_ENV", os.environ.get("FLASK_ENV", "development"))

    RATE_LIMIT_DB_TIMEOUT_SECONDS = int(os.environ.get("RATE_LIMIT_DB_TIMEOUT_SECONDS", "5"))

    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI, RATE_LIMIT_DB_TIMEOUT_SECONDS)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Token signing key; token endpoints refuse to work without it
    JWT_SECRET = os.environ.get("JWT_SECRET")

    # Payment processors
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_SANDBOX = _env_bool("PAYPAL_SANDBOX", default=True)
    PAYMENT_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "10"))

    # PII at rest: 64 hex characters (32 bytes)
    ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY")

    # Comma-separated; empty allows every address
    ADMIN_ALLOWED_IPS = _env_list("ADMIN_ALLOWED_IPS")

    # Public base URL for redirects
    SITE_URL = os.environ.get("SITE_URL") or os.environ.get("URL") or "http://localhost:8888"
    ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS")

    STORE_NAME = os.environ.get("STORE_NAME", "Fidget Street")
    CURRENCY = os.environ.get("CURRENCY", "GBP")
    SHIPPING_FREE_THRESHOLD_PENCE = int(os.environ.get("SHIPPING_FREE_THRESHOLD_PENCE", "2000"))
    SHIPPING_STANDARD_PENCE = int(os.environ.get("SHIPPING_STANDARD_PENCE", "349"))
    SHIPPING_COUNTRIES = _env_list("SHIPPING_COUNTRIES") or ["GB"]


def is_production(config) -> bool:
    return config.get("APP_ENV") == "production"


def cookies_secure(config) -> bool:
    """Cookies carry Secure everywhere except local development."""
    if is_production(config):
        return True
    site_url = config.get("SITE_URL") or ""
    return "localhost" not in site_url and "127.0.0.1" not in site_url
