# kendofund/config/config.py
# Canonical kendofund configuration (env-first, production-safe)

from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from typing import Optional


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _decimal(name: str, default: str) -> Decimal:
    v = _env(name, default)
    try:
        return Decimal(str(v))
    except (InvalidOperation, TypeError):
        return Decimal(default)


def _clean_base_url(v: Optional[str]) -> str:
    s = (v or "").strip().rstrip("/")
    return s


def _database_uri(default: str) -> str:
    uri = _env("SQLALCHEMY_DATABASE_URI") or _env("DATABASE_URL") or default
    # Heroku/Render style URLs
    if uri.startswith("postgres://"):
        uri = "postgresql://" + uri[len("postgres://"):]
    return uri


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - all important settings can be overridden via environment variables
    - safe defaults for local dev
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").strip().lower()

    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)

    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")
    BRAND_NAME = _env("BRAND_NAME", "Ghana Kendo Federation")

    # URLs (callback construction)
    SITE_BASE_URL = _clean_base_url(
        _env("SITE_BASE_URL", _env("NEXT_PUBLIC_SITE_URL", _env("APP_BASE_URL", "https://kendoghana.com")))
    )
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")
    TRUST_PROXY = _bool("TRUST_PROXY", False)

    LOG_LEVEL = _env("LOG_LEVEL", "INFO")
    CORS_ORIGINS = _env("CORS_ORIGINS", "*")

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = _database_uri("sqlite:///kendofund-dev.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = _bool("AUTO_CREATE_SQLITE", True)

    # ---- Paystack ----
    PAYSTACK_SECRET_KEY = _env("PAYSTACK_SECRET_KEY", "")
    PAYSTACK_PUBLIC_KEY = _env("PAYSTACK_PUBLIC_KEY", _env("NEXT_PUBLIC_PAYSTACK_PUBLIC_KEY", ""))
    PAYSTACK_BASE_URL = _clean_base_url(_env("PAYSTACK_BASE_URL", "https://api.paystack.co"))
    PAYSTACK_TIMEOUT = _int("PAYSTACK_TIMEOUT", 10)
    PAYSTACK_ENFORCE_LIVE_KEYS = _bool("PAYSTACK_ENFORCE_LIVE_KEYS", False)

    # ---- Donations ----
    DEFAULT_CURRENCY = (_env("DEFAULT_CURRENCY", "GHS") or "GHS").upper()
    MIN_DONATION = _decimal("MIN_DONATION", "1")
    MAX_DONATION = _decimal("MAX_DONATION", "1000000")
    REFERENCE_PREFIX = _env("REFERENCE_PREFIX", "GKF")
    VERIFY_CACHE_HOURS = _int("VERIFY_CACHE_HOURS", 24)
    WEBHOOK_RETENTION_DAYS = _int("WEBHOOK_RETENTION_DAYS", 7)
    WEBHOOK_STALE_MINUTES = _int("WEBHOOK_STALE_MINUTES", 10)
    OUTBOX_MAX_ATTEMPTS = _int("OUTBOX_MAX_ATTEMPTS", 5)

    # ---- Sponsorship campaign ----
    CAMPAIGN_SLUG = _env("CAMPAIGN_SLUG", "tunis-open-2026")
    CAMPAIGN_NAME = _env("CAMPAIGN_NAME", "2nd Tunis International Open Championships")
    CAMPAIGN_DONATION_TYPE = _env("CAMPAIGN_DONATION_TYPE", "SPONSORSHIP")
    CAMPAIGN_GOAL_GHS = _decimal("CAMPAIGN_GOAL_GHS", "192500")
    CAMPAIGN_INITIAL_RECEIVED_GHS = _decimal("CAMPAIGN_INITIAL_RECEIVED_GHS", "1101.98")
    USD_TO_GHS_RATE = _decimal("USD_TO_GHS_RATE", "11")
    CAMPAIGN_ADMIN_TOKENS = _env("CAMPAIGN_ADMIN_TOKENS", "")

    # ---- Mail (optional provider credentials) ----
    # Receipts are skipped unless a provider is set up explicitly.
    MAIL_ENABLED = _bool(
        "MAIL_ENABLED",
        bool(_env("MAIL_SERVER", _env("SMTP_HOST")) and _env("MAIL_USERNAME", _env("SMTP_USER"))),
    )
    MAIL_SERVER = _env("MAIL_SERVER", _env("SMTP_HOST", "localhost"))
    MAIL_PORT = _int("MAIL_PORT", _int("SMTP_PORT", 587))
    MAIL_USE_TLS = _bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = _env("MAIL_USERNAME", _env("SMTP_USER"))
    MAIL_PASSWORD = _env("MAIL_PASSWORD", _env("SMTP_PASSWORD"))
    MAIL_DEFAULT_SENDER = (
        _env("FROM_NAME", "Ghana Kendo Federation"),
        _env("FROM_EMAIL", "donations@kendoghana.com"),
    )
    MAIL_SUPPRESS_SEND = _bool("MAIL_SUPPRESS_SEND", False)

    @classmethod
    def init_app(cls, app) -> None:
        """
        Boot hardening hook, called by create_app() after from_object(...).
        """
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        # SQLite tuning (better concurrency behavior than default)
        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            connect_args.setdefault("timeout", 5)
            opts["connect_args"] = connect_args
            opts.setdefault("pool_pre_ping", True)
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True

    SQLALCHEMY_DATABASE_URI = _database_uri("sqlite:///kendofund-dev.db")
    SITE_BASE_URL = _clean_base_url(_env("SITE_BASE_URL", "http://127.0.0.1:5000"))
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "http")
    MAIL_SUPPRESS_SEND = _bool("MAIL_SUPPRESS_SEND", True)


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False

    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SITE_BASE_URL = "https://kendoghana.test"
    PAYSTACK_SECRET_KEY = "sk_test_kendofund"
    PAYSTACK_PUBLIC_KEY = "pk_test_kendofund"
    PAYSTACK_BASE_URL = "https://api.paystack.test"
    CAMPAIGN_ADMIN_TOKENS = ""
    MAIL_SUPPRESS_SEND = True
    MAIL_ENABLED = True
    LOG_LEVEL = "WARNING"


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")
    TRUST_PROXY = _bool("TRUST_PROXY", True)

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        base = (app.config.get("SITE_BASE_URL") or "").strip()
        if base and base.startswith("http://"):
            raise RuntimeError("SITE_BASE_URL must be https:// in production.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
