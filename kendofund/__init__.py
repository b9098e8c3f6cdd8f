# kendofund/__init__.py
# Kendo Fund: Flask app factory for the Ghana Kendo Federation donation API
# Goals:
# - deterministic blueprint registration (payments must register)
# - proxy-correct behind a reverse proxy
# - JSON error shape for /api and /payments

from __future__ import annotations

import logging
import os
import time
from importlib import import_module
from typing import Any, Dict, List, Optional, Tuple, Type, Union
from uuid import uuid4

from dotenv import load_dotenv
from flask import Blueprint, Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException, InternalServerError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import import_string

# IMPORTANT: never override real env vars in prod
load_dotenv(override=False)

ConfigLike = Union[str, Type[Any]]

from kendofund.extensions import cors, db, mail, migrate, socketio  # noqa: E402

import sentry_sdk  # noqa: E402
from sentry_sdk.integrations.flask import FlaskIntegration  # noqa: E402
from sentry_sdk.integrations.logging import LoggingIntegration  # noqa: E402
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration  # noqa: E402


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str) -> Optional[bool]:
    v = os.getenv(name)
    if v is None:
        return None
    s = str(v).strip().lower()
    if s in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "f", "no", "n", "off"}:
        return False
    return None


def _env_mode(app: Optional[Flask] = None) -> str:
    """
    Priority:
      1) app.config["ENV"] (if meaningful)
      2) APP_ENV / ENV / FLASK_ENV env vars
      3) "development"
    """
    if app is not None:
        v = str(app.config.get("ENV") or "").strip().lower()
        if v and v != "base":
            return v

    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            if val == "prod":
                return "production"
            if val == "dev":
                return "development"
            return val
    return "development"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    - explicit argument wins
    - else FLASK_CONFIG (dotted path or a short name like "production")
    - else by environment
    """
    from kendofund.config import CONFIG_BY_NAME

    if target is not None:
        return CONFIG_BY_NAME.get(target, target) if isinstance(target, str) else target

    explicit = (os.getenv("FLASK_CONFIG") or "").strip()
    if explicit:
        return CONFIG_BY_NAME.get(explicit.lower(), explicit)

    return CONFIG_BY_NAME["production"] if _env_mode(None) == "production" else CONFIG_BY_NAME["development"]


def _is_prod(app: Flask) -> bool:
    return _env_mode(app) == "production"


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"success": False, "message": str(message)}
    payload.update({k: v for k, v in extra.items() if v})
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _wants_json_response() -> bool:
    path = request.path or ""
    if path.startswith(("/api/", "/payments/")):
        return True
    accept = (request.headers.get("Accept") or "").lower()
    return ("application/json" in accept) or bool(request.is_json)


def _parse_cors_origins(app: Flask) -> Union[str, List[str]]:
    raw = str(app.config.get("CORS_ORIGINS") or "*").strip()
    if raw in {"", "*"}:
        return "*"
    if "," in raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return raw


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # outside an app/request context (CLI, background)
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            if not any(isinstance(f, _RequestIDFilter) for f in h.filters):
                h.addFilter(_RequestIDFilter())
            if not getattr(h, "formatter", None) or "%(request_id)s" not in getattr(h.formatter, "_fmt", ""):
                h.setFormatter(logging.Formatter(fmt))

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# ProxyFix
# -----------------------------------------------------------------------------
def _apply_proxyfix(app: Flask) -> None:
    trust = _env_bool("TRUST_PROXY")
    if trust is None:
        trust = bool(app.config.get("TRUST_PROXY")) or _is_prod(app)
    if not trust:
        return

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=1)
    app.logger.info("ProxyFix enabled (trusting X-Forwarded-* headers).")


# -----------------------------------------------------------------------------
# Blueprint registration
# -----------------------------------------------------------------------------
def _safe_register(app: Flask, dotted: str, attr: str, url_prefix: Optional[str]) -> bool:
    try:
        mod = import_module(dotted)
    except ImportError as e:
        app.logger.warning("Import failed: %s → %s", dotted, e)
        return False

    blueprint = getattr(mod, attr, None)
    if not isinstance(blueprint, Blueprint):
        app.logger.warning("No blueprint %r found in %s", attr, dotted)
        return False
    if blueprint.name in app.blueprints:
        return False

    app.register_blueprint(blueprint, url_prefix=url_prefix)
    app.logger.info("Registered blueprint: %-18s → %s", blueprint.name, url_prefix or "/")
    return True


def _register_blueprints(app: Flask) -> None:
    core: List[Tuple[str, str, Optional[str]]] = [
        ("kendofund.blueprints.api", "bp", "/api"),
        ("kendofund.blueprints.payments", "bp", "/payments"),
    ]
    for dotted, attr, prefix in core:
        if not _safe_register(app, dotted, attr, prefix):
            raise RuntimeError(f"❌ Blueprint failed to register: {dotted}")


# -----------------------------------------------------------------------------
# Integrations
# -----------------------------------------------------------------------------
def _init_sentry(app: Flask) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[
                FlaskIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            send_default_pii=False,
            environment=app.config.get("ENV", "development"),
            release=os.getenv("GIT_COMMIT"),
        )
        app.logger.info("Sentry initialized")
    except Exception as e:
        app.logger.warning("Sentry init failed: %s", e)


def _init_cors(app: Flask, cors_origins: Union[str, List[str]]) -> None:
    cors.init_app(
        app,
        supports_credentials=False,
        resources={
            r"/api/*": {"origins": cors_origins},
            r"/payments/*": {"origins": cors_origins},
        },
        expose_headers=["X-Request-ID"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        methods=["GET", "POST", "OPTIONS"],
    )


def _init_socketio(app: Flask, cors_origins: Union[str, List[str]]) -> None:
    app.socketio = socketio  # type: ignore[attr-defined]
    socketio.init_app(app, cors_allowed_origins=cors_origins if cors_origins else "*")


def _maybe_create_sqlite_tables(app: Flask) -> None:
    uri = (app.config.get("SQLALCHEMY_DATABASE_URI") or "").strip()
    if not uri.startswith("sqlite"):
        return
    if app.config.get("AUTO_CREATE_SQLITE", True) is not True:
        return

    import kendofund.models  # noqa: F401  (register tables)

    with app.app_context():
        db.create_all()


# -----------------------------------------------------------------------------
# Request lifecycle + errors
# -----------------------------------------------------------------------------
def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        if _wants_json_response():
            return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))
        return err

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")
        db.session.rollback()
        if _wants_json_response():
            return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))
        return InternalServerError()


# -----------------------------------------------------------------------------
# Health endpoints
# -----------------------------------------------------------------------------
def _register_health_endpoints(app: Flask) -> None:
    @app.get("/healthz")
    def _healthz():
        return {
            "status": "ok",
            "brand": app.config.get("BRAND_NAME", "Ghana Kendo Federation"),
            "env": app.config.get("ENV", "unknown"),
            "request_id": getattr(g, "request_id", "-"),
        }

    @app.get("/version")
    def _version():
        return {
            "version": os.getenv("GIT_COMMIT", "dev"),
            "env": app.config.get("ENV"),
            "brand": app.config.get("BRAND_NAME", "Ghana Kendo Federation"),
            "site_base_url": app.config.get("SITE_BASE_URL") or "",
        }


# -----------------------------------------------------------------------------
# Production guardrails (Paystack live key enforcement can be toggled)
# -----------------------------------------------------------------------------
def _enforce_paystack_live_keys_if_required(app: Flask) -> None:
    """
    Refuse to boot a production app on test keys when PAYSTACK_ENFORCE_LIVE_KEYS
    is on. Without it, initialization still rejects non-live secrets per request.
    """
    if not _is_prod(app) or not app.config.get("PAYSTACK_ENFORCE_LIVE_KEYS"):
        return

    sk = str(app.config.get("PAYSTACK_SECRET_KEY") or "").strip()
    pk = str(app.config.get("PAYSTACK_PUBLIC_KEY") or "").strip()
    if not sk.startswith("sk_live_"):
        raise RuntimeError("Production requires LIVE Paystack secret key (sk_live_...)")
    if pk and not pk.startswith("pk_live_"):
        raise RuntimeError("Production requires LIVE Paystack public key (pk_live_...)")


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None) -> Flask:
    app = Flask(__name__)

    # ---- Config loading
    cfg = _resolve_config(config_class)
    if isinstance(cfg, str):
        cfg = import_string(cfg)
    app.config.from_object(cfg)
    init_hook = getattr(cfg, "init_app", None)
    if callable(init_hook):
        init_hook(app)

    # ---- Normalize environment
    env = _env_mode(app)
    app.config["ENV"] = env
    if env == "production" and bool(app.config.get("DEBUG", False)):
        app.config["DEBUG"] = False

    app.url_map.strict_slashes = False
    app.config.setdefault("JSON_SORT_KEYS", False)
    app.config.setdefault("PROPAGATE_EXCEPTIONS", False)

    # ---- Proxy handling first
    _apply_proxyfix(app)

    # ---- Logging
    _configure_logging(app)

    # ---- Optional integrations
    _init_sentry(app)
    cors_origins = _parse_cors_origins(app)
    _init_cors(app, cors_origins)

    # ---- Core extensions
    db.init_app(app)
    _maybe_create_sqlite_tables(app)
    migrate.init_app(app, db, compare_type=True, render_as_batch=True)
    mail.init_app(app)
    _init_socketio(app, cors_origins)

    # ---- Request lifecycle / errors
    _register_request_lifecycle(app)
    _register_error_handlers(app)

    # ---- Blueprints + health
    _register_blueprints(app)
    _register_health_endpoints(app)

    # ---- Paystack guardrails (after config/env is finalized)
    _enforce_paystack_live_keys_if_required(app)

    # ---- CLI commands
    from kendofund.cli import register_cli

    register_cli(app)

    return app
