# kendofund/blueprints/utils.py
# ─────────────────────────────────────────────────────────────────────────────
# JSON envelope + bearer auth helpers shared by the API blueprints
# ─────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

import hmac
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional, Set, cast

from flask import current_app, jsonify, request

log = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on", "y"}


def truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in _TRUTHY


def request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict) and data:
        return cast(Dict[str, Any], data)
    if request.form:
        return cast(Dict[str, Any], request.form.to_dict(flat=True))
    return {}


# =============================================================================
# JSON responses (API-style: never cached)
# =============================================================================


def json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    resp.headers.setdefault("Expires", "0")
    return resp


def json_ok(payload: Optional[Dict[str, Any]] = None, status: int = 200):
    body = dict(payload or {})
    body.setdefault("success", True)
    return json_response(body, status)


def json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"success": False, "message": message}
    if extra:
        for k, v in extra.items():
            body.setdefault(k, v)
    return json_response(body, status)


# =============================================================================
# Token Helpers
# =============================================================================


def _admin_tokens() -> Set[str]:
    """Static campaign admin tokens from config (CSV)."""
    raw = str(current_app.config.get("CAMPAIGN_ADMIN_TOKENS") or "")
    return {t.strip() for t in raw.split(",") if t.strip()}


def bearer_token() -> Optional[str]:
    h = request.headers.get("Authorization", "")
    return h.split(" ", 1)[1].strip() if h.lower().startswith("bearer ") else None


def has_admin_token() -> bool:
    """True only when tokens are configured and the request carries one of them."""
    tokens = _admin_tokens()
    tok = bearer_token() or ""
    return bool(tokens) and any(hmac.compare_digest(tok, t) for t in tokens)


def require_admin_token(fn: Callable) -> Callable:
    """
    Guard a view with CAMPAIGN_ADMIN_TOKENS. When no tokens are configured the
    view is open (local/dev).
    """

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if _admin_tokens() and not has_admin_token():
            log.warning("auth: rejected admin token for %s", request.path)
            return json_error("Unauthorized", 401)
        return fn(*args, **kwargs)

    return wrapper
