#!/usr/bin/env python3
"""
Payments operational endpoints.

Mount: /payments  (register blueprint with url_prefix="/payments")

  GET  /payments/health
  GET  /payments/config

Health behavior:
- default: always 200 (never throws), returns status: ok|degraded|error
- strict=1 (or uptime=1/monitor=1): 200 only if ok; else 503
"""

from __future__ import annotations

import time
from typing import Any, Dict

from flask import Blueprint, current_app, request
from sqlalchemy import select, text

from kendofund.blueprints.utils import json_ok, json_response, truthy
from kendofund.extensions import db
from kendofund.models import Campaign, Donation, OutboxMessage, WebhookEvent
from kendofund.services.paystack import Settings

bp = Blueprint("payments", __name__)
_PROCESS_START = time.time()


def _is_no_such_table(err: Exception) -> bool:
    msg = str(err).lower()
    return "no such table" in msg or ("relation" in msg and "does not exist" in msg)


def _db_check() -> Dict[str, Any]:
    t0 = time.perf_counter()
    out: Dict[str, Any] = {"ok": True, "latencyMs": 0, "checks": {}}

    def _fail(name: str, e: Exception) -> None:
        db.session.rollback()
        out["ok"] = False
        out["checks"][name] = {"ok": False, "error": f"{type(e).__name__}: {str(e)}"}
        if _is_no_such_table(e):
            out["checks"][name]["hint"] = "missing_db_tables"
            out["checks"][name]["fix"] = "Run migrations (flask db upgrade)."

    try:
        db.session.execute(text("SELECT 1"))
        out["checks"]["ping"] = {"ok": True}
    except Exception as e:
        _fail("ping", e)
        out["latencyMs"] = int((time.perf_counter() - t0) * 1000)
        out["error"] = out["checks"]["ping"]["error"]
        return out

    for name, model in (
        ("donation", Donation),
        ("webhookEvent", WebhookEvent),
        ("campaign", Campaign),
        ("outbox", OutboxMessage),
    ):
        try:
            db.session.execute(select(model.id).limit(1)).all()
            out["checks"][name] = {"ok": True}
        except Exception as e:
            _fail(name, e)

    out["latencyMs"] = int((time.perf_counter() - t0) * 1000)

    if not out["ok"]:
        for _, chk in out["checks"].items():
            if not chk.get("ok"):
                out["error"] = chk.get("error")
                break
    return out


def _paystack_check(s: Settings) -> Dict[str, Any]:
    warnings = []
    if not s.configured:
        warnings.append("missing_secret_key")
    elif s.mode == "unknown":
        warnings.append("malformed_keys")
    if s.env == "production" and s.mode != "live":
        warnings.append("not_live_keys")

    out: Dict[str, Any] = {"ok": s.configured and s.mode != "unknown", "mode": s.mode}
    if warnings:
        out["warning"] = ",".join(warnings)
    return out


def _pending_outbox() -> int:
    return int(
        db.session.execute(
            select(db.func.count(OutboxMessage.id)).where(OutboxMessage.status == "pending")
        ).scalar_one()
    )


def _health_status_from_components(components: Dict[str, Any]) -> str:
    if not bool((components.get("db") or {}).get("ok", False)):
        return "error"
    gw = components.get("paystack") or {}
    if not bool(gw.get("ok", False)) or "not_live_keys" in str(gw.get("warning") or ""):
        return "degraded"
    return "ok"


def _strict_mode_requested() -> bool:
    return truthy(request.args.get("strict") or request.args.get("uptime") or request.args.get("monitor"))


@bp.get("/health")
def payments_health():
    strict = _strict_mode_requested()
    s = Settings.load()
    components: Dict[str, Any] = {}

    try:
        components["db"] = _db_check()
    except Exception as e:
        current_app.logger.exception("payments.health: db check failed")
        components["db"] = {"ok": False, "error": f"{type(e).__name__}: {str(e)}"}

    components["paystack"] = _paystack_check(s)

    if components["db"].get("ok"):
        try:
            components["outbox"] = {"ok": True, "pending": _pending_outbox()}
        except Exception as e:
            db.session.rollback()
            components["outbox"] = {"ok": False, "error": f"{type(e).__name__}: {str(e)}"}

    status = _health_status_from_components(components)
    code = 200 if (not strict or status == "ok") else 503

    return json_response(
        {
            "success": True,
            "status": status,
            "strict": bool(strict),
            "env": s.env,
            "uptimeS": int(time.time() - _PROCESS_START),
            "components": components,
        },
        code,
    )


@bp.get("/config")
def payments_config():
    s = Settings.load()
    return json_ok(
        {
            "publicKey": s.public_key,
            "mode": s.mode,
            "currency": str(current_app.config.get("DEFAULT_CURRENCY") or "GHS"),
            "minDonation": float(current_app.config.get("MIN_DONATION") or 1),
            "maxDonation": float(current_app.config.get("MAX_DONATION") or 1000000),
        }
    )
