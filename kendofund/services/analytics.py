# kendofund/services/analytics.py
"""
Server-side analytics and audit trail.

Events travel over the `app_event` blinker signal so other subscribers
(metrics exporters, socket pushes) can hook in without touching the payment
code. The default subscriber writes one JSON line per event.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict

from flask import current_app

from kendofund.extensions import app_event
from kendofund.models import utcnow

analytics_log = logging.getLogger("kendofund.analytics")
audit_log = logging.getLogger("kendofund.audit")


def _json_default(x: Any) -> Any:
    if isinstance(x, Decimal):
        return float(x)
    if isinstance(x, (datetime, date)):
        return x.isoformat()
    return str(x)


def _dumps(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, default=_json_default, sort_keys=True)


def track(event: str, **payload: Any) -> None:
    """Emit an analytics event on the app signal."""
    app_event.send(
        current_app._get_current_object(),
        event=event,
        payload={"timestamp": utcnow().isoformat() + "Z", **payload},
    )


def log_transaction(kind: str, **fields: Any) -> None:
    """Audit entry for every persisted donation state change."""
    audit_log.info(_dumps({"type": "TRANSACTION_LOG", "event_type": kind, "logged_at": utcnow(), **fields}))


@app_event.connect
def _log_app_event(sender: Any, event: str = "", payload: Dict[str, Any] = None, **_: Any) -> None:
    analytics_log.info(_dumps({"type": "ANALYTICS_EVENT", "event": event, **(payload or {})}))
