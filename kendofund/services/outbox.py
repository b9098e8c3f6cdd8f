# kendofund/services/outbox.py
"""
Outbox for side effects that must not fail the donation record.

Receipt emails and campaign credits are written here first, attempted
inline once, and left `pending` on failure so `flask outbox drain` can retry
them. Every attempt is claimed with a compare-and-set on `attempts`, so two
drainers never run the same message concurrently.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from kendofund.extensions import db, tx_commit
from kendofund.models import Donation, OutboxMessage, utcnow

log = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


def _receipt_handler(payload: Dict[str, Any]) -> None:
    from kendofund.services.receipts import send_receipt

    send_receipt(payload)


def _campaign_credit_handler(payload: Dict[str, Any]) -> None:
    from kendofund.services import campaign

    reference = str(payload.get("reference") or "")
    campaign.get_or_create_campaign()
    donation = db.session.execute(select(Donation).where(Donation.reference == reference)).scalar_one_or_none()
    if donation is None:
        raise LookupError(f"donation {reference!r} not found")
    credited = campaign.credit_donation(donation)
    tx_commit()
    if credited:
        campaign.publish_total(campaign.get_or_create_campaign())


HANDLERS: Dict[str, Handler] = {
    "receipt_email": _receipt_handler,
    "campaign_credit": _campaign_credit_handler,
}


def _max_attempts() -> int:
    return int(current_app.config.get("OUTBOX_MAX_ATTEMPTS") or 5)


def enqueue(kind: str, dedupe_key: str, payload: Dict[str, Any]) -> Optional[OutboxMessage]:
    """
    Persist a message (commits). Returns None when a message with the same
    dedupe key already exists, which is what keeps receipts at one per donation.
    """
    if kind not in HANDLERS:
        raise ValueError(f"unknown outbox kind: {kind}")

    existing = db.session.execute(
        select(OutboxMessage.id).where(OutboxMessage.dedupe_key == dedupe_key)
    ).scalar_one_or_none()
    if existing is not None:
        return None

    msg = OutboxMessage(kind=kind, dedupe_key=dedupe_key[:200], payload=payload, status="pending", attempts=0)
    db.session.add(msg)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return msg


def _claim(msg: OutboxMessage) -> bool:
    seen = int(msg.attempts or 0)
    res = db.session.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.id == msg.id,
            OutboxMessage.status == "pending",
            OutboxMessage.attempts == seen,
        )
        .values(attempts=seen + 1)
        .execution_options(synchronize_session=False)
    )
    tx_commit()
    db.session.expire(msg)
    return bool(res.rowcount)


def dispatch(msg: OutboxMessage, max_attempts: Optional[int] = None) -> bool:
    """Attempt one message. Never raises; returns True when it was delivered."""
    msg_id = msg.id
    if not _claim(msg):
        return False

    handler = HANDLERS.get(msg.kind)
    payload = dict(msg.payload or {})
    try:
        if handler is None:
            raise LookupError(f"no handler for {msg.kind}")
        handler(payload)
    except Exception as e:
        db.session.rollback()
        msg = db.session.get(OutboxMessage, msg_id)
        exhausted = int(msg.attempts or 0) >= (max_attempts or _max_attempts())
        msg.status = "failed" if exhausted else "pending"
        msg.last_error = f"{type(e).__name__}: {e}"[:2000]
        tx_commit()
        log.error(
            "outbox: %s attempt %s failed%s: %s",
            msg.dedupe_key,
            msg.attempts,
            " (giving up)" if exhausted else "",
            e,
            exc_info=True,
        )
        return False

    msg = db.session.get(OutboxMessage, msg_id)
    msg.status = "sent"
    msg.sent_at = utcnow()
    msg.last_error = None
    tx_commit()
    return True


def drain(limit: int = 100, max_attempts: Optional[int] = None) -> Dict[str, int]:
    """Retry pending messages, oldest first."""
    rows = db.session.execute(
        select(OutboxMessage)
        .where(OutboxMessage.status == "pending")
        .order_by(OutboxMessage.created_at, OutboxMessage.id)
        .limit(int(limit))
    ).scalars().all()

    counts = {"seen": len(rows), "sent": 0, "failed": 0}
    for msg in rows:
        if dispatch(msg, max_attempts):
            counts["sent"] += 1
        else:
            counts["failed"] += 1
    return counts
