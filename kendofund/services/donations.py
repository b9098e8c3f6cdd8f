# kendofund/services/donations.py
"""
Donation lifecycle: initialization, verification and webhook reconciliation.

State that must survive restarts and concurrent workers lives in the database:

* verification idempotency is the donation row itself (`verification_snapshot`
  + `verified_at`), served again for VERIFY_CACHE_HOURS;
* webhook dedup is the unique `webhook_events.event_id`, claimed before any
  handler runs;
* campaign credit is a compare-and-set on `donations.campaign_counted`.

Side effects (campaign credit, receipt email) run after the donation row is
committed. Their failures are logged and parked in the outbox; they never undo
the donation record.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from kendofund.extensions import db, retry_on_db_lock, set_sqlite_busy_timeout, tx_commit
from kendofund.models import Donation, WebhookEvent, utcnow
from kendofund.money import from_minor, parse_amount, to_minor
from kendofund.services import campaign as campaign_svc
from kendofund.services import outbox
from kendofund.services import paystack
from kendofund.services.analytics import log_transaction, track
from kendofund.services.receipts import mail_configured, receipt_payload

log = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_BASE36 = string.digits + string.ascii_uppercase


class DonationValidationError(ValueError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ----------------------------
# Small helpers
# ----------------------------
def _cfg(key: str, default: Any = None) -> Any:
    return current_app.config.get(key, default)


def mask_email(email: Optional[str]) -> str:
    e = (email or "").strip()
    if "@" not in e:
        return "***"
    local, domain = e.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _cedis(value: Decimal) -> str:
    value = Decimal(value)
    if value == value.to_integral_value():
        return f"₵{value:,.0f}"
    return f"₵{value:,.2f}"


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _parse_ts(raw: Any) -> Optional[datetime]:
    """Gateway ISO timestamp → naive UTC datetime."""
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def generate_reference(prefix: Optional[str] = None, now_ms: Optional[int] = None) -> str:
    """GKF_<epoch-ms>_<7 uppercase base36 chars>"""
    prefix = prefix or str(_cfg("REFERENCE_PREFIX") or "GKF")
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{prefix}_{ms}_{suffix}"


# ----------------------------
# Initialization
# ----------------------------
@dataclass
class DonationRequest:
    amount: Decimal
    email: str
    currency: str
    name: Optional[str] = None
    anonymous: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "DonationRequest":
        raw_amount = data.get("amount")
        email = str(data.get("email") or "").strip()
        if raw_amount in (None, "") or not email:
            raise DonationValidationError("Amount and email are required")
        if not EMAIL_RE.match(email):
            raise DonationValidationError("Invalid email address")

        amount = parse_amount(raw_amount)
        if amount is None:
            raise DonationValidationError("Invalid donation amount")
        lo = Decimal(str(_cfg("MIN_DONATION") or "1"))
        hi = Decimal(str(_cfg("MAX_DONATION") or "1000000"))
        if amount < lo:
            raise DonationValidationError(f"Minimum donation amount is {_cedis(lo)}")
        if amount > hi:
            raise DonationValidationError(f"Maximum donation amount is {_cedis(hi)}")

        currency = str(data.get("currency") or _cfg("DEFAULT_CURRENCY") or "GHS").strip().upper()
        if not CURRENCY_RE.match(currency):
            raise DonationValidationError("Invalid currency")

        metadata = data.get("metadata")
        name = str(data.get("name") or "").strip() or None
        return cls(
            amount=amount,
            email=email,
            currency=currency,
            name=name,
            anonymous=_truthy(data.get("anonymous")),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def build_metadata(req: DonationRequest) -> Dict[str, Any]:
    meta = dict(req.metadata)
    donation_type = meta.pop("donationType", None) or meta.get("donation_type") or "General Donation"
    campaign_name = meta.get("campaign") or "General"

    meta.update(
        donation_type=donation_type,
        anonymous=req.anonymous,
        donor_name=req.name,
        campaign=campaign_name,
    )

    custom_fields: List[Dict[str, str]] = [
        {"display_name": "Donation Type", "variable_name": "donation_type", "value": donation_type},
        {"display_name": "Campaign", "variable_name": "campaign", "value": campaign_name},
    ]
    if req.name:
        custom_fields.append({"display_name": "Donor Name", "variable_name": "donor_name", "value": req.name})
    custom_fields.append(
        {"display_name": "Anonymous", "variable_name": "anonymous", "value": "Yes" if req.anonymous else "No"}
    )
    meta["custom_fields"] = custom_fields
    return meta


def initialize_donation(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate, then open a gateway transaction. Nothing is persisted here."""
    s = paystack.Settings.load()
    s.require_secret(live_in_production=True)
    req = DonationRequest.from_payload(data)

    reference = generate_reference()
    payload = {
        "email": req.email,
        "amount": to_minor(req.amount),
        "currency": req.currency,
        "reference": reference,
        "callback_url": f"{s.site_base_url}/donate/success?ref={reference}",
        "metadata": build_metadata(req),
    }
    gw = paystack.initialize_transaction(s, payload)

    log.info(
        "donations: initialized %s %s %s for %s",
        reference,
        req.currency,
        req.amount,
        mask_email(req.email),
    )
    return {
        "authorization_url": gw.get("authorization_url"),
        "access_code": gw.get("access_code"),
        "reference": gw.get("reference") or reference,
    }


# ----------------------------
# Transaction view + upsert
# ----------------------------
def _donation_type_from(metadata: Mapping[str, Any]) -> Optional[str]:
    """metadata.donation_type wins; custom_fields is the fallback."""
    if metadata.get("donation_type"):
        return str(metadata["donation_type"])
    for f in metadata.get("custom_fields") or []:
        if not isinstance(f, Mapping):
            continue
        if f.get("variable_name") == "donation_type" or f.get("display_name") == "Donation Type":
            return str(f.get("value") or "") or None
    return None


def _tx_metadata(tx: Mapping[str, Any]) -> Dict[str, Any]:
    meta = tx.get("metadata")
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except ValueError:
            meta = {}
    return dict(meta) if isinstance(meta, Mapping) else {}


def _tx_email(tx: Mapping[str, Any]) -> str:
    customer = tx.get("customer")
    if isinstance(customer, Mapping):
        return str(customer.get("email") or "")
    return str(tx.get("email") or "")


def transaction_view(tx: Mapping[str, Any]) -> Dict[str, Any]:
    """The JSON-safe transaction shape returned to clients (and cached)."""
    meta = _tx_metadata(tx)
    return {
        "reference": tx.get("reference"),
        "amount": float(from_minor(tx.get("amount") or 0)),
        "currency": str(tx.get("currency") or "GHS").upper(),
        "email": _tx_email(tx),
        "status": tx.get("status"),
        "paid_at": tx.get("paid_at") or tx.get("paidAt"),
        "metadata": meta,
        "channel": tx.get("channel"),
        "gateway_response": tx.get("gateway_response"),
        "donation_type": _donation_type_from(meta),
    }


def upsert_donation(
    tx: Mapping[str, Any],
    *,
    status: str,
    event_id: Optional[str] = None,
    verified_at: Optional[datetime] = None,
    snapshot: Optional[Dict[str, Any]] = None,
) -> Donation:
    """Insert or update the donation for tx["reference"] and commit."""
    reference = str(tx.get("reference") or "").strip()
    if not reference:
        raise ValueError("transaction has no reference")
    meta = _tx_metadata(tx)

    def _apply(d: Donation) -> None:
        if event_id:
            d.event_id = event_id
        if d.status == "PAID" and status != "PAID":
            log.info("donations: %s already PAID; ignoring %s", reference, status)
            return

        d.status = status
        d.email = _tx_email(tx) or d.email or ""
        if tx.get("amount") is not None:
            d.amount_minor = int(tx.get("amount") or 0)
        d.currency = str(tx.get("currency") or d.currency or "GHS")
        d.donor_name = meta.get("donor_name") or d.donor_name
        if "anonymous" in meta:
            d.anonymous = _truthy(meta.get("anonymous"))
        d.donation_type = _donation_type_from(meta) or d.donation_type
        d.campaign = meta.get("campaign") or d.campaign
        d.payment_channel = tx.get("channel") or d.payment_channel
        d.gateway_response = (str(tx.get("gateway_response") or "") or d.gateway_response or "")[:255] or None
        if meta:
            d.meta = meta
        if status == "PAID":
            d.paid_at = _parse_ts(tx.get("paid_at") or tx.get("paidAt")) or d.paid_at or utcnow()
        if verified_at is not None:
            d.verified_at = verified_at
        if snapshot is not None:
            d.verification_snapshot = snapshot

    def _write() -> Donation:
        d = db.session.execute(select(Donation).where(Donation.reference == reference)).scalar_one_or_none()
        if d is None:
            d = Donation(reference=reference, status="PENDING", amount_minor=0)
            db.session.add(d)
        _apply(d)
        db.session.commit()
        return d

    try:
        return retry_on_db_lock(_write)
    except IntegrityError:
        # inserted concurrently; the second pass updates that row
        db.session.rollback()
        return retry_on_db_lock(_write)


def get_donation(reference: str) -> Optional[Donation]:
    return db.session.execute(select(Donation).where(Donation.reference == reference)).scalar_one_or_none()


def public_view(donation: Donation) -> Dict[str, Any]:
    """Donation status for unauthenticated callers: masked email, no metadata."""
    out = donation.as_dict()
    out.pop("metadata", None)
    out["email"] = mask_email(donation.email)
    return out


# ----------------------------
# Side effects
# ----------------------------
def credit_campaign(donation: Donation) -> bool:
    """Credit a tracked donation; on failure park a campaign_credit message."""
    if not donation.is_paid or not campaign_svc.is_tracked(donation.donation_type, donation.meta):
        return False

    reference = donation.reference
    try:
        credited = campaign_svc.credit_donation(donation)
        tx_commit()
    except Exception as e:
        db.session.rollback()
        log.error("donations: campaign credit failed for %s: %s", reference, e, exc_info=True)
        outbox.enqueue("campaign_credit", f"campaign_credit:{reference}", {"reference": reference})
        return False

    if credited:
        campaign_svc.publish_total(campaign_svc.get_or_create_campaign())
    return credited


def send_receipt_once(donation: Donation) -> bool:
    if not donation.email:
        log.warning("donations: no email on %s; receipt skipped", donation.reference)
        return False
    if not mail_configured():
        log.warning("donations: no email service configured; skipping receipt for %s", donation.reference)
        return False

    payload = receipt_payload(
        email=donation.email,
        amount=donation.amount,
        currency=donation.currency,
        reference=donation.reference,
        donation_type=donation.donation_type,
        paid_at=donation.paid_at,
        donor_name=None if donation.anonymous else donation.donor_name,
    )
    msg = outbox.enqueue("receipt_email", f"receipt_email:{donation.reference}", payload)
    if msg is None:
        log.info("donations: receipt for %s already queued", donation.reference)
        return False
    return outbox.dispatch(msg)


# ----------------------------
# Verification
# ----------------------------
@dataclass
class VerificationResult:
    success: bool
    transaction: Dict[str, Any]
    cached: bool = False
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "transaction": self.transaction}
        if self.cached:
            out["cached"] = True
        if self.message:
            out["message"] = self.message
        return out


def validate_reference(raw: Any) -> str:
    reference = str(raw or "").strip()
    if not reference:
        raise DonationValidationError("Reference is required")
    prefix = str(_cfg("REFERENCE_PREFIX") or "GKF")
    if not reference.startswith(f"{prefix}_") or len(reference) > 64:
        raise DonationValidationError("Invalid transaction reference")
    return reference


def cached_verification(reference: str) -> Optional[Dict[str, Any]]:
    d = get_donation(reference)
    if d is None or not d.is_paid or not d.verification_snapshot or d.verified_at is None:
        return None
    window = timedelta(hours=int(_cfg("VERIFY_CACHE_HOURS") or 24))
    if utcnow() - d.verified_at > window:
        return None
    return dict(d.verification_snapshot)


def verify_reference(raw: Any) -> VerificationResult:
    reference = validate_reference(raw)

    snapshot = cached_verification(reference)
    if snapshot is not None:
        log.info("donations: verification cache hit for %s", reference)
        return VerificationResult(True, snapshot, cached=True)

    tx = paystack.verify_transaction(paystack.Settings.load(), reference)
    if not tx.get("reference") or tx.get("amount") is None:
        raise paystack.PaystackAPIError("Invalid response from payment gateway", 500)

    status = str(tx.get("status") or "unknown")
    if status != "success":
        log.info("donations: %s not successful (%s)", reference, status)
        return VerificationResult(
            False,
            {"reference": reference, "status": status, "gateway_response": tx.get("gateway_response")},
            message=f"Transaction {status}",
        )

    view = transaction_view(tx)
    donation = upsert_donation(tx, status="PAID", verified_at=utcnow(), snapshot=view)
    credit_campaign(donation)
    log_transaction(
        "verification",
        reference=reference,
        amount=view["amount"],
        currency=view["currency"],
        email=mask_email(view["email"]),
        donation_type=view["donation_type"],
        status="PAID",
    )
    return VerificationResult(True, view)


# ----------------------------
# Webhooks
# ----------------------------
def derive_event_id(envelope: Mapping[str, Any]) -> str:
    event_type = str(envelope.get("event") or "unknown")
    data = envelope.get("data") if isinstance(envelope.get("data"), Mapping) else {}
    reference = data.get("reference")
    if reference:
        return f"{event_type}:{reference}"[:160]
    if envelope.get("id"):
        return str(envelope["id"])[:160]
    return f"event_{int(time.time() * 1000)}"


def claim_event(event_id: str, event_type: str, reference: Optional[str],
                envelope: Mapping[str, Any]) -> Optional[WebhookEvent]:
    """
    Insert the event row; None means another delivery already owns it.
    Rows past the retention window are re-claimed with a compare-and-set on
    their claim time.
    """

    def _insert() -> WebhookEvent:
        row = WebhookEvent(
            event_id=event_id,
            event_type=event_type or "unknown",
            reference=(str(reference)[:64] if reference else None),
            status="processing",
            payload=dict(envelope),
        )
        db.session.add(row)
        db.session.commit()
        return row

    try:
        return retry_on_db_lock(_insert)
    except IntegrityError:
        db.session.rollback()

    existing = db.session.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    ).scalar_one_or_none()
    if existing is None:
        return None

    cutoff = utcnow() - timedelta(days=int(_cfg("WEBHOOK_RETENTION_DAYS") or 7))
    if existing.created_at >= cutoff:
        return None

    res = db.session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == existing.id, WebhookEvent.created_at == existing.created_at)
        .values(created_at=utcnow(), status="processing", error=None, processed_at=None, payload=dict(envelope))
        .execution_options(synchronize_session=False)
    )
    tx_commit()
    if not res.rowcount:
        return None
    db.session.expire(existing)
    log.info("webhook: re-claimed expired event %s", event_id)
    return existing


def handle_charge_success(data: Mapping[str, Any], event_id: str) -> None:
    if not data.get("reference") or not data.get("amount"):
        log.error("webhook: invalid transaction data in charge.success (%s)", event_id)
        return
    view = transaction_view(data)
    donation = upsert_donation(data, status="PAID", event_id=event_id, verified_at=utcnow(), snapshot=view)
    credit_campaign(donation)
    log_transaction(
        "webhook",
        event_id=event_id,
        reference=donation.reference,
        amount=float(donation.amount),
        currency=donation.currency,
        email=mask_email(donation.email),
        donation_type=donation.donation_type,
        status="PAID",
    )
    send_receipt_once(donation)
    track(
        "donation_completed",
        reference=donation.reference,
        amount=float(donation.amount),
        currency=donation.currency,
        donation_type=donation.donation_type,
    )


def handle_charge_failure(data: Mapping[str, Any], event_id: str) -> None:
    if not data.get("reference"):
        log.error("webhook: invalid transaction data in charge.failure (%s)", event_id)
        return
    donation = upsert_donation(data, status="FAILED", event_id=event_id)
    log_transaction(
        "webhook",
        event_id=event_id,
        reference=donation.reference,
        amount=float(donation.amount),
        currency=donation.currency,
        status=donation.status,
    )
    log.warning(
        "webhook: payment failed for %s: %s",
        donation.reference,
        data.get("gateway_response") or "unknown reason",
    )


def handle_transfer_success(data: Mapping[str, Any], event_id: str) -> None:
    log.info("webhook: transfer succeeded reference=%s", data.get("reference"))


EVENT_HANDLERS = {
    "charge.success": handle_charge_success,
    "charge.failure": handle_charge_failure,
    "transfer.success": handle_transfer_success,
}


def dispatch_event(event_type: str, data: Mapping[str, Any], event_id: str) -> None:
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        log.info("webhook: unhandled event type %s", event_type)
        return
    handler(data, event_id)


def _finish_event(row_id: int, status: str, error: Optional[str] = None) -> None:
    try:
        db.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row_id)
            .values(status=status, error=error, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        tx_commit()
    except Exception as e:
        log.error("webhook: could not mark event %s %s: %s", row_id, status, e, exc_info=True)


def process_webhook(body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Authenticate, claim and handle one delivery. Signature problems raise
    WebhookSignatureError; everything after that answers with a body so the
    gateway stops retrying.
    """
    paystack.authenticate_webhook(paystack.Settings.load(), body, signature)

    started = time.monotonic()
    event_id: Optional[str] = None
    row_id: Optional[int] = None
    try:
        envelope = json.loads(body or b"{}")
        if not isinstance(envelope, dict):
            raise ValueError("webhook body is not a JSON object")
        event_type = str(envelope.get("event") or "")
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        event_id = derive_event_id(envelope)

        set_sqlite_busy_timeout(5000)
        row = claim_event(event_id, event_type, data.get("reference"), envelope)
        if row is None:
            log.info("webhook: duplicate event %s", event_id)
            return {"success": True, "message": "Event already processed", "event_id": event_id}
        row_id = row.id

        log.info("webhook: processing %s (%s)", event_id, event_type)
        dispatch_event(event_type, data, event_id)
    except Exception as e:
        db.session.rollback()
        log.error("webhook: processing error for %s: %s", event_id, e, exc_info=True)
        if row_id is not None:
            _finish_event(row_id, "failed", f"{type(e).__name__}: {e}"[:2000])
        return {"success": False, "message": "Webhook processing error (logged)", "event_id": event_id}

    _finish_event(row_id, "processed")
    return {
        "success": True,
        "message": "Webhook processed",
        "event_id": event_id,
        "processing_time_ms": int((time.monotonic() - started) * 1000),
    }


def replay_failed(limit: int = 50) -> Dict[str, int]:
    """
    Re-run handlers for events recorded as failed, and for events stuck in
    `processing` longer than WEBHOOK_STALE_MINUTES (the worker died mid-handler).
    """
    stale_before = utcnow() - timedelta(minutes=int(_cfg("WEBHOOK_STALE_MINUTES") or 10))
    rows = db.session.execute(
        select(WebhookEvent)
        .where(
            or_(
                WebhookEvent.status == "failed",
                and_(WebhookEvent.status == "processing", WebhookEvent.created_at < stale_before),
            )
        )
        .order_by(WebhookEvent.created_at, WebhookEvent.id)
        .limit(int(limit))
    ).scalars().all()

    counts = {"seen": len(rows), "processed": 0, "failed": 0}
    for row in rows:
        row_id, event_id, event_type = row.id, row.event_id, row.event_type
        payload = dict(row.payload or {})

        # stale rows are re-claimed by moving their claim time forward
        values: Dict[str, Any] = {"status": "processing"}
        if row.status == "processing":
            values["created_at"] = utcnow()
        claimed = db.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == row_id,
                WebhookEvent.status == row.status,
                WebhookEvent.created_at == row.created_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        tx_commit()
        if not claimed.rowcount:
            continue

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        try:
            dispatch_event(event_type, data, event_id)
        except Exception as e:
            db.session.rollback()
            log.error("webhook: replay of %s failed: %s", event_id, e, exc_info=True)
            _finish_event(row_id, "failed", f"{type(e).__name__}: {e}"[:2000])
            counts["failed"] += 1
            continue
        _finish_event(row_id, "processed")
        counts["processed"] += 1
    return counts


def purge_expired(days: Optional[int] = None) -> int:
    """Delete event rows older than the retention window; returns the count."""
    keep = int(days if days is not None else (_cfg("WEBHOOK_RETENTION_DAYS") or 7))
    cutoff = utcnow() - timedelta(days=keep)
    res = db.session.execute(delete(WebhookEvent).where(WebhookEvent.created_at < cutoff))
    tx_commit()
    return int(res.rowcount or 0)
