# kendofund/services/receipts.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from flask import current_app

from kendofund.extensions import send_email

log = logging.getLogger(__name__)

SUBJECT = "Thank you for your donation to Ghana Kendo Federation"


def _format_date(raw: Any) -> str:
    if not raw:
        return ""
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return str(raw)
    return ts.strftime("%d %B %Y, %H:%M")


def mail_configured() -> bool:
    """Receipts go out only when a provider is configured (MAIL_ENABLED)."""
    return bool(current_app.config.get("MAIL_ENABLED"))


def receipt_payload(*, email: str, amount: Decimal, currency: str, reference: str,
                    donation_type: str, paid_at: Any, donor_name: Any = None) -> Dict[str, Any]:
    return {
        "email": email,
        "amount": str(amount),
        "currency": currency,
        "reference": reference,
        "donation_type": donation_type or "General Donation",
        "paid_at": paid_at.isoformat() if isinstance(paid_at, datetime) else (paid_at or None),
        "donor_name": donor_name or None,
    }


def send_receipt(payload: Dict[str, Any]) -> None:
    """Send the donor receipt described by an outbox payload. Raises on failure."""
    email = str(payload.get("email") or "").strip()
    if not email:
        raise ValueError("receipt payload has no email")

    amount = Decimal(str(payload.get("amount") or "0"))
    context = {
        "brand": current_app.config.get("BRAND_NAME", "Ghana Kendo Federation"),
        "site_url": current_app.config.get("SITE_BASE_URL", ""),
        "donor_name": payload.get("donor_name") or "Valued Supporter",
        "donation_type": payload.get("donation_type") or "General Donation",
        "formatted_amount": f"{payload.get('currency') or 'GHS'} {amount:,.2f}",
        "reference": payload.get("reference") or "",
        "formatted_date": _format_date(payload.get("paid_at")),
    }

    send_email(
        current_app._get_current_object(),
        SUBJECT,
        [email],
        html_template="receipt.html",
        text_template="receipt.txt",
        context=context,
    )
    log.info("receipts: sent receipt for %s", context["reference"])
