#!/usr/bin/env python3
"""
Kendo Fund donation API (Paystack)

Mount: /api  (register blueprint with url_prefix="/api")

Endpoints:
  POST /api/donations/initialize
  GET  /api/donations/<reference>
  POST /api/paystack/verify
  POST /api/paystack/webhook
  GET  /api/sponsorship/total
  POST /api/sponsorship/total      (bearer token when CAMPAIGN_ADMIN_TOKENS is set)
  POST /api/analytics/track

Contracts:
- Every JSON answer carries `success`; errors add `message`. Never cached.
- The webhook answers 401 for signature problems and 200 for everything else,
  so Paystack does not retry events we already recorded.
"""

from __future__ import annotations

from decimal import Decimal

from flask import Blueprint, current_app, request

from kendofund.blueprints.utils import (
    has_admin_token,
    json_error,
    json_ok,
    json_response,
    request_payload,
    require_admin_token,
)
from kendofund.extensions import tx_commit
from kendofund.money import convert_ghs_to_usd, parse_amount
from kendofund.services import campaign as campaign_svc
from kendofund.services import donations
from kendofund.services.analytics import track
from kendofund.services.paystack import PaystackError

bp = Blueprint("api", __name__)


# ----------------------------
# Donations
# ----------------------------
@bp.post("/donations/initialize")
def initialize_donation():
    try:
        data = donations.initialize_donation(request_payload())
    except donations.DonationValidationError as e:
        return json_error(e.message, e.status_code)
    except PaystackError as e:
        current_app.logger.warning("api.initialize: %s (%s)", e.message, e.status_code)
        return json_error(e.message, e.status_code)
    return json_ok({"data": data})


@bp.get("/donations/<reference>")
def get_donation(reference: str):
    d = donations.get_donation(reference.strip())
    if d is None:
        return json_error("Donation not found", 404)
    view = d.as_dict() if has_admin_token() else donations.public_view(d)
    return json_ok({"donation": view})


# ----------------------------
# Paystack
# ----------------------------
@bp.post("/paystack/verify")
def verify_transaction():
    payload = request_payload()
    try:
        result = donations.verify_reference(payload.get("reference"))
    except donations.DonationValidationError as e:
        return json_error(e.message, e.status_code)
    except PaystackError as e:
        current_app.logger.warning("api.verify: %s (%s)", e.message, e.status_code)
        return json_error(e.message, e.status_code)
    return json_response(result.as_dict(), 200)


@bp.post("/paystack/webhook")
def paystack_webhook():
    body = request.get_data(cache=False, as_text=False)
    signature = (request.headers.get("x-paystack-signature") or "").strip()
    try:
        result = donations.process_webhook(body, signature)
    except PaystackError as e:
        return json_error(e.message, e.status_code)
    return json_response(result, 200)


# ----------------------------
# Sponsorship campaign
# ----------------------------
@bp.get("/sponsorship/total")
def sponsorship_total():
    campaign = campaign_svc.get_or_create_campaign()
    return json_ok(campaign_svc.summary(campaign))


@bp.post("/sponsorship/total")
@require_admin_token
def sponsorship_add():
    amount = parse_amount(request_payload().get("amountGHS"))
    if amount is None or amount <= 0:
        return json_error("Invalid amount", 400)

    campaign_svc.get_or_create_campaign()
    campaign = campaign_svc.add_delta(amount)
    tx_commit()

    campaign_svc.publish_total(campaign)
    current_app.logger.info("campaign: manual +%s GHS, total now %s", amount, campaign.total)

    rate = Decimal(str(current_app.config.get("USD_TO_GHS_RATE") or "11"))
    return json_ok(
        {
            "message": "Amount updated successfully",
            "total": {"ghs": float(campaign.total), "usd": float(convert_ghs_to_usd(campaign.total, rate))},
        }
    )


# ----------------------------
# Analytics
# ----------------------------
@bp.post("/analytics/track")
def analytics_track():
    payload = request_payload()
    event = str(payload.get("event") or "").strip()
    if not event or not payload.get("timestamp"):
        return json_error("Invalid event data", 400)

    extra = {k: v for k, v in payload.items() if k != "event"}
    extra.update(source="client", user_agent=request.headers.get("User-Agent", "")[:200])
    track(event, **extra)
    return json_ok()
