# kendofund/services/campaign.py
"""
Campaign total store.

The total is a cached counter on the `campaigns` row, changed only through
SQL-side increments (`total_minor = total_minor + :delta`) so concurrent
writers never lose updates. A donation is credited at most once: the
`donations.campaign_counted` flag is flipped with a conditional UPDATE and the
campaign is incremented only when that UPDATE matched.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from kendofund.extensions import db, emit_socket
from kendofund.models import Campaign, Donation
from kendofund.money import convert_ghs_to_usd, from_minor, to_minor

log = logging.getLogger(__name__)


def tracked_campaign_slug() -> str:
    return str(current_app.config.get("CAMPAIGN_SLUG") or "default")


def is_tracked(donation_type: Optional[str], metadata: Optional[Mapping[str, Any]]) -> bool:
    """True when a donation belongs to the sponsorship campaign we total."""
    cfg = current_app.config
    if donation_type and donation_type == cfg.get("CAMPAIGN_DONATION_TYPE"):
        return True
    campaign = (metadata or {}).get("campaign") if isinstance(metadata, Mapping) else None
    return bool(campaign) and campaign == cfg.get("CAMPAIGN_NAME")


def get_or_create_campaign() -> Campaign:
    """
    Load the tracked campaign, seeding it from config on first use.
    Seeding commits, so call this before staging other changes.
    """
    slug = tracked_campaign_slug()
    campaign = db.session.execute(select(Campaign).where(Campaign.slug == slug)).scalar_one_or_none()
    if campaign is not None:
        return campaign

    cfg = current_app.config
    base = to_minor(cfg.get("CAMPAIGN_INITIAL_RECEIVED_GHS") or 0)
    campaign = Campaign(
        slug=slug,
        name=str(cfg.get("CAMPAIGN_NAME") or slug),
        currency="GHS",
        goal_minor=to_minor(cfg.get("CAMPAIGN_GOAL_GHS") or 0),
        base_received_minor=base,
        adjustments_minor=0,
        total_minor=base,
    )
    db.session.add(campaign)
    try:
        db.session.commit()
    except IntegrityError:
        # seeded concurrently by another request
        db.session.rollback()
        campaign = db.session.execute(select(Campaign).where(Campaign.slug == slug)).scalar_one()
    return campaign


def credit_donation(donation: Donation) -> bool:
    """
    Add a paid donation to the campaign total, at most once per donation.
    The flag flip and the increment are staged in the caller's transaction;
    returns True if this call credited it.
    """
    if donation.status != "PAID" or not donation.amount_minor:
        return False

    campaign = get_or_create_campaign()
    claimed = db.session.execute(
        update(Donation)
        .where(Donation.id == donation.id, Donation.campaign_counted.is_(False))
        .values(campaign_counted=True)
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        return False

    db.session.execute(
        update(Campaign)
        .where(Campaign.id == campaign.id)
        .values(total_minor=Campaign.total_minor + int(donation.amount_minor))
        .execution_options(synchronize_session=False)
    )
    db.session.expire(donation, ["campaign_counted"])
    db.session.expire(campaign, ["total_minor"])
    log.info(
        "campaign: credited %s %s from %s",
        donation.currency,
        from_minor(donation.amount_minor),
        donation.reference,
    )
    return True


def add_delta(amount_ghs: Decimal) -> Campaign:
    """Manual additive update (offline sponsorship received, etc.)."""
    delta = to_minor(amount_ghs)
    campaign = get_or_create_campaign()
    db.session.execute(
        update(Campaign)
        .where(Campaign.id == campaign.id)
        .values(
            total_minor=Campaign.total_minor + delta,
            adjustments_minor=Campaign.adjustments_minor + delta,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.expire(campaign, ["total_minor", "adjustments_minor"])
    return campaign


def recompute() -> Tuple[int, int]:
    """Re-derive the cached total from the ledger; returns (old, new) minor units."""
    campaign = get_or_create_campaign()
    old = int(campaign.total_minor or 0)
    new = campaign.ledger_total_minor()
    campaign.total_minor = new
    return old, new


def summary(campaign: Campaign) -> Dict[str, Any]:
    rate = Decimal(str(current_app.config.get("USD_TO_GHS_RATE") or "11"))

    def _both(ghs: Decimal) -> Dict[str, float]:
        return {"ghs": float(ghs), "usd": float(convert_ghs_to_usd(ghs, rate))}

    return {
        "campaign": {"slug": campaign.slug, "name": campaign.name},
        "amountReceived": _both(campaign.total),
        "goal": _both(campaign.goal),
        "outstanding": _both(campaign.outstanding),
        "progressPercentage": campaign.percent_raised,
        "usdToGhsRate": float(rate),
    }


def publish_total(campaign: Campaign) -> None:
    emit_socket("campaign:total", summary(campaign))
