from __future__ import annotations

from kendofund.extensions import db
from kendofund.models.campaign import Campaign
from kendofund.models.donation import DONATION_STATUSES, Donation
from kendofund.models.mixins import TimestampMixin, utcnow
from kendofund.models.outbox import OutboxMessage
from kendofund.models.webhook_event import WebhookEvent

__all__ = [
    "db",
    "Campaign",
    "Donation",
    "DONATION_STATUSES",
    "OutboxMessage",
    "TimestampMixin",
    "WebhookEvent",
    "utcnow",
]
