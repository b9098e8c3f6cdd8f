from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from kendofund.extensions import db
from kendofund.models.mixins import utcnow

WEBHOOK_STATUSES = ("processing", "processed", "failed")


class WebhookEvent(db.Model):
    """
    Durable record of a claimed Paystack webhook event.

    The unique constraint on event_id is the deduplication mechanism: the
    first delivery inserts the row, concurrent or repeated deliveries hit
    an IntegrityError.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    event_id: Mapped[str] = mapped_column(
        db.String(160),
        unique=True,
        index=True,
        nullable=False,
        doc="Derived event id (charge.success:GKF_...)",
    )

    event_type: Mapped[str] = mapped_column(
        db.String(80),
        index=True,
        nullable=False,
        doc="Paystack event type (charge.success, charge.failure, ...)",
    )

    reference: Mapped[Optional[str]] = mapped_column(db.String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="processing")

    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(db.JSON, nullable=True)

    error: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        db.DateTime,
        default=utcnow,
        nullable=False,
        doc="Claim time; the retention window is measured from here.",
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "reference": self.reference or "",
            "status": self.status,
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
