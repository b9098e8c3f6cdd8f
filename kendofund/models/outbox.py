from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from kendofund.extensions import db
from kendofund.models.mixins import utcnow

OUTBOX_KINDS = ("receipt_email", "campaign_credit")


class OutboxMessage(db.Model):
    """Side effect that must eventually happen (receipt email, campaign credit)."""

    __tablename__ = "outbox_messages"
    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[str] = mapped_column(db.String(40), nullable=False, index=True)
    dedupe_key: Mapped[str] = mapped_column(
        db.String(200),
        unique=True,
        nullable=False,
        doc="One message per key, e.g. receipt_email:GKF_...",
    )
    payload: Mapped[Dict[str, Any]] = mapped_column(db.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(db.DateTime, default=utcnow, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<OutboxMessage {self.dedupe_key} {self.status} attempts={self.attempts}>"
