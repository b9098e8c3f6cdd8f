from __future__ import annotations

# -----------------------------------------------------------------------------
# Donation Model
# Minor-unit amounts (pesewas), upserted by gateway reference.
# PAID is terminal: failure events never downgrade a paid donation.
# -----------------------------------------------------------------------------
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, Index, event
from sqlalchemy.orm import Mapped, mapped_column

from kendofund.extensions import db
from kendofund.money import from_minor

from .mixins import TimestampMixin

DONATION_STATUSES = ("PENDING", "PAID", "FAILED", "CANCELLED")


class Donation(db.Model, TimestampMixin):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_donations_amount_nonneg"),
        Index("ix_donations_status_created", "status", "created_at"),
    )

    # ---- Identifiers ----
    id: Mapped[int] = mapped_column(primary_key=True)
    reference: Mapped[str] = mapped_column(
        db.String(64),
        unique=True,
        index=True,
        nullable=False,
        doc="Service-issued reference (GKF_...), shared with Paystack.",
    )
    email: Mapped[str] = mapped_column(db.String(160), nullable=False, default="", index=True)
    donor_name: Mapped[Optional[str]] = mapped_column(db.String(160), nullable=True)

    # ---- Financials (minor units) ----
    amount_minor: Mapped[int] = mapped_column(
        db.Integer,
        nullable=False,
        default=0,
        doc="Donation amount in the currency's minor unit (pesewas for GHS).",
    )
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="GHS")

    # ---- Lifecycle ----
    status: Mapped[str] = mapped_column(db.String(12), nullable=False, default="PENDING", index=True)
    anonymous: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    payment_channel: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)
    gateway_response: Mapped[Optional[str]] = mapped_column(db.String(255), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(
        db.String(160),
        nullable=True,
        doc="Last webhook event that touched this donation.",
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    # ---- Campaign attribution ----
    donation_type: Mapped[Optional[str]] = mapped_column(db.String(80), nullable=True, index=True)
    campaign: Mapped[Optional[str]] = mapped_column(db.String(160), nullable=True, index=True)
    campaign_counted: Mapped[bool] = mapped_column(
        db.Boolean,
        nullable=False,
        default=False,
        doc="Set exactly once, when the amount is credited to the campaign total.",
    )

    # ---- Free-form ----
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", db.JSON, nullable=True)
    verification_snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        db.JSON,
        nullable=True,
        doc="Transaction view returned to clients; served again inside the idempotency window.",
    )

    # ==========================================================
    # Computed Properties
    # ==========================================================
    @property
    def amount(self) -> Decimal:
        return from_minor(self.amount_minor or 0)

    @property
    def is_paid(self) -> bool:
        return self.status == "PAID"

    @property
    def display_name(self) -> str:
        if self.anonymous or not self.donor_name:
            return "Anonymous"
        return self.donor_name

    # ==========================================================
    # Serialization
    # ==========================================================
    def as_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "email": self.email,
            "donor_name": self.display_name,
            "amount": float(self.amount),
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency,
            "status": self.status,
            "anonymous": bool(self.anonymous),
            "donation_type": self.donation_type,
            "campaign": self.campaign,
            "payment_channel": self.payment_channel,
            "gateway_response": self.gateway_response,
            "metadata": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.reference} {self.currency} {self.amount:,.2f} {self.status}>"


@event.listens_for(Donation, "before_insert")
@event.listens_for(Donation, "before_update")
def _donation_before_save(mapper, connection, target: Donation) -> None:
    target.currency = (target.currency or "GHS")[:3].upper()
    target.email = (target.email or "").strip().lower()[:160]
    if target.status not in DONATION_STATUSES:
        target.status = "PENDING"
