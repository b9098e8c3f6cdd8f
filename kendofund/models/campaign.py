from decimal import Decimal
from typing import Any, Dict

import sqlalchemy as sa
from sqlalchemy import Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column, object_session

from kendofund.extensions import db
from kendofund.money import from_minor

from .mixins import TimestampMixin


class Campaign(db.Model, TimestampMixin):
    __tablename__ = "campaigns"
    __table_args__ = (
        sa.CheckConstraint("goal_minor >= 0", name="ck_campaigns_goal_nonneg"),
        sa.CheckConstraint("total_minor >= 0", name="ck_campaigns_total_nonneg"),
    )

    # ── Keys ────────────────────────────────────────────────────
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GHS")

    # ── Money (minor units) ─────────────────────────────────────
    goal_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_received_minor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Received outside the gateway (seeded from config)"
    )
    adjustments_minor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Sum of manual additive deltas"
    )
    total_minor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Cached total received"
    )

    # ── Computed helpers ────────────────────────────────────────
    @property
    def goal(self) -> Decimal:
        return from_minor(self.goal_minor or 0)

    @property
    def total(self) -> Decimal:
        return from_minor(self.total_minor or 0)

    @property
    def outstanding(self) -> Decimal:
        return from_minor(max(0, int(self.goal_minor or 0) - int(self.total_minor or 0)))

    @property
    def percent_raised(self) -> float:
        g = int(self.goal_minor or 0)
        return 0.0 if g <= 0 else round((int(self.total_minor or 0) / g) * 100.0, 2)

    # ── Recompute cached total from the donation ledger ─────────
    def ledger_total_minor(self) -> int:
        """base + adjustments + every campaign-credited paid donation."""
        from .donation import Donation  # local import to avoid circulars

        sess = object_session(self) or db.session
        stmt = sa.select(sa.func.coalesce(sa.func.sum(Donation.amount_minor), 0)).where(
            Donation.status == "PAID",
            Donation.campaign_counted.is_(True),
        )
        credited = int(sess.execute(stmt).scalar_one() or 0)
        return int(self.base_received_minor or 0) + int(self.adjustments_minor or 0) + credited

    def __repr__(self) -> str:
        return f"<Campaign {self.slug} total={self.total:,.2f} goal={self.goal:,.2f} {self.currency}>"


@event.listens_for(Campaign, "before_insert")
def _campaign_before_insert(mapper, connection, target) -> None:
    target.goal_minor = max(0, int(target.goal_minor or 0))
    target.total_minor = max(0, int(target.total_minor or 0))
