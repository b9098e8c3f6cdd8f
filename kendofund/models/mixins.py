# kendofund/models/mixins.py
"""Column mixins and the UTC clock every model shares."""

from datetime import datetime, timezone

from kendofund.extensions import db


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    """created_at on insert; updated_at refreshed by every ORM update."""

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
