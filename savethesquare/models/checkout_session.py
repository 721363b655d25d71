# savethesquare/models/checkout_session.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Mapped, mapped_column

from savethesquare.extensions import db

from .mixins import TimestampMixin

STATUS_OPEN = "open"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"


class CheckoutSession(db.Model, TimestampMixin):
    """A purchase waiting on the payment processor.

    Stripe metadata is size-limited, so the squares live here and Stripe only
    carries ``checkout_id`` (as client_reference_id and metadata).
    """

    __tablename__ = "checkout_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    checkout_id: Mapped[str] = mapped_column(db.String(64), unique=True, index=True, nullable=False)
    stripe_session_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        unique=True,
        index=True,
        nullable=True,
        doc="Stripe Checkout Session id (cs_...)",
    )

    donor_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    donor_email: Mapped[str] = mapped_column(db.String(160), nullable=False)
    donor_greeting: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    squares: Mapped[List[str]] = mapped_column(db.JSON, nullable=False, default=list)
    text_squares: Mapped[List[str]] = mapped_column(db.JSON, nullable=False, default=list)
    mode_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(db.JSON, nullable=True)
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default=STATUS_OPEN, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    def __repr__(self) -> str:  # pragma: no cover
        return f"<CheckoutSession {self.checkout_id} {self.status} {len(self.squares or [])} sq>"
