# savethesquare/models/donation.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from savethesquare.core.selection import DonatedCellRecord, provenance_from_mode_data
from savethesquare.extensions import db

from .mixins import TimestampMixin


class Donation(db.Model, TimestampMixin):
    """One paid (or test-mode) purchase of one or more squares.

    A purchase mixing clicked and text-generated squares is stored as one row
    per provenance, written in the same transaction.
    """

    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
        Index("ix_donations_session_status", "session_id", "payment_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    donor_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    donor_email: Mapped[str] = mapped_column(db.String(160), nullable=False, index=True)
    donor_greeting: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    squares: Mapped[List[str]] = mapped_column(
        db.JSON,
        nullable=False,
        default=list,
        doc="Cell keys bought in this donation",
    )
    amount: Mapped[int] = mapped_column(
        db.Integer,
        nullable=False,
        default=0,
        doc="Amount in whole SEK",
    )
    mode_data: Mapped[Dict[str, Any]] = mapped_column(
        db.JSON,
        nullable=False,
        default=dict,
        doc="Provenance of the squares: click, or text with its rendering settings",
    )
    timestamp: Mapped[str] = mapped_column(db.String(40), nullable=False, index=True)

    session_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    payment_status: Mapped[str] = mapped_column(db.String(40), nullable=False, default="paid")

    # ==========================================================
    # Conversion
    # ==========================================================
    def to_records(self) -> List[DonatedCellRecord]:
        provenance = provenance_from_mode_data(self.mode_data)
        return [
            DonatedCellRecord(
                key=str(key),
                donor_name=self.donor_name,
                donor_email=self.donor_email,
                greeting=self.donor_greeting,
                timestamp=self.timestamp,
                provenance=provenance,
                donation_id=str(self.id) if self.id is not None else None,
            )
            for key in (self.squares or [])
        ]

    def as_dict(self, include_email: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "donor_name": self.donor_name,
            "donor_greeting": self.donor_greeting,
            "squares": list(self.squares or []),
            "amount": int(self.amount or 0),
            "mode_data": dict(self.mode_data or {}),
            "timestamp": self.timestamp,
            "payment_status": self.payment_status,
        }
        if include_email:
            data["donor_email"] = self.donor_email
            data["session_id"] = self.session_id
        return data

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.id} {self.donor_name} {len(self.squares or [])} sq {self.amount} SEK>"
