# savethesquare/services/payments.py
"""Stripe Checkout for squares, plus fulfilment of paid checkouts.

When Stripe is not configured and ``STRIPE_TEST_MODE`` is on, checkouts are
simulated: no network call is made and the caller fulfils immediately.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import stripe
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from savethesquare.core.errors import CheckoutFailure, PersistenceWriteFailure
from savethesquare.core.selection import (
    DonatedCellRecord,
    DonationBatch,
    DonorInfo,
    TextProvenance,
    build_records,
    provenance_from_mode_data,
)
from savethesquare.extensions import db, donation_recorded, emit_socket
from savethesquare.models.checkout_session import STATUS_COMPLETED, STATUS_EXPIRED, CheckoutSession
from savethesquare.services.notifications import compose_confirmation, send_confirmation
from savethesquare.services.persistence import get_backend, get_donation_source

log = logging.getLogger(__name__)

TEST_MODE_STATUS = "test_mode_simulated"
PRODUCT_NAME = "Save The Square - {property_name}"


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str
    checkout_id: str
    amount: int
    simulated: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "url": self.url,
            "checkoutId": self.checkout_id,
            "amount": self.amount,
            "simulated": self.simulated,
        }


class CheckoutService:
    def __init__(
        self,
        *,
        secret_key: str,
        price_sek: int,
        currency: str,
        site_url: str,
        property_name: str,
        test_mode: bool,
    ) -> None:
        self.secret_key = secret_key or ""
        self.price_sek = int(price_sek)
        self.currency = (currency or "sek").lower()
        self.site_url = (site_url or "").rstrip("/")
        self.property_name = property_name
        self.test_mode = bool(test_mode)

    @classmethod
    def from_app(cls, app=None) -> "CheckoutService":
        cfg = (app or current_app).config
        return cls(
            secret_key=cfg.get("STRIPE_SECRET_KEY") or "",
            price_sek=int(cfg.get("SQUARE_PRICE_SEK") or 20),
            currency=cfg.get("CURRENCY") or "sek",
            site_url=cfg.get("SITE_URL") or "",
            property_name=cfg.get("PROPERTY_NAME") or "Visne Ängar",
            test_mode=bool(cfg.get("STRIPE_TEST_MODE")),
        )

    @property
    def simulated(self) -> bool:
        return self.test_mode and not self.secret_key

    def amount_for(self, count: int) -> int:
        return int(count) * self.price_sek

    def create_checkout(
        self,
        cell_keys: Iterable[str],
        donor: DonorInfo,
        *,
        text_keys: Iterable[str] = (),
        mode_data: Optional[Dict[str, Any]] = None,
    ) -> CheckoutResult:
        keys = sorted(set(cell_keys))
        if not keys:
            raise ValueError("Inga kvadrater valda")
        text_set = sorted(set(text_keys) & set(keys))
        amount = self.amount_for(len(keys))
        checkout_id = uuid.uuid4().hex

        row = CheckoutSession(
            checkout_id=checkout_id,
            donor_name=donor.name.strip(),
            donor_email=donor.email.strip().lower(),
            donor_greeting=(donor.greeting or "").strip() or None,
            squares=keys,
            text_squares=text_set,
            mode_data=mode_data if text_set else None,
            amount=amount,
        )

        if self.simulated:
            session_id = f"cs_test_simulated_{checkout_id}"
            url = f"{self.site_url}/?success=true&session_id={session_id}"
        else:
            session = self._create_stripe_session(keys, donor, checkout_id)
            session_id, url = session["id"], session["url"]

        row.stripe_session_id = session_id
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceWriteFailure("Checkout could not be recorded", cause=e) from e

        log.info("checkout %s opened: %d square(s), %d SEK%s", checkout_id, len(keys), amount, " (simulated)" if self.simulated else "")
        return CheckoutResult(
            session_id=session_id,
            url=url,
            checkout_id=checkout_id,
            amount=amount,
            simulated=self.simulated,
        )

    def _create_stripe_session(self, keys: List[str], donor: DonorInfo, checkout_id: str) -> Dict[str, Any]:
        if not self.secret_key:
            raise CheckoutFailure("Stripe is not configured")
        stripe.api_key = self.secret_key
        count = len(keys)
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {
                                "name": PRODUCT_NAME.format(property_name=self.property_name),
                                "description": f"Donation för {count} kvadratmeter",
                            },
                            # öre
                            "unit_amount": self.price_sek * 100,
                        },
                        "quantity": count,
                    }
                ],
                customer_email=donor.email.strip(),
                client_reference_id=checkout_id,
                metadata={
                    "checkoutId": checkout_id,
                    "donorName": donor.name.strip()[:500],
                    "donorGreeting": (donor.greeting or "").strip()[:500],
                    "squareCount": str(count),
                },
                success_url=f"{self.site_url}/?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.site_url}/?canceled=true",
            )
        except stripe.StripeError as e:
            log.error("stripe checkout create failed: %s", e)
            raise CheckoutFailure(getattr(e, "user_message", None) or str(e)) from e
        return {"id": session.id, "url": session.url}


# ----------------------------
# Fulfilment
# ----------------------------
def find_checkout(*, checkout_id: str = "", stripe_session_id: str = "") -> Optional[CheckoutSession]:
    if checkout_id:
        row = db.session.execute(
            db.select(CheckoutSession).where(CheckoutSession.checkout_id == checkout_id)
        ).scalar_one_or_none()
        if row is not None:
            return row
    if stripe_session_id:
        return db.session.execute(
            db.select(CheckoutSession).where(CheckoutSession.stripe_session_id == stripe_session_id)
        ).scalar_one_or_none()
    return None


@dataclass(frozen=True)
class Fulfilment:
    records: List[DonatedCellRecord]
    email: Dict[str, Any]

    @property
    def keys(self) -> List[str]:
        return [r.key for r in self.records]


def fulfil_checkout(row: CheckoutSession, *, payment_status: str = "paid") -> Optional[Fulfilment]:
    """Turn a paid checkout into donation rows. A completed checkout returns None."""
    if row.status == STATUS_COMPLETED:
        log.info("checkout %s already fulfilled", row.checkout_id)
        return None

    donor = DonorInfo(name=row.donor_name, email=row.donor_email, greeting=row.donor_greeting)
    provenance = provenance_from_mode_data(row.mode_data)
    records = build_records(
        row.squares or [],
        donor,
        text_keys=row.text_squares or [],
        text_provenance=provenance if isinstance(provenance, TextProvenance) else None,
    )
    batch = DonationBatch(
        records=records,
        amount=int(row.amount or 0),
        session_id=row.stripe_session_id,
        payment_status=payment_status,
    )
    saved = get_backend().create_donation(batch) or records

    row.status = STATUS_COMPLETED
    row.completed_at = datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        log.exception("checkout %s: donation saved but status update failed", row.checkout_id)

    email = announce_donation(saved, donor=donor, amount=batch.amount)
    return Fulfilment(records=list(saved), email=email)


def mark_expired(row: CheckoutSession) -> None:
    if row.status != STATUS_COMPLETED:
        row.status = STATUS_EXPIRED
        db.session.commit()


def announce_donation(
    records: List[DonatedCellRecord],
    *,
    donor: DonorInfo,
    amount: int,
    send_email: bool = True,
) -> Dict[str, Any]:
    """After a successful write: refresh the cache, broadcast, confirm by email."""
    app = current_app._get_current_object()
    keys = [r.key for r in records]

    get_donation_source().remember(records)
    emit_socket(
        "new_donation",
        {
            "squares": {r.key: r.as_square_data() for r in records},
            "count": len(keys),
            "amount": amount,
        },
    )
    donation_recorded.send(app, records=records)

    if not send_email:
        return {"sent": False, "testMode": False}
    preview = compose_confirmation(
        donor_name=donor.name,
        donor_email=donor.email,
        greeting=donor.greeting,
        squares=keys,
        amount=amount,
    )
    return send_confirmation(preview)


__all__ = [
    "TEST_MODE_STATUS",
    "CheckoutResult",
    "CheckoutService",
    "Fulfilment",
    "find_checkout",
    "fulfil_checkout",
    "mark_expired",
    "announce_donation",
]
