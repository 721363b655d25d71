# savethesquare/models/__init__.py
from savethesquare.models.checkout_session import CheckoutSession
from savethesquare.models.donation import Donation
from savethesquare.models.mixins import TimestampMixin
from savethesquare.models.stripe_event import StripeEvent

__all__ = ["CheckoutSession", "Donation", "StripeEvent", "TimestampMixin"]
