# savethesquare/core/errors.py
"""Error taxonomy for the selection core.

Recoverable selection events are *notices* (plain values returned inside
results); load-time and persistence/payment problems are exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# ----------------------------
# Notices (recovered at the point of use)
# ----------------------------
@dataclass(frozen=True)
class SelectionNotice:
    message: str

    @property
    def code(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class OutsideProperty(SelectionNotice):
    lat: float = 0.0
    lon: float = 0.0


@dataclass(frozen=True)
class AlreadyDonatedWarning(SelectionNotice):
    key: str = ""
    donor_name: Optional[str] = None


# ----------------------------
# Exceptions
# ----------------------------
class SquareError(Exception):
    """Base class for everything this package raises on purpose."""


class MalformedBoundaryData(SquareError, ValueError):
    """Property boundary input cannot be turned into a usable map."""


class PersistenceWriteFailure(SquareError):
    """A donation batch could not be recorded. Nothing was written."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class PersistenceReadFailure(SquareError):
    """The donated set could not be fetched from the backend."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class CheckoutFailure(SquareError):
    """The payment processor refused or failed to open a checkout session."""


__all__ = [
    "SelectionNotice",
    "OutsideProperty",
    "AlreadyDonatedWarning",
    "SquareError",
    "MalformedBoundaryData",
    "PersistenceWriteFailure",
    "PersistenceReadFailure",
    "CheckoutFailure",
]
