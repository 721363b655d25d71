# savethesquare/core/selection.py
"""Selection store: one per visitor session.

Holds the unpaid selection, the donated cache and the cells the text
rasterizer wanted but could not take. All mutation is synchronous; observers
subscribe to ``store.changed`` (a blinker signal) and re-read ``snapshot()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Union,
)

from blinker import Signal

from .errors import AlreadyDonatedWarning, OutsideProperty, PersistenceWriteFailure, SelectionNotice
from .geometry import Coordinate, PropertyBoundary, is_purchasable_cell, to_cell_key

log = logging.getLogger(__name__)

DEFAULT_PRICE_PER_CELL = 20  # SEK

CELL_DONATED = "donated"
CELL_TEXT = "text"
CELL_SELECTED = "selected"
CELL_OUTSIDE = "outside"
CELL_AVAILABLE = "available"

_STATE_LABELS = {
    CELL_TEXT: "Vald för donation (text)",
    CELL_SELECTED: "Vald för donation",
    CELL_OUTSIDE: "Utanför fastigheten",
    CELL_AVAILABLE: "Tillgänglig",
}


# ----------------------------
# Provenance (tagged variant)
# ----------------------------
@dataclass(frozen=True)
class ClickProvenance:
    mode: str = field(default="click", init=False)

    def as_mode_data(self) -> Dict[str, Any]:
        return {"mode": "click"}


@dataclass(frozen=True)
class TextProvenance:
    text: str
    color: str = "#ff6b35"
    font_size: int = 40
    pixel_density: int = 2
    radius: float = 3.0
    zoom: Optional[float] = None
    mode: str = field(default="text", init=False)

    def as_mode_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mode": "text",
            "text": self.text,
            "color": self.color,
            "fontSize": self.font_size,
            "pixelDensity": self.pixel_density,
            "pixelRadius": self.radius,
        }
        if self.zoom is not None:
            data["zoom"] = self.zoom
        return data


Provenance = Union[ClickProvenance, TextProvenance]
CLICK = ClickProvenance()


def provenance_from_mode_data(raw: Optional[Mapping[str, Any]]) -> Provenance:
    data = dict(raw or {})
    if str(data.get("mode") or "click") != "text":
        return CLICK
    zoom = data.get("zoom")
    return TextProvenance(
        text=str(data.get("text") or ""),
        color=str(data.get("color") or "#ff6b35"),
        font_size=int(data.get("fontSize") or 40),
        pixel_density=int(data.get("pixelDensity") or 2),
        radius=float(data.get("pixelRadius") or 3.0),
        zoom=float(zoom) if zoom is not None else None,
    )


# ----------------------------
# Records
# ----------------------------
@dataclass(frozen=True)
class DonorInfo:
    name: str
    email: str
    greeting: Optional[str] = None

    def __post_init__(self) -> None:
        if not (self.name or "").strip():
            raise ValueError("Donor name required")
        if not (self.email or "").strip():
            raise ValueError("Donor email required")


@dataclass(frozen=True)
class DonatedCellRecord:
    key: str
    donor_name: str
    donor_email: str
    timestamp: str
    provenance: Provenance = CLICK
    greeting: Optional[str] = None
    donation_id: Optional[str] = None

    def as_square_data(self) -> Dict[str, Any]:
        """Shape used by the map client for one donated square."""
        return {
            "donor": self.donor_name,
            "greeting": self.greeting,
            "timestamp": self.timestamp,
            "donationId": self.donation_id,
            **self.provenance.as_mode_data(),
        }


@dataclass(frozen=True)
class DonationBatch:
    """One purchase handed to the persistence backend. Written all-or-nothing."""

    records: Sequence[DonatedCellRecord]
    amount: int
    session_id: Optional[str] = None
    payment_status: str = "paid"

    @property
    def keys(self) -> List[str]:
        return [r.key for r in self.records]


class PersistenceBackend(Protocol):
    def list_donations(self) -> List[DonatedCellRecord]: ...

    def create_donation(self, batch: DonationBatch) -> List[DonatedCellRecord]: ...


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def build_records(
    keys: Iterable[str],
    donor: DonorInfo,
    *,
    text_keys: Iterable[str] = (),
    text_provenance: Optional[TextProvenance] = None,
    timestamp: Optional[str] = None,
) -> List[DonatedCellRecord]:
    """Records for a purchase; keys in ``text_keys`` carry the text provenance."""
    ts = timestamp or utc_now_iso()
    text_set = set(text_keys)
    text_prov: Provenance = text_provenance or TextProvenance(text="")
    return [
        DonatedCellRecord(
            key=k,
            donor_name=donor.name.strip(),
            donor_email=donor.email.strip().lower(),
            greeting=(donor.greeting or "").strip() or None,
            timestamp=ts,
            provenance=text_prov if k in text_set else CLICK,
        )
        for k in sorted(set(keys))
    ]


def describe_provenance(provenance: Provenance) -> str:
    if isinstance(provenance, TextProvenance):
        return f'del av texten "{provenance.text}"' if provenance.text else "del av en text"
    if isinstance(provenance, ClickProvenance):
        return "vald på kartan"
    raise TypeError(f"Unknown provenance: {provenance!r}")


# ----------------------------
# Results + snapshots
# ----------------------------
@dataclass(frozen=True)
class ToggleResult:
    key: Optional[str]
    selected: bool
    notice: Optional[SelectionNotice] = None

    @property
    def accepted(self) -> bool:
        return not isinstance(self.notice, OutsideProperty)


@dataclass(frozen=True)
class TextSelectionResult:
    added: FrozenSet[str]
    conflicts: FrozenSet[str]
    retracted: FrozenSet[str]


@dataclass(frozen=True)
class SelectionSnapshot:
    selected: FrozenSet[str]
    text_generated: FrozenSet[str]
    conflicts: FrozenSet[str]
    donated: Mapping[str, DonatedCellRecord]
    text_provenance: Optional[TextProvenance]

    @property
    def click_selected(self) -> FrozenSet[str]:
        return self.selected - self.text_generated


# ----------------------------
# Store
# ----------------------------
class SelectionStore:
    def __init__(
        self,
        boundary: PropertyBoundary,
        backend: Optional[PersistenceBackend] = None,
        *,
        price_per_cell: int = DEFAULT_PRICE_PER_CELL,
        donated: Optional[Iterable[DonatedCellRecord]] = None,
    ) -> None:
        self.boundary = boundary
        self.backend = backend
        self.price_per_cell = int(price_per_cell)
        self.changed = Signal("selection-changed")

        self._donated: Dict[str, DonatedCellRecord] = {}
        self._selected: Set[str] = set()
        self._text_generated: Set[str] = set()
        self._conflicts: Set[str] = set()
        self._text_provenance: Optional[TextProvenance] = None

        if donated is not None:
            self._donated = _first_wins(donated)

    # ---- read side
    @property
    def selected(self) -> FrozenSet[str]:
        return frozenset(self._selected)

    @property
    def text_generated(self) -> FrozenSet[str]:
        return frozenset(self._text_generated)

    @property
    def conflicts(self) -> FrozenSet[str]:
        return frozenset(self._conflicts)

    @property
    def donated(self) -> Mapping[str, DonatedCellRecord]:
        return MappingProxyType(self._donated)

    def snapshot(self) -> SelectionSnapshot:
        return SelectionSnapshot(
            selected=frozenset(self._selected),
            text_generated=frozenset(self._text_generated),
            conflicts=frozenset(self._conflicts),
            donated=MappingProxyType(dict(self._donated)),
            text_provenance=self._text_provenance,
        )

    def total_amount(self) -> int:
        return len(self._selected) * self.price_per_cell

    def cell_state(self, key: str) -> str:
        """One of: donated, text, selected, outside, available."""
        if key in self._donated:
            return CELL_DONATED
        if key in self._text_generated:
            return CELL_TEXT
        if key in self._selected:
            return CELL_SELECTED
        if not is_purchasable_cell(self.boundary, key):
            return CELL_OUTSIDE
        return CELL_AVAILABLE

    def describe(self, key: str) -> str:
        """Status line for a hovered/popped-up cell."""
        state = self.cell_state(key)
        if state == CELL_DONATED:
            record = self._donated[key]
            return f"Donerad av {record.donor_name} ({describe_provenance(record.provenance)})"
        return _STATE_LABELS[state]

    # ---- mutations
    def toggle_click(self, coordinate: Coordinate) -> ToggleResult:
        if not self.boundary.is_inside(coordinate):
            return ToggleResult(
                key=None,
                selected=False,
                notice=OutsideProperty(
                    "Denna position ligger utanför fastigheten",
                    lat=coordinate.lat,
                    lon=coordinate.lon,
                ),
            )

        key = to_cell_key(coordinate)
        if key in self._selected:
            self._selected.discard(key)
            self._text_generated.discard(key)
            self._notify("toggle")
            return ToggleResult(key=key, selected=False)

        self._selected.add(key)
        notice: Optional[SelectionNotice] = None
        record = self._donated.get(key)
        if record is not None:
            notice = AlreadyDonatedWarning(
                f"Denna kvadrat är redan donerad av {record.donor_name}",
                key=key,
                donor_name=record.donor_name,
            )
        self._notify("toggle")
        return ToggleResult(key=key, selected=True, notice=notice)

    def apply_text_selection(
        self,
        candidate_keys: Iterable[str],
        provenance: Optional[TextProvenance] = None,
    ) -> TextSelectionResult:
        """Replace the previous text output with ``candidate_keys``."""
        candidates = set(candidate_keys)
        retracted = frozenset(self._text_generated)

        self._selected -= self._text_generated
        click_only = set(self._selected)

        conflicts = {k for k in candidates if k in self._donated}
        new_text = candidates - conflicts - click_only

        self._selected |= new_text
        self._text_generated = new_text
        self._conflicts = conflicts
        self._text_provenance = provenance if candidates else None

        if conflicts:
            log.debug("text selection: %d cell(s) already donated", len(conflicts))
        self._notify("text")
        return TextSelectionResult(
            added=frozenset(new_text),
            conflicts=frozenset(conflicts),
            retracted=retracted,
        )

    def clear(self) -> None:
        self._selected.clear()
        self._text_generated.clear()
        self._conflicts.clear()
        self._text_provenance = None
        self._notify("clear")

    def replace_donated(self, records: Iterable[DonatedCellRecord]) -> None:
        self._donated = _first_wins(records)
        self._notify("donated")

    def confirm_purchase(
        self,
        donor: DonorInfo,
        *,
        session_id: Optional[str] = None,
        payment_status: str = "paid",
    ) -> List[DonatedCellRecord]:
        """Persist the current selection; local state only changes on success."""
        if not self._selected:
            return []
        if self.backend is None:
            raise PersistenceWriteFailure("No persistence backend configured")

        records = build_records(
            self._selected,
            donor,
            text_keys=self._text_generated,
            text_provenance=self._text_provenance,
        )
        batch = DonationBatch(
            records=records,
            amount=len(records) * self.price_per_cell,
            session_id=session_id,
            payment_status=payment_status,
        )
        try:
            saved = self.backend.create_donation(batch)
        except PersistenceWriteFailure:
            raise
        except Exception as e:
            log.error("donation write failed: %s", e, exc_info=True)
            raise PersistenceWriteFailure("Donation could not be saved", cause=e) from e

        persisted = saved or records
        for record in persisted:
            self._donated.setdefault(record.key, record)
        self._selected.clear()
        self._text_generated.clear()
        self._conflicts.clear()
        self._text_provenance = None
        self._notify("purchase")
        return list(persisted)

    def _notify(self, reason: str) -> None:
        self.changed.send(self, reason=reason)


def _first_wins(records: Iterable[DonatedCellRecord]) -> Dict[str, DonatedCellRecord]:
    out: Dict[str, DonatedCellRecord] = {}
    for record in records:
        out.setdefault(record.key, record)
    return out


__all__ = [
    "DEFAULT_PRICE_PER_CELL",
    "CELL_DONATED",
    "CELL_TEXT",
    "CELL_SELECTED",
    "CELL_OUTSIDE",
    "CELL_AVAILABLE",
    "ClickProvenance",
    "TextProvenance",
    "Provenance",
    "CLICK",
    "provenance_from_mode_data",
    "DonorInfo",
    "DonatedCellRecord",
    "DonationBatch",
    "PersistenceBackend",
    "build_records",
    "describe_provenance",
    "utc_now_iso",
    "ToggleResult",
    "TextSelectionResult",
    "SelectionSnapshot",
    "SelectionStore",
]
