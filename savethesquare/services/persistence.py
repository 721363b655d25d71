# savethesquare/services/persistence.py
"""Donation storage backends.

Both backends speak the same two-call protocol used by ``SelectionStore``:
``list_donations()`` returns one record per donated cell, oldest donation
first, and ``create_donation(batch)`` writes a whole purchase or nothing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from savethesquare.core.errors import PersistenceReadFailure, PersistenceWriteFailure
from savethesquare.core.local_state import LocalState
from savethesquare.core.selection import (
    DonatedCellRecord,
    DonationBatch,
    PersistenceBackend,
    provenance_from_mode_data,
)
from savethesquare.extensions import db
from savethesquare.models import Donation

log = logging.getLogger(__name__)

BACKEND_EXT_KEY = "savethesquare.backend"
SOURCE_EXT_KEY = "savethesquare.donations"


# ----------------------------
# Batch -> rows
# ----------------------------
def _group_by_provenance(records: Sequence[DonatedCellRecord]) -> List[Tuple[Dict[str, Any], List[DonatedCellRecord]]]:
    groups: Dict[str, Tuple[Dict[str, Any], List[DonatedCellRecord]]] = {}
    for record in records:
        mode_data = record.provenance.as_mode_data()
        tag = json.dumps(mode_data, sort_keys=True)
        groups.setdefault(tag, (mode_data, []))[1].append(record)
    return list(groups.values())


def rows_for_batch(batch: DonationBatch) -> List[Dict[str, Any]]:
    """One row per provenance group; amounts add up to ``batch.amount``."""
    if not batch.records:
        raise PersistenceWriteFailure("Cannot write an empty donation")

    groups = _group_by_provenance(batch.records)
    total = len(batch.records)
    rows: List[Dict[str, Any]] = []
    allotted = 0
    for idx, (mode_data, group) in enumerate(groups):
        if idx == len(groups) - 1:
            amount = batch.amount - allotted
        else:
            amount = batch.amount * len(group) // total
        allotted += amount

        first = group[0]
        rows.append(
            {
                "donor_name": first.donor_name,
                "donor_email": first.donor_email,
                "donor_greeting": first.greeting,
                "squares": [r.key for r in group],
                "amount": amount,
                "mode_data": mode_data,
                "timestamp": first.timestamp,
                "session_id": batch.session_id,
                "payment_status": batch.payment_status,
            }
        )
    return rows


def records_from_row(row: Dict[str, Any]) -> List[DonatedCellRecord]:
    provenance = provenance_from_mode_data(row.get("mode_data"))
    donation_id = row.get("id")
    return [
        DonatedCellRecord(
            key=str(key),
            donor_name=str(row.get("donor_name") or ""),
            donor_email=str(row.get("donor_email") or ""),
            greeting=row.get("donor_greeting"),
            timestamp=str(row.get("timestamp") or ""),
            provenance=provenance,
            donation_id=str(donation_id) if donation_id is not None else None,
        )
        for key in (row.get("squares") or [])
    ]


# ----------------------------
# SQLAlchemy backend
# ----------------------------
class SqlDonationBackend:
    """Donations table through Flask-SQLAlchemy. Needs an app context."""

    def list_donations(self) -> List[DonatedCellRecord]:
        try:
            rows = db.session.execute(db.select(Donation).order_by(Donation.id.asc())).scalars().all()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceReadFailure("Could not read donations", cause=e) from e
        return [record for row in rows for record in row.to_records()]

    def get_donation(self, donation_id: Any) -> Optional[Dict[str, Any]]:
        try:
            row = db.session.get(Donation, int(donation_id))
        except (TypeError, ValueError):
            return None
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceReadFailure("Could not read donation", cause=e) from e
        return row.as_dict() if row is not None else None

    def create_donation(self, batch: DonationBatch) -> List[DonatedCellRecord]:
        rows = [Donation(**data) for data in rows_for_batch(batch)]
        try:
            db.session.add_all(rows)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error("donation insert failed: %s", e, exc_info=True)
            raise PersistenceWriteFailure("Donation could not be saved", cause=e) from e

        log.info(
            "Recorded donation(s) %s: %d square(s), %d SEK",
            ",".join(str(r.id) for r in rows),
            len(batch.records),
            batch.amount,
        )
        return [record for row in rows for record in row.to_records()]


# ----------------------------
# Supabase (PostgREST) backend
# ----------------------------
class SupabaseDonationBackend:
    """Donations table in Supabase, over its PostgREST HTTP API.

    A bulk insert is a single statement on the server, so a batch lands
    whole or not at all.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        table: str = "donations",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url or not anon_key:
            raise ValueError("Supabase URL and anon key are required")
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update(
            {
                "apikey": anon_key,
                "Authorization": f"Bearer {anon_key}",
                "Content-Type": "application/json",
            }
        )

    def list_donations(self) -> List[DonatedCellRecord]:
        try:
            resp = self.http.get(
                self.endpoint,
                params={"select": "*", "order": "timestamp.asc,id.asc"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            rows = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise PersistenceReadFailure("Could not read donations from Supabase", cause=e) from e
        return [record for row in rows or [] for record in records_from_row(row)]

    def get_donation(self, donation_id: Any) -> Optional[Dict[str, Any]]:
        try:
            resp = self.http.get(
                self.endpoint,
                params={"select": "*", "id": f"eq.{donation_id}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            rows = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise PersistenceReadFailure("Could not read donation from Supabase", cause=e) from e
        if not rows:
            return None
        row = dict(rows[0])
        row.pop("donor_email", None)
        return row

    def create_donation(self, batch: DonationBatch) -> List[DonatedCellRecord]:
        payload = rows_for_batch(batch)
        try:
            resp = self.http.post(
                self.endpoint,
                data=json.dumps(payload),
                headers={"Prefer": "return=representation"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            saved = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.error("supabase insert failed: %s", e)
            raise PersistenceWriteFailure("Donation could not be saved", cause=e) from e

        if not isinstance(saved, list) or not saved:
            saved = payload
        return [record for row in saved for record in records_from_row(row)]


# ----------------------------
# Cached read-through
# ----------------------------
@dataclass(frozen=True)
class DonatedSnapshot:
    records: List[DonatedCellRecord]
    degraded: bool = False


class CachedDonationSource:
    """Reads the backend; on failure serves the last good snapshot, flagged degraded."""

    def __init__(self, backend: PersistenceBackend, state: Optional[LocalState] = None) -> None:
        self.backend = backend
        self.state = state or LocalState()

    def load(self) -> DonatedSnapshot:
        try:
            records = self.backend.list_donations()
        except PersistenceReadFailure as e:
            log.warning("donations unavailable (%s); serving cached snapshot", e)
            return DonatedSnapshot(records=self.state.load_donated(), degraded=True)
        self.state.save_donated(_earliest_first(records))
        return DonatedSnapshot(records=records, degraded=False)

    def remember(self, new_records: Sequence[DonatedCellRecord]) -> None:
        """Merge freshly written records into the cached snapshot."""
        if not new_records:
            return
        merged = self.state.load_donated() + list(new_records)
        self.state.save_donated(_earliest_first(merged))


def _earliest_first(records: Sequence[DonatedCellRecord]) -> List[DonatedCellRecord]:
    seen: Dict[str, DonatedCellRecord] = {}
    for record in records:
        seen.setdefault(record.key, record)
    return list(seen.values())


# ----------------------------
# App wiring
# ----------------------------
def build_backend(app) -> PersistenceBackend:
    kind = app.config.get("PERSISTENCE_BACKEND", "sql")
    if kind == "supabase":
        return SupabaseDonationBackend(
            app.config["SUPABASE_URL"],
            app.config["SUPABASE_ANON_KEY"],
            table=app.config.get("SUPABASE_TABLE") or "donations",
            timeout=float(app.config.get("SUPABASE_TIMEOUT_S") or 10),
        )
    return SqlDonationBackend()


def init_persistence(app) -> None:
    backend = build_backend(app)
    state = LocalState(app.config.get("CLIENT_STATE_PATH"))
    app.extensions[BACKEND_EXT_KEY] = backend
    app.extensions[SOURCE_EXT_KEY] = CachedDonationSource(backend, state)
    app.logger.info("Persistence backend: %s", type(backend).__name__)


def get_backend() -> PersistenceBackend:
    return current_app.extensions[BACKEND_EXT_KEY]


def get_donation_source() -> CachedDonationSource:
    return current_app.extensions[SOURCE_EXT_KEY]


__all__ = [
    "SqlDonationBackend",
    "SupabaseDonationBackend",
    "CachedDonationSource",
    "DonatedSnapshot",
    "rows_for_batch",
    "records_from_row",
    "build_backend",
    "init_persistence",
    "get_backend",
    "get_donation_source",
]
