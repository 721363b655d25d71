import pytest
import requests

from savethesquare.core.errors import PersistenceReadFailure, PersistenceWriteFailure
from savethesquare.core.local_state import LocalState
from savethesquare.core.selection import (
    CLICK,
    DonationBatch,
    DonorInfo,
    SelectionStore,
    TextProvenance,
    build_records,
)
from savethesquare.extensions import db
from savethesquare.models import Donation
from savethesquare.services.persistence import (
    CachedDonationSource,
    SqlDonationBackend,
    SupabaseDonationBackend,
    records_from_row,
    rows_for_batch,
)

DONOR = DonorInfo(name="Ada", email="Ada@Example.se", greeting="Hej")


def _batch(keys, text_keys=(), amount=None, session_id="cs_test_1"):
    records = build_records(
        keys,
        DONOR,
        text_keys=text_keys,
        text_provenance=TextProvenance(text="AB"),
        timestamp="2026-10-16T10:00:00+00:00",
    )
    return DonationBatch(
        records=records,
        amount=len(records) * 20 if amount is None else amount,
        session_id=session_id,
    )


# ----------------------------
# Batch -> rows
# ----------------------------
def test_rows_split_by_provenance_and_amounts_add_up():
    rows = rows_for_batch(_batch(["1_1", "2_2", "3_3"], text_keys=["3_3"], amount=60))
    assert len(rows) == 2
    by_mode = {r["mode_data"]["mode"]: r for r in rows}
    assert by_mode["click"]["squares"] == ["1_1", "2_2"]
    assert by_mode["text"]["squares"] == ["3_3"]
    assert by_mode["text"]["mode_data"]["text"] == "AB"
    assert sum(r["amount"] for r in rows) == 60
    assert all(r["donor_email"] == "ada@example.se" for r in rows)


def test_uneven_amount_split_keeps_total():
    rows = rows_for_batch(_batch(["1_1", "2_2", "3_3"], text_keys=["2_2"], amount=61))
    assert sum(r["amount"] for r in rows) == 61


def test_empty_batch_is_rejected():
    with pytest.raises(PersistenceWriteFailure):
        rows_for_batch(DonationBatch(records=[], amount=0))


def test_records_from_row():
    records = records_from_row(
        {"id": 9, "donor_name": "Bo", "donor_email": "b@x.se", "squares": ["1_1", "2_2"], "mode_data": {"mode": "click"}, "timestamp": "t"}
    )
    assert [r.key for r in records] == ["1_1", "2_2"]
    assert records[0].donation_id == "9"
    assert records[0].provenance == CLICK


# ----------------------------
# SQLAlchemy backend
# ----------------------------
def test_sql_backend_writes_one_row_per_provenance(app):
    with app.app_context():
        backend = SqlDonationBackend()
        saved = backend.create_donation(_batch(["1_1", "2_2"], text_keys=["2_2"]))

        assert {r.key for r in saved} == {"1_1", "2_2"}
        assert all(r.donation_id for r in saved)
        rows = db.session.execute(db.select(Donation).order_by(Donation.id)).scalars().all()
        assert len(rows) == 2
        assert sum(r.amount for r in rows) == 40
        assert {r.payment_status for r in rows} == {"paid"}

        listed = backend.list_donations()
        assert sorted(r.key for r in listed) == ["1_1", "2_2"]


def test_sql_backend_earliest_donation_owns_duplicate_key(app, boundary):
    with app.app_context():
        backend = SqlDonationBackend()
        backend.create_donation(_batch(["5_5"]))
        late = DonationBatch(
            records=build_records(["5_5"], DonorInfo(name="Late", email="late@example.se")),
            amount=20,
        )
        backend.create_donation(late)

        store = SelectionStore(boundary, backend, donated=backend.list_donations())
        assert store.donated["5_5"].donor_name == "Ada"


def test_sql_backend_get_donation_hides_email(app):
    with app.app_context():
        backend = SqlDonationBackend()
        saved = backend.create_donation(_batch(["1_1"]))
        found = backend.get_donation(saved[0].donation_id)
        assert found["squares"] == ["1_1"]
        assert "donor_email" not in found
        assert backend.get_donation("999") is None
        assert backend.get_donation("not-a-number") is None


def test_sql_backend_write_failure_leaves_nothing(app):
    with app.app_context():
        backend = SqlDonationBackend()
        # negative amounts fail the check constraint at commit
        with pytest.raises(PersistenceWriteFailure):
            backend.create_donation(_batch(["1_1", "2_2"], text_keys=["2_2"], amount=-20))
        assert backend.list_donations() == []


# ----------------------------
# Cached read-through
# ----------------------------
class _FlakyBackend:
    def __init__(self, records):
        self.records = records
        self.down = False

    def list_donations(self):
        if self.down:
            raise PersistenceReadFailure("backend is down")
        return list(self.records)

    def create_donation(self, batch):  # pragma: no cover
        raise NotImplementedError


def test_cached_source_serves_last_snapshot_when_backend_fails():
    records = _batch(["1_1", "2_2"]).records
    backend = _FlakyBackend(records)
    source = CachedDonationSource(backend, LocalState())

    fresh = source.load()
    assert not fresh.degraded
    assert len(fresh.records) == 2

    backend.down = True
    stale = source.load()
    assert stale.degraded
    assert sorted(r.key for r in stale.records) == ["1_1", "2_2"]


def test_cached_source_remembers_new_writes_without_overriding_owners():
    source = CachedDonationSource(_FlakyBackend([]), LocalState())
    first = _batch(["1_1"]).records
    source.remember(first)
    later = build_records(["1_1", "3_3"], DonorInfo(name="Bo", email="bo@example.se"))
    source.remember(later)

    cached = {r.key: r for r in source.state.load_donated()}
    assert cached["1_1"].donor_name == "Ada"
    assert cached["3_3"].donor_name == "Bo"


# ----------------------------
# Supabase backend
# ----------------------------
class _FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class _FakeSession:
    def __init__(self, get_payload=None, post_payload=None, fail=False, status=200):
        self.headers = {}
        self.calls = []
        self.get_payload = get_payload
        self.post_payload = post_payload
        self.fail = fail
        self.status = status

    def get(self, url, params=None, timeout=None):
        self.calls.append(("GET", url, params))
        if self.fail:
            raise requests.ConnectionError("no route to host")
        return _FakeResponse(self.get_payload, self.status)

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("POST", url, data))
        if self.fail:
            raise requests.ConnectionError("no route to host")
        return _FakeResponse(self.post_payload, self.status)


def _supabase(session):
    return SupabaseDonationBackend("https://proj.supabase.co/", "anon", session=session)


def test_supabase_lists_in_insertion_order():
    session = _FakeSession(
        get_payload=[
            {"id": 1, "donor_name": "Ada", "donor_email": "a@x.se", "squares": ["1_1"], "mode_data": {"mode": "click"}, "timestamp": "t1"},
            {"id": 2, "donor_name": "Bo", "donor_email": "b@x.se", "squares": ["1_1", "2_2"], "mode_data": {"mode": "text", "text": "x"}, "timestamp": "t2"},
        ]
    )
    records = _supabase(session).list_donations()
    assert [r.key for r in records] == ["1_1", "1_1", "2_2"]
    assert session.headers["apikey"] == "anon"
    method, url, params = session.calls[0]
    assert url == "https://proj.supabase.co/rest/v1/donations"
    assert params["order"] == "timestamp.asc,id.asc"


def test_supabase_read_failure():
    with pytest.raises(PersistenceReadFailure):
        _supabase(_FakeSession(fail=True)).list_donations()
    with pytest.raises(PersistenceReadFailure):
        _supabase(_FakeSession(get_payload=[], status=500)).list_donations()


def test_supabase_bulk_insert():
    batch = _batch(["1_1", "2_2"], text_keys=["2_2"])
    rows = rows_for_batch(batch)
    session = _FakeSession(post_payload=[dict(row, id=i + 1) for i, row in enumerate(rows)])
    saved = _supabase(session).create_donation(batch)
    assert {r.key for r in saved} == {"1_1", "2_2"}
    assert {r.donation_id for r in saved} == {"1", "2"}
    assert session.calls[0][0] == "POST"


def test_supabase_write_failure():
    with pytest.raises(PersistenceWriteFailure):
        _supabase(_FakeSession(fail=True)).create_donation(_batch(["1_1"]))


def test_supabase_requires_credentials():
    with pytest.raises(ValueError):
        SupabaseDonationBackend("", "anon")
