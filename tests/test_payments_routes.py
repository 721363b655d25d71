import json
from types import SimpleNamespace

import pytest
import stripe

from savethesquare.core.errors import PersistenceWriteFailure
from savethesquare.extensions import db
from savethesquare.models import CheckoutSession, Donation, StripeEvent
from savethesquare.models.checkout_session import STATUS_COMPLETED, STATUS_EXPIRED, STATUS_OPEN
from savethesquare.services.persistence import SqlDonationBackend

DONOR = {"donorName": "Ada Lind", "donorEmail": "Ada@Example.se", "donorGreeting": "Hej"}


@pytest.fixture
def live_stripe(app, monkeypatch):
    """Pretend Stripe is configured; Session.create is captured instead of called."""
    app.config["STRIPE_SECRET_KEY"] = "sk_test_dummy"
    calls = []

    def _create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="cs_test_abc", url="https://checkout.stripe.com/c/pay/cs_test_abc")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)
    return calls


def _open_checkout(client, squares=("1_1", "2_2"), **extra):
    resp = client.post("/payments/create-checkout", json={**DONOR, "squares": list(squares), **extra})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()


def _event(event_id, etype, checkout_id, session_id="cs_test_abc", payment_status="paid"):
    return json.dumps(
        {
            "id": event_id,
            "type": etype,
            "livemode": False,
            "data": {
                "object": {
                    "id": session_id,
                    "client_reference_id": checkout_id,
                    "payment_status": payment_status,
                }
            },
        }
    )


def _post_event(client, payload):
    return client.post("/payments/stripe/webhook", data=payload, content_type="application/json")


def _donations(app):
    with app.app_context():
        return db.session.execute(db.select(Donation).order_by(Donation.id)).scalars().all()


# ----------------------------
# Health + config
# ----------------------------
def test_config_reports_simulated_mode(client):
    body = client.get("/payments/config").get_json()
    assert body["simulated"] is True
    assert body["squarePrice"] == 20
    assert body["currency"] == "sek"


def test_health_is_ok_in_simulated_mode(client):
    resp = client.get("/payments/health?strict=1")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert body["components"]["db"]["ok"] is True
    assert body["components"]["stripe"]["warning"] == "simulated"


def test_strict_health_fails_without_webhook_secret(client, app):
    app.config["STRIPE_SECRET_KEY"] = "sk_test_dummy"
    assert client.get("/payments/health").status_code == 200
    resp = client.get("/payments/health?strict=1")
    assert resp.status_code == 503
    assert resp.get_json()["status"] == "degraded"


# ----------------------------
# Checkout
# ----------------------------
def test_simulated_checkout_fulfils_immediately(client, app):
    body = _open_checkout(client, modeData={"mode": "text", "text": "HI"}, textSquares=["2_2"])
    assert body["checkout"]["simulated"] is True
    assert body["sessionId"].startswith("cs_test_simulated_")
    assert sorted(body["squares"]) == ["1_1", "2_2"]
    assert body["email"]["testMode"] is True

    rows = _donations(app)
    assert len(rows) == 2
    assert {r.payment_status for r in rows} == {"test_mode_simulated"}
    assert sum(r.amount for r in rows) == 40
    with app.app_context():
        checkout = db.session.execute(db.select(CheckoutSession)).scalar_one()
        assert checkout.status == STATUS_COMPLETED


def test_checkout_validation(client):
    assert client.post("/payments/create-checkout", json={**DONOR, "squares": []}).status_code == 400
    assert client.post("/payments/create-checkout", json={**DONOR, "squares": ["x_y"]}).status_code == 400
    assert client.post("/payments/create-checkout", json={"squares": ["1_1"]}).status_code == 400


def test_stripe_checkout_session_is_priced_in_ore(client, app, live_stripe):
    body = _open_checkout(client, squares=("3_3", "1_1", "2_2"))
    assert body["url"] == "https://checkout.stripe.com/c/pay/cs_test_abc"
    assert body["checkout"]["simulated"] is False
    assert "squares" not in body

    kwargs = live_stripe[0]
    item = kwargs["line_items"][0]
    assert item["quantity"] == 3
    assert item["price_data"]["unit_amount"] == 2000
    assert item["price_data"]["currency"] == "sek"
    assert kwargs["client_reference_id"] == body["checkout"]["checkoutId"]
    assert kwargs["customer_email"] == "Ada@Example.se"
    assert _donations(app) == []

    with app.app_context():
        row = db.session.execute(db.select(CheckoutSession)).scalar_one()
        assert row.status == STATUS_OPEN
        assert row.stripe_session_id == "cs_test_abc"
        assert row.donor_email == "ada@example.se"


def test_stripe_error_is_502(client, app, monkeypatch):
    app.config["STRIPE_SECRET_KEY"] = "sk_test_dummy"

    def _boom(**kwargs):
        raise stripe.StripeError("card network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", _boom)
    resp = client.post("/payments/create-checkout", json={**DONOR, "squares": ["1_1"]})
    assert resp.status_code == 502
    assert resp.get_json()["ok"] is False


# ----------------------------
# Webhook
# ----------------------------
def test_completed_webhook_records_donation_once(client, app, live_stripe):
    checkout_id = _open_checkout(client)["checkout"]["checkoutId"]
    payload = _event("evt_1", "checkout.session.completed", checkout_id)

    assert _post_event(client, payload).status_code == 200
    assert _post_event(client, payload).status_code == 200

    rows = _donations(app)
    assert len(rows) == 1
    assert rows[0].squares == ["1_1", "2_2"]
    assert rows[0].session_id == "cs_test_abc"
    assert rows[0].payment_status == "paid"

    with app.app_context():
        events = db.session.execute(db.select(StripeEvent)).scalars().all()
        assert [e.event_id for e in events] == ["evt_1"]


def test_second_event_for_fulfilled_checkout_is_noop(client, app, live_stripe):
    checkout_id = _open_checkout(client)["checkout"]["checkoutId"]
    _post_event(client, _event("evt_1", "checkout.session.completed", checkout_id))
    _post_event(client, _event("evt_2", "checkout.session.async_payment_succeeded", checkout_id))
    assert len(_donations(app)) == 1


def test_webhook_matches_on_session_id_without_reference(client, app, live_stripe):
    _open_checkout(client)
    assert _post_event(client, _event("evt_1", "checkout.session.completed", None)).status_code == 200
    assert len(_donations(app)) == 1


def test_unpaid_completion_waits(client, app, live_stripe):
    checkout_id = _open_checkout(client)["checkout"]["checkoutId"]
    payload = _event("evt_1", "checkout.session.completed", checkout_id, payment_status="unpaid")
    assert _post_event(client, payload).status_code == 200
    assert _donations(app) == []


def test_expired_webhook_marks_checkout(client, app, live_stripe):
    checkout_id = _open_checkout(client)["checkout"]["checkoutId"]
    assert _post_event(client, _event("evt_1", "checkout.session.expired", checkout_id)).status_code == 200
    assert _donations(app) == []
    with app.app_context():
        row = db.session.execute(db.select(CheckoutSession)).scalar_one()
        assert row.status == STATUS_EXPIRED


def test_failed_write_is_retried_by_redelivery(client, app, live_stripe, monkeypatch):
    checkout_id = _open_checkout(client)["checkout"]["checkoutId"]
    payload = _event("evt_1", "checkout.session.completed", checkout_id)

    original = SqlDonationBackend.create_donation

    def _fail(self, batch):
        raise PersistenceWriteFailure("database unavailable")

    monkeypatch.setattr(SqlDonationBackend, "create_donation", _fail)
    assert _post_event(client, payload).status_code == 500
    assert _donations(app) == []

    monkeypatch.setattr(SqlDonationBackend, "create_donation", original)
    assert _post_event(client, payload).status_code == 200
    assert len(_donations(app)) == 1


def test_unknown_events_are_acknowledged(client):
    payload = json.dumps({"id": "evt_x", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}})
    assert _post_event(client, payload).status_code == 200


def test_malformed_webhook_is_rejected(client):
    assert _post_event(client, "{not json").status_code == 400
    assert _post_event(client, json.dumps({"type": "checkout.session.completed"})).status_code == 400


def test_signed_webhook_requires_valid_signature(client, app):
    app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
    resp = client.post(
        "/payments/stripe/webhook",
        data=_event("evt_1", "checkout.session.completed", "abc"),
        content_type="application/json",
        headers={"Stripe-Signature": "t=1,v1=bogus"},
    )
    assert resp.status_code == 400
