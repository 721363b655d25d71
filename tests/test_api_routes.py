import pytest

from savethesquare.core.errors import PersistenceReadFailure, PersistenceWriteFailure
from savethesquare.extensions import db
from savethesquare.models import Donation
from savethesquare.services.persistence import SqlDonationBackend
from savethesquare.services.sessions import REGISTRY_EXT_KEY

DONOR = {"donorName": "Ada Lind", "donorEmail": "ada@example.se", "donorGreeting": "För ängarna!"}
VIEWPORT = {"north": 5.002, "south": 4.998, "east": 5.002, "west": 4.998, "width": 400, "height": 400, "zoom": 19}


def _new_session(client):
    resp = client.post("/api/selection")
    assert resp.status_code == 201
    return resp.get_json()["sessionId"]


# ----------------------------
# Read endpoints
# ----------------------------
def test_property_payload(client):
    body = client.get("/api/property").get_json()
    assert body["ok"] is True
    assert body["name"] == "Toy Square"
    assert body["bounds"] == {"minLat": 0.0, "maxLat": 10.0, "minLon": 0.0, "maxLon": 10.0}
    assert body["center"] == {"lat": 5.0, "lon": 5.0}
    assert body["squarePrice"] == 20
    assert body["geojson"]["type"] == "FeatureCollection"
    # the toy square is far too large to enumerate at cell scale
    assert body["purchasableSquares"] is None


def test_property_reports_purchasable_squares(tiny_client):
    body = tiny_client.get("/api/property").get_json()
    assert body["name"] == "Tiny Square"
    assert body["purchasableSquares"] == 91
    assert body["purchasableValue"] == 91 * 20


def test_donations_empty(client):
    body = client.get("/api/donations").get_json()
    assert body["squares"] == {}
    assert body["totalSquares"] == 0
    assert body["degraded"] is False


def test_donations_fall_back_to_cache_when_backend_is_down(client, monkeypatch):
    client.post("/api/donations", json={**DONOR, "squares": ["100_100"]})

    def _down(self):
        raise PersistenceReadFailure("database unavailable")

    monkeypatch.setattr(SqlDonationBackend, "list_donations", _down)
    body = client.get("/api/donations").get_json()
    assert body["degraded"] is True
    assert "100_100" in body["squares"]


def test_unknown_donation_is_404(client):
    resp = client.get("/api/donations/12345")
    assert resp.status_code == 404
    assert resp.get_json()["ok"] is False


# ----------------------------
# Direct save (test mode)
# ----------------------------
def test_save_donation_in_test_mode(client, app):
    resp = client.post(
        "/api/donations",
        json={**DONOR, "squares": ["500000_500000", "500001_500000"], "modeData": {"mode": "text", "text": "HI"}},
    )
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["squares"] == ["500000_500000", "500001_500000"]
    assert body["amount"] == 40

    donation = client.get(f"/api/donations/{body['donationIds'][0]}").get_json()["donation"]
    assert donation["payment_status"] == "test_mode_simulated"
    assert donation["mode_data"]["text"] == "HI"

    squares = client.get("/api/donations").get_json()["squares"]
    assert squares["500000_500000"]["donor"] == "Ada Lind"
    assert squares["500000_500000"]["mode"] == "text"


def test_save_donation_rejected_outside_test_mode(client, app):
    app.config["STRIPE_TEST_MODE"] = False
    resp = client.post("/api/donations", json={**DONOR, "squares": ["1_1"]})
    assert resp.status_code == 403


def test_save_donation_validates_input(client):
    assert client.post("/api/donations", json={"squares": ["1_1"]}).status_code == 400
    assert client.post("/api/donations", json={**DONOR, "squares": ["nope"]}).status_code == 400
    assert client.post("/api/donations", json={**DONOR, "squares": []}).status_code == 400


def test_confirmation_email_preview(client):
    resp = client.post("/api/send-confirmation-email", json={**DONOR, "squares": ["1_1", "2_2"], "amount": 40})
    body = resp.get_json()
    assert body["sent"] is False
    assert body["testMode"] is True
    preview = body["preview"]
    assert preview["to"] == "ada@example.se"
    assert preview["highlightUrl"] == "http://localhost:5000/?highlight=1_1,2_2"
    assert "40 SEK" in preview["text"]
    assert "För ängarna!" in preview["text"]


def test_confirmation_email_requires_squares(client):
    assert client.post("/api/send-confirmation-email", json=DONOR).status_code == 400


# ----------------------------
# Selection sessions
# ----------------------------
def test_click_toggle_round_trip(client):
    sid = _new_session(client)
    body = client.post(f"/api/selection/{sid}/toggle", json={"lat": 5, "lon": 5}).get_json()
    assert body["key"] == "500000_500000"
    assert body["accepted"] is True
    assert body["selection"]["selected"] == ["500000_500000"]
    assert body["selection"]["totalAmount"] == 20
    assert body["describe"] == "Vald för donation"

    body = client.post(f"/api/selection/{sid}/toggle", json={"lat": 5, "lon": 5}).get_json()
    assert body["selectedNow"] is False
    assert body["selection"]["selected"] == []


def test_click_outside_reports_notice(client):
    sid = _new_session(client)
    body = client.post(f"/api/selection/{sid}/toggle", json={"lat": 15, "lon": 15}).get_json()
    assert body["accepted"] is False
    assert body["notice"]["code"] == "OutsideProperty"
    assert body["selection"]["selected"] == []


def test_toggle_requires_coordinates(client):
    sid = _new_session(client)
    assert client.post(f"/api/selection/{sid}/toggle", json={"lat": "x"}).status_code == 400


def test_unknown_session_is_404(client):
    resp = client.get("/api/selection/does-not-exist")
    assert resp.status_code == 404


def test_text_selection_and_retraction(client):
    sid = _new_session(client)
    body = client.post(
        f"/api/selection/{sid}/text",
        json={"text": "A", "viewport": VIEWPORT, "fontSize": 40, "flush": True},
    ).get_json()
    added = body["added"]
    assert added
    assert body["selection"]["textGenerated"] == added
    assert body["selection"]["textProvenance"]["text"] == "A"
    assert body["textConfig"]["fontSize"] == 40

    body = client.post(f"/api/selection/{sid}/text", json={"text": "", "flush": True}).get_json()
    assert body["selection"]["selected"] == []


def test_text_selection_is_debounced_until_flushed(client):
    sid = _new_session(client)
    body = client.post(f"/api/selection/{sid}/text", json={"text": "A", "viewport": VIEWPORT}).get_json()
    assert body["textPending"] is True
    assert body["selection"]["selected"] == []


def test_text_selection_rejects_bad_viewport(client):
    sid = _new_session(client)
    resp = client.post(f"/api/selection/{sid}/text", json={"text": "A", "viewport": {"north": 1}})
    assert resp.status_code == 400


def test_text_longer_than_limit_is_rejected(client, app):
    app.config["TEXT_MAX_CHARS"] = 10
    sid = _new_session(client)
    resp = client.post(f"/api/selection/{sid}/text", json={"text": "W" * 11, "viewport": VIEWPORT, "flush": True})
    assert resp.status_code == 400
    assert resp.get_json()["maxChars"] == 10

    resp = client.post(f"/api/selection/{sid}/text", json={"text": "W" * 10, "viewport": VIEWPORT, "flush": True})
    assert resp.status_code == 200


def test_text_too_large_to_draw_is_rejected(client):
    sid = _new_session(client)
    resp = client.post(
        f"/api/selection/{sid}/text",
        json={"text": "W" * 60, "fontSize": 400, "pixelDensity": 10, "viewport": VIEWPORT, "flush": True},
    )
    assert resp.status_code == 400

    body = client.get(f"/api/selection/{sid}").get_json()
    assert body["textPending"] is False
    assert body["selection"]["selected"] == []


@pytest.mark.parametrize(
    "raw",
    [
        '{"text": "A", "fontSize": Infinity}',
        '{"text": "A", "pixelDensity": -Infinity}',
        '{"text": "A", "pixelRadius": NaN}',
        '{"text": "A", "viewport": {"north": 1, "south": 0, "east": 1, "west": 0, "width": Infinity, "height": 10}}',
    ],
)
def test_non_finite_numbers_are_rejected(client, raw):
    sid = _new_session(client)
    resp = client.post(f"/api/selection/{sid}/text", data=raw, content_type="application/json")
    assert resp.status_code == 400


def test_toggle_rejects_non_finite_coordinates(client):
    sid = _new_session(client)
    resp = client.post(f"/api/selection/{sid}/toggle", data='{"lat": Infinity, "lon": 5}', content_type="application/json")
    assert resp.status_code == 400


def test_text_settings_stay_with_their_session(client, app):
    first = _new_session(client)
    body = client.post(f"/api/selection/{first}/text", json={"text": "A", "fontSize": 300, "color": "#000000"}).get_json()
    assert body["textConfig"]["fontSize"] == 300

    second = client.post("/api/selection").get_json()
    assert second["textConfig"]["fontSize"] == 40
    assert second["textConfig"]["color"] == "#ff6b35"

    registry = app.extensions[REGISTRY_EXT_KEY]
    assert registry.saved_text_config(first)["color"] == "#000000"
    assert registry.saved_text_config(second["sessionId"]) is None


def test_new_session_starts_from_the_visitors_saved_settings(client):
    body = client.post("/api/selection", json={"textConfig": {"fontSize": 80, "pixelDensity": 3}}).get_json()
    assert body["textConfig"]["fontSize"] == 80
    assert body["textConfig"]["pixelDensity"] == 3

    assert client.post("/api/selection", json={"textConfig": "big"}).status_code == 400
    resp = client.post("/api/selection", data='{"textConfig": {"fontSize": Infinity}}', content_type="application/json")
    assert resp.status_code == 400


def test_cell_status_lookup(client):
    sid = _new_session(client)
    outside = client.get(f"/api/selection/{sid}/cell?lat=15&lon=15").get_json()
    assert outside["state"] == "outside"
    assert outside["describe"] == "Utanför fastigheten"

    hole = client.get(f"/api/selection/{sid}/cell?lat=7&lon=7").get_json()
    assert hole["describe"] == "Utanför fastigheten"

    body = client.get(f"/api/selection/{sid}/cell?lat=5&lon=5").get_json()
    assert body["key"] == "500000_500000"
    assert body["describe"] == "Tillgänglig"

    client.post(f"/api/selection/{sid}/toggle", json={"lat": 5, "lon": 5})
    body = client.get(f"/api/selection/{sid}/cell?key=500000_500000").get_json()
    assert body["state"] == "selected"
    assert body["describe"] == "Vald för donation"

    assert client.get(f"/api/selection/{sid}/cell?key=garbage").status_code == 400
    assert client.get(f"/api/selection/{sid}/cell?lat=5").status_code == 400
    assert client.get("/api/selection/nope/cell?lat=5&lon=5").status_code == 404


def test_clear_selection(client):
    sid = _new_session(client)
    client.post(f"/api/selection/{sid}/toggle", json={"lat": 1, "lon": 1})
    body = client.post(f"/api/selection/{sid}/clear").get_json()
    assert body["selection"]["selected"] == []


def test_simulated_checkout_records_donation(client, app):
    sid = _new_session(client)
    client.post(f"/api/selection/{sid}/toggle", json={"lat": 5, "lon": 5})
    client.post(f"/api/selection/{sid}/toggle", json={"lat": 1, "lon": 1})

    body = client.post(f"/api/selection/{sid}/checkout", json=DONOR).get_json()
    assert body["simulated"] is True
    assert sorted(body["squares"]) == ["100000_100000", "500000_500000"]
    assert body["amount"] == 40
    assert body["email"]["testMode"] is True
    assert body["selection"]["selected"] == []

    with app.app_context():
        rows = db.session.execute(db.select(Donation)).scalars().all()
        assert len(rows) == 1
        assert rows[0].payment_status == "test_mode_simulated"
        assert rows[0].session_id.startswith("cs_test_simulated_")

    # a new visitor sees the donated square and gets a warning when picking it
    other = _new_session(client)
    body = client.post(f"/api/selection/{other}/toggle", json={"lat": 5, "lon": 5}).get_json()
    assert body["notice"]["code"] == "AlreadyDonatedWarning"
    assert body["selection"]["selected"] == ["500000_500000"]


def test_failed_checkout_keeps_selection(client, monkeypatch):
    sid = _new_session(client)
    client.post(f"/api/selection/{sid}/toggle", json={"lat": 5, "lon": 5})

    def _fail(self, batch):
        raise PersistenceWriteFailure("database unavailable")

    monkeypatch.setattr(SqlDonationBackend, "create_donation", _fail)
    resp = client.post(f"/api/selection/{sid}/checkout", json=DONOR)
    assert resp.status_code == 503
    body = resp.get_json()
    assert body["retry"] is True
    assert body["selection"]["selected"] == ["500000_500000"]

    after = client.get(f"/api/selection/{sid}").get_json()
    assert after["selection"]["selected"] == ["500000_500000"]


def test_checkout_validation(client):
    sid = _new_session(client)
    assert client.post(f"/api/selection/{sid}/checkout", json={"donorName": "Ada"}).status_code == 400
    resp = client.post(f"/api/selection/{sid}/checkout", json=DONOR)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Inga kvadrater valda"


# ----------------------------
# App-level routes
# ----------------------------
def test_index_page_embeds_highlight(client):
    resp = client.get("/?highlight=500000_500000,garbage")
    assert resp.status_code == 200
    html = resp.get_data(as_text=True)
    assert "500000_500000" in html
    assert "garbage" not in html
    assert "Toy Square" in html


def test_healthz_and_request_id(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "rid-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "rid-123"
    assert resp.get_json()["property"] == "Toy Square"


def test_version(client):
    body = client.get("/version").get_json()
    assert body["version"]
    assert body["env"] == "testing"


def test_unknown_api_route_is_json_404(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.get_json()["ok"] is False
