# savethesquare/blueprints/api.py
"""
Save The Square JSON API

Mount: /api

  GET  /api/property
  GET  /api/donations
  GET  /api/donations/<id>
  POST /api/donations                    (Stripe test mode only)
  POST /api/send-confirmation-email

  POST /api/selection
  GET  /api/selection/<sid>
  GET  /api/selection/<sid>/cell          (?lat=&lon= or ?key=)
  POST /api/selection/<sid>/toggle
  POST /api/selection/<sid>/text
  POST /api/selection/<sid>/clear
  POST /api/selection/<sid>/checkout
"""

from __future__ import annotations

import uuid
from typing import Any, Dict

from flask import Blueprint, current_app, request

from savethesquare.core.errors import CheckoutFailure, PersistenceReadFailure, PersistenceWriteFailure
from savethesquare.core.geometry import Coordinate, cell_center, from_cell_key, to_cell_key
from savethesquare.core.rasterizer import TextModeConfig, ViewportTransform, check_renderable, finite_number
from savethesquare.core.selection import (
    DonationBatch,
    SelectionStore,
    TextProvenance,
    build_records,
    provenance_from_mode_data,
)
from savethesquare.extensions import get_boundary, get_purchasable_count
from savethesquare.services.notifications import compose_confirmation, send_confirmation
from savethesquare.services.payments import TEST_MODE_STATUS, CheckoutService, announce_donation
from savethesquare.services.persistence import get_backend, get_donation_source
from savethesquare.services.sessions import SelectionSession, get_registry

from .common import json_error, json_ok, parse_donor, parse_keys, request_payload, truthy

bp = Blueprint("api", __name__)

RETRY_MESSAGE = "Donationen kunde inte sparas. Ditt urval finns kvar, försök igen."
TEXT_SETTINGS = ("fontSize", "pixelDensity", "color", "pixelRadius")


def _price() -> int:
    return int(current_app.config.get("SQUARE_PRICE_SEK") or 20)


# ----------------------------
# Property + donations
# ----------------------------
@bp.get("/property")
def property_info():
    boundary = get_boundary()
    bounds = boundary.bounds
    width_m, height_m = bounds.size_meters()
    center = bounds.center
    purchasable = get_purchasable_count()
    return json_ok(
        {
            "name": boundary.name or current_app.config.get("PROPERTY_NAME"),
            "bounds": bounds.as_dict(),
            "center": {"lat": center.lat, "lon": center.lon},
            "sizeMeters": {"width": round(width_m, 1), "height": round(height_m, 1)},
            "squarePrice": _price(),
            "purchasableSquares": purchasable,
            "purchasableValue": purchasable * _price() if purchasable is not None else None,
            "currency": current_app.config.get("CURRENCY", "sek"),
            "geojson": boundary.to_geojson(),
        }
    )


@bp.get("/donations")
def list_donations():
    snapshot = get_donation_source().load()
    squares: Dict[str, Any] = {}
    for record in snapshot.records:
        squares.setdefault(record.key, record.as_square_data())
    return json_ok(
        {
            "squares": squares,
            "totalSquares": len(squares),
            "totalAmount": len(squares) * _price(),
            "degraded": snapshot.degraded,
        }
    )


@bp.get("/donations/<donation_id>")
def get_donation(donation_id: str):
    try:
        donation = get_backend().get_donation(donation_id)
    except PersistenceReadFailure as e:
        return json_error(str(e), 503, extra={"retry": True})
    if donation is None:
        return json_error("Donation not found", 404)
    return json_ok({"donation": donation})


@bp.post("/donations")
def save_donation():
    if not current_app.config.get("STRIPE_TEST_MODE"):
        return json_error("Direct donation saving is only available in test mode", 403)

    data = request_payload()
    try:
        donor = parse_donor(data)
        keys = parse_keys(data.get("squares"))
    except ValueError as e:
        return json_error(str(e), 400)
    if not keys:
        return json_error("Inga kvadrater valda", 400)

    provenance = provenance_from_mode_data(data.get("modeData"))
    text_prov = provenance if isinstance(provenance, TextProvenance) else None
    records = build_records(
        keys,
        donor,
        text_keys=keys if text_prov is not None else (),
        text_provenance=text_prov,
    )
    batch = DonationBatch(
        records=records,
        amount=len(records) * _price(),
        session_id=str(data.get("sessionId") or "") or None,
        payment_status=TEST_MODE_STATUS,
    )
    try:
        saved = get_backend().create_donation(batch) or records
    except PersistenceWriteFailure as e:
        return json_error(RETRY_MESSAGE, 503, extra={"retry": True, "reason": str(e)})

    announce_donation(saved, donor=donor, amount=batch.amount, send_email=False)
    return json_ok(
        {
            "squares": [r.key for r in saved],
            "donationIds": sorted({r.donation_id for r in saved if r.donation_id}),
            "amount": batch.amount,
        },
        201,
    )


@bp.post("/send-confirmation-email")
def send_confirmation_email():
    data = request_payload()
    try:
        donor = parse_donor(data)
        keys = parse_keys(data.get("squares"))
    except ValueError as e:
        return json_error(str(e), 400)
    if not keys:
        return json_error("Missing required fields", 400)

    try:
        amount = int(data.get("amount") or len(keys) * _price())
    except (TypeError, ValueError):
        return json_error("amount must be a whole number of SEK", 400)

    preview = compose_confirmation(
        donor_name=donor.name,
        donor_email=donor.email,
        greeting=donor.greeting,
        squares=keys,
        amount=amount,
    )
    test_mode = True if truthy(data.get("testMode")) else None
    return json_ok(send_confirmation(preview, test_mode=test_mode))


# ----------------------------
# Selection sessions
# ----------------------------
def _snapshot_json(store: SelectionStore) -> Dict[str, Any]:
    snap = store.snapshot()
    return {
        "selected": sorted(snap.selected),
        "textGenerated": sorted(snap.text_generated),
        "conflicts": sorted(snap.conflicts),
        "selectedCount": len(snap.selected),
        "donatedCount": len(snap.donated),
        "totalAmount": store.total_amount(),
        "textProvenance": snap.text_provenance.as_mode_data() if snap.text_provenance else None,
    }


def _session_or_404(sid: str):
    session = get_registry().get(sid)
    if session is None:
        return None, json_error("Selection session not found", 404)
    return session, None


def _session_body(session: SelectionSession, **extra: Any) -> Dict[str, Any]:
    session.preview.poll()
    body: Dict[str, Any] = {
        "sessionId": session.id,
        "selection": _snapshot_json(session.store),
        "textPending": session.preview.pending,
    }
    body.update(extra)
    return body


@bp.post("/selection")
def create_selection():
    saved = request_payload().get("textConfig")
    if saved is not None and not isinstance(saved, dict):
        return json_error("textConfig must be an object", 400)
    try:
        TextModeConfig.from_dict(saved)
    except (TypeError, ValueError) as e:
        return json_error(f"Invalid text settings: {e}", 400)

    snapshot = get_donation_source().load()
    session = get_registry().create(donated=snapshot.records, text_config=saved)
    return json_ok(
        _session_body(
            session,
            degraded=snapshot.degraded,
            textConfig=session.preview.config.as_dict(),
        ),
        201,
    )


@bp.get("/selection/<sid>")
def get_selection(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    return json_ok(_session_body(session))


@bp.get("/selection/<sid>/cell")
def cell_status(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    args = request.args
    try:
        if args.get("key"):
            key = args["key"].strip()
            from_cell_key(key)
        else:
            key = to_cell_key(
                Coordinate(
                    lat=finite_number(args.get("lat"), "lat"),
                    lon=finite_number(args.get("lon"), "lon"),
                )
            )
    except (TypeError, ValueError):
        return json_error("Pass a cell key or finite lat and lon", 400)

    center = cell_center(key)
    return json_ok(
        {
            "key": key,
            "center": {"lat": center.lat, "lon": center.lon},
            "state": session.store.cell_state(key),
            "describe": session.store.describe(key),
        }
    )


@bp.post("/selection/<sid>/toggle")
def toggle_cell(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    data = request_payload()
    try:
        coordinate = Coordinate(lat=finite_number(data["lat"], "lat"), lon=finite_number(data["lon"], "lon"))
    except (KeyError, TypeError, ValueError):
        return json_error("lat and lon are required numbers", 400)

    result = session.store.toggle_click(coordinate)
    notice = None
    if result.notice is not None:
        notice = {"code": result.notice.code, "message": result.notice.message}
    return json_ok(
        _session_body(
            session,
            key=result.key,
            selectedNow=result.selected,
            accepted=result.accepted,
            notice=notice,
            describe=session.store.describe(result.key) if result.key else None,
        )
    )


@bp.post("/selection/<sid>/text")
def set_text(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    data = request_payload()

    config = None
    if any(k in data for k in TEXT_SETTINGS):
        merged = {**session.preview.config.as_dict(), **{k: v for k, v in data.items() if v is not None}}
        try:
            config = TextModeConfig.from_dict(merged)
        except (TypeError, ValueError):
            return json_error("Invalid text settings", 400)

    viewport = None
    if isinstance(data.get("viewport"), dict):
        try:
            viewport = ViewportTransform.from_dict(data["viewport"])
        except (KeyError, TypeError, ValueError) as e:
            return json_error(f"Invalid viewport: {e}", 400)

    text = data.get("text")
    text = str(text) if text is not None else None
    max_chars = int(current_app.config.get("TEXT_MAX_CHARS") or 0)
    if text is not None and max_chars and len(text) > max_chars:
        return json_error(f"Texten får vara högst {max_chars} tecken", 400, extra={"maxChars": max_chars})

    effective = config or session.preview.config
    try:
        check_renderable(text if text is not None else session.preview.text, effective.font_size, effective.density)
    except ValueError as e:
        return json_error(str(e), 400)

    session.preview.submit(
        text=text,
        config=config,
        viewport=viewport,
    )
    result = session.preview.flush() if truthy(data.get("flush")) else None
    extra: Dict[str, Any] = {}
    if result is not None:
        extra["added"] = sorted(result.added)
        extra["conflictsAdded"] = sorted(result.conflicts)
    return json_ok(_session_body(session, textConfig=session.preview.config.as_dict(), **extra))


@bp.post("/selection/<sid>/clear")
def clear_selection(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    session.preview.submit(text="")
    session.preview.flush()
    session.store.clear()
    return json_ok(_session_body(session))


@bp.post("/selection/<sid>/checkout")
def checkout_selection(sid: str):
    session, err = _session_or_404(sid)
    if err:
        return err
    try:
        donor = parse_donor(request_payload())
    except ValueError as e:
        return json_error(str(e), 400)

    session.preview.flush()
    store = session.store
    if not store.selected:
        return json_error("Inga kvadrater valda", 400)

    service = CheckoutService.from_app()
    if service.simulated:
        try:
            saved = store.confirm_purchase(
                donor,
                session_id=f"cs_test_simulated_{uuid.uuid4().hex}",
                payment_status=TEST_MODE_STATUS,
            )
        except PersistenceWriteFailure as e:
            return json_error(
                RETRY_MESSAGE,
                503,
                extra={"retry": True, "reason": str(e), "selection": _snapshot_json(store)},
            )
        amount = len(saved) * store.price_per_cell
        email = announce_donation(saved, donor=donor, amount=amount)
        return json_ok(
            _session_body(
                session,
                simulated=True,
                squares=[r.key for r in saved],
                amount=amount,
                email=email,
            )
        )

    snap = store.snapshot()
    try:
        result = service.create_checkout(
            snap.selected,
            donor,
            text_keys=snap.text_generated,
            mode_data=snap.text_provenance.as_mode_data() if snap.text_provenance else None,
        )
    except CheckoutFailure as e:
        return json_error(f"Betalningen kunde inte startas: {e}", 502)
    except PersistenceWriteFailure as e:
        return json_error(RETRY_MESSAGE, 503, extra={"retry": True, "reason": str(e)})
    return json_ok(_session_body(session, simulated=False, checkout=result.as_dict(), url=result.url))
