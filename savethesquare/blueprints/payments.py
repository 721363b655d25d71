# savethesquare/blueprints/payments.py
"""
Save The Square payments blueprint (Stripe Checkout)

Mount: /payments

Endpoints:
  GET  /payments/health
  GET  /payments/config
  POST /payments/create-checkout
  POST /payments/stripe/webhook

Health behavior:
- default: always 200, returns status: ok|degraded|error
- strict=1 (or uptime=1/monitor=1): 200 only if ok; else 503

Webhook contract:
- every event id is stored once (StripeEvent); redelivery is acknowledged and skipped
- checkout.session.completed fulfils the pending CheckoutSession
- a failed donation write answers 500 and forgets the event so Stripe retries
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional

import stripe
from flask import Blueprint, current_app, request
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from savethesquare.core.errors import CheckoutFailure, PersistenceWriteFailure
from savethesquare.extensions import db
from savethesquare.models import CheckoutSession, Donation, StripeEvent
from savethesquare.services.payments import (
    TEST_MODE_STATUS,
    CheckoutService,
    find_checkout,
    fulfil_checkout,
    mark_expired,
)

from .common import json_error, json_ok, json_response, parse_donor, parse_keys, request_payload, truthy

bp = Blueprint("payments", __name__)
_PROCESS_START = time.time()
_HANDLED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.expired",
)


# ----------------------------
# Health checks
# ----------------------------
def _db_check() -> Dict[str, Any]:
    t0 = time.perf_counter()
    out: Dict[str, Any] = {"ok": True, "checks": {}}
    for name, run_check in (
        ("ping", lambda: db.session.execute(text("SELECT 1"))),
        ("donation", lambda: db.session.query(Donation.id).limit(1).all()),
        ("checkoutSession", lambda: db.session.query(CheckoutSession.id).limit(1).all()),
        ("stripeEvent", lambda: db.session.query(StripeEvent.id).limit(1).all()),
    ):
        try:
            run_check()
            out["checks"][name] = {"ok": True}
        except SQLAlchemyError as e:
            db.session.rollback()
            out["ok"] = False
            out["checks"][name] = {"ok": False, "error": f"{type(e).__name__}: {str(e)[:300]}"}
            out.setdefault("error", out["checks"][name]["error"])
    out["latencyMs"] = int((time.perf_counter() - t0) * 1000)
    return out


def _stripe_check() -> Dict[str, Any]:
    cfg = current_app.config
    service = CheckoutService.from_app()
    wh_present = bool(cfg.get("STRIPE_WEBHOOK_SECRET"))

    warnings = []
    if service.simulated:
        warnings.append("simulated")
    elif not wh_present:
        warnings.append("missing_webhook_secret")

    out: Dict[str, Any] = {
        "ok": bool(service.secret_key) or service.simulated,
        "mode": cfg.get("STRIPE_MODE") or "disabled",
        "testMode": bool(cfg.get("STRIPE_TEST_MODE")),
        "webhookSecretPresent": wh_present,
    }
    if warnings:
        out["warning"] = ",".join(warnings)
    return out


def _health_status(components: Dict[str, Any]) -> str:
    if not (components.get("db") or {}).get("ok"):
        return "error"
    stripe_comp = components.get("stripe") or {}
    if not stripe_comp.get("ok") or "missing_webhook_secret" in str(stripe_comp.get("warning") or ""):
        return "degraded"
    return "ok"


@bp.get("/health")
def payments_health():
    strict = truthy(request.args.get("strict") or request.args.get("uptime") or request.args.get("monitor"))
    components = {"db": _db_check(), "stripe": _stripe_check()}
    status = _health_status(components)
    code = 200 if (not strict or status == "ok") else 503
    return json_response(
        {
            "ok": True,
            "status": status,
            "strict": strict,
            "uptimeS": int(time.time() - _PROCESS_START),
            "components": components,
        },
        code,
    )


@bp.get("/config")
def payments_config():
    cfg = current_app.config
    service = CheckoutService.from_app()
    return json_ok(
        {
            "publishableKey": cfg.get("STRIPE_PUBLIC_KEY") or "",
            "mode": cfg.get("STRIPE_MODE") or "disabled",
            "currency": service.currency,
            "squarePrice": service.price_sek,
            "testMode": bool(cfg.get("STRIPE_TEST_MODE")),
            "simulated": service.simulated,
        }
    )


# ----------------------------
# Checkout
# ----------------------------
@bp.post("/create-checkout")
def create_checkout():
    data = request_payload()
    try:
        donor = parse_donor(data)
        keys = parse_keys(data.get("squares"))
        text_keys = parse_keys(data.get("textSquares"), "textSquares")
    except ValueError as e:
        return json_error(str(e), 400)

    mode_data = data.get("modeData") if isinstance(data.get("modeData"), dict) else None
    service = CheckoutService.from_app()
    try:
        result = service.create_checkout(keys, donor, text_keys=text_keys, mode_data=mode_data)
    except ValueError as e:
        return json_error(str(e), 400)
    except CheckoutFailure as e:
        return json_error(f"Betalningen kunde inte startas: {e}", 502)
    except PersistenceWriteFailure as e:
        return json_error(str(e), 503, extra={"retry": True})

    body: Dict[str, Any] = {"checkout": result.as_dict(), "url": result.url, "sessionId": result.session_id}
    if result.simulated:
        row = find_checkout(checkout_id=result.checkout_id)
        try:
            done = fulfil_checkout(row, payment_status=TEST_MODE_STATUS) if row is not None else None
        except PersistenceWriteFailure as e:
            return json_error(
                "Donationen kunde inte sparas. Försök igen.",
                503,
                extra={"retry": True, "reason": str(e)},
            )
        if done is not None:
            body["squares"] = done.keys
            body["email"] = done.email
    return json_ok(body)


# ----------------------------
# Webhook
# ----------------------------
def _parse_event(payload: bytes) -> Optional[Dict[str, Any]]:
    secret = (current_app.config.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    sig = (request.headers.get("Stripe-Signature") or "").strip()
    try:
        if secret:
            stripe.Webhook.construct_event(payload, sig, secret)
        elif current_app.config.get("ENV") == "production":
            current_app.logger.error("payments: webhook secret missing in production; rejecting event")
            return None
        ev = json.loads(payload.decode("utf-8"))
    except (ValueError, stripe.SignatureVerificationError) as e:
        current_app.logger.warning("payments: rejected webhook payload: %s", e)
        return None
    return ev if isinstance(ev, dict) else None


def _forget_event(event_id: str) -> None:
    db.session.rollback()
    db.session.execute(db.delete(StripeEvent).where(StripeEvent.event_id == event_id))
    db.session.commit()


@bp.route("/stripe/webhook", methods=["POST", "OPTIONS"])
def stripe_webhook():
    if request.method == "OPTIONS":
        return ("", 200)

    ev = _parse_event(request.get_data(cache=False, as_text=False))
    if ev is None:
        return ("", 400)

    event_id = str(ev.get("id") or "")
    etype = str(ev.get("type") or "").lower()
    obj = ((ev.get("data") or {}).get("object")) or {}
    if not event_id or not isinstance(obj, dict):
        return ("", 400)

    try:
        db.session.add(
            StripeEvent(
                event_id=event_id[:120],
                type=etype[:120],
                livemode=bool(ev.get("livemode") or False),
                object_id=(str(obj.get("id") or "")[:120] or None),
            )
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.info("payments: duplicate webhook %s ignored", event_id)
        return ("", 200)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("payments: failed to store StripeEvent (will retry)")
        return ("", 500)

    if etype not in _HANDLED_EVENTS:
        return ("", 200)

    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    row = find_checkout(
        checkout_id=str(obj.get("client_reference_id") or (metadata or {}).get("checkoutId") or ""),
        stripe_session_id=str(obj.get("id") or ""),
    )
    if row is None:
        current_app.logger.warning("payments: %s for unknown checkout %s", etype, obj.get("id"))
        return ("", 200)

    if etype == "checkout.session.expired":
        mark_expired(row)
        return ("", 200)

    if str(obj.get("payment_status") or "paid") != "paid":
        current_app.logger.info("payments: checkout %s completed but unpaid; waiting", row.checkout_id)
        return ("", 200)

    try:
        fulfil_checkout(row)
    except PersistenceWriteFailure:
        current_app.logger.exception("payments: donation write failed for checkout %s (will retry)", row.checkout_id)
        _forget_event(event_id)
        return ("", 500)
    return ("", 200)
