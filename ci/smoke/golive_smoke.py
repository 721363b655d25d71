#!/usr/bin/env python3
"""
Save The Square: Go-Live Smoke Test

Checks:
1) Stripe keys exist + match expected mode
2) Critical GET routes return 200 (payments health in strict mode)
3) /payments/config publishes the key and is not simulated
4) A selection session can pick the property's centre square
5) Checkout for that square returns a Stripe Checkout URL (NO CHARGE MADE)
"""

from __future__ import annotations

import argparse
import json
import os
from typing import Any, Dict, Iterable, Tuple

import requests

DEFAULT_PATHS = ["/", "/healthz", "/api/property", "/api/donations", "/payments/health?strict=1", "/payments/config"]
CHECKOUT_HOST = "https://checkout.stripe.com/"


# ---------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------
def die(msg: str, code: int = 1) -> None:
    print(f"❌ {msg}")
    raise SystemExit(code)


def ok(msg: str) -> None:
    print(f"✅ {msg}")


def info(msg: str) -> None:
    print(f"↪ {msg}")


def mask(v: str) -> str:
    if not v:
        return "<missing>"
    return f"{v[:7]}…{v[-4:]}" if len(v) > 12 else v


def mode_of(k: str) -> str:
    if k.startswith(("sk_live_", "pk_live_")):
        return "live"
    if k.startswith(("sk_test_", "pk_test_")):
        return "test"
    return "unknown"


# ---------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------
class Client:
    def __init__(self, base: str, timeout: float = 12.0):
        self.base = base.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["accept"] = "application/json"

    def url(self, path: str) -> str:
        return self.base + (path if path.startswith("/") else "/" + path)

    def _decode(self, r: requests.Response) -> Tuple[int, Dict[str, Any]]:
        try:
            body = r.json()
        except ValueError:
            body = {}
        return r.status_code, body if isinstance(body, dict) else {}

    def get(self, path: str) -> Tuple[int, Dict[str, Any]]:
        return self._decode(self.session.get(self.url(path), timeout=self.timeout))

    def post(self, path: str, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        return self._decode(self.session.post(self.url(path), json=payload, timeout=self.timeout))


# ---------------------------------------------------------------------
# Smoke steps
# ---------------------------------------------------------------------
def resolve_keys() -> Tuple[str, str]:
    sk = os.getenv("STRIPE_SECRET_KEY") or ""
    pk = os.getenv("STRIPE_PUBLIC_KEY") or os.getenv("STRIPE_PUBLISHABLE_KEY") or ""
    return sk.strip(), pk.strip()


def require_mode(sk: str, pk: str, expect: str) -> None:
    if not sk or not pk:
        die("Missing Stripe keys in environment")

    if expect in {"live", "test"}:
        if mode_of(sk) != expect:
            die(f"Secret key mismatch: expected {expect}, got {mode_of(sk)} ({mask(sk)})")
        if mode_of(pk) != expect:
            die(f"Publishable key mismatch: expected {expect}, got {mode_of(pk)} ({mask(pk)})")

    ok(f"Stripe keys validated ({expect})")


def check_gets(http: Client, paths: Iterable[str]) -> None:
    for p in paths:
        code, _ = http.get(p)
        if code != 200:
            die(f"{p} expected 200, got {code}")
    ok("GET routes OK")


def check_config(http: Client, pk: str) -> None:
    _, body = http.get("/payments/config")
    if body.get("simulated"):
        die("Server is running simulated checkouts (no STRIPE_SECRET_KEY?)")
    if body.get("publishableKey") != pk:
        die(f"Server publishes {mask(body.get('publishableKey') or '')}, expected {mask(pk)}")
    ok(f"Payments config OK ({body.get('squarePrice')} {str(body.get('currency')).upper()} per square)")


def pick_centre_square(http: Client) -> str:
    _, prop = http.get("/api/property")
    center = prop.get("center") or {}
    code, body = http.post("/api/selection", {})
    if code != 201:
        die(f"Selection session failed ({code}): {json.dumps(body)[:200]}")
    sid = body["sessionId"]

    _, body = http.post(f"/api/selection/{sid}/toggle", center)
    if not body.get("accepted"):
        die(f"Centre of {prop.get('name')} was not selectable: {body.get('notice')}")
    ok(f"Selected {body.get('key')} ({body.get('describe')})")
    return sid


def open_checkout(http: Client, sid: str) -> None:
    payload = {"donorName": "Go-Live Smoke", "donorEmail": "smoke@savethesquare.se"}
    code, body = http.post(f"/api/selection/{sid}/checkout", payload)
    if code != 200:
        die(f"Checkout failed ({code}): {json.dumps(body)[:200]}")
    url = body.get("url") or ""
    if body.get("simulated") or not url.startswith(CHECKOUT_HOST):
        die(f"Expected a Stripe Checkout URL, got {url!r}")
    ok("Stripe Checkout Session creation OK (left unpaid)")


# ---------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------
def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default=os.getenv("BASE") or os.getenv("SITE_URL") or "http://localhost:5000")
    ap.add_argument("--expect", default=os.getenv("EXPECT_STRIPE_MODE", "live"))
    ap.add_argument("--skip-checkout", action="store_true", help="Stop before creating a Checkout Session.")
    args = ap.parse_args()

    base = args.base.rstrip("/")
    info(f"Base: {base}")
    info(f"Expect Stripe mode: {args.expect}")

    sk, pk = resolve_keys()
    info(f"STRIPE_SECRET_KEY: {mask(sk)} ({mode_of(sk)})")
    info(f"STRIPE_PUBLIC_KEY: {mask(pk)} ({mode_of(pk)})")

    require_mode(sk, pk, args.expect)

    http = Client(base=base)
    check_gets(http, DEFAULT_PATHS)
    check_config(http, pk)
    sid = pick_centre_square(http)
    if not args.skip_checkout:
        open_checkout(http, sid)

    print("\n🌿 SAVE THE SQUARE GO-LIVE SMOKE PASSED")


if __name__ == "__main__":
    main()
