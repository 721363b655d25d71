# savethesquare/blueprints/pages.py
from __future__ import annotations

from flask import Blueprint, current_app, render_template, request

from savethesquare.core.geometry import is_cell_key
from savethesquare.extensions import get_boundary

pages_bp = Blueprint("pages", __name__)


def parse_highlight(raw: str) -> list:
    """Cell keys from ``?highlight=k1,k2``; malformed entries are dropped."""
    seen = []
    for part in (raw or "").split(","):
        key = part.strip()
        if key and is_cell_key(key) and key not in seen:
            seen.append(key)
    return seen


@pages_bp.get("/")
def index():
    boundary = get_boundary()
    bounds = boundary.bounds
    highlight = parse_highlight(request.args.get("highlight", ""))
    return render_template(
        "index.html",
        property_name=boundary.name or current_app.config.get("PROPERTY_NAME"),
        bounds=bounds.as_dict(),
        center={"lat": bounds.center.lat, "lon": bounds.center.lon},
        geojson=boundary.to_geojson(),
        highlight=highlight,
        square_price=current_app.config.get("SQUARE_PRICE_SEK"),
        success=request.args.get("success") == "true",
        canceled=request.args.get("canceled") == "true",
        stripe_public_key=current_app.config.get("STRIPE_PUBLIC_KEY") or "",
    )
