# savethesquare/cli.py
# Operator commands: `flask squares <command>`

from __future__ import annotations

import json

import click
from flask import Flask, current_app
from flask.cli import AppGroup

from savethesquare.core.errors import PersistenceReadFailure
from savethesquare.core.geometry import Coordinate, from_cell_key, to_cell_key
from savethesquare.core.rasterizer import TextModeConfig, ViewportTransform, preview_cells
from savethesquare.extensions import db, get_boundary, get_purchasable_count
from savethesquare.services.persistence import get_donation_source

squares = AppGroup("squares", help="Save The Square maintenance commands.")


@squares.command("init-db")
def init_db_cmd() -> None:
    """Create missing tables (use `flask db upgrade` for real deployments)."""
    db.create_all()
    click.secho("✅ Tables ensured.", fg="bright_green", bold=True)


@squares.command("check-boundary")
def check_boundary_cmd() -> None:
    """Print the loaded property boundary summary."""
    boundary = get_boundary()
    bounds = boundary.bounds
    width_m, height_m = bounds.size_meters()
    holes = sum(len(p.holes) for p in boundary.polygons)
    click.echo(f"🌿 {boundary.name or '(unnamed)'}")
    click.echo(f"  ↳ polygons: {len(boundary.polygons)}  holes: {holes}")
    click.echo(f"  ↳ bounds:   {json.dumps(bounds.as_dict())}")
    click.echo(f"  ↳ size:     {width_m:.0f} m x {height_m:.0f} m")
    purchasable = get_purchasable_count()
    click.echo(f"  ↳ squares:  {purchasable if purchasable is not None else 'not counted (grid too large)'}")


@squares.command("key")
@click.argument("lat", type=float)
@click.argument("lon", type=float)
def key_cmd(lat: float, lon: float) -> None:
    """Cell key for a coordinate, and whether it lies on the property."""
    coordinate = Coordinate(lat=lat, lon=lon)
    if not get_boundary().is_inside(coordinate):
        click.secho("outside property", fg="yellow")
        raise SystemExit(1)
    key = to_cell_key(coordinate)
    origin = from_cell_key(key)
    click.echo(f"{key}  (cell origin {origin.lat:.5f}, {origin.lon:.5f})")


@squares.command("list-donations")
@click.option("--limit", default=50, show_default=True, help="Rows to print.")
def list_donations_cmd(limit: int) -> None:
    """Donated squares, earliest donation first."""
    try:
        snapshot = get_donation_source().load()
    except PersistenceReadFailure as e:
        click.secho(f"❌ {e}", fg="red", bold=True)
        raise SystemExit(1)
    if snapshot.degraded:
        click.secho("⚠️  backend unavailable; showing cached snapshot", fg="yellow")

    seen = set()
    shown = 0
    for record in snapshot.records:
        if record.key in seen:
            continue
        seen.add(record.key)
        if shown < limit:
            click.echo(f"{record.key}\t{record.donor_name}\t{record.provenance.as_mode_data().get('mode')}\t{record.timestamp}")
            shown += 1
    price = int(current_app.config.get("SQUARE_PRICE_SEK") or 20)
    click.secho(f"{len(seen)} square(s), {len(seen) * price} SEK", fg="bright_green")


@squares.command("rasterize")
@click.argument("text")
@click.option("--font-size", default=40, show_default=True, type=int)
@click.option("--density", default=2, show_default=True, type=int)
@click.option("--width", default=1024, show_default=True, type=int, help="Viewport width in px.")
@click.option("--height", default=768, show_default=True, type=int, help="Viewport height in px.")
def rasterize_cmd(text: str, font_size: int, density: int, width: int, height: int) -> None:
    """Cells TEXT would cover with the whole property in view."""
    boundary = get_boundary()
    bounds = boundary.bounds
    viewport = ViewportTransform.from_bounds(
        north=bounds.max_lat,
        south=bounds.min_lat,
        east=bounds.max_lon,
        west=bounds.min_lon,
        width_px=width,
        height_px=height,
    )
    config = TextModeConfig(font_size=font_size, density=density)
    try:
        keys, provenance = preview_cells(text, config, viewport, boundary.is_inside)
    except ValueError as e:
        click.secho(f"❌ {e}", fg="red", bold=True)
        raise SystemExit(1)
    click.echo(json.dumps({"cells": len(keys), "modeData": provenance.as_mode_data()}, ensure_ascii=False))
    for key in sorted(keys):
        click.echo(key)


def register_cli(app: Flask) -> None:
    app.cli.add_command(squares)


__all__ = ["squares", "register_cli"]
