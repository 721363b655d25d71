# savethesquare/core/geometry.py
"""Geometry service: property membership, cell-key addressing, bounds.

Positions inside rings follow GeoJSON order, ``(lon, lat)``. Everything that
leaves this module as a ``Coordinate`` is ``(lat, lon)``.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from numbers import Real
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Sequence, Tuple, Union

from .errors import MalformedBoundaryData

log = logging.getLogger(__name__)

# ~1 m at the property's latitude. Writers and readers of keys must agree.
CELL_SCALE = 100000
KEY_SEPARATOR = "_"

METERS_PER_DEGREE_LAT = 111320.0

Position = Tuple[float, float]  # (lon, lat)
Ring = Tuple[Position, ...]


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float


@dataclass(frozen=True)
class Bounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @property
    def center(self) -> Coordinate:
        return Coordinate(
            lat=(self.min_lat + self.max_lat) / 2.0,
            lon=(self.min_lon + self.max_lon) / 2.0,
        )

    def size_meters(self) -> Tuple[float, float]:
        """Approximate (width, height) in meters, equirectangular."""
        lon_scale = METERS_PER_DEGREE_LAT * math.cos(math.radians(self.min_lat))
        return (
            (self.max_lon - self.min_lon) * lon_scale,
            (self.max_lat - self.min_lat) * METERS_PER_DEGREE_LAT,
        )

    def as_dict(self) -> dict:
        return {
            "minLat": self.min_lat,
            "maxLat": self.max_lat,
            "minLon": self.min_lon,
            "maxLon": self.max_lon,
        }


@dataclass(frozen=True)
class PropertyPolygon:
    outer: Ring
    holes: Tuple[Ring, ...] = ()

    @property
    def rings(self) -> Tuple[Ring, ...]:
        return (self.outer, *self.holes)

    def contains(self, lon: float, lat: float) -> bool:
        if not point_in_ring(lon, lat, self.outer):
            return False
        return not any(point_in_ring(lon, lat, hole) for hole in self.holes)


@dataclass(frozen=True)
class PropertyBoundary:
    polygons: Tuple[PropertyPolygon, ...]
    name: str = ""

    def __post_init__(self) -> None:
        if not self.polygons:
            raise MalformedBoundaryData("Property boundary has no polygons")

    def is_inside(self, coordinate: Coordinate) -> bool:
        return is_inside_property(self, coordinate)

    @property
    def bounds(self) -> Bounds:
        return compute_bounds(self)

    def to_geojson(self) -> dict:
        return {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "properties": {"name": self.name} if self.name else {},
                    "geometry": {
                        "type": "Polygon",
                        "coordinates": [[list(p) for p in ring] for ring in poly.rings],
                    },
                }
                for poly in self.polygons
            ],
        }


# ----------------------------
# Membership
# ----------------------------
def point_in_ring(lon: float, lat: float, ring: Sequence[Position]) -> bool:
    """Even-odd ray cast to the right of (lon, lat). The ring wraps implicitly."""
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def is_inside_property(boundary: PropertyBoundary, coordinate: Coordinate) -> bool:
    return any(poly.contains(coordinate.lon, coordinate.lat) for poly in boundary.polygons)


# ----------------------------
# Cell keys
# ----------------------------
def to_cell_key(coordinate: Coordinate) -> str:
    lat_i = math.floor(coordinate.lat * CELL_SCALE)
    lon_i = math.floor(coordinate.lon * CELL_SCALE)
    return f"{lat_i}{KEY_SEPARATOR}{lon_i}"


def from_cell_key(key: str) -> Coordinate:
    """Inverse of ``to_cell_key``, lossy to the quantization grain."""
    lat_raw, sep, lon_raw = str(key or "").strip().partition(KEY_SEPARATOR)
    if not sep:
        raise ValueError(f"Not a cell key: {key!r}")
    try:
        lat_i = int(lat_raw)
        lon_i = int(lon_raw)
    except ValueError:
        raise ValueError(f"Not a cell key: {key!r}") from None
    return Coordinate(lat=lat_i / CELL_SCALE, lon=lon_i / CELL_SCALE)


def is_cell_key(key: Any) -> bool:
    try:
        from_cell_key(key)
    except ValueError:
        return False
    return True


def cell_center(key: str) -> Coordinate:
    from_cell_key(key)
    lat_i, _, lon_i = str(key).strip().partition(KEY_SEPARATOR)
    return Coordinate(lat=(int(lat_i) + 0.5) / CELL_SCALE, lon=(int(lon_i) + 0.5) / CELL_SCALE)


# ----------------------------
# Purchasable grid
# ----------------------------
def grid_shape(bounds: Bounds) -> Tuple[int, int]:
    """(rows, cols) of cells covering ``bounds``."""
    rows = math.floor(bounds.max_lat * CELL_SCALE) - math.floor(bounds.min_lat * CELL_SCALE) + 1
    cols = math.floor(bounds.max_lon * CELL_SCALE) - math.floor(bounds.min_lon * CELL_SCALE) + 1
    return rows, cols


def _row_spans(polygon: PropertyPolygon, lat: float) -> List[Tuple[float, float]]:
    # even-odd over every ring at once: inside intervals are [c0, c1), [c2, c3), ...
    crossings: List[float] = []
    for ring in polygon.rings:
        j = len(ring) - 1
        for i in range(len(ring)):
            xi, yi = ring[i]
            xj, yj = ring[j]
            if (yi > lat) != (yj > lat):
                crossings.append((xj - xi) * (lat - yi) / (yj - yi) + xi)
            j = i
    crossings.sort()
    return list(zip(crossings[0::2], crossings[1::2]))


def _first_col_at_or_after(lon: float) -> int:
    col = math.ceil(lon * CELL_SCALE - 0.5) - 1
    while (col + 0.5) / CELL_SCALE < lon:
        col += 1
    return col


def _row_cols(boundary: PropertyBoundary, lat: float) -> List[Tuple[int, int]]:
    """Merged half-open column ranges whose cell centres are inside at ``lat``."""
    ranges: List[Tuple[int, int]] = []
    for polygon in boundary.polygons:
        for west, east in _row_spans(polygon, lat):
            start, stop = _first_col_at_or_after(west), _first_col_at_or_after(east)
            if start < stop:
                ranges.append((start, stop))
    ranges.sort()

    merged: List[Tuple[int, int]] = []
    for start, stop in ranges:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], stop))
        else:
            merged.append((start, stop))
    return merged


def _grid_rows(boundary: PropertyBoundary) -> Iterator[Tuple[int, List[Tuple[int, int]]]]:
    bounds = boundary.bounds
    first = math.floor(bounds.min_lat * CELL_SCALE)
    last = math.floor(bounds.max_lat * CELL_SCALE)
    for row in range(first, last + 1):
        yield row, _row_cols(boundary, (row + 0.5) / CELL_SCALE)


def iter_cells(boundary: PropertyBoundary) -> Iterator[str]:
    """Keys of every purchasable cell: those whose centre lies inside the property.

    Walks the grid row by row; each row is resolved from ring crossings, not
    per-cell point tests.
    """
    for row, cols in _grid_rows(boundary):
        for start, stop in cols:
            for col in range(start, stop):
                yield f"{row}{KEY_SEPARATOR}{col}"


def count_cells(boundary: PropertyBoundary) -> int:
    return sum(stop - start for _, cols in _grid_rows(boundary) for start, stop in cols)


def is_purchasable_cell(boundary: PropertyBoundary, key: str) -> bool:
    return boundary.is_inside(cell_center(key))


# ----------------------------
# Bounds
# ----------------------------
def _iter_positions(coords: Any) -> Iterator[Position]:
    """Flatten arbitrarily nested GeoJSON coordinate arrays into positions."""
    if not isinstance(coords, (list, tuple)) or not coords:
        return
    if isinstance(coords[0], (list, tuple)):
        for item in coords:
            yield from _iter_positions(item)
        return
    yield _position(coords)


def compute_bounds(source: Union[PropertyBoundary, Mapping[str, Any]]) -> Bounds:
    """Extrema over every ring of every feature.

    Accepts a loaded ``PropertyBoundary`` or a raw GeoJSON FeatureCollection.
    """
    if isinstance(source, PropertyBoundary):
        positions: Iterable[Position] = (p for poly in source.polygons for ring in poly.rings for p in ring)
    else:
        positions = (
            p
            for feature in _features(source)
            for p in _iter_positions((feature.get("geometry") or {}).get("coordinates"))
        )

    min_lat = min_lon = math.inf
    max_lat = max_lon = -math.inf
    for lon, lat in positions:
        min_lon = min(min_lon, lon)
        max_lon = max(max_lon, lon)
        min_lat = min(min_lat, lat)
        max_lat = max(max_lat, lat)

    if min_lat == math.inf:
        raise MalformedBoundaryData("Property boundary has no coordinates")
    return Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)


# ----------------------------
# Loading
# ----------------------------
def _position(raw: Any) -> Position:
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise MalformedBoundaryData(f"Expected [lon, lat] position, got {raw!r}")
    lon, lat = raw[0], raw[1]
    for v in (lon, lat):
        # bool is a Real subclass; reject it explicitly
        if isinstance(v, bool) or not isinstance(v, Real) or not math.isfinite(v):
            raise MalformedBoundaryData(f"Non-numeric coordinate in position {raw!r}")
    return float(lon), float(lat)


def _ring(raw: Any, where: str) -> Ring:
    if not isinstance(raw, (list, tuple)):
        raise MalformedBoundaryData(f"{where}: ring must be a list of positions")
    ring = tuple(_position(p) for p in raw)
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    if len(ring) < 3:
        raise MalformedBoundaryData(f"{where}: ring needs at least 3 distinct positions")
    return ring


def _polygon(raw: Any, where: str) -> PropertyPolygon:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise MalformedBoundaryData(f"{where}: polygon has no rings")
    rings = [_ring(r, f"{where} ring {i}") for i, r in enumerate(raw)]
    return PropertyPolygon(outer=rings[0], holes=tuple(rings[1:]))


def _features(data: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    if not isinstance(data, Mapping):
        raise MalformedBoundaryData("Boundary document must be a JSON object")
    kind = data.get("type")
    if kind == "FeatureCollection":
        features = data.get("features")
    elif kind == "Feature":
        features = [data]
    elif kind in ("Polygon", "MultiPolygon"):
        features = [{"type": "Feature", "geometry": data}]
    else:
        raise MalformedBoundaryData(f"Unsupported boundary document type: {kind!r}")
    if not isinstance(features, list) or not features:
        raise MalformedBoundaryData("Boundary has an empty feature list")
    return features


def load_boundary(source: Union[str, Path, Mapping[str, Any]], *, name: str = "") -> PropertyBoundary:
    """Parse a GeoJSON boundary (mapping or file path) into a PropertyBoundary."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise MalformedBoundaryData(f"Boundary file not found: {path}") from None
        except json.JSONDecodeError as e:
            raise MalformedBoundaryData(f"Boundary file is not valid JSON: {path}: {e}") from e
    else:
        data = source

    polygons: List[PropertyPolygon] = []
    for idx, feature in enumerate(_features(data)):
        geometry = (feature or {}).get("geometry") if isinstance(feature, Mapping) else None
        if not isinstance(geometry, Mapping):
            raise MalformedBoundaryData(f"feature {idx}: missing geometry")
        gtype = geometry.get("type")
        coords = geometry.get("coordinates")
        if gtype == "Polygon":
            polygons.append(_polygon(coords, f"feature {idx}"))
        elif gtype == "MultiPolygon":
            if not isinstance(coords, (list, tuple)) or not coords:
                raise MalformedBoundaryData(f"feature {idx}: empty MultiPolygon")
            for part, poly in enumerate(coords):
                polygons.append(_polygon(poly, f"feature {idx} part {part}"))
        else:
            raise MalformedBoundaryData(f"feature {idx}: unsupported geometry type {gtype!r}")

        if not name and isinstance(feature.get("properties"), Mapping):
            name = str(feature["properties"].get("name") or "")

    boundary = PropertyBoundary(polygons=tuple(polygons), name=name)
    width_m, height_m = boundary.bounds.size_meters()
    log.info(
        "Loaded property boundary %r: %d polygon(s), ~%.0f x %.0f m",
        boundary.name or "(unnamed)",
        len(boundary.polygons),
        width_m,
        height_m,
    )
    return boundary


__all__ = [
    "CELL_SCALE",
    "Coordinate",
    "Bounds",
    "PropertyPolygon",
    "PropertyBoundary",
    "point_in_ring",
    "is_inside_property",
    "to_cell_key",
    "from_cell_key",
    "is_cell_key",
    "cell_center",
    "grid_shape",
    "iter_cells",
    "count_cells",
    "is_purchasable_cell",
    "compute_bounds",
    "load_boundary",
]
