import math

import pytest

from savethesquare.core.errors import MalformedBoundaryData
from savethesquare.core.geometry import (
    CELL_SCALE,
    Coordinate,
    cell_center,
    compute_bounds,
    count_cells,
    from_cell_key,
    grid_shape,
    is_cell_key,
    is_inside_property,
    is_purchasable_cell,
    iter_cells,
    load_boundary,
    point_in_ring,
    to_cell_key,
)

from .conftest import TINY_SQUARE, TOY_SQUARE

SIMPLE = {
    "type": "Polygon",
    "coordinates": [[[0, 0], [0, 10], [10, 10], [10, 0]]],
}


@pytest.mark.parametrize("lat,lon", [(0.5, 0.5), (5, 5), (9.9, 0.1), (3.3, 7.7)])
def test_points_strictly_inside_simple_polygon(lat, lon):
    boundary = load_boundary(SIMPLE)
    assert is_inside_property(boundary, Coordinate(lat=lat, lon=lon))


@pytest.mark.parametrize("lat,lon", [(15, 15), (-1, 5), (5, 10.5), (11, -3)])
def test_points_outside_bounding_extent(lat, lon):
    boundary = load_boundary(SIMPLE)
    assert not is_inside_property(boundary, Coordinate(lat=lat, lon=lon))


def test_hole_is_excluded(boundary):
    assert boundary.is_inside(Coordinate(lat=5, lon=5))
    assert not boundary.is_inside(Coordinate(lat=7, lon=7))
    assert boundary.is_inside(Coordinate(lat=7, lon=9))


def test_ring_wraps_without_closing_position():
    open_ring = [(0.0, 0.0), (4.0, 0.0), (4.0, 4.0), (0.0, 4.0)]
    assert point_in_ring(2.0, 2.0, open_ring)
    assert not point_in_ring(5.0, 2.0, open_ring)


def test_multipolygon_parts_are_separate_polygons():
    data = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {},
                "geometry": {
                    "type": "MultiPolygon",
                    "coordinates": [
                        [[[0, 0], [0, 1], [1, 1], [1, 0]]],
                        [[[5, 5], [5, 6], [6, 6], [6, 5]]],
                    ],
                },
            }
        ],
    }
    boundary = load_boundary(data)
    assert len(boundary.polygons) == 2
    assert boundary.is_inside(Coordinate(lat=0.5, lon=0.5))
    assert boundary.is_inside(Coordinate(lat=5.5, lon=5.5))
    assert not boundary.is_inside(Coordinate(lat=3, lon=3))


def test_toy_square_key():
    assert to_cell_key(Coordinate(lat=5, lon=5)) == "500000_500000"


@pytest.mark.parametrize(
    "lat,lon",
    [(57.538712, 15.181234), (5.0, 5.0), (0.000001, 9.999999), (-33.868819, 151.209295)],
)
def test_key_round_trip_within_grain(lat, lon):
    back = from_cell_key(to_cell_key(Coordinate(lat=lat, lon=lon)))
    assert abs(back.lat - lat) <= 1 / CELL_SCALE
    assert abs(back.lon - lon) <= 1 / CELL_SCALE


def test_coordinates_inside_one_grain_share_a_key():
    a = Coordinate(lat=57.5390012, lon=15.1820011)
    b = Coordinate(lat=57.5390019, lon=15.1820018)
    assert to_cell_key(a) == to_cell_key(b)


def test_negative_coordinates_floor_downward():
    key = to_cell_key(Coordinate(lat=-0.000001, lon=-0.000001))
    assert key == "-1_-1"


@pytest.mark.parametrize("bad", ["", "abc", "12_x", "12", None, "1.5_2"])
def test_malformed_keys_raise(bad):
    with pytest.raises(ValueError):
        from_cell_key(bad)
    assert not is_cell_key(bad)


def test_bounds_from_loaded_boundary_and_raw_geojson(boundary):
    loaded = compute_bounds(boundary)
    raw = compute_bounds(TOY_SQUARE)
    assert loaded == raw
    assert (loaded.min_lat, loaded.max_lat, loaded.min_lon, loaded.max_lon) == (0, 10, 0, 10)
    assert loaded.center == Coordinate(lat=5, lon=5)


def test_size_meters_uses_latitude_scaling():
    boundary = load_boundary(
        {"type": "Polygon", "coordinates": [[[15.18, 57.5], [15.19, 57.5], [15.19, 57.51], [15.18, 57.51]]]}
    )
    width_m, height_m = boundary.bounds.size_meters()
    assert height_m == pytest.approx(1113.2, rel=1e-3)
    assert width_m == pytest.approx(1113.2 * math.cos(math.radians(57.5)), rel=1e-3)


def test_name_comes_from_feature_properties(boundary):
    assert boundary.name == "Toy Square"


@pytest.mark.parametrize(
    "doc",
    [
        {"type": "FeatureCollection", "features": []},
        {"type": "Polygon", "coordinates": [[[0, 0], [0, "ten"], [10, 10]]]},
        {"type": "Polygon", "coordinates": [[[0, 0], [0, 10], [0, 0]]]},
        {"type": "Point", "coordinates": [0, 0]},
        {"type": "FeatureCollection", "features": [{"type": "Feature", "geometry": {"type": "LineString", "coordinates": []}}]},
    ],
)
def test_malformed_boundaries_fail_fast(doc):
    with pytest.raises(MalformedBoundaryData):
        load_boundary(doc)


def test_missing_boundary_file(tmp_path):
    with pytest.raises(MalformedBoundaryData):
        load_boundary(tmp_path / "nope.json")


def test_boundary_file_round_trip(boundary_file):
    boundary = load_boundary(boundary_file)
    assert boundary.to_geojson()["features"][0]["geometry"]["type"] == "Polygon"
    assert len(boundary.polygons[0].holes) == 1


# ----------------------------
# Purchasable grid
# ----------------------------
def test_cell_center_is_half_a_grain_in():
    center = cell_center("5_-3")
    assert center.lat == pytest.approx(5.5 / CELL_SCALE)
    assert center.lon == pytest.approx(-2.5 / CELL_SCALE)
    assert to_cell_key(center) == "5_-3"
    with pytest.raises(ValueError):
        cell_center("nope")


def test_tiny_square_cell_count_excludes_hole(tiny_boundary):
    keys = set(iter_cells(tiny_boundary))
    assert count_cells(tiny_boundary) == len(keys) == 100 - 9
    assert "0_0" in keys and "9_9" in keys
    assert "4_4" not in keys
    assert "10_0" not in keys


def test_enumeration_agrees_with_point_tests(tiny_boundary):
    rows, cols = grid_shape(tiny_boundary.bounds)
    assert (rows, cols) == (11, 11)
    expected = {
        f"{r}_{c}" for r in range(-1, rows + 1) for c in range(-1, cols + 1) if is_purchasable_cell(tiny_boundary, f"{r}_{c}")
    }
    assert set(iter_cells(tiny_boundary)) == expected


def test_overlapping_polygons_are_counted_once():
    second = [[0.00008, 0.00008], [0.00012, 0.00008], [0.00012, 0.00012], [0.00008, 0.00012], [0.00008, 0.00008]]
    doc = {"type": "MultiPolygon", "coordinates": [TINY_SQUARE["coordinates"], [second]]}
    boundary = load_boundary(doc)
    # 4 x 4 extra cells, 2 x 2 of them already inside the first square
    assert count_cells(boundary) == 91 + 16 - 4
    keys = list(iter_cells(boundary))
    assert len(keys) == len(set(keys))
