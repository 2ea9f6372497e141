"""
Grid planning: probe counts, edge inclusion, clamping and the global point cap
"""

from types import SimpleNamespace

import pytest

from geom.grid_math import (
    Bounds,
    GridConfig,
    bounds_from_corners,
    derive_grid_config,
    envelope,
    grid_line_paths,
    plan_grid,
    plan_region,
    plan_regions,
)


def region(rid, bounds, grid=None):
    return SimpleNamespace(id=rid, bounds=bounds, grid=grid or derive_grid_config(bounds))


class TestPlanRegion:

    def test_one_cell_region_probes_its_four_corners(self):
        b = Bounds(north=1.001, south=1.0, east=1.001, west=1.0)
        pts = plan_region(region("a", b, GridConfig(rows=1, cols=1)))
        assert len(pts) == 4
        assert {(p.lat, p.lng) for p in pts} == {(1.0, 1.0), (1.0, 1.001), (1.001, 1.0), (1.001, 1.001)}

    @pytest.mark.parametrize("bounds", [
        Bounds(north=49.285, south=49.28, east=-122.88, west=-122.89),
        Bounds(north=0.0012, south=0.0, east=0.0031, west=0.0),
        Bounds(north=-33.85, south=-33.9, east=151.25, west=151.2),
        Bounds(north=10.0, south=10.0, east=20.0, west=20.0),
    ])
    def test_point_count_and_containment(self, bounds):
        r = region("a", bounds)
        pts = plan_region(r)
        assert len(pts) == (r.grid.rows + 1) * (r.grid.cols + 1)
        for p in pts:
            assert bounds.south <= p.lat <= bounds.north
            assert bounds.west <= p.lng <= bounds.east
            assert p.region_id == "a"

    def test_row_major_from_south_west(self):
        b = Bounds(north=2.0, south=1.0, east=4.0, west=2.0)
        pts = plan_grid(b, GridConfig(rows=2, cols=2), "a")
        assert (pts[0].lat, pts[0].lng) == (1.0, 2.0)
        assert (pts[1].lat, pts[1].lng) == (1.0, 3.0)
        assert (pts[3].lat, pts[3].lng) == (1.5, 2.0)
        assert (pts[-1].lat, pts[-1].lng) == (2.0, 4.0)

    def test_plan_is_deterministic(self):
        r = region("a", Bounds(north=49.285, south=49.28, east=-122.88, west=-122.89))
        assert plan_region(r) == plan_region(r)


class TestDeriveGridConfig:

    def test_tiny_area_gets_single_cell(self):
        g = derive_grid_config(Bounds(north=1.0001, south=1.0, east=1.0001, west=1.0))
        assert (g.rows, g.cols) == (1, 1)

    def test_huge_area_is_clamped(self):
        g = derive_grid_config(Bounds(north=10.0, south=0.0, east=10.0, west=0.0))
        assert (g.rows, g.cols) == (8, 8)

    def test_floor_of_span_over_cell_size(self):
        g = derive_grid_config(Bounds(north=0.0026, south=0.0, east=0.0011, west=0.0))
        assert (g.rows, g.cols) == (5, 2)

    def test_custom_limits(self):
        g = derive_grid_config(Bounds(north=1.0, south=0.0, east=1.0, west=0.0), min_cell_size=0.5, max_grid=3)
        assert (g.rows, g.cols) == (2, 2)


class TestPlanRegions:

    def test_concatenates_in_region_order(self):
        a = region("a", Bounds(north=1.001, south=1.0, east=1.001, west=1.0), GridConfig(1, 1))
        b = region("b", Bounds(north=2.001, south=2.0, east=2.001, west=2.0), GridConfig(1, 1))
        pts = plan_regions([a, b])
        assert [p.region_id for p in pts] == ["a"] * 4 + ["b"] * 4

    def test_truncates_to_first_max_points(self):
        a = region("a", Bounds(north=1.0, south=0.0, east=1.0, west=0.0))
        b = region("b", Bounds(north=3.0, south=2.0, east=3.0, west=2.0))
        full = plan_region(a) + plan_region(b)
        pts = plan_regions([a, b], max_points=100)
        assert len(pts) == 100
        assert pts == full[:100]
        assert sum(1 for p in pts if p.region_id == "a") == 81


class TestHelpers:

    def test_bounds_from_drag_corners_in_any_direction(self):
        b = bounds_from_corners((1.0, 5.0), (0.5, 4.0))
        assert b == Bounds(north=1.0, south=0.5, east=5.0, west=4.0)

    def test_grid_line_paths_are_interior_only(self):
        b = Bounds(north=1.0, south=0.0, east=1.0, west=0.0)
        paths = grid_line_paths(b, GridConfig(rows=3, cols=4))
        assert len(paths) == (4 - 1) + (3 - 1)

    def test_envelope_requires_points(self):
        with pytest.raises(ValueError):
            envelope([])

    def test_inverted_bounds_rejected(self):
        with pytest.raises(ValueError):
            Bounds.from_dict({"north": 0, "south": 1, "east": 1, "west": 0})
