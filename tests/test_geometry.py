#!/usr/bin/env python3
"""Tests for projection math."""
import math

import pytest

from terrain_pipeline.errors import InvalidBoundsError
from terrain_pipeline.geometry import (
    GeodesicDimensions,
    GeographicBounds,
    PlanMapping,
    TileIndex,
    clamp_zoom_to_budget,
    estimate_tile_count,
    geo_to_pixel,
    geo_to_tile,
    geodesic_dimensions,
    max_tiles_for,
    optimal_zoom,
    pixel_to_geo,
    tile_range,
    utm_zone,
    visible_bounds,
)


def independent_tile_xy(lat, lon, zoom):
    """Slippy-map tile index via the asinh form of the Mercator formula."""
    n = 2 ** zoom
    x = int((lon + 180.0) / 360.0 * n)
    y = int((1.0 - math.asinh(math.tan(math.radians(lat))) / math.pi) / 2.0 * n)
    return x, y


class TestGeographicBounds:
    """Tests for bounds validation and accessors."""

    def test_rejects_inverted_latitude(self):
        """Test lat_min >= lat_max cannot be constructed."""
        with pytest.raises(InvalidBoundsError):
            GeographicBounds(lat_min=10.0, lon_min=0.0, lat_max=10.0, lon_max=1.0)

    def test_rejects_inverted_longitude(self):
        """Test lon_min >= lon_max cannot be constructed."""
        with pytest.raises(InvalidBoundsError):
            GeographicBounds(lat_min=0.0, lon_min=2.0, lat_max=1.0, lon_max=1.0)

    def test_rejects_non_finite(self):
        """Test NaN bounds are rejected."""
        with pytest.raises(InvalidBoundsError):
            GeographicBounds(lat_min=float("nan"), lon_min=0.0, lat_max=1.0, lon_max=1.0)

    def test_invalid_bounds_is_value_error(self):
        """Test callers can catch invalid bounds as ValueError."""
        with pytest.raises(ValueError):
            GeographicBounds(lat_min=1.0, lon_min=0.0, lat_max=0.0, lon_max=1.0)

    def test_wgs84_order(self, default_bounds):
        """Test (west, south, east, north) conversion both ways."""
        west, south, east, north = default_bounds.as_wgs84()
        assert GeographicBounds.from_wgs84(west, south, east, north) == default_bounds
        assert west == default_bounds.lon_min
        assert north == default_bounds.lat_max

    def test_center_and_spans(self):
        """Test center is (lat, lon) and spans are positive."""
        bounds = GeographicBounds(lat_min=10.0, lon_min=20.0, lat_max=12.0, lon_max=26.0)
        assert bounds.center == (11.0, 23.0)
        assert bounds.lat_span == 2.0
        assert bounds.lon_span == 6.0
        assert bounds.max_span == 6.0


class TestTileMath:
    """Tests for tile and pixel conversions."""

    def test_origin_tiles(self):
        """Test the equator/prime meridian point at zoom 1."""
        assert geo_to_tile(0.0001, 0.0001, 1) == TileIndex(1, 0, 1)
        assert geo_to_tile(-0.0001, -0.0001, 1) == TileIndex(0, 1, 1)

    def test_wide_bounds_tile_count_at_z12(self, wide_bounds):
        """Test tile count matches an independently computed range."""
        tiles = tile_range(wide_bounds, 12)

        min_x, min_y = independent_tile_xy(wide_bounds.lat_max, wide_bounds.lon_min, 12)
        max_x, max_y = independent_tile_xy(wide_bounds.lat_min, wide_bounds.lon_max, 12)

        assert (tiles.min_tile.x, tiles.min_tile.y) == (min_x, min_y)
        assert (tiles.max_tile.x, tiles.max_tile.y) == (max_x, max_y)
        assert tiles.count == (max_x - min_x + 1) * (max_y - min_y + 1)
        assert estimate_tile_count(wide_bounds, 12) == tiles.count

    def test_tile_range_iterates_row_major(self, wide_bounds):
        """Test iteration covers every tile once, rows first."""
        tiles = tile_range(wide_bounds, 13)
        listed = list(tiles)

        assert len(listed) == tiles.count
        assert len(set(listed)) == tiles.count
        assert listed == sorted(listed, key=lambda t: (t.y, t.x))
        assert all(t.z == 13 for t in listed)

    def test_pixel_inverse(self):
        """Test pixel_to_geo inverts geo_to_pixel."""
        px, py = geo_to_pixel(14.4, 101.02, 15)
        lat, lon = pixel_to_geo(px, py, 15)
        assert lat == pytest.approx(14.4, abs=1e-9)
        assert lon == pytest.approx(101.02, abs=1e-9)

    def test_pixel_consistent_with_tile(self):
        """Test the pixel position falls inside the tile that contains the point."""
        tile = geo_to_tile(14.4, 101.02, 14)
        px, py = geo_to_pixel(14.4, 101.02, 14)
        assert int(px // 256) == tile.x
        assert int(py // 256) == tile.y

    def test_tile_bounds_contain_point(self):
        """Test a tile's WGS84 bounds contain the point used to find it."""
        tile = geo_to_tile(14.4, 101.02, 12)
        west, south, east, north = tile.bounds_wgs84()
        assert west <= 101.02 <= east
        assert south <= 14.4 <= north

    def test_url_template(self):
        """Test URL templates are filled from the tile index."""
        tile = TileIndex(x=3, y=5, z=7)
        assert tile.url("https://t/{z}/{x}/{y}.png") == "https://t/7/3/5.png"
        assert str(tile) == "7/3/5"


class TestOptimalZoom:
    """Tests for zoom selection."""

    def test_monotonic_as_span_shrinks(self):
        """Test zoom never decreases as the footprint gets smaller."""
        zooms = []
        for span in [40.0, 10.0, 2.0, 0.5, 0.1, 0.02, 0.005, 0.001, 0.0001]:
            bounds = GeographicBounds(lat_min=10.0, lon_min=100.0, lat_max=10.0 + span, lon_max=100.0 + span)
            zooms.append(optimal_zoom(bounds))

        assert zooms == sorted(zooms)

    def test_clamped_to_range(self):
        """Test zoom stays in [8, max_zoom]."""
        huge = GeographicBounds(lat_min=-40.0, lon_min=-60.0, lat_max=40.0, lon_max=60.0)
        tiny = GeographicBounds(lat_min=10.0, lon_min=10.0, lat_max=10.000001, lon_max=10.000001)

        assert optimal_zoom(huge) == 8
        assert optimal_zoom(tiny) == 15
        assert optimal_zoom(tiny, max_zoom=12) == 12

    def test_default_footprint(self, default_bounds, wide_bounds):
        """Test the preset footprints pick the expected zooms."""
        assert optimal_zoom(default_bounds) == 15
        # log2(1024 * 360 / (256 * 0.166773)) = 13.08
        assert optimal_zoom(wide_bounds) == 13


class TestGeodesicDimensions:
    """Tests for real-world footprint size."""

    def test_utm_zone(self):
        """Test UTM zone numbering."""
        assert utm_zone(-180.0) == 1
        assert utm_zone(0.5) == 31
        assert utm_zone(101.02) == 47

    def test_equator_square(self):
        """Test a 0.01 degree square at the equator is about 1.1 km a side."""
        bounds = GeographicBounds(lat_min=-0.005, lon_min=0.0, lat_max=0.005, lon_max=0.01)
        dims = geodesic_dimensions(bounds)

        assert dims.width_meters == pytest.approx(1113.2, rel=0.01)
        assert dims.height_meters == pytest.approx(1105.7, rel=0.01)
        assert dims.min_dimension == min(dims.width_meters, dims.height_meters)

    def test_default_footprint_size(self, default_bounds):
        """Test the default footprint is roughly 1 km by 0.7 km."""
        dims = geodesic_dimensions(default_bounds)
        assert dims.width_meters == pytest.approx(993.0, rel=0.02)
        assert dims.height_meters == pytest.approx(722.0, rel=0.02)

    def test_plan_scale(self):
        """Test footprint width maps to plan_size units."""
        dims = GeodesicDimensions(width_meters=2000.0, height_meters=1000.0)
        assert dims.plan_scale(100.0) == pytest.approx(0.05)
        assert dims.percent_to_meters(5.0) == pytest.approx(50.0)

    def test_zero_width_scale(self):
        """Test a degenerate width gives a zero scale instead of dividing by zero."""
        assert GeodesicDimensions(0.0, 10.0).plan_scale() == 0.0


class TestPlanMapping:
    """Tests for plan <-> geographic mapping."""

    def test_corners(self, default_bounds):
        """Test footprint corners map to the bounds corners."""
        mapping = PlanMapping(default_bounds)

        lat, lon = mapping.plan_to_geo(-50.0, 50.0)
        assert lat == pytest.approx(default_bounds.lat_max, abs=1e-9)
        assert lon == pytest.approx(default_bounds.lon_min, abs=1e-9)

        lat, lon = mapping.plan_to_geo(50.0, -50.0)
        assert lat == pytest.approx(default_bounds.lat_min, abs=1e-9)
        assert lon == pytest.approx(default_bounds.lon_max, abs=1e-9)

    def test_inverse(self, wide_bounds):
        """Test geo_to_plan inverts plan_to_geo."""
        mapping = PlanMapping(wide_bounds)
        for x, y in [(0.0, 0.0), (-31.5, 12.25), (49.0, -49.0)]:
            lat, lon = mapping.plan_to_geo(x, y)
            x2, y2 = mapping.geo_to_plan(lat, lon)
            assert x2 == pytest.approx(x, abs=1e-6)
            assert y2 == pytest.approx(y, abs=1e-6)


class TestVisibleBounds:
    """Tests for camera-dependent visible area and tile budgets."""

    def test_far_camera_sees_everything(self, wide_bounds):
        """Test distant cameras get the full footprint."""
        assert visible_bounds(wide_bounds, 500.0) == wide_bounds

    def test_close_camera_sees_less(self, wide_bounds):
        """Test close cameras get a centred sub-rectangle."""
        visible = visible_bounds(wide_bounds, 20.0)

        assert visible.lat_span < wide_bounds.lat_span
        assert visible.lon_span < wide_bounds.lon_span
        assert visible.lat_min >= wide_bounds.lat_min
        assert visible.lon_max <= wide_bounds.lon_max
        assert visible.center[0] == pytest.approx(wide_bounds.center[0])

    def test_visible_fraction_floor(self, wide_bounds):
        """Test the visible area never drops below 20% of each span."""
        visible = visible_bounds(wide_bounds, 0.1)
        assert visible.lat_span == pytest.approx(wide_bounds.lat_span * 0.2)

    def test_tile_budget(self):
        """Test tile budgets by zoom and distance."""
        assert max_tiles_for(15, 30.0) == 16
        assert max_tiles_for(15, 80.0) == 36
        assert max_tiles_for(16, 300.0) == 64
        assert max_tiles_for(13, 10.0) == 100
        assert max_tiles_for(10, 10.0) == 400

    def test_clamp_zoom_to_budget(self, wide_bounds):
        """Test zoom drops until the tile count fits, but not below min_zoom."""
        zoom = clamp_zoom_to_budget(wide_bounds, 18, 16)
        assert zoom < 18
        assert estimate_tile_count(wide_bounds, zoom) <= 16

        assert clamp_zoom_to_budget(wide_bounds, 18, 1, min_zoom=14) == 14
        assert clamp_zoom_to_budget(wide_bounds, 9, 1000) == 9
