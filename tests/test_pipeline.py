#!/usr/bin/env python3
"""Tests for pipeline orchestration."""
import threading
import time
from dataclasses import replace

import numpy as np
import pytest

from conftest import FakeClock, ImmediateExecutor, make_cone
from terrain_pipeline.config import LODConfig, SourceConfig, TerrainConfig
from terrain_pipeline.errors import CompositeAllocationError, UnknownPaletteError
from terrain_pipeline.geometry import GeographicBounds
from terrain_pipeline.lod import LODPhase
from terrain_pipeline.pipeline import TerrainPipeline, ViewSettings
from terrain_pipeline.shapes import ShapeKind
from terrain_pipeline.sources.elevation import ElevationGrid
from terrain_pipeline.tile_compositor import ImageryTexture


class FakeCompositor:
    """Serves a fixed cone grid for every zoom and records requests."""

    def __init__(self):
        self.dem_zooms = []
        self.imagery_zooms = []
        self.fetched = threading.Event()
        self.fail_zoom = None
        self.grid_bounds = None
        self.failures = 0

    def fetch_elevation_grid(self, bounds, zoom, url_template=None):
        self.dem_zooms.append(zoom)
        if zoom == self.fail_zoom and self.failures:
            self.failures -= 1
            raise CompositeAllocationError(f"no room for z{zoom}")
        self.fetched.set()
        return ElevationGrid(make_cone(), self.grid_bounds)

    def fetch_imagery(self, bounds, zoom, url_template=None):
        self.imagery_zooms.append(zoom)
        return ImageryTexture(
            pixels=np.zeros((256, 256, 3), dtype=np.uint8),
            offset=(0.1, 0.2),
            repeat=(0.5, 0.5),
            zoom=zoom,
        )


def make_pipeline(config=None):
    compositor = FakeCompositor()
    clock = FakeClock()
    pipeline = TerrainPipeline(
        config or TerrainConfig(),
        compositor=compositor,
        executor=ImmediateExecutor(),
        clock=clock,
    )
    return pipeline, compositor, clock


def units(pipeline, meters):
    return meters / pipeline.lod.meters_per_unit


class TestLoad:
    """Tests for the initial synchronous load."""

    def test_empty_before_load(self):
        """Test the first snapshot holds settings but no geometry."""
        pipeline, _, _ = make_pipeline()
        snapshot = pipeline.snapshot

        assert not snapshot.ready
        assert snapshot.grid is None
        assert snapshot.settings == ViewSettings.from_config(pipeline.config)
        assert pipeline.height_at(0.0, 0.0) is None

    def test_load_optimal_zoom(self):
        """Test load uses the optimal zoom when none is given."""
        pipeline, compositor, _ = make_pipeline()
        snapshot = pipeline.load()

        assert compositor.dem_zooms == [15]
        assert snapshot.ready
        assert snapshot.contours is not None
        assert snapshot.versions.dem == 1
        assert snapshot.lod.dem_zoom == 15

    def test_load_explicit_zoom(self):
        pipeline, compositor, _ = make_pipeline()
        snapshot = pipeline.load(12)

        assert compositor.dem_zooms == [12]
        assert snapshot.lod.dem_zoom == 12
        assert snapshot.imagery is None
        assert snapshot.mesh.colors is not None

    def test_load_with_base_map(self):
        """Test a configured base map adds imagery and drops palette colours."""
        config = TerrainConfig(sources=SourceConfig(base_map="Google Satellite"))
        pipeline, compositor, _ = make_pipeline(config)

        snapshot = pipeline.load(12)

        assert compositor.imagery_zooms == [15]
        assert snapshot.imagery is not None
        assert snapshot.versions.imagery == 1
        assert snapshot.mesh.colors is None

    def test_contours_disabled(self):
        config = TerrainConfig(contours=replace(TerrainConfig().contours, enabled=False))
        pipeline, _, _ = make_pipeline(config)
        assert pipeline.load(12).contours is None

    def test_height_query(self):
        """Test point queries read the raw grid under a plan position."""
        pipeline, _, _ = make_pipeline()
        pipeline.load(12)

        assert pipeline.height_at(0.0, 0.0) == pytest.approx(500.0)
        assert pipeline.height_at(-50.0, 50.0) < 300.0

        lat, lon = pipeline.geo_at(0.0, 0.0)
        bounds = pipeline.config.bounds
        assert bounds.lat_min < lat < bounds.lat_max
        assert bounds.lon_min < lon < bounds.lon_max

    def test_geo_query_uses_grid_extent(self):
        """Test plan corners map to the grid's own extent once a grid is shown."""
        pipeline, compositor, _ = make_pipeline()
        extent = GeographicBounds(lat_min=14.39, lon_min=101.01, lat_max=14.41, lon_max=101.03)
        compositor.grid_bounds = extent

        assert pipeline.plan_mapping.bounds == pipeline.config.bounds
        pipeline.load(12)

        lat, lon = pipeline.geo_at(-50.0, 50.0)
        assert lat == pytest.approx(extent.lat_max)
        assert lon == pytest.approx(extent.lon_min)
        lat, lon = pipeline.geo_at(50.0, -50.0)
        assert lat == pytest.approx(extent.lat_min)
        assert lon == pytest.approx(extent.lon_max)


class TestSettings:
    """Tests for incremental rebuilds on settings changes."""

    def test_exaggeration_fast_path(self):
        """Test exaggeration alone rescales the mesh and keeps contours."""
        pipeline, _, _ = make_pipeline()
        before = pipeline.load(12)
        z_before = before.mesh.top_vertices[:, 2].copy()

        after = pipeline.update_settings(exaggeration_percent=400.0)

        assert after.mesh is not before.mesh
        assert after.contours is before.contours
        np.testing.assert_array_equal(after.mesh.top_faces, before.mesh.top_faces)
        np.testing.assert_allclose(after.mesh.top_vertices[:, 2], 2.0 * z_before)
        # The previous snapshot is left untouched
        np.testing.assert_array_equal(before.mesh.top_vertices[:, 2], z_before)

        assert after.versions.mesh == before.versions.mesh + 1
        assert after.versions.contours == before.versions.contours
        assert after.versions.settings == before.versions.settings + 1

    def test_shape_rebuilds_everything(self):
        """Test a shape change rebuilds mesh and contours."""
        pipeline, _, _ = make_pipeline()
        before = pipeline.load(12)

        after = pipeline.update_settings(shape="ellipse")

        assert after.settings.shape is ShapeKind.ELLIPSE
        assert after.mesh.shape is ShapeKind.ELLIPSE
        assert after.contours is not before.contours
        assert after.versions.contours == before.versions.contours + 1
        assert after.grid is before.grid

    def test_interval_rebuilds_contours_only(self):
        pipeline, _, _ = make_pipeline()
        before = pipeline.load(12)

        after = pipeline.update_settings(contour_interval=25.0)

        assert after.mesh is before.mesh
        assert after.contours.interval == 25.0

    def test_palette_recolours(self):
        pipeline, _, _ = make_pipeline()
        before = pipeline.load(12)

        after = pipeline.update_settings(palette="Snow")

        assert after.mesh is not before.mesh
        assert not np.allclose(after.mesh.colors, before.mesh.colors)

    def test_no_change_keeps_snapshot(self):
        pipeline, _, _ = make_pipeline()
        before = pipeline.load(12)
        assert pipeline.update_settings(exaggeration_percent=before.settings.exaggeration_percent) is before

    def test_exaggeration_clamped(self):
        pipeline, _, _ = make_pipeline()
        assert pipeline.update_settings(exaggeration_percent=5000.0).settings.exaggeration_percent == 500.0
        assert pipeline.update_settings(exaggeration_percent=1.0).settings.exaggeration_percent == 10.0

    def test_unknown_setting(self):
        pipeline, _, _ = make_pipeline()
        with pytest.raises(TypeError):
            pipeline.update_settings(colour="red")

    def test_unknown_palette(self):
        pipeline, _, _ = make_pipeline()
        with pytest.raises(UnknownPaletteError):
            pipeline.update_settings(palette="Neon")

    def test_settings_before_load(self):
        """Test settings can change before any grid exists."""
        pipeline, _, _ = make_pipeline()
        snapshot = pipeline.update_settings(exaggeration_percent=300.0)
        assert snapshot.mesh is None
        assert pipeline.load(12).mesh.exaggeration == pytest.approx(3.0)

    def test_contour_batches_follow_exaggeration(self):
        """Test contour heights scale with the mesh."""
        pipeline, _, _ = make_pipeline()
        pipeline.load(12)
        _, major_low = pipeline.snapshot.contour_batches(offset=0.0)

        pipeline.update_settings(exaggeration_percent=400.0)
        _, major_high = pipeline.snapshot.contour_batches(offset=0.0)

        np.testing.assert_allclose(major_high[:, 2], 2.0 * major_low[:, 2], rtol=1e-5)


class TestPolling:
    """Tests for LOD-driven refetching."""

    def test_far_zoom_change_refetches(self):
        """Test a two-level zoom change fetches and swaps in a new grid."""
        pipeline, compositor, clock = make_pipeline()
        first = pipeline.load(12)

        clock.advance()
        decision = pipeline.poll(units(pipeline, 400.0))

        assert decision.fetch is not None
        assert compositor.dem_zooms == [12, 15]
        snapshot = pipeline.snapshot
        assert snapshot.lod.dem_zoom == 15
        assert snapshot.versions.dem == first.versions.dem + 1
        assert snapshot.grid is not first.grid

    def test_small_change_ignored(self):
        """Test a one-level zoom change fetches nothing."""
        pipeline, compositor, clock = make_pipeline()
        pipeline.load(12)
        before = pipeline.snapshot

        clock.advance()
        pipeline.poll(units(pipeline, 3000.0))

        assert compositor.dem_zooms == [12]
        assert pipeline.snapshot.versions.dem == before.versions.dem

    def test_remesh_without_fetch(self):
        """Test a new mesh cap rebuilds the mesh from the current grid."""
        pipeline, compositor, clock = make_pipeline()
        before = pipeline.load(12)

        clock.advance()
        decision = pipeline.poll(units(pipeline, 1500.0))

        assert decision.fetch is None and decision.remesh
        assert compositor.dem_zooms == [12]
        after = pipeline.snapshot
        assert after.mesh is not before.mesh
        assert after.grid is before.grid
        assert after.lod.mesh_resolution_cap == 256

    def test_interval_respected(self):
        pipeline, compositor, clock = make_pipeline()
        pipeline.load(12)

        clock.advance()
        assert pipeline.poll(units(pipeline, 3000.0)) is not None
        assert pipeline.poll(units(pipeline, 400.0)) is None
        assert compositor.dem_zooms == [12]

    def test_superseded_grid_discarded(self):
        """Test a late result for an old token does not replace the snapshot."""
        pipeline, _, clock = make_pipeline()
        pipeline.load(12)
        stale_token = pipeline.lod.token

        clock.advance()
        pipeline.poll(units(pipeline, 400.0))
        current = pipeline.snapshot

        applied = pipeline._apply_dem(stale_token, ElevationGrid(np.zeros((4, 4))))

        assert applied is False
        assert pipeline.snapshot is current

    def test_failed_fetch_retried(self):
        """Test a failed background fetch is requested again on a later poll."""
        pipeline, compositor, clock = make_pipeline()
        compositor.failures = 1
        compositor.fail_zoom = 15
        pipeline.load(12)

        clock.advance()
        pipeline.poll(units(pipeline, 400.0))

        assert compositor.dem_zooms == [12, 15]
        assert pipeline.snapshot.lod.dem_zoom == 12
        assert pipeline.lod.state.dem_zoom == 12
        assert pipeline.lod.phase is LODPhase.STABLE

        clock.advance()
        pipeline.poll(units(pipeline, 400.0))

        assert compositor.dem_zooms == [12, 15, 15]
        assert pipeline.snapshot.lod.dem_zoom == 15

    def test_failed_load_raises(self):
        pipeline, compositor, _ = make_pipeline()
        compositor.failures = 1
        compositor.fail_zoom = 12
        with pytest.raises(CompositeAllocationError):
            pipeline.load(12)
        assert pipeline.lod.phase is LODPhase.STABLE
        assert pipeline.load(12).ready

    def test_imagery_budget(self):
        """Test background imagery zoom is clamped to the tile budget."""
        config = TerrainConfig(sources=SourceConfig(base_map="OpenStreetMap"))
        pipeline, compositor, clock = make_pipeline(config)
        pipeline.load(12)

        clock.advance()
        pipeline.poll(units(pipeline, 400.0))

        assert compositor.imagery_zooms[-1] <= 18
        assert pipeline.snapshot.versions.imagery == 2


class TestBackgroundPolling:
    """Tests for the polling thread lifecycle."""

    def test_poller_triggers_fetch(self):
        """Test the background poller refetches when the camera moves."""
        config = TerrainConfig(lod=LODConfig(poll_interval=0.01))
        compositor = FakeCompositor()
        with TerrainPipeline(config, compositor=compositor, clock=time.monotonic) as pipeline:
            pipeline.load(12)
            compositor.fetched.clear()
            distance = units(pipeline, 400.0)

            poller = pipeline.start_polling(lambda: distance)
            assert compositor.fetched.wait(timeout=5.0)
            assert poller.running

            deadline = time.monotonic() + 5.0
            while pipeline.snapshot.lod.dem_zoom != 15 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert pipeline.snapshot.lod.dem_zoom == 15

        assert not poller.running
