#!/usr/bin/env python3
"""Pytest configuration and shared fixtures."""
import tempfile
from concurrent.futures import Future
from pathlib import Path

import numpy as np
import pytest

from terrain_pipeline.errors import TileFetchError
from terrain_pipeline.geometry import GeographicBounds
from terrain_pipeline.sources.elevation import ElevationGrid, encode_terrarium_rgb


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def default_bounds():
    """Small footprint (about 1 km across)."""
    return GeographicBounds(lat_min=14.397022, lon_min=101.013221, lat_max=14.403549, lon_max=101.022433)


@pytest.fixture
def wide_bounds():
    """Larger footprint (about 18 km across)."""
    return GeographicBounds(lat_min=16.828773, lon_min=101.676558, lat_max=16.955233, lon_max=101.843331)


def make_ramp(rows=32, cols=32, low=100.0, high=200.0):
    """Heights rising west to east, constant along each column."""
    return np.tile(np.linspace(low, high, cols, dtype=np.float32), (rows, 1))


def make_cone(size=33, top=500.0, slope=10.0):
    """Single peak at the grid center."""
    c = (size - 1) / 2
    yy, xx = np.mgrid[0:size, 0:size]
    return (top - slope * np.hypot(xx - c, yy - c)).astype(np.float32)


@pytest.fixture
def ramp_grid():
    return ElevationGrid(make_ramp())


@pytest.fixture
def peak_grid():
    return ElevationGrid(make_cone())


class FakeTileSource:
    """In-memory tile source.

    Tiles hold a Terrarium-encoded elevation derived from the tile index, or
    a solid RGB fill when `fill` is given. Tiles in `failing` raise
    TileFetchError.
    """

    def __init__(self, tile_size=256, failing=(), fill=None, pixel_size=None):
        self.tile_size = tile_size
        self.failing = set(failing)
        self.fill = fill
        self.pixel_size = pixel_size or tile_size
        self.requested = []

    @staticmethod
    def elevation_for(tile):
        return 100.0 + tile.x % 7 * 10.0 + tile.y % 5

    def fetch(self, tile):
        self.requested.append(tile)
        if tile in self.failing:
            raise TileFetchError(f"fake://{tile}", "simulated failure")
        size = self.pixel_size
        if self.fill is not None:
            return np.full((size, size, 3), self.fill, dtype=np.uint8)
        elevation = np.full((size, size), self.elevation_for(tile))
        return encode_terrarium_rgb(elevation)


@pytest.fixture
def fake_source():
    return FakeTileSource()


class ImmediateExecutor:
    """Executor that runs submitted work synchronously."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=0.0):
        self.now = now

    def advance(self, seconds=1.0):
        self.now += seconds

    def __call__(self):
        return self.now
