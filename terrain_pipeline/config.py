"""
Configuration dataclasses for the terrain pipeline.

Centralizes all tunable parameters: tile sources, zoom limits, level of
detail tables, mesh and contour settings, colour palettes. Configuration
is immutable; derive a modified copy with dataclasses.replace and pass it
into each stage explicitly.
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import UnknownPaletteError
from .geometry import GeographicBounds
from .shapes import ShapeKind


# Default target area
DEFAULT_BOUNDS = GeographicBounds(
    lat_min=14.397022,
    lon_min=101.013221,
    lat_max=14.403549,
    lon_max=101.022433,
)


PALETTES: Dict[str, Tuple[str, ...]] = {
    "Terrain": ("#05037eff", "#16a870ff", "#eeff00d3", "#ee2828ff", "#f18304ff", "#faf7f5ff"),
    "Tropical": ("#006400", "#228B22", "#F4A460", "#8B4513"),
    "Desert": ("#F4A460", "#D2691E", "#CD5C5C", "#8B0000"),
    "Volcanic": ("#000000", "#550000", "#aa0000", "#ff4500"),
    "Snow": ("#2f4f4f", "#708090", "#b0c4de", "#ffffff"),
    "Oceanic": ("#000080", "#0000cd", "#20b2aa", "#e0ffff"),
}

DEFAULT_PALETTE = "Terrain"


def get_palette(name: str) -> Tuple[str, ...]:
    """Look up a palette by name."""
    try:
        return PALETTES[name]
    except KeyError:
        raise UnknownPaletteError(
            f"Unknown palette '{name}'. Available: {', '.join(PALETTES)}"
        ) from None


@dataclass(frozen=True)
class SourceConfig:
    """URL templates and limits for raster tile sources."""

    # AWS Terrain Tiles (SRTM), Terrarium encoding
    dem_url: str = "https://s3.amazonaws.com/elevation-tiles-prod/terrarium/{z}/{x}/{y}.png"
    dem_max_zoom: int = 15

    # Base map tile servers (XYZ)
    base_maps: Dict[str, str] = field(default_factory=lambda: {
        "Google Satellite": "https://mt1.google.com/vt/lyrs=s&x={x}&y={y}&z={z}",
        "OpenStreetMap": "https://tile.openstreetmap.org/{z}/{x}/{y}.png",
    })
    # None = colour the terrain with the palette
    base_map: Optional[str] = None
    imagery_max_zoom: int = 18

    tile_size: int = 256
    timeout: Optional[float] = 30.0
    user_agent: str = "TerrainPipeline/0.1"

    @property
    def imagery_url(self) -> Optional[str]:
        if self.base_map is None:
            return None
        return self.base_maps[self.base_map]


@dataclass(frozen=True)
class ContourConfig:
    """Contour line extraction settings."""

    enabled: bool = True
    interval: float = 10.0  # meters
    major_interval: float = 50.0  # meters
    show_labels: bool = True
    max_labels: int = 20
    line_offset: float = 0.1  # plan units above the surface


@dataclass(frozen=True)
class ExaggerationConfig:
    """Vertical exaggeration in percent (100 = true scale)."""

    default: float = 200.0
    min: float = 10.0
    max: float = 500.0

    def clamp(self, percent: float) -> float:
        return max(self.min, min(self.max, percent))

    @staticmethod
    def factor(percent: float) -> float:
        """Convert a percentage into a height multiplier."""
        return percent / 100.0


@dataclass(frozen=True)
class LODConfig:
    """Level-of-detail tables and polling behaviour.

    Step tables map an upper distance bound in meters to a value; the
    first row whose bound is >= the camera distance wins.
    """

    poll_interval: float = 0.5  # seconds
    hysteresis_levels: int = 2
    min_zoom: int = 8
    target_resolution: int = 1024
    imagery_zoom_offset: int = 3

    dem_zoom_steps: Tuple[Tuple[float, int], ...] = (
        (500.0, 15),
        (1000.0, 14),
        (2000.0, 13),
        (4000.0, 12),
        (8000.0, 11),
        (16000.0, 10),
        (32000.0, 9),
        (math.inf, 8),
    )
    mesh_resolution_steps: Tuple[Tuple[float, int], ...] = (
        (1000.0, 512),
        (4000.0, 256),
        (math.inf, 128),
    )


@dataclass(frozen=True)
class MeshConfig:
    """Heightfield mesh settings."""

    plan_size: float = 100.0
    # Soil profile depth below the lowest point, percent of the smaller footprint side
    soil_depth_percent: float = 5.0
    ellipse_segments: int = 128
    # Ellipse radius relative to the half extent (matches the alpha mask)
    ellipse_inset: float = 0.992
    default_resolution_cap: int = 512

    @property
    def half_extent(self) -> float:
        return self.plan_size / 2

    def footprint_half_extent(self, shape: ShapeKind) -> float:
        """Half extent of the visible footprint for a shape."""
        if shape is ShapeKind.ELLIPSE:
            return self.half_extent * self.ellipse_inset
        return self.half_extent


@dataclass(frozen=True)
class TerrainConfig:
    """Master configuration for the terrain pipeline."""

    bounds: GeographicBounds = DEFAULT_BOUNDS
    shape: ShapeKind = ShapeKind.RECTANGLE
    palette: str = DEFAULT_PALETTE

    sources: SourceConfig = field(default_factory=SourceConfig)
    contours: ContourConfig = field(default_factory=ContourConfig)
    exaggeration: ExaggerationConfig = field(default_factory=ExaggerationConfig)
    lod: LODConfig = field(default_factory=LODConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)

    # Processing
    workers: int = 8
    cache_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        get_palette(self.palette)

    @property
    def palette_colors(self) -> Tuple[str, ...]:
        return get_palette(self.palette)
