"""
Terrain Pipeline

Turns a geographic bounding box into a 3D terrain block:
- Terrarium elevation tiles (AWS Terrain Tiles) fetched and stitched concurrently
- Decoded elevation grid cropped to the exact bounds
- Heightfield mesh with soil skirts for a rectangle or ellipse footprint
- Contour lines from marching squares, with major-level labels
- Distance-driven level of detail with hysteresis

Usage:
    # Footprint size and tile requirements
    python -m terrain_pipeline.cli info --area khao_yai

    # Build mesh and contours
    python -m terrain_pipeline.cli build --area khao_yai -o terrain.glb

    # From Python
    from terrain_pipeline import TerrainConfig, TerrainPipeline

    with TerrainPipeline(TerrainConfig()) as pipeline:
        snapshot = pipeline.load()
        snapshot.mesh.to_trimesh().export("terrain.glb")
"""

from .config import TerrainConfig, PALETTES, get_palette
from .errors import (
    TerrainError,
    InvalidBoundsError,
    TileFetchError,
    CompositeAllocationError,
    InvalidGridError,
    UnknownPaletteError,
)
from .geometry import (
    GeographicBounds,
    TileIndex,
    TileRange,
    PlanMapping,
    geodesic_dimensions,
    optimal_zoom,
    tile_range,
)
from .shapes import ShapeKind
from .sources import ElevationGrid, TileSource, decode_terrarium
from .tile_compositor import TileCompositor, CompositeResult, ImageryTexture
from .lod import LODController, LODPoller, LODState
from .mesh import HeightfieldMesh, build_heightfield_mesh
from .contours import ContourSet, extract_contours, line_batches
from .pipeline import TerrainPipeline, TerrainSnapshot, ViewSettings
from .areas import Area, AREAS, get_area, get_area_bounds

__all__ = [
    # Config
    "TerrainConfig",
    "PALETTES",
    "get_palette",
    # Errors
    "TerrainError",
    "InvalidBoundsError",
    "TileFetchError",
    "CompositeAllocationError",
    "InvalidGridError",
    "UnknownPaletteError",
    # Geometry
    "GeographicBounds",
    "TileIndex",
    "TileRange",
    "PlanMapping",
    "geodesic_dimensions",
    "optimal_zoom",
    "tile_range",
    "ShapeKind",
    # Sources
    "ElevationGrid",
    "TileSource",
    "decode_terrarium",
    "TileCompositor",
    "CompositeResult",
    "ImageryTexture",
    # Level of detail
    "LODController",
    "LODPoller",
    "LODState",
    # Geometry builders
    "HeightfieldMesh",
    "build_heightfield_mesh",
    "ContourSet",
    "extract_contours",
    "line_batches",
    # Orchestration
    "TerrainPipeline",
    "TerrainSnapshot",
    "ViewSettings",
    # Areas
    "Area",
    "AREAS",
    "get_area",
    "get_area_bounds",
]
__version__ = "0.1.0"
