"""
Data sources for the terrain pipeline.

Provides:
- Raster tile fetching for any {z}/{x}/{y} template (elevation and imagery)
- Terrarium elevation decoding and the ElevationGrid
"""

from .tiles import TileSource
from .elevation import (
    ElevationGrid,
    decode_terrarium,
    decode_terrarium_rgb,
    encode_terrarium,
    encode_terrarium_rgb,
    grid_from_composite,
)

__all__ = [
    "TileSource",
    "ElevationGrid",
    "decode_terrarium",
    "decode_terrarium_rgb",
    "encode_terrarium",
    "encode_terrarium_rgb",
    "grid_from_composite",
]
