"""
Terrain elevation decoding and the elevation grid.

Terrarium encodes elevation in the RGB channels of a raster tile:

    elevation = (R × 256 + G + B / 256) - 32768

The blue channel carries sub-meter precision at 1/256 m, giving a range of
-32768 m to +32767.996 m.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ..errors import InvalidGridError
from ..geometry import GeographicBounds
from ..shapes import ShapeKind, grid_inside_mask


logger = logging.getLogger(__name__)

TERRARIUM_OFFSET = 32768.0

_generations = itertools.count(1)


def decode_terrarium(r, g, b):
    """Decode one Terrarium pixel (or arrays of channels) to meters."""
    return r * 256.0 + g + b / 256.0 - TERRARIUM_OFFSET


def decode_terrarium_rgb(rgb: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Decode Terrarium-encoded RGB to elevation in meters.

    Args:
        rgb: RGB(A) image of shape (H, W, 3+) with uint8 values

    Returns:
        Elevation array of shape (H, W) with float32 values in meters
    """
    # float64 keeps the 1/256 m step exact before narrowing
    r = rgb[..., 0].astype(np.float64)
    g = rgb[..., 1].astype(np.float64)
    b = rgb[..., 2].astype(np.float64)
    return decode_terrarium(r, g, b).astype(np.float32)


def encode_terrarium(elevation: float) -> Tuple[int, int, int]:
    """Encode meters to the nearest representable Terrarium byte triple."""
    packed = int(round((elevation + TERRARIUM_OFFSET) * 256.0))
    packed = max(0, min(packed, 0xFFFFFF))
    return (packed >> 16, (packed >> 8) & 0xFF, packed & 0xFF)


def encode_terrarium_rgb(elevation: NDArray[np.floating]) -> NDArray[np.uint8]:
    """Encode an elevation array to Terrarium RGB of shape (H, W, 3)."""
    packed = np.rint((np.asarray(elevation, dtype=np.float64) + TERRARIUM_OFFSET) * 256.0)
    packed = np.clip(packed, 0, 0xFFFFFF).astype(np.uint32)
    r = (packed >> 16).astype(np.uint8)
    g = ((packed >> 8) & 0xFF).astype(np.uint8)
    b = (packed & 0xFF).astype(np.uint8)
    return np.stack([r, g, b], axis=-1)


@dataclass(frozen=True, eq=False)
class ElevationGrid:
    """Decoded heightfield, row-major with row 0 at the north edge.

    The values array is read-only; a new fetch produces a new grid rather
    than mutating this one. min_height and max_height are computed once at
    creation.
    """

    values: NDArray[np.float32]
    # Geographic extent of the outermost sample centers, when known
    bounds: Optional[GeographicBounds] = None
    min_height: float = field(init=False)
    max_height: float = field(init=False)
    generation: int = field(init=False)

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=np.float32, copy=True)
        if values.ndim != 2 or values.shape[0] < 2 or values.shape[1] < 2:
            raise InvalidGridError(f"Elevation grid needs at least 2x2 samples, got {values.shape}")
        if not np.all(np.isfinite(values)):
            raise InvalidGridError("Elevation grid contains non-finite values")
        values.setflags(write=False)

        object.__setattr__(self, "values", values)
        object.__setattr__(self, "min_height", float(values.min()))
        object.__setattr__(self, "max_height", float(values.max()))
        object.__setattr__(self, "generation", next(_generations))

    @classmethod
    def from_rgb(cls, rgb: NDArray[np.uint8], bounds: Optional[GeographicBounds] = None) -> "ElevationGrid":
        """Build a grid from a Terrarium-encoded RGB crop."""
        return cls(decode_terrarium_rgb(rgb), bounds)

    @property
    def width(self) -> int:
        return self.values.shape[1]

    @property
    def height(self) -> int:
        return self.values.shape[0]

    @property
    def height_range(self) -> float:
        return self.max_height - self.min_height

    def value_at(self, row: int, col: int) -> float:
        return float(self.values[row, col])

    def sample_bilinear(self, gx, gy):
        """Bilinear interpolation at fractional grid coordinates.

        gx runs along columns (0 .. width-1), gy along rows
        (0 .. height-1). Indices are clamped to the grid. Accepts scalars or
        numpy arrays.
        """
        gx = np.asarray(gx, dtype=np.float64)
        gy = np.asarray(gy, dtype=np.float64)

        ix = np.floor(gx).astype(np.intp)
        iy = np.floor(gy).astype(np.intp)
        fx = gx - ix
        fy = gy - iy

        x0 = np.clip(ix, 0, self.width - 1)
        x1 = np.clip(ix + 1, 0, self.width - 1)
        y0 = np.clip(iy, 0, self.height - 1)
        y1 = np.clip(iy + 1, 0, self.height - 1)

        v = self.values
        h_top = v[y0, x0] * (1 - fx) + v[y0, x1] * fx
        h_bot = v[y1, x0] * (1 - fx) + v[y1, x1] * fx
        result = h_top * (1 - fy) + h_bot * fy

        if result.ndim == 0:
            return float(result)
        return result

    def plan_to_grid(self, x, y, plan_size: float = 100.0):
        """Convert plan coordinates to fractional (gx, gy) grid coordinates."""
        half = plan_size / 2
        gx = (np.asarray(x, dtype=np.float64) + half) / plan_size * (self.width - 1)
        gy = (half - np.asarray(y, dtype=np.float64)) / plan_size * (self.height - 1)
        return gx, gy

    def height_at_plan(self, x, y, plan_size: float = 100.0):
        """Raw elevation in meters under plan point(s) (x, y)."""
        gx, gy = self.plan_to_grid(x, y, plan_size)
        return self.sample_bilinear(gx, gy)

    def visible_range(self, shape: ShapeKind) -> Tuple[float, float]:
        """Min/max elevation of the samples visible through the footprint.

        For an ellipse, samples outside the inscribed ellipse are ignored;
        if none are inside, the full range is used.
        """
        if shape is ShapeKind.RECTANGLE:
            return (self.min_height, self.max_height)

        mask = grid_inside_mask(self.width, self.height, shape)
        if not mask.any():
            return (self.min_height, self.max_height)
        inside = self.values[mask]
        return (float(inside.min()), float(inside.max()))

    def resampled(self, rows: NDArray[np.intp], cols: NDArray[np.intp]) -> "ElevationGrid":
        """New grid taking the given source rows and columns."""
        # Downsampling keeps the first and last rows and columns, so the extent is unchanged
        return ElevationGrid(self.values[np.ix_(rows, cols)], self.bounds)


def grid_from_composite(
    rgb: NDArray[np.uint8],
    window: Optional[Tuple[slice, slice]] = None,
    bounds: Optional[GeographicBounds] = None,
) -> ElevationGrid:
    """Decode a composite (optionally restricted to a crop window) into a grid."""
    if window is not None:
        rgb = rgb[window]
    grid = ElevationGrid.from_rgb(rgb, bounds)
    logger.info(
        f"Elevation grid: {grid.width}x{grid.height}, "
        f"range {grid.min_height:.1f}..{grid.max_height:.1f} m"
    )
    return grid
