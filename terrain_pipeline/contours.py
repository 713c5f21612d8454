"""
Contour line extraction with marching squares.

For each elevation level on the interval, every 2x2 cell of the grid is
classified by which corners are at or above the level. Crossing points
are linearly interpolated along the bisected cell edges and joined into
segments. Segments are not stitched into closed rings; each level is a
bag of short polylines, clipped to the footprint shape.

Cell corners follow grid indices (x = column, y = row):

    v01 (x, y+1) ---- top ---- v11 (x+1, y+1)
         |                          |
        left                      right
         |                          |
    v00 (x, y)  ---- bottom ---- v10 (x+1, y)

Saddle cells (all four edges crossed) are resolved by comparing the
level with the mean of the four corners.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .geometry import PlanMapping
from .shapes import ShapeKind
from .sources.elevation import ElevationGrid


logger = logging.getLogger(__name__)

# Edge value differences below this use the edge midpoint
FLAT_EDGE_EPSILON = 1e-4

BOTTOM, RIGHT, TOP, LEFT = range(4)

# Edge pairs joined in cells with exactly two crossings, in edge order
_EDGE_PAIRS = [
    (BOTTOM, RIGHT),
    (BOTTOM, TOP),
    (BOTTOM, LEFT),
    (RIGHT, TOP),
    (RIGHT, LEFT),
    (TOP, LEFT),
]


@dataclass
class ContourLevel:
    """All polylines of one elevation level, in plan coordinates."""

    elevation: float
    is_major: bool
    polylines: List[NDArray[np.float64]] = field(default_factory=list)

    @property
    def segment_count(self) -> int:
        return sum(len(p) - 1 for p in self.polylines)


@dataclass
class LabelAnchor:
    """Position for an elevation label on a major contour."""

    position: Tuple[float, float]
    elevation: float

    @property
    def text(self) -> str:
        return f"{self.elevation:g}m"


@dataclass
class ContourSet:
    """Contour lines for one grid, shape and interval setting."""

    levels: List[ContourLevel] = field(default_factory=list)
    labels: List[LabelAnchor] = field(default_factory=list)
    interval: float = 0.0
    major_interval: float = 0.0

    @property
    def major_levels(self) -> List[ContourLevel]:
        return [level for level in self.levels if level.is_major]

    def level(self, elevation: float) -> Optional[ContourLevel]:
        for candidate in self.levels:
            if math.isclose(candidate.elevation, elevation):
                return candidate
        return None


def contour_levels(min_height: float, max_height: float, interval: float) -> List[float]:
    """Elevations from ceil(min/interval) to floor(max/interval), times interval."""
    if interval <= 0:
        raise ValueError(f"Contour interval must be positive, got {interval}")
    first = math.ceil(min_height / interval)
    last = math.floor(max_height / interval)
    return [k * interval for k in range(first, last + 1)]


def is_major_level(elevation: float, major_interval: float) -> bool:
    if major_interval <= 0:
        return False
    return math.isclose(math.remainder(elevation, major_interval), 0.0, abs_tol=1e-9)


def _interpolate(p1x, p1y, v1, p2x, p2y, v2, level):
    """Crossing points along edges p1 -> p2 (vectorized)."""
    dv = v2 - v1
    flat = np.abs(dv) < FLAT_EDGE_EPSILON
    t = np.where(flat, 0.5, (level - v1) / np.where(flat, 1.0, dv))
    return np.stack([p1x + t * (p2x - p1x), p1y + t * (p2y - p1y)], axis=-1)


def marching_squares(values: NDArray[np.floating], level: float) -> NDArray[np.float64]:
    """Contour segments of one level in grid coordinates.

    Args:
        values: (rows, cols) elevation array
        level: Threshold elevation

    Returns:
        Array of shape (n, 2, 2): n segments of two (x, y) points, x along
        columns and y along rows, in row-major cell order
    """
    v = np.asarray(values, dtype=np.float64)
    rows, cols = v.shape
    if rows < 2 or cols < 2:
        return np.empty((0, 2, 2))

    v00 = v[:-1, :-1]
    v10 = v[:-1, 1:]
    v11 = v[1:, 1:]
    v01 = v[1:, :-1]

    a00 = v00 >= level
    a10 = v10 >= level
    a11 = v11 >= level
    a01 = v01 >= level

    case = a00 * 1 | a10 * 2 | a11 * 4 | a01 * 8
    active = (case != 0) & (case != 15)
    if not active.any():
        return np.empty((0, 2, 2))

    cy, cx = np.nonzero(active)
    x = cx.astype(np.float64)
    y = cy.astype(np.float64)
    c00, c10, c11, c01 = v00[active], v10[active], v11[active], v01[active]

    crossed = np.stack([
        a00[active] != a10[active],
        a10[active] != a11[active],
        a11[active] != a01[active],
        a01[active] != a00[active],
    ])
    points = np.stack([
        _interpolate(x, y, c00, x + 1, y, c10, level),
        _interpolate(x + 1, y, c10, x + 1, y + 1, c11, level),
        _interpolate(x + 1, y + 1, c11, x, y + 1, c01, level),
        _interpolate(x, y + 1, c01, x, y, c00, level),
    ])
    n_crossed = crossed.sum(axis=0)
    cell_order = cy * cols + cx

    starts = []
    ends = []
    order = []

    two = n_crossed == 2
    for first, second in _EDGE_PAIRS:
        mask = two & crossed[first] & crossed[second]
        if mask.any():
            starts.append(points[first][mask])
            ends.append(points[second][mask])
            order.append(cell_order[mask])

    saddle = n_crossed == 4
    if saddle.any():
        mean_above = ((c00 + c10 + c11 + c01) / 4.0) >= level
        high = saddle & mean_above
        low = saddle & ~mean_above
        for mask, pairs in (
            (high, ((BOTTOM, LEFT), (TOP, RIGHT))),
            (low, ((BOTTOM, RIGHT), (TOP, LEFT))),
        ):
            if not mask.any():
                continue
            for first, second in pairs:
                starts.append(points[first][mask])
                ends.append(points[second][mask])
                # Keep the two segments of a saddle cell adjacent
                order.append(cell_order[mask] + (0.5 if first == TOP else 0.0))

    start = np.concatenate(starts)
    end = np.concatenate(ends)
    sort = np.argsort(np.concatenate(order), kind="stable")
    return np.stack([start, end], axis=1)[sort]


def grid_to_plan(points: NDArray[np.float64], width: int, height: int, plan_size: float = 100.0) -> NDArray[np.float64]:
    """Map grid (x=col, y=row) to plan coordinates; row 0 is the north edge."""
    half = plan_size / 2
    out = np.empty_like(points, dtype=np.float64)
    out[..., 0] = points[..., 0] * (plan_size / (width - 1)) - half
    out[..., 1] = half - points[..., 1] * (plan_size / (height - 1))
    return out


def clip_polyline(
    points: NDArray[np.float64],
    shape: ShapeKind,
    half_extent: float,
) -> List[NDArray[np.float64]]:
    """Split a polyline into the runs of consecutive points inside the shape.

    Runs shorter than two points are dropped.
    """
    inside = np.asarray(shape.contains(points[:, 0], points[:, 1], half_extent), dtype=bool)
    if inside.all():
        return [points]

    runs = []
    start = None
    for i, flag in enumerate(inside):
        if flag and start is None:
            start = i
        elif not flag and start is not None:
            if i - start >= 2:
                runs.append(points[start:i])
            start = None
    if start is not None and len(points) - start >= 2:
        runs.append(points[start:])
    return runs


def _clip_segments(
    segments: NDArray[np.float64],
    shape: ShapeKind,
    half_extent: float,
) -> List[NDArray[np.float64]]:
    """Vectorized clip for two-point polylines: keep those fully inside."""
    flat = segments.reshape(-1, 2)
    inside = np.asarray(shape.contains(flat[:, 0], flat[:, 1], half_extent), dtype=bool)
    keep = inside.reshape(-1, 2).all(axis=1)
    return list(segments[keep])


def _label_anchor(polyline: NDArray[np.float64]) -> Tuple[float, float]:
    """Midpoint of the middle segment of a polyline."""
    i = (len(polyline) - 1) // 2
    mid = (polyline[i] + polyline[i + 1]) / 2
    return (float(mid[0]), float(mid[1]))


def extract_contours(
    grid: ElevationGrid,
    interval: float,
    major_interval: float,
    shape: ShapeKind,
    plan_size: float = 100.0,
    max_labels: int = 20,
    ellipse_inset: float = 0.992,
) -> ContourSet:
    """Extract contour lines for every level on the interval.

    Args:
        grid: Elevation grid (row 0 = north)
        interval: Spacing between contour levels in meters
        major_interval: Levels divisible by this are major (labelled)
        shape: Footprint shape used for clipping
        plan_size: Footprint edge length in plan units
        max_labels: Maximum number of label anchors emitted
        ellipse_inset: Ellipse radius relative to the half extent

    Returns:
        ContourSet with one entry per level that produced lines
    """
    half_extent = plan_size / 2
    if shape is ShapeKind.ELLIPSE:
        half_extent *= ellipse_inset

    result = ContourSet(interval=interval, major_interval=major_interval)
    for elevation in contour_levels(grid.min_height, grid.max_height, interval):
        segments = marching_squares(grid.values, elevation)
        if len(segments) == 0:
            continue

        plan_segments = grid_to_plan(segments, grid.width, grid.height, plan_size)
        polylines = _clip_segments(plan_segments, shape, half_extent)
        if not polylines:
            continue

        major = is_major_level(elevation, major_interval)
        result.levels.append(ContourLevel(elevation=elevation, is_major=major, polylines=polylines))

        # One label per major level, on its middle polyline
        if major and len(result.labels) < max_labels:
            middle = polylines[len(polylines) // 2]
            result.labels.append(LabelAnchor(_label_anchor(middle), elevation))

    logger.info(
        f"Contours: {len(result.levels)} levels, "
        f"{sum(level.segment_count for level in result.levels)} segments, "
        f"{len(result.labels)} labels"
    )
    return result


def line_batches(
    contours: ContourSet,
    base_height: float,
    height_scale: float,
    offset: float = 0.1,
) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Flatten contours into line-segment endpoint pairs for rendering.

    Each contour sits at z = (elevation - base_height) * height_scale + offset.

    Returns:
        (normal, major) arrays of shape (2n, 3): consecutive rows are the
        two endpoints of one segment
    """
    batches = {False: [], True: []}
    for level in contours.levels:
        z = (level.elevation - base_height) * height_scale + offset
        for polyline in level.polylines:
            if len(polyline) < 2:
                continue
            pairs = np.empty((2 * (len(polyline) - 1), 3), dtype=np.float32)
            pairs[0::2, :2] = polyline[:-1]
            pairs[1::2, :2] = polyline[1:]
            pairs[:, 2] = z
            batches[level.is_major].append(pairs)

    def _stack(parts):
        if not parts:
            return np.empty((0, 3), dtype=np.float32)
        return np.vstack(parts)

    return _stack(batches[False]), _stack(batches[True])


def to_feature_collection(contours: ContourSet, mapping: PlanMapping) -> Dict[str, Any]:
    """GeoJSON FeatureCollection of contour lines in WGS84 (lon, lat) order.

    Each level becomes one MultiLineString feature; label anchors become
    Point features with a "label" property.
    """
    features = []
    for level in contours.levels:
        lines = []
        for polyline in level.polylines:
            coords = []
            for x, y in polyline:
                lat, lon = mapping.plan_to_geo(float(x), float(y))
                coords.append([lon, lat])
            lines.append(coords)
        features.append({
            "type": "Feature",
            "properties": {"elevation": level.elevation, "major": level.is_major},
            "geometry": {"type": "MultiLineString", "coordinates": lines},
        })

    for label in contours.labels:
        lat, lon = mapping.plan_to_geo(*label.position)
        features.append({
            "type": "Feature",
            "properties": {"elevation": label.elevation, "label": label.text},
            "geometry": {"type": "Point", "coordinates": [lon, lat]},
        })

    return {"type": "FeatureCollection", "features": features}
