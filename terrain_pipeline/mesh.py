"""
Heightfield mesh construction.

Builds the top surface of the terrain block from an elevation grid, plus
the skirt walls that close its silhouette down to a fixed soil depth:

- Rectangle footprint: four walls (N, S, E, W) along the grid edges
- Ellipse footprint: one radial wall around the inscribed ellipse, with
  heights bilinearly interpolated from the grid

The footprint spans `plan_size` plan units centred at the origin, +x east,
+y north, +z up. Vertex z is `(raw - grid.min_height) * plan_scale *
exaggeration`; raw heights are kept per vertex so exaggeration can change
without rebuilding topology.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
import trimesh

from .config import MeshConfig
from .geometry import GeodesicDimensions
from .shapes import ShapeKind
from .sources.elevation import ElevationGrid


logger = logging.getLogger(__name__)

FALLBACK_PALETTE = ("#000000", "#ffffff")

# Dark soil top of the sediment profile, used for skirt walls on export
SOIL_COLOR = "#594433"

_HEX_RE = re.compile(r"^#?([a-f\d]{2})([a-f\d]{2})([a-f\d]{2})", re.IGNORECASE)


def hex_to_rgb(value: str) -> Tuple[float, float, float]:
    """Parse '#rrggbb' (alpha suffix ignored) into floats in 0..1."""
    match = _HEX_RE.match(value)
    if match is None:
        raise ValueError(f"Not a hex colour: {value!r}")
    return tuple(int(part, 16) / 255.0 for part in match.groups())


def palette_colors(t: NDArray[np.floating], palette: Sequence[str]) -> NDArray[np.float32]:
    """Linear interpolation across an ordered palette.

    Args:
        t: Normalized positions, clipped to 0..1
        palette: Hex colours from low to high

    Returns:
        RGB array of shape t.shape + (3,) with values 0..1
    """
    colors = np.array([hex_to_rgb(c) for c in (palette or FALLBACK_PALETTE)], dtype=np.float64)
    t = np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0)

    position = t * (len(colors) - 1)
    lower = np.minimum(np.floor(position).astype(np.intp), len(colors) - 1)
    upper = np.minimum(lower + 1, len(colors) - 1)
    factor = (position - lower)[..., None]

    result = colors[lower] + (colors[upper] - colors[lower]) * factor
    return result.astype(np.float32)


def downsample_indices(src_size: int, dst_size: int) -> NDArray[np.intp]:
    """Nearest source index for each destination index.

    src = floor(dst / (dst_size - 1) * (src_size - 1)), in integer
    arithmetic so both ends map exactly (0 -> 0, last -> last).
    """
    if dst_size >= src_size:
        return np.arange(src_size, dtype=np.intp)
    if dst_size < 2:
        raise ValueError(f"Resolution cap must be at least 2, got {dst_size}")
    dst = np.arange(dst_size, dtype=np.int64)
    return ((dst * (src_size - 1)) // (dst_size - 1)).astype(np.intp)


def downsample_grid(grid: ElevationGrid, resolution_cap: int) -> ElevationGrid:
    """Limit a grid to resolution_cap samples per axis (axes independently)."""
    if grid.width <= resolution_cap and grid.height <= resolution_cap:
        return grid
    rows = downsample_indices(grid.height, min(grid.height, resolution_cap))
    cols = downsample_indices(grid.width, min(grid.width, resolution_cap))
    return grid.resampled(rows, cols)


def grid_faces(width: int, height: int) -> NDArray[np.int64]:
    """Two upward-facing triangles per grid cell, row-major vertices."""
    iy, ix = np.meshgrid(np.arange(height - 1), np.arange(width - 1), indexing="ij")
    iy = iy.ravel()
    ix = ix.ravel()

    v0 = iy * width + ix            # (row,   col)
    v1 = iy * width + ix + 1        # (row,   col+1)
    v2 = (iy + 1) * width + ix      # (row+1, col)   one row south
    v3 = (iy + 1) * width + ix + 1  # (row+1, col+1)

    tri1 = np.column_stack([v0, v2, v1])
    tri2 = np.column_stack([v1, v2, v3])
    return np.vstack([tri1, tri2]).astype(np.int64)


@dataclass
class SkirtWall:
    """Vertical ribbon from the top edge of the terrain down to base_z.

    Vertices hold the k top points followed by the k base points, in
    counter-clockwise order seen from above, so faces wound (B1, B2, T2),
    (B1, T2, T1) face outward.
    """

    edge: str
    vertices: NDArray[np.float64]  # (2k, 3)
    normals: NDArray[np.float32]  # (2k, 3)
    uvs: NDArray[np.float32]  # (2k, 2)
    faces: NDArray[np.int64]
    raw_heights: NDArray[np.float32]  # (k,) for the top points
    base_z: float

    @property
    def top_count(self) -> int:
        return len(self.raw_heights)


def _build_wall(
    edge: str,
    xs: NDArray[np.float64],
    ys: NDArray[np.float64],
    raw: NDArray[np.floating],
    normals_xy: NDArray[np.float64],
    heights: NDArray[np.float64],
    base_z: float,
) -> SkirtWall:
    k = len(xs)
    vertices = np.empty((2 * k, 3), dtype=np.float64)
    vertices[:k, 0] = xs
    vertices[:k, 1] = ys
    vertices[:k, 2] = heights
    vertices[k:, 0] = xs
    vertices[k:, 1] = ys
    vertices[k:, 2] = base_z

    normals = np.zeros((2 * k, 3), dtype=np.float32)
    normals[:k, :2] = normals_xy
    normals[k:, :2] = normals_xy

    u = np.linspace(0.0, 1.0, k, dtype=np.float32)
    uvs = np.empty((2 * k, 2), dtype=np.float32)
    uvs[:k, 0] = u
    uvs[:k, 1] = 0.0  # V=0 at the top
    uvs[k:, 0] = u
    uvs[k:, 1] = 1.0

    i = np.arange(k - 1)
    t1, t2 = i, i + 1
    b1, b2 = k + i, k + i + 1
    faces = np.vstack([
        np.column_stack([b1, b2, t2]),
        np.column_stack([b1, t2, t1]),
    ]).astype(np.int64)

    return SkirtWall(
        edge=edge,
        vertices=vertices,
        normals=normals,
        uvs=uvs,
        faces=faces,
        raw_heights=np.asarray(raw, dtype=np.float32),
        base_z=base_z,
    )


@dataclass
class HeightfieldMesh:
    """Top surface plus skirt walls of one terrain block.

    Rebuilt whenever the grid, shape or resolution cap changes; only
    set_exaggeration mutates it in place.
    """

    shape: ShapeKind
    grid_width: int
    grid_height: int
    top_vertices: NDArray[np.float64]  # (N, 3)
    top_faces: NDArray[np.int64]  # (M, 3)
    raw_heights: NDArray[np.float32]  # (N,)
    inside_mask: NDArray[np.bool_]  # (N,) vertex visible through the footprint
    base_height: float  # meters mapped to z = 0
    plan_scale: float  # plan units per meter
    exaggeration: float
    colors: Optional[NDArray[np.float32]] = None  # (N, 3) or None when textured
    visible_range: Tuple[float, float] = (0.0, 0.0)
    skirts: List[SkirtWall] = field(default_factory=list)

    @property
    def vertex_count(self) -> int:
        return len(self.top_vertices) + sum(len(s.vertices) for s in self.skirts)

    @property
    def face_count(self) -> int:
        return len(self.top_faces) + sum(len(s.faces) for s in self.skirts)

    def height_to_z(self, raw: NDArray[np.floating], exaggeration: Optional[float] = None) -> NDArray[np.float64]:
        e = self.exaggeration if exaggeration is None else exaggeration
        return ((np.asarray(raw, dtype=np.float64) - self.base_height) * self.plan_scale) * e

    def set_exaggeration(self, exaggeration: float) -> None:
        """Update vertex heights in place; topology and base depth are untouched."""
        self.exaggeration = exaggeration
        self.top_vertices[:, 2] = self.height_to_z(self.raw_heights)
        for skirt in self.skirts:
            skirt.vertices[:skirt.top_count, 2] = self.height_to_z(skirt.raw_heights)

    def visible_faces(self) -> NDArray[np.int64]:
        """Top faces whose three vertices are inside the footprint."""
        if self.shape is ShapeKind.RECTANGLE:
            return self.top_faces
        keep = self.inside_mask[self.top_faces].all(axis=1)
        return self.top_faces[keep]

    def to_trimesh(self) -> trimesh.Trimesh:
        """Combine top surface and skirts into one trimesh for export."""
        vertices = [self.top_vertices]
        faces = [self.visible_faces()]

        if self.colors is not None:
            top_rgb = self.colors
        else:
            top_rgb = np.ones((len(self.top_vertices), 3), dtype=np.float32)
        colors = [top_rgb]
        soil = np.array(hex_to_rgb(SOIL_COLOR), dtype=np.float32)

        offset = len(self.top_vertices)
        for skirt in self.skirts:
            vertices.append(skirt.vertices)
            faces.append(skirt.faces + offset)
            colors.append(np.tile(soil, (len(skirt.vertices), 1)))
            offset += len(skirt.vertices)

        rgb = np.vstack(colors)
        rgba = np.empty((len(rgb), 4), dtype=np.uint8)
        rgba[:, :3] = np.round(rgb * 255).astype(np.uint8)
        rgba[:, 3] = 255

        return trimesh.Trimesh(
            vertices=np.vstack(vertices),
            faces=np.vstack(faces),
            vertex_colors=rgba,
            process=False,
        )


def _rectangle_skirts(
    grid: ElevationGrid,
    half: float,
    z_of: Callable[[NDArray], NDArray],
    base_z: float,
) -> List[SkirtWall]:
    w, h = grid.width, grid.height
    v = grid.values
    xs = np.linspace(-half, half, w)
    ys = np.linspace(half, -half, h)  # row 0 = north

    # Each edge walks counter-clockwise seen from above
    edges = [
        ("N", xs[::-1], np.full(w, half), v[0, ::-1], (0.0, 1.0)),
        ("S", xs, np.full(w, -half), v[-1, :], (0.0, -1.0)),
        ("E", np.full(h, half), ys[::-1], v[::-1, -1], (1.0, 0.0)),
        ("W", np.full(h, -half), ys, v[:, 0], (-1.0, 0.0)),
    ]

    walls = []
    for name, ex, ey, raw, normal in edges:
        normals_xy = np.tile(np.array(normal), (len(ex), 1))
        walls.append(_build_wall(name, ex, ey, raw, normals_xy, z_of(raw), base_z))
    return walls


def _ellipse_skirt(
    grid: ElevationGrid,
    radius: float,
    plan_size: float,
    segments: int,
    z_of: Callable[[NDArray], NDArray],
    base_z: float,
) -> SkirtWall:
    # segments + 1 samples so the UV seam closes at u = 1
    theta = np.linspace(0.0, 2.0 * np.pi, segments + 1)
    xs = radius * np.cos(theta)
    ys = radius * np.sin(theta)
    raw = grid.height_at_plan(xs, ys, plan_size)
    normals_xy = np.column_stack([np.cos(theta), np.sin(theta)])
    return _build_wall("ellipse", xs, ys, raw, normals_xy, z_of(raw), base_z)


def build_heightfield_mesh(
    grid: ElevationGrid,
    shape: ShapeKind,
    resolution_cap: int,
    exaggeration: float,
    dimensions: GeodesicDimensions,
    palette: Optional[Sequence[str]] = None,
    config: Optional[MeshConfig] = None,
) -> HeightfieldMesh:
    """Build the terrain block mesh.

    Args:
        grid: Decoded elevation grid (row 0 = north)
        shape: Footprint shape
        resolution_cap: Maximum samples per axis; larger grids are downsampled
        exaggeration: Height multiplier (1.0 = true scale)
        dimensions: Real-world footprint size, for the meter -> plan scale
        palette: Hex colours for per-vertex colouring (None = no colours)
        config: Mesh settings

    Returns:
        HeightfieldMesh with top surface and skirts
    """
    config = config or MeshConfig()
    plan_size = config.plan_size
    half = config.half_extent
    plan_scale = dimensions.plan_scale(plan_size)
    base_height = grid.min_height

    meshed = downsample_grid(grid, resolution_cap)
    w, h = meshed.width, meshed.height

    xs = np.linspace(-half, half, w)
    ys = np.linspace(half, -half, h)
    xx, yy = np.meshgrid(xs, ys)
    raw = meshed.values.ravel()

    def z_of(values):
        return ((np.asarray(values, dtype=np.float64) - base_height) * plan_scale) * exaggeration

    top_vertices = np.column_stack([xx.ravel(), yy.ravel(), z_of(raw)])
    top_faces = grid_faces(w, h)

    footprint_half = config.footprint_half_extent(shape)
    inside = np.asarray(shape.contains(xx.ravel(), yy.ravel(), footprint_half), dtype=bool)

    visible_min, visible_max = meshed.visible_range(shape)
    colors = None
    if palette is not None:
        span = (visible_max - visible_min) or 1.0
        colors = palette_colors((raw - visible_min) / span, palette)

    # Soil depth follows the footprint size, never the exaggeration
    base_z = -dimensions.percent_to_meters(config.soil_depth_percent) * plan_scale

    if shape is ShapeKind.RECTANGLE:
        skirts = _rectangle_skirts(meshed, half, z_of, base_z)
    else:
        skirts = [_ellipse_skirt(meshed, footprint_half, plan_size, config.ellipse_segments, z_of, base_z)]

    mesh = HeightfieldMesh(
        shape=shape,
        grid_width=w,
        grid_height=h,
        top_vertices=top_vertices,
        top_faces=top_faces,
        raw_heights=meshed.values.ravel().copy(),
        inside_mask=inside,
        base_height=base_height,
        plan_scale=plan_scale,
        exaggeration=exaggeration,
        colors=colors,
        visible_range=(visible_min, visible_max),
        skirts=skirts,
    )
    logger.info(
        f"Heightfield mesh ({shape.value}): {w}x{h} grid from {grid.width}x{grid.height}, "
        f"{mesh.vertex_count} verts, {mesh.face_count} faces"
    )
    return mesh
