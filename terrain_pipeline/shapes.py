"""Footprint shapes shared by the mesh builder and the contour extractor."""

from enum import Enum

import numpy as np


class ShapeKind(str, Enum):
    """Footprint shape of the rendered terrain block."""

    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"

    def contains(self, x, y, half_extent: float):
        """Whether plan point(s) (x, y) lie inside the footprint.

        Works on scalars and numpy arrays. Points on the boundary are
        inside.
        """
        if self is ShapeKind.RECTANGLE:
            return (np.abs(x) <= half_extent) & (np.abs(y) <= half_extent)
        return self.contains_normalized(np.asarray(x) / half_extent, np.asarray(y) / half_extent)

    def contains_normalized(self, nx, ny):
        """Same test on coordinates already normalized to [-1, 1]."""
        if self is ShapeKind.RECTANGLE:
            return (np.abs(nx) <= 1.0) & (np.abs(ny) <= 1.0)
        return nx * nx + ny * ny <= 1.0

    @classmethod
    def parse(cls, value) -> "ShapeKind":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


def grid_inside_mask(width: int, height: int, shape: ShapeKind) -> np.ndarray:
    """Boolean (height, width) mask of grid cells inside the shape.

    Grid indices are normalized to [-1, 1] across the full footprint.
    """
    nx = np.linspace(-1.0, 1.0, width) if width > 1 else np.zeros(1)
    ny = np.linspace(-1.0, 1.0, height) if height > 1 else np.zeros(1)
    xx, yy = np.meshgrid(nx, ny)
    return np.asarray(shape.contains_normalized(xx, yy), dtype=bool)
