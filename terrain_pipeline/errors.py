"""Error hierarchy for terrain operations.

Local failures (a single tile that cannot be fetched) are caught and
logged by the stage that owns them; the exceptions here are the ones that
reach callers.
"""


class TerrainError(Exception):
    """Base error for terrain operations."""


class InvalidBoundsError(TerrainError, ValueError):
    """Bounds are malformed (min >= max or non-finite)."""


class TileFetchError(TerrainError):
    """A single raster tile could not be fetched or decoded.

    Attributes:
        url: The URL that was requested
    """

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        super().__init__(f"Failed to fetch tile {url}: {reason}")


class CompositeAllocationError(TerrainError):
    """The composite buffer for a mosaic could not be allocated."""


class InvalidGridError(TerrainError, ValueError):
    """Elevation grid has an unusable shape or content."""


class UnknownPaletteError(TerrainError, KeyError):
    """Requested colour palette is not defined."""
