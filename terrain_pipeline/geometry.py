"""
Projection math for the terrain pipeline.

Converts between WGS84 coordinates, slippy-map tile indices, Web Mercator
pixel positions, real-world (geodesic) distances and the plan units used
by the mesh and contour builders.

The plan footprint is a square of `plan_size` units centred at the origin
with +x east and +y north. Row 0 of every elevation grid is the north edge.
"""

import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterator, Tuple

from pyproj import Transformer

from .errors import InvalidBoundsError


TILE_SIZE = 256

# Lower clamp for optimal_zoom; coarser tiles carry too little relief
MIN_USEFUL_ZOOM = 8

# Beyond this camera distance (plan units) the whole footprint is visible
FULL_VIEW_DISTANCE = 150.0


@dataclass(frozen=True)
class GeographicBounds:
    """Latitude/longitude rectangle in WGS84 degrees.

    Invalid bounds cannot be constructed: a bounds value with
    lat_min >= lat_max or lon_min >= lon_max raises InvalidBoundsError.
    """

    lat_min: float
    lon_min: float
    lat_max: float
    lon_max: float

    def __post_init__(self) -> None:
        values = (self.lat_min, self.lon_min, self.lat_max, self.lon_max)
        if not all(math.isfinite(v) for v in values):
            raise InvalidBoundsError(f"Bounds must be finite: {values}")
        if not self.lat_min < self.lat_max:
            raise InvalidBoundsError(
                f"Invalid latitude ordering: lat_min={self.lat_min} >= lat_max={self.lat_max}"
            )
        if not self.lon_min < self.lon_max:
            raise InvalidBoundsError(
                f"Invalid longitude ordering: lon_min={self.lon_min} >= lon_max={self.lon_max}"
            )

    @classmethod
    def from_wgs84(cls, west: float, south: float, east: float, north: float) -> "GeographicBounds":
        """Build from the (west, south, east, north) order used by tile tooling."""
        return cls(lat_min=south, lon_min=west, lat_max=north, lon_max=east)

    def as_wgs84(self) -> Tuple[float, float, float, float]:
        """Return (west, south, east, north)."""
        return (self.lon_min, self.lat_min, self.lon_max, self.lat_max)

    @property
    def center(self) -> Tuple[float, float]:
        """Return center point (lat, lon)."""
        return ((self.lat_min + self.lat_max) / 2, (self.lon_min + self.lon_max) / 2)

    @property
    def lat_span(self) -> float:
        return self.lat_max - self.lat_min

    @property
    def lon_span(self) -> float:
        return self.lon_max - self.lon_min

    @property
    def max_span(self) -> float:
        return max(self.lat_span, self.lon_span)


@dataclass(frozen=True)
class TileIndex:
    """Web Mercator tile coordinates."""

    x: int
    y: int
    z: int

    def bounds_wgs84(self) -> Tuple[float, float, float, float]:
        """Get WGS84 bounds (west, south, east, north) of this tile."""
        n = 2 ** self.z
        west = self.x / n * 360.0 - 180.0
        east = (self.x + 1) / n * 360.0 - 180.0
        north = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * self.y / n))))
        south = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * (self.y + 1) / n))))
        return (west, south, east, north)

    def url(self, template: str) -> str:
        """Fill a {z}/{x}/{y} URL template."""
        return template.format(z=self.z, x=self.x, y=self.y)

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


@dataclass(frozen=True)
class TileRange:
    """Inclusive rectangle of tiles at one zoom level."""

    min_tile: TileIndex
    max_tile: TileIndex

    @property
    def zoom(self) -> int:
        return self.min_tile.z

    @property
    def tiles_x(self) -> int:
        return self.max_tile.x - self.min_tile.x + 1

    @property
    def tiles_y(self) -> int:
        return self.max_tile.y - self.min_tile.y + 1

    @property
    def count(self) -> int:
        return self.tiles_x * self.tiles_y

    def __iter__(self) -> Iterator[TileIndex]:
        for y in range(self.min_tile.y, self.max_tile.y + 1):
            for x in range(self.min_tile.x, self.max_tile.x + 1):
                yield TileIndex(x, y, self.zoom)


def geo_to_tile(lat: float, lon: float, zoom: int) -> TileIndex:
    """Convert WGS84 coordinates to the slippy-map tile containing them.

    Latitudes outside roughly +/-85 degrees give meaningless indices; the
    caller is responsible for staying inside the Mercator range.
    """
    n = 2 ** zoom
    lat_rad = math.radians(lat)
    x = math.floor(n * ((lon + 180.0) / 360.0))
    y = math.floor(n * (1 - math.log(math.tan(lat_rad) + 1 / math.cos(lat_rad)) / math.pi) / 2)
    return TileIndex(x, y, zoom)


def geo_to_pixel(lat: float, lon: float, zoom: int, tile_size: int = TILE_SIZE) -> Tuple[float, float]:
    """Global Web Mercator pixel position (not floored) at a zoom level."""
    scale = (2 ** zoom) * tile_size
    lat_rad = math.radians(lat)
    px = scale * ((lon + 180.0) / 360.0)
    py = scale * (1 - math.log(math.tan(lat_rad) + 1 / math.cos(lat_rad)) / math.pi) / 2
    return (px, py)


def pixel_to_geo(px: float, py: float, zoom: int, tile_size: int = TILE_SIZE) -> Tuple[float, float]:
    """Inverse of geo_to_pixel. Returns (lat, lon)."""
    scale = (2 ** zoom) * tile_size
    lon = px / scale * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * py / scale))))
    return (lat, lon)


def tile_range(bounds: GeographicBounds, zoom: int) -> TileRange:
    """Tiles covering bounds: min from the NW corner, max from the SE corner."""
    min_tile = geo_to_tile(bounds.lat_max, bounds.lon_min, zoom)
    max_tile = geo_to_tile(bounds.lat_min, bounds.lon_max, zoom)
    return TileRange(min_tile, max_tile)


def estimate_tile_count(bounds: GeographicBounds, zoom: int) -> int:
    """Number of tiles a composite of bounds at zoom would fetch."""
    return tile_range(bounds, zoom).count


def optimal_zoom(
    bounds: GeographicBounds,
    target_resolution: int = 1024,
    max_zoom: int = 15,
) -> int:
    """Pick the zoom at which the larger span covers ~target_resolution pixels.

    360 degrees = 256 * 2^z pixels, so
    z = log2(target_resolution * 360 / (256 * max_span)).
    The result is floored and clamped to [MIN_USEFUL_ZOOM, max_zoom].
    """
    max_span = bounds.max_span
    if max_span == 0:
        return max_zoom

    z = math.log2((target_resolution * 360) / (TILE_SIZE * max_span))
    return max(MIN_USEFUL_ZOOM, min(math.floor(z), max_zoom))


def utm_zone(lon: float) -> int:
    """UTM zone number for a longitude."""
    return int(math.floor((lon + 180.0) / 6.0)) + 1


@lru_cache(maxsize=16)
def _utm_transformer(zone: int) -> Transformer:
    return Transformer.from_crs(
        "EPSG:4326",
        f"+proj=utm +zone={zone} +datum=WGS84 +units=m +no_defs",
        always_xy=True,
    )


@dataclass(frozen=True)
class GeodesicDimensions:
    """Real-world size of a footprint in meters."""

    width_meters: float
    height_meters: float
    min_dimension: float = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "min_dimension", min(self.width_meters, self.height_meters))

    def plan_scale(self, plan_size: float = 100.0) -> float:
        """Plan units per real meter (footprint width maps to plan_size)."""
        if self.width_meters <= 0:
            return 0.0
        return plan_size / self.width_meters

    def percent_to_meters(self, percent: float) -> float:
        """Convert a percentage of the footprint's smaller side to meters."""
        return self.min_dimension * percent / 100.0


def geodesic_dimensions(bounds: GeographicBounds) -> GeodesicDimensions:
    """Measure bounds in meters using the local UTM zone.

    Width is measured east-west along the middle latitude, height
    north-south along the middle longitude.
    """
    lat_mid, lon_mid = bounds.center
    transformer = _utm_transformer(utm_zone(lon_mid))

    x1, y1 = transformer.transform(bounds.lon_min, lat_mid)
    x2, y2 = transformer.transform(bounds.lon_max, lat_mid)
    width = math.hypot(x2 - x1, y2 - y1)

    x3, y3 = transformer.transform(lon_mid, bounds.lat_min)
    x4, y4 = transformer.transform(lon_mid, bounds.lat_max)
    height = math.hypot(x4 - x3, y4 - y3)

    return GeodesicDimensions(width_meters=width, height_meters=height)


class PlanMapping:
    """Maps plan-unit positions to WGS84 and back.

    The elevation grid is a crop of Web Mercator pixels, so the mapping is
    linear in Mercator space rather than in degrees.
    """

    def __init__(self, bounds: GeographicBounds, plan_size: float = 100.0):
        self.bounds = bounds
        self.plan_size = plan_size
        self.half = plan_size / 2
        # zoom 0 keeps the numbers small; the mapping is zoom independent
        self._x_west, self._y_north = geo_to_pixel(bounds.lat_max, bounds.lon_min, 0)
        self._x_east, self._y_south = geo_to_pixel(bounds.lat_min, bounds.lon_max, 0)

    def plan_to_geo(self, x: float, y: float) -> Tuple[float, float]:
        """Convert plan (x, y) to (lat, lon)."""
        u = (x + self.half) / self.plan_size
        v = (self.half - y) / self.plan_size
        px = self._x_west + u * (self._x_east - self._x_west)
        py = self._y_north + v * (self._y_south - self._y_north)
        return pixel_to_geo(px, py, 0)

    def geo_to_plan(self, lat: float, lon: float) -> Tuple[float, float]:
        """Convert (lat, lon) to plan (x, y)."""
        px, py = geo_to_pixel(lat, lon, 0)
        u = (px - self._x_west) / (self._x_east - self._x_west)
        v = (py - self._y_north) / (self._y_south - self._y_north)
        return (u * self.plan_size - self.half, self.half - v * self.plan_size)


def visible_bounds(
    bounds: GeographicBounds,
    camera_distance: float,
    fov_degrees: float = 45.0,
    plan_size: float = 100.0,
) -> GeographicBounds:
    """Estimate the part of bounds visible from a camera looking at the center.

    Far cameras see everything. Closer cameras see roughly
    2 * d * tan(fov / 2) plan units, plus a 20% margin, clamped to between
    20% and 100% of the footprint.
    """
    if camera_distance > FULL_VIEW_DISTANCE:
        return bounds

    visible_range = camera_distance * math.tan(math.radians(fov_degrees) / 2) * 2
    effective = (visible_range * 1.2) / plan_size
    factor = min(1.0, max(0.2, effective))

    lat_c, lon_c = bounds.center
    lat_half = bounds.lat_span * factor / 2
    lon_half = bounds.lon_span * factor / 2

    return GeographicBounds(
        lat_min=max(bounds.lat_min, lat_c - lat_half),
        lon_min=max(bounds.lon_min, lon_c - lon_half),
        lat_max=min(bounds.lat_max, lat_c + lat_half),
        lon_max=min(bounds.lon_max, lon_c + lon_half),
    )


def max_tiles_for(zoom: int, camera_distance: float) -> int:
    """Tile budget for one composite at a zoom and camera distance."""
    if zoom >= 15:
        if camera_distance < 50:
            return 16
        if camera_distance < 100:
            return 36
        return 64
    if zoom >= 13:
        return 100
    return 400


def clamp_zoom_to_budget(
    bounds: GeographicBounds,
    zoom: int,
    max_tiles: int,
    min_zoom: int = MIN_USEFUL_ZOOM,
) -> int:
    """Lower zoom until the composite fits the tile budget (never below min_zoom)."""
    while zoom > min_zoom and estimate_tile_count(bounds, zoom) > max_tiles:
        zoom -= 1
    return zoom
