"""
Tile compositing.

Fetches every tile covering a bounding box concurrently, stitches them
into one raster buffer and computes the exact pixel window that the
bounds occupy inside that buffer.

Compositing is a best-effort mosaic: a tile that fails to load leaves a
zero-filled slot and the composite still completes. Only failing to
allocate the composite buffer itself is fatal.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from tqdm import tqdm

from .config import TerrainConfig
from .errors import CompositeAllocationError, TileFetchError
from .geometry import GeographicBounds, TileIndex, TileRange, geo_to_pixel, pixel_to_geo, tile_range
from .sources.elevation import ElevationGrid, grid_from_composite
from .sources.tiles import TileSource


logger = logging.getLogger(__name__)


@dataclass
class RasterTile:
    """One fetched tile, alive only while a composite is assembled."""

    index: TileIndex
    pixels: NDArray[np.uint8]

    @property
    def pixel_width(self) -> int:
        return self.pixels.shape[1]

    @property
    def pixel_height(self) -> int:
        return self.pixels.shape[0]


@dataclass
class CompositeResult:
    """Stitched tiles plus the sub-pixel crop window of the requested bounds.

    Crop values are in composite pixels, origin at the top-left corner of
    the minimum tile.
    """

    pixels: NDArray[np.uint8]  # RGB (H, W, 3)
    tile_range: TileRange
    crop_origin_x: float
    crop_origin_y: float
    crop_width: float
    crop_height: float
    failed_tiles: List[TileIndex] = field(default_factory=list)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def complete(self) -> bool:
        return not self.failed_tiles

    def window(self) -> Tuple[slice, slice]:
        """Integer (rows, cols) slices covering the crop window.

        The window is widened outward to whole pixels and always holds at
        least 2x2 pixels so it can be meshed.
        """
        x0 = max(0, math.floor(self.crop_origin_x))
        y0 = max(0, math.floor(self.crop_origin_y))
        x1 = min(self.width, math.ceil(self.crop_origin_x + self.crop_width))
        y1 = min(self.height, math.ceil(self.crop_origin_y + self.crop_height))

        if x1 - x0 < 2:
            x0 = min(x0, self.width - 2)
            x1 = x0 + 2
        if y1 - y0 < 2:
            y0 = min(y0, self.height - 2)
            y1 = y0 + 2
        return (slice(y0, y1), slice(x0, x1))

    def cropped(self) -> NDArray[np.uint8]:
        """Pixels of the crop window only."""
        return self.pixels[self.window()]

    def window_bounds(self) -> GeographicBounds:
        """Geographic extent of the window's outermost pixel centers.

        The integer window is slightly larger than the requested bounds;
        these are the bounds a grid decoded from it actually spans.
        """
        rows, cols = self.window()
        tiles = self.tile_range
        size = self.width // tiles.tiles_x
        origin_x = tiles.min_tile.x * size
        origin_y = tiles.min_tile.y * size

        lat_max, lon_min = pixel_to_geo(origin_x + cols.start + 0.5, origin_y + rows.start + 0.5, tiles.zoom, size)
        lat_min, lon_max = pixel_to_geo(origin_x + cols.stop - 0.5, origin_y + rows.stop - 0.5, tiles.zoom, size)
        return GeographicBounds(lat_min=lat_min, lon_min=lon_min, lat_max=lat_max, lon_max=lon_max)


@dataclass
class ImageryTexture:
    """Full imagery composite plus the transform that selects the bounds.

    offset and repeat are fractions of the composite size in image space
    (origin top-left): texture coordinate u maps to
    offset[0] + u * repeat[0].
    """

    pixels: NDArray[np.uint8]
    offset: Tuple[float, float]
    repeat: Tuple[float, float]
    zoom: int

    @classmethod
    def from_composite(cls, result: CompositeResult) -> "ImageryTexture":
        return cls(
            pixels=result.pixels,
            offset=(result.crop_origin_x / result.width, result.crop_origin_y / result.height),
            repeat=(result.crop_width / result.width, result.crop_height / result.height),
            zoom=result.tile_range.zoom,
        )


def crop_window(bounds: GeographicBounds, tiles: TileRange, tile_size: int) -> Tuple[float, float, float, float]:
    """Sub-pixel (x, y, width, height) of bounds inside the tile range's composite."""
    zoom = tiles.zoom
    nw_x, nw_y = geo_to_pixel(bounds.lat_max, bounds.lon_min, zoom, tile_size)
    se_x, se_y = geo_to_pixel(bounds.lat_min, bounds.lon_max, zoom, tile_size)
    origin_x = tiles.min_tile.x * tile_size
    origin_y = tiles.min_tile.y * tile_size
    return (nw_x - origin_x, nw_y - origin_y, se_x - nw_x, se_y - nw_y)


class TileCompositor:
    """Assembles tile mosaics for elevation and imagery."""

    def __init__(
        self,
        config: Optional[TerrainConfig] = None,
        source_factory: Optional[Callable[[str], TileSource]] = None,
        workers: Optional[int] = None,
        progress: bool = False,
    ):
        """Initialize compositor.

        Args:
            config: Terrain configuration
            source_factory: Builds the tile source for a URL template
                (defaults to a cached TileSource per template)
            workers: Concurrent fetches per composite
            progress: Show a progress bar while tiles arrive
        """
        self.config = config or TerrainConfig()
        self.workers = workers or self.config.workers
        self.progress = progress
        self._source_factory = source_factory or self._default_source
        self._sources: Dict[str, TileSource] = {}
        self._lock = threading.Lock()

    @property
    def tile_size(self) -> int:
        return self.config.sources.tile_size

    def _default_source(self, url_template: str) -> TileSource:
        sources = self.config.sources
        return TileSource(
            url_template,
            cache_dir=self.config.cache_dir,
            timeout=sources.timeout,
            tile_size=sources.tile_size,
            user_agent=sources.user_agent,
        )

    def source_for(self, url_template: str) -> TileSource:
        """Tile source for a template, created once and reused."""
        with self._lock:
            source = self._sources.get(url_template)
            if source is None:
                source = self._source_factory(url_template)
                self._sources[url_template] = source
            return source

    def _allocate(self, tiles: TileRange) -> NDArray[np.uint8]:
        width = tiles.tiles_x * self.tile_size
        height = tiles.tiles_y * self.tile_size
        try:
            return np.zeros((height, width, 3), dtype=np.uint8)
        except (MemoryError, ValueError) as e:
            raise CompositeAllocationError(
                f"Cannot allocate {width}x{height} composite for {tiles.count} tiles"
            ) from e

    def _fetch(self, source: TileSource, tile: TileIndex) -> RasterTile:
        return RasterTile(tile, source.fetch(tile))

    def composite(
        self,
        bounds: GeographicBounds,
        zoom: int,
        url_template: str,
    ) -> CompositeResult:
        """Fetch and stitch all tiles covering bounds at zoom.

        Args:
            bounds: Geographic area of interest
            zoom: Tile zoom level
            url_template: URL pattern with {z}, {x}, {y} placeholders

        Returns:
            CompositeResult with the mosaic and the crop window of bounds

        Raises:
            CompositeAllocationError: If the mosaic buffer cannot be allocated
        """
        tiles = tile_range(bounds, zoom)
        canvas = self._allocate(tiles)
        source = self.source_for(url_template)
        size = self.tile_size
        failed: List[TileIndex] = []

        workers = max(1, min(self.workers, tiles.count))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._fetch, source, tile): tile
                for tile in tiles
            }

            iterator = tqdm(
                as_completed(futures),
                total=len(futures),
                desc=f"Fetching z{zoom} tiles",
                disable=not self.progress,
            )

            for future in iterator:
                tile = futures[future]
                try:
                    raster = future.result()
                except TileFetchError as e:
                    logger.warning(f"Tile {tile} left blank: {e}")
                    failed.append(tile)
                    continue

                if (raster.pixel_width, raster.pixel_height) != (size, size):
                    logger.warning(
                        f"Tile {tile} left blank: expected {size}x{size}, "
                        f"got {raster.pixel_width}x{raster.pixel_height}"
                    )
                    failed.append(tile)
                    continue

                col = tile.x - tiles.min_tile.x
                row = tile.y - tiles.min_tile.y
                canvas[row * size:(row + 1) * size, col * size:(col + 1) * size] = raster.pixels[..., :3]

        crop_x, crop_y, crop_w, crop_h = crop_window(bounds, tiles, size)
        logger.info(
            f"Composite z{zoom}: {tiles.tiles_x}x{tiles.tiles_y} tiles, "
            f"{len(failed)} failed, crop {crop_w:.1f}x{crop_h:.1f} px"
        )
        return CompositeResult(
            pixels=canvas,
            tile_range=tiles,
            crop_origin_x=crop_x,
            crop_origin_y=crop_y,
            crop_width=crop_w,
            crop_height=crop_h,
            failed_tiles=sorted(failed, key=lambda t: (t.y, t.x)),
        )

    def fetch_elevation_grid(
        self,
        bounds: GeographicBounds,
        zoom: int,
        url_template: Optional[str] = None,
    ) -> ElevationGrid:
        """Composite Terrarium tiles and decode the crop window into a grid."""
        result = self.composite(bounds, zoom, url_template or self.config.sources.dem_url)
        return grid_from_composite(result.pixels, result.window(), result.window_bounds())

    def fetch_imagery(
        self,
        bounds: GeographicBounds,
        zoom: int,
        url_template: Optional[str] = None,
    ) -> ImageryTexture:
        """Composite base map tiles into a texture with its crop transform."""
        url = url_template or self.config.sources.imagery_url
        if url is None:
            raise ValueError("No imagery URL configured")
        return ImageryTexture.from_composite(self.composite(bounds, zoom, url))
