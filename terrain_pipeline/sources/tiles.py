"""
XYZ raster tile fetcher.

Fetches fixed-size raster tiles from any HTTP(S) endpoint addressed by a
`{z}/{x}/{y}` URL template: Terrarium elevation tiles and base map imagery
go through the same code path. Tiles can optionally be cached on disk.
"""

import hashlib
import io
import logging
from pathlib import Path
from typing import Optional

import numpy as np
from numpy.typing import NDArray
import requests
from PIL import Image, UnidentifiedImageError

from ..errors import TileFetchError
from ..geometry import TILE_SIZE, TileIndex


logger = logging.getLogger(__name__)


class TileSource:
    """Fetches and caches raster tiles for one URL template."""

    def __init__(
        self,
        url_template: str,
        cache_dir: Optional[Path] = None,
        timeout: Optional[float] = 30.0,
        tile_size: int = TILE_SIZE,
        user_agent: str = "TerrainPipeline/0.1",
        session: Optional[requests.Session] = None,
    ):
        """Initialize tile source.

        Args:
            url_template: URL pattern with {z}, {x}, {y} placeholders
            cache_dir: Directory for tile cache (None = no caching)
            timeout: Request timeout in seconds (None = wait indefinitely)
            tile_size: Edge length tiles are normalized to
            user_agent: User-Agent header sent with each request
            session: Optional pre-configured requests session
        """
        self.url_template = url_template
        self.cache_dir = cache_dir
        self.timeout = timeout
        self.tile_size = tile_size
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def _cache_path(self, tile: TileIndex) -> Optional[Path]:
        """Get cache file path for a tile.

        Different templates get different cache directories.
        """
        if not self.cache_dir:
            return None
        key = hashlib.sha1(self.url_template.encode("utf-8")).hexdigest()[:12]
        return self.cache_dir / key / f"{tile.z}" / f"{tile.x}" / f"{tile.y}.tile"

    def _load_from_cache(self, tile: TileIndex) -> Optional[bytes]:
        cache_path = self._cache_path(tile)
        if not cache_path:
            return None
        try:
            if cache_path.is_file():
                return cache_path.read_bytes()
        except OSError as e:
            logger.warning(f"Ignoring unreadable cache entry {cache_path}: {e}")
        return None

    def _save_to_cache(self, tile: TileIndex, data: bytes) -> None:
        """Write a tile to the cache; the cache is optional so write errors are only logged."""
        cache_path = self._cache_path(tile)
        if not cache_path:
            return
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            cache_path.write_bytes(data)
        except OSError as e:
            logger.warning(f"Could not cache tile {tile.z}/{tile.x}/{tile.y}: {e}")

    def decode(self, data: bytes, url: str = "") -> NDArray[np.uint8]:
        """Decode image bytes to an RGB array of shape (tile_size, tile_size, 3)."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = img.convert("RGB")
                if img.size != (self.tile_size, self.tile_size):
                    # Nearest keeps Terrarium byte triples intact
                    img = img.resize((self.tile_size, self.tile_size), Image.Resampling.NEAREST)
                return np.array(img, dtype=np.uint8)
        except (UnidentifiedImageError, OSError) as e:
            raise TileFetchError(url, f"undecodable image ({e})") from e

    def fetch(self, tile: TileIndex) -> NDArray[np.uint8]:
        """Fetch a tile.

        Args:
            tile: Tile index to fetch

        Returns:
            RGB image as numpy array of shape (tile_size, tile_size, 3)

        Raises:
            TileFetchError: If the request or the image decode fails
        """
        url = tile.url(self.url_template)

        cached = self._load_from_cache(tile)
        if cached is not None:
            return self.decode(cached, url)

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TileFetchError(url, str(e)) from e

        rgb = self.decode(response.content, url)
        self._save_to_cache(tile, response.content)
        return rgb
