"""
Terrain pipeline orchestration.

Ties the stages together:

    tiles -> ElevationGrid -> HeightfieldMesh + ContourSet -> TerrainSnapshot

Every stage output is versioned. A stage is rebuilt only when one of its
inputs advanced, and the displayed snapshot is replaced as a whole under a
lock, so readers always see a consistent grid, mesh and contour set.

Usage:
    pipeline = TerrainPipeline(TerrainConfig())
    snapshot = pipeline.load()
    pipeline.update_settings(exaggeration_percent=300)
    with pipeline.start_polling(lambda: camera.distance):
        ...
"""

import copy
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, fields, replace
from typing import Callable, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .config import TerrainConfig, get_palette
from .contours import ContourSet, extract_contours, line_batches
from .errors import TerrainError
from .geometry import (
    PlanMapping,
    clamp_zoom_to_budget,
    geodesic_dimensions,
    max_tiles_for,
)
from .lod import FetchRequest, LODController, LODDecision, LODPoller, LODState
from .mesh import HeightfieldMesh, build_heightfield_mesh
from .shapes import ShapeKind
from .sources.elevation import ElevationGrid
from .tile_compositor import ImageryTexture, TileCompositor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewSettings:
    """User-facing display settings."""

    shape: ShapeKind = ShapeKind.RECTANGLE
    exaggeration_percent: float = 200.0
    palette: str = "Terrain"
    contour_interval: float = 10.0
    major_interval: float = 50.0

    @classmethod
    def from_config(cls, config: TerrainConfig) -> "ViewSettings":
        return cls(
            shape=config.shape,
            exaggeration_percent=config.exaggeration.default,
            palette=config.palette,
            contour_interval=config.contours.interval,
            major_interval=config.contours.major_interval,
        )


@dataclass(frozen=True)
class SnapshotVersions:
    """Generation counters of each stage output in a snapshot."""

    dem: int = 0
    imagery: int = 0
    settings: int = 0
    mesh: int = 0
    contours: int = 0


@dataclass(frozen=True)
class TerrainSnapshot:
    """Everything needed to display the terrain at one moment."""

    lod: LODState
    settings: ViewSettings
    versions: SnapshotVersions = field(default_factory=SnapshotVersions)
    grid: Optional[ElevationGrid] = None
    mesh: Optional[HeightfieldMesh] = None
    contours: Optional[ContourSet] = None
    imagery: Optional[ImageryTexture] = None

    @property
    def ready(self) -> bool:
        return self.mesh is not None

    def contour_batches(self, offset: float = 0.1) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        """(normal, major) contour line endpoint pairs positioned on the mesh."""
        if self.contours is None or self.mesh is None:
            empty = np.empty((0, 3), dtype=np.float32)
            return empty, empty
        return line_batches(
            self.contours,
            self.mesh.base_height,
            self.mesh.plan_scale * self.mesh.exaggeration,
            offset,
        )


# Settings fields that invalidate each stage
_MESH_FIELDS = {"shape", "palette"}
_CONTOUR_FIELDS = {"shape", "contour_interval", "major_interval"}


class TerrainPipeline:
    """Drives fetching, meshing and contouring for one footprint."""

    def __init__(
        self,
        config: Optional[TerrainConfig] = None,
        compositor: Optional[TileCompositor] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize pipeline.

        Args:
            config: Terrain configuration
            compositor: Tile compositor (a network-backed one if None)
            executor: Runs background fetches (a private 2-worker pool if None)
            clock: Monotonic time source for LOD polling
        """
        self.config = config or TerrainConfig()
        self.compositor = compositor or TileCompositor(self.config)
        self.clock = clock

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="terrain-fetch")

        bounds = self.config.bounds
        self.dimensions = geodesic_dimensions(bounds)
        self._footprint_mapping = PlanMapping(bounds, self.config.mesh.plan_size)
        self.lod = LODController(
            bounds,
            self.config.lod,
            dem_max_zoom=self.config.sources.dem_max_zoom,
            imagery_max_zoom=self.config.sources.imagery_max_zoom,
            plan_size=self.config.mesh.plan_size,
            initial_resolution_cap=self.config.mesh.default_resolution_cap,
        )

        self._lock = threading.RLock()
        self._poller: Optional[LODPoller] = None
        self._snapshot = TerrainSnapshot(lod=self.lod.state, settings=ViewSettings.from_config(self.config))

    @property
    def snapshot(self) -> TerrainSnapshot:
        """The currently displayed snapshot."""
        return self._snapshot

    @property
    def settings(self) -> ViewSettings:
        return self._snapshot.settings

    @property
    def plan_mapping(self) -> PlanMapping:
        """Plan to WGS84 mapping of the displayed grid.

        A fetched grid spans whole DEM pixels, slightly more than the
        configured bounds; before the first load the bounds are used.
        """
        grid = self._snapshot.grid
        if grid is None or grid.bounds is None:
            return self._footprint_mapping
        return PlanMapping(grid.bounds, self.config.mesh.plan_size)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self, zoom: Optional[int] = None) -> TerrainSnapshot:
        """Fetch, mesh and contour the footprint synchronously.

        Args:
            zoom: DEM zoom (optimal zoom for the footprint if None)

        Returns:
            The new snapshot
        """
        request = self.lod.initial_request(zoom)
        logger.info(f"Loading terrain at z{request.dem_zoom}")

        try:
            grid = self.compositor.fetch_elevation_grid(request.bounds, request.dem_zoom)
        except TerrainError:
            self.lod.fail(request.token)
            raise
        self._apply_dem(request.token, grid)

        if self.config.sources.imagery_url is not None:
            imagery = self.compositor.fetch_imagery(request.bounds, request.imagery_zoom)
            self._apply_imagery(request.token, imagery)

        return self._snapshot

    def poll(self, camera_distance: float) -> Optional[LODDecision]:
        """Run one LOD step and start any fetch or remesh it orders.

        Args:
            camera_distance: Camera distance to the terrain center in plan units

        Returns:
            The LOD decision, or None if the polling interval has not elapsed
        """
        decision = self.lod.poll(camera_distance, self.clock())
        if decision is None or not decision.changed:
            return decision

        if decision.fetch is not None:
            self._submit(decision.fetch, camera_distance)
        elif decision.remesh:
            self._remesh(decision.state)
        return decision

    def _submit(self, request: FetchRequest, camera_distance: float) -> None:
        dem_future = self.executor.submit(self._fetch_dem, request)
        dem_future.add_done_callback(lambda future: self._dem_done(request.token, future))

        if self.config.sources.imagery_url is not None:
            zoom = clamp_zoom_to_budget(
                request.bounds,
                request.imagery_zoom,
                max_tiles_for(request.imagery_zoom, camera_distance),
                min_zoom=self.config.lod.min_zoom,
            )
            imagery_future = self.executor.submit(self._fetch_imagery, replace(request, imagery_zoom=zoom))
            imagery_future.add_done_callback(self._log_failure)

    def _fetch_dem(self, request: FetchRequest) -> bool:
        grid = self.compositor.fetch_elevation_grid(request.bounds, request.dem_zoom)
        return self._apply_dem(request.token, grid)

    def _fetch_imagery(self, request: FetchRequest) -> bool:
        imagery = self.compositor.fetch_imagery(request.bounds, request.imagery_zoom)
        return self._apply_imagery(request.token, imagery)

    @staticmethod
    def _log_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Background fetch failed: {error}", exc_info=error)

    def _dem_done(self, token: int, future: Future) -> None:
        """Roll the LOD state back when a DEM fetch fails."""
        self._log_failure(future)
        if future.exception() is not None:
            with self._lock:
                self.lod.fail(token)

    # -------------------------------------------------------------------------
    # Applying results
    # -------------------------------------------------------------------------

    def _build_mesh(self, grid: ElevationGrid, settings: ViewSettings, resolution_cap: int) -> HeightfieldMesh:
        palette = None
        if self.config.sources.imagery_url is None:
            palette = get_palette(settings.palette)
        return build_heightfield_mesh(
            grid,
            settings.shape,
            resolution_cap,
            self.config.exaggeration.factor(settings.exaggeration_percent),
            self.dimensions,
            palette=palette,
            config=self.config.mesh,
        )

    def _build_contours(self, grid: ElevationGrid, settings: ViewSettings) -> Optional[ContourSet]:
        contour_config = self.config.contours
        if not contour_config.enabled:
            return None
        return extract_contours(
            grid,
            settings.contour_interval,
            settings.major_interval,
            settings.shape,
            plan_size=self.config.mesh.plan_size,
            max_labels=contour_config.max_labels if contour_config.show_labels else 0,
            ellipse_inset=self.config.mesh.ellipse_inset,
        )

    def _apply_dem(self, token: int, grid: ElevationGrid) -> bool:
        """Rebuild mesh and contours from a fetched grid.

        Returns:
            False if the fetch was superseded and the grid was discarded
        """
        with self._lock:
            if not self.lod.is_current(token):
                logger.debug(f"Dropping elevation grid for superseded token {token}")
                return False

            current = self._snapshot
            state = self.lod.state
            mesh = self._build_mesh(grid, current.settings, state.mesh_resolution_cap)
            contours = self._build_contours(grid, current.settings)
            versions = current.versions
            self._snapshot = replace(
                current,
                grid=grid,
                mesh=mesh,
                contours=contours,
                lod=state,
                versions=replace(
                    versions,
                    dem=versions.dem + 1,
                    mesh=versions.mesh + 1,
                    contours=versions.contours + 1,
                ),
            )
            self.lod.complete(token)
            return True

    def _apply_imagery(self, token: int, imagery: ImageryTexture) -> bool:
        with self._lock:
            if not self.lod.is_current(token):
                logger.debug(f"Dropping imagery for superseded token {token}")
                return False
            current = self._snapshot
            self._snapshot = replace(
                current,
                imagery=imagery,
                versions=replace(current.versions, imagery=current.versions.imagery + 1),
            )
            return True

    def _remesh(self, state: LODState) -> None:
        with self._lock:
            current = self._snapshot
            if current.grid is None:
                return
            mesh = self._build_mesh(current.grid, current.settings, state.mesh_resolution_cap)
            self._snapshot = replace(
                current,
                mesh=mesh,
                lod=state,
                versions=replace(current.versions, mesh=current.versions.mesh + 1),
            )

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def update_settings(self, **changes) -> TerrainSnapshot:
        """Change display settings and rebuild only the affected stages.

        A change of exaggeration alone rescales the current mesh heights
        without rebuilding topology or contours.

        Raises:
            TypeError: For an unknown setting name
            UnknownPaletteError: For an unknown palette
        """
        known = {f.name for f in fields(ViewSettings)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")

        if "shape" in changes:
            changes["shape"] = ShapeKind.parse(changes["shape"])
        if "palette" in changes:
            get_palette(changes["palette"])
        if "exaggeration_percent" in changes:
            changes["exaggeration_percent"] = self.config.exaggeration.clamp(changes["exaggeration_percent"])

        with self._lock:
            current = self._snapshot
            settings = replace(current.settings, **changes)
            changed = {
                name for name in changes
                if getattr(settings, name) != getattr(current.settings, name)
            }
            if not changed:
                return current

            versions = replace(current.versions, settings=current.versions.settings + 1)
            mesh = current.mesh
            contours = current.contours

            if current.grid is not None:
                if changed & _MESH_FIELDS:
                    mesh = self._build_mesh(current.grid, settings, current.lod.mesh_resolution_cap)
                    versions = replace(versions, mesh=versions.mesh + 1)
                elif "exaggeration_percent" in changed and mesh is not None:
                    # Copy so that holders of the previous snapshot keep their heights
                    mesh = copy.deepcopy(mesh)
                    mesh.set_exaggeration(self.config.exaggeration.factor(settings.exaggeration_percent))
                    versions = replace(versions, mesh=versions.mesh + 1)

                if changed & _CONTOUR_FIELDS:
                    contours = self._build_contours(current.grid, settings)
                    versions = replace(versions, contours=versions.contours + 1)

            logger.debug(f"Settings changed: {', '.join(sorted(changed))}")
            self._snapshot = replace(
                current,
                settings=settings,
                mesh=mesh,
                contours=contours,
                versions=versions,
            )
            return self._snapshot

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def height_at(self, x: float, y: float) -> Optional[float]:
        """Raw elevation in meters under plan point (x, y), None before loading."""
        grid = self._snapshot.grid
        if grid is None:
            return None
        return grid.height_at_plan(x, y, self.config.mesh.plan_size)

    def geo_at(self, x: float, y: float) -> Tuple[float, float]:
        """(lat, lon) under plan point (x, y)."""
        return self.plan_mapping.plan_to_geo(x, y)

    # -------------------------------------------------------------------------
    # Polling lifecycle
    # -------------------------------------------------------------------------

    def start_polling(self, distance_provider: Callable[[], float]) -> LODPoller:
        """Poll LOD on a background thread using the given camera distance source."""
        self.stop_polling()
        self._poller = LODPoller(
            lambda: self.poll(distance_provider()),
            self.config.lod.poll_interval,
        )
        return self._poller.start()

    def stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.stop()
            self._poller = None

    def close(self) -> None:
        """Stop polling and release the fetch pool if the pipeline created it."""
        self.stop_polling()
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    def __enter__(self) -> "TerrainPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
