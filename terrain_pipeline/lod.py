"""
Level-of-detail control.

Maps camera distance to a DEM zoom, an imagery zoom and a mesh resolution
cap. The controller is polled on a fixed wall-clock interval (not per
frame) and applies hysteresis so that small camera movements never
trigger a re-fetch.

Every accepted zoom change issues a new request token. Fetch results are
applied only if they carry the current token; anything older has been
superseded and is dropped on arrival.
"""

import logging
import math
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

from .config import LODConfig
from .geometry import GeographicBounds, geodesic_dimensions, optimal_zoom


logger = logging.getLogger(__name__)


class LODPhase(str, Enum):
    STABLE = "stable"
    TRANSITIONING = "transitioning"


@dataclass(frozen=True)
class LODState:
    """Active level of detail."""

    dem_zoom: int
    imagery_zoom: int
    mesh_resolution_cap: int
    last_checked_at: float = -math.inf


@dataclass(frozen=True)
class FetchRequest:
    """A DEM (and imagery) fetch ordered by an accepted LOD change."""

    token: int
    bounds: GeographicBounds
    dem_zoom: int
    imagery_zoom: int


@dataclass(frozen=True)
class LODDecision:
    """Outcome of one poll."""

    state: LODState
    fetch: Optional[FetchRequest] = None
    remesh: bool = False

    @property
    def changed(self) -> bool:
        return self.fetch is not None or self.remesh


def step_lookup(steps: Sequence[Tuple[float, int]], distance: float) -> int:
    """Value of the first step whose distance bound is >= distance."""
    for bound, value in steps:
        if distance <= bound:
            return value
    return steps[-1][1]


class LODController:
    """Polling state machine for level of detail.

    Example:
        controller = LODController(bounds, LODConfig(), dem_max_zoom=15)
        decision = controller.poll(camera_distance=80.0, now=time.monotonic())
        if decision and decision.fetch:
            start_fetch(decision.fetch)
    """

    def __init__(
        self,
        bounds: GeographicBounds,
        config: Optional[LODConfig] = None,
        dem_max_zoom: int = 15,
        imagery_max_zoom: int = 18,
        plan_size: float = 100.0,
        initial_zoom: Optional[int] = None,
        initial_resolution_cap: Optional[int] = None,
    ):
        """Initialize controller.

        Args:
            bounds: Footprint bounds
            config: LOD tables and polling settings
            dem_max_zoom: Highest zoom the DEM provider serves
            imagery_max_zoom: Highest zoom the imagery provider serves
            plan_size: Footprint edge length in plan units
            initial_zoom: Starting DEM zoom (optimal zoom if None)
            initial_resolution_cap: Starting mesh cap (finest step if None)
        """
        self.bounds = bounds
        self.config = config or LODConfig()
        self.dem_max_zoom = dem_max_zoom
        self.imagery_max_zoom = imagery_max_zoom

        scale = geodesic_dimensions(bounds).plan_scale(plan_size)
        self.meters_per_unit = 1.0 / scale if scale > 0 else 0.0

        if initial_zoom is None:
            initial_zoom = optimal_zoom(bounds, self.config.target_resolution, dem_max_zoom)
        if initial_resolution_cap is None:
            initial_resolution_cap = max(v for _, v in self.config.mesh_resolution_steps)

        self._lock = threading.Lock()
        self._token = 0
        self._phase = LODPhase.STABLE
        self._state = LODState(
            dem_zoom=initial_zoom,
            imagery_zoom=self.imagery_zoom_for(initial_zoom),
            mesh_resolution_cap=initial_resolution_cap,
        )
        # Zooms of the last fetch that was actually applied
        self._applied_zooms = (self._state.dem_zoom, self._state.imagery_zoom)

    @property
    def state(self) -> LODState:
        return self._state

    @property
    def phase(self) -> LODPhase:
        return self._phase

    @property
    def token(self) -> int:
        return self._token

    def distance_to_meters(self, camera_distance: float) -> float:
        """Convert a plan-unit camera distance to meters."""
        return camera_distance * self.meters_per_unit

    def target_dem_zoom(self, distance_meters: float) -> int:
        zoom = step_lookup(self.config.dem_zoom_steps, distance_meters)
        return max(self.config.min_zoom, min(zoom, self.dem_max_zoom))

    def target_resolution_cap(self, distance_meters: float) -> int:
        return step_lookup(self.config.mesh_resolution_steps, distance_meters)

    def imagery_zoom_for(self, dem_zoom: int) -> int:
        return min(dem_zoom + self.config.imagery_zoom_offset, self.imagery_max_zoom)

    def initial_request(self, dem_zoom: Optional[int] = None) -> FetchRequest:
        """Request for the current state, used for the first load.

        A dem_zoom overrides the zoom chosen at construction.
        """
        with self._lock:
            if dem_zoom is not None:
                self._state = replace(
                    self._state,
                    dem_zoom=dem_zoom,
                    imagery_zoom=self.imagery_zoom_for(dem_zoom),
                )
            self._token += 1
            self._phase = LODPhase.TRANSITIONING
            return FetchRequest(self._token, self.bounds, self._state.dem_zoom, self._state.imagery_zoom)

    def poll(self, camera_distance: float, now: float) -> Optional[LODDecision]:
        """Run one polling step.

        Args:
            camera_distance: Camera distance to the terrain center in plan units
            now: Current monotonic time in seconds

        Returns:
            None if the polling interval has not elapsed, otherwise the decision
        """
        with self._lock:
            state = self._state
            if now - state.last_checked_at < self.config.poll_interval:
                return None

            meters = self.distance_to_meters(camera_distance)
            target_zoom = self.target_dem_zoom(meters)
            target_cap = self.target_resolution_cap(meters)

            new_state = replace(state, last_checked_at=now)
            fetch = None
            remesh = False

            if abs(target_zoom - state.dem_zoom) >= self.config.hysteresis_levels:
                self._token += 1
                self._phase = LODPhase.TRANSITIONING
                new_state = replace(
                    new_state,
                    dem_zoom=target_zoom,
                    imagery_zoom=self.imagery_zoom_for(target_zoom),
                )
                fetch = FetchRequest(self._token, self.bounds, target_zoom, new_state.imagery_zoom)
                logger.debug(
                    f"LOD zoom {state.dem_zoom} -> {target_zoom} at {meters:.0f} m (token {self._token})"
                )

            if target_cap != state.mesh_resolution_cap:
                new_state = replace(new_state, mesh_resolution_cap=target_cap)
                remesh = True
                logger.debug(f"LOD mesh cap {state.mesh_resolution_cap} -> {target_cap}")

            self._state = new_state
            return LODDecision(new_state, fetch, remesh)

    def is_current(self, token: int) -> bool:
        return token == self._token

    def complete(self, token: int) -> bool:
        """Mark the fetch for token as applied.

        Returns:
            False if the token was superseded (the result must be discarded)
        """
        with self._lock:
            if token != self._token:
                logger.debug(f"Discarding superseded fetch (token {token}, current {self._token})")
                return False
            self._phase = LODPhase.STABLE
            self._applied_zooms = (self._state.dem_zoom, self._state.imagery_zoom)
            return True

    def fail(self, token: int) -> bool:
        """Mark the fetch for token as failed.

        The zooms fall back to the last applied fetch so that the next
        poll can request the target zoom again.

        Returns:
            False if the token was superseded (nothing is rolled back)
        """
        with self._lock:
            if token != self._token:
                return False
            dem_zoom, imagery_zoom = self._applied_zooms
            logger.debug(
                f"Fetch for token {token} failed, back to zoom {dem_zoom} from {self._state.dem_zoom}"
            )
            self._state = replace(self._state, dem_zoom=dem_zoom, imagery_zoom=imagery_zoom)
            self._phase = LODPhase.STABLE
            return True


class LODPoller:
    """Runs a polling callback on its own thread at a fixed interval."""

    def __init__(self, callback: Callable[[], None], interval: float):
        self.callback = callback
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "LODPoller":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="lod-poller", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("LOD poll failed")

    def __enter__(self) -> "LODPoller":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()
