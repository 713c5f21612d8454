"""
Named footprints.

Each area stores its extent as west, south, east, north in degrees, the
same order the ``--bounds`` option takes.

Usage:
    from terrain_pipeline.areas import get_area

    bounds = get_area("khao_yai").geographic_bounds
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from .geometry import GeographicBounds


@dataclass(frozen=True)
class Area:
    """A named footprint on the map."""

    name: str
    description: str
    extent: Tuple[float, float, float, float]  # west, south, east, north

    @property
    def bounds_arg(self) -> str:
        """The extent formatted as a ``--bounds`` value."""
        return ",".join(f"{x:.6f}" for x in self.extent)

    @property
    def geographic_bounds(self) -> GeographicBounds:
        return GeographicBounds.from_wgs84(*self.extent)


AREAS: Dict[str, Area] = {
    "khao_yai": Area(
        "Khao Yai foothills",
        "Small default footprint (about 1 km across)",
        (101.013221, 14.397022, 101.022433, 14.403549),
    ),
    "phu_kradueng": Area(
        "Phu Kradueng",
        "Sandstone plateau and escarpment (about 18 km across)",
        (101.676558, 16.828773, 101.843331, 16.955233),
    ),
}

DEFAULT_AREA = "khao_yai"


def get_area(name: str) -> Area:
    """Get area by name.

    Args:
        name: Area name (case-insensitive, underscores/hyphens/spaces normalized)

    Raises:
        ValueError: If area name is not found
    """
    key = name.lower().replace(" ", "_").replace("-", "_")
    if key not in AREAS:
        available = ", ".join(sorted(AREAS.keys()))
        raise ValueError(f"Unknown area '{name}'. Available: {available}")
    return AREAS[key]


def get_area_bounds(name: str) -> GeographicBounds:
    """Get bounds for a named area."""
    return get_area(name).geographic_bounds
