"""
Geographic primitives shared by the sampler, the spatial index and the exporter.

Coordinates are (lon, lat) tuples in degrees (EPSG:4326) throughout.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .exceptions import ConfigurationError

EARTH_RADIUS_M = 6_371_008.8

Coordinate = tuple[float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in degrees, (south, west, north, east) like the Overpass API."""

    south: float
    west: float
    north: float
    east: float

    def __post_init__(self):
        values = (self.south, self.west, self.north, self.east)
        if not all(math.isfinite(v) for v in values):
            raise ConfigurationError(f"Bounding box has non-finite values: {values}")
        if not (-90.0 <= self.south < self.north <= 90.0):
            raise ConfigurationError(
                f"Invalid latitude range: south={self.south}, north={self.north}"
            )
        # FIXME: boxes crossing the 180th meridian are not supported
        if not (-180.0 <= self.west < self.east <= 180.0):
            raise ConfigurationError(
                f"Invalid longitude range: west={self.west}, east={self.east}"
            )

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> BoundingBox:
        """Build from a (south, west, north, east) sequence."""
        if len(values) != 4:
            raise ConfigurationError(
                f"Bounding box needs 4 values (south, west, north, east), got {len(values)}"
            )
        south, west, north, east = (float(v) for v in values)
        return cls(south=south, west=west, north=north, east=east)

    def contains(self, lon: float, lat: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.south, self.west, self.north, self.east)

    def as_osmnx_bbox(self) -> tuple[float, float, float, float]:
        """(left, bottom, right, top) as expected by osmnx >= 2.0."""
        return (self.west, self.south, self.east, self.north)


def haversine_m(lon1, lat1, lon2, lat2):
    """
    Great-circle distance in metres.

    Accepts scalars or numpy arrays (broadcast elementwise).
    """
    lon1, lat1, lon2, lat2 = map(np.radians, (lon1, lat1, lon2, lat2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    d = 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))
    if np.ndim(d) == 0:
        return float(d)
    return d


def destination_point(lon: float, lat: float, bearing_rad: float, distance_m: float) -> Coordinate:
    """Point reached from (lon, lat) after travelling distance_m along a bearing."""
    phi1 = math.radians(lat)
    lam1 = math.radians(lon)
    delta = distance_m / EARTH_RADIUS_M

    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta)
        + math.cos(phi1) * math.sin(delta) * math.cos(bearing_rad)
    )
    lam2 = lam1 + math.atan2(
        math.sin(bearing_rad) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    # wrap longitude to [-180, 180)
    lon2 = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return (lon2, math.degrees(phi2))


def to_unit_sphere(lon, lat) -> np.ndarray:
    """Embed coordinates on the unit sphere; chord length is monotonic in arc length."""
    lon = np.radians(np.asarray(lon, dtype=float))
    lat = np.radians(np.asarray(lat, dtype=float))
    cos_lat = np.cos(lat)
    return np.column_stack((cos_lat * np.cos(lon), cos_lat * np.sin(lon), np.sin(lat)))


def chord_to_metres(chord):
    """Convert unit-sphere chord length to great-circle metres."""
    chord = np.clip(np.asarray(chord, dtype=float), 0.0, 2.0)
    return 2.0 * EARTH_RADIUS_M * np.arcsin(chord / 2.0)
