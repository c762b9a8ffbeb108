"""
Origin/destination sampling under configurable spatial distributions.

A Sampler produces an unbounded, reproducible sequence of OD pairs. The
spatial distribution is one of a closed set of models selected by name;
all of them draw from the numpy Generator owned by the Sampler.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Optional, Union

import numpy as np

from .density import DensityClusters
from .exceptions import ConfigurationError, DrawRejected, SamplerExhausted
from .geo import BoundingBox, Coordinate, destination_point, haversine_m

if TYPE_CHECKING:
    from .config import RunConfig
    from .network import SpatialIndex

logger = logging.getLogger(__name__)

DistributionName = Literal["uniform2d", "lognormal", "weighted"]

DEFAULT_MAX_RETRIES = 100
DEFAULT_MAX_FAILED_DRAWS = 50


@dataclass(frozen=True)
class ODPair:
    """Origin and destination of one simulated trip."""

    index: int
    origin: Coordinate
    destination: Coordinate
    origin_node: Optional[int] = None
    destination_node: Optional[int] = None

    @property
    def straight_distance_m(self) -> float:
        return haversine_m(*self.origin, *self.destination)


# =============================================================================
# DISTRIBUTIONS
# =============================================================================

class Uniform2D:
    """Origin and destination drawn independently and uniformly in a bounding box."""

    name = "uniform2d"

    def __init__(self, bounds: BoundingBox):
        self.bounds = bounds

    def sample_origin(self, rng: np.random.Generator) -> Coordinate:
        lon = rng.uniform(self.bounds.west, self.bounds.east)
        lat = rng.uniform(self.bounds.south, self.bounds.north)
        return (float(lon), float(lat))

    def sample_destination(self, rng: np.random.Generator, origin: Coordinate) -> Optional[Coordinate]:
        return self.sample_origin(rng)


class LogNormalTripLength:
    """
    Uniform origin, destination at a log-normally distributed distance.

    The bearing is uniform; destinations falling outside the bounding box
    are rejected so the Sampler redraws.
    """

    name = "lognormal"

    def __init__(self, bounds: BoundingBox, median_m: float = 5000.0, sigma: float = 0.8):
        if median_m <= 0:
            raise ConfigurationError(f"lognormal median must be positive, got {median_m}")
        if sigma <= 0:
            raise ConfigurationError(f"lognormal sigma must be positive, got {sigma}")
        self.bounds = bounds
        self.median_m = median_m
        self.sigma = sigma

    def sample_origin(self, rng: np.random.Generator) -> Coordinate:
        lon = rng.uniform(self.bounds.west, self.bounds.east)
        lat = rng.uniform(self.bounds.south, self.bounds.north)
        return (float(lon), float(lat))

    def sample_destination(self, rng: np.random.Generator, origin: Coordinate) -> Optional[Coordinate]:
        distance = rng.lognormal(mean=math.log(self.median_m), sigma=self.sigma)
        bearing = rng.uniform(0.0, 2.0 * math.pi)
        lon, lat = destination_point(origin[0], origin[1], bearing, distance)
        if not self.bounds.contains(lon, lat):
            return None
        return (lon, lat)


class WeightedDensity:
    """
    Endpoints drawn from weighted density clusters.

    The destination is drawn among the clusters within max_trip_distance_m
    of the origin, proportionally to their weights.
    """

    name = "weighted"

    def __init__(self, clusters: DensityClusters, max_trip_distance_m: Optional[float] = None):
        self.clusters = clusters
        self.max_trip_distance_m = max_trip_distance_m

    def sample_origin(self, rng: np.random.Generator) -> Coordinate:
        return self.clusters.sample_point(rng)

    def sample_destination(self, rng: np.random.Generator, origin: Coordinate) -> Optional[Coordinate]:
        if self.max_trip_distance_m is None:
            return self.clusters.sample_point(rng)
        return self.clusters.sample_point_within(rng, origin, self.max_trip_distance_m)


Distribution = Union[Uniform2D, LogNormalTripLength, WeightedDensity]


def make_distribution(
    name: DistributionName,
    bounds: Optional[BoundingBox] = None,
    max_trip_distance_m: Optional[float] = None,
    median_m: float = 5000.0,
    sigma: float = 0.8,
    density_csv: Optional[str] = None,
) -> Distribution:
    """
    Build a distribution by name.

    Raises:
        ConfigurationError: For unknown names or missing parameters
    """
    if name == "uniform2d":
        if bounds is None:
            raise ConfigurationError("uniform2d sampling requires bounds")
        return Uniform2D(bounds)
    elif name == "lognormal":
        if bounds is None:
            raise ConfigurationError("lognormal sampling requires bounds")
        return LogNormalTripLength(bounds, median_m=median_m, sigma=sigma)
    elif name == "weighted":
        if density_csv is None:
            raise ConfigurationError("weighted sampling requires a density CSV file")
        clusters = DensityClusters.from_csv(density_csv, bounds=bounds)
        return WeightedDensity(clusters, max_trip_distance_m=max_trip_distance_m)
    else:
        raise ConfigurationError(f"Unknown distribution: {name}")


# =============================================================================
# SAMPLER
# =============================================================================

class Sampler:
    """
    Pull-based, thread-safe source of OD pairs.

    Candidates are redrawn when origin equals destination, when the
    straight-line distance leaves [min_trip_distance_m, max_trip_distance_m],
    or when a snapped endpoint is farther than max_snap_distance_m from the
    network. A draw that needs more than max_retries candidates raises
    DrawRejected; after max_failed_draws such draws the sampler is exhausted
    and every further call raises SamplerExhausted.

    Restarting the sequence means building a new Sampler with the same seed.
    """

    def __init__(
        self,
        distribution: Distribution,
        seed: Optional[int] = None,
        max_trip_distance_m: Optional[float] = None,
        min_trip_distance_m: float = 0.0,
        snap_index: Optional[SpatialIndex] = None,
        max_snap_distance_m: Optional[float] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_failed_draws: int = DEFAULT_MAX_FAILED_DRAWS,
    ):
        if max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {max_retries}")
        if max_failed_draws < 1:
            raise ConfigurationError(f"max_failed_draws must be >= 1, got {max_failed_draws}")
        if max_trip_distance_m is not None and max_trip_distance_m <= min_trip_distance_m:
            raise ConfigurationError(
                f"max_trip_distance_m ({max_trip_distance_m}) must exceed "
                f"min_trip_distance_m ({min_trip_distance_m})"
            )

        self.distribution = distribution
        self.seed = seed
        self.max_trip_distance_m = max_trip_distance_m
        self.min_trip_distance_m = min_trip_distance_m
        self.snap_index = snap_index
        self.max_snap_distance_m = max_snap_distance_m
        self.max_retries = max_retries
        self.max_failed_draws = max_failed_draws

        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self._next_index = 0
        self._exhausted = False

        self.n_drawn = 0
        self.n_rejected_candidates = 0
        self.n_failed_draws = 0

    @classmethod
    def from_config(cls, config: RunConfig, snap_index: Optional[SpatialIndex] = None) -> Sampler:
        distribution = make_distribution(
            config.distribution,
            bounds=config.bounding_box(),
            max_trip_distance_m=config.max_trip_distance_m,
            median_m=config.lognormal_median_m,
            sigma=config.lognormal_sigma,
            density_csv=config.density_csv,
        )
        return cls(
            distribution,
            seed=config.seed,
            max_trip_distance_m=config.max_trip_distance_m,
            min_trip_distance_m=config.min_trip_distance_m,
            snap_index=snap_index if config.snap else None,
            max_snap_distance_m=config.max_snap_distance_m,
            max_retries=config.max_retries,
            max_failed_draws=config.max_failed_draws,
        )

    def __iter__(self):
        return self

    def __next__(self) -> ODPair:
        return self.next()

    def next(self) -> ODPair:
        """
        Draw the next OD pair.

        Raises:
            DrawRejected: This draw ran out of retries (the sample is skipped)
            SamplerExhausted: The total budget of failed draws is used up
        """
        with self._lock:
            if self._exhausted:
                raise SamplerExhausted(
                    f"Sampler exhausted after {self.n_failed_draws} failed draws"
                )

            index = self._next_index
            self._next_index += 1

            for _ in range(self.max_retries):
                pair = self._candidate(index)
                if pair is not None:
                    self.n_drawn += 1
                    return pair
                self.n_rejected_candidates += 1

            self.n_failed_draws += 1
            if self.n_failed_draws >= self.max_failed_draws:
                self._exhausted = True
                logger.error(
                    f"Sampler exhausted: {self.n_failed_draws} draws failed "
                    f"after {self.max_retries} candidates each"
                )
                raise SamplerExhausted(
                    f"{self.n_failed_draws} draws exceeded {self.max_retries} retries"
                )
            raise DrawRejected(f"Sample {index}: no valid OD pair after {self.max_retries} candidates")

    def _candidate(self, index: int) -> Optional[ODPair]:
        origin = self.distribution.sample_origin(self._rng)
        destination = self.distribution.sample_destination(self._rng, origin)
        if destination is None or origin == destination:
            return None

        distance = haversine_m(*origin, *destination)
        if distance < self.min_trip_distance_m:
            return None
        if self.max_trip_distance_m is not None and distance > self.max_trip_distance_m:
            return None

        if self.snap_index is None:
            return ODPair(index=index, origin=origin, destination=destination)

        snapped_origin = self.snap_index.nearest(origin)
        snapped_dest = self.snap_index.nearest(destination)
        if self.max_snap_distance_m is not None and (
            snapped_origin.distance_m > self.max_snap_distance_m
            or snapped_dest.distance_m > self.max_snap_distance_m
        ):
            return None
        if snapped_origin.node_id == snapped_dest.node_id:
            return None

        return ODPair(
            index=index,
            origin=(snapped_origin.lon, snapped_origin.lat),
            destination=(snapped_dest.lon, snapped_dest.lat),
            origin_node=snapped_origin.node_id,
            destination_node=snapped_dest.node_id,
        )
