"""
Run configuration.

Defaults live in DEFAULT_CONFIG; a JSON file or a dict overrides any subset
of them. Validation happens once, before the run starts.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigurationError
from .geo import BoundingBox
from .routing import DEFAULT_OSRM_URL
from .sampling import DEFAULT_MAX_FAILED_DRAWS, DEFAULT_MAX_RETRIES

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_CONFIG: dict[str, Any] = {
    # Sampling
    'n_samples': 1000,
    'distribution': 'uniform2d',
    'bounds': None,  # (south, west, north, east)
    'max_trip_distance_m': None,
    'min_trip_distance_m': 0.0,
    'lognormal_median_m': 5000.0,
    'lognormal_sigma': 0.8,
    'density_csv': None,
    'seed': None,

    # Snapping
    'snap': True,
    'max_snap_distance_m': None,

    # Routing engine
    'osrm_url': DEFAULT_OSRM_URL,
    'osrm_profile': 'driving',
    'request_timeout_s': 10.0,
    'n_workers': 4,

    # Failure budgets
    'max_consecutive_failures': 20,
    'max_retries': DEFAULT_MAX_RETRIES,
    'max_failed_draws': DEFAULT_MAX_FAILED_DRAWS,

    # Outputs
    'geojson_path': None,
    'routes_path': None,
    'png_path': None,
    'png_width': 1024,
    'png_height': 1024,
    'include_zero': False,
    'color_scale': None,  # (vmin, vmax); min-max of the snapshot if None
    'scenario': 'sample',
}

DISTRIBUTIONS = ('uniform2d', 'lognormal', 'weighted')


@dataclass
class RunConfig:
    n_samples: int = DEFAULT_CONFIG['n_samples']
    distribution: str = DEFAULT_CONFIG['distribution']
    bounds: Optional[tuple[float, float, float, float]] = DEFAULT_CONFIG['bounds']
    max_trip_distance_m: Optional[float] = DEFAULT_CONFIG['max_trip_distance_m']
    min_trip_distance_m: float = DEFAULT_CONFIG['min_trip_distance_m']
    lognormal_median_m: float = DEFAULT_CONFIG['lognormal_median_m']
    lognormal_sigma: float = DEFAULT_CONFIG['lognormal_sigma']
    density_csv: Optional[str] = DEFAULT_CONFIG['density_csv']
    seed: Optional[int] = DEFAULT_CONFIG['seed']
    snap: bool = DEFAULT_CONFIG['snap']
    max_snap_distance_m: Optional[float] = DEFAULT_CONFIG['max_snap_distance_m']
    osrm_url: str = DEFAULT_CONFIG['osrm_url']
    osrm_profile: str = DEFAULT_CONFIG['osrm_profile']
    request_timeout_s: float = DEFAULT_CONFIG['request_timeout_s']
    n_workers: int = DEFAULT_CONFIG['n_workers']
    max_consecutive_failures: int = DEFAULT_CONFIG['max_consecutive_failures']
    max_retries: int = DEFAULT_CONFIG['max_retries']
    max_failed_draws: int = DEFAULT_CONFIG['max_failed_draws']
    geojson_path: Optional[str] = DEFAULT_CONFIG['geojson_path']
    routes_path: Optional[str] = DEFAULT_CONFIG['routes_path']
    png_path: Optional[str] = DEFAULT_CONFIG['png_path']
    png_width: int = DEFAULT_CONFIG['png_width']
    png_height: int = DEFAULT_CONFIG['png_height']
    include_zero: bool = DEFAULT_CONFIG['include_zero']
    color_scale: Optional[tuple[float, float]] = DEFAULT_CONFIG['color_scale']
    scenario: str = DEFAULT_CONFIG['scenario']

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> RunConfig:
        """
        Build a config from overrides of DEFAULT_CONFIG.

        Raises:
            ConfigurationError: If a key is not a known option
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration options: {unknown}")

        values = dict(values)
        for key in ('bounds', 'color_scale'):
            if values.get(key) is not None:
                values[key] = tuple(float(v) for v in values[key])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def bounding_box(self) -> Optional[BoundingBox]:
        if self.bounds is None:
            return None
        return BoundingBox.from_sequence(self.bounds)

    def validate(self) -> None:
        """
        Check option values and their combinations.

        Raises:
            ConfigurationError: On the first invalid option found
        """
        if not isinstance(self.n_samples, int) or self.n_samples <= 0:
            raise ConfigurationError(f"n_samples must be a positive integer, got {self.n_samples!r}")
        if not isinstance(self.n_workers, int) or self.n_workers < 1:
            raise ConfigurationError(f"n_workers must be >= 1, got {self.n_workers!r}")
        if self.distribution not in DISTRIBUTIONS:
            raise ConfigurationError(
                f"Unknown distribution {self.distribution!r}, expected one of {DISTRIBUTIONS}"
            )
        if self.distribution in ('uniform2d', 'lognormal') and self.bounds is None:
            raise ConfigurationError(f"{self.distribution} sampling requires bounds")
        if self.distribution == 'weighted' and not self.density_csv:
            raise ConfigurationError("weighted sampling requires density_csv")

        # raises on malformed boxes
        self.bounding_box()

        if self.max_trip_distance_m is not None and self.max_trip_distance_m <= self.min_trip_distance_m:
            raise ConfigurationError(
                f"max_trip_distance_m ({self.max_trip_distance_m}) must exceed "
                f"min_trip_distance_m ({self.min_trip_distance_m})"
            )
        if self.min_trip_distance_m < 0:
            raise ConfigurationError("min_trip_distance_m must be >= 0")
        if self.request_timeout_s <= 0:
            raise ConfigurationError("request_timeout_s must be positive")
        if self.max_consecutive_failures < 1:
            raise ConfigurationError("max_consecutive_failures must be >= 1")
        if self.max_retries < 1 or self.max_failed_draws < 1:
            raise ConfigurationError("max_retries and max_failed_draws must be >= 1")
        if self.png_width < 1 or self.png_height < 1:
            raise ConfigurationError("png_width and png_height must be >= 1")
        if self.color_scale is not None:
            if len(self.color_scale) != 2 or self.color_scale[0] >= self.color_scale[1]:
                raise ConfigurationError(f"color_scale must be (vmin, vmax) with vmin < vmax, got {self.color_scale}")


def load_config(path: Path | str, overrides: Optional[dict[str, Any]] = None) -> RunConfig:
    """
    Load a JSON config file, apply overrides, and validate.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the file is not valid JSON or an option is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        values = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(values, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")

    values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    config = RunConfig.from_dict(values)
    config.validate()
    logger.info(f"Loaded configuration from {path}")
    return config
