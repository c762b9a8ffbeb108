"""
Spatial density of trip endpoints from points of interest.

POIs are fetched from OpenStreetMap via the Overpass API, aggregated into the
100 m EPSG:3035 grid, and stored as weighted cluster points in a CSV file.
DensityClusters loads such a file and draws weighted random points from it.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import requests
from scipy.spatial import cKDTree
from shapely.geometry import Point

from .exceptions import ConfigurationError
from .geo import EARTH_RADIUS_M, BoundingBox, Coordinate, to_unit_sphere

logger = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass-api.de/api/interpreter"

GRID_CRS = "EPSG:3035"
GRID_CELL_M = 100

CSV_COLUMNS = ["x_mp_100m", "y_mp_100m", "weight"]


# =============================================================================
# POI DOWNLOAD
# =============================================================================

def query_pois(
    bbox: BoundingBox,
    tag: tuple[str, str] = ("shop", "supermarket"),
    timeout: int = 120,
    max_retries: int = 3,
) -> gpd.GeoDataFrame:
    """
    Query nodes and ways carrying a tag from OpenStreetMap via Overpass API.

    Ways are reduced to their center point.

    Args:
        bbox: Area to search
        tag: (key, value) OSM tag to match
        timeout: Query timeout in seconds
        max_retries: Maximum number of retry attempts

    Returns:
        GeoDataFrame of POI points (EPSG:4326)

    Raises:
        requests.HTTPError: If API request fails after retries
    """
    key, value = tag
    s, w, n, e = bbox.as_tuple()
    query = f'''
    [out:json][timeout:{timeout}];
    (
      node["{key}"="{value}"]({s},{w},{n},{e});
      way["{key}"="{value}"]({s},{w},{n},{e});
    );
    out center;
    '''

    # Retry with exponential backoff
    for attempt in range(max_retries):
        try:
            response = requests.post(
                OVERPASS_URL,
                data={"data": query},
                timeout=timeout + 30,
            )
            response.raise_for_status()
            data = response.json()
            return _parse_poi_response(data)
        except (requests.RequestException, json.JSONDecodeError) as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** (attempt + 1)
                logger.warning(f"Overpass request failed, retrying in {wait_time}s: {e}")
                time.sleep(wait_time)
            else:
                raise


def _parse_poi_response(data: dict) -> gpd.GeoDataFrame:
    """
    Parse Overpass API response into GeoDataFrame.

    Args:
        data: JSON response from Overpass API

    Returns:
        GeoDataFrame with one point per node or way
    """
    records = []
    for element in data.get("elements", []):
        if element["type"] == "node":
            lat, lon = element["lat"], element["lon"]
        elif element["type"] == "way" and "center" in element:
            lat, lon = element["center"]["lat"], element["center"]["lon"]
        else:
            continue
        records.append({
            "osm_id": element["id"],
            "osm_type": element["type"],
            "geometry": Point(lon, lat),
        })

    if not records:
        return gpd.GeoDataFrame(
            columns=["osm_id", "osm_type", "geometry"],
            geometry="geometry",
            crs="EPSG:4326",
        )

    return gpd.GeoDataFrame(records, crs="EPSG:4326")


# =============================================================================
# GRID AGGREGATION
# =============================================================================

def grid_cells_100m(gdf: gpd.GeoDataFrame) -> pd.DataFrame:
    """
    Count points per 100 m grid cell.

    Returns:
        DataFrame with cell centre coordinates (EPSG:3035) and weight
    """
    if gdf.empty:
        return pd.DataFrame(columns=CSV_COLUMNS)

    proj = gdf.to_crs(GRID_CRS)
    x = (np.floor(proj.geometry.x / GRID_CELL_M) * GRID_CELL_M + GRID_CELL_M // 2).astype(int)
    y = (np.floor(proj.geometry.y / GRID_CELL_M) * GRID_CELL_M + GRID_CELL_M // 2).astype(int)

    cells = (
        pd.DataFrame({"x_mp_100m": x.values, "y_mp_100m": y.values})
        .groupby(["x_mp_100m", "y_mp_100m"])
        .size()
        .rename("weight")
        .reset_index()
    )
    cells["weight"] = cells["weight"].astype(float)

    logger.info(f"Aggregated {len(gdf)} points into {len(cells)} grid cells")
    return cells


def write_density_csv(cells: pd.DataFrame, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    cells[CSV_COLUMNS].to_csv(path, index=False)


# =============================================================================
# WEIGHTED CLUSTERS
# =============================================================================

class DensityClusters:
    """Weighted points with a KD-tree for radius queries."""

    def __init__(self, lon: np.ndarray, lat: np.ndarray, weights: np.ndarray):
        weights = np.asarray(weights, dtype=float)
        if len(weights) == 0 or weights.sum() <= 0:
            raise ConfigurationError("Density clusters need at least one positive weight")

        self.lon = np.asarray(lon, dtype=float)
        self.lat = np.asarray(lat, dtype=float)
        self.weights = weights
        self._probs = weights / weights.sum()
        self._tree = cKDTree(to_unit_sphere(self.lon, self.lat))

    def __len__(self) -> int:
        return len(self.weights)

    @classmethod
    def from_csv(cls, path: Path | str, bounds: Optional[BoundingBox] = None) -> DensityClusters:
        """
        Load clusters from a CSV of (x, y, weight) rows in EPSG:3035.

        Args:
            path: CSV file with a header row and three columns
            bounds: Keep only clusters inside this box

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigurationError: If no usable cluster remains
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Density file not found: {path}")

        logger.info(f"Reading density clusters from {path}")
        df = pd.read_csv(path)
        if df.shape[1] != 3:
            raise ConfigurationError(
                f"Density file must have 3 columns (x, y, weight), found {df.shape[1]}"
            )

        x, y, weight = (df.iloc[:, i].astype(float) for i in range(3))
        points = gpd.GeoSeries(gpd.points_from_xy(x, y), crs=GRID_CRS).to_crs("EPSG:4326")
        lon = points.x.to_numpy()
        lat = points.y.to_numpy()
        weight = weight.to_numpy()

        keep = weight > 0
        if bounds is not None:
            keep &= (
                (lat >= bounds.south) & (lat <= bounds.north)
                & (lon >= bounds.west) & (lon <= bounds.east)
            )

        if not keep.any():
            raise ConfigurationError(f"No weighted clusters inside bounds in {path}")

        logger.info(f"  Done. ({int(keep.sum())} clusters)")
        return cls(lon[keep], lat[keep], weight[keep])

    def sample_point(self, rng: np.random.Generator) -> Coordinate:
        """Return a random point from the distribution."""
        i = rng.choice(len(self.weights), p=self._probs)
        return (float(self.lon[i]), float(self.lat[i]))

    def sample_point_within(
        self,
        rng: np.random.Generator,
        origin: Coordinate,
        radius_m: float,
    ) -> Optional[Coordinate]:
        """
        Sample a point within radius_m (great-circle) of origin.

        Returns None if no weighted point lies within the radius.
        """
        point = to_unit_sphere([origin[0]], [origin[1]])[0]
        chord = 2.0 * np.sin(min(radius_m / (2.0 * EARTH_RADIUS_M), np.pi / 2))
        idxs = np.array(sorted(self._tree.query_ball_point(point, r=chord)), dtype=int)
        if len(idxs) == 0:
            return None

        w = self.weights[idxs]
        total = w.sum()
        if total <= 0:
            return None

        i = idxs[rng.choice(len(idxs), p=w / total)]
        return (float(self.lon[i]), float(self.lat[i]))
