"""
Compare estimated traffic counts with empirical counts.

Reference data is a GeoJSON of road segments carrying a numeric count
property (e.g. official AADT counts). Every simulated edge is matched to
the nearest reference segment that runs in the same direction, and the
matched pairs are summarized with correlation statistics.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import geopandas as gpd
import numpy as np
from scipy import stats
from shapely.geometry import LineString, Point

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_M = 20.0
DEFAULT_MAX_ORIENTATION_DIFF = 0.01  # radians


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def orientation(dx: float, dy: float) -> float:
    """Undirected orientation of a segment in [0, pi]."""
    angle = math.atan2(dy, dx)
    return angle if angle >= 0.0 else angle + math.pi


def orientation_diff(a: tuple[float, float], b: tuple[float, float]) -> float:
    """
    Smallest angle in radians between two undirected segment directions.

    Args:
        a, b: (dx, dy) direction vectors
    """
    oa = orientation(*a)
    ob = orientation(*b)
    if oa > ob:
        oa, ob = ob, oa
    return min(ob - oa, oa + math.pi - ob)


def _explode_segments(gdf: gpd.GeoDataFrame, value_column: str) -> gpd.GeoDataFrame:
    """Split LineStrings into two-point segments, keeping the value column."""
    records = []
    for geom, value in zip(gdf.geometry, gdf[value_column]):
        if geom is None or geom.is_empty:
            continue
        lines = geom.geoms if geom.geom_type == "MultiLineString" else [geom]
        for line in lines:
            coords = list(line.coords)
            for a, b in zip(coords[:-1], coords[1:]):
                records.append({'value': float(value), 'geometry': LineString([a, b])})

    return gpd.GeoDataFrame(records, columns=['value', 'geometry'], geometry='geometry', crs=gdf.crs)


# =============================================================================
# LOADING
# =============================================================================

def load_reference_segments(path: Path | str, number_property: str) -> gpd.GeoDataFrame:
    """
    Load reference counts as individual line segments.

    Args:
        path: GeoJSON FeatureCollection of LineStrings
        number_property: Property holding the empirical count

    Returns:
        GeoDataFrame (EPSG:4326) with 'value' and segment geometry

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If no line feature carries a numeric number_property
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference file not found: {path}")

    gdf = gpd.read_file(path)
    if number_property not in gdf.columns:
        raise ValueError(
            f"{path} contains no features with property {number_property!r}. "
            f"Available columns: {list(gdf.columns)}"
        )

    if gdf.crs is None:
        logger.warning("No CRS in reference file, assuming EPSG:4326")
        gdf = gdf.set_crs("EPSG:4326")
    elif gdf.crs.to_epsg() != 4326:
        gdf = gdf.to_crs("EPSG:4326")

    gdf = gdf[gdf.geometry.geom_type.isin(['LineString', 'MultiLineString'])]
    gdf = gdf[gdf[number_property].notna()]

    segments = _explode_segments(gdf, number_property)
    if segments.empty:
        raise ValueError(f"{path} contains no line features with property {number_property!r}")

    logger.info(f"Loaded {len(segments)} reference segments from {path}")
    return segments


# =============================================================================
# MATCHING
# =============================================================================

def compare_counts(
    simulated: gpd.GeoDataFrame,
    reference: gpd.GeoDataFrame,
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
    max_orientation_diff: float = DEFAULT_MAX_ORIENTATION_DIFF,
) -> tuple[gpd.GeoDataFrame, dict]:
    """
    Match simulated edges to reference segments.

    For each simulated edge with a non-zero count, the reference segment
    nearest to the edge midpoint (point-to-line distance) is accepted if it
    lies within max_distance_m and its orientation differs by less than
    max_orientation_diff radians. Only the nearest segment is considered.

    Args:
        simulated: Output of export.counts_to_geodataframe
        reference: Output of load_reference_segments

    Returns:
        Tuple of:
        - GeoDataFrame of connection lines (edge midpoint -> nearest point
          on the matched segment) with number_empir, number_sim, length
        - dict with n_simulated, n_matched, pearson_r, spearman_r
    """
    empty = gpd.GeoDataFrame(
        columns=['number_empir', 'number_sim', 'length', 'geometry'],
        geometry='geometry',
        crs="EPSG:4326",
    )
    simulated = simulated[simulated['count'] > 0] if not simulated.empty else simulated
    if simulated.empty or reference.empty:
        logger.warning("Nothing to compare")
        return empty, {'n_simulated': len(simulated), 'n_matched': 0,
                       'pearson_r': float('nan'), 'spearman_r': float('nan')}

    # Project to meters
    utm_crs = reference.estimate_utm_crs()
    sim_proj = _explode_segments(simulated, 'count').to_crs(utm_crs)
    ref_proj = reference.to_crs(utm_crs)

    ref_coords = [np.asarray(g.coords) for g in ref_proj.geometry]
    ref_values = ref_proj['value'].to_numpy()
    sim_values = sim_proj['value'].to_numpy()

    sim_coords = [np.asarray(g.coords) for g in sim_proj.geometry]
    centers = gpd.GeoSeries(
        [Point(*((c[0] + c[-1]) / 2)[:2]) for c in sim_coords], crs=utm_crs
    )
    # distance is measured to the whole reference segment, not its midpoint
    (sim_idx, ref_idx), distances = ref_proj.sindex.nearest(
        centers, return_all=False, max_distance=max_distance_m, return_distance=True
    )

    records = []
    for i, idx, dist in zip(sim_idx, ref_idx, distances):
        coords = sim_coords[i]
        center = (coords[0] + coords[-1]) / 2
        rc = ref_coords[idx]
        diff = orientation_diff(
            (coords[-1][0] - coords[0][0], coords[-1][1] - coords[0][1]),
            (rc[-1][0] - rc[0][0], rc[-1][1] - rc[0][1]),
        )
        if diff >= max_orientation_diff:
            continue

        ref_line = ref_proj.geometry.iloc[idx]
        nearest = ref_line.interpolate(ref_line.project(Point(center[:2])))
        records.append({
            'number_empir': float(ref_values[idx]),
            'number_sim': int(sim_values[i]),
            'length': float(dist),
            'geometry': LineString([tuple(center[:2]), (nearest.x, nearest.y)]),
        })

    if not records:
        logger.info(f"No matches among {len(sim_proj)} simulated segments")
        return empty, {'n_simulated': len(sim_proj), 'n_matched': 0,
                       'pearson_r': float('nan'), 'spearman_r': float('nan')}

    connections = gpd.GeoDataFrame(records, crs=utm_crs).to_crs("EPSG:4326")

    empir = connections['number_empir'].to_numpy()
    sim = connections['number_sim'].to_numpy()
    if len(connections) > 1 and np.ptp(empir) > 0 and np.ptp(sim) > 0:
        pearson_r = float(stats.pearsonr(sim, empir)[0])
        spearman_r = float(stats.spearmanr(sim, empir)[0])
    else:
        pearson_r = spearman_r = float('nan')

    summary = {
        'n_simulated': len(sim_proj),
        'n_matched': len(connections),
        'pearson_r': pearson_r,
        'spearman_r': spearman_r,
    }
    logger.info(
        f"Matched {summary['n_matched']}/{summary['n_simulated']} segments "
        f"(pearson r={pearson_r:.3f}, spearman r={spearman_r:.3f})"
    )
    return connections, summary
