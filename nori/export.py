"""
Output artefacts of a sampling run.

- GeoJSON road network with per-edge counts and count-derived styling
- JSON Lines route log for offline reprocessing
- PNG raster of the same styled network

Everything here is a pure function of a TrafficCount snapshot (or of the
routes written to the log) plus static network geometry.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import geopandas as gpd
import matplotlib
import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.collections import LineCollection
from matplotlib.colors import to_hex
from matplotlib.figure import Figure
from shapely.geometry import box

from .accumulator import TrafficCount
from .exceptions import UnresolvedEdgeError
from .geo import BoundingBox
from .network import EdgeKey, RoadNetwork
from .routing import RouteResult

logger = logging.getLogger(__name__)

ROUTE_LOG_FORMAT = "nori-routes"
ROUTE_LOG_VERSION = (0, 1)

DEFAULT_CMAP = "YlGn"  # ColorBrewer yellow-green
MIN_WIDTH = 1.0
MAX_WIDTH = 4.0

GDF_COLUMNS = ["u", "v", "key", "count", "norm", "color", "width", "geometry"]


# =============================================================================
# COUNT -> STYLE
# =============================================================================

def normalize_counts(
    counts: np.ndarray,
    scale: Optional[tuple[float, float]] = None,
) -> np.ndarray:
    """
    Map counts to [0, 1].

    Min-max over the given counts, or over a fixed (vmin, vmax) scale.
    If all counts are equal the result is 1 for every edge.
    """
    counts = np.asarray(counts, dtype=float)
    if len(counts) == 0:
        return counts

    if scale is not None:
        vmin, vmax = scale
    else:
        vmin, vmax = counts.min(), counts.max()

    if vmax > vmin:
        return np.clip((counts - vmin) / (vmax - vmin), 0.0, 1.0)
    return np.ones_like(counts)


def count_colors(norm: np.ndarray, cmap: str = DEFAULT_CMAP) -> list[str]:
    colormap = matplotlib.colormaps[cmap]
    return [to_hex(colormap(float(n))) for n in norm]


def counts_to_geodataframe(
    counts: TrafficCount,
    network: RoadNetwork,
    include_zero: bool = False,
    scale: Optional[tuple[float, float]] = None,
    cmap: str = DEFAULT_CMAP,
) -> gpd.GeoDataFrame:
    """
    Join counts to edge geometry.

    Args:
        counts: Snapshot from the accumulator
        network: Network providing edge geometry
        include_zero: Also emit edges nobody traversed
        scale: Fixed (vmin, vmax) for color/width; min-max if None
        cmap: Matplotlib colormap name

    Returns:
        GeoDataFrame (EPSG:4326) sorted by ascending count

    Raises:
        UnresolvedEdgeError: If a counted edge is missing from the network
    """
    for edge in counts:
        if not network.has_edge(EdgeKey(*edge)):
            raise UnresolvedEdgeError(edge[0], edge[1])

    if include_zero:
        edges = list(network.edges())
    else:
        edges = [EdgeKey(*e) for e, c in counts.items() if c > 0]

    if not edges:
        return gpd.GeoDataFrame(columns=GDF_COLUMNS, geometry="geometry", crs="EPSG:4326")

    values = np.array([counts.get(e, 0) for e in edges], dtype=int)
    norm = normalize_counts(values, scale)

    gdf = gpd.GeoDataFrame({
        'u': [e.u for e in edges],
        'v': [e.v for e in edges],
        'key': [e.key for e in edges],
        'count': values,
        'norm': norm,
        'color': count_colors(norm, cmap),
        'width': MIN_WIDTH + (MAX_WIDTH - MIN_WIDTH) * norm,
        'geometry': [network.edge_geometry(e) for e in edges],
    }, crs="EPSG:4326")

    gdf = gdf.sort_values(['count', 'u', 'v', 'key'], kind='stable').reset_index(drop=True)
    logger.info(
        f"Prepared {len(gdf)} edges for export "
        f"(counts {int(values.min())}-{int(values.max())})"
    )
    return gdf


# =============================================================================
# GEOJSON
# =============================================================================

def write_geojson(gdf: gpd.GeoDataFrame, path: Path | str) -> Path:
    """Write the styled network as a GeoJSON FeatureCollection."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if gdf.empty:
        # some drivers refuse empty layers; an empty collection is still valid
        path.write_text(json.dumps({"type": "FeatureCollection", "features": []}), encoding="utf-8")
    else:
        gdf.to_file(path, driver="GeoJSON")

    logger.info(f"Wrote {len(gdf)} features to {path}")
    return path


def network_bounds(network: RoadNetwork) -> BoundingBox:
    """Rendering window covering every node, never empty on either axis."""
    return network.bounds()


# =============================================================================
# ROUTE LOG
# =============================================================================

class RouteLogWriter:
    """
    Append routes to a JSON Lines file.

    The first line is a header describing the run; every following line
    is one route.
    """

    def __init__(self, path: Path | str, network_source: str = "", scenario: str = "sample"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("w", encoding="utf-8")
        self._lock = threading.Lock()
        self.number_of_routes = 0
        self._finished = False

        header = {
            "format": ROUTE_LOG_FORMAT,
            "version": ".".join(map(str, ROUTE_LOG_VERSION)),
            "network": network_source,
            "scenario": scenario,
            "created": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        self._file.write(json.dumps(header) + "\n")

    def __enter__(self) -> RouteLogWriter:
        return self

    def __exit__(self, exc_type, exc, tb):
        self.finish()

    def write_route(self, route: RouteResult) -> RouteResult:
        record = {
            "sample": route.sample_index,
            "origin": list(route.origin),
            "destination": list(route.destination),
            "nodes": route.node_ids,
            "edges": [list(e) for e in route.edges],
            "distance": route.distance_m,
            "duration": route.duration_s,
        }
        with self._lock:
            self._file.write(json.dumps(record) + "\n")
            self.number_of_routes += 1
        return route

    def finish(self) -> int:
        """Flush and close; returns the number of routes written."""
        with self._lock:
            if not self._finished:
                self._file.flush()
                self._file.close()
                self._finished = True
        return self.number_of_routes


def read_route_log(path: Path | str) -> tuple[dict, Iterator[RouteResult]]:
    """
    Open a route log.

    Returns:
        (header, iterator over routes); the file is read lazily

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the header is missing or of another format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Route log not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        first = f.readline()
    try:
        header = json.loads(first)
    except json.JSONDecodeError as e:
        raise ValueError(f"Route log {path} has no valid header: {e}") from e
    if not isinstance(header, dict) or header.get("format") != ROUTE_LOG_FORMAT:
        raise ValueError(f"{path} is not a route log")

    def routes() -> Iterator[RouteResult]:
        with path.open("r", encoding="utf-8") as f:
            f.readline()
            for line_no, line in enumerate(f, start=2):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ValueError(f"{path}:{line_no}: invalid route record: {e}") from e
                yield RouteResult(
                    origin=tuple(record["origin"]),
                    destination=tuple(record["destination"]),
                    node_ids=record["nodes"],
                    edges=[EdgeKey(*e) for e in record["edges"]],
                    distance_m=record.get("distance", 0.0),
                    duration_s=record.get("duration", 0.0),
                    sample_index=record.get("sample"),
                )

    return header, routes()


# =============================================================================
# RASTER
# =============================================================================

def _fit_window(xmin, ymin, xmax, ymax, width, height):
    """Expand a projected window to the canvas aspect ratio, keeping it centred."""
    bw = max(xmax - xmin, 1e-9)
    bh = max(ymax - ymin, 1e-9)
    canvas_ratio = width / height
    if bw / bh > canvas_ratio:
        pad = (bw / canvas_ratio - bh) / 2
        return xmin, ymin - pad, xmax, ymax + pad
    pad = (bh * canvas_ratio - bw) / 2
    return xmin - pad, ymin, xmax + pad, ymax


def render_png(
    gdf: gpd.GeoDataFrame,
    path: Path | str,
    bounds: Optional[BoundingBox] = None,
    width: int = 1024,
    height: int = 1024,
    dpi: int = 100,
) -> Path:
    """
    Rasterize the styled network to a PNG file.

    Edges are drawn in the order of the GeoDataFrame (ascending count), so
    busy roads end up on top. Each edge is stroked with the pixel width in
    its "width" column. The projection window is the given bounds, or the
    extent of the edges, fitted and centred on the canvas.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fig = Figure(figsize=(width / dpi, height / dpi), dpi=dpi, facecolor="white")
    FigureCanvasAgg(fig)
    ax = fig.add_axes([0, 0, 1, 1])
    ax.set_axis_off()
    ax.set_facecolor("white")

    if bounds is None and not gdf.empty:
        w, s, e, n = gdf.total_bounds
        bounds = BoundingBox(south=s, west=w, north=max(n, s + 1e-6), east=max(e, w + 1e-6))

    if bounds is not None:
        window = gpd.GeoSeries(
            [box(bounds.west, bounds.south, bounds.east, bounds.north)], crs="EPSG:4326"
        )
        utm_crs = window.estimate_utm_crs()
        xmin, ymin, xmax, ymax = window.to_crs(utm_crs).total_bounds
        xmin, ymin, xmax, ymax = _fit_window(xmin, ymin, xmax, ymax, width, height)
        ax.set_xlim(xmin, xmax)
        ax.set_ylim(ymin, ymax)

        if not gdf.empty:
            proj = gdf.to_crs(utm_crs)
            segments = [np.asarray(geom.coords)[:, :2] for geom in proj.geometry]
            lines = LineCollection(
                segments,
                colors=list(proj["color"]),
                linewidths=proj["width"].to_numpy(dtype=float) * 72.0 / dpi,
                capstyle="round",
                joinstyle="round",
            )
            ax.add_collection(lines)

    fig.savefig(path, dpi=dpi, facecolor="white")
    logger.info(f"Wrote {width}x{height} image to {path}")
    return path
