#!/usr/bin/env python3
"""
Route Log Inspection and Re-export

Reads a route log written by sample_traffic.py, prints its header and
route statistics, and optionally re-aggregates the counts into GeoJSON /
PNG without querying the routing engine again.

Usage:
    python scripts/inspect_routes.py out/routes.jsonl
    python scripts/inspect_routes.py out/routes.jsonl --graph berlin.graphml --geojson out/replay.geojson
"""

from __future__ import annotations

import argparse
import logging
import sys

import numpy as np

from nori.exceptions import ExportError, UnresolvedEdgeError
from nori.export import counts_to_geodataframe, read_route_log, render_png, write_geojson
from nori.network import RoadNetwork
from nori.pipeline import replay_route_log

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def route_statistics(path: str) -> dict:
    """Distance/duration/edge-count statistics over all routes of a log."""
    _, routes = read_route_log(path)
    distances, durations, n_edges = [], [], []
    for route in routes:
        distances.append(route.distance_m)
        durations.append(route.duration_s)
        n_edges.append(len(route))

    if not distances:
        return {'n_routes': 0}

    return {
        'n_routes': len(distances),
        'mean_distance_m': float(np.mean(distances)),
        'median_distance_m': float(np.median(distances)),
        'mean_duration_s': float(np.mean(durations)),
        'mean_edges': float(np.mean(n_edges)),
    }


def main() -> int:
    parser = argparse.ArgumentParser(description='Inspect and re-export a route log')
    parser.add_argument('routes', type=str, help='Route log (JSON Lines)')
    parser.add_argument('--graph', '-g', type=str, help='Road network GraphML for re-export')
    parser.add_argument('--geojson', type=str, help='Re-export counts to this GeoJSON path')
    parser.add_argument('--png', type=str, help='Re-export counts to this PNG path')
    parser.add_argument('--include-zero', action='store_true', help='Export untraversed edges too')

    args = parser.parse_args()

    try:
        header, counts = replay_route_log(args.routes)
        stats = route_statistics(args.routes)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot read route log: {e}")
        return 2

    print(f"Format:   {header.get('format')} {header.get('version')}")
    print(f"Network:  {header.get('network')}")
    print(f"Scenario: {header.get('scenario')}")
    print(f"Created:  {header.get('created')}")
    for key, value in stats.items():
        print(f"{key:<20} {value:>12.1f}" if isinstance(value, float) else f"{key:<20} {value:>12}")
    print(f"{'edges_with_traffic':<20} {len(counts):>12}")
    print(f"{'max_edge_count':<20} {counts.max_count():>12}")

    if not (args.geojson or args.png):
        return 0
    if not args.graph:
        logger.error("--graph is required for re-export")
        return 2

    network = RoadNetwork.from_graphml(args.graph)
    try:
        gdf = counts_to_geodataframe(counts, network, include_zero=args.include_zero)
        if args.geojson:
            write_geojson(gdf, args.geojson)
        if args.png:
            render_png(gdf, args.png, bounds=network.bounds())
    except (UnresolvedEdgeError, ExportError, OSError) as e:
        logger.error(f"Re-export failed: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
