#!/usr/bin/env python3
"""
Compare Estimated Traffic with Empirical Counts

Matches every edge of a sample_traffic.py GeoJSON to the nearest reference
count segment with the same orientation and reports correlation statistics.

Usage:
    python scripts/compare_counts.py out/traffic.geojson data/aadt.geojson --property DTV
    python scripts/compare_counts.py out/traffic.geojson data/aadt.geojson -p DTV -o out/connections.geojson
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import geopandas as gpd

from nori.compare import (
    DEFAULT_MAX_DISTANCE_M,
    DEFAULT_MAX_ORIENTATION_DIFF,
    compare_counts,
    load_reference_segments,
)

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description='Compare simulated and empirical traffic counts')
    parser.add_argument('simulated', type=str, help='GeoJSON written by sample_traffic.py')
    parser.add_argument('reference', type=str, help='GeoJSON of empirical count segments')
    parser.add_argument('--property', '-p', type=str, required=True, help='Count property of the reference')
    parser.add_argument('--output', '-o', type=str, help='Write connection lines to this GeoJSON')
    parser.add_argument(
        '--max-distance',
        type=float,
        default=DEFAULT_MAX_DISTANCE_M,
        help=f'Maximum midpoint distance in metres (default: {DEFAULT_MAX_DISTANCE_M})',
    )
    parser.add_argument(
        '--max-orientation-diff',
        type=float,
        default=DEFAULT_MAX_ORIENTATION_DIFF,
        help=f'Maximum orientation difference in radians (default: {DEFAULT_MAX_ORIENTATION_DIFF})',
    )

    args = parser.parse_args()

    try:
        simulated = gpd.read_file(args.simulated)
        reference = load_reference_segments(args.reference, args.property)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot load inputs: {e}")
        return 2

    if 'count' not in simulated.columns:
        logger.error(f"{args.simulated} has no 'count' property")
        return 2

    connections, summary = compare_counts(
        simulated,
        reference,
        max_distance_m=args.max_distance,
        max_orientation_diff=args.max_orientation_diff,
    )

    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        if connections.empty:
            output.write_text(json.dumps({"type": "FeatureCollection", "features": []}))
        else:
            connections.to_file(output, driver="GeoJSON")
        logger.info(f"Connections saved to: {output}")

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
