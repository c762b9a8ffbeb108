#!/usr/bin/env python3
"""
Build a Trip-Endpoint Density Grid from OpenStreetMap POIs

Queries POIs carrying an OSM tag (default: shop=supermarket) inside a
bounding box, counts them per 100 m EPSG:3035 grid cell, and writes the
CSV consumed by weighted sampling.

Usage:
    python scripts/build_density_grid.py --bounds 52.3 13.1 52.7 13.7 -o data/berlin_density.csv
    python scripts/build_density_grid.py --bounds 52.3 13.1 52.7 13.7 --tag amenity=school -o schools.csv
"""

from __future__ import annotations

import argparse
import logging
import sys

import requests

from nori.density import grid_cells_100m, query_pois, write_density_csv
from nori.exceptions import ConfigurationError
from nori.geo import BoundingBox

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def parse_tag(value: str) -> tuple[str, str]:
    if '=' not in value:
        raise argparse.ArgumentTypeError(f"Tag must look like key=value, got {value!r}")
    key, tag_value = value.split('=', 1)
    return key, tag_value


def main() -> int:
    parser = argparse.ArgumentParser(description='Build a weighted density grid from OSM POIs')
    parser.add_argument(
        '--bounds',
        type=float,
        nargs=4,
        required=True,
        metavar=('SOUTH', 'WEST', 'NORTH', 'EAST'),
        help='Bounding box in degrees',
    )
    parser.add_argument('--tag', type=parse_tag, default=('shop', 'supermarket'), help='OSM tag key=value')
    parser.add_argument('--output', '-o', type=str, required=True, help='Output CSV path')
    parser.add_argument('--timeout', type=int, default=120, help='Overpass query timeout (s)')

    args = parser.parse_args()

    try:
        bbox = BoundingBox.from_sequence(args.bounds)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    logger.info(f"Querying {args.tag[0]}={args.tag[1]} in {bbox.as_tuple()}")
    try:
        pois = query_pois(bbox, tag=args.tag, timeout=args.timeout)
    except requests.RequestException as e:
        logger.error(f"Overpass query failed: {e}")
        return 1
    logger.info(f"  Found {len(pois)} POIs")

    cells = grid_cells_100m(pois)
    if cells.empty:
        logger.warning("No POIs found, the density file will be empty")
    write_density_csv(cells, args.output)
    logger.info(f"Density grid saved to: {args.output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
