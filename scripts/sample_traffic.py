#!/usr/bin/env python3
"""
Traffic Estimation by Shortest-Path Sampling

This script:
1. Loads a run configuration (JSON) and applies command-line overrides
2. Loads the road network (GraphML) or downloads it for the bounding box
3. Checks that the OSRM server answers
4. Samples and routes OD pairs, counting traversals per edge
5. Writes GeoJSON / PNG outputs (also for cancelled or aborted runs)

Usage:
    python scripts/sample_traffic.py --config run.json --graph berlin.graphml
    python scripts/sample_traffic.py --bounds 52.3 13.1 52.7 13.7 -n 5000 --geojson out/traffic.geojson
    python scripts/sample_traffic.py --config run.json --graph berlin.graphml --workers 16 --seed 7

Exit status:
    0  run complete, all outputs written
    1  one or more outputs failed
    2  invalid configuration or inputs
    3  run aborted early (partial results exported)
    130  interrupted (partial results exported)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from nori.config import RunConfig, load_config
from nori.exceptions import (
    ConfigurationError,
    ExportError,
    IndexBuildError,
    RoutingEngineUnavailable,
)
from nori.network import RoadNetwork
from nori.pipeline import export_results, run_sampling
from nori.routing import RoutingClient

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_EXPORT_FAILED = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 3
EXIT_INTERRUPTED = 130


def build_config(args: argparse.Namespace) -> RunConfig:
    overrides = {
        'n_samples': args.n_samples,
        'distribution': args.distribution,
        'bounds': args.bounds,
        'max_trip_distance_m': args.max_distance,
        'min_trip_distance_m': args.min_distance,
        'density_csv': args.density_csv,
        'seed': args.seed,
        'n_workers': args.workers,
        'osrm_url': args.osrm_url,
        'osrm_profile': args.profile,
        'geojson_path': args.geojson,
        'routes_path': args.routes,
        'png_path': args.png,
        'scenario': args.scenario,
    }
    if args.no_snap:
        overrides['snap'] = False
    if args.include_zero:
        overrides['include_zero'] = True

    if args.config:
        return load_config(args.config, overrides)

    values = {k: v for k, v in overrides.items() if v is not None}
    config = RunConfig.from_dict(values)
    config.validate()
    return config


def main() -> int:
    parser = argparse.ArgumentParser(
        description='Estimate per-edge traffic by routing random OD pairs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--config', '-c', type=str, help='JSON run configuration')
    parser.add_argument(
        '--graph', '-g',
        type=str,
        help='Road network GraphML (unsimplified). Downloaded for --bounds if omitted',
    )
    parser.add_argument(
        '--network-type',
        type=str,
        default='drive',
        help='OSMnx network type when downloading (default: drive)',
    )
    parser.add_argument('--n-samples', '-n', type=int, help='Number of OD samples')
    parser.add_argument(
        '--distribution', '-d',
        choices=['uniform2d', 'lognormal', 'weighted'],
        help='Spatial OD distribution',
    )
    parser.add_argument(
        '--bounds',
        type=float,
        nargs=4,
        metavar=('SOUTH', 'WEST', 'NORTH', 'EAST'),
        help='Sampling bounding box in degrees',
    )
    parser.add_argument('--max-distance', type=float, help='Maximum straight-line trip distance (m)')
    parser.add_argument('--min-distance', type=float, help='Minimum straight-line trip distance (m)')
    parser.add_argument('--density-csv', type=str, help='Density grid CSV for weighted sampling')
    parser.add_argument('--seed', type=int, help='Random seed')
    parser.add_argument('--workers', '-w', type=int, help='Concurrent routing requests')
    parser.add_argument('--osrm-url', type=str, help='OSRM server, e.g. http://127.0.0.1:5000')
    parser.add_argument('--profile', type=str, help='OSRM profile (default: driving)')
    parser.add_argument('--no-snap', action='store_true', help='Send raw sampled points to OSRM')
    parser.add_argument('--geojson', type=str, help='Output GeoJSON path')
    parser.add_argument('--routes', type=str, help='Output route log path (JSON Lines)')
    parser.add_argument('--png', type=str, help='Output PNG path')
    parser.add_argument('--include-zero', action='store_true', help='Export untraversed edges too')
    parser.add_argument('--scenario', type=str, help='Scenario name stored in the route log')
    parser.add_argument('--summary', type=str, help='Write the run summary as JSON to this path')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    parser.add_argument('--skip-check', action='store_true', help='Skip the OSRM connection check')

    args = parser.parse_args()

    try:
        config = build_config(args)
    except (ConfigurationError, FileNotFoundError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    logger.info(f"Running traffic sampling ({config.scenario})")
    logger.info(f"  n_samples: {config.n_samples}")
    logger.info(f"  distribution: {config.distribution}")
    logger.info(f"  seed: {config.seed}")
    logger.info(f"  workers: {config.n_workers}")

    try:
        if args.graph:
            network = RoadNetwork.from_graphml(args.graph)
        elif config.bounds is not None:
            network = RoadNetwork.from_bbox(config.bounding_box(), network_type=args.network_type)
        else:
            raise ConfigurationError("Either --graph or --bounds is required")
    except (ConfigurationError, FileNotFoundError) as e:
        logger.error(f"Cannot load road network: {e}")
        return EXIT_CONFIG

    client = RoutingClient(
        base_url=config.osrm_url,
        profile=config.osrm_profile,
        timeout=config.request_timeout_s,
        network=network,
    )
    if not args.skip_check:
        try:
            client.check_connection()
        except RoutingEngineUnavailable as e:
            logger.error(str(e))
            return EXIT_CONFIG

    try:
        result = run_sampling(config, network, client=client, progress=not args.no_progress)
    except (ConfigurationError, IndexBuildError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG
    except ExportError as e:
        logger.error(str(e))
        return EXIT_EXPORT_FAILED

    summary = result.summary
    exit_code = EXIT_OK
    try:
        export_results(result, network, config)
    except ExportError as e:
        logger.error(str(e))
        exit_code = EXIT_EXPORT_FAILED
    if not all(info.get('ok') for info in summary.outputs.values()):
        exit_code = EXIT_EXPORT_FAILED

    if args.summary:
        summary_path = Path(args.summary)
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        with open(summary_path, 'w') as f:
            json.dump(summary.to_dict(), f, indent=2)
        logger.info(f"Summary saved to: {summary_path}")

    print("\n" + summary.format())

    if summary.cancelled:
        return EXIT_INTERRUPTED
    if summary.partial:
        return EXIT_ABORTED
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
