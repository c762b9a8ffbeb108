"""
Sampling run orchestration.

Pulls OD pairs from the sampler, routes them on a bounded thread pool,
records the results in the accumulator and the route log, and classifies
failures:

- per-sample (no route, malformed response, transport failure, rejected
  draw): tallied, the sample is skipped
- run-fatal (too many consecutive routing failures, exhausted sampler):
  no new samples are issued, in-flight work drains, the run is marked
  partial

Export happens separately (export_results) so that partial runs can still
be written out.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .accumulator import TrafficAccumulator, TrafficCount
from .config import RunConfig
from .exceptions import (
    DrawRejected,
    ExportError,
    RoutingEngineUnavailable,
    RoutingError,
    SamplerExhausted,
    UnresolvedEdgeError,
)
from .export import (
    RouteLogWriter,
    counts_to_geodataframe,
    network_bounds,
    read_route_log,
    render_png,
    write_geojson,
)
from .network import RoadNetwork
from .routing import RouteResult, RoutingClient
from .sampling import ODPair, Sampler

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """What a run achieved, reported to the user at the end."""

    requested: int
    completed: int = 0
    abandoned: int = 0
    failures: dict[str, int] = field(default_factory=dict)
    partial: bool = False
    cancelled: bool = False
    abort_reason: Optional[str] = None
    elapsed_s: float = 0.0
    outputs: dict[str, dict] = field(default_factory=dict)

    @property
    def n_failed(self) -> int:
        return sum(self.failures.values())

    def to_dict(self) -> dict:
        return asdict(self)

    def format(self) -> str:
        status = "complete"
        if self.cancelled:
            status = "cancelled (partial)"
        elif self.partial:
            status = "aborted (partial)"

        lines = [
            f"Run {status}: {self.completed}/{self.requested} samples recorded "
            f"in {self.elapsed_s:.1f}s",
        ]
        if self.abort_reason:
            lines.append(f"  Abort reason: {self.abort_reason}")
        if self.failures:
            lines.append(f"  Failures: {self.n_failed}")
            for kind, n in sorted(self.failures.items()):
                lines.append(f"    {kind:<20} {n:>8}")
        if self.abandoned:
            lines.append(f"  Abandoned in flight: {self.abandoned}")
        for name, info in self.outputs.items():
            state = "ok" if info.get("ok") else f"FAILED ({info.get('error')})"
            lines.append(f"  {name:<8} {info.get('path')}: {state}")
        return "\n".join(lines)


@dataclass
class RunResult:
    summary: RunSummary
    counts: TrafficCount


def run_sampling(
    config: RunConfig,
    network: RoadNetwork,
    client: Optional[RoutingClient] = None,
    sampler: Optional[Sampler] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: bool = True,
) -> RunResult:
    """
    Run the sampling loop until config.n_samples samples are accounted for.

    Samples are drawn serially in this thread, so the OD sequence depends
    only on the seed; routing runs on config.n_workers threads with at most
    that many requests in flight.

    Args:
        config: Validated run configuration
        network: Road network for snapping and edge resolution
        client: Routing client (built from config if None)
        sampler: OD sampler (built from config if None)
        cancel_event: Set it to stop issuing samples; partial results are kept
        progress: Show a tqdm progress bar

    Returns:
        RunResult with the summary and a snapshot of the counts

    Raises:
        ConfigurationError: Invalid configuration, before any sampling
        IndexBuildError: Snapping requested on an empty network
        ExportError: The route log cannot be created
    """
    config.validate()

    if sampler is None:
        snap_index = network.spatial_index() if config.snap else None
        sampler = Sampler.from_config(config, snap_index=snap_index)
    if client is None:
        client = RoutingClient(
            base_url=config.osrm_url,
            profile=config.osrm_profile,
            timeout=config.request_timeout_s,
            network=network,
        )
    if cancel_event is None:
        cancel_event = threading.Event()

    summary = RunSummary(requested=config.n_samples)
    accumulator = TrafficAccumulator()
    failures: Counter = Counter()

    route_log = None
    if config.routes_path:
        try:
            route_log = RouteLogWriter(config.routes_path, network.source, config.scenario)
        except OSError as e:
            raise ExportError(f"Cannot create route log {config.routes_path}: {e}") from e
        summary.outputs["routes"] = {"path": str(config.routes_path), "ok": True}

    n_samples = config.n_samples
    max_in_flight = config.n_workers
    issued = 0
    consecutive_failures = 0
    stopping = False
    in_flight: dict[Future, ODPair] = {}

    def route_sample(pair: ODPair) -> Optional[RouteResult]:
        # queued work that has not started yet is abandoned after cancellation
        if cancel_event.is_set():
            return None
        return client.route(pair.origin, pair.destination, sample_index=pair.index)

    def handle(future: Future, pair: ODPair) -> None:
        nonlocal consecutive_failures, stopping, route_log

        if future.cancelled():
            summary.abandoned += 1
            return
        try:
            route = future.result()
        except RoutingError as e:
            failures[e.kind] += 1
            consecutive_failures += 1
            if isinstance(e, UnresolvedEdgeError):
                logger.warning(f"Sample {pair.index}: {e}")
            else:
                logger.debug(f"Sample {pair.index}: {e.kind}: {e}")

            if consecutive_failures >= config.max_consecutive_failures and not stopping:
                error = RoutingEngineUnavailable(
                    f"{consecutive_failures} consecutive routing failures (last: {e})"
                )
                logger.error(f"Aborting run: {error}")
                summary.abort_reason = f"{type(error).__name__}: {error}"
                stopping = True
            return

        if route is None:
            summary.abandoned += 1
            return

        accumulator.record(route)
        summary.completed += 1
        consecutive_failures = 0

        if route_log is not None:
            try:
                route_log.write_route(route)
            except OSError as e:
                logger.error(f"Route log write failed, disabling route log: {e}")
                summary.outputs["routes"] = {"path": str(config.routes_path), "ok": False, "error": str(e)}
                failed_log, route_log = route_log, None
                try:
                    failed_log.finish()
                except OSError:
                    logger.debug("Closing the failed route log also failed")

    logger.info(
        f"Sampling {n_samples} routes with {config.n_workers} workers "
        f"({config.distribution}, seed={config.seed})"
    )
    start = time.monotonic()
    pbar = tqdm(total=n_samples, desc="Sampling", unit="sample", disable=not progress)
    executor = ThreadPoolExecutor(max_workers=config.n_workers, thread_name_prefix="nori-route")

    try:
        while True:
            while (
                not stopping
                and not cancel_event.is_set()
                and issued < n_samples
                and len(in_flight) < max_in_flight
            ):
                try:
                    pair = sampler.next()
                except DrawRejected as e:
                    issued += 1
                    failures["draw_rejected"] += 1
                    logger.debug(str(e))
                    pbar.update(1)
                    continue
                except SamplerExhausted as e:
                    logger.error(f"Aborting run: {e}")
                    summary.abort_reason = f"{type(e).__name__}: {e}"
                    stopping = True
                    break
                issued += 1
                in_flight[executor.submit(route_sample, pair)] = pair

            if not in_flight:
                break

            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for future in sorted(done, key=lambda f: in_flight[f].index):
                handle(future, in_flight.pop(future))
                pbar.update(1)

    except KeyboardInterrupt:
        logger.warning(f"Interrupted, finishing {len(in_flight)} in-flight requests")
        cancel_event.set()
        executor.shutdown(wait=True, cancel_futures=True)
        for future, pair in sorted(in_flight.items(), key=lambda item: item[1].index):
            handle(future, pair)
        in_flight.clear()
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
        pbar.close()
        if route_log is not None:
            route_log.finish()

    summary.cancelled = cancel_event.is_set() and (issued < n_samples or summary.abandoned > 0)
    summary.partial = summary.cancelled or summary.abort_reason is not None
    summary.failures = dict(failures)
    summary.elapsed_s = time.monotonic() - start

    counts = accumulator.snapshot()
    logger.info(
        f"Recorded {summary.completed}/{n_samples} routes, "
        f"{summary.n_failed} failures, {len(counts)} edges with traffic"
    )
    return RunResult(summary=summary, counts=counts)


def export_results(result: RunResult, network: RoadNetwork, config: RunConfig) -> RunSummary:
    """
    Write the configured GeoJSON and PNG outputs.

    Every requested output is attempted; the outcome of each is stored in
    result.summary.outputs.

    Raises:
        ExportError: If any output failed
    """
    summary = result.summary
    requested = {
        name: path
        for name, path in (("geojson", config.geojson_path), ("png", config.png_path))
        if path
    }
    if not requested:
        return summary

    gdf = None
    gdf_error: Optional[Exception] = None
    try:
        gdf = counts_to_geodataframe(
            result.counts,
            network,
            include_zero=config.include_zero,
            scale=config.color_scale,
        )
    except UnresolvedEdgeError as e:
        gdf_error = e

    failed = []
    for name, path in requested.items():
        if gdf is None:
            summary.outputs[name] = {"path": str(path), "ok": False, "error": str(gdf_error)}
            failed.append(name)
            continue
        try:
            if name == "geojson":
                write_geojson(gdf, path)
            else:
                render_png(
                    gdf,
                    path,
                    bounds=network_bounds(network),
                    width=config.png_width,
                    height=config.png_height,
                )
            summary.outputs[name] = {"path": str(path), "ok": True}
        except (OSError, ValueError) as e:
            logger.error(f"Writing {name} output {path} failed: {e}")
            summary.outputs[name] = {"path": str(path), "ok": False, "error": str(e)}
            failed.append(name)

    if failed:
        raise ExportError(f"Failed outputs: {', '.join(failed)}")
    return summary


def replay_route_log(path: Path | str) -> tuple[dict, TrafficCount]:
    """Re-aggregate counts from a route log without querying the engine."""
    header, routes = read_route_log(path)
    accumulator = TrafficAccumulator()
    for route in routes:
        accumulator.record(route)
    counts = accumulator.snapshot()
    logger.info(f"Replayed {counts.n_routes} routes from {path}")
    return header, counts
