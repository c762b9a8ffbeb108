"""
Concurrent per-edge traversal counter.

Counts are kept in independent shards, each behind its own lock, so that
routing workers touching different parts of the network do not serialize
on a single lock.
"""

from __future__ import annotations

import threading
from collections import Counter, defaultdict
from collections.abc import Mapping
from typing import Iterable, Iterator

from .network import EdgeKey
from .routing import RouteResult

DEFAULT_SHARDS = 16


class TrafficCount(Mapping):
    """Read-only snapshot of edge -> traversal count."""

    def __init__(self, counts: dict[EdgeKey, int], n_routes: int):
        self._counts = dict(counts)
        self.n_routes = n_routes

    def __getitem__(self, edge: EdgeKey) -> int:
        return self._counts[edge]

    def __iter__(self) -> Iterator[EdgeKey]:
        return iter(self._counts)

    def __len__(self) -> int:
        return len(self._counts)

    def __eq__(self, other) -> bool:
        if isinstance(other, TrafficCount):
            return self.n_routes == other.n_routes and self._counts == other._counts
        return super().__eq__(other)

    def __repr__(self) -> str:
        return f"TrafficCount(edges={len(self._counts)}, n_routes={self.n_routes}, total={self.total})"

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def max_count(self) -> int:
        return max(self._counts.values(), default=0)

    def sorted_items(self) -> list[tuple[EdgeKey, int]]:
        """Items in edge-key order, for stable serialization."""
        return sorted(self._counts.items())


class TrafficAccumulator:
    """
    Shared mapping from edge identity to traversal count.

    record() may be called from any number of threads. Each route is applied
    atomically with respect to snapshot(): the shard locks it needs are taken
    in ascending order and held for the whole update.
    """

    def __init__(self, n_shards: int = DEFAULT_SHARDS):
        if n_shards < 1:
            raise ValueError(f"n_shards must be >= 1, got {n_shards}")
        self.n_shards = n_shards
        self._shards = [Counter() for _ in range(n_shards)]
        self._locks = [threading.Lock() for _ in range(n_shards)]
        self._routes = [0] * n_shards

    def _shard_of(self, edge: EdgeKey) -> int:
        return hash(tuple(edge)) % self.n_shards

    def record(self, route: RouteResult | Iterable[EdgeKey]) -> None:
        """Add one traversal to every edge of a route."""
        edges = route.edges if isinstance(route, RouteResult) else list(route)

        by_shard: dict[int, list[EdgeKey]] = defaultdict(list)
        for edge in edges:
            by_shard[self._shard_of(EdgeKey(*edge))].append(EdgeKey(*edge))

        # the route counter lives with the lowest shard touched (or shard 0)
        touched = sorted(by_shard) or [0]
        for i in touched:
            self._locks[i].acquire()
        try:
            for i, shard_edges in by_shard.items():
                self._shards[i].update(shard_edges)
            self._routes[touched[0]] += 1
        finally:
            for i in reversed(touched):
                self._locks[i].release()

    def snapshot(self) -> TrafficCount:
        """Consistent point-in-time copy of all counts."""
        for lock in self._locks:
            lock.acquire()
        try:
            merged: dict[EdgeKey, int] = {}
            for shard in self._shards:
                merged.update(shard)
            n_routes = sum(self._routes)
        finally:
            for lock in reversed(self._locks):
                lock.release()
        return TrafficCount(merged, n_routes)

    def reset(self) -> None:
        for lock in self._locks:
            lock.acquire()
        try:
            for shard in self._shards:
                shard.clear()
            self._routes = [0] * self.n_shards
        finally:
            for lock in reversed(self._locks):
                lock.release()
