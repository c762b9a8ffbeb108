"""
Road network supply and nearest-node snapping.

Wraps an OSMnx MultiDiGraph so that edges can be looked up by the node
sequences a routing engine reports, and builds a KD-tree over node
coordinates to snap sampled points to the routable network.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Sequence

import networkx as nx
import numpy as np
import osmnx as ox
from scipy.spatial import cKDTree
from shapely.geometry import LineString

from .exceptions import IndexBuildError, NoNodesAvailable, UnresolvedEdgeError
from .geo import BoundingBox, Coordinate, haversine_m, to_unit_sphere

logger = logging.getLogger(__name__)

# about 0.1 m
MIN_EXTENT_DEG = 1e-6


class EdgeKey(NamedTuple):
    """(u, v, key) edge identity, the same triple OSMnx uses for MultiDiGraph edges."""

    u: int
    v: int
    key: int = 0


class NearestNode(NamedTuple):
    node_id: int
    lon: float
    lat: float
    distance_m: float


def edge_keys_from_nodes(node_ids: Sequence[int]) -> list[EdgeKey]:
    """Edge identities of a node path when no network is available to disambiguate."""
    return [EdgeKey(u, v, 0) for u, v in zip(node_ids[:-1], node_ids[1:])]


# =============================================================================
# SPATIAL INDEX
# =============================================================================

class SpatialIndex:
    """
    Nearest-node lookup over (lon, lat) coordinates.

    Nodes are embedded on the unit sphere so that Euclidean KD-tree distances
    rank exactly like great-circle distances, without a projection.
    """

    # Neighbours inspected when breaking ties between equidistant nodes.
    TIE_CANDIDATES = 8

    def __init__(self, node_ids: Sequence[int], lon: Sequence[float], lat: Sequence[float]):
        self._node_ids = list(node_ids)
        self._lon = np.asarray(lon, dtype=float)
        self._lat = np.asarray(lat, dtype=float)
        if self._node_ids:
            self._tree = cKDTree(to_unit_sphere(self._lon, self._lat))
        else:
            self._tree = None

    @classmethod
    def build(cls, nodes: Iterable[tuple[int, float, float]]) -> SpatialIndex:
        """
        Build an index from (node_id, lon, lat) triples.

        Raises:
            IndexBuildError: If no nodes are given
        """
        nodes = list(nodes)
        if not nodes:
            raise IndexBuildError("Cannot build a spatial index over an empty node set")

        node_ids = [n[0] for n in nodes]
        lon = [n[1] for n in nodes]
        lat = [n[2] for n in nodes]
        logger.info(f"Built spatial index over {len(nodes)} nodes")
        return cls(node_ids, lon, lat)

    def __len__(self) -> int:
        return len(self._node_ids)

    def nearest(self, coordinate: Coordinate) -> NearestNode:
        """
        Return the node closest to a (lon, lat) coordinate.

        Equidistant candidates are resolved in favour of the node that was
        inserted first, so results are deterministic for a fixed node set.
        """
        if self._tree is None:
            raise NoNodesAvailable("Spatial index contains no nodes")

        lon, lat = coordinate
        point = to_unit_sphere([lon], [lat])[0]
        k = min(self.TIE_CANDIDATES, len(self._node_ids))
        dists, idxs = self._tree.query(point, k=k)
        dists = np.atleast_1d(dists)
        idxs = np.atleast_1d(idxs)

        ties = idxs[np.isclose(dists, dists[0], rtol=1e-12, atol=1e-15)]
        best = int(ties.min())

        node_lon = float(self._lon[best])
        node_lat = float(self._lat[best])
        return NearestNode(
            node_id=self._node_ids[best],
            lon=node_lon,
            lat=node_lat,
            distance_m=haversine_m(lon, lat, node_lon, node_lat),
        )


# =============================================================================
# ROAD NETWORK
# =============================================================================

class RoadNetwork:
    """
    Node/edge geometry table backing edge resolution and rendering.

    Node ids must be the OSM node ids the routing engine reports in its
    node annotations, so graphs must be loaded unsimplified.
    """

    def __init__(self, graph: nx.MultiDiGraph, source: str = "<memory>"):
        self.graph = graph
        self.source = source
        self._index: SpatialIndex | None = None

    @classmethod
    def from_graphml(cls, path: Path | str) -> RoadNetwork:
        """Load a network saved with ox.save_graphml."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Road network file not found: {path}")

        logger.info(f"Loading road network from {path}")
        G = ox.load_graphml(path)
        network = cls(G, source=str(path))
        logger.info(f"Loaded {network.n_nodes} nodes, {network.n_edges} edges")
        return network

    @classmethod
    def from_bbox(cls, bounds: BoundingBox, network_type: str = "drive") -> RoadNetwork:
        """Download the road network inside a bounding box from OpenStreetMap."""
        logger.info(f"Downloading {network_type} network for bbox {bounds.as_tuple()}")
        G = ox.graph_from_bbox(
            bbox=bounds.as_osmnx_bbox(),
            network_type=network_type,
            simplify=False,
        )
        return cls(G, source=f"osm:{network_type}:{','.join(map(str, bounds.as_tuple()))}")

    @property
    def n_nodes(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def n_edges(self) -> int:
        return self.graph.number_of_edges()

    def nodes(self) -> Iterator[tuple[int, float, float]]:
        """Yield (node_id, lon, lat) for every node."""
        for node_id, data in self.graph.nodes(data=True):
            yield node_id, float(data["x"]), float(data["y"])

    def node_coordinate(self, node_id: int) -> Coordinate:
        data = self.graph.nodes[node_id]
        return (float(data["x"]), float(data["y"]))

    def edges(self) -> Iterator[EdgeKey]:
        for u, v, key in self.graph.edges(keys=True):
            yield self.canonical_edge(u, v, key)

    def spatial_index(self) -> SpatialIndex:
        """Spatial index over all nodes, built on first use."""
        if self._index is None:
            self._index = SpatialIndex.build(self.nodes())
        return self._index

    def bounds(self) -> BoundingBox:
        """Bounding box of all node coordinates."""
        if self.n_nodes == 0:
            raise NoNodesAvailable("Road network contains no nodes")
        lon = np.array([d["x"] for _, d in self.graph.nodes(data=True)], dtype=float)
        lat = np.array([d["y"] for _, d in self.graph.nodes(data=True)], dtype=float)
        south, west = float(lat.min()), float(lon.min())
        # BoundingBox needs a non-empty extent; a single street along a parallel
        # or meridian has none on one axis
        return BoundingBox(
            south=south,
            west=west,
            north=max(float(lat.max()), south + MIN_EXTENT_DEG),
            east=max(float(lon.max()), west + MIN_EXTENT_DEG),
        )

    # -------------------------------------------------------------------------
    # Edge identity
    # -------------------------------------------------------------------------

    def resolve_edge(self, u: int, v: int) -> EdgeKey:
        """
        Map a routed node pair to a concrete edge.

        Parallel edges are disambiguated by shortest 'length', then lowest key,
        which is the edge a shortest-path router would have taken.

        Raises:
            UnresolvedEdgeError: If the network has no edge between u and v
        """
        parallel = self.graph.get_edge_data(u, v)
        if not parallel:
            raise UnresolvedEdgeError(u, v)

        key = min(
            parallel,
            key=lambda k: (parallel[k].get("length", float("inf")), k),
        )
        return self.canonical_edge(u, v, key)

    def canonical_edge(self, u: int, v: int, key: int = 0) -> EdgeKey:
        """Edge identity as counted and exported; undirected edges use u < v."""
        if not self.graph.is_directed() and v < u:
            # one identity per physical segment regardless of travel direction
            u, v = v, u
        return EdgeKey(u, v, key)

    def resolve_path(self, node_ids: Sequence[int]) -> list[EdgeKey]:
        """Resolve every consecutive node pair of a route."""
        return [self.resolve_edge(u, v) for u, v in zip(node_ids[:-1], node_ids[1:])]

    def has_edge(self, edge: EdgeKey) -> bool:
        return self.graph.has_edge(edge.u, edge.v, edge.key)

    def edge_geometry(self, edge: EdgeKey) -> LineString:
        """
        Geometry of an edge, oriented from u to v.

        Falls back to a straight line between the endpoint nodes when the
        edge carries no 'geometry' attribute.

        Raises:
            UnresolvedEdgeError: If the edge is not part of the network
        """
        u, v, key = edge
        if not self.graph.has_edge(u, v, key):
            raise UnresolvedEdgeError(u, v)

        data = self.graph.edges[u, v, key]
        if "geometry" in data:
            geom = data["geometry"]
            start = self.node_coordinate(u)
            if not self.graph.is_directed() and tuple(geom.coords[0]) != start:
                geom = LineString(list(geom.coords)[::-1])
            return geom

        return LineString([self.node_coordinate(u), self.node_coordinate(v)])

    def edge_length(self, edge: EdgeKey) -> float:
        data = self.graph.edges[edge.u, edge.v, edge.key]
        if "length" in data:
            return float(data["length"])
        (lon1, lat1), (lon2, lat2) = self.node_coordinate(edge.u), self.node_coordinate(edge.v)
        return haversine_m(lon1, lat1, lon2, lat2)
