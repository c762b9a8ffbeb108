"""Tests for road network and spatial index module."""

import networkx as nx
import pytest
from shapely.geometry import LineString

from nori.exceptions import IndexBuildError, NoNodesAvailable, UnresolvedEdgeError
from nori.network import EdgeKey, RoadNetwork, SpatialIndex, edge_keys_from_nodes


class TestSpatialIndex:
    """Tests for nearest-node snapping."""

    def test_snaps_to_nearest_node(self):
        """Query point snaps to the closest of three nodes."""
        index = SpatialIndex.build([(1, 0.0, 0.0), (2, 10.0, 10.0), (3, 0.0, 10.0)])

        nearest = index.nearest((1.0, 1.0))

        assert nearest.node_id == 1
        assert nearest.lon == 0.0
        assert nearest.lat == 0.0
        # ~157 km on the sphere
        assert 150_000 < nearest.distance_m < 160_000

    def test_nearest_is_minimal_over_all_nodes(self):
        """Snapped node is never farther than any other node."""
        from nori.geo import haversine_m

        nodes = [(i, 13.0 + 0.01 * (i % 7), 52.0 + 0.013 * (i // 7)) for i in range(49)]
        index = SpatialIndex.build(nodes)

        for query in [(13.031, 52.041), (13.0, 52.0), (13.2, 52.2), (12.9, 51.9)]:
            nearest = index.nearest(query)
            best = min(haversine_m(*query, lon, lat) for _, lon, lat in nodes)
            assert nearest.distance_m == pytest.approx(best)

    def test_ties_resolved_by_insertion_order(self):
        """Equidistant nodes resolve to the one inserted first."""
        index = SpatialIndex.build([(10, 1.0, 0.0), (20, -1.0, 0.0)])
        assert index.nearest((0.0, 0.0)).node_id == 10

        index = SpatialIndex.build([(20, -1.0, 0.0), (10, 1.0, 0.0)])
        assert index.nearest((0.0, 0.0)).node_id == 20

    def test_exact_node_distance_zero(self):
        """Querying a node's own coordinate returns it at distance zero."""
        index = SpatialIndex.build([(5, 13.4, 52.5), (6, 13.5, 52.6)])
        nearest = index.nearest((13.5, 52.6))

        assert nearest.node_id == 6
        assert nearest.distance_m == pytest.approx(0.0, abs=1e-6)

    def test_build_empty_raises(self):
        """Empty node set cannot be indexed."""
        with pytest.raises(IndexBuildError):
            SpatialIndex.build([])

    def test_query_empty_index_raises(self):
        """Lookup on an index without nodes raises."""
        index = SpatialIndex([], [], [])
        assert len(index) == 0
        with pytest.raises(NoNodesAvailable):
            index.nearest((0.0, 0.0))

    def test_single_node(self):
        """Single-node index always returns that node."""
        index = SpatialIndex.build([(42, 13.0, 52.0)])
        assert index.nearest((-70.0, -33.0)).node_id == 42


class TestEdgeIdentity:
    """Tests for mapping routed node pairs to edges."""

    def test_edge_keys_from_nodes(self):
        """Without a network, consecutive pairs get key 0."""
        assert edge_keys_from_nodes([1, 2, 3]) == [EdgeKey(1, 2, 0), EdgeKey(2, 3, 0)]
        assert edge_keys_from_nodes([1]) == []

    def test_resolve_edge(self, network):
        """Existing node pair resolves to its single edge."""
        assert network.resolve_edge(1, 2) == EdgeKey(1, 2, 0)
        assert network.resolve_edge(2, 1) == EdgeKey(2, 1, 0)

    def test_resolve_missing_edge_raises(self, network):
        """Node pair without an edge raises UnresolvedEdgeError."""
        with pytest.raises(UnresolvedEdgeError) as exc_info:
            network.resolve_edge(1, 6)

        assert exc_info.value.u == 1
        assert exc_info.value.v == 6
        assert exc_info.value.kind == "unresolved_edge"

    def test_parallel_edges_shortest_wins(self, grid_graph):
        """Parallel edges resolve to the shortest one."""
        grid_graph.add_edge(1, 2, key=1, length=10.0)
        grid_graph.add_edge(1, 2, key=2, length=500.0)
        network = RoadNetwork(grid_graph)

        assert network.resolve_edge(1, 2) == EdgeKey(1, 2, 1)

    def test_parallel_edges_equal_length_lowest_key(self):
        """Equal-length parallel edges resolve to the lowest key."""
        G = nx.MultiDiGraph()
        G.add_node(1, x=0.0, y=0.0)
        G.add_node(2, x=0.001, y=0.0)
        G.add_edge(1, 2, key=3, length=100.0)
        G.add_edge(1, 2, key=1, length=100.0)
        network = RoadNetwork(G)

        assert network.resolve_edge(1, 2) == EdgeKey(1, 2, 1)

    def test_undirected_graph_canonical_order(self):
        """Undirected graphs use one identity for both travel directions."""
        G = nx.MultiGraph()
        G.add_node(1, x=0.0, y=0.0)
        G.add_node(2, x=0.001, y=0.0)
        G.add_edge(1, 2, key=0, length=100.0)
        network = RoadNetwork(G)

        assert network.resolve_edge(2, 1) == network.resolve_edge(1, 2) == EdgeKey(1, 2, 0)

    def test_undirected_edges_match_resolved_identity(self):
        """edges() reports undirected edges the way resolve_edge does."""
        G = nx.MultiGraph()
        G.add_node(2, x=0.001, y=0.0)
        G.add_node(1, x=0.0, y=0.0)
        G.add_edge(2, 1, key=0, length=100.0)
        network = RoadNetwork(G)

        assert list(network.edges()) == [network.resolve_edge(2, 1)] == [EdgeKey(1, 2, 0)]

    def test_resolve_path(self, network):
        """Every consecutive pair of a node path is resolved."""
        edges = network.resolve_path([1, 2, 5, 6])
        assert edges == [EdgeKey(1, 2, 0), EdgeKey(2, 5, 0), EdgeKey(5, 6, 0)]

    def test_resolve_path_with_gap_raises(self, network):
        """A path jumping between unconnected nodes raises."""
        with pytest.raises(UnresolvedEdgeError):
            network.resolve_path([1, 2, 6])


class TestRoadNetwork:
    """Tests for the network wrapper."""

    def test_counts(self, network):
        """Node and edge counts come from the graph."""
        assert network.n_nodes == 6
        assert network.n_edges == 14

    def test_nodes_yield_lon_lat(self, network):
        """nodes() yields (id, lon, lat)."""
        nodes = {node_id: (lon, lat) for node_id, lon, lat in network.nodes()}
        assert nodes[1] == (13.400, 52.500)
        assert nodes[6] == (13.402, 52.501)

    def test_bounds(self, network):
        """Bounds cover all node coordinates."""
        bounds = network.bounds()
        assert bounds.as_tuple() == (52.500, 13.400, 52.501, 13.402)

    def test_bounds_single_street_has_extent(self):
        """A street along a parallel still gives a valid, non-empty box."""
        G = nx.MultiDiGraph()
        G.add_node(1, x=13.400, y=52.500)
        G.add_node(2, x=13.401, y=52.500)
        G.add_edge(1, 2, key=0, length=68.0)

        bounds = RoadNetwork(G).bounds()

        assert bounds.south == 52.500
        assert bounds.north > bounds.south
        assert bounds.north == pytest.approx(52.500, abs=1e-5)
        assert (bounds.west, bounds.east) == (13.400, 13.401)

    def test_bounds_empty_raises(self):
        """Empty network has no bounds."""
        with pytest.raises(NoNodesAvailable):
            RoadNetwork(nx.MultiDiGraph()).bounds()

    def test_spatial_index_cached(self, network):
        """Spatial index is built once."""
        assert network.spatial_index() is network.spatial_index()
        assert network.spatial_index().nearest((13.4003, 52.5001)).node_id == 1

    def test_spatial_index_empty_network_raises(self):
        """Snapping on an empty network fails at index build time."""
        with pytest.raises(IndexBuildError):
            RoadNetwork(nx.MultiDiGraph()).spatial_index()

    def test_edge_geometry_straight_line(self, network):
        """Edges without geometry become straight lines from u to v."""
        geom = network.edge_geometry(EdgeKey(2, 1, 0))
        assert list(geom.coords) == [(13.401, 52.500), (13.400, 52.500)]

    def test_edge_geometry_attribute(self, grid_graph):
        """Edge 'geometry' attribute is used when present."""
        line = LineString([(13.400, 52.500), (13.4005, 52.5002), (13.401, 52.500)])
        grid_graph.edges[1, 2, 0]["geometry"] = line
        network = RoadNetwork(grid_graph)

        assert network.edge_geometry(EdgeKey(1, 2, 0)).equals(line)

    def test_edge_geometry_missing_raises(self, network):
        """Unknown edge has no geometry."""
        with pytest.raises(UnresolvedEdgeError):
            network.edge_geometry(EdgeKey(1, 6, 0))

    def test_edge_length(self, network):
        """Edge length comes from the 'length' attribute."""
        assert network.edge_length(EdgeKey(1, 2, 0)) == pytest.approx(67.7, abs=0.5)

    def test_from_graphml_missing_file(self, tmp_path):
        """Missing GraphML file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            RoadNetwork.from_graphml(tmp_path / "missing.graphml")
