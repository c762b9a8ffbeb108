"""Shared fixtures: a small osmnx-style road network."""

import networkx as nx
import pytest

from nori.geo import haversine_m
from nori.network import RoadNetwork

# 2 x 3 grid of nodes about 68 m (east-west) by 111 m (north-south) apart
GRID_NODES = {
    1: (13.400, 52.500),
    2: (13.401, 52.500),
    3: (13.402, 52.500),
    4: (13.400, 52.501),
    5: (13.401, 52.501),
    6: (13.402, 52.501),
}

GRID_STREETS = [(1, 2), (2, 3), (4, 5), (5, 6), (1, 4), (2, 5), (3, 6)]


def make_grid_graph() -> nx.MultiDiGraph:
    """Two-way street grid with x/y node and length edge attributes."""
    G = nx.MultiDiGraph(crs="epsg:4326")
    for node_id, (x, y) in GRID_NODES.items():
        G.add_node(node_id, x=x, y=y)
    for u, v in GRID_STREETS:
        length = haversine_m(*GRID_NODES[u], *GRID_NODES[v])
        G.add_edge(u, v, key=0, length=length)
        G.add_edge(v, u, key=0, length=length)
    return G


@pytest.fixture
def grid_graph():
    return make_grid_graph()


@pytest.fixture
def network(grid_graph):
    return RoadNetwork(grid_graph, source="test-grid")
