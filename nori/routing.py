"""
Client for the OSRM HTTP routing API.

One call routes one OD pair and decodes the response into a RouteResult.
The client holds no retry or threshold policy: every failure is raised as
a typed RoutingError and the caller decides what to do with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from .exceptions import (
    MalformedResponse,
    NoRouteFound,
    RoutingEngineUnavailable,
    TransportError,
)
from .geo import Coordinate
from .network import EdgeKey, RoadNetwork, edge_keys_from_nodes

logger = logging.getLogger(__name__)

DEFAULT_OSRM_URL = "http://127.0.0.1:5000"

# OSRM codes meaning the engine worked but found no usable path
NO_ROUTE_CODES = {"NoRoute", "NoSegment"}


@dataclass
class RouteResult:
    """Shortest path for one OD pair."""

    origin: Coordinate
    destination: Coordinate
    node_ids: list[int]
    edges: list[EdgeKey]
    coordinates: list[Coordinate] = field(default_factory=list)
    distance_m: float = 0.0
    duration_s: float = 0.0
    sample_index: Optional[int] = None

    def __len__(self) -> int:
        return len(self.edges)


class RoutingClient:
    """
    Route OD pairs through an OSRM server.

    Args:
        base_url: Server address, e.g. "http://127.0.0.1:5000"
        profile: OSRM profile name in the URL
        timeout: Per-request timeout in seconds
        session: Optional requests.Session (injected in tests)
        network: If given, node pairs are resolved to concrete edges of this
            network and unknown pairs raise UnresolvedEdgeError
    """

    def __init__(
        self,
        base_url: str = DEFAULT_OSRM_URL,
        profile: str = "driving",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        network: Optional[RoadNetwork] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.network = network

    def route_url(self, origin: Coordinate, destination: Coordinate) -> str:
        return (
            f"{self.base_url}/route/v1/{self.profile}/"
            f"{origin[0]:.7f},{origin[1]:.7f};{destination[0]:.7f},{destination[1]:.7f}"
        )

    def check_connection(self) -> None:
        """
        Probe the server with a nearest query.

        Raises:
            RoutingEngineUnavailable: If the server does not answer with code "Ok"
        """
        url = f"{self.base_url}/nearest/v1/{self.profile}/0.0,0.0"
        try:
            data = self._get_json(url, params=None)
        except (TransportError, MalformedResponse) as e:
            raise RoutingEngineUnavailable(f"Routing engine at {self.base_url} not reachable: {e}") from e
        if data.get("code") != "Ok":
            raise RoutingEngineUnavailable(
                f"Routing engine at {self.base_url} answered code {data.get('code')!r}"
            )

    def route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        sample_index: Optional[int] = None,
    ) -> RouteResult:
        """
        Query the shortest path between two (lon, lat) coordinates.

        Raises:
            NoRouteFound: Engine reports no path between the points
            MalformedResponse: Response cannot be decoded (including
                UnresolvedEdgeError for node pairs unknown to the network)
            TransportError: Connection failure, timeout, or incomplete response
        """
        params = {
            "annotations": "nodes",
            "overview": "full",
            "geometries": "geojson",
            "steps": "false",
        }
        data = self._get_json(self.route_url(origin, destination), params=params)
        node_ids, coordinates, distance, duration = decode_route_response(data)

        if self.network is not None:
            edges = self.network.resolve_path(node_ids)
        else:
            edges = edge_keys_from_nodes(node_ids)

        return RouteResult(
            origin=origin,
            destination=destination,
            node_ids=node_ids,
            edges=edges,
            coordinates=coordinates,
            distance_m=distance,
            duration_s=duration,
            sample_index=sample_index,
        )

    def _get_json(self, url: str, params: Optional[dict]) -> dict:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportError(f"Request timed out after {self.timeout}s: {e}") from e
        except requests.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        if response.status_code >= 500:
            raise TransportError(f"HTTP {response.status_code} from routing engine")

        # OSRM reports NoRoute and friends with HTTP 400 and a JSON body
        # requests' JSONDecodeError is both a ValueError and a RequestException
        try:
            data = response.json()
        except ValueError as e:
            if response.status_code != 200:
                raise TransportError(f"HTTP {response.status_code} without JSON body") from e
            raise MalformedResponse(f"Response is not JSON: {e}") from e
        except requests.RequestException as e:
            # ChunkedEncodingError / ContentDecodingError: body cut short
            raise TransportError(f"Incomplete response: {e}") from e

        if not isinstance(data, dict):
            raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")
        return data


def decode_route_response(data: dict) -> tuple[list[int], list[Coordinate], float, float]:
    """
    Extract node ids, geometry, distance and duration of the first route.

    Node annotations of consecutive legs share the waypoint node, which is
    kept only once.

    Raises:
        NoRouteFound: For NoRoute/NoSegment codes or an empty route list
        MalformedResponse: For anything that does not match the OSRM schema
    """
    code = data.get("code")
    if code in NO_ROUTE_CODES:
        raise NoRouteFound(f"{code}: {data.get('message', '')}".strip())
    if code != "Ok":
        raise MalformedResponse(f"Unexpected response code {code!r}: {data.get('message', '')}")

    routes = data.get("routes")
    if not isinstance(routes, list):
        raise MalformedResponse("Response has no 'routes' list")
    if not routes:
        raise NoRouteFound("Response contains no routes")

    route = routes[0]
    legs = _field(route, "legs", list)

    node_ids: list[int] = []
    for leg in legs:
        annotation = _field(leg, "annotation", dict)
        nodes = _field(annotation, "nodes", list)
        try:
            nodes = [int(n) for n in nodes]
        except (TypeError, ValueError) as e:
            raise MalformedResponse(f"Non-integer node id in annotation: {e}") from e
        if node_ids and nodes and node_ids[-1] == nodes[0]:
            nodes = nodes[1:]
        node_ids.extend(nodes)

    if len(node_ids) < 2:
        raise MalformedResponse(f"Route has {len(node_ids)} nodes, need at least 2")

    coordinates: list[Coordinate] = []
    geometry = route.get("geometry")
    if isinstance(geometry, dict):
        try:
            coordinates = [(float(c[0]), float(c[1])) for c in geometry.get("coordinates", [])]
        except (TypeError, ValueError, IndexError) as e:
            raise MalformedResponse(f"Invalid route geometry: {e}") from e

    try:
        distance = float(route.get("distance", 0.0))
        duration = float(route.get("duration", 0.0))
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"Invalid distance/duration: {e}") from e

    return node_ids, coordinates, distance, duration


def _field(obj: Any, name: str, expected: type):
    if not isinstance(obj, dict) or not isinstance(obj.get(name), expected):
        raise MalformedResponse(f"Missing or invalid '{name}' in response")
    return obj[name]
