"""
Exception hierarchy for the sampling pipeline.

Lower layers (index, sampler, routing client, accumulator) raise these;
nori.pipeline decides whether a failure skips one sample or ends the run.
"""


class NoriError(Exception):
    """Base class for all errors raised by nori."""


class ConfigurationError(NoriError, ValueError):
    """Invalid run configuration, detected before any sampling happens."""


# =============================================================================
# SPATIAL INDEX
# =============================================================================

class IndexBuildError(NoriError):
    """The spatial index cannot be built (e.g. empty node set)."""


class NoNodesAvailable(NoriError):
    """Nearest-node lookup on an index without nodes."""


# =============================================================================
# SAMPLING
# =============================================================================

class SamplerError(NoriError):
    """Base class for sampler failures."""


class DrawRejected(SamplerError):
    """A single draw exhausted its retry budget. Skips one sample."""


class SamplerExhausted(SamplerError):
    """The sampler exceeded its total budget of failed draws. Ends the run."""


# =============================================================================
# ROUTING
# =============================================================================

class RoutingError(NoriError):
    """Base class for per-query routing failures."""

    kind = "routing_error"


class NoRouteFound(RoutingError):
    """The engine reports that no path connects origin and destination."""

    kind = "no_route"


class MalformedResponse(RoutingError):
    """The engine answered, but the response could not be decoded."""

    kind = "malformed_response"


class UnresolvedEdgeError(MalformedResponse):
    """A routed node pair has no matching edge in the loaded network."""

    kind = "unresolved_edge"

    def __init__(self, u, v):
        super().__init__(f"No edge ({u}, {v}) in road network")
        self.u = u
        self.v = v


class TransportError(RoutingError):
    """Connection failure, timeout, or incomplete response."""

    kind = "transport"


class RoutingEngineUnavailable(NoriError):
    """Routing failed too many times in a row; the engine is likely down."""


# =============================================================================
# EXPORT
# =============================================================================

class ExportError(NoriError):
    """Writing one or more output artefacts failed."""
