"""
nori: road traffic estimation by sampling shortest paths.

Random origin/destination pairs are routed through an OSRM server and every
traversed edge of the road network is counted.
"""

__version__ = "0.1.0"
