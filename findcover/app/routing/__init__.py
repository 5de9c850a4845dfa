"""
routing — Walking distances and routes to shelters.

Sub-modules:
    provider     — RoutingProvider protocol, Google Maps + straight-line backends
    route_cache  — Tolerance-keyed cache-aside layer with batched misses
"""
