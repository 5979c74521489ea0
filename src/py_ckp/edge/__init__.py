"""Edges — typed relations between kernels and the router that follows them.

Re-exports public symbols so callers can write::

    from py_ckp.edge import EdgeRegistry, EdgeRouter, DeliveryStatus
"""

from py_ckp.edge.registry import DELIVERY_PREDICATES, Edge, EdgeRegistry
from py_ckp.edge.router import Delivery, DeliveryStatus, EdgeRouter, RoutingOutcome

__all__ = [
    "DELIVERY_PREDICATES",
    "Delivery",
    "DeliveryStatus",
    "Edge",
    "EdgeRegistry",
    "EdgeRouter",
    "RoutingOutcome",
]
