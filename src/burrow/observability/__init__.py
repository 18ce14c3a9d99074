from burrow.observability.metrics import (
    BINDINGS,
    EXPIRATIONS,
    HEARTBEATS,
    REGISTRATIONS,
    ROUTE_SYNC,
    ROUTES_OUT_OF_SYNC,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "BINDINGS",
    "REGISTRATIONS",
    "HEARTBEATS",
    "EXPIRATIONS",
    "ROUTE_SYNC",
    "ROUTES_OUT_OF_SYNC",
    "generate_metrics",
    "get_content_type",
]
