"""Routing synchronization with the external reverse proxy."""

from burrow.routing.proxy import (
    CaddyAdminClient,
    InMemoryProxyConfig,
    ProxyConfigClient,
    RoutingEntry,
    create_proxy_client,
)
from burrow.routing.synchronizer import RoutingState, RoutingStatus, RoutingSynchronizer

__all__ = [
    "RoutingEntry",
    "ProxyConfigClient",
    "InMemoryProxyConfig",
    "CaddyAdminClient",
    "create_proxy_client",
    "RoutingSynchronizer",
    "RoutingState",
    "RoutingStatus",
]
