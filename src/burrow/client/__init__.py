"""Tunnel client."""

from burrow.client.tunnel import TunnelClient, TunnelState

__all__ = ["TunnelClient", "TunnelState"]
