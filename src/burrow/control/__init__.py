"""Control API façade for dashboards and CLIs."""

from burrow.control.api import BindingDescriptor, ControlAPI, CreateTunnelRequest, TunnelStatus

__all__ = ["ControlAPI", "BindingDescriptor", "CreateTunnelRequest", "TunnelStatus"]
