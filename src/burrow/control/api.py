"""Control API used by the dashboard and CLI.

A thin façade over the registry. Errors (duplicate subdomain, invalid target,
exhausted resources, unknown id) propagate to the caller unchanged and are
never retried here. Callers are assumed to be authorized already.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, StrictStr

from burrow.routing.synchronizer import RoutingStatus, RoutingSynchronizer
from burrow.server.registry import BindingStatus, LocalTarget, SessionRegistry, TunnelBinding

logger = structlog.get_logger()


class CreateTunnelRequest(BaseModel):
    """Body of a create request. Port range and host checks happen in ``LocalTarget``."""

    name: StrictStr | None = None
    local_port: Any = None
    subdomain: StrictStr | None = None
    local_host: StrictStr = "localhost"


class BindingDescriptor(BaseModel):
    """Public view of a binding."""

    id: str
    name: str | None = None
    subdomain: str
    url: str
    local_target: str
    remote_endpoint: str
    status: str
    created_at: datetime
    last_heartbeat_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    @classmethod
    def from_binding(cls, binding: TunnelBinding, base_domain: str) -> BindingDescriptor:
        return cls(
            id=binding.id,
            name=binding.name,
            subdomain=binding.subdomain,
            url=f"https://{binding.subdomain}.{base_domain}",
            local_target=str(binding.local_target),
            remote_endpoint=binding.remote_endpoint,
            status=binding.status.value,
            created_at=binding.created_at,
            last_heartbeat_at=binding.last_heartbeat_at,
            closed_at=binding.closed_at,
            close_reason=binding.close_reason,
        )


class TunnelStatus(BaseModel):
    """Binding lifecycle status plus routing synchronization status."""

    id: str
    status: str
    routing_in_sync: bool
    routing_status: str
    routing_error: str | None = None


class ControlAPI:
    def __init__(
        self,
        registry: SessionRegistry,
        synchronizer: RoutingSynchronizer | None = None,
        base_domain: str | None = None,
    ) -> None:
        self.registry = registry
        self.synchronizer = synchronizer
        self.base_domain = base_domain or registry.server_config.base_domain

    def _describe(self, binding: TunnelBinding) -> BindingDescriptor:
        return BindingDescriptor.from_binding(binding, self.base_domain)

    async def create(
        self,
        name: str | None,
        local_port: int,
        subdomain: str | None = None,
        local_host: str = "localhost",
    ) -> BindingDescriptor:
        """Reserve a binding that a tunnel client can claim by id."""
        target = LocalTarget.parse(local_host, local_port)
        binding = await self.registry.reserve(subdomain, target, name=name)
        logger.info("Binding created via control API", binding_id=binding.id, subdomain=binding.subdomain)
        return self._describe(binding)

    async def delete(self, binding_id: str) -> BindingDescriptor:
        binding = await self.registry.close(binding_id, reason="deleted")
        return self._describe(binding)

    def list(self, include_closed: bool = False) -> list[BindingDescriptor]:
        bindings = sorted(self.registry.list(include_closed=include_closed), key=lambda b: b.created_at)
        return [self._describe(b) for b in bindings]

    def get(self, binding_id: str) -> BindingDescriptor:
        return self._describe(self.registry.get(binding_id))

    def status(self, binding_id: str) -> TunnelStatus:
        binding = self.registry.get(binding_id)
        state = self.synchronizer.routing_state(binding_id) if self.synchronizer else None

        if state is not None:
            routing_status = state.status
        elif binding.status is BindingStatus.CLOSED:
            routing_status = RoutingStatus.SYNCED
        elif binding.status is BindingStatus.PENDING:
            # Nothing to route until the binding proves liveness.
            routing_status = RoutingStatus.SYNCED
        else:
            routing_status = RoutingStatus.PENDING

        return TunnelStatus(
            id=binding.id,
            status=binding.status.value,
            routing_in_sync=routing_status is RoutingStatus.SYNCED,
            routing_status=routing_status.value,
            routing_error=state.last_error if state else None,
        )
