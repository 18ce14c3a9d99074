"""Reverse proxy configuration collaborators.

Both operations are declarative and idempotent: ``upsert`` replaces any
existing route for the subdomain, ``delete`` of an absent route succeeds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from burrow.core.exceptions import SyncError

logger = structlog.get_logger()


@dataclass(frozen=True)
class RoutingEntry:
    """Rule forwarding ``host`` to ``upstream``."""

    subdomain: str
    host: str
    upstream: str
    binding_id: str


class ProxyConfigClient(ABC):
    @abstractmethod
    async def upsert(self, entry: RoutingEntry) -> None: ...

    @abstractmethod
    async def delete(self, subdomain: str) -> None: ...

    async def close(self) -> None:
        """Release client resources."""


class InMemoryProxyConfig(ProxyConfigClient):
    """Route table kept in process, for development and tests."""

    def __init__(self) -> None:
        self.routes: dict[str, RoutingEntry] = {}

    async def upsert(self, entry: RoutingEntry) -> None:
        self.routes[entry.subdomain] = entry

    async def delete(self, subdomain: str) -> None:
        self.routes.pop(subdomain, None)


class CaddyAdminClient(ProxyConfigClient):
    """Pushes routes to Caddy's admin API.

    Each route carries an ``@id`` of ``burrow-<subdomain>`` so it can be
    replaced or removed through ``/id/<id>`` without touching other routes.
    """

    def __init__(
        self,
        admin_url: str = "http://localhost:2019",
        server_name: str = "srv0",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.admin_url = admin_url.rstrip("/")
        self.server_name = server_name
        self._client = client or httpx.AsyncClient(base_url=self.admin_url, timeout=timeout)

    @staticmethod
    def route_id(subdomain: str) -> str:
        return f"burrow-{subdomain}"

    def _route(self, entry: RoutingEntry) -> dict[str, Any]:
        return {
            "@id": self.route_id(entry.subdomain),
            "match": [{"host": [entry.host]}],
            "handle": [
                {
                    "handler": "reverse_proxy",
                    "upstreams": [{"dial": entry.upstream}],
                }
            ],
            "terminal": True,
        }

    async def upsert(self, entry: RoutingEntry) -> None:
        route = self._route(entry)
        try:
            # PATCH replaces an existing object by id; 404 means it is not there yet.
            resp = await self._client.patch(f"/id/{self.route_id(entry.subdomain)}", json=route)
            if resp.status_code == 404:
                resp = await self._client.post(
                    f"/config/apps/http/servers/{self.server_name}/routes", json=route
                )
        except httpx.HTTPError as e:
            raise SyncError(f"Proxy upsert for '{entry.subdomain}' failed: {e}") from e
        if resp.is_error:
            raise SyncError(
                f"Proxy upsert for '{entry.subdomain}' returned {resp.status_code}: {resp.text[:200]}"
            )
        logger.debug("Proxy route upserted", subdomain=entry.subdomain, upstream=entry.upstream)

    async def delete(self, subdomain: str) -> None:
        try:
            resp = await self._client.delete(f"/id/{self.route_id(subdomain)}")
        except httpx.HTTPError as e:
            raise SyncError(f"Proxy delete for '{subdomain}' failed: {e}") from e
        if resp.status_code == 404:
            return
        if resp.is_error:
            raise SyncError(f"Proxy delete for '{subdomain}' returned {resp.status_code}: {resp.text[:200]}")
        logger.debug("Proxy route deleted", subdomain=subdomain)

    async def close(self) -> None:
        await self._client.aclose()


def create_proxy_client(
    backend: str,
    admin_url: str = "http://localhost:2019",
    server_name: str = "srv0",
    timeout: float = 5.0,
) -> ProxyConfigClient:
    if backend == "memory":
        return InMemoryProxyConfig()
    if backend == "caddy":
        return CaddyAdminClient(admin_url=admin_url, server_name=server_name, timeout=timeout)
    raise ValueError(f"Unsupported proxy backend: {backend}")
