"""Tests for reverse proxy configuration clients."""

from __future__ import annotations

import json

import httpx
import pytest

from burrow.core.exceptions import SyncError
from burrow.routing.proxy import (
    CaddyAdminClient,
    InMemoryProxyConfig,
    RoutingEntry,
    create_proxy_client,
)

ENTRY = RoutingEntry(subdomain="app", host="app.example.test", upstream="localhost:3000", binding_id="b1")


def make_client(handler) -> tuple[CaddyAdminClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(base_url="http://caddy:2019", transport=httpx.MockTransport(recording))
    return CaddyAdminClient(admin_url="http://caddy:2019", client=http), requests


class TestCaddyAdminClient:
    @pytest.mark.asyncio
    async def test_upsert_replaces_existing_route(self) -> None:
        client, requests = make_client(lambda r: httpx.Response(200))
        await client.upsert(ENTRY)
        assert len(requests) == 1
        assert requests[0].method == "PATCH"
        assert requests[0].url.path == "/id/burrow-app"
        body = json.loads(requests[0].content)
        assert body["@id"] == "burrow-app"
        assert body["match"] == [{"host": ["app.example.test"]}]
        assert body["handle"][0]["upstreams"] == [{"dial": "localhost:3000"}]
        await client.close()

    @pytest.mark.asyncio
    async def test_upsert_creates_missing_route(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404 if request.method == "PATCH" else 200)

        client, requests = make_client(handler)
        await client.upsert(ENTRY)
        assert [r.method for r in requests] == ["PATCH", "POST"]
        assert requests[1].url.path == "/config/apps/http/servers/srv0/routes"
        await client.close()

    @pytest.mark.asyncio
    async def test_upsert_error_raises_sync_error(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(500, text="boom"))
        with pytest.raises(SyncError, match="500"):
            await client.upsert(ENTRY)
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error_raises_sync_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client, _ = make_client(handler)
        with pytest.raises(SyncError):
            await client.delete("app")
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_absent_route_is_success(self) -> None:
        client, requests = make_client(lambda r: httpx.Response(404))
        await client.delete("app")
        assert requests[0].method == "DELETE"
        assert requests[0].url.path == "/id/burrow-app"
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_error(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(503))
        with pytest.raises(SyncError):
            await client.delete("app")
        await client.close()


class TestFactory:
    def test_memory_backend(self) -> None:
        assert isinstance(create_proxy_client("memory"), InMemoryProxyConfig)

    @pytest.mark.asyncio
    async def test_caddy_backend(self) -> None:
        client = create_proxy_client("caddy", admin_url="http://caddy:2019/")
        assert isinstance(client, CaddyAdminClient)
        assert client.admin_url == "http://caddy:2019"
        await client.close()

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError):
            create_proxy_client("nginx")
