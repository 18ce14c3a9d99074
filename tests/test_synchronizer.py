"""Tests for routing synchronization."""

from __future__ import annotations

import asyncio

import pytest

from burrow.core.config import HeartbeatConfig, ServerConfig, SyncConfig
from burrow.core.exceptions import SyncError
from burrow.routing.proxy import InMemoryProxyConfig, RoutingEntry
from burrow.routing.synchronizer import RoutingStatus, RoutingSynchronizer
from burrow.server.registry import BindingStatus, LocalTarget, SessionRegistry


class FlakyProxy(InMemoryProxyConfig):
    """Fails the first ``failures`` pushes."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.calls: list[tuple[str, str]] = []

    async def upsert(self, entry: RoutingEntry) -> None:
        self.calls.append(("upsert", entry.subdomain))
        if self.failures > 0:
            self.failures -= 1
            raise SyncError("proxy unavailable")
        await super().upsert(entry)

    async def delete(self, subdomain: str) -> None:
        self.calls.append(("delete", subdomain))
        if self.failures > 0:
            self.failures -= 1
            raise SyncError("proxy unavailable")
        await super().delete(subdomain)


class BlockingProxy(InMemoryProxyConfig):
    """Upserts hang until released."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.cancelled = 0

    async def upsert(self, entry: RoutingEntry) -> None:
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        await super().upsert(entry)


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(
        ServerConfig(base_domain="example.test"),
        heartbeat_config=HeartbeatConfig(sweep_interval=3600),
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        sync_max_attempts=3,
        sync_backoff_base=0.001,
        sync_backoff_cap=0.01,
        sync_resync_interval=3600,
    )


async def settle(sync: RoutingSynchronizer, timeout: float = 2.0) -> None:
    """Wait until all queued events are handled and no push is in flight."""

    async def _wait() -> None:
        while True:
            await asyncio.sleep(0.01)
            if sync._queue is not None and sync._queue.empty() and sync.is_idle():
                return

    await asyncio.wait_for(_wait(), timeout)


async def activate(registry: SessionRegistry, subdomain: str, port: int = 3000):
    binding, session = await registry.register(subdomain, LocalTarget.parse("localhost", port))
    return await registry.heartbeat(session.id), session


class TestRouteSync:
    @pytest.mark.asyncio
    async def test_active_binding_is_routed(self, registry, sync_config) -> None:
        proxy = InMemoryProxyConfig()
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, _ = await activate(registry, "app")
            await settle(sync)
            entry = proxy.routes["app"]
            assert entry.host == "app.example.test"
            assert entry.upstream == "localhost:3000"
            assert sync.routing_state(binding.id).status is RoutingStatus.SYNCED
        finally:
            await sync.stop()

    @pytest.mark.asyncio
    async def test_pending_binding_is_not_routed(self, registry, sync_config) -> None:
        proxy = InMemoryProxyConfig()
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, _ = await registry.register("app", LocalTarget.parse("localhost", 3000))
            await settle(sync)
            assert proxy.routes == {}
            assert sync.routing_state(binding.id) is None
        finally:
            await sync.stop()

    @pytest.mark.asyncio
    async def test_degraded_keeps_route_and_close_removes_it(self, registry, sync_config) -> None:
        proxy = InMemoryProxyConfig()
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, session = await activate(registry, "app")
            await settle(sync)
            await registry.mark_disconnected(session.id)
            await settle(sync)
            assert "app" in proxy.routes

            await registry.close(binding.id)
            await settle(sync)
            assert "app" not in proxy.routes
            assert sync.routing_state(binding.id) is None
        finally:
            await sync.stop()

    @pytest.mark.asyncio
    async def test_endpoint_upstream(self, registry) -> None:
        proxy = InMemoryProxyConfig()
        sync = RoutingSynchronizer(
            registry, proxy, "example.test", SyncConfig(route_upstream="endpoint")
        )
        binding, _ = await activate(registry, "app")
        assert sync.entry_for(binding).upstream == binding.remote_endpoint

    @pytest.mark.asyncio
    async def test_delete_of_absent_route_succeeds(self) -> None:
        proxy = InMemoryProxyConfig()
        await proxy.delete("ghost")
        await proxy.delete("ghost")
        assert proxy.routes == {}


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, registry, sync_config) -> None:
        proxy = FlakyProxy(failures=2)
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, _ = await activate(registry, "app")
            await settle(sync)
            state = sync.routing_state(binding.id)
            assert state.status is RoutingStatus.SYNCED
            assert state.attempts == 3
            assert "app" in proxy.routes
        finally:
            await sync.stop()

    @pytest.mark.asyncio
    async def test_persistent_failure_marks_out_of_sync(self, registry, sync_config) -> None:
        proxy = FlakyProxy(failures=100)
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, _ = await activate(registry, "app")
            await settle(sync)
            state = sync.routing_state(binding.id)
            assert state.status is RoutingStatus.OUT_OF_SYNC
            assert state.last_error == "proxy unavailable"
            # Routing failure never touches lifecycle.
            assert registry.get(binding.id).status is BindingStatus.ACTIVE
            assert sync.get_stats()["out_of_sync"] == 1

            proxy.failures = 0
            assert sync.resync() == 1
            await settle(sync)
            assert sync.routing_state(binding.id).status is RoutingStatus.SYNCED
            assert sync.get_stats()["out_of_sync"] == 0
        finally:
            await sync.stop()

    @pytest.mark.asyncio
    async def test_close_cancels_inflight_upsert(self, registry, sync_config) -> None:
        proxy = BlockingProxy()
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            binding, _ = await activate(registry, "app")
            await asyncio.sleep(0.05)
            assert not sync.is_idle()

            await registry.close(binding.id)
            await settle(sync)
            assert proxy.cancelled == 1
            assert proxy.routes == {}
        finally:
            await sync.stop()


class TestSubdomainReuse:
    @pytest.mark.asyncio
    async def test_new_binding_takes_over_route(self, registry, sync_config) -> None:
        proxy = InMemoryProxyConfig()
        sync = RoutingSynchronizer(registry, proxy, "example.test", sync_config)
        await sync.start()
        try:
            old, _ = await activate(registry, "app", 3000)
            await settle(sync)
            await registry.close(old.id)
            new, _ = await activate(registry, "app", 4000)
            await settle(sync)

            assert proxy.routes["app"].binding_id == new.id
            assert proxy.routes["app"].upstream == "localhost:4000"
            assert sync.routing_state(old.id) is None
            assert sync.routing_state(new.id).in_sync
        finally:
            await sync.stop()
