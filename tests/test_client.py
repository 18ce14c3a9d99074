"""Tests for the reconnecting tunnel client."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import patch

import pytest

from burrow.cli import start_tunnel
from burrow.client.tunnel import TunnelClient, TunnelState
from burrow.core.config import BackoffConfig, ClientConfig, HeartbeatConfig
from burrow.core.exceptions import RegistrationRejectedError, TransportError, TransportTimeoutError
from burrow.core.transport import Transport, TransportKind
from burrow.protocol.messages import (
    Close,
    Disconnect,
    Heartbeat,
    HeartbeatAck,
    Register,
    RegisterFail,
    RegisterOk,
    encode_message,
    parse_message,
)


class FakeBroker:
    """Scripted broker behind in-memory transports."""

    def __init__(self) -> None:
        self.connect_failures = 0
        self.reject: list[str] = []
        self.ack = True
        self.received: list = []
        self.transports: list[FakeTransport] = []
        self.binding_id = "b1"
        self._sessions = 0

    @property
    def registers(self) -> list[Register]:
        return [m for m in self.received if isinstance(m, Register)]

    def respond(self, msg) -> list:
        self.received.append(msg)
        if isinstance(msg, Register):
            if self.reject:
                return [RegisterFail(reason=self.reject.pop(0), message="nope")]
            self._sessions += 1
            subdomain = msg.subdomain or "gen12345"
            return [
                RegisterOk(
                    binding_id=self.binding_id,
                    session_id=f"s{self._sessions}",
                    subdomain=subdomain,
                    remote_endpoint="127.0.0.1:10000",
                    url=f"https://{subdomain}.example.test",
                )
            ]
        if isinstance(msg, Heartbeat) and self.ack:
            return [HeartbeatAck(seq=msg.seq)]
        return []

    def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def push(self, msg) -> None:
        """Deliver an unsolicited broker message on the current channel."""
        self.transports[-1].inbox.put_nowait(encode_message(msg))

    def drop(self) -> None:
        self.transports[-1].inbox.put_nowait(None)


class FakeTransport(Transport):
    kind = TransportKind.WEBSOCKET

    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.connected = False

    async def connect(self, addr: str) -> None:
        if self.broker.connect_failures > 0:
            self.broker.connect_failures -= 1
            raise TransportError("Connection refused")
        self.connected = True

    async def send(self, data: bytes) -> None:
        if not self.connected:
            raise TransportError("Not connected")
        for reply in self.broker.respond(parse_message(data)):
            self.inbox.put_nowait(encode_message(reply))

    async def recv(self) -> bytes | None:
        return await self.inbox.get()

    async def close(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def make_client(
    broker: FakeBroker,
    subdomain: str | None = "app",
    max_rejections: int = 3,
    stability_window: float = 60.0,
    backoff_base: float = 0.01,
    backoff_cap: float = 0.05,
) -> TunnelClient:
    return TunnelClient(
        ClientConfig(server_addr="broker:4443", local_port=3000, subdomain=subdomain),
        heartbeat_config=HeartbeatConfig(
            heartbeat_interval=0.02,
            heartbeat_timeout=0.05,
            heartbeat_miss_threshold=2,
        ),
        backoff_config=BackoffConfig(
            backoff_base=backoff_base,
            backoff_cap=backoff_cap,
            backoff_jitter=0.0,
            stability_window=stability_window,
            max_rejections=max_rejections,
        ),
        transport_factory=broker.factory,
    )


class TestConnect:
    @pytest.mark.asyncio
    async def test_becomes_active(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        states: list[TunnelState] = []
        client.add_state_hook(states.append)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            assert client.binding_id == "b1"
            assert client.subdomain == "app"
            assert client.url == "https://app.example.test"
            assert client.remote_endpoint == "127.0.0.1:10000"
            assert states[:3] == [TunnelState.CONNECTING, TunnelState.REGISTERING, TunnelState.ACTIVE]
            register = broker.registers[0]
            assert register.subdomain == "app"
            assert register.local_port == 3000
            assert register.binding_id is None
            # Active only after the first heartbeat was acknowledged.
            assert isinstance(broker.received[1], Heartbeat)
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_generated_subdomain_is_kept(self) -> None:
        broker = FakeBroker()
        client = make_client(broker, subdomain=None)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            assert client.subdomain == "gen12345"
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_connect_failures_back_off(self) -> None:
        broker = FakeBroker()
        broker.connect_failures = 2
        client = make_client(broker)
        delays: list[float] = []
        client.add_state_hook(lambda s: delays.append(client.last_delay) if s is TunnelState.BACKOFF else None)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            assert client.reconnect_attempt == 2
            assert delays == [0.01, 0.02]
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_stability_window_resets_attempts(self) -> None:
        broker = FakeBroker()
        broker.connect_failures = 2
        client = make_client(broker, stability_window=0.03)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            await wait_until(lambda: client.reconnect_attempt == 0)
        finally:
            await client.stop()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_dropped_channel_resumes_binding(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            broker.drop()
            await wait_until(lambda: len(broker.registers) == 2 and client.is_active)
            resume = broker.registers[1]
            assert resume.binding_id == "b1"
            assert resume.subdomain == "app"
            assert resume.attempt == 1
            assert client.session_id == "s2"
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_missed_acks_trigger_reconnect(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            broker.ack = False
            await wait_until(lambda: client.state is TunnelState.BACKOFF)
            assert isinstance(client.last_error, TransportTimeoutError)
            broker.ack = True
            await wait_until(lambda: client.is_active)
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_non_final_disconnect_reconnects(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            broker.push(Disconnect(reason="session_expired"))
            await wait_until(lambda: len(broker.registers) == 2 and client.is_active)
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_final_disconnect_stops_client(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        task = client.start()
        await client.wait_active(timeout=2.0)
        broker.push(Disconnect(reason="deleted", final=True))
        await asyncio.wait_for(task, 2.0)
        assert client.state is TunnelState.DISCONNECTED
        assert "deleted" in client.last_error.message
        assert len(broker.registers) == 1
        with pytest.raises(RuntimeError):
            client.start()


class TestRejections:
    @pytest.mark.asyncio
    async def test_retryable_rejection_retries(self) -> None:
        broker = FakeBroker()
        broker.reject = ["duplicate_subdomain"]
        client = make_client(broker)
        client.start()
        try:
            await client.wait_active(timeout=2.0)
            assert len(broker.registers) == 2
            assert client.stats["rejections"] == 0
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_non_retryable_rejection_is_terminal(self) -> None:
        broker = FakeBroker()
        broker.reject = ["invalid_target"]
        client = make_client(broker)
        await asyncio.wait_for(client.run(), 2.0)
        assert client.state is TunnelState.DISCONNECTED
        assert isinstance(client.last_error, RegistrationRejectedError)
        assert client.last_error.reason == "invalid_target"
        assert len(broker.registers) == 1

    @pytest.mark.asyncio
    async def test_rejections_are_capped(self) -> None:
        broker = FakeBroker()
        broker.reject = ["duplicate_subdomain"] * 10
        client = make_client(broker, max_rejections=2)
        await asyncio.wait_for(client.run(), 2.0)
        assert client.state is TunnelState.DISCONNECTED
        assert len(broker.registers) == 3
        assert client.last_error.code == "duplicate_subdomain"


class TestStop:
    @pytest.mark.asyncio
    async def test_graceful_stop_sends_close(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        await client.wait_active(timeout=2.0)
        await client.stop()
        closes = [m for m in broker.received if isinstance(m, Close)]
        assert len(closes) == 1
        assert closes[0].session_id == "s1"
        assert client.state is TunnelState.DISCONNECTED
        assert not broker.transports[-1].connected

    @pytest.mark.asyncio
    async def test_non_graceful_stop_skips_close(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        await client.wait_active(timeout=2.0)
        await client.stop(graceful=False)
        assert not any(isinstance(m, Close) for m in broker.received)

    @pytest.mark.asyncio
    async def test_stop_interrupts_backoff(self) -> None:
        broker = FakeBroker()
        broker.connect_failures = 1000
        client = make_client(broker, backoff_base=30.0, backoff_cap=30.0)
        client.start()
        await wait_until(lambda: client.state is TunnelState.BACKOFF)
        await asyncio.wait_for(client.stop(), 1.0)
        assert client.state is TunnelState.DISCONNECTED
        assert len(broker.transports) == 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_connect(self) -> None:
        broker = FakeBroker()
        connecting = asyncio.Event()

        class HangingTransport(FakeTransport):
            async def connect(self, addr: str) -> None:
                connecting.set()
                await asyncio.Event().wait()

        client = TunnelClient(
            ClientConfig(server_addr="broker:4443", local_port=3000, subdomain="app", connect_timeout=60.0),
            transport_factory=lambda: HangingTransport(broker),
        )
        client.start()
        await asyncio.wait_for(connecting.wait(), 1.0)
        assert client.state is TunnelState.CONNECTING
        await asyncio.wait_for(client.stop(), 0.5)
        assert client.state is TunnelState.DISCONNECTED


class TestCommandLineShutdown:
    @pytest.mark.asyncio
    async def test_cancelled_tunnel_closes_binding(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        with patch("burrow.client.tunnel.TunnelClient", return_value=client):
            task = asyncio.create_task(start_tunnel(client.config))
            await client.wait_active(timeout=2.0)
            # What the SIGINT handler does.
            task.cancel()
            exit_code = await asyncio.wait_for(task, 2.0)

        assert exit_code == 0
        closes = [m for m in broker.received if isinstance(m, Close)]
        assert len(closes) == 1
        assert closes[0].session_id == "s1"
        assert client.state is TunnelState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_cancelled_run_keeps_client_running(self) -> None:
        broker = FakeBroker()
        client = make_client(broker)
        runner = asyncio.create_task(client.run())
        await client.wait_active(timeout=2.0)
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        assert client.is_active
        await client.stop()
        assert any(isinstance(m, Close) for m in broker.received)
