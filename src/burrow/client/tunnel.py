"""Tunnel client with a reconnecting state machine.

States::

    DISCONNECTED -> CONNECTING -> REGISTERING -> ACTIVE
                        |              |           |
                        +---------> BACKOFF <------+
                                       |
                                       +--> CONNECTING

Any state goes to DISCONNECTED on stop(), which is terminal for the instance.
The client only mirrors its binding; the broker's answers are authoritative.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from burrow.core.backoff import compute_delay
from burrow.core.config import BackoffConfig, ClientConfig, HeartbeatConfig, get_config
from burrow.core.exceptions import (
    BurrowError,
    RegistrationRejectedError,
    TransportError,
    TransportTimeoutError,
)
from burrow.core.transport import Transport, TransportKind, create_transport
from burrow.protocol.messages import (
    Close,
    Disconnect,
    Heartbeat,
    HeartbeatAck,
    Message,
    Register,
    RegisterFail,
    RegisterOk,
    encode_message,
    parse_message,
)

logger = structlog.get_logger()


class TunnelState(Enum):
    """Client connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    ACTIVE = "active"
    BACKOFF = "backoff"


class _Outcome(Enum):
    TRANSPORT_FAILED = "transport_failed"
    REJECTED = "rejected"
    FINISHED = "finished"


class _BrokerDisconnect(Exception):
    def __init__(self, msg: Disconnect) -> None:
        super().__init__(msg.reason)
        self.reason = msg.reason
        self.final = msg.final


class TunnelClient:
    """Keeps one binding alive on the broker, reconnecting with backoff."""

    def __init__(
        self,
        config: ClientConfig,
        heartbeat_config: HeartbeatConfig | None = None,
        backoff_config: BackoffConfig | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        """Initialize tunnel client.

        Args:
            config: Server address, local target and optional subdomain/binding id.
            heartbeat_config: Heartbeat interval, ack timeout and miss threshold.
            backoff_config: Reconnect delay policy and rejection cap.
            transport_factory: Builds a fresh transport per connection attempt.
            rand: Source of jitter in [0, 1).
        """
        settings = get_config()
        self.config = config
        self.heartbeat_config = heartbeat_config or settings.heartbeat
        self.backoff_config = backoff_config or settings.backoff
        self._transport_factory = transport_factory or self._default_transport
        self._rand = rand

        self._state = TunnelState.DISCONNECTED
        self._transport: Transport | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._active_event = asyncio.Event()
        self._stopped = False

        # Mirror of the broker's view; overwritten by every REGISTER_OK.
        self._binding_id: str | None = config.binding_id
        self._subdomain: str | None = config.subdomain
        self._session_id: str | None = None
        self._remote_endpoint: str | None = None
        self._url: str | None = None

        self.reconnect_attempt = 0
        self._rejections = 0
        self._hb_seq = 0
        self._active_since: float | None = None
        self.last_error: BurrowError | None = None
        self.last_delay: float | None = None

        self._state_hooks: list[Callable[[TunnelState], None]] = []

    def _default_transport(self) -> Transport:
        return create_transport(
            TransportKind.WEBSOCKET,
            connect_timeout=self.config.connect_timeout,
            use_tls=self.config.use_tls,
            verify_tls=self.config.verify_tls,
        )

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def binding_id(self) -> str | None:
        return self._binding_id

    @property
    def subdomain(self) -> str | None:
        return self._subdomain

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def remote_endpoint(self) -> str | None:
        return self._remote_endpoint

    @property
    def is_active(self) -> bool:
        return self._state is TunnelState.ACTIVE

    @property
    def stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "binding_id": self._binding_id,
            "subdomain": self._subdomain,
            "url": self._url,
            "remote_endpoint": self._remote_endpoint,
            "reconnect_attempts": self.reconnect_attempt,
            "rejections": self._rejections,
            "last_error": self.last_error.message if self.last_error else None,
        }

    def add_state_hook(self, hook: Callable[[TunnelState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: Callable[[TunnelState], None]) -> None:
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def _set_state(self, state: TunnelState) -> None:
        """Set state and notify hooks."""
        if self._state == state:
            return
        old_state = self._state
        self._state = state
        if state is TunnelState.ACTIVE:
            self._active_event.set()
        else:
            self._active_event.clear()
        logger.debug("State changed", old=old_state.value, new=state.value)
        for hook in self._state_hooks:
            try:
                hook(state)
            except Exception as e:
                logger.warning("State hook error", error=str(e))

    # Public control

    def start(self) -> asyncio.Task[None]:
        """Begin connecting in the background."""
        if self._stopped:
            raise RuntimeError("Tunnel client was stopped; create a new instance")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def run(self) -> None:
        """Start and wait until the client stops.

        Cancelling the caller does not cancel the client: the caller is
        expected to follow up with ``stop()``, which closes the binding.
        """
        await asyncio.shield(self.start())

    async def wait_active(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._active_event.wait(), timeout=timeout)

    async def stop(self, graceful: bool = True) -> None:
        """Stop the tunnel, releasing the transport.

        With ``graceful`` an active binding is closed on the broker via
        CLOSE; otherwise it is left to degrade and expire.
        """
        if self._stopped and (self._task is None or self._task.done()):
            return
        self._stopped = True

        transport = self._transport
        if graceful and self._state is TunnelState.ACTIVE and transport and self._session_id:
            with contextlib.suppress(TransportError, TimeoutError, OSError):
                await asyncio.wait_for(
                    transport.send(encode_message(Close(session_id=self._session_id))),
                    timeout=self.heartbeat_config.heartbeat_timeout,
                )
                logger.info("Tunnel closed", binding_id=self._binding_id)

        self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._release_transport()
        self._set_state(TunnelState.DISCONNECTED)

    # Main loop

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                outcome = await self._cycle()
                if outcome is _Outcome.FINISHED or self._stop_event.is_set():
                    break
                if not await self._backoff(outcome):
                    break
        finally:
            self._stopped = True
            await self._release_transport()
            self._set_state(TunnelState.DISCONNECTED)

    async def _cycle(self) -> _Outcome:
        """One connect, register, heartbeat pass."""
        self._set_state(TunnelState.CONNECTING)
        transport = self._transport_factory()
        self._transport = transport
        try:
            await asyncio.wait_for(
                transport.connect(self.config.server_addr), timeout=self.config.connect_timeout
            )
        except TimeoutError:
            return self._transport_failed(TransportTimeoutError("connect", self.config.connect_timeout))
        except TransportError as e:
            return self._transport_failed(e)
        except OSError as e:
            return self._transport_failed(TransportError(f"Connection failed: {e}"))

        self._set_state(TunnelState.REGISTERING)
        try:
            await self._register(transport)
            if not await self._exchange_heartbeat(transport):
                return self._transport_failed(
                    TransportTimeoutError("first heartbeat", self.heartbeat_config.heartbeat_timeout)
                )
        except RegistrationRejectedError as e:
            self.last_error = e
            logger.warning("Registration rejected", reason=e.reason, subdomain=self._subdomain)
            return _Outcome.REJECTED
        except TransportError as e:
            return self._transport_failed(e)
        except _BrokerDisconnect as e:
            return self._broker_disconnected(e)

        self._rejections = 0
        self._set_state(TunnelState.ACTIVE)
        logger.info(
            "Tunnel active",
            binding_id=self._binding_id,
            subdomain=self._subdomain,
            url=self._url,
            attempt=self.reconnect_attempt,
        )
        return await self._run_active(transport)

    def _transport_failed(self, error: TransportError) -> _Outcome:
        self.last_error = error
        logger.warning("Transport failure", state=self._state.value, error=error.message)
        return _Outcome.TRANSPORT_FAILED

    def _broker_disconnected(self, disconnect: _BrokerDisconnect) -> _Outcome:
        if disconnect.final:
            logger.warning("Binding closed by broker", reason=disconnect.reason, binding_id=self._binding_id)
            self.last_error = BurrowError(f"Binding closed by broker: {disconnect.reason}")
            return _Outcome.FINISHED
        return self._transport_failed(TransportError(f"Broker disconnected: {disconnect.reason}"))

    async def _recv(self, transport: Transport, timeout: float) -> Message:
        try:
            data = await asyncio.wait_for(transport.recv(), timeout=timeout)
        except TimeoutError:
            raise TransportTimeoutError("receive", timeout) from None
        if data is None:
            raise TransportError("Connection closed by broker")
        try:
            return parse_message(data)
        except ValueError as e:
            raise TransportError(f"Malformed message from broker: {e}") from e

    async def _register(self, transport: Transport) -> RegisterOk:
        request = Register(
            subdomain=self._subdomain,
            local_port=self.config.local_port,
            local_host=self.config.local_host,
            binding_id=self._binding_id,
            attempt=self.reconnect_attempt,
        )
        await transport.send(encode_message(request))
        msg = await self._recv(transport, self.heartbeat_config.heartbeat_timeout)

        if isinstance(msg, RegisterFail):
            raise RegistrationRejectedError(msg.reason, msg.message)
        if isinstance(msg, Disconnect):
            raise _BrokerDisconnect(msg)
        if not isinstance(msg, RegisterOk):
            raise TransportError(f"Unexpected reply to register: {msg.type}")

        if self._binding_id and msg.binding_id != self._binding_id:
            logger.info(
                "Previous binding expired, registered a new one",
                old_binding_id=self._binding_id,
                binding_id=msg.binding_id,
            )
        self._binding_id = msg.binding_id
        self._session_id = msg.session_id
        self._subdomain = msg.subdomain
        self._remote_endpoint = msg.remote_endpoint
        self._url = msg.url or None
        return msg

    async def _exchange_heartbeat(self, transport: Transport) -> bool:
        """Send one heartbeat and wait for its ack. False on timeout."""
        assert self._session_id is not None
        self._hb_seq += 1
        seq = self._hb_seq
        await transport.send(encode_message(Heartbeat(session_id=self._session_id, seq=seq)))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.heartbeat_config.heartbeat_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                msg = await self._recv(transport, remaining)
            except TransportTimeoutError:
                return False
            if isinstance(msg, HeartbeatAck):
                if msg.seq >= seq:
                    return True
                # Late ack for an earlier heartbeat.
                continue
            if isinstance(msg, Disconnect):
                raise _BrokerDisconnect(msg)
            logger.debug("Ignoring message while awaiting ack", type=msg.type)

    async def _run_active(self, transport: Transport) -> _Outcome:
        hb = self.heartbeat_config
        loop = asyncio.get_running_loop()
        self._active_since = loop.time()
        misses = 0

        while True:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=hb.heartbeat_interval)
                return _Outcome.FINISHED
            except TimeoutError:
                pass

            try:
                acked = await self._exchange_heartbeat(transport)
            except _BrokerDisconnect as e:
                return self._broker_disconnected(e)
            except TransportError as e:
                return self._transport_failed(e)

            if acked:
                misses = 0
            else:
                misses += 1
                logger.warning("Heartbeat not acknowledged", misses=misses, threshold=hb.heartbeat_miss_threshold)
                if misses >= hb.heartbeat_miss_threshold:
                    return self._transport_failed(TransportTimeoutError("heartbeat", hb.heartbeat_timeout))

            if (
                self.reconnect_attempt
                and loop.time() - self._active_since >= self.backoff_config.stability_window
            ):
                logger.debug("Connection stable, resetting backoff", attempts=self.reconnect_attempt)
                self.reconnect_attempt = 0

    async def _backoff(self, outcome: _Outcome) -> bool:
        """Wait before the next attempt. False means the client must stop."""
        cfg = self.backoff_config
        if outcome is _Outcome.REJECTED:
            error = self.last_error
            self._rejections += 1
            if not (isinstance(error, RegistrationRejectedError) and error.retryable):
                logger.error("Registration rejected permanently", reason=getattr(error, "reason", None))
                return False
            if self._rejections > cfg.max_rejections:
                logger.error("Giving up after repeated rejections", rejections=self._rejections - 1)
                return False
            delay = compute_delay(self._rejections - 1, cfg.backoff_base, cfg.backoff_cap, cfg.backoff_jitter, self._rand)
        else:
            delay = compute_delay(
                self.reconnect_attempt, cfg.backoff_base, cfg.backoff_cap, cfg.backoff_jitter, self._rand
            )
            self.reconnect_attempt += 1

        self.last_delay = delay
        self._set_state(TunnelState.BACKOFF)
        await self._release_transport()
        logger.info(
            "Reconnecting",
            attempt=self.reconnect_attempt,
            rejections=self._rejections,
            delay_sec=round(delay, 2),
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return False
        except TimeoutError:
            return True

    async def _release_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            self._session_id = None
            with contextlib.suppress(Exception):
                await transport.close()
