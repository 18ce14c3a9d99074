"""Transport sessions: one encrypted channel per tunnel.

A transport exposes exactly four capabilities: connect, send, recv and close.
Variants are selected by ``TransportKind`` through ``create_transport``.
"""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from abc import ABC, abstractmethod
from enum import Enum

import aiohttp
import structlog

from burrow.core.exceptions import TransportError, TransportTimeoutError

logger = structlog.get_logger()

CONTROL_PATH = "/tunnel"


class TransportKind(Enum):
    WEBSOCKET = "websocket"


class Transport(ABC):
    """Abstract control channel."""

    kind: TransportKind

    @abstractmethod
    async def connect(self, addr: str) -> None:
        """Open the channel to ``addr`` (``host:port``)."""

    @abstractmethod
    async def send(self, data: bytes) -> None: ...

    @abstractmethod
    async def recv(self) -> bytes | None:
        """Return the next frame, or None once the channel is closed."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...


class WebSocketTransport(Transport):
    """Binary WebSocket channel over TLS (``wss://``)."""

    kind = TransportKind.WEBSOCKET

    def __init__(
        self,
        connect_timeout: float = 10.0,
        use_tls: bool = True,
        verify_tls: bool = True,
        path: str = CONTROL_PATH,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.use_tls = use_tls
        self.verify_tls = verify_tls
        self.path = path
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    def _url(self, addr: str) -> str:
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{addr}{self.path}"

    def _ssl_context(self) -> ssl.SSLContext | bool:
        if not self.use_tls:
            return False
        if self.verify_tls:
            return ssl.create_default_context()
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def connect(self, addr: str) -> None:
        if self._ws is not None:
            raise TransportError("Transport already connected")
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._url(addr), ssl=self._ssl_context()),
                timeout=self.connect_timeout,
            )
        except TimeoutError:
            await self.close()
            raise TransportTimeoutError("connect", self.connect_timeout) from None
        except (aiohttp.ClientError, OSError) as e:
            await self.close()
            raise TransportError(f"Connection to {addr} failed: {e}") from e
        logger.debug("Transport connected", addr=addr, kind=self.kind.value)

    async def send(self, data: bytes) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("Transport not connected")
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def recv(self) -> bytes | None:
        if self._ws is None:
            return None
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"WebSocket error: {self._ws.exception()}")
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            return None
        logger.debug("Ignoring non-binary frame", type=str(msg.type))
        return await self.recv()

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if session is not None:
            await session.close()

    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed


_TRANSPORTS: dict[TransportKind, type[Transport]] = {
    TransportKind.WEBSOCKET: WebSocketTransport,
}


def create_transport(kind: TransportKind = TransportKind.WEBSOCKET, **options: object) -> Transport:
    """Build a transport of the requested kind."""
    try:
        cls = _TRANSPORTS[kind]
    except KeyError:
        raise ValueError(f"Unsupported transport kind: {kind}") from None
    return cls(**options)  # type: ignore[arg-type]
