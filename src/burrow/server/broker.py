"""Broker server: terminates tunnel sessions and serves the control API."""

from __future__ import annotations

import asyncio
import contextlib
import ssl
import weakref
from pathlib import Path
from typing import Any

import structlog
from aiohttp import WSMsgType, web
from pydantic import ValidationError

from burrow.control.api import ControlAPI, CreateTunnelRequest
from burrow.core.config import HeartbeatConfig, ServerConfig, SyncConfig, get_config
from burrow.core.exceptions import (
    BurrowError,
    DuplicateSubdomainError,
    InvalidSubdomainError,
    InvalidTargetError,
    NotFoundError,
    ResourceExhaustedError,
)
from burrow.core.transport import CONTROL_PATH
from burrow.observability.metrics import generate_metrics, get_content_type
from burrow.protocol.messages import (
    MAX_MESSAGE_SIZE,
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
from burrow.routing.proxy import ProxyConfigClient, create_proxy_client
from burrow.routing.synchronizer import RoutingSynchronizer
from burrow.server.registry import BindingEventKind, LocalTarget, SessionRegistry

logger = structlog.get_logger()

_HTTP_STATUS: dict[type[BurrowError], int] = {
    DuplicateSubdomainError: 409,
    InvalidTargetError: 400,
    InvalidSubdomainError: 400,
    ResourceExhaustedError: 503,
    NotFoundError: 404,
}


def _error_response(error: BurrowError) -> web.Response:
    status = next((code for cls, code in _HTTP_STATUS.items() if isinstance(error, cls)), 500)
    return web.json_response({"error": error.code, "message": error.message}, status=status)


class BrokerServer:
    """Accepts tunnel clients and wires registry, synchronizer and control API together."""

    def __init__(
        self,
        config: ServerConfig,
        registry: SessionRegistry | None = None,
        proxy: ProxyConfigClient | None = None,
        heartbeat_config: HeartbeatConfig | None = None,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self.config = config
        self.heartbeat_config = heartbeat_config or get_config().heartbeat
        self.registry = registry or SessionRegistry(config, heartbeat_config=self.heartbeat_config)
        self.proxy = proxy or create_proxy_client(
            config.proxy_backend,
            admin_url=config.proxy_admin_url,
            server_name=config.proxy_server_name,
            timeout=config.proxy_timeout,
        )
        self.synchronizer = RoutingSynchronizer(
            self.registry, self.proxy, config.base_domain, sync_config
        )
        self.control = ControlAPI(self.registry, self.synchronizer, config.base_domain)

        self._handles: dict[str, web.WebSocketResponse] = {}
        self._websockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._events_task: asyncio.Task[None] | None = None
        self._runner: web.AppRunner | None = None

    def _create_ssl_context(self) -> ssl.SSLContext | None:
        """Create SSL context from certificate files."""
        if not self.config.cert_path or not self.config.key_path:
            logger.warning("No TLS certificates provided, running without TLS")
            return None

        cert_path = Path(self.config.cert_path)
        key_path = Path(self.config.key_path)
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate file not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key file not found: {key_path}")

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(str(cert_path), str(key_path))
        ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
        logger.info("TLS context created", cert=str(cert_path))
        return ssl_context

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(CONTROL_PATH, self._handle_tunnel_connection)
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/stats", self._handle_stats)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_post("/api/tunnels", self._handle_create)
        app.router.add_get("/api/tunnels", self._handle_list)
        app.router.add_get("/api/tunnels/{binding_id}", self._handle_status)
        app.router.add_delete("/api/tunnels/{binding_id}", self._handle_delete)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        await self.registry.start()
        await self.synchronizer.start()
        if self._events_task is None:
            self._events_task = asyncio.create_task(self._watch_closures())

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._events_task:
            self._events_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._events_task
            self._events_task = None
        for ws in list(self._websockets):
            with contextlib.suppress(Exception):
                await ws.close()
        self._handles.clear()
        await self.synchronizer.stop()
        await self.registry.stop()
        await self.proxy.close()

    @staticmethod
    def _parse_bind(bind: str) -> tuple[str, int]:
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return "0.0.0.0", int(bind)

    async def start(self) -> None:
        """Start serving on the configured control bind address."""
        ssl_context = self._create_ssl_context()
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        host, port = self._parse_bind(self.config.control_bind)
        site = web.TCPSite(self._runner, host, port, ssl_context=ssl_context)
        await site.start()
        logger.info(
            "Broker started",
            bind=self.config.control_bind,
            base_domain=self.config.base_domain,
            tls=ssl_context is not None,
            proxy_backend=self.config.proxy_backend,
        )

    async def stop(self) -> None:
        logger.info("Stopping broker...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Broker stopped")

    async def _watch_closures(self) -> None:
        """Tell connected clients when their binding is closed under them."""
        queue = self.registry.subscribe()
        try:
            while True:
                event = await queue.get()
                if event.kind is not BindingEventKind.CLOSED:
                    continue
                if event.binding.close_reason == "client_closed":
                    continue
                ws = self._handles.pop(event.binding.id, None)
                if ws is None or ws.closed:
                    continue
                with contextlib.suppress(Exception):
                    await ws.send_bytes(
                        encode_message(Disconnect(reason=event.binding.close_reason or "closed", final=True))
                    )
                    await ws.close()
        finally:
            self.registry.unsubscribe(queue)

    async def _send(self, ws: web.WebSocketResponse, msg: Any) -> None:
        await ws.send_bytes(encode_message(msg))

    async def _handle_tunnel_connection(self, request: web.Request) -> web.WebSocketResponse:
        """Handle one tunnel client session."""
        ws = web.WebSocketResponse(max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        self._websockets.add(ws)
        peer = request.remote or "unknown"
        logger.info("New tunnel client connected", peer=peer)

        session_id: str | None = None
        binding_id: str | None = None
        client_closed = False

        try:
            first = await ws.receive(timeout=self.heartbeat_config.heartbeat_interval * 2)
            if first.type != WSMsgType.BINARY:
                await ws.close()
                return ws

            try:
                register = parse_message(first.data)
            except ValueError as e:
                await self._send(ws, RegisterFail(reason="protocol_error", message=str(e)))
                await ws.close()
                return ws
            if not isinstance(register, Register):
                await self._send(ws, RegisterFail(reason="protocol_error", message="Expected register message"))
                await ws.close()
                return ws

            try:
                target = LocalTarget.parse(register.local_host, register.local_port)
                binding, session = await self.registry.register(
                    register.subdomain,
                    target,
                    resume_id=register.binding_id,
                    handle=ws,
                    reconnect_attempt=register.attempt,
                )
            except BurrowError as e:
                logger.info("Registration rejected", peer=peer, reason=e.code, subdomain=register.subdomain)
                await self._send(ws, RegisterFail(reason=e.code, message=e.message))
                await ws.close()
                return ws

            session_id = session.id
            binding_id = binding.id
            previous = self._handles.get(binding_id)
            self._handles[binding_id] = ws
            if previous is not None and previous is not ws and not previous.closed:
                with contextlib.suppress(Exception):
                    await self._send(previous, Disconnect(reason="superseded", final=True))
                    await previous.close()

            await self._send(
                ws,
                RegisterOk(
                    binding_id=binding.id,
                    session_id=session.id,
                    subdomain=binding.subdomain,
                    remote_endpoint=binding.remote_endpoint,
                    url=f"https://{binding.subdomain}.{self.config.base_domain}",
                ),
            )

            async for frame in ws:
                if frame.type == WSMsgType.ERROR:
                    logger.error("WebSocket error", binding_id=binding_id, error=str(ws.exception()))
                    break
                if frame.type != WSMsgType.BINARY:
                    continue
                try:
                    msg = parse_message(frame.data)
                except ValueError as e:
                    logger.warning("Dropping malformed frame", binding_id=binding_id, error=str(e))
                    continue

                if isinstance(msg, Heartbeat):
                    try:
                        await self.registry.heartbeat(session_id)
                    except NotFoundError:
                        await self._send(ws, Disconnect(reason="session_expired"))
                        break
                    await self._send(ws, HeartbeatAck(seq=msg.seq))
                elif isinstance(msg, Close):
                    with contextlib.suppress(NotFoundError):
                        await self.registry.close_session(session_id)
                    client_closed = True
                    break
                else:
                    logger.warning("Unexpected message", type=msg.type, binding_id=binding_id)

        except Exception as e:
            logger.error("Tunnel session error", binding_id=binding_id, error=str(e))
        finally:
            self._websockets.discard(ws)
            if binding_id and self._handles.get(binding_id) is ws:
                del self._handles[binding_id]
            if session_id and not client_closed:
                await self.registry.mark_disconnected(session_id)
            if not ws.closed:
                await ws.close()
            logger.info("Tunnel session ended", binding_id=binding_id, peer=peer)

        return ws

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "registry": self.registry.get_stats(),
                "routing": self.synchronizer.get_stats(),
                "connections": len(self._websockets),
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})

    async def _handle_create(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "bad_request", "message": "Body must be JSON"}, status=400)
        try:
            req = CreateTunnelRequest.model_validate(body)
        except ValidationError as e:
            message = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
            )
            return web.json_response({"error": "bad_request", "message": message}, status=400)
        try:
            descriptor = await self.control.create(
                name=req.name,
                local_port=req.local_port,
                subdomain=req.subdomain,
                local_host=req.local_host,
            )
        except BurrowError as e:
            return _error_response(e)
        return web.json_response(descriptor.model_dump(mode="json"), status=201)

    async def _handle_list(self, request: web.Request) -> web.Response:
        include_closed = request.query.get("all", "").lower() in ("1", "true", "yes")
        return web.json_response(
            [d.model_dump(mode="json") for d in self.control.list(include_closed=include_closed)]
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        binding_id = request.match_info["binding_id"]
        try:
            descriptor = self.control.get(binding_id)
            status = self.control.status(binding_id)
        except BurrowError as e:
            return _error_response(e)
        return web.json_response(
            {**descriptor.model_dump(mode="json"), **status.model_dump(mode="json")}
        )

    async def _handle_delete(self, request: web.Request) -> web.Response:
        try:
            descriptor = await self.control.delete(request.match_info["binding_id"])
        except BurrowError as e:
            return _error_response(e)
        return web.json_response(descriptor.model_dump(mode="json"))
