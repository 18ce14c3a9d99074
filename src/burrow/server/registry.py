"""Broker-side registry of tunnel bindings.

The registry is the only owner of binding lifecycle. Every mutation of a
binding happens under that binding's lock, so operations on one binding are
strictly serialized while distinct bindings proceed independently. The
subdomain and endpoint indexes are guarded by a separate, short-lived lock;
lock order is always binding lock first, index lock second.

Lifecycle::

    PENDING --heartbeat--> ACTIVE --disconnect/missed heartbeats--> DEGRADED
       |                     |  ^                                      |
       |                     |  +------------heartbeat-----------------+
       +---------------------+---------------> CLOSED <----grace elapsed
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

import structlog

from burrow.core.config import HeartbeatConfig, ServerConfig, SubdomainConfig, get_config
from burrow.core.exceptions import (
    DuplicateSubdomainError,
    InvalidSubdomainError,
    InvalidTargetError,
    NotFoundError,
    ResourceExhaustedError,
)
from burrow.observability.metrics import BINDINGS, EXPIRATIONS, HEARTBEATS, REGISTRATIONS

logger = structlog.get_logger()

_HOSTNAME_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class BindingStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"


_TRANSITIONS: dict[BindingStatus, frozenset[BindingStatus]] = {
    BindingStatus.PENDING: frozenset({BindingStatus.ACTIVE, BindingStatus.CLOSED}),
    BindingStatus.ACTIVE: frozenset({BindingStatus.DEGRADED, BindingStatus.CLOSED}),
    BindingStatus.DEGRADED: frozenset({BindingStatus.ACTIVE, BindingStatus.CLOSED}),
    BindingStatus.CLOSED: frozenset(),
}


class BindingEventKind(Enum):
    ACTIVATED = "activated"
    RESTORED = "restored"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class LocalTarget:
    """Address of the service the client exposes."""

    host: str
    port: int

    @classmethod
    def parse(cls, host: str, port: Any) -> LocalTarget:
        """Validate and build a target, raising InvalidTargetError."""
        if isinstance(port, bool) or not isinstance(port, int):
            raise InvalidTargetError(f"Port must be an integer, got {port!r}")
        if not 1 <= port <= 65535:
            raise InvalidTargetError(f"Port {port} is out of range (1-65535)")
        if not isinstance(host, str) or not host:
            raise InvalidTargetError("Host must be a non-empty string")
        host = host.strip().lower()
        try:
            ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            if len(host) > 253 or not all(_HOSTNAME_LABEL.match(p) for p in host.split(".")):
                raise InvalidTargetError(f"Invalid host '{host}'") from None
        return cls(host=host, port=port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class TunnelBinding:
    """Mapping from a public subdomain to a local target."""

    id: str
    subdomain: str
    local_target: LocalTarget
    remote_endpoint: str
    status: BindingStatus = BindingStatus.PENDING
    created_at: datetime = field(default_factory=_utc_now)
    last_heartbeat_at: datetime | None = None
    name: str | None = None
    session_id: str | None = None
    attached_at: datetime | None = None
    degraded_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    def snapshot(self) -> TunnelBinding:
        return replace(self)

    @property
    def is_live(self) -> bool:
        return self.status is not BindingStatus.CLOSED


@dataclass
class Session:
    """One live connection of a client, bound to exactly one binding."""

    id: str
    binding_id: str
    reconnect_attempt: int = 0
    handle: Any = field(default=None, repr=False, compare=False)
    connected_at: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class BindingEvent:
    kind: BindingEventKind
    binding: TunnelBinding


class BindingStore(Protocol):
    """Persistence boundary for binding records."""

    async def put(self, binding: TunnelBinding) -> None: ...

    async def delete(self, binding_id: str) -> None: ...

    async def load_all(self) -> list[TunnelBinding]: ...


class InMemoryBindingStore:
    """Process-local store; bindings do not survive a broker restart."""

    def __init__(self) -> None:
        self._records: dict[str, TunnelBinding] = {}

    async def put(self, binding: TunnelBinding) -> None:
        self._records[binding.id] = binding.snapshot()

    async def delete(self, binding_id: str) -> None:
        self._records.pop(binding_id, None)

    async def load_all(self) -> list[TunnelBinding]:
        return [b.snapshot() for b in self._records.values()]


class SessionRegistry:
    """Authoritative, concurrency-safe table of tunnel bindings."""

    def __init__(
        self,
        server_config: ServerConfig | None = None,
        heartbeat_config: HeartbeatConfig | None = None,
        subdomain_config: SubdomainConfig | None = None,
        store: BindingStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        config = get_config()
        self.server_config = server_config or ServerConfig()
        self.heartbeat_config = heartbeat_config or config.heartbeat
        self.subdomain_config = subdomain_config or config.subdomains
        self._store: BindingStore = store or InMemoryBindingStore()
        self._clock = clock

        self._bindings: dict[str, TunnelBinding] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sessions: dict[str, Session] = {}
        self._by_subdomain: dict[str, str] = {}
        self._by_port: dict[int, str] = {}
        self._index_lock = asyncio.Lock()
        self._next_port = self.server_config.endpoint_port_min

        self._subscribers: list[asyncio.Queue[BindingEvent]] = []
        self._sweep_task: asyncio.Task[None] | None = None

        alphabet = "".join(c for c in self.subdomain_config.subdomain_charset if c.isalnum())
        if not alphabet:
            raise ValueError("subdomain_charset must contain at least one alphanumeric character")
        self._generator_alphabet = alphabet.lower()

    # Lifecycle of the sweep task

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Registry started",
                grace_period=self.heartbeat_config.grace_period,
                sweep_interval=self.heartbeat_config.sweep_interval,
            )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        """Periodically expire stale bindings."""
        while True:
            await asyncio.sleep(self.heartbeat_config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Sweep error", error=str(e))

    # Events

    def subscribe(self) -> asyncio.Queue[BindingEvent]:
        queue: asyncio.Queue[BindingEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[BindingEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, kind: BindingEventKind, binding: TunnelBinding) -> None:
        event = BindingEvent(kind=kind, binding=binding.snapshot())
        for queue in self._subscribers:
            queue.put_nowait(event)

    # Validation and allocation

    def normalize_subdomain(self, subdomain: str) -> str:
        """Lowercase and validate a requested subdomain label."""
        cfg = self.subdomain_config
        if not isinstance(subdomain, str):
            raise InvalidSubdomainError(repr(subdomain), "must be a string")
        label = subdomain.strip().lower()
        if not cfg.subdomain_min_length <= len(label) <= cfg.subdomain_max_length:
            raise InvalidSubdomainError(
                subdomain,
                f"length must be between {cfg.subdomain_min_length} and {cfg.subdomain_max_length}",
            )
        charset = cfg.subdomain_charset.lower()
        if any(c not in charset for c in label):
            raise InvalidSubdomainError(subdomain, "contains disallowed characters")
        if label.startswith("-") or label.endswith("-"):
            raise InvalidSubdomainError(subdomain, "must not start or end with a hyphen")
        return label

    def _generate_subdomain(self) -> str:
        cfg = self.subdomain_config
        length = max(cfg.generated_length, cfg.subdomain_min_length)
        for _ in range(cfg.max_generate_attempts):
            label = "".join(secrets.choice(self._generator_alphabet) for _ in range(length))
            if label not in self._by_subdomain:
                return label
        raise ResourceExhaustedError(
            f"Could not generate a free subdomain after {cfg.max_generate_attempts} attempts"
        )

    def _allocate_port(self) -> int:
        low = self.server_config.endpoint_port_min
        high = self.server_config.endpoint_port_max
        span = high - low + 1
        for _ in range(span):
            port = self._next_port
            self._next_port = low if port >= high else port + 1
            if port not in self._by_port:
                return port
        raise ResourceExhaustedError("No free endpoint ports")

    def _transition(self, binding: TunnelBinding, status: BindingStatus) -> None:
        if status not in _TRANSITIONS[binding.status]:
            raise RuntimeError(f"Illegal transition {binding.status.value} -> {status.value}")
        BINDINGS.labels(status=binding.status.value).dec()
        BINDINGS.labels(status=status.value).inc()
        logger.debug(
            "Binding transition",
            binding_id=binding.id,
            subdomain=binding.subdomain,
            old=binding.status.value,
            new=status.value,
        )
        binding.status = status

    def _attach_session(
        self, binding: TunnelBinding, handle: Any, reconnect_attempt: int
    ) -> Session:
        if binding.session_id:
            self._sessions.pop(binding.session_id, None)
        session = Session(
            id=uuid4().hex,
            binding_id=binding.id,
            reconnect_attempt=reconnect_attempt,
            handle=handle,
            connected_at=self._clock(),
        )
        self._sessions[session.id] = session
        binding.session_id = session.id
        binding.attached_at = session.connected_at
        return session

    # Registration

    async def register(
        self,
        subdomain: str | None,
        target: LocalTarget,
        *,
        resume_id: str | None = None,
        handle: Any = None,
        reconnect_attempt: int = 0,
        name: str | None = None,
    ) -> tuple[TunnelBinding, Session]:
        """Bind a subdomain for a connected client.

        A ``resume_id`` naming a live binding with the same subdomain and
        target re-attaches the client to that binding; the status is left
        as-is until the next heartbeat. A ``resume_id`` naming a closed or
        unknown binding is ignored and a new binding is created.

        Raises:
            InvalidTargetError, InvalidSubdomainError, DuplicateSubdomainError,
            ResourceExhaustedError
        """
        if resume_id:
            resumed = await self._resume(resume_id, subdomain, target, handle, reconnect_attempt)
            if resumed is not None:
                REGISTRATIONS.labels(result="resumed").inc()
                return resumed

        binding, session = await self._create(
            subdomain, target, name=name, handle=handle, reconnect_attempt=reconnect_attempt, attach=True
        )
        assert session is not None
        return binding, session

    async def reserve(
        self, subdomain: str | None, target: LocalTarget, name: str | None = None
    ) -> TunnelBinding:
        """Create a pending binding with no session, to be claimed by a client later."""
        binding, _ = await self._create(subdomain, target, name=name, attach=False)
        return binding

    async def _create(
        self,
        subdomain: str | None,
        target: LocalTarget,
        *,
        name: str | None,
        handle: Any = None,
        reconnect_attempt: int = 0,
        attach: bool,
    ) -> tuple[TunnelBinding, Session | None]:
        if not isinstance(target, LocalTarget):
            raise InvalidTargetError(f"Malformed local target: {target!r}")
        try:
            async with self._index_lock:
                if subdomain:
                    label = self.normalize_subdomain(subdomain)
                    if label in self._by_subdomain:
                        raise DuplicateSubdomainError(label)
                else:
                    label = self._generate_subdomain()
                if len(self._by_subdomain) >= self.server_config.max_bindings:
                    raise ResourceExhaustedError("Broker is at binding capacity")
                port = self._allocate_port()

                binding = TunnelBinding(
                    id=uuid4().hex,
                    subdomain=label,
                    local_target=target,
                    remote_endpoint=f"{self.server_config.endpoint_host}:{port}",
                    created_at=self._clock(),
                    name=name,
                )
                self._bindings[binding.id] = binding
                self._locks[binding.id] = asyncio.Lock()
                self._by_subdomain[label] = binding.id
                self._by_port[port] = binding.id
                session = self._attach_session(binding, handle, reconnect_attempt) if attach else None
                BINDINGS.labels(status=BindingStatus.PENDING.value).inc()
        except (DuplicateSubdomainError, InvalidSubdomainError, ResourceExhaustedError) as e:
            REGISTRATIONS.labels(result=e.code).inc()
            raise

        async with self._locks[binding.id]:
            await self._store.put(binding)
            snapshot = binding.snapshot()

        REGISTRATIONS.labels(result="ok").inc()
        logger.info(
            "Binding registered",
            binding_id=binding.id,
            subdomain=binding.subdomain,
            target=str(target),
            remote_endpoint=binding.remote_endpoint,
            session_id=session.id if session else None,
        )
        return snapshot, session

    async def _resume(
        self,
        binding_id: str,
        subdomain: str | None,
        target: LocalTarget,
        handle: Any,
        reconnect_attempt: int,
    ) -> tuple[TunnelBinding, Session] | None:
        binding = self._bindings.get(binding_id)
        lock = self._locks.get(binding_id)
        if binding is None or lock is None:
            return None
        async with lock:
            if binding.status is BindingStatus.CLOSED:
                logger.info("Resume of closed binding ignored", binding_id=binding_id)
                return None
            if subdomain and subdomain.strip().lower() != binding.subdomain:
                return None
            if target != binding.local_target:
                logger.warning(
                    "Resume with different target ignored",
                    binding_id=binding_id,
                    expected=str(binding.local_target),
                    got=str(target),
                )
                return None
            session = self._attach_session(binding, handle, reconnect_attempt)
            await self._store.put(binding)
            snapshot = binding.snapshot()

        logger.info(
            "Binding resumed",
            binding_id=binding_id,
            subdomain=binding.subdomain,
            status=snapshot.status.value,
            attempt=reconnect_attempt,
        )
        return snapshot, session

    # Liveness

    def _live_binding_for_session(self, session_id: str) -> tuple[TunnelBinding, asyncio.Lock]:
        session = self._sessions.get(session_id)
        binding = self._bindings.get(session.binding_id) if session else None
        lock = self._locks.get(binding.id) if binding else None
        if session is None or binding is None or lock is None:
            raise NotFoundError("Session", session_id)
        return binding, lock

    async def heartbeat(self, session_id: str) -> TunnelBinding:
        """Record liveness for a session's binding.

        Raises:
            NotFoundError: unknown or superseded session, or closed binding.
        """
        try:
            binding, lock = self._live_binding_for_session(session_id)
        except NotFoundError:
            HEARTBEATS.labels(result="not_found").inc()
            raise

        event: BindingEventKind | None = None
        async with lock:
            if binding.status is BindingStatus.CLOSED or binding.session_id != session_id:
                HEARTBEATS.labels(result="not_found").inc()
                raise NotFoundError("Session", session_id)
            binding.last_heartbeat_at = self._clock()
            if binding.status is BindingStatus.PENDING:
                self._transition(binding, BindingStatus.ACTIVE)
                event = BindingEventKind.ACTIVATED
            elif binding.status is BindingStatus.DEGRADED:
                self._transition(binding, BindingStatus.ACTIVE)
                binding.degraded_at = None
                event = BindingEventKind.RESTORED
            await self._store.put(binding)
            if event is not None:
                self._publish(event, binding)
            snapshot = binding.snapshot()

        HEARTBEATS.labels(result="ok").inc()
        if event is not None:
            logger.info(
                "Binding active",
                binding_id=binding.id,
                subdomain=binding.subdomain,
                restored=event is BindingEventKind.RESTORED,
            )
        return snapshot

    async def mark_disconnected(self, session_id: str) -> TunnelBinding | None:
        """Detach a dropped session; degrade its binding if it was active.

        Returns None for unknown or superseded sessions.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        binding = self._bindings.get(session.binding_id)
        lock = self._locks.get(session.binding_id)
        if binding is None or lock is None:
            self._sessions.pop(session_id, None)
            return None

        async with lock:
            self._sessions.pop(session_id, None)
            if binding.session_id != session_id:
                return None
            binding.session_id = None
            now = self._clock()
            if binding.status is BindingStatus.ACTIVE:
                self._transition(binding, BindingStatus.DEGRADED)
                binding.degraded_at = now
                self._publish(BindingEventKind.DEGRADED, binding)
                logger.info(
                    "Binding degraded",
                    binding_id=binding.id,
                    subdomain=binding.subdomain,
                    grace_period=self.heartbeat_config.grace_period,
                )
            elif binding.status is BindingStatus.PENDING:
                binding.attached_at = now
            await self._store.put(binding)
            return binding.snapshot()

    # Teardown

    async def close(self, binding_id: str, reason: str = "deleted") -> TunnelBinding:
        """Close a binding and release its subdomain and endpoint.

        Idempotent for already-closed bindings.

        Raises:
            NotFoundError: unknown binding id.
        """
        binding = self._bindings.get(binding_id)
        lock = self._locks.get(binding_id)
        if binding is None or lock is None:
            raise NotFoundError("Binding", binding_id)
        async with lock:
            if binding.status is BindingStatus.CLOSED:
                return binding.snapshot()
            await self._close_locked(binding, reason)
            return binding.snapshot()

    async def close_session(self, session_id: str) -> TunnelBinding:
        """Client-initiated graceful teardown."""
        binding, _ = self._live_binding_for_session(session_id)
        return await self.close(binding.id, reason="client_closed")

    async def _close_locked(self, binding: TunnelBinding, reason: str) -> None:
        self._transition(binding, BindingStatus.CLOSED)
        binding.closed_at = self._clock()
        binding.close_reason = reason
        if binding.session_id:
            self._sessions.pop(binding.session_id, None)
        async with self._index_lock:
            if self._by_subdomain.get(binding.subdomain) == binding.id:
                del self._by_subdomain[binding.subdomain]
            port = int(binding.remote_endpoint.rsplit(":", 1)[1])
            if self._by_port.get(port) == binding.id:
                del self._by_port[port]
        await self._store.put(binding)
        self._publish(BindingEventKind.CLOSED, binding)
        logger.info(
            "Binding closed",
            binding_id=binding.id,
            subdomain=binding.subdomain,
            reason=reason,
        )

    # Expiry

    async def sweep(self) -> list[tuple[str, BindingStatus]]:
        """Expire stale bindings.

        Candidates are taken from a snapshot, then each one is re-checked
        under its lock right before the transition, so a heartbeat that lands
        during the scan wins.

        Returns the (binding_id, new_status) pairs that were applied.
        """
        hb = self.heartbeat_config
        candidates = [
            b.id
            for b in list(self._bindings.values())
            if self._expiry_target(b, self._clock(), hb) is not None
        ]
        applied: list[tuple[str, BindingStatus]] = []
        for binding_id in candidates:
            binding = self._bindings.get(binding_id)
            lock = self._locks.get(binding_id)
            if binding is None or lock is None:
                continue
            async with lock:
                target = self._expiry_target(binding, self._clock(), hb)
                if target is None:
                    continue
                if target is BindingStatus.DEGRADED:
                    self._transition(binding, BindingStatus.DEGRADED)
                    binding.degraded_at = self._clock()
                    await self._store.put(binding)
                    self._publish(BindingEventKind.DEGRADED, binding)
                    EXPIRATIONS.labels(transition="degraded").inc()
                    logger.info(
                        "Binding missed heartbeats",
                        binding_id=binding.id,
                        subdomain=binding.subdomain,
                        window=hb.liveness_window,
                    )
                elif binding.status is BindingStatus.CLOSED:
                    self._bindings.pop(binding_id, None)
                    self._locks.pop(binding_id, None)
                    BINDINGS.labels(status=BindingStatus.CLOSED.value).dec()
                    await self._store.delete(binding_id)
                    logger.debug("Closed binding pruned", binding_id=binding_id)
                else:
                    await self._close_locked(binding, "expired")
                    EXPIRATIONS.labels(transition="closed").inc()
                applied.append((binding_id, target))
        return applied

    @staticmethod
    def _expiry_target(
        binding: TunnelBinding, now: datetime, hb: HeartbeatConfig
    ) -> BindingStatus | None:
        def elapsed(since: datetime | None) -> float:
            return (now - since).total_seconds() if since else 0.0

        if binding.status is BindingStatus.ACTIVE:
            if elapsed(binding.last_heartbeat_at) > hb.liveness_window:
                return BindingStatus.DEGRADED
        elif binding.status is BindingStatus.DEGRADED:
            if elapsed(binding.degraded_at) > hb.grace_period:
                return BindingStatus.CLOSED
        elif binding.status is BindingStatus.PENDING:
            if elapsed(binding.attached_at or binding.created_at) > hb.grace_period:
                return BindingStatus.CLOSED
        elif elapsed(binding.closed_at) > hb.closed_retention:
            # Closed records past retention are pruned; reported as CLOSED.
            return BindingStatus.CLOSED
        return None

    # Read-only views

    def get(self, binding_id: str) -> TunnelBinding:
        binding = self._bindings.get(binding_id)
        if binding is None:
            raise NotFoundError("Binding", binding_id)
        return binding.snapshot()

    def get_by_subdomain(self, subdomain: str) -> TunnelBinding | None:
        binding_id = self._by_subdomain.get(subdomain.lower())
        return self._bindings[binding_id].snapshot() if binding_id else None

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self, include_closed: bool = False) -> list[TunnelBinding]:
        return [
            b.snapshot()
            for b in self._bindings.values()
            if include_closed or b.status is not BindingStatus.CLOSED
        ]

    def get_stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in BindingStatus}
        for binding in self._bindings.values():
            counts[binding.status.value] += 1
        return {
            "bindings": counts,
            "live": len(self._by_subdomain),
            "max_bindings": self.server_config.max_bindings,
            "sessions": len(self._sessions),
            "endpoints_in_use": len(self._by_port),
        }
