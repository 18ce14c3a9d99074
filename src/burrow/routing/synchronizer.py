"""Keeps the reverse proxy's routes consistent with live bindings.

Registry events are turned into per-subdomain desired operations. Each
subdomain has at most one worker; a newer event cancels the running worker
(including any backoff wait) and starts over with the new operation. Failures
only ever affect routing status, never binding lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

import structlog

from burrow.core.backoff import compute_delay
from burrow.core.config import SyncConfig, get_config
from burrow.core.exceptions import SyncError
from burrow.observability.metrics import ROUTE_SYNC, ROUTES_OUT_OF_SYNC
from burrow.routing.proxy import ProxyConfigClient, RoutingEntry
from burrow.server.registry import (
    BindingEvent,
    BindingEventKind,
    SessionRegistry,
    TunnelBinding,
)

logger = structlog.get_logger()


class RoutingStatus(Enum):
    PENDING = "pending"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"


@dataclass
class RoutingState:
    binding_id: str
    subdomain: str
    op: Literal["upsert", "delete"]
    status: RoutingStatus = RoutingStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def in_sync(self) -> bool:
        return self.status is RoutingStatus.SYNCED


@dataclass(frozen=True)
class _RouteOp:
    kind: Literal["upsert", "delete"]
    subdomain: str
    binding_id: str
    entry: RoutingEntry | None = None


class RoutingSynchronizer:
    """Reconciles registry events into proxy upserts and deletes."""

    def __init__(
        self,
        registry: SessionRegistry,
        proxy: ProxyConfigClient,
        base_domain: str,
        config: SyncConfig | None = None,
    ) -> None:
        self.registry = registry
        self.proxy = proxy
        self.base_domain = base_domain.lower()
        self.config = config or get_config().sync

        self._queue: asyncio.Queue[BindingEvent] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._resync_task: asyncio.Task[None] | None = None
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._desired: dict[str, _RouteOp] = {}
        self._states: dict[str, RoutingState] = {}
        self._out_of_sync: dict[str, _RouteOp] = {}

    async def start(self) -> None:
        if self._consumer_task is not None:
            return
        self._queue = self.registry.subscribe()
        self._consumer_task = asyncio.create_task(self._consume())
        self._resync_task = asyncio.create_task(self._resync_loop())
        logger.info("Routing synchronizer started", base_domain=self.base_domain)

    async def stop(self) -> None:
        tasks = [t for t in (self._consumer_task, self._resync_task) if t]
        tasks.extend(self._workers.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()
        self._consumer_task = None
        self._resync_task = None
        if self._queue is not None:
            self.registry.unsubscribe(self._queue)
            self._queue = None

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error("Failed to handle binding event", kind=event.kind.value, error=str(e))

    def entry_for(self, binding: TunnelBinding) -> RoutingEntry:
        """Derive the routing entry for a binding."""
        if self.config.route_upstream == "endpoint":
            upstream = binding.remote_endpoint
        else:
            upstream = str(binding.local_target)
        return RoutingEntry(
            subdomain=binding.subdomain,
            host=f"{binding.subdomain}.{self.base_domain}",
            upstream=upstream,
            binding_id=binding.id,
        )

    def handle_event(self, event: BindingEvent) -> None:
        binding = event.binding
        if event.kind in (BindingEventKind.ACTIVATED, BindingEventKind.RESTORED):
            op = _RouteOp("upsert", binding.subdomain, binding.id, self.entry_for(binding))
        elif event.kind is BindingEventKind.CLOSED:
            op = _RouteOp("delete", binding.subdomain, binding.id)
        else:
            # Degraded bindings keep their route until they close.
            return
        self._schedule(op)

    def _schedule(self, op: _RouteOp) -> None:
        previous = self._desired.get(op.subdomain)
        if previous is not None and previous.binding_id != op.binding_id:
            # The subdomain was reused; the new route replaces the old one.
            self._states.pop(previous.binding_id, None)
        self._desired[op.subdomain] = op
        self._out_of_sync.pop(op.subdomain, None)
        ROUTES_OUT_OF_SYNC.set(len(self._out_of_sync))
        self._states[op.binding_id] = RoutingState(
            binding_id=op.binding_id, subdomain=op.subdomain, op=op.kind
        )

        running = self._workers.get(op.subdomain)
        if running is not None and not running.done():
            # Newer intent wins; this also cancels any pending retry timer.
            running.cancel()
        else:
            running = None
        self._workers[op.subdomain] = asyncio.create_task(self._reconcile(op, running))

    async def _push(self, op: _RouteOp) -> None:
        if op.kind == "upsert":
            assert op.entry is not None
            await self.proxy.upsert(op.entry)
        else:
            await self.proxy.delete(op.subdomain)

    async def _reconcile(self, op: _RouteOp, superseded: asyncio.Task[None] | None = None) -> None:
        state = self._states[op.binding_id]
        try:
            if superseded is not None:
                # Pushes for one subdomain never overlap.
                await asyncio.wait({superseded})
            for attempt in range(self.config.sync_max_attempts):
                state.attempts = attempt + 1
                try:
                    await self._push(op)
                except SyncError as e:
                    state.last_error = e.message
                    state.updated_at = datetime.now(UTC)
                    ROUTE_SYNC.labels(op=op.kind, result="error").inc()
                    logger.warning(
                        "Route sync failed",
                        op=op.kind,
                        subdomain=op.subdomain,
                        attempt=attempt + 1,
                        error=e.message,
                    )
                    if attempt + 1 < self.config.sync_max_attempts:
                        await asyncio.sleep(
                            compute_delay(attempt, self.config.sync_backoff_base, self.config.sync_backoff_cap)
                        )
                    continue

                ROUTE_SYNC.labels(op=op.kind, result="ok").inc()
                state.status = RoutingStatus.SYNCED
                state.last_error = None
                state.updated_at = datetime.now(UTC)
                logger.info("Route synced", op=op.kind, subdomain=op.subdomain, binding_id=op.binding_id)
                if op.kind == "delete" and self._desired.get(op.subdomain) == op:
                    del self._desired[op.subdomain]
                    self._states.pop(op.binding_id, None)
                return

            state.status = RoutingStatus.OUT_OF_SYNC
            self._out_of_sync[op.subdomain] = op
            ROUTES_OUT_OF_SYNC.set(len(self._out_of_sync))
            logger.error(
                "Route out of sync",
                op=op.kind,
                subdomain=op.subdomain,
                attempts=state.attempts,
                error=state.last_error,
            )
        finally:
            if self._workers.get(op.subdomain) is asyncio.current_task():
                del self._workers[op.subdomain]

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sync_resync_interval)
            self.resync()

    def resync(self) -> int:
        """Re-attempt out-of-sync routes whose intent is still current."""
        count = 0
        for subdomain, op in list(self._out_of_sync.items()):
            if self._desired.get(subdomain) != op:
                self._out_of_sync.pop(subdomain, None)
                continue
            running = self._workers.get(subdomain)
            if running is not None and not running.done():
                continue
            logger.info("Retrying out-of-sync route", op=op.kind, subdomain=subdomain)
            self._schedule(op)
            count += 1
        ROUTES_OUT_OF_SYNC.set(len(self._out_of_sync))
        return count

    def routing_state(self, binding_id: str) -> RoutingState | None:
        state = self._states.get(binding_id)
        return replace(state) if state else None

    def is_idle(self) -> bool:
        """True when no push is in flight."""
        return all(task.done() for task in self._workers.values())

    def get_stats(self) -> dict[str, int]:
        return {
            "in_flight": sum(1 for t in self._workers.values() if not t.done()),
            "out_of_sync": len(self._out_of_sync),
            "tracked": len(self._states),
        }
