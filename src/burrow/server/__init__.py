"""Session registry: authoritative tunnel binding state."""

from burrow.server.registry import (
    BindingEvent,
    BindingEventKind,
    BindingStatus,
    BindingStore,
    InMemoryBindingStore,
    LocalTarget,
    Session,
    SessionRegistry,
    TunnelBinding,
)

__all__ = [
    "SessionRegistry",
    "TunnelBinding",
    "Session",
    "LocalTarget",
    "BindingStatus",
    "BindingEvent",
    "BindingEventKind",
    "BindingStore",
    "InMemoryBindingStore",
]
