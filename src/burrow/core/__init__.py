"""Core."""

from .backoff import compute_delay
from .config import (
    BackoffConfig,
    BurrowConfig,
    ClientConfig,
    HeartbeatConfig,
    ServerConfig,
    SubdomainConfig,
    SyncConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    BurrowError,
    DuplicateSubdomainError,
    InvalidSubdomainError,
    InvalidTargetError,
    NotFoundError,
    RegistrationRejectedError,
    ResourceExhaustedError,
    SyncError,
    TransportError,
    TransportTimeoutError,
)
from .transport import Transport, TransportKind, WebSocketTransport, create_transport

__all__ = [
    # Transport
    "Transport",
    "TransportKind",
    "WebSocketTransport",
    "create_transport",
    # Config
    "ClientConfig",
    "ServerConfig",
    "BurrowConfig",
    "HeartbeatConfig",
    "BackoffConfig",
    "SubdomainConfig",
    "SyncConfig",
    "get_config",
    "clear_config",
    "compute_delay",
    # Errors
    "BurrowError",
    "DuplicateSubdomainError",
    "InvalidSubdomainError",
    "InvalidTargetError",
    "NotFoundError",
    "RegistrationRejectedError",
    "ResourceExhaustedError",
    "SyncError",
    "TransportError",
    "TransportTimeoutError",
]
