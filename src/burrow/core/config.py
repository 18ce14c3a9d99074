"""Configuration types with environment variable support.

All lifecycle timings can be configured via environment variables with the
BURROW_ prefix. Example: BURROW_GRACE_PERIOD=120 keeps a disconnected binding
reclaimable for two minutes.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


_SETTINGS = SettingsConfigDict(
    env_prefix="BURROW_",
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
)


class HeartbeatConfig(BaseSettings):
    """Liveness and expiry timings shared by client and broker."""

    model_config = _SETTINGS

    heartbeat_interval: float = Field(
        default=10.0,
        gt=0,
        description="Interval between client heartbeats (seconds).",
    )
    heartbeat_timeout: float = Field(
        default=5.0,
        gt=0,
        description="How long the client waits for a heartbeat acknowledgment (seconds).",
    )
    heartbeat_miss_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive missed heartbeats before a binding is considered disconnected.",
    )
    grace_period: float = Field(
        default=300.0,
        gt=0,
        description="How long a degraded binding stays reclaimable before it is closed (seconds).",
    )
    sweep_interval: float = Field(
        default=5.0,
        gt=0,
        description="Expiry sweep interval on the broker (seconds).",
    )
    closed_retention: float = Field(
        default=3600.0,
        ge=0,
        description="How long closed binding records are kept for status queries (seconds).",
    )

    @property
    def liveness_window(self) -> float:
        """Silence after which an active binding is marked degraded."""
        return self.heartbeat_interval * self.heartbeat_miss_threshold


class BackoffConfig(BaseSettings):
    """Reconnection backoff for the tunnel client."""

    model_config = _SETTINGS

    backoff_base: float = Field(
        default=1.0,
        gt=0,
        description="Initial reconnection delay (seconds).",
    )
    backoff_cap: float = Field(
        default=60.0,
        gt=0,
        description="Maximum reconnection delay (seconds).",
    )
    backoff_jitter: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Multiplicative jitter factor (0-1). Adds randomness to prevent thundering herd.",
    )
    stability_window: float = Field(
        default=30.0,
        ge=0,
        description="Active time without failure after which the attempt counter resets (seconds).",
    )
    max_rejections: int = Field(
        default=5,
        ge=0,
        description="Registration rejections tolerated before the client gives up.",
    )


class SubdomainConfig(BaseSettings):
    """Subdomain validation and generation rules."""

    model_config = _SETTINGS

    subdomain_charset: str = Field(
        default="abcdefghijklmnopqrstuvwxyz0123456789-",
        description="Characters allowed in a subdomain label.",
    )
    subdomain_min_length: int = Field(default=3, ge=1, le=63)
    subdomain_max_length: int = Field(default=63, ge=1, le=63)
    generated_length: int = Field(
        default=8,
        ge=1,
        le=63,
        description="Length of auto-generated subdomains.",
    )
    max_generate_attempts: int = Field(
        default=10,
        ge=1,
        description="Collision retries when generating a subdomain.",
    )


class SyncConfig(BaseSettings):
    """Routing synchronizer retry policy."""

    model_config = _SETTINGS

    sync_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Push attempts before a route is marked out of sync.",
    )
    sync_backoff_base: float = Field(default=0.5, gt=0)
    sync_backoff_cap: float = Field(default=10.0, gt=0)
    sync_resync_interval: float = Field(
        default=30.0,
        gt=0,
        description="Interval for re-attempting out-of-sync routes (seconds).",
    )
    route_upstream: Literal["target", "endpoint"] = Field(
        default="target",
        description="Whether routes point at the client's local target or the broker endpoint.",
    )


class ClientConfig(BaseModel):
    """Configuration for one tunnel client."""

    server_addr: str = "localhost:4443"
    local_port: int = 8080
    local_host: str = "localhost"
    subdomain: str | None = None
    binding_id: str | None = None
    use_tls: bool = True
    verify_tls: bool = True
    connect_timeout: float = 10.0


class ServerConfig(BaseModel):
    """Broker configuration."""

    control_bind: str = "0.0.0.0:4443"
    base_domain: str = "burrow.localhost"
    cert_path: str | None = None
    key_path: str | None = None
    max_bindings: int = Field(
        default=10000,
        description="Maximum concurrent non-closed bindings.",
    )
    endpoint_host: str = Field(
        default="127.0.0.1",
        description="Host part of broker-allocated remote endpoints.",
    )
    endpoint_port_min: int = Field(default=10000, ge=1, le=65535)
    endpoint_port_max: int = Field(default=19999, ge=1, le=65535)
    proxy_backend: Literal["memory", "caddy"] = Field(
        default="memory",
        description="Reverse proxy the routing synchronizer pushes to.",
    )
    proxy_admin_url: str = Field(
        default="http://localhost:2019",
        description="Admin API base URL of the reverse proxy.",
    )
    proxy_server_name: str = Field(
        default="srv0",
        description="Name of the proxy's HTTP server that receives tunnel routes.",
    )
    proxy_timeout: float = Field(default=5.0, gt=0)


class BurrowConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.heartbeat.grace_period)
        print(config.backoff.backoff_cap)
    """

    model_config = _SETTINGS

    @property
    def heartbeat(self) -> HeartbeatConfig:
        """Get heartbeat and expiry configuration."""
        return HeartbeatConfig()

    @property
    def backoff(self) -> BackoffConfig:
        """Get reconnection backoff configuration."""
        return BackoffConfig()

    @property
    def subdomains(self) -> SubdomainConfig:
        """Get subdomain configuration."""
        return SubdomainConfig()

    @property
    def sync(self) -> SyncConfig:
        """Get routing synchronizer configuration."""
        return SyncConfig()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "heartbeat": self.heartbeat.model_dump(),
            "backoff": self.backoff.model_dump(),
            "subdomains": self.subdomains.model_dump(),
            "sync": self.sync.model_dump(),
        }

    def to_env_dict(self) -> dict[str, str]:
        """Export current configuration as environment variable dictionary."""
        result = {}
        for section in self.to_display_dict().values():
            for key, value in section.items():
                if isinstance(value, bool):
                    value = str(value).lower()
                result[f"BURROW_{key.upper()}"] = str(value)
        return result


_config: BurrowConfig | None = None


def get_config() -> BurrowConfig:
    """Get the global configuration instance.

    Returns a cached instance of BurrowConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = BurrowConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
