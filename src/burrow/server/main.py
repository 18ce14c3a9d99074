"""Burrow broker - Main entry point."""

import asyncio
import logging

import click
import structlog
from rich.console import Console

from burrow.core.config import ServerConfig, flatten_config, load_config_from_file
from burrow.server.broker import BrokerServer

console = Console()

BANNER = """
 ___  _  _  ___  ___   ___  _    _
| _ )| || || _ \\| _ \\ / _ \\| |  | |
| _ \\| __ ||   /|   /| (_) | |/\\| |
|___/ \\__/ |_|_\\|_|_\\ \\___/|__/\\__|
             BROKER
"""


@click.command()
@click.option("--domain", "-d", default=None, help="Base domain for tunnels")
@click.option("--control-bind", default=None, help="Control plane bind address (host:port)")
@click.option("--cert", envvar="BURROW_CERT_PATH", help="TLS certificate path")
@click.option("--key", envvar="BURROW_KEY_PATH", help="TLS private key path")
@click.option("--max-bindings", type=int, default=None, help="Maximum concurrent bindings")
@click.option(
    "--proxy-backend",
    type=click.Choice(["memory", "caddy"]),
    default=None,
    help="Reverse proxy that receives routes (default: memory)",
)
@click.option(
    "--proxy-admin-url",
    envvar="BURROW_PROXY_ADMIN_URL",
    default=None,
    help="Reverse proxy admin API URL",
)
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file with a [server] section",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info)",
)
def main(
    domain: str | None,
    control_bind: str | None,
    cert: str | None,
    key: str | None,
    max_bindings: int | None,
    proxy_backend: str | None,
    proxy_admin_url: str | None,
    config_file: str | None,
    log_level: str,
):
    """Run the Burrow broker."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
    )
    console.print(BANNER, style="cyan")

    settings: dict = {}
    if config_file:
        try:
            raw = load_config_from_file(config_file)
        except (FileNotFoundError, ValueError) as e:
            raise click.ClickException(f"Failed to load config: {e}") from e
        section = raw.get("server", raw)
        settings = {k: v for k, v in flatten_config(section).items() if k in ServerConfig.model_fields}

    overrides = {
        "base_domain": domain,
        "control_bind": control_bind,
        "cert_path": cert,
        "key_path": key,
        "max_bindings": max_bindings,
        "proxy_backend": proxy_backend,
        "proxy_admin_url": proxy_admin_url,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    config = ServerConfig(**settings)

    console.print(f"Starting broker for {config.base_domain}...", style="yellow")
    console.print(f"Control: {config.control_bind}", style="dim")
    console.print(f"Max bindings: {config.max_bindings}", style="dim")
    if config.proxy_backend == "caddy":
        console.print(f"Routes: caddy at {config.proxy_admin_url}", style="dim")
    else:
        console.print("Routes: in-memory (no external proxy)", style="dim")

    asyncio.run(run_server(config))


async def run_server(config: ServerConfig):
    """Run the broker until interrupted."""
    server = BrokerServer(config)

    try:
        await server.start()
        console.print("Broker started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
