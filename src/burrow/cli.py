"""Burrow CLI - Command line interface."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any

import click
import httpx
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_shutdown_requested = False

BANNER = """
 ___  _  _  ___  ___   ___  _    _
| _ )| || || _ \\| _ \\ / _ \\| |  | |
| _ \\| __ ||   /|   /| (_) | |/\\| |
|___/ \\__/ |_|_\\|_|_\\ \\___/|__/\\__|
     Stable public names for local services
"""

DEFAULT_SERVER = "localhost:4443"


def _configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
    )


def _base_url(server: str, tls: bool) -> str:
    scheme = "https" if tls else "http"
    if "://" in server:
        return server.rstrip("/")
    if ":" not in server:
        server = f"{server}:4443"
    return f"{scheme}://{server}"


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--port", "-p", type=int, help="Local port to expose")
@click.option("--host", "local_host", default=None, help="Local host to expose (default: localhost)")
@click.option("--subdomain", "-s", help="Request specific subdomain")
@click.option("--binding-id", envvar="BURROW_BINDING_ID", help="Claim a binding created via the control API")
@click.option("--server", default=None, envvar="BURROW_SERVER", help="Burrow broker address")
@click.option("--tls/--no-tls", default=True, help="Connect to the broker over TLS")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=10.0,
    help="Connection timeout in seconds (default: 10)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level (default: warning, use --verbose for debug)",
)
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str | None,
    port: int | None,
    local_host: str | None,
    subdomain: str | None,
    binding_id: str | None,
    server: str | None,
    tls: bool,
    insecure: bool,
    timeout: float,
    verbose: bool,
    log_level: str,
):
    """Burrow - stable public names for local services.

    Examples:

        burrow --port 8000

        burrow --port 3000 --subdomain myapp

        burrow --binding-id 3f2a... --port 3000

    Manage bindings on a broker:

        burrow tunnels list

        burrow tunnels create --port 3000 --subdomain app

    Use 'burrow COMMAND --help' for more info on specific commands.
    """
    file_config: dict = {}
    if config_file:
        from burrow.core.config import flatten_config, load_config_from_file
        try:
            file_config = flatten_config(load_config_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    if server is None:
        server = file_config.get("server", DEFAULT_SERVER)
    if port is None and "port" in file_config:
        port = int(file_config["port"])
    if local_host is None:
        local_host = file_config.get("host", "localhost")
    if subdomain is None and "subdomain" in file_config:
        subdomain = file_config["subdomain"]
    if binding_id is None and "binding_id" in file_config:
        binding_id = file_config["binding_id"]

    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    ctx.obj["tls"] = tls
    ctx.obj["verify"] = not insecure

    if ctx.invoked_subcommand is None:
        if port is None:
            console.print(BANNER, style="cyan")
            console.print("Usage: burrow --port 8000", style="yellow")
            console.print("       burrow --port 3000 --subdomain myapp", style="yellow")
            console.print("\nCommands:", style="bold")
            console.print("  burrow status    Show broker status", style="dim")
            console.print("  burrow tunnels   Manage bindings", style="dim")
            console.print("  burrow config    Show configuration", style="dim")
            console.print("  burrow version   Show version information", style="dim")
            return

        from burrow.core.config import ClientConfig

        client_config = ClientConfig(
            server_addr=server,
            local_port=port,
            local_host=local_host,
            subdomain=subdomain,
            binding_id=binding_id,
            use_tls=tls,
            verify_tls=not insecure,
            connect_timeout=timeout,
        )
        _run_tunnel_with_signal_handling(client_config, "debug" if verbose else log_level)


def _run_tunnel_with_signal_handling(config: Any, log_level: str) -> None:
    """Run tunnel with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    main_task = loop.create_task(start_tunnel(config, log_level))

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        exit_code = loop.run_until_complete(main_task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        exit_code = 0
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
    if exit_code:
        sys.exit(exit_code)


async def start_tunnel(config: Any, log_level: str = "warning") -> int:
    """Start a tunnel and keep it alive until stopped.

    Returns a process exit code: 0 after a clean stop, 1 when the client
    gave up (permanent rejection or binding closed by the broker).
    """
    _configure_logging(log_level)

    from burrow.client.tunnel import TunnelClient, TunnelState

    console.print(BANNER, style="cyan")
    console.print(f"Starting tunnel for {config.local_host}:{config.local_port}...", style="yellow")

    client = TunnelClient(config)

    def on_state(state: TunnelState) -> None:
        if state is TunnelState.ACTIVE:
            console.print(
                Panel(
                    f"[green]Tunnel active![/green]\n\n"
                    f"[bold]Public URL:[/bold] [cyan]{client.url}[/cyan]\n"
                    f"[bold]Binding:[/bold] {client.binding_id}\n"
                    f"[bold]Forwarding:[/bold] {config.local_host}:{config.local_port}",
                    title="Burrow",
                    border_style="green",
                )
            )
        elif state is TunnelState.BACKOFF:
            console.print(
                f"[yellow]Connection lost, retrying in {client.last_delay or 0:.1f}s "
                f"(attempt {client.reconnect_attempt})[/yellow]"
            )

    client.add_state_hook(on_state)

    try:
        await client.run()
    except asyncio.CancelledError:
        await client.stop()
        console.print("[green]Tunnel closed.[/green]")
        return 0

    from burrow.core.exceptions import format_error_for_user

    if client.last_error is not None:
        console.print(
            Panel(
                f"[red]{format_error_for_user(client.last_error)}[/red]",
                title=f"Error: {client.last_error.code}",
                border_style="red",
            )
        )
        return 1
    return 0


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, json_output: bool):
    """Show broker health and binding counts."""
    base_url = _base_url(ctx.obj["server"], ctx.obj["tls"])
    try:
        with httpx.Client(verify=ctx.obj["verify"], timeout=5.0) as client:
            health = client.get(f"{base_url}/health").json()
            stats = client.get(f"{base_url}/stats").json()
    except httpx.HTTPError as e:
        console.print(f"[red]Error connecting to broker:[/red] {e}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps({"health": health, "stats": stats}, indent=2))
        return

    registry = stats.get("registry", {})
    routing = stats.get("routing", {})
    console.print(f"\n[bold]Broker:[/bold] {ctx.obj['server']}")
    console.print(f"[bold]Status:[/bold] [green]{health.get('status', 'unknown')}[/green]")
    console.print(f"[bold]Bindings:[/bold] {registry.get('live', 0)}/{registry.get('max_bindings', 'N/A')}")
    for key, count in registry.get("bindings", {}).items():
        console.print(f"  {key}: {count}", style="dim")
    console.print(f"[bold]Connections:[/bold] {stats.get('connections', 0)}")
    console.print(f"[bold]Routes out of sync:[/bold] {routing.get('out_of_sync', 0)}")


@main.command()
def version():
    """Show version information."""
    from burrow import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def tunnels():
    """Manage bindings through the broker's control API.

    Examples:

        burrow tunnels list

        burrow tunnels create --port 3000 --subdomain app --name web

        burrow tunnels status <id>

        burrow tunnels delete <id>
    """
    pass


def _api_request(ctx: click.Context, method: str, path: str, **kwargs: Any) -> Any:
    base_url = _base_url(ctx.obj["server"], ctx.obj["tls"])
    try:
        with httpx.Client(base_url=base_url, verify=ctx.obj["verify"], timeout=5.0) as client:
            resp = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[red]Error connecting to broker:[/red] {e}")
        sys.exit(1)

    if resp.status_code >= 400:
        try:
            body = resp.json()
        except ValueError:
            body = {"error": "http_error", "message": resp.text}
        console.print(
            f"[red]Error ({body.get('error', resp.status_code)}):[/red] {body.get('message', '')}"
        )
        sys.exit(1)
    return resp.json()


@tunnels.command("list")
@click.option("--all", "include_closed", is_flag=True, help="Include closed bindings")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def tunnels_list(ctx: click.Context, include_closed: bool, json_output: bool):
    """List bindings."""
    params = {"all": "1"} if include_closed else {}
    bindings = _api_request(ctx, "GET", "/api/tunnels", params=params)

    if json_output:
        click.echo(json.dumps(bindings, indent=2))
        return

    if not bindings:
        console.print("[dim]No bindings[/dim]")
        return

    table = Table(title="Bindings")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Subdomain", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Created")
    status_styles = {"active": "green", "pending": "yellow", "degraded": "red", "closed": "dim"}
    for b in bindings:
        style = status_styles.get(b["status"], "")
        table.add_row(
            b["id"][:8] + "...",
            b.get("name") or "",
            b["subdomain"],
            b["local_target"],
            f"[{style}]{b['status']}[/{style}]" if style else b["status"],
            (b.get("created_at") or "")[:19],
        )
    console.print(table)


@tunnels.command("create")
@click.option("--port", "-p", "local_port", type=int, required=True, help="Local port to expose")
@click.option("--host", "local_host", default="localhost", help="Local host (default: localhost)")
@click.option("--subdomain", "-s", help="Requested subdomain")
@click.option("--name", "-n", help="Display name")
@click.pass_context
def tunnels_create(
    ctx: click.Context, local_port: int, local_host: str, subdomain: str | None, name: str | None
):
    """Reserve a binding a tunnel client can claim with --binding-id."""
    payload = {"name": name, "local_port": local_port, "local_host": local_host, "subdomain": subdomain}
    binding = _api_request(ctx, "POST", "/api/tunnels", json=payload)
    console.print(f"[green]Created binding[/green] {binding['id']}")
    console.print(f"[bold]URL:[/bold] [cyan]{binding['url']}[/cyan]")
    console.print(f"Claim it with: burrow --binding-id {binding['id']} --port {local_port}", style="dim")


@tunnels.command("delete")
@click.argument("binding_id")
@click.pass_context
def tunnels_delete(ctx: click.Context, binding_id: str):
    """Close a binding and remove its route."""
    binding = _api_request(ctx, "DELETE", f"/api/tunnels/{binding_id}")
    console.print(f"[green]Closed binding[/green] {binding['id']} ({binding['subdomain']})")


@tunnels.command("status")
@click.argument("binding_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def tunnels_status(ctx: click.Context, binding_id: str, json_output: bool):
    """Show a binding's lifecycle and routing status."""
    info = _api_request(ctx, "GET", f"/api/tunnels/{binding_id}")

    if json_output:
        click.echo(json.dumps(info, indent=2))
        return

    routing = "[green]in sync[/green]" if info.get("routing_in_sync") else f"[yellow]{info.get('routing_status')}[/yellow]"
    lines = [
        f"[bold]Subdomain:[/bold] {info['subdomain']}",
        f"[bold]URL:[/bold] [cyan]{info['url']}[/cyan]",
        f"[bold]Target:[/bold] {info['local_target']}",
        f"[bold]Status:[/bold] {info['status']}",
        f"[bold]Routing:[/bold] {routing}",
    ]
    if info.get("routing_error"):
        lines.append(f"[bold]Routing error:[/bold] [red]{info['routing_error']}[/red]")
    if info.get("close_reason"):
        lines.append(f"[bold]Closed:[/bold] {info['close_reason']}")
    console.print(Panel("\n".join(lines), title=info["id"], border_style="cyan"))


@main.group()
def config():
    """View and export configuration settings.

    All settings can be configured via environment variables with the
    BURROW_ prefix. Use these commands to see current values.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (heartbeat, backoff, subdomains, sync)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings."""
    from burrow.core.config import get_config

    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")
        for key, value in settings.items():
            table.add_row(key, str(value), f"BURROW_{key.upper()}")
        console.print(table)
        console.print()


@config.command("export")
@click.option("--shell", type=click.Choice(["bash", "powershell"]), default="bash", help="Shell format")
def config_export(shell: str):
    """Export current configuration as environment variables."""
    from burrow.core.config import get_config

    for key, value in get_config().to_env_dict().items():
        if shell == "bash":
            click.echo(f'export {key}="{value}"')
        else:
            click.echo(f'$env:{key}="{value}"')


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        main()
