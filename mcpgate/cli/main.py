"""
mcpgate CLI - Inspect and call MCP tools from the terminal.

Run `mcpgate tools` to list the tools of all enabled services.
Services are configured in .mcpgate/config.yaml.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from mcpgate import __version__
from mcpgate.mcp.client import MCPClient
from mcpgate.mcp.executor import ToolExecutor
from mcpgate.mcp.registry import ToolRegistry
from mcpgate.mcp.schema import ToolCall
from mcpgate.validation.config import Config, ConfigError
from mcpgate.validation.directory import ServiceDirectory

console = Console()


def setup_logging(verbose: bool) -> None:
    """Route mcpgate logs through rich."""
    logger = logging.getLogger("mcpgate")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.handlers.clear()
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)


class Gateway:
    """Lazily wired config, directory, client, and registry for one command."""

    def __init__(self, config_path: Optional[Path]):
        self.config = Config.load(config_path)
        self.directory = ServiceDirectory.from_config(self.config)
        self.settings = self.config.get_client_settings()
        self._client: Optional[MCPClient] = None
        self._registry: Optional[ToolRegistry] = None

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            self._client = MCPClient.from_settings(self.settings)
            self._registry = ToolRegistry(
                self.directory, self._client, cache_ttl=self.settings.cache_ttl
            )
            self.directory.add_listener(self._registry.invalidate_cache)
        return self._registry

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


@click.group()
@click.version_option(__version__, prog_name="mcpgate")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: ~/.mcpgate/config.yaml merged with .mcpgate/config.yaml)",
)
@click.option("--verbose", is_flag=True, help="Show debug logs")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool) -> None:
    """
    mcpgate - MCP tool gateway.

    \b
    Examples:
        mcpgate tools                               # List tools
        mcpgate call weather__forecast '{"city": "Oslo"}'
        mcpgate status                              # Probe every service
    """
    setup_logging(verbose)
    try:
        gateway = Gateway(config_path)
    except ConfigError as e:
        console.print(f"[red]Config error: {escape(str(e))}[/red]")
        sys.exit(1)
    ctx.obj = gateway
    ctx.call_on_close(gateway.close)


@cli.command("tools")
@click.pass_obj
def list_tools(gateway: Gateway) -> None:
    """List the tools of all enabled services."""
    tools = gateway.registry.list_tools()
    if not tools:
        console.print("[dim]No tools available. Configure services in .mcpgate/config.yaml:[/dim]")
        console.print("[dim]  services:[/dim]")
        console.print("[dim]    weather:[/dim]")
        console.print("[dim]      endpoint: https://example.com/mcp[/dim]")
        return

    console.print(f"[bold]Available tools ({len(tools)}):[/bold]")
    for tool in tools:
        console.print(f"  [cyan]{tool.name}[/cyan] - {escape(tool.function.description)}")


@cli.command("call")
@click.argument("name")
@click.argument("arguments", required=False, default="")
@click.pass_obj
def call_tool(gateway: Gateway, name: str, arguments: str) -> None:
    """Call tool NAME with a JSON object of ARGUMENTS."""
    executor = ToolExecutor(gateway.registry)
    with console.status(f"[bold blue]Calling {name}...[/bold blue]"):
        result = executor.execute(ToolCall.create(name, arguments))

    if not result.success:
        console.print(f"[red]Error: {escape(result.error or '')}[/red]")
        sys.exit(1)
    console.print(result.output, markup=False, highlight=False)
    console.print(f"[dim]{result.duration_ms} ms[/dim]")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, help="Print statuses as JSON")
@click.pass_obj
def status(gateway: Gateway, as_json: bool) -> None:
    """Probe every configured service."""
    statuses = gateway.registry.list_service_statuses()

    if as_json:
        data = [s.model_dump(mode="json", exclude={"service": {"auth_token"}}) for s in statuses]
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return

    table = Table(title="MCP services")
    table.add_column("Service", style="cyan")
    table.add_column("Transport")
    table.add_column("Connected")
    table.add_column("Tools", justify="right")
    table.add_column("Detail")
    for s in statuses:
        disabled = [t.name for t in s.tools if not t.enabled]
        detail = s.error or (f"disabled: {', '.join(disabled)}" if disabled else "")
        table.add_row(
            s.service.id,
            s.service.transport,
            "[green]yes[/green]" if s.connected else "[red]no[/red]",
            str(s.tool_count),
            escape(detail),
        )
    console.print(table)


@cli.group("service")
def service_group() -> None:
    """Enable or disable services."""


@service_group.command("enable")
@click.argument("service_id")
@click.pass_obj
def service_enable(gateway: Gateway, service_id: str) -> None:
    _mutate(gateway.directory.set_enabled, service_id, True)
    console.print(f"[green]Enabled {service_id}[/green]")


@service_group.command("disable")
@click.argument("service_id")
@click.pass_obj
def service_disable(gateway: Gateway, service_id: str) -> None:
    _mutate(gateway.directory.set_enabled, service_id, False)
    console.print(f"[yellow]Disabled {service_id}[/yellow]")


@cli.group("tool")
def tool_group() -> None:
    """Enable or disable individual tools of a service."""


@tool_group.command("enable")
@click.argument("service_id")
@click.argument("tool_name")
@click.pass_obj
def tool_enable(gateway: Gateway, service_id: str, tool_name: str) -> None:
    _mutate(gateway.directory.set_tool_enabled, service_id, tool_name, True)
    console.print(f"[green]Enabled {service_id}/{tool_name}[/green]")


@tool_group.command("disable")
@click.argument("service_id")
@click.argument("tool_name")
@click.pass_obj
def tool_disable(gateway: Gateway, service_id: str, tool_name: str) -> None:
    _mutate(gateway.directory.set_tool_enabled, service_id, tool_name, False)
    console.print(f"[yellow]Disabled {service_id}/{tool_name}[/yellow]")


def _mutate(fn, *args) -> None:
    try:
        fn(*args)
    except ConfigError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
