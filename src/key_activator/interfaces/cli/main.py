# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""CLI interface for activation operators.

Provides commands for:
- Listing supported regions and normalizing region input
- Inspecting an activation session
- Checking that proxy credentials can be issued
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ...config import get_settings
from ...errors import ActivationError
from ...regions import RegionRegistry

app = typer.Typer(
    name="key-activator",
    help="Key Activator CLI - Inspect sessions, regions and proxy credentials",
)
console = Console()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Key Activator operator tooling."""
    _configure_logging(verbose)


@app.command()
def regions(
    normalize: Optional[str] = typer.Option(
        None,
        "--normalize",
        "-n",
        help="Region code or country name to normalize",
    ),
):
    """List supported regions with their proxy endpoints and markets."""
    registry = RegionRegistry()

    if normalize is not None:
        code = registry.normalize(normalize)
        if code is None:
            console.print("[red]Empty region[/red]")
            raise typer.Exit(1)
        if registry.is_global(code):
            console.print(f"{normalize} -> [cyan]{code}[/cyan] (global, direct connection)")
        elif code in registry:
            console.print(f"{normalize} -> [cyan]{code}[/cyan] ({registry.region_name(code)})")
        else:
            console.print(f"[red]Unsupported region: {normalize}[/red]")
            raise typer.Exit(1)
        return

    table = Table(title="Supported Regions")
    table.add_column("Code", style="cyan")
    table.add_column("Name")
    table.add_column("Proxy Host")
    table.add_column("Port", style="yellow")
    table.add_column("Market", style="green")

    for config in sorted(registry, key=lambda c: c.code):
        table.add_row(config.code, config.name or "", config.host, str(config.port), config.market)

    console.print(table)


@app.command()
def session(
    session_token: str = typer.Argument(..., help="Activation session token"),
):
    """Resolve an activation session and show its product."""
    from ...clients import BackendClient

    async def _fetch():
        async with BackendClient() as backend:
            return await backend.get_session(session_token)

    try:
        product = asyncio.run(_fetch())
    except ActivationError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    console.print(Panel(f"[cyan]{product.product_name}[/cyan]", title="Activation Session"))
    console.print(f"Region: [yellow]{product.region}[/yellow]")
    console.print(f"Vendor: {product.vendor or '-'}")
    console.print(f"Status: {product.status or '-'}")
    console.print(f"Activation method: {product.activation_method.value}")
    if product.expires_at:
        console.print(f"Expires: {product.expires_at.isoformat()}")
    if product.is_expired():
        console.print("[red]Session has expired[/red]")
    if product.is_redeemed():
        console.print("[yellow]Status indicates the key was already redeemed[/yellow]")

    table = Table(title="Bundle Keys" if product.is_bundle else "Key")
    table.add_column("#")
    table.add_column("Key")
    for index, key in enumerate(product.keys, start=1):
        table.add_row(str(index), f"{key[:5]}-*****")
    console.print(table)


@app.command()
def credentials():
    """Fetch proxy credentials from the backend and show when they expire."""
    from ...clients import BackendClient

    async def _fetch():
        async with BackendClient() as backend:
            return await backend.get_proxy_credentials()

    try:
        creds = asyncio.run(_fetch())
    except ActivationError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Proxy user: {creds.masked_username()}")
    console.print(f"Expires: {creds.expires_at.isoformat()}")
    if creds.is_expired():
        console.print("[red]Credentials are already expired[/red]")


if __name__ == "__main__":
    app()
