"""Typer CLI for the cloud provisioner."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cloud_provisioner.config.loader import load_platform_config, load_request
from cloud_provisioner.config.models import PlatformConfig, ProvisioningRequest
from cloud_provisioner.errors import PartialCleanupError, ProvisionerError, ProvisioningError
from cloud_provisioner.providers.factory import open_provider
from cloud_provisioner.provisioning.cleanup import CleanupCoordinator
from cloud_provisioner.provisioning.orchestrator import (
    ProvisioningOrchestrator,
    ProvisioningResult,
)
from cloud_provisioner.provisioning.planner import DependencyGraphBuilder

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cloud-provisioner", help="Cloud node provisioning CLI")


def _load_platform(platform_config: str | None) -> PlatformConfig:
    try:
        return load_platform_config(Path(platform_config) if platform_config else None)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Invalid platform config:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


def _load(
    request_path: str, platform_config: str | None
) -> tuple[ProvisioningRequest, PlatformConfig]:
    path = Path(request_path)
    if not path.exists():
        console.print(f"[red]Request file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        request = load_request(path)
    except ValueError as exc:
        console.print(f"[red]Invalid request:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc
    return request, _load_platform(platform_config)


def _print_created(result: ProvisioningResult) -> None:
    table = Table(title="Created resources")
    table.add_column("Kind", style="cyan")
    table.add_column("Id")
    table.add_column("Region")
    for handle in result.created:
        table.add_row(str(handle.kind), handle.id, handle.region)
    console.print(table)


@app.command()
def validate(
    request_path: str = typer.Argument(..., help="Path to request YAML"),
    platform_config: str | None = typer.Option(
        None, "--platform-config", help="Platform YAML"
    ),
) -> None:
    """Validate a provisioning request and the platform configuration."""
    request, platform = _load(request_path, platform_config)
    console.print(f"[green]Valid[/green] — group={request.group}")
    console.print(f"  region:   {request.region}")
    console.print(f"  image:    {request.image_id}")
    console.print(f"  hardware: {request.hardware_id}")
    console.print(f"  provider: {platform.provider_mode}")
    console.print(f"  ownership tag: {platform.ownership.tag_key}={platform.ownership.tag_value}")
    console.print(f"  platform config: {platform_config or '(defaults)'}")


@app.command()
def plan(
    request_path: str = typer.Argument(..., help="Path to request YAML"),
    platform_config: str | None = typer.Option(
        None, "--platform-config", help="Platform YAML"
    ),
) -> None:
    """Show the ordered resources a create would touch, without calling the provider."""
    request, platform = _load(request_path, platform_config)
    try:
        specs = DependencyGraphBuilder(platform.network).plan(request)
    except (ProvisionerError, ValueError) as exc:
        console.print(f"[red]Plan failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    table = Table(title=f"Plan for {request.group}")
    table.add_column("#", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Action")
    table.add_column("Name")
    table.add_column("Detail")
    for i, spec in enumerate(specs, start=1):
        detail = ""
        rules = spec.attributes.get("rules")
        if rules:
            detail = ", ".join(f"{r.protocol} {r.port_range} from {r.cidr}" for r in rules)
        if spec.ephemeral:
            detail = "ephemeral"
        table.add_row(str(i), str(spec.kind), str(spec.action), spec.name, detail)
    console.print(table)


async def _release(coordinator: CleanupCoordinator, partial: ProvisioningResult) -> None:
    count = len(partial.created)
    console.print(f"[yellow]Releasing {count} resource(s) left by the failure[/yellow]")
    try:
        confirmed = await coordinator.release(partial)
    except PartialCleanupError as exc:
        console.print("[red]Release incomplete:[/red]")
        for failure in exc.failures:
            console.print(f"  - {escape(str(failure))}")
        _print_created(partial)
        return
    if not confirmed:
        console.print("[yellow]Release not confirmed in time[/yellow]")
        _print_created(partial)
        return
    console.print(f"[green]Released {count} resource(s)[/green]")


@app.command()
def create(
    request_path: str = typer.Argument(..., help="Path to request YAML"),
    platform_config: str | None = typer.Option(
        None, "--platform-config", help="Platform YAML"
    ),
    keep_on_failure: bool = typer.Option(
        False,
        "--keep-on-failure",
        help="Keep the resources created before a failure instead of releasing them",
    ),
) -> None:
    """Provision a node and its prerequisite resources."""
    request, platform = _load(request_path, platform_config)

    async def _create() -> ProvisioningResult:
        async with open_provider(platform) as clients:
            orchestrator = ProvisioningOrchestrator(clients, platform)
            try:
                return await orchestrator.create(request)
            except ProvisioningError as exc:
                console.print(f"[red]Provisioning failed:[/red] {escape(str(exc))}")
                partial = exc.result
                if partial is not None and partial.created:
                    if keep_on_failure:
                        _print_created(partial)
                    else:
                        await _release(CleanupCoordinator(clients, platform), partial)
                raise

    try:
        result = asyncio.run(_create())
    except ProvisioningError as exc:
        raise typer.Exit(1) from exc
    except ProvisionerError as exc:
        console.print(f"[red]Provisioning failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    console.print(f"[green]Node created:[/green] {result.node_id}")
    if result.public_ip:
        console.print(f"  public ip: {result.public_ip}")
    if result.login_private_key:
        console.print("  login key: generated (private key material returned once)")
    _print_created(result)


@app.command()
def destroy(
    node_id: str = typer.Argument(..., help="Node id as <region>/<instance-id>"),
    platform_config: str | None = typer.Option(
        None, "--platform-config", help="Platform YAML"
    ),
) -> None:
    """Tear down a node and every resource it exclusively owns."""
    platform = _load_platform(platform_config)

    async def _destroy() -> bool:
        async with open_provider(platform) as clients:
            return await CleanupCoordinator(clients, platform).destroy(node_id)

    try:
        confirmed = asyncio.run(_destroy())
    except PartialCleanupError as exc:
        console.print(f"[red]Cleanup incomplete:[/red] {exc.node_id}")
        for failure in exc.failures:
            console.print(f"  - {escape(str(failure))}")
        raise typer.Exit(1) from exc
    except (ProvisionerError, ValueError) as exc:
        console.print(f"[red]Destroy failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    if not confirmed:
        console.print(f"[yellow]Deletion of {node_id} not confirmed in time[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Destroyed:[/green] {node_id}")
