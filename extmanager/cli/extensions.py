"""CLI commands for installing and removing extensions"""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from extmanager.cli.context import build_services
from extmanager.core.extensions.exceptions import DependencyBlockedError, ExtensionError
from extmanager.core.extensions.models import DependencyKind, InstallOutcome, InstallResult, ResolutionPlan

console = Console()

OUTCOME_STYLES = {
    InstallOutcome.INSTALLED: "green",
    InstallOutcome.DOWNLOADED: "green",
    InstallOutcome.SKIPPED: "yellow",
    InstallOutcome.FAILED: "red",
}


def _print_plan(plan: ResolutionPlan) -> None:
    if plan.ordered_install_set:
        table = Table(title=f"Install plan for {plan.root_key}")
        table.add_column("#", justify="right")
        table.add_column("Extension", style="cyan")
        table.add_column("Version")
        table.add_column("State")
        for index, entry in enumerate(plan.ordered_install_set, start=1):
            table.add_row(str(index), entry.extension_key, entry.version, entry.state.value)
        console.print(table)

    if plan.already_satisfied:
        console.print(f"Already satisfied: {', '.join(plan.already_satisfied)}")

    for key, suggested in plan.suggestions.items():
        console.print(f"[dim]{key} suggests: {', '.join(suggested)}[/dim]")

    for error in plan.errors:
        console.print(f"[red]✗ {error}[/red]")


@click.command(name="resolve")
@click.argument("extension_key")
@click.option("--version", "version", default=None, help="Exact version to resolve")
def resolve_cmd(extension_key: str, version: Optional[str]):
    """Show the install plan for an extension."""
    try:
        services = build_services()
        plan = services.orchestrator.resolve(extension_key, version)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    _print_plan(plan)
    if not plan.ok:
        raise click.Abort()


def _print_result(title: str, result: InstallResult) -> None:
    if result.plan.errors:
        _print_plan(result.plan)

    if result.packages:
        table = Table(title=title)
        table.add_column("Extension", style="cyan")
        table.add_column("Version")
        table.add_column("Outcome")
        table.add_column("Details")
        for package in result.packages.values():
            outcome = package.outcome or InstallOutcome.FAILED
            style = OUTCOME_STYLES[outcome]
            table.add_row(
                package.extension_key,
                package.version,
                f"[{style}]{outcome.value}[/{style}]",
                package.reason or ", ".join(package.completed_steps),
            )
        console.print(table)


@click.command(name="install")
@click.argument("extension_key", required=False)
@click.option("--version", "version", default=None, help="Exact version to install")
@click.option("--download-only", is_flag=True, help="Download without activating")
@click.option("--file", "archive", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Install from a local zip archive instead of the mirror")
@click.option("--overwrite", is_flag=True, help="Replace an existing extension directory (with --file)")
def install_cmd(
    extension_key: Optional[str],
    version: Optional[str],
    download_only: bool,
    archive: Optional[str],
    overwrite: bool
):
    """Install an extension with its dependencies."""
    if not extension_key and not archive:
        raise click.UsageError("Pass an extension key or --file")

    try:
        services = build_services(download_only=download_only)
        if archive:
            result = services.orchestrator.install_from_archive(
                Path(archive), activate=not download_only, overwrite=overwrite
            )
        else:
            result = services.orchestrator.install(extension_key, version)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    _print_result(f"Install {extension_key or Path(archive).name}", result)

    if not result.success:
        raise click.Abort()


@click.command(name="uninstall")
@click.argument("extension_key")
def uninstall_cmd(extension_key: str):
    """Deactivate an installed extension."""
    try:
        services = build_services()
        services.orchestrator.uninstall(extension_key)
    except DependencyBlockedError as e:
        console.print(f"[red]Cannot uninstall {extension_key}: required by {', '.join(e.blockers)}[/red]")
        raise click.Abort()
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ Uninstalled {extension_key}[/green]")


@click.command(name="remove")
@click.argument("extension_key")
def remove_cmd(extension_key: str):
    """Delete the directory of an inactive extension."""
    try:
        services = build_services()
        services.orchestrator.remove_extension(extension_key)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ Removed {extension_key}[/green]")


@click.command(name="update-check")
@click.argument("extension_key")
def update_check_cmd(extension_key: str):
    """Show the newest installable update of an extension."""
    try:
        services = build_services()
        candidate = services.orchestrator.get_update_candidate(extension_key)
        comments = services.orchestrator.get_update_comments(extension_key) if candidate else {}
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    if candidate is None:
        console.print(f"No update available for {extension_key}")
        return

    console.print(f"[green]Update available: {candidate}[/green]")
    for version, comment in comments.items():
        if comment:
            console.print(f"  [cyan]{version}[/cyan]: {comment}")


@click.command(name="list")
def list_cmd():
    """List active extensions."""
    try:
        services = build_services()
        services.installed.refresh()
        packages = services.installed.packages()
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    if not packages:
        console.print("No extensions installed")
        return

    table = Table(title="Installed extensions")
    table.add_column("Extension", style="cyan")
    table.add_column("Version")
    table.add_column("Depends")

    for package in packages:
        depends = [edge.target_key for edge in package.edges(DependencyKind.DEPENDS)]
        table.add_row(package.extension_key, package.version, ", ".join(depends))

    console.print(table)


@click.command(name="export")
@click.argument("extension_key")
@click.option("--output", "output_dir", type=click.Path(file_okay=False), default=".",
              help="Directory for the zip file")
def export_cmd(extension_key: str, output_dir: str):
    """Pack an installed extension into a zip file."""
    try:
        services = build_services()
        target = services.orchestrator.export_extension(extension_key, Path(output_dir))
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ Exported {extension_key} to {target}[/green]")
