"""CLI main entry point"""

import logging

import click
from rich.console import Console
from rich.table import Table

from extmanager import __version__
from extmanager.cli.context import build_services
from extmanager.config import SettingsManager
from extmanager.core.extensions.exceptions import ExtensionError
from extmanager.core.extensions.report import Severity
from extmanager.store import get_migration_status

console = Console()

SEVERITY_STYLES = {
    Severity.OK: "green",
    Severity.NOTICE: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="extmanager")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """extmanager - install, resolve and update CMS extensions"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )


@cli.command(name="init")
def init_cmd():
    """Create the directories, database and settings file"""
    manager = SettingsManager()
    settings = manager.load()
    try:
        services = build_services(settings)
        if not manager.settings_path.exists():
            manager.save(settings)
    except (ExtensionError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ Initialized extension manager in {settings.home_path()}[/green]")
    console.print(f"  Extensions: {settings.extensions_path}")
    console.print(f"  Database: {services.settings.database_path}")


@cli.command(name="status")
def status_cmd():
    """Show mirror freshness and withdrawn extensions"""
    try:
        services = build_services()
        results = services.report.get_status()
        migration = get_migration_status(services.settings.database_path)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    table = Table(title="Extension status")
    table.add_column("Check", style="cyan")
    table.add_column("Severity")
    table.add_column("Details")

    for result in results.values():
        style = SEVERITY_STYLES[result.severity]
        table.add_row(result.title, f"[{style}]{result.severity.value}[/{style}]", result.message)

    console.print(table)
    console.print(
        f"Schema version: {migration['current_version']} "
        f"({len(migration['pending'])} pending)"
    )


from extmanager.cli.catalog import catalog_group
from extmanager.cli.extensions import (
    export_cmd,
    install_cmd,
    list_cmd,
    remove_cmd,
    resolve_cmd,
    uninstall_cmd,
    update_check_cmd,
)

cli.add_command(catalog_group, name="catalog")
cli.add_command(resolve_cmd, name="resolve")
cli.add_command(install_cmd, name="install")
cli.add_command(uninstall_cmd, name="uninstall")
cli.add_command(remove_cmd, name="remove")
cli.add_command(update_check_cmd, name="update-check")
cli.add_command(list_cmd, name="list")
cli.add_command(export_cmd, name="export")


if __name__ == "__main__":
    cli()
