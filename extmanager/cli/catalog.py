"""CLI commands for the package catalog"""

import click
from rich.console import Console
from rich.table import Table

from extmanager.cli.context import build_services
from extmanager.core.extensions.catalog import read_catalog_dump
from extmanager.core.extensions.exceptions import ExtensionError

console = Console()


@click.group(name="catalog")
def catalog_group():
    """Package catalog commands."""
    pass


@catalog_group.command(name="import")
@click.argument("dump_path", type=click.Path(exists=True, dir_okay=False))
def import_cmd(dump_path: str):
    """Import extension versions from a JSON (or .json.gz) dump."""
    try:
        services = build_services()
        entries = read_catalog_dump(dump_path)
        count = services.catalog.upsert_versions(entries)
        mirror = services.catalog.record_mirror_update(
            services.settings.mirror_title,
            services.settings.mirror_url,
        )
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ Imported {count} extension versions[/green]")
    console.print(f"  Mirror '{mirror.title}': {mirror.extension_count} extensions")


@catalog_group.command(name="show")
@click.argument("extension_key")
def show_cmd(extension_key: str):
    """Show all known versions of an extension."""
    try:
        services = build_services()
        versions = services.catalog.list_versions(extension_key)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    if not versions:
        console.print(f"[yellow]No versions of '{extension_key}' in the catalog[/yellow]")
        return

    table = Table(title=f"{extension_key} ({len(versions)} versions)")
    table.add_column("Version", style="cyan")
    table.add_column("State")
    table.add_column("Current")
    table.add_column("Depends")
    table.add_column("Conflicts")

    for version in versions:
        table.add_row(
            version.version,
            version.state.value,
            "✓" if version.current else "",
            ", ".join(f"{e.target_key} {e.version_range}".strip() for e in version.depends),
            ", ".join(f"{e.target_key} {e.version_range}".strip() for e in version.conflicts),
        )

    console.print(table)
