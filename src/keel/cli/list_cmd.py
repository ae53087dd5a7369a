"""keel.cli.list_cmd — keel list command."""

import click

from keel.blueprint.registry import list_blueprints
from keel.deploy.backend import list_backends


@click.command("list")
def list_cmd():
    """List installed blueprints and backends."""
    blueprints = list_blueprints()

    click.echo(f"{'BLUEPRINT':<20} {'VERSION':<12} DESCRIPTION")
    click.echo("─" * 70)
    if not blueprints:
        click.echo("(none) Install one: pip install keel-<blueprint-name>")
    for name, cls in sorted(blueprints.items()):
        click.echo(f"{name:<20} {getattr(cls, 'version', '?'):<12} {getattr(cls, 'description', '')}")

    click.echo()
    click.echo("BACKENDS")
    click.echo("─" * 70)
    for name in list_backends():
        click.echo(name)
