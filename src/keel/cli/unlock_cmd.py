"""
keel.cli.unlock_cmd — keel unlock command.

Removes the deploy lock a crashed deploy left behind.
"""

import click

from keel.cli.common import settings_with
from keel.deploy.lock import break_lock, read_lock


@click.command("unlock")
@click.argument("stack")
@click.pass_context
def unlock_cmd(ctx, stack):
    """Remove the deploy lock of STACK."""
    settings = settings_with(ctx)
    path = settings.lock_path(stack)
    holder = read_lock(path)
    if not break_lock(path):
        click.echo(f"Stack '{stack}' is not locked.")
        return
    who = f" (pid {holder.get('pid')} on {holder.get('host')})" if holder else ""
    click.echo(f"✓ Removed lock of '{stack}'{who}.")
