"""
keel.cli — CLI entry point.

Commands:
  keel plan [flags]       — Show the deployment order
  keel deploy [flags]     — Realize the graph
  keel destroy [flags]    — Tear the graph down
  keel status <stack>     — Show the last deployment report
  keel list               — List blueprints and backends
  keel unlock <stack>     — Remove a stale deploy lock
"""

import dataclasses
import sys

import click

from keel.cli.plan_cmd import plan_cmd
from keel.cli.deploy_cmd import deploy_cmd
from keel.cli.destroy_cmd import destroy_cmd
from keel.cli.status_cmd import status_cmd
from keel.cli.list_cmd import list_cmd
from keel.cli.unlock_cmd import unlock_cmd
from keel.config import ConfigError, load_settings
from keel.log import setup_logging


@click.group()
@click.version_option(package_name="keel")
@click.option("--config", "config_file", default=None,
              help="Config file (default: $KEEL_HOME/config.yaml)")
@click.option("--state-dir", default=None,
              help="Directory for reports and locks (default: .keel)")
@click.option("--log-level", default=None,
              help="debug, info, warning, error")
@click.option("--log-format", type=click.Choice(["console", "json"]), default=None)
@click.pass_context
def main(ctx, config_file, state_dir, log_level, log_format):
    """keel — dependency-ordered infrastructure deployment."""
    try:
        settings = load_settings(config_file)
        overrides = {
            "state_dir": state_dir,
            "log_level": log_level,
            "log_format": log_format,
        }
        if any(v is not None for v in overrides.values()):
            settings = dataclasses.replace(
                settings, **{k: v for k, v in overrides.items() if v is not None}
            )
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    setup_logging(settings.log_level, settings.log_format)
    ctx.obj = settings


main.add_command(plan_cmd, "plan")
main.add_command(deploy_cmd, "deploy")
main.add_command(destroy_cmd, "destroy")
main.add_command(status_cmd, "status")
main.add_command(list_cmd, "list")
main.add_command(unlock_cmd, "unlock")
