"""
keel.cli.destroy_cmd — keel destroy command.

Tears down what the last deploy realized, dependents first.

  keel destroy -f deployment.yaml
  keel destroy --blueprint karpenter --yes
"""

import sys

import click

from keel.cli.common import (
    EXIT_CYCLE, cancel_on_interrupt, fail, load_source, open_backend,
    settings_with, source_options,
)
from keel.core.graph import CycleError
from keel.deploy.lock import DeployLockedError
from keel.deploy.planner import DeploymentPlanner, PartialDeploymentError, plan_destroy
from keel.deploy.report import ReportError, load_report


@click.command("destroy")
@source_options
@click.option("--backend", default=None, help="Provisioning backend (default: from config)")
@click.option("--concurrency", type=int, default=None,
              help="Maximum parallel deletions per layer")
@click.option("-y", "--yes", is_flag=True, default=False,
              help="Do not ask for confirmation")
@click.pass_context
def destroy_cmd(ctx, files, set_args, blueprint, backend, concurrency, yes):
    """Destroy every realized node, in reverse deployment order."""
    settings = settings_with(ctx, backend=backend, concurrency=concurrency)
    composition = load_source(files, set_args, blueprint)
    stack = composition.name
    report_path = settings.report_path(stack)

    if not report_path.exists():
        click.echo(f"Nothing to destroy: no report for '{stack}' ({report_path}).", err=True)
        return

    try:
        report = load_report(report_path)
    except ReportError as e:
        fail(str(e))

    if not report.realized:
        click.echo(f"Nothing to destroy: no realized nodes in '{stack}'.", err=True)
        return

    if not yes and not click.confirm(
        f"Destroy {len(report.realized)} realized nodes of '{stack}'?"
    ):
        return

    try:
        teardown = plan_destroy(composition.graph)
    except CycleError as e:
        fail(str(e), EXIT_CYCLE)

    planner = DeploymentPlanner(open_backend(settings), settings)
    try:
        with cancel_on_interrupt() as cancel:
            result = planner.destroy(teardown, report, cancel=cancel, store=report_path)
    except PartialDeploymentError as e:
        click.echo(str(e), err=True)
        click.echo(f"Report: {report_path}", err=True)
        sys.exit(1)
    except DeployLockedError as e:
        fail(str(e))

    click.echo(f"✓ {stack} destroyed: {len(result.ids_with_status('destroyed'))} nodes", err=True)
