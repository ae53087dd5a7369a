"""
keel.cli.deploy_cmd — keel deploy command.

  keel deploy -f deployment.yaml
  keel deploy --blueprint karpenter --concurrency 8
  keel deploy -f deployment.yaml --no-resume     — realize everything again

The report is written to <state_dir>/<stack>.report.yaml after every
layer. A failed or interrupted deploy is resumed by running it again.
"""

import sys

import click

from keel.cli.common import (
    EXIT_CYCLE, cancel_on_interrupt, fail, load_source, open_backend,
    settings_with, source_options,
)
from keel.core.graph import CycleError
from keel.core.token import UnresolvedDependencyError
from keel.deploy.lock import DeployLockedError
from keel.deploy.planner import DeploymentPlanner, PartialDeploymentError
from keel.deploy.report import ReportError, load_report


@click.command("deploy")
@source_options
@click.option("--backend", default=None, help="Provisioning backend (default: from config)")
@click.option("--concurrency", type=int, default=None,
              help="Maximum parallel realizations per layer")
@click.option("--resume/--no-resume", default=True,
              help="Reuse nodes realized by the previous deploy")
@click.pass_context
def deploy_cmd(ctx, files, set_args, blueprint, backend, concurrency, resume):
    """Realize every node of the graph, layer by layer."""
    settings = settings_with(ctx, backend=backend, concurrency=concurrency)
    composition = load_source(files, set_args, blueprint)
    stack = composition.name
    report_path = settings.report_path(stack)

    previous = None
    if resume and report_path.exists():
        try:
            previous = load_report(report_path)
        except ReportError as e:
            fail(f"{e}. Use --no-resume to ignore it.")

    provider = open_backend(settings)
    planner = DeploymentPlanner(provider, settings)

    try:
        deployment_plan = planner.plan(composition.graph)
    except CycleError as e:
        fail(str(e), EXIT_CYCLE)

    click.echo(
        f"Deploying {stack}: {len(deployment_plan.node_ids)} nodes in "
        f"{len(deployment_plan.layers)} layers (backend: {settings.backend})",
        err=True,
    )

    try:
        with cancel_on_interrupt() as cancel:
            report = planner.apply(
                deployment_plan, previous=previous, cancel=cancel, store=report_path,
            )
    except PartialDeploymentError as e:
        click.echo(str(e), err=True)
        click.echo(f"Report: {report_path}", err=True)
        click.echo("Run the same command again to resume.", err=True)
        sys.exit(1)
    except (DeployLockedError, UnresolvedDependencyError) as e:
        fail(str(e))

    click.echo(f"✓ {stack} deployed: {len(report.realized)} nodes realized", err=True)
    click.echo(f"Report: {report_path}", err=True)
