"""
keel.cli.status_cmd — keel status command.

Shows the last deployment report of a stack.

  keel status karpenter-test
  keel status karpenter-test --drift     — also ask the backend
"""

import sys

import click

from keel.cli.common import fail, open_backend, settings_with
from keel.deploy.backend import BackendError
from keel.deploy.drift import detect_drift
from keel.deploy.lock import read_lock
from keel.deploy.report import ReportError, load_report


@click.command("status")
@click.argument("stack")
@click.option("--drift", is_flag=True, default=False,
              help="Compare recorded attributes with the backend")
@click.option("--backend", default=None, help="Provisioning backend (default: from config)")
@click.pass_context
def status_cmd(ctx, stack, drift, backend):
    """Show what the last deploy of STACK realized."""
    settings = settings_with(ctx, backend=backend)
    report_path = settings.report_path(stack)

    if not report_path.exists():
        click.echo(f"No deployment report for '{stack}' ({report_path}).")
        sys.exit(1)

    try:
        report = load_report(report_path)
    except ReportError as e:
        fail(str(e))

    click.echo(f"Stack:    {report.stack}")
    click.echo(f"Checksum: {report.checksum or '-'}")
    click.echo(f"Report:   {report_path}")

    lock_path = settings.lock_path(stack)
    if lock_path.exists():
        holder = read_lock(lock_path)
        click.echo(f"Lock:     held by pid {holder.get('pid', '?')} on {holder.get('host', '?')}")

    click.echo()
    click.echo(f"{'NODE':<40} {'KIND':<18} {'STATUS':<10} HANDLE")
    click.echo("─" * 90)
    for rec in report.records.values():
        handle = rec.handle if rec.status != "failed" else (rec.error or "")
        click.echo(f"{rec.id:<40} {rec.kind:<18} {rec.status:<10} {handle}")

    if not drift:
        return

    click.echo()
    try:
        items = detect_drift(report, open_backend(settings))
    except BackendError as e:
        fail(f"Drift check failed: {e}")

    if not items:
        click.echo("✓ No drift detected.")
        return
    click.echo(f"⚠ Drift detected in {len(items)} nodes:")
    for item in items:
        click.echo(f"  {item}")
