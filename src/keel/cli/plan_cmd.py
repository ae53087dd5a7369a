"""
keel.cli.plan_cmd — keel plan command.

Prints the deployment order without touching a backend.

  keel plan -f deployment.yaml
  keel plan --blueprint karpenter --set name=demo -o yaml
  keel plan -f deployment.yaml --destroy
"""

import json

import click
import yaml

from keel.cli.common import EXIT_CYCLE, fail, load_source, source_options
from keel.core.graph import CycleError
from keel.core.token import UnresolvedDependencyError
from keel.deploy.planner import plan, plan_destroy


@click.command("plan")
@source_options
@click.option("-o", "--output", type=click.Choice(["text", "yaml", "json"]),
              default="text", help="Output format")
@click.option("--destroy", is_flag=True, default=False,
              help="Show the teardown order instead")
def plan_cmd(files, set_args, blueprint, output, destroy):
    """Show the layers a deploy would realize, in order."""
    composition = load_source(files, set_args, blueprint)

    try:
        if destroy:
            result = plan_destroy(composition.graph)
        else:
            result = plan(composition.graph)
    except CycleError as e:
        fail(str(e), EXIT_CYCLE)
    except UnresolvedDependencyError as e:
        fail(str(e))

    if output == "yaml":
        click.echo(yaml.safe_dump(result.to_dict(), default_flow_style=False, sort_keys=False))
        return
    if output == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    action = "Teardown" if destroy else "Plan"
    click.echo(f"{action}: {result.stack} ({result.checksum})")
    for index, layer in enumerate(result.layers):
        click.echo(f"Layer {index}:")
        for node_id in layer:
            node = result.graph.node(node_id)
            click.echo(f"  {node_id:<40} {node.kind.value}")
    click.echo(f"{len(result.node_ids)} nodes in {len(result.layers)} layers")
