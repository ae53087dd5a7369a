"""keel.cli.common — Options and helpers shared by commands."""

from __future__ import annotations

import dataclasses
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Any, Iterator, NoReturn

import click
import yaml

from keel.blueprint.base import BlueprintError
from keel.blueprint.registry import get_blueprint
from keel.config import ConfigError, Settings
from keel.core.graph import CycleError, GraphError
from keel.core.token import TokenError, UnresolvedDependencyError
from keel.deploy.backend import ProvisioningBackend, get_backend
from keel.stack.composer import StackError
from keel.stack.engine import Composition, load_deployment
from keel.stack.template import TemplateError

EXIT_FAILURE = 1
EXIT_CYCLE = 2

# Errors that mean the deployment definition itself is wrong
DEFINITION_ERRORS = (
    BlueprintError,
    GraphError,
    StackError,
    TemplateError,
    TokenError,
    UnresolvedDependencyError,
    FileNotFoundError,
    ValueError,
    yaml.YAMLError,
)


def fail(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def source_options(func):
    """-f / --set / --blueprint: where the graph comes from."""
    func = click.option("-b", "--blueprint", "blueprint", default=None,
                        help="Build the graph from an installed blueprint")(func)
    func = click.option("--set", "set_args", multiple=True,
                        help="Parameter override (Name=value)")(func)
    func = click.option("-f", "--file", "files", multiple=True,
                        help="Deployment file, or blueprint values file (multiple allowed)")(func)
    return func


def load_source(files, set_args, blueprint) -> Composition:
    """Build the composition from deployment files or a blueprint.

    Exits 2 on a dependency cycle and 1 on any other definition error.
    """
    try:
        if blueprint:
            bp = get_blueprint(blueprint)
            if bp is None:
                fail(f"Blueprint '{blueprint}' not found. See 'keel list'.")
            return bp.compose(value_files=list(files), set_args=list(set_args))
        if not files:
            fail("Give a deployment file (-f deployment.yaml) or --blueprint <name>.")
        return load_deployment(list(files), list(set_args))
    except CycleError as e:
        fail(str(e), EXIT_CYCLE)
    except DEFINITION_ERRORS as e:
        fail(str(e))


def settings_with(ctx: click.Context, **overrides: Any) -> Settings:
    """Settings of the group with CLI flag overrides (None = keep)."""
    settings: Settings = ctx.obj
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return settings
    try:
        return dataclasses.replace(settings, **changes)
    except ConfigError as e:
        fail(str(e))


def open_backend(settings: Settings) -> ProvisioningBackend:
    backend = get_backend(settings.backend, settings)
    if backend is None:
        fail(f"Backend '{settings.backend}' not found. See 'keel list'.")
    return backend


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Set the yielded event on Ctrl-C instead of aborting mid-layer."""
    cancel = threading.Event()

    def handler(signum, frame):
        click.echo("Interrupted: finishing the current layer...", err=True)
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)
