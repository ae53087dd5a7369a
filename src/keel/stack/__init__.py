"""keel.stack — Stacks, templates and deployment files."""

from keel.stack.composer import (
    Stack, StackComposer, StackError, bind_parameters, by_stack_tag,
    entry_id, exit_id,
)
from keel.stack.template import include_template, load_template, TemplateError
from keel.stack.parser import (
    parse_deployment_file, parse_deployment_dict, DeploymentSpec,
    ResourceSpec, StackDecl, DeploymentFileError,
)
from keel.stack.merger import merge_deployment_files, apply_set_to_parameters
from keel.stack.engine import load_deployment, build_deployment, Composition

__all__ = [
    "Stack",
    "StackComposer",
    "StackError",
    "bind_parameters",
    "by_stack_tag",
    "entry_id",
    "exit_id",
    "include_template",
    "load_template",
    "TemplateError",
    "parse_deployment_file",
    "parse_deployment_dict",
    "DeploymentSpec",
    "ResourceSpec",
    "StackDecl",
    "DeploymentFileError",
    "merge_deployment_files",
    "apply_set_to_parameters",
    "load_deployment",
    "build_deployment",
    "Composition",
]
