"""stackgraph CLI.

Usage:
    stackgraph preview                 # Show the planned changes
    stackgraph up                      # Apply the stack and print exports
    stackgraph destroy --yes           # Delete everything recorded in state
    stackgraph outputs [NAME]          # Print exports from recorded state
    stackgraph graph --format dot      # Print the dependency graph
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, EngineConfig, ProviderBackend
from .dependency import GraphError
from .deployment import DeploymentRunner, ResourceLimitError, RunOutcome
from .loader import DeclarationLoadError
from .main import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_STATE_CORRUPTION,
    run_command,
    setup_logging,
)
from .plan import Plan
from .provenance import format_summary
from .providers import ProviderRegistry
from .state import StateCorruptionError

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CliContext:
    """Options shared by every command."""

    config: EngineConfig
    output_json: bool


def _context(ctx: click.Context) -> CliContext:
    obj = ctx.find_object(CliContext)
    assert obj is not None
    return obj


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _format_plan(plan: Plan) -> str:
    symbols = {"create": "+", "update": "~", "replace": "-/+", "delete": "-", "noop": " "}
    lines: list[str] = []
    for entry in plan.to_dict()["changes"]:
        lines.append(f"{symbols[entry['action']]:>3} {entry['id']} ({entry['kind']})")
        if entry["action"] == "noop":
            continue
        if entry["reason"]:
            lines.append(f"      {entry['reason']}")
        for change in entry["changes"]:
            before = json.dumps(change["before"], default=str)
            after = change["after"] if change["after"] == "<computed>" else json.dumps(
                change["after"], default=str
            )
            lines.append(f"      {change['path']}: {before} => {after}")
    counts = plan.counts()
    lines.append("")
    lines.append(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['delete']} to delete, "
        f"{counts['noop']} unchanged"
    )
    return "\n".join(lines)


def _run(cli_ctx: CliContext, command: str) -> None:
    def report(outcome: RunOutcome) -> None:
        if cli_ctx.output_json:
            _echo_json(
                {
                    "plan": outcome.plan.to_dict() if outcome.plan else None,
                    "summary": outcome.provenance.to_dict(),
                    "exports": outcome.exports,
                    "unresolved": {k: str(v) for k, v in outcome.export_errors.items()},
                }
            )
            return
        if command == "preview" or outcome.report is None:
            if outcome.plan is not None:
                click.echo(_format_plan(outcome.plan))
            return
        click.echo(format_summary(outcome.provenance))
        if outcome.exports or outcome.export_errors:
            click.echo("\nExports:")
            _echo_json(outcome.exports)
            for name, error in sorted(outcome.export_errors.items()):
                click.echo(f"  {name}: unresolved ({error.reason})", err=True)

    sys.exit(asyncio.run(run_command(command, cli_ctx.config, on_outcome=report)))


@click.group()
@click.version_option(version="0.1.0", prog_name="stackgraph")
@click.option(
    "--file", "-f", "declaration_file", type=click.Path(path_type=Path),
    help="Stack file (default: STACKGRAPH_DECLARATION_FILE or stack.yaml)",
)
@click.option(
    "--state", "state_file", type=click.Path(path_type=Path),
    help="State file (default: STACKGRAPH_STATE_FILE or .stackgraph/state.json)",
)
@click.option(
    "--provider", type=click.Choice([p.value for p in ProviderBackend]),
    help="Provider backend (default: STACKGRAPH_PROVIDER or simulated)",
)
@click.option("--parallel", type=int, help="Maximum concurrent applies")
@click.option("--json", "output_json", is_flag=True, help="Machine-readable output")
@click.option(
    "--log-format", type=click.Choice(["json", "text"]), default="text", show_default=True
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    declaration_file: Path | None,
    state_file: Path | None,
    provider: str | None,
    parallel: int | None,
    output_json: bool,
    log_format: str,
    verbose: bool,
) -> None:
    """stackgraph: declarative resource-graph reconciliation.

    \b
    Quick Start:
        stackgraph -f stacks/asr-cmk-poc.yaml preview
        stackgraph -f stacks/asr-cmk-poc.yaml up
        stackgraph -f stacks/asr-cmk-poc.yaml outputs
    """
    setup_logging(log_format, logging.DEBUG if verbose else logging.INFO)

    overrides: dict[str, Any] = {}
    if declaration_file is not None:
        overrides["declaration_file"] = declaration_file
    if state_file is not None:
        overrides["state_file"] = state_file
    if provider is not None:
        overrides["provider"] = ProviderBackend(provider)
    if parallel is not None:
        overrides["max_parallel_applies"] = parallel

    try:
        config = dataclasses.replace(EngineConfig.from_env(), **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    ctx.obj = CliContext(config=config, output_json=output_json)


@cli.command()
@click.pass_context
def preview(ctx: click.Context) -> None:
    """Show what `up` would change, without calling any provider."""
    _run(_context(ctx), "preview")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Plan only")
@click.pass_context
def up(ctx: click.Context, dry_run: bool) -> None:
    """Create, update, replace and delete resources to match the stack."""
    cli_ctx = _context(ctx)
    if dry_run:
        cli_ctx.config = dataclasses.replace(cli_ctx.config, dry_run=True)
    _run(cli_ctx, "up")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete every resource recorded in state, dependents first."""
    cli_ctx = _context(ctx)
    if not yes and not cli_ctx.config.dry_run:
        click.confirm(
            f"Destroy all resources recorded in {cli_ctx.config.state_file}?", abort=True
        )
    _run(cli_ctx, "destroy")


@cli.command()
@click.argument("name", required=False)
@click.pass_context
def outputs(ctx: click.Context, name: str | None) -> None:
    """Print exports resolved from recorded state."""
    cli_ctx = _context(ctx)
    runner = DeploymentRunner(cli_ctx.config, ProviderRegistry())
    try:
        values, errors = runner.outputs()
    except StateCorruptionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_STATE_CORRUPTION)
    except (DeclarationLoadError, GraphError, ResourceLimitError) as e:
        raise click.ClickException(str(e)) from e

    if name is not None:
        if name in errors:
            click.echo(f"Error: {errors[name]}", err=True)
            sys.exit(EXIT_FAILURE)
        if name not in values:
            raise click.ClickException(f"No export named '{name}'")
        _echo_json(values[name])
        return

    _echo_json(values)
    for export_name, error in sorted(errors.items()):
        click.echo(f"{export_name}: {error}", err=True)
    sys.exit(EXIT_FAILURE if errors else EXIT_OK)


@cli.command()
@click.option(
    "--format", "fmt", type=click.Choice(["text", "dot"]), default="text", show_default=True
)
@click.pass_context
def graph(ctx: click.Context, fmt: str) -> None:
    """Print the dependency graph in apply order."""
    cli_ctx = _context(ctx)
    runner = DeploymentRunner(cli_ctx.config, ProviderRegistry())
    try:
        dependency_graph = runner.build_graph(runner.load())
    except (DeclarationLoadError, GraphError, ResourceLimitError) as e:
        raise click.ClickException(str(e)) from e

    order = dependency_graph.topological_order()
    if fmt == "dot":
        click.echo("digraph stack {")
        for node_id in order:
            click.echo(f'  "{node_id}";')
            for dep in sorted(dependency_graph.edges[node_id]):
                click.echo(f'  "{dep}" -> "{node_id}";')
        click.echo("}")
        return

    for node_id in order:
        node = dependency_graph.nodes[node_id]
        deps = ", ".join(sorted(dependency_graph.edges[node_id])) or "-"
        click.echo(f"{node_id} ({node.kind}) <- {deps}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
