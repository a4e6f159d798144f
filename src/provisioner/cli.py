"""Provisioner CLI (ccp).

Usage:
    ccp validate                 # Check the desired-state document
    ccp plan                     # Show what apply would do
    ccp apply                    # Converge remote state to the document
    ccp destroy                  # Delete everything recorded in state
    ccp show                     # Print reported state of tracked resources

Connection settings come from the environment (CONFLUENT_CLOUD_API_KEY,
CONFLUENT_CLOUD_API_SECRET, CONFLUENT_CLOUD_ENDPOINT); paths can be given
as options.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path

import click
import yaml

from .config import Config, ConfigurationError, ReconciliationMode
from .dependency import DependencyGraph
from .errors import DependencyCycle
from .main import exit_code_for, reconcile, setup_logging
from .reconciler import Action, PassResult
from .spec_loader import SpecLoadError, load_desired_states
from .state import StateError, StateStore

ACTION_COLORS = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.DELETE: "red",
    Action.RESUME: "cyan",
    Action.WAIT: "magenta",
}


def load_config(specs: str | None, state: str | None, **overrides: object) -> Config:
    """Environment configuration with command-line overrides applied."""
    try:
        config = Config.from_env()
        changes: dict[str, object] = dict(overrides)
        if specs:
            changes["specs_path"] = Path(specs)
        if state:
            changes["state_path"] = Path(state)
        return dataclasses.replace(config, **changes)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def run_reconcile(config: Config, *, destroy: bool = False) -> PassResult | None:
    try:
        return asyncio.run(reconcile(config, destroy=destroy))
    except (SpecLoadError, StateError) as e:
        raise click.ClickException(str(e)) from e


def echo_result(result: PassResult | None) -> None:
    """Print one line per instance that has something to report."""
    if result is None:
        click.echo("Stopped before the first pass.")
        return

    for key, outcome in sorted(result.results.items()):
        if outcome.action == Action.NO_CHANGE and outcome.error is None:
            continue
        line = f"{outcome.action.value:>9}  {key}"
        if outcome.changed_fields:
            line += f"  [{', '.join(outcome.changed_fields)}]"
        if outcome.waiting_on:
            line += f"  (waiting on {', '.join(outcome.waiting_on)})"
        click.secho(line, fg=ACTION_COLORS.get(outcome.action))
        if outcome.error is not None:
            click.secho(f"           error: {outcome.error}", fg="red", err=True)

    changes = [r for r in result.results.values() if r.action != Action.NO_CHANGE]
    verb = "planned" if result.mode == ReconciliationMode.PLAN else "remaining"
    if result.converged:
        click.secho("No changes. Remote state matches the document.", fg="green")
    else:
        click.echo(f"\n{len(changes)} change(s) {verb}, {len(result.failed)} failed.")


common_options = [
    click.option("--specs", "-f", type=click.Path(dir_okay=False), help="Desired-state document"),
    click.option("--state", "-s", type=click.Path(dir_okay=False), help="State file"),
    click.option("--verbose", "-v", is_flag=True, help="Debug logging"),
]


def with_common_options(func):  # type: ignore[no-untyped-def]
    for option in reversed(common_options):
        func = option(func)
    return func


@click.group()
@click.version_option(version="0.1.0", prog_name="ccp")
def cli() -> None:
    """Confluent Cloud resource provisioner (ccp).

    \b
    Quick Start:
        ccp validate -f resources.yaml
        ccp plan -f resources.yaml
        ccp apply -f resources.yaml
    """
    pass


@cli.command()
@click.option("--specs", "-f", type=click.Path(dir_okay=False), help="Desired-state document")
def validate(specs: str | None) -> None:
    """Validate the desired-state document without contacting the API."""
    config = load_config(specs, None)
    try:
        desired = load_desired_states(config.specs_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    graph = DependencyGraph()
    for key, state in desired.items():
        graph.add_node(key, sorted(state.depends_on))
    try:
        graph.validate()
    except DependencyCycle as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ {len(desired)} resource(s) valid in {config.specs_path}", fg="green")


@cli.command()
@with_common_options
def plan(specs: str | None, state: str | None, verbose: bool) -> None:
    """Show the changes apply would make."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)
    config = load_config(specs, state, mode=ReconciliationMode.PLAN)
    result = run_reconcile(config)
    echo_result(result)
    raise SystemExit(exit_code_for(result))


@cli.command()
@with_common_options
@click.option("--max-passes", type=int, help="Passes before giving up on convergence")
def apply(specs: str | None, state: str | None, verbose: bool, max_passes: int | None) -> None:
    """Create, update and delete resources until remote state converges."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    overrides: dict[str, object] = {"mode": ReconciliationMode.APPLY}
    if max_passes is not None:
        overrides["max_passes"] = max_passes
    config = load_config(specs, state, **overrides)
    result = run_reconcile(config)
    echo_result(result)
    raise SystemExit(exit_code_for(result))


@cli.command()
@with_common_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def destroy(specs: str | None, state: str | None, verbose: bool, yes: bool) -> None:
    """Delete every resource recorded in the state file."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    config = load_config(specs, state, mode=ReconciliationMode.APPLY)
    if not yes:
        click.confirm(f"Delete all resources tracked in {config.state_path}?", abort=True)
    result = run_reconcile(config, destroy=True)
    echo_result(result)
    raise SystemExit(exit_code_for(result))


@cli.command()
@click.option("--state", "-s", type=click.Path(dir_okay=False), help="State file")
@click.option("--show-secrets", is_flag=True, help="Include write-only values")
def show(state: str | None, show_secrets: bool) -> None:
    """Print the reported state of every tracked resource."""
    config = load_config(None, state)
    try:
        instances = StateStore(config.state_path).load()
    except StateError as e:
        raise click.ClickException(str(e)) from e

    report = {}
    for key, instance in sorted(instances.items()):
        reported = instance.reported()
        if not show_secrets:
            for secret_field in ("secret", "credentials"):
                if secret_field in reported:
                    reported[secret_field] = "(sensitive)"
        report[key] = {"status": instance.status.value, **reported}
    click.echo(yaml.safe_dump(report, sort_keys=True) if report else "No resources tracked.")


if __name__ == "__main__":
    cli()
