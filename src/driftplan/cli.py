"""CLI entrypoint for driftplan."""

import json
import logging
import os
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from driftplan.analyzer import analyze_plan
from driftplan.errors import ConfigError, DriftplanError
from driftplan.executor import Executor
from driftplan.formatter import format_apply, format_json, format_markdown, format_table
from driftplan.graph import DependencyGraph, to_dot
from driftplan.integrations.github import post_to_github_pr
from driftplan.integrations.slack import post_to_slack
from driftplan.loader import load_path, parse_document
from driftplan.models import InstanceAddress, Plan
from driftplan.planner import Planner
from driftplan.providers.local import FileProvider
from driftplan.resolver import Resolver
from driftplan.state.local import LocalStateStore
from driftplan.state.s3 import S3StateStore
from driftplan.state.store import StateStore

FORMATTERS = {
    "table": format_table,
    "json": format_json,
    "markdown": format_markdown,
}

EXIT_OK = 0
EXIT_CHANGES_PENDING = 1
EXIT_CONFIG_ERROR = 2
EXIT_DRIFT_CONFLICT = 3

STATE_OPTIONS = [
    click.option(
        "--state",
        "state_path",
        default="driftplan.state.json",
        show_default=True,
        help="Local state file.",
    ),
    click.option("--state-bucket", default=None, help="Store state in this S3 bucket instead."),
    click.option(
        "--state-key",
        default="driftplan.state.json",
        show_default=True,
        help="Object key of the state in the S3 bucket.",
    ),
    click.option("--region", default=None, help="AWS region of the state bucket."),
]

CONFIG_OPTIONS = [
    click.argument("config", type=click.Path(exists=True)),
    *STATE_OPTIONS,
    click.option(
        "--provider-file",
        default="driftplan.provider.json",
        show_default=True,
        help="File backing the local provider.",
    ),
    click.option("--var", "var_pairs", multiple=True, help="Set a variable (KEY=VALUE)."),
    click.option(
        "--var-file",
        type=click.Path(exists=True),
        default=None,
        help="YAML or JSON file of variable values.",
    ),
]

PLAN_OPTIONS = [
    click.option(
        "--format",
        "output_format",
        type=click.Choice(["table", "json", "markdown"]),
        default="table",
        help="Output format.",
    ),
    click.option("--redact-values", is_flag=True, help="Hide attribute values in output."),
    click.option("--refresh/--no-refresh", default=True, help="Read actual state first."),
    click.option("--replace", multiple=True, help="Force replacement of an instance address."),
    click.option("--post-slack", is_flag=True, help="Post plan report to Slack webhook."),
    click.option(
        "--post-github-pr", type=int, default=None, help="Post plan report as GitHub PR comment."
    ),
]

APPLY_OPTIONS = [
    click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt."),
    click.option(
        "--max-concurrent",
        type=click.IntRange(1, 50),
        default=5,
        help="Max concurrent operations.",
    ),
]


def with_options(*groups):
    """Apply groups of click parameters to a command, in order."""

    def decorator(func):
        for option in reversed([o for group in groups for o in group]):
            func = option(func)
        return func

    return decorator


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    except DriftplanError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CHANGES_PENDING)


def _open_store(options: dict) -> StateStore:
    if options["state_bucket"]:
        store = S3StateStore(
            bucket=options["state_bucket"],
            key=options["state_key"],
            region=options["region"],
        )
    else:
        store = LocalStateStore(options["state_path"])
    return store.load()


def _parse_variables(options: dict) -> dict:
    variables = {}
    if options["var_file"]:
        path = Path(options["var_file"])
        variables.update(parse_document(path.read_text(), str(path)))
    for pair in options["var_pairs"]:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"{pair!r} is not KEY=VALUE", param_hint="--var")
        variables[key] = value
    return variables


def _parse_address(value: str, param_hint: str) -> InstanceAddress:
    try:
        return InstanceAddress.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint=param_hint) from exc


def _build_planner(config: str, options: dict) -> Planner:
    variables = _parse_variables(options)
    configuration = load_path(config)
    store = _open_store(options)
    return Planner(configuration, FileProvider(options["provider_file"]), store, variables)


def _plan_exit_code(plan: Plan) -> int:
    if plan.conflicts:
        return EXIT_DRIFT_CONFLICT
    if plan.is_destructive:
        return EXIT_CHANGES_PENDING
    return EXIT_OK


def _post_reports(plan: Plan, options: dict) -> None:
    analyzed = analyze_plan(plan)
    if options["post_slack"]:
        webhook_url = os.environ.get("DRIFTPLAN_SLACK_WEBHOOK")
        if not webhook_url:
            click.echo("Error: DRIFTPLAN_SLACK_WEBHOOK env var not set.", err=True)
            sys.exit(EXIT_CONFIG_ERROR)
        post_to_slack(report=format_markdown(analyzed, redact=True), webhook_url=webhook_url)

    if options["post_github_pr"] is not None:
        token = os.environ.get("GITHUB_TOKEN")
        repo = os.environ.get("GITHUB_REPO")
        if not token or not repo:
            click.echo("Error: GITHUB_TOKEN and GITHUB_REPO env vars required.", err=True)
            sys.exit(EXIT_CONFIG_ERROR)
        post_to_github_pr(
            body=format_markdown(analyzed, redact=True),
            repo=repo,
            pr_number=options["post_github_pr"],
            token=token,
        )


def _execute(planner: Planner, result: Plan, options: dict) -> None:
    output_format = options["output_format"]
    click.echo(FORMATTERS[output_format](analyze_plan(result), redact=options["redact_values"]))
    if not result.has_changes and not result.drift:
        sys.exit(EXIT_OK)
    if not options["auto_approve"]:
        click.confirm("Apply these changes?", abort=True)

    executor = Executor(
        planner.provider,
        planner.store,
        max_concurrent=options["max_concurrent"],
        prepare=planner.prepare_attributes,
    )
    previous = signal.signal(signal.SIGINT, lambda signum, frame: executor.cancel())
    try:
        with _handle_errors():
            outcome = executor.apply(result)
    finally:
        signal.signal(signal.SIGINT, previous)

    click.echo(format_apply(outcome, output_format))
    sys.exit(EXIT_OK if outcome.ok else EXIT_CHANGES_PENDING)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv).")
def main(verbose):
    """Plan and apply desired-state reconciliation."""
    _configure_logging(verbose)


@main.command()
@with_options(CONFIG_OPTIONS)
def validate(config, **options):
    """Check a configuration for structural errors without touching any provider."""
    with _handle_errors():
        configuration = load_path(config)
        DependencyGraph(configuration)
        Resolver(configuration, _parse_variables(options))
    click.echo(
        f"Configuration is valid: {len(configuration.resources)} resources, "
        f"{len(configuration.data_sources)} data sources."
    )


@main.command()
@with_options(CONFIG_OPTIONS, PLAN_OPTIONS)
def plan(config, **options):
    """Show the changes needed to reconcile actual state with the configuration."""
    replace = [_parse_address(r, "--replace") for r in options["replace"]]
    with _handle_errors():
        planner = _build_planner(config, options)
        result = planner.plan(refresh=options["refresh"], replace=replace)

    analyzed = analyze_plan(result)
    click.echo(FORMATTERS[options["output_format"]](analyzed, redact=options["redact_values"]))
    _post_reports(result, options)
    sys.exit(_plan_exit_code(result))


@main.command()
@with_options(CONFIG_OPTIONS, PLAN_OPTIONS, APPLY_OPTIONS)
def apply(config, **options):
    """Plan, confirm and execute the changes."""
    replace = [_parse_address(r, "--replace") for r in options["replace"]]
    with _handle_errors():
        planner = _build_planner(config, options)
        result = planner.plan(refresh=options["refresh"], replace=replace)
    _post_reports(result, options)
    _execute(planner, result, options)


@main.command()
@with_options(CONFIG_OPTIONS, PLAN_OPTIONS, APPLY_OPTIONS)
def destroy(config, **options):
    """Delete every resource recorded in the state."""
    with _handle_errors():
        planner = _build_planner(config, options)
        result = planner.plan(refresh=options["refresh"], destroy=True)
    _post_reports(result, options)
    _execute(planner, result, options)


@main.command()
@with_options(CONFIG_OPTIONS)
@click.option(
    "--declarations", is_flag=True, help="Show declared resources instead of expanded instances."
)
def graph(config, declarations, **options):
    """Print the dependency graph in Graphviz DOT format."""
    with _handle_errors():
        if declarations:
            dependency_graph = DependencyGraph(load_path(config)).graph
        else:
            planner = _build_planner(config, options)
            planner.plan(refresh=False)
            dependency_graph = planner.instances.graph
    click.echo(to_dot(dependency_graph.edges, dependency_graph.nodes))


@main.group()
def state():
    """Inspect and edit recorded state."""


@state.command("list")
@with_options(STATE_OPTIONS)
def state_list(**options):
    """List recorded instance addresses."""
    with _handle_errors():
        store = _open_store(options)
    for record in store.records():
        suffix = " (tainted)" if record.tainted else ""
        click.echo(f"{record.address}\t{record.resource_id}{suffix}")


@state.command("show")
@click.argument("address")
@with_options(STATE_OPTIONS)
def state_show(address, **options):
    """Show the recorded state of one instance."""
    instance = _parse_address(address, "ADDRESS")
    with _handle_errors():
        store = _open_store(options)
    record = store.get(instance)
    if record is None:
        click.echo(f"Error: {address} is not in the state.", err=True)
        sys.exit(EXIT_CHANGES_PENDING)
    click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))


@state.command("rm")
@click.argument("address")
@with_options(STATE_OPTIONS)
def state_rm(address, **options):
    """Forget an instance without destroying it."""
    instance = _parse_address(address, "ADDRESS")
    with _handle_errors():
        store = _open_store(options)
        record = store.remove(instance)
        if record is None:
            click.echo(f"Error: {address} is not in the state.", err=True)
            sys.exit(EXIT_CHANGES_PENDING)
        store.save()
    click.echo(f"Removed {address} ({record.resource_id}) from the state.")
