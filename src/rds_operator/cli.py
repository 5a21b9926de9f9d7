"""RDS Operator local driver CLI (rds-operator).

Runs handlers the way the host scheduler would, one tick at a time, so a
reconciliation can be stepped through against a real account.

Usage:
    rds-operator tick db-instance update --request req.yaml --context ctx.json
    rds-operator run db-instance update --request req.yaml --context ctx.json
    rds-operator show-context ctx.json
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, HandlerConfig
from .main import (
    ACTIONS,
    DEFAULT_CONFIGS,
    RESOURCE_TYPES,
    build_clients,
    handle_request,
    setup_logging,
)
from .progress import ProgressEvent
from .request_logger import RequestLogger
from .spec_loader import SpecLoadError, load_context, load_request, save_context

DEFAULT_CONTEXT_FILE = ".rds-operator-context.json"
DEFAULT_MAX_TICKS = 1000

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _load_config(resource: str, from_env: bool) -> HandlerConfig:
    if not from_env:
        return DEFAULT_CONFIGS[resource]
    try:
        return HandlerConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _tick(
    resource: str,
    action: str,
    request_path: Path,
    context_path: Path,
    region: str | None,
    config: HandlerConfig,
) -> ProgressEvent:
    try:
        request = load_request(request_path, resource)
        context = load_context(context_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    effective_region = region or request.region
    if not effective_region:
        raise click.ClickException("No region given: pass --region or set 'region' in the request")

    request_logger = RequestLogger(RESOURCE_TYPES[resource], request.client_request_token or "")
    clients = build_clients(effective_region, None, request_logger)
    result = handle_request(resource, action, request, context, clients, config)

    try:
        save_context(context_path, result.context)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    return result


@click.group()
@click.version_option(version="0.1.0", prog_name="rds-operator")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Log level",
)
def cli(log_level: str) -> None:
    """RDS Operator - stateless, resumable RDS reconciliation handlers."""
    setup_logging(getattr(logging, log_level.upper()))


def _common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option(
        "--env-config/--default-config",
        default=False,
        help="Read RDS_OPERATOR_* environment variables instead of the built-in preset",
    )(func)
    func = click.option("--region", "-r", envvar="AWS_REGION", help="AWS region")(func)
    func = click.option(
        "--context",
        "context_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=DEFAULT_CONTEXT_FILE,
        show_default=True,
        help="Progress context file, read before and written after the tick",
    )(func)
    func = click.option(
        "--request",
        "request_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        required=True,
        help="Handler request (YAML or JSON)",
    )(func)
    func = click.argument("action", type=click.Choice(ACTIONS))(func)
    func = click.argument("resource", type=click.Choice(sorted(RESOURCE_TYPES)))(func)
    return func


@cli.command()
@_common_options
def tick(
    resource: str,
    action: str,
    request_path: Path,
    context_path: Path,
    region: str | None,
    env_config: bool,
) -> None:
    """Run a single handler invocation and print the resulting event."""
    config = _load_config(resource, env_config)
    result = _tick(resource, action, request_path, context_path, region, config)
    click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    if result.is_failed:
        raise SystemExit(1)


@cli.command()
@_common_options
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_TICKS,
    show_default=True,
    help="Give up after this many invocations",
)
def run(
    resource: str,
    action: str,
    request_path: Path,
    context_path: Path,
    region: str | None,
    env_config: bool,
    max_ticks: int,
) -> None:
    """Invoke a handler repeatedly, honouring callback delays, until it finishes."""
    config = _load_config(resource, env_config)
    for attempt in range(1, max_ticks + 1):
        result = _tick(resource, action, request_path, context_path, region, config)
        if not result.is_in_progress:
            click.echo(json.dumps(result.to_dict(), indent=2, default=str))
            if result.is_failed:
                raise SystemExit(1)
            return
        click.echo(
            f"tick {attempt}: IN_PROGRESS, next invocation in "
            f"{result.callback_delay_seconds}s",
            err=True,
        )
        time.sleep(result.callback_delay_seconds)
    raise click.ClickException(f"Still in progress after {max_ticks} invocations")


@cli.command("show-context")
@click.argument("context_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def show_context(context_path: Path) -> None:
    """Print a persisted progress context, grouped by section."""
    try:
        context = load_context(context_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    for title, values in (
        ("Completed steps", context.markers),
        ("Timestamps", context.timestamps),
        ("Scratch", context.scratch),
        ("Attempts", context.attempts),
    ):
        click.echo(f"{title}:")
        if not values:
            click.echo("  (none)")
        for key, value in sorted(values.items()):
            click.echo(f"  {key}: {value}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
