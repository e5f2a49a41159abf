# SPDX-License-Identifier: MPL-2.0
"""Main CLI entry point."""
import asyncio
import logging
import sys
from typing import Optional

import click

from veracity.core.config import AuditConfig, load_config
from veracity.core.exceptions import ConfigurationError, FetchFailed, MalformedInput
from veracity.core.reporting import (
    render_json,
    render_lockfile_json,
    render_lockfile_text,
    render_survey_json,
    render_survey_text,
    render_text,
)
from veracity.services.audit import Auditor

EXIT_ERROR = 1
EXIT_CONFIGURATION = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(config_path: Optional[str], time_budget: Optional[float]) -> AuditConfig:
    try:
        return load_config(config_path, time_budget=time_budget)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIGURATION)


@click.group()  # type: ignore[misc]
def cli() -> None:
    """Veracity: provenance and reproducibility audits for published crates."""


@cli.command()  # type: ignore[misc]
@click.argument("target")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="Path to a JSON configuration file")
@click.option("--time-budget", type=float, help="Overall time budget in seconds")
@click.option("--format", "-o", "output", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.option("--verbose", "-v", is_flag=True, help="Log progress and list every finding")
def audit(target: str, config_path: Optional[str], time_budget: Optional[float], output: str,
          verbose: bool) -> None:
    """Audit TARGET, given as name, name@version or pkg:cargo/name@version."""
    _configure_logging(verbose)
    config = _load(config_path, time_budget)
    auditor = Auditor(config)

    try:
        resolved = asyncio.run(auditor.resolve(target))
    except ValueError as e:
        click.echo(f"Invalid target: {e}", err=True)
        sys.exit(EXIT_ERROR)
    except FetchFailed as e:
        click.echo(f"Cannot resolve {target}: {e}", err=True)
        sys.exit(EXIT_ERROR)

    try:
        report = asyncio.run(auditor.audit(resolved))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIGURATION)

    click.echo(render_json(report) if output == "json" else render_text(report, verbose=verbose))


@cli.command("audit-lockfile")  # type: ignore[misc]
@click.argument("lockfile", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="Path to a JSON configuration file")
@click.option("--time-budget", type=float, help="Time budget per package in seconds")
@click.option("--format", "-o", "output", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.option("--verbose", "-v", is_flag=True, help="Log progress")
def audit_lockfile(lockfile: str, config_path: Optional[str], time_budget: Optional[float],
                   output: str, verbose: bool) -> None:
    """Audit every crates.io package pinned by LOCKFILE (a Cargo.lock)."""
    _configure_logging(verbose)
    config = _load(config_path, time_budget)
    auditor = Auditor(config)
    try:
        result = asyncio.run(auditor.audit_lockfile(lockfile))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIGURATION)
    except MalformedInput as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    click.echo(render_lockfile_json(result) if output == "json" else render_lockfile_text(result))


@cli.command()  # type: ignore[misc]
@click.option("--count", "-n", type=click.IntRange(min=1), default=100, show_default=True,
              help="Number of most downloaded crates to audit")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="Path to a JSON configuration file")
@click.option("--time-budget", type=float, help="Time budget per package in seconds")
@click.option("--format", "-o", "output", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.option("--verbose", "-v", is_flag=True, help="Log progress")
def survey(count: int, config_path: Optional[str], time_budget: Optional[float], output: str,
           verbose: bool) -> None:
    """Audit the most downloaded crates of the registry and summarize the results."""
    _configure_logging(verbose)
    config = _load(config_path, time_budget)
    auditor = Auditor(config)
    try:
        result = asyncio.run(auditor.survey(count))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIGURATION)
    except FetchFailed as e:
        click.echo(f"Cannot list popular crates: {e}", err=True)
        sys.exit(EXIT_ERROR)

    click.echo(render_survey_json(result) if output == "json" else render_survey_text(result))


@cli.command()  # type: ignore[misc]
def version() -> None:
    """Show version information."""
    from veracity import __version__

    click.echo(f"Veracity v{__version__}")


if __name__ == "__main__":
    cli()
