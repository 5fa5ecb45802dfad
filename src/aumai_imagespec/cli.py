"""CLI entry point for aumai-imagespec."""

from __future__ import annotations

import logging
import sys

import click
import structlog

from .core import ImageAssembler, ReferenceResolver
from .errors import ImageSpecError
from .models import dump_spec, load_spec
from .settings import Settings


def _configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.WARNING)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _load_settings(verbose: bool) -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        click.echo(f"Error: invalid AUMAI_* environment settings: {exc}", err=True)
        sys.exit(1)
    _configure_logging("DEBUG" if verbose else settings.log_level)
    return settings


@click.group()
@click.version_option()
def main() -> None:
    """AumAI ImageSpec: reproducible container images from a YAML spec."""


@main.command("build")
@click.option(
    "-f",
    "--file",
    "spec_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Image spec YAML file.",
)
@click.option(
    "-t",
    "--tag",
    default=None,
    help="Reference to push to. Defaults to the spec's name; omit both to build only.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log every file written.")
def build_command(spec_path: str, tag: str | None, verbose: bool) -> None:
    """Build the image described by a spec file and optionally push it."""
    settings = _load_settings(verbose)
    assembler = ImageAssembler.from_settings(settings)
    try:
        spec = load_spec(spec_path)
        result = assembler.build(spec)
        target = tag or spec.name
        if target:
            click.echo(assembler.push(target, result.image))
        else:
            click.echo(result.digest)
    except KeyboardInterrupt:
        assembler.cancel()
        click.echo("Interrupted: build cancelled, nothing pushed.", err=True)
        sys.exit(130)
    except ImageSpecError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@main.command("resolve")
@click.option(
    "-f",
    "--file",
    "spec_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Image spec YAML file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log the resolved reference.")
def resolve_command(spec_path: str, verbose: bool) -> None:
    """Print the spec with its base image pinned to a digest."""
    settings = _load_settings(verbose)
    assembler = ImageAssembler.from_settings(settings)
    try:
        spec = load_spec(spec_path)
        resolved = ReferenceResolver(assembler.registry).resolve_spec(spec)
    except ImageSpecError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(dump_spec(resolved), nl=False)


if __name__ == "__main__":
    main()
