"""Main CLI entry point: the Click group and its subcommands."""

from __future__ import annotations

import json
from dataclasses import replace

import click

from marian_jax._version import __version__
from marian_jax.config import load_config
from marian_jax.smoke import run_smoke
from marian_jax.utils.io import setup_python_logging

BANNER = f"""
marian-jax: Marian-style expression graphs on JAX
Version: {__version__}
""".strip("\n")


def print_banner() -> None:
    click.echo(BANNER)


@click.group()
@click.version_option(version=__version__, prog_name="marian-jax")
def cli() -> None:
    """marian-jax: named-parameter expression graphs, operators and optimizers on JAX."""


@cli.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False), required=False)
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. smoke.steps=50 (repeatable).",
)
@click.option("--run-dir", type=click.Path(), default=None, help="Override logging.run_dir.")
@click.option("--no-banner", is_flag=True, help="Skip the startup banner.")
def smoke(config: str | None, overrides: tuple[str, ...], run_dir: str | None, no_banner: bool) -> None:
    """Train a tiny model on a fake batch and report the loss.

    CONFIG is an optional YAML config file; defaults are used without one.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except (ValueError, TypeError) as e:
        raise click.ClickException(str(e)) from e

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)
    if not no_banner:
        print_banner()

    summary = run_smoke(cfg, config_path=config)
    click.echo(json.dumps(summary))
