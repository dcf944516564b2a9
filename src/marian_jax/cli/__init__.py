"""CLI entrypoints for marian_jax.

Invoked via the ``pyproject.toml`` entrypoint::

    marian-jax smoke configs/smoke.yaml -o smoke.steps=50

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from marian_jax.cli.main import cli
