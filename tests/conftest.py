"""Test session configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

# Tests run on CPU regardless of what accelerators are visible.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import pytest

from marian_jax.config import Config, load_config
from marian_jax.graph import ExpressionGraph


@pytest.fixture
def graph() -> ExpressionGraph:
    """Fresh training graph with a fixed seed."""
    return ExpressionGraph(seed=0)


@pytest.fixture
def small_smoke_cfg(tmp_path: Path) -> Config:
    """Smoke config that trains a few steps into tmp_path."""
    return load_config(
        None,
        overrides=[
            "smoke.steps=3",
            "smoke.log_every=1",
            "smoke.batch_size=2",
            "smoke.src_len=3",
            "smoke.trg_len=4",
            "smoke.vocab_size=11",
            "smoke.dim_emb=8",
            "logging.console_use_rich=false",
            f"logging.run_dir={tmp_path / 'run'}",
        ],
    )


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """Undo handler changes made by setup_python_logging / add_file_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
