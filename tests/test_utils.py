"""Utility module tests: devices, pytrees and IO."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import jax
import jax.numpy as jnp
import pytest

from marian_jax.config import Config, LoggingConfig
from marian_jax.utils.devices import device_platform, resolve_device
from marian_jax.utils.io import MetricsWriter, add_file_logging, create_run_dir, setup_python_logging
from marian_jax.utils.tree import param_count, tree_allclose


def test_resolve_device_on_cpu() -> None:
    dev = resolve_device("cpu")
    assert dev.platform == "cpu"
    assert resolve_device(None) == jax.devices()[0]
    with pytest.raises(ValueError, match="out of range"):
        resolve_device("cpu", 10_000)
    with pytest.raises(RuntimeError, match="allow_cpu"):
        resolve_device("cpu", allow_cpu=False)


def test_device_platform() -> None:
    assert device_platform(jnp.ones(2)) == "cpu"
    assert device_platform(object()) is None


def test_param_count_and_allclose() -> None:
    tree = {"a": jnp.ones((2, 3)), "b": jnp.zeros(4)}
    assert param_count(tree) == 10
    assert tree_allclose(tree, {"a": jnp.ones((2, 3)), "b": jnp.zeros(4)})
    assert not tree_allclose(tree, {"a": jnp.ones((2, 3)), "b": jnp.ones(4)})
    assert not tree_allclose(tree, {"a": jnp.ones((3, 2)), "b": jnp.zeros(4)})
    assert not tree_allclose(tree, {"a": jnp.ones((2, 3))})


def test_metrics_writer_appends_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "m" / "metrics.jsonl"
    with MetricsWriter(path) as w:
        w.write({"step": 1, "loss": 2.5})
    with MetricsWriter(path) as w:
        w.write({"step": 2, "loss": 1.5})
    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert [r["step"] for r in rows] == [1, 2]


def test_create_run_dir_snapshots_config(tmp_path: Path) -> None:
    cfg = Config(logging=LoggingConfig(run_dir=str(tmp_path / "run")))
    yaml_path = tmp_path / "cfg.yaml"
    yaml_path.write_text("smoke:\n  steps: 1\n")

    run_dir = create_run_dir(cfg, config_path=yaml_path)

    assert run_dir == tmp_path / "run"
    resolved = json.loads((run_dir / "config_resolved.json").read_text())
    assert resolved["logging"]["run_dir"] == str(tmp_path / "run")
    assert (run_dir / "config_original.yaml").read_text() == yaml_path.read_text()


def test_logging_setup_filters_jax_info(tmp_path: Path) -> None:
    setup_python_logging("INFO", use_rich=False)
    root = logging.getLogger()
    assert len(root.handlers) == 1
    console = root.handlers[0]
    assert not console.filter(logging.LogRecord("jax._src", logging.INFO, "", 0, "x", None, None))
    assert console.filter(logging.LogRecord("marian_jax.graph", logging.INFO, "", 0, "x", None, None))

    log_path = tmp_path / "run.log"
    add_file_logging(log_path, level="INFO")
    add_file_logging(log_path, level="INFO")
    assert len(root.handlers) == 2
