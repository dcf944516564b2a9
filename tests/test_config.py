"""Config loading and validation tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import jax.numpy as jnp
import pytest

from marian_jax.config import (
    Config,
    CostConfig,
    dtype_from_str,
    load_config,
    validate_config,
)


def test_defaults_validate() -> None:
    cfg = load_config(None)
    assert cfg == Config()
    assert cfg.to_dict()["optim"]["algorithm"] == "adam"


def test_load_yaml_and_overrides(tmp_path: Path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text("optim:\n  algorithm: sgd\n  eta: 0.5\nsmoke:\n  steps: 7\n")

    cfg = load_config(path, overrides=["smoke.steps=9", "cost.guided_alignment=true", "graph.platform=cpu"])

    assert cfg.optim.algorithm == "sgd"
    assert cfg.optim.eta == 0.5
    assert cfg.smoke.steps == 9
    assert cfg.cost.guided_alignment is True
    assert cfg.graph.platform == "cpu"


def test_repo_smoke_config_loads() -> None:
    path = Path(__file__).resolve().parents[1] / "configs" / "smoke.yaml"
    cfg = load_config(path)
    assert cfg.cost.cost_type == "ce-mean-words"
    assert cfg.cost.guided_alignment


@pytest.mark.parametrize(
    ("override", "message"),
    [
        ("smoke.bogus=1", "Unknown config key"),
        ("nosuch.steps=1", "Unknown config key"),
        ("smoke.steps", "Invalid override"),
        ("graph.allow_cpu=maybe", "Expected boolean"),
    ],
)
def test_bad_overrides_raise(override: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        load_config(None, overrides=[override])


def test_unknown_yaml_keys_raise(tmp_path: Path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text("trainer:\n  steps: 1\n")
    with pytest.raises(ValueError, match="Unknown config section"):
        load_config(path)
    path.write_text("smoke:\n  stepz: 1\n")
    with pytest.raises(TypeError):
        load_config(path)


def test_validation_rejects_invalid_values() -> None:
    base = Config()
    cases: list[tuple[Callable[[Config], Config], str]] = [
        (lambda c: replace(c, optim=replace(c.optim, eta=0.0)), "optim.eta"),
        (lambda c: replace(c, optim=replace(c.optim, algorithm="rmsprop")), "optim.algorithm"),
        (lambda c: replace(c, optim=replace(c.optim, adam_b2=1.0)), "adam_b2"),
        (lambda c: replace(c, cost=replace(c.cost, cost_type="hinge")), "cost.cost_type"),
        (lambda c: replace(c, cost=replace(c.cost, label_smoothing=1.0)), "label_smoothing"),
        (lambda c: replace(c, cost=replace(c.cost, guided_alignment_cost="kl")), "guided_alignment_cost"),
        (lambda c: replace(c, smoke=replace(c.smoke, steps=0)), "smoke.steps"),
        (lambda c: replace(c, smoke=replace(c.smoke, dropout=1.0)), "smoke.dropout"),
        (lambda c: replace(c, graph=replace(c.graph, device_index=-1)), "device_index"),
        (lambda c: replace(c, logging=replace(c.logging, level="TRACE")), "logging.level"),
        (lambda c: replace(c, logging=replace(c.logging, log_file=" ")), "log_file"),
    ]
    for mutate, needle in cases:
        with pytest.raises(ValueError, match="Config validation failed") as exc:
            validate_config(mutate(base))
        assert needle in str(exc.value)


def test_cost_config_bridges_to_options() -> None:
    opts = CostConfig(cost_type="ce-sum", guided_alignment_weight=2.0).to_options()
    assert opts.get("cost-type", str) == "ce-sum"
    assert opts.get("label-smoothing", float) == 0.0
    assert opts.get("guided-alignment-cost", str) == "mse"
    assert opts.get("guided-alignment-weight", float) == 2.0


def test_dtype_from_str() -> None:
    assert dtype_from_str("float32") == jnp.float32
    assert dtype_from_str("bfloat16") == jnp.bfloat16
    with pytest.raises(ValueError, match="Unsupported dtype"):
        dtype_from_str("float16")
