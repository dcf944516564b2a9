"""CLI and smoke-run tests."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

from click.testing import CliRunner

from marian_jax.cli import cli
from marian_jax.cli.main import BANNER, print_banner
from marian_jax.config import Config
from marian_jax.smoke import run_smoke


def test_print_banner_outputs_expected_text(capsys) -> None:
    print_banner()
    captured = capsys.readouterr()
    assert captured.out.rstrip("\n") == BANNER


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "marian-jax" in result.output


def test_run_smoke_writes_metrics(small_smoke_cfg: Config) -> None:
    summary = run_smoke(small_smoke_cfg)

    run_dir = Path(summary["run_dir"])
    rows = [json.loads(line) for line in (run_dir / "metrics.jsonl").read_text().splitlines()]
    assert [r["step"] for r in rows] == [1, 2, 3]
    assert all(r["loss"] > 0 for r in rows)
    assert summary["last_loss"] < summary["first_loss"]
    assert (run_dir / "config_resolved.json").exists()


def test_run_smoke_logs_parameter_device(small_smoke_cfg: Config, caplog) -> None:
    caplog.set_level(logging.INFO)
    run_smoke(small_smoke_cfg)
    assert any("trainable) on cpu" in r.getMessage() for r in caplog.records)


def test_run_smoke_with_guided_alignment_and_dropout(small_smoke_cfg: Config) -> None:
    cfg = replace(
        small_smoke_cfg,
        cost=replace(small_smoke_cfg.cost, guided_alignment=True, cost_type="ce-mean-words", label_smoothing=0.1),
        smoke=replace(small_smoke_cfg.smoke, dropout=0.2),
    )
    summary = run_smoke(cfg)
    assert summary["steps"] == 3


def test_smoke_command(tmp_path: Path) -> None:
    run_dir = tmp_path / "cli_run"
    result = CliRunner().invoke(
        cli,
        [
            "smoke",
            "--no-banner",
            "--run-dir",
            str(run_dir),
            "-o",
            "smoke.steps=2",
            "-o",
            "logging.console_use_rich=false",
        ],
    )
    assert result.exit_code == 0, result.output
    summary = json.loads(result.output.strip().splitlines()[-1])
    assert summary["steps"] == 2
    assert (run_dir / "metrics.jsonl").exists()


def test_smoke_command_reports_bad_override() -> None:
    result = CliRunner().invoke(cli, ["smoke", "-o", "smoke.steps=0"])
    assert result.exit_code != 0
    assert "Config validation failed" in result.output
