"""Console logging, run directories and JSONL metrics.

Plain IO:
- a run directory holding the resolved config and metrics.jsonl
- JSONL is append-only and survives a crash mid-run
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from marian_jax.config import Config

_NOISY_CONSOLE_PREFIXES = ("jax", "jaxlib", "absl")
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


class _ConsoleNoiseFilter(logging.Filter):
    """Hide third-party INFO chatter from the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(_NOISY_CONSOLE_PREFIXES):
            return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    handler: logging.Handler
    if use_rich:
        from rich.logging import RichHandler

        handler = RichHandler(show_time=True, show_level=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Replace the root logger's handlers with one console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: Use Rich for console formatting.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> None:
    """Attach a file handler to the root logger (once per path).

    :param Path path: Log file path.
    :param str level: Log level name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(path):
            return
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    root.addHandler(file_handler)


def create_run_dir(cfg: Config, *, config_path: str | Path | None = None) -> Path:
    """Create the run directory and snapshot the config into it.

    With `logging.run_dir` unset, a fresh `runs/<project>/<stamp>_<name>` is
    created. A configured run_dir may already exist; the snapshot is then
    overwritten.

    :param Config cfg: Resolved configuration.
    :param config_path: Original YAML path, copied alongside when given.
    :return Path: The run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        run_dir.mkdir(parents=True, exist_ok=True)
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
        run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / "config_resolved.json").write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True))
    if config_path is not None:
        src = Path(config_path)
        if src.exists():
            (run_dir / "config_original.yaml").write_text(src.read_text())
    return run_dir


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        """Append one row.

        :param dict[str, Any] row: JSON-serializable metrics.
        """
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
