"""Configuration for marian_jax.

One config system: if a knob doesn't live in these dataclasses, it doesn't
exist. YAML files for readability, dot-path overrides for quick changes.

The loader is strict: unknown keys and invalid values fail fast with a message
naming the field to fix.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml

from marian_jax.options import Options

if TYPE_CHECKING:
    import jax.numpy as jnp

Algorithm = Literal["sgd", "adam"]
CostType = Literal["ce-mean", "cross-entropy", "ce-mean-words", "ce-sum", "perplexity", "ce-rescore"]
AlignmentCostType = Literal["mse", "mult", "ce"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

_COST_TYPES = ("ce-mean", "cross-entropy", "ce-mean-words", "ce-sum", "perplexity", "ce-rescore")
_ALIGNMENT_COST_TYPES = ("mse", "mult", "ce")


@dataclass(frozen=True)
class GraphConfig:
    """Expression graph placement and numerics."""

    seed: int = 0
    # None => JAX default backend
    platform: str | None = None
    device_index: int = 0
    allow_cpu: bool = True
    dtype: Literal["float32", "bfloat16"] = "float32"


@dataclass(frozen=True)
class OptimConfig:
    """Constant-rate SGD or Adam."""

    algorithm: Algorithm = "adam"
    eta: float = 1e-3
    adam_b1: float = 0.9
    adam_b2: float = 0.999
    adam_eps: float = 1e-8


@dataclass(frozen=True)
class CostConfig:
    """Training cost; mirrors the hyphenated option keys model code reads."""

    cost_type: CostType = "ce-mean"
    label_smoothing: float = 0.0
    guided_alignment: bool = False
    guided_alignment_cost: AlignmentCostType = "mse"
    guided_alignment_weight: float = 0.1

    def to_options(self) -> Options:
        """Bridge into an `Options` dictionary.

        :return Options: Keys `cost-type`, `label-smoothing`,
            `guided-alignment-cost`, `guided-alignment-weight`.
        """
        return Options(
            {
                "cost-type": self.cost_type,
                "label-smoothing": float(self.label_smoothing),
                "guided-alignment-cost": self.guided_alignment_cost,
                "guided-alignment-weight": float(self.guided_alignment_weight),
            }
        )


@dataclass(frozen=True)
class SmokeConfig:
    """Fake-batch training run used to check an installation end to end."""

    steps: int = 20
    batch_size: int = 4
    src_len: int = 5
    trg_len: int = 6
    vocab_size: int = 32
    dim_emb: int = 16
    dropout: float = 0.0
    log_every: int = 5


@dataclass(frozen=True)
class LoggingConfig:
    """Console logging, run directory and metrics output."""

    project: str = "marian-jax"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "smoke.log"


@dataclass(frozen=True)
class Config:
    """Top-level configuration."""

    graph: GraphConfig = GraphConfig()
    optim: OptimConfig = OptimConfig()
    cost: CostConfig = CostConfig()
    smoke: SmokeConfig = SmokeConfig()
    logging: LoggingConfig = LoggingConfig()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Return a copy of `obj` with the field at `path` set from a string.

    Example: path="smoke.steps", raw_value="4"

    :param Any obj: Root dataclass.
    :param str path: Dot-separated field path.
    :param str raw_value: Value, cast to the current field's type.
    :raises ValueError: If the path names an unknown field.
    :return Any: New root dataclass.
    """
    parts = path.split(".")
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    cur_new = replace(cur, **{leaf: _cast_like(getattr(cur, leaf), raw_value)})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast an override string to the type of the value it replaces.

    :param Any old: Current value.
    :param str raw: Override string.
    :raises ValueError: If the string does not parse as that type.
    :return Any: Cast value.
    """
    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        parsed = yaml.safe_load(raw)
        return raw if parsed is None else parsed
    return raw


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section {name!r} must be a mapping, got {type(value).__name__}")
    return value


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Build Config from parsed YAML; unknown keys raise TypeError from the dataclass."""
    unknown = set(data) - {"graph", "optim", "cost", "smoke", "logging"}
    if unknown:
        raise ValueError(f"Unknown config section(s): {sorted(unknown)}")
    return Config(
        graph=GraphConfig(**_section(data, "graph")),
        optim=OptimConfig(**_section(data, "optim")),
        cost=CostConfig(**_section(data, "cost")),
        smoke=SmokeConfig(**_section(data, "smoke")),
        logging=LoggingConfig(**_section(data, "logging")),
    )


def load_config(path: str | Path | None = None, overrides: Iterable[str] | None = None) -> Config:
    """Load a YAML config (or the defaults) and apply dot-path overrides.

    Overrides look like "smoke.steps=10".

    :param path: YAML file, or None for all defaults.
    :param overrides: Dot-path overrides applied in order.
    :raises ValueError: On malformed overrides or failed validation.
    :return Config: Validated configuration.
    """
    data: dict[str, Any] = {}
    if path is not None:
        with Path(path).open("r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping at top level")

    cfg = _from_nested_dict(data)

    for o in overrides or ():
        if "=" not in o:
            raise ValueError(f"Invalid override {o!r}. Expected format like smoke.steps=123")
        k, v = o.split("=", 1)
        cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    raise ValueError(f"Config validation failed: {msg}")


def _validate_graph(cfg: Config) -> None:
    if cfg.graph.device_index < 0:
        _vfail(f"graph.device_index must be >= 0, got {cfg.graph.device_index}")
    if cfg.graph.dtype not in ("float32", "bfloat16"):
        _vfail(f"graph.dtype must be 'float32' or 'bfloat16', got {cfg.graph.dtype!r}")


def _validate_optim(cfg: Config) -> None:
    if cfg.optim.algorithm not in ("sgd", "adam"):
        _vfail(f"optim.algorithm must be 'sgd' or 'adam', got {cfg.optim.algorithm!r}")
    if cfg.optim.eta <= 0:
        _vfail(f"optim.eta must be positive, got {cfg.optim.eta}")
    if cfg.optim.adam_b1 <= 0 or cfg.optim.adam_b1 >= 1:
        _vfail(f"optim.adam_b1 must be in (0, 1), got {cfg.optim.adam_b1}")
    if cfg.optim.adam_b2 <= 0 or cfg.optim.adam_b2 >= 1:
        _vfail(f"optim.adam_b2 must be in (0, 1), got {cfg.optim.adam_b2}")
    if cfg.optim.adam_eps <= 0:
        _vfail(f"optim.adam_eps must be positive, got {cfg.optim.adam_eps}")


def _validate_cost(cfg: Config) -> None:
    if cfg.cost.cost_type not in _COST_TYPES:
        _vfail(f"cost.cost_type must be one of {list(_COST_TYPES)}, got {cfg.cost.cost_type!r}")
    if not 0.0 <= cfg.cost.label_smoothing < 1.0:
        _vfail(f"cost.label_smoothing must be in [0, 1), got {cfg.cost.label_smoothing}")
    if cfg.cost.guided_alignment_cost not in _ALIGNMENT_COST_TYPES:
        _vfail(
            f"cost.guided_alignment_cost must be one of {list(_ALIGNMENT_COST_TYPES)}, "
            f"got {cfg.cost.guided_alignment_cost!r}"
        )
    if cfg.cost.guided_alignment_weight < 0:
        _vfail(f"cost.guided_alignment_weight must be >= 0, got {cfg.cost.guided_alignment_weight}")


def _validate_smoke(cfg: Config) -> None:
    s = cfg.smoke
    for name in ("steps", "batch_size", "src_len", "trg_len", "vocab_size", "dim_emb", "log_every"):
        value = getattr(s, name)
        if value <= 0:
            _vfail(f"smoke.{name} must be positive, got {value}")
    if not 0.0 <= s.dropout < 1.0:
        _vfail(f"smoke.dropout must be in [0, 1), got {s.dropout}")


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG, INFO, WARNING or ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")
    if not cfg.logging.metrics_file.strip():
        _vfail("logging.metrics_file must be non-empty")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_graph(cfg)
    _validate_optim(cfg)
    _validate_cost(cfg)
    _validate_smoke(cfg)
    _validate_logging(cfg)


def dtype_from_str(name: str) -> jnp.dtype:
    """Map a dtype string to a JAX dtype.

    :param str name: "float32" or "bfloat16".
    :raises ValueError: For any other name.
    :return jnp.dtype: The dtype.
    """
    import jax.numpy as jnp

    table = {
        "float32": jnp.float32,
        "bfloat16": jnp.bfloat16,
    }
    if name not in table:
        raise ValueError(f"Unsupported dtype {name!r}. Expected one of {sorted(table)}")
    return table[name]
