"""Optimizer wrapper over optax.

The wrapper is created without a graph. On the first `update(graph)` it binds
to the graph's trainable parameters *as they exist at that moment* and
initializes the optax state. Parameters registered later are never updated by
this wrapper.

States:
    UNBOUND --update(g)--> BOUND(g) --update(g)--> BOUND(g)
    BOUND(g) --update(h), h is not g--> RuntimeError

Each update is exactly one step with the gradients of the last backward pass,
used as-is (no rescaling by sample count).
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any

import equinox as eqx
import jax
import optax

if TYPE_CHECKING:
    from marian_jax.config import OptimConfig
    from marian_jax.graph import ExpressionGraph

logger = logging.getLogger(__name__)


class AlgorithmType(enum.Enum):
    SGD = "sgd"
    ADAM = "adam"


class BindingState(enum.Enum):
    UNBOUND = "unbound"
    BOUND = "bound"


@eqx.filter_jit
def _step(
    tx: optax.GradientTransformation, grads: Any, opt_state: Any, params: Any
) -> tuple[Any, Any]:
    updates, opt_state = tx.update(grads, opt_state, params)
    return optax.apply_updates(params, updates), opt_state


class OptimizerWrapper:
    """Lazily bound SGD/Adam learner for an `ExpressionGraph`."""

    def __init__(
        self,
        eta: float,
        algorithm: AlgorithmType | str = AlgorithmType.ADAM,
        *,
        adam_b1: float = 0.9,
        adam_b2: float = 0.999,
        adam_eps: float = 1e-8,
    ):
        """Create an unbound optimizer.

        :param float eta: Learning rate (constant).
        :param algorithm: AlgorithmType or its value ("sgd", "adam").
        :param float adam_b1: Adam first-moment decay.
        :param float adam_b2: Adam second-moment decay.
        :param float adam_eps: Adam epsilon.
        """
        self.eta = float(eta)
        self.algorithm = AlgorithmType(algorithm)
        if self.algorithm is AlgorithmType.SGD:
            self._tx = optax.sgd(self.eta)
        else:
            self._tx = optax.adam(self.eta, b1=adam_b1, b2=adam_b2, eps=adam_eps)

        self._graph: ExpressionGraph | None = None
        self._names: tuple[str, ...] = ()
        self._opt_state: Any = None
        self._steps = 0

    @property
    def state(self) -> BindingState:
        return BindingState.UNBOUND if self._graph is None else BindingState.BOUND

    @property
    def bound_names(self) -> tuple[str, ...]:
        """Names of the parameters this optimizer updates (empty until bound)."""
        return self._names

    @property
    def opt_state(self) -> Any:
        return self._opt_state

    @property
    def steps(self) -> int:
        return self._steps

    def _bind(self, graph: ExpressionGraph) -> None:
        self._graph = graph
        self._names = tuple(graph.trainable_names())
        self._opt_state = self._tx.init(graph.values(list(self._names)))
        logger.info(
            "Optimizer %s(eta=%g) bound to %d parameters",
            self.algorithm.value,
            self.eta,
            len(self._names),
        )

    def update(self, graph: ExpressionGraph) -> None:
        """Apply one step to the bound parameters using `graph`'s gradients.

        :param ExpressionGraph graph: Graph holding parameters and gradients.
        :raises RuntimeError: If already bound to a different graph, or a bound
            parameter has no gradient (backward not run since the last clear).
        """
        if self._graph is None:
            self._bind(graph)
        elif graph is not self._graph:
            raise RuntimeError("OptimizerWrapper.update: optimizer is already bound to a different graph")

        grads: dict[str, jax.Array] = {}
        for name in self._names:
            g = graph.grad(name)
            if g is None:
                raise RuntimeError(f"OptimizerWrapper.update: no gradient for parameter {name!r}; run backward first")
            grads[name] = g

        params = graph.values(list(self._names))
        new_params, self._opt_state = _step(self._tx, grads, self._opt_state, params)
        for name, value in new_params.items():
            graph.assign(name, value)
        self._steps += 1

    def __repr__(self) -> str:
        return f"OptimizerWrapper({self.algorithm.value}, eta={self.eta:g}, state={self.state.value})"


def optimizer(algorithm: AlgorithmType | str, eta: float) -> OptimizerWrapper:
    return OptimizerWrapper(eta, algorithm)


def build_optimizer(cfg: OptimConfig) -> OptimizerWrapper:
    """Build an optimizer from the `optim` config section."""
    return OptimizerWrapper(
        cfg.eta,
        cfg.algorithm,
        adam_b1=cfg.adam_b1,
        adam_b2=cfg.adam_b2,
        adam_eps=cfg.adam_eps,
    )
