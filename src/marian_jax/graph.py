"""Named-parameter table, gradient map, and the backward pass.

`ExpressionGraph` owns:
- the parameter table: name -> Expression (one allocation per name)
- the parameter values: name -> jax.Array (replaced by optimizer updates)
- the gradient map: parameter Expression -> jax.Array | None

Backward is "replay and differentiate": the root's subgraph is re-evaluated
as a pure function of the trainable parameter values and differentiated with
`eqx.filter_value_and_grad`. Every registered parameter gets an entry; a
trainable parameter that does not feed the root gets zeros, a fixed one None.

Calling backward twice without an optimizer step in between recomputes the
same gradients (JAX does not accumulate); it does not add them up.

Single-writer: one graph, one optimizer, one thread.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np

from marian_jax.expr import Expression, _Node, bump_value_epoch, current_value_epoch, evaluate
from marian_jax.inits import Initializer
from marian_jax.ops import constant, dropout_mask
from marian_jax.shape import Shape, from_engine_shape, to_engine_shape
from marian_jax.utils.devices import resolve_device
from marian_jax.utils.tree import param_count

logger = logging.getLogger(__name__)


class ExpressionGraph:
    """Owner of named trainable parameters and their gradients."""

    def __init__(
        self,
        device: jax.Device | None = None,
        *,
        seed: int = 0,
        dtype: Any = jnp.float32,
        inference: bool = False,
    ):
        """Create an empty graph.

        :param device: Device for every allocation (default device if None).
        :param int seed: Seeds both the parameter-init PRNG and the host dropout RNG.
        :param dtype: Parameter/constant dtype.
        :param bool inference: If True, backward is refused.
        """
        self._device = device if device is not None else resolve_device(None)
        self._dtype = dtype
        self._inference = inference
        self._key = jax.random.PRNGKey(seed)
        self._rng = np.random.default_rng(seed)

        self._params: dict[str, Expression] = {}
        self._values: dict[str, jax.Array] = {}
        self._fixed: set[str] = set()
        self._grads: dict[Expression, jax.Array | None] = {}

    # ----------------------------------------------------------- settings

    def set_device(self, device: jax.Device | str | None = None, index: int = 0) -> None:
        """Select the allocation device. Only allowed before the first param.

        :param device: A jax.Device, a platform name ("cpu", "gpu"), or None for the default.
        :param int index: Device index when `device` is a platform name.
        :raises RuntimeError: If parameters already exist.
        """
        if self._params:
            raise RuntimeError("set_device: cannot change device after parameters were created")
        if not isinstance(device, jax.Device):
            device = resolve_device(device, index=index)
        self._device = device

    def get_device(self) -> jax.Device:
        return self._device

    @property
    def dtype(self) -> Any:
        return self._dtype

    @property
    def rng(self) -> np.random.Generator:
        """Host RNG used for dropout masks."""
        return self._rng

    def set_inference(self, inference: bool) -> None:
        self._inference = bool(inference)

    @property
    def inference(self) -> bool:
        return self._inference

    def reserve_workspace_mb(self, mb: int) -> None:
        # XLA manages its own memory pool.
        _ = mb

    def clear(self) -> None:
        """Forget gradients from the last backward pass."""
        for p in self._grads:
            self._grads[p] = None

    # --------------------------------------------------------- parameters

    def _next_key(self) -> jax.Array:
        self._key, sub = jax.random.split(self._key)
        return sub

    def param(self, name: str, shape: Shape | list[int] | tuple[int, ...], init: Initializer, fixed: bool = False) -> Expression:
        """Create or fetch the parameter `name`.

        :param str name: Unique parameter name.
        :param shape: Column-major shape.
        :param Initializer init: Used only on first creation.
        :param bool fixed: Fixed params are neither differentiated nor updated.
        :raises ValueError: If `name` exists with a different shape, or the
            initializer buffer does not match the shape.
        :return Expression: The parameter handle (same object on every call).
        """
        engine_shape = to_engine_shape(shape)
        existing = self._params.get(name)
        if existing is not None:
            if existing.shape.engine != engine_shape:
                raise ValueError(
                    f"param: requested shape {list(Shape(shape))} for existing parameter "
                    f"{name!r} does not match original shape {list(existing.shape)}"
                )
            return existing

        key = self._next_key() if init.needs_key else None
        value = init.materialize(engine_shape, key=key, dtype=self._dtype, device=self._device)
        p = Expression.parameter(self, name, value)
        self._params[name] = p
        self._values[name] = value
        self._grads[p] = None
        if fixed:
            self._fixed.add(name)
        logger.debug("param %s %s (%s)%s", name, list(Shape(shape)), init.kind, " fixed" if fixed else "")
        return p

    def get(self, name: str) -> Expression:
        """Look up a parameter; the empty Expression if absent."""
        return self._params.get(name, Expression.empty())

    @property
    def parameters(self) -> Mapping[str, Expression]:
        return MappingProxyType(self._params)

    def trainable_names(self) -> list[str]:
        return [n for n in self._params if n not in self._fixed]

    def is_fixed(self, name: str) -> bool:
        return name in self._fixed

    def value(self, name: str) -> jax.Array:
        return self._values[name]

    def values(self, names: list[str] | None = None) -> dict[str, jax.Array]:
        names = list(self._params) if names is None else names
        return {n: self._values[n] for n in names}

    def assign(self, name: str, value: jax.Array) -> None:
        """Replace a parameter's value (shape and dtype must be unchanged)."""
        old = self._values[name]
        if value.shape != old.shape:
            raise ValueError(f"assign: shape {list(from_engine_shape(value.shape))} != {list(from_engine_shape(old.shape))} for {name!r}")
        self._values[name] = value.astype(old.dtype)
        bump_value_epoch()

    def param_count(self) -> int:
        return param_count(self._values)

    # ---------------------------------------------------------- constants

    def constant(self, shape: Shape | list[int] | tuple[int, ...], init: Initializer, dtype: Any = None) -> Expression:
        return constant(shape, init, dtype=dtype or self._dtype, device=self._device)

    def dropout(self, prob: float, shape: Shape | list[int] | tuple[int, ...]) -> Expression:
        """Inverted-dropout mask drawn from this graph's host RNG."""
        return dropout_mask(prob, shape, rng=self._rng, device=self._device)

    # --------------------------------------------------- forward/backward

    def forward(self, *roots: Expression) -> list[jax.Array]:
        return [r.val() for r in roots]

    @property
    def gradients(self) -> Mapping[Expression, jax.Array | None]:
        return MappingProxyType(self._grads)

    def grad(self, name: str) -> jax.Array | None:
        return self._grads[self._params[name]]

    def backward(self, root: Expression) -> jax.Array:
        """Differentiate `root` w.r.t. every trainable parameter.

        A non-scalar root is summed first (seeding the reverse pass with ones).

        :param Expression root: Loss expression.
        :raises RuntimeError: In inference mode.
        :raises ValueError: If `root` is empty.
        :return jax.Array: The root's value.
        """
        if self._inference:
            raise RuntimeError("backward called on a graph in inference mode")
        root_node = root.node
        trainable = self.trainable_names()
        owned = {id(self._params[n].node): n for n in trainable}

        def loss_fn(params: dict[str, jax.Array]) -> tuple[jax.Array, jax.Array]:
            def lookup(node: _Node) -> jax.Array | None:
                name = owned.get(id(node))
                return params[name] if name is not None else None

            out = evaluate(root_node, lookup)
            return jnp.sum(out.astype(jnp.float32)), out

        (_, value), grads = eqx.filter_value_and_grad(loss_fn, has_aux=True)(self.values(trainable))

        for name, p in self._params.items():
            self._grads[p] = grads.get(name) if name not in self._fixed else None
        root_node.cache = (current_value_epoch(), value)
        return value

    def backprop(self, root: Expression) -> jax.Array:
        return self.backward(root)

    def __repr__(self) -> str:
        return f"ExpressionGraph(params={len(self._params)}, device={self._device})"
