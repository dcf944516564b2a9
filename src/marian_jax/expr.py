"""Expression handles over a dynamically emitted JAX graph.

JAX has no persistent graph nodes, so we keep a tiny one ourselves:

- every operator call emits a `_Node` recording (engine fn, input nodes)
- the node's abstract value is computed *immediately* with `jax.eval_shape`,
  so shape errors surface at the call site and no FLOPs are spent
- values are realized lazily by `evaluate`, which replays the DAG through the
  engine functions; the same replay is what `ExpressionGraph.backward`
  differentiates

An `Expression` is a handle. Copying it aliases the node; equality is node
identity. The empty Expression stands for "no operand supplied".
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import jax
import jax.numpy as jnp

from marian_jax.shape import ShapeView

if TYPE_CHECKING:
    from marian_jax.graph import ExpressionGraph

logger = logging.getLogger(__name__)

# Bumped whenever any graph assigns new parameter values; cached node values
# from an older epoch are recomputed.
_value_epoch = 0
_node_ids = itertools.count()


def bump_value_epoch() -> None:
    global _value_epoch
    _value_epoch += 1


def current_value_epoch() -> int:
    return _value_epoch


class _Node:
    __slots__ = ("uid", "kind", "fn", "inputs", "aval", "name", "data", "graph", "cache")

    def __init__(
        self,
        kind: str,
        aval: jax.ShapeDtypeStruct,
        *,
        name: str,
        fn: Callable[..., jax.Array] | None = None,
        inputs: tuple[_Node, ...] = (),
        data: jax.Array | None = None,
        graph: ExpressionGraph | None = None,
    ):
        self.uid = next(_node_ids)
        self.kind = kind  # "param" | "constant" | "op"
        self.aval = aval
        self.name = name
        self.fn = fn
        self.inputs = inputs
        self.data = data
        self.graph = graph
        self.cache: tuple[int, jax.Array] | None = None


def _topological_order(root: _Node) -> list[_Node]:
    """Post-order over the DAG below `root`, each node once, no recursion."""
    order: list[_Node] = []
    seen: set[int] = set()
    stack: list[tuple[_Node, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            order.append(node)
            continue
        if node.uid in seen:
            continue
        seen.add(node.uid)
        stack.append((node, True))
        for inp in reversed(node.inputs):
            if inp.uid not in seen:
                stack.append((inp, False))
    return order


ParamLookup = Callable[["_Node"], "jax.Array | None"]


def evaluate(root: _Node, lookup: ParamLookup | None = None) -> jax.Array:
    """Realize `root` by replaying its subgraph through the engine.

    :param _Node root: Node to evaluate.
    :param lookup: Optional override for parameter values (used while tracing
        for gradients). When given, cached values are neither read nor written.
    :return jax.Array: The node's value.
    """
    use_cache = lookup is None
    if use_cache and root.cache is not None and root.cache[0] == _value_epoch:
        return root.cache[1]

    values: dict[int, jax.Array] = {}
    for node in _topological_order(root):
        if use_cache and node.cache is not None and node.cache[0] == _value_epoch:
            values[node.uid] = node.cache[1]
            continue
        if node.kind == "param":
            v = lookup(node) if lookup is not None else None
            if v is None:
                assert node.graph is not None
                v = node.graph.value(node.name)
        elif node.kind == "constant":
            assert node.data is not None
            v = node.data
        else:
            assert node.fn is not None
            v = node.fn(*(values[i.uid] for i in node.inputs))
        values[node.uid] = v
        if use_cache:
            node.cache = (_value_epoch, v)
    return values[root.uid]


class Expression:
    """Handle to one graph node (or the empty sentinel)."""

    __slots__ = ("_node",)

    def __init__(self, node: _Node | None = None):
        self._node = node

    # ---------------------------------------------------------------- build

    @classmethod
    def empty(cls) -> Expression:
        return cls(None)

    @classmethod
    def apply(cls, fn: Callable[..., jax.Array], *inputs: Expression, name: str) -> Expression:
        """Emit an op node computing `fn(*input_values)`.

        The output shape/dtype is inferred with `jax.eval_shape` now.

        :param fn: Engine function over JAX arrays.
        :param inputs: Operand expressions (must be non-empty handles).
        :param str name: Diagnostic label.
        :raises ValueError: If an operand is the empty sentinel.
        :return Expression: Handle to the new node.
        """
        nodes = tuple(x.node for x in inputs)
        aval = jax.eval_shape(fn, *(n.aval for n in nodes))
        return cls(_Node("op", aval, name=name, fn=fn, inputs=nodes))

    @classmethod
    def from_array(cls, data: jax.Array, *, name: str = "constant") -> Expression:
        data = jnp.asarray(data)
        aval = jax.ShapeDtypeStruct(data.shape, data.dtype, weak_type=getattr(data, "weak_type", False))
        return cls(_Node("constant", aval, name=name, data=data))

    @classmethod
    def parameter(cls, graph: ExpressionGraph, name: str, value: jax.Array) -> Expression:
        aval = jax.ShapeDtypeStruct(value.shape, value.dtype)
        return cls(_Node("param", aval, name=name, graph=graph))

    # --------------------------------------------------------------- access

    @property
    def node(self) -> _Node:
        if self._node is None:
            raise ValueError("Operation on an empty Expression")
        return self._node

    @property
    def is_empty(self) -> bool:
        return self._node is None

    @property
    def shape(self) -> ShapeView:
        return ShapeView(self.node.aval.shape)

    @property
    def dtype(self) -> Any:
        return self.node.aval.dtype

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def is_param(self) -> bool:
        return self._node is not None and self._node.kind == "param"

    def val(self) -> jax.Array:
        """Realize this expression's tensor (runs a forward evaluation if needed)."""
        return evaluate(self.node)

    def scalar(self) -> float:
        """Return the value as a Python float.

        :raises ValueError: If the tensor does not hold exactly one element.
        """
        v = self.val()
        if v.size != 1:
            raise ValueError(f"scalar(): {self.name} has shape {list(self.shape)}, not a single element")
        return float(v.reshape(()))

    def dump(self) -> None:
        logger.info("%s %s =\n%s", self.name, list(self.shape), self.val())

    # ------------------------------------------------------------- identity

    def __bool__(self) -> bool:
        return self._node is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Expression):
            return NotImplemented
        return self._node is other._node

    def __ne__(self, other: object) -> bool:
        if not isinstance(other, Expression):
            return NotImplemented
        return self._node is not other._node

    def __hash__(self) -> int:
        return id(self._node)

    def __repr__(self) -> str:
        if self._node is None:
            return "Expression(<empty>)"
        return f"Expression({self._node.name}, shape={list(self.shape)}, dtype={self.dtype})"

    # ----------------------------------------------------------- arithmetic

    def __neg__(self) -> Expression:
        return Expression.apply(jnp.negative, self, name=f"-{self.name}")

    def __add__(self, other: Expression | float) -> Expression:
        if _is_number(other):
            return self if other == 0 else _binary(jnp.add, self, scalar(other), "+")
        return _binary(jnp.add, self, other, "+")

    def __radd__(self, other: float) -> Expression:
        if other == 0:
            return self
        return _binary(jnp.add, scalar(other), self, "+")

    def __sub__(self, other: Expression | float) -> Expression:
        if _is_number(other):
            return self if other == 0 else _binary(jnp.subtract, self, scalar(other), "-")
        return _binary(jnp.subtract, self, other, "-")

    def __rsub__(self, other: float) -> Expression:
        if other == 0:
            return -self
        return _binary(jnp.subtract, scalar(other), self, "-")

    def __mul__(self, other: Expression | float) -> Expression:
        if _is_number(other):
            return self if other == 1 else _binary(jnp.multiply, self, scalar(other), "*")
        return _binary(jnp.multiply, self, other, "*")

    def __rmul__(self, other: float) -> Expression:
        if other == 1:
            return self
        return _binary(jnp.multiply, scalar(other), self, "*")

    def __truediv__(self, other: Expression | float) -> Expression:
        if _is_number(other):
            return self if other == 1 else _binary(jnp.divide, self, scalar(other), "/")
        return _binary(jnp.divide, self, other, "/")

    def __rtruediv__(self, other: float) -> Expression:
        return _binary(jnp.divide, scalar(other), self, "/")


def _is_number(x: object) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _binary(fn: Callable[..., jax.Array], a: Expression, b: Expression, sym: str) -> Expression:
    if not isinstance(b, Expression) or not isinstance(a, Expression):
        return NotImplemented
    return Expression.apply(fn, a, b, name=f"({a.name}{sym}{b.name})")


def scalar(value: float) -> Expression:
    """A 0-d constant. Weakly typed, so it never promotes its partner's dtype."""
    return Expression.from_array(jnp.asarray(float(value)), name=f"{value:g}")


def as_expressions(xs: Sequence[Expression]) -> tuple[Expression, ...]:
    out = tuple(xs)
    for x in out:
        if not isinstance(x, Expression) or x.is_empty:
            raise ValueError("Expected a sequence of non-empty Expressions")
    return out
