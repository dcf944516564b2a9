"""Operator library.

Every function here is pure: it takes Expressions (and plain scalars) and
emits new nodes. Nothing mutates its operands.

Axis arguments are column-major (axis 0 innermost, negative from the
outermost end) and always go through `axis_to_engine`. Reductions keep the
reduced axis with extent 1.

Matrix products are column-major too: an [rows, cols] matrix is stored column
by column, so its JAX array is the transpose of the math matrix. The math
product A·B is therefore `B_jax @ A_jax`; see `times`.

Operators with no safe mapping onto JAX raise NotImplementedError naming the
operator. Do not "fix" one by guessing semantics.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import jax
import jax.numpy as jnp
import numpy as np
import optax

from marian_jax.expr import Expression, as_expressions, scalar
from marian_jax.inits import Initializer, from_vector
from marian_jax.shape import Shape, ShapeView, axes_to_engine, axis_to_engine, to_engine_shape

if TYPE_CHECKING:
    from marian_jax.data import CorpusBatch
    from marian_jax.graph import ExpressionGraph
    from marian_jax.options import Options

logger = logging.getLogger(__name__)

# Additive logit for masked-out positions in softmax(x, mask).
MASK_LOGIT = -99999999.0
ALIGNMENT_EPS = 1e-6

_default_rng = np.random.default_rng()

__all__ = [
    "Cost",
    "affine",
    "atleast_1d",
    "atleast_2d",
    "atleast_3d",
    "atleast_4d",
    "atleast_nd",
    "avg_pooling",
    "bdot",
    "cols",
    "concatenate",
    "constant",
    "convert2cudnn_format",
    "convert_from_cudnn_format",
    "cost",
    "cross_entropy",
    "debug",
    "dot",
    "dropout",
    "dropout_mask",
    "exp",
    "flatten",
    "flatten_2d",
    "guided_alignment_cost",
    "guided_alignment_cost_from_batch",
    "highway",
    "layer_norm",
    "leakyrelu",
    "log",
    "logit",
    "logsoftmax",
    "max_pooling",
    "mean",
    "plus",
    "pooling_with_masking",
    "prelu",
    "relu",
    "repeat",
    "reshape",
    "rows",
    "scalar",
    "scalar_product",
    "seed_dropout",
    "select",
    "shift",
    "softmax",
    "sqrt",
    "square",
    "step",
    "sum",
    "swish",
    "tanh",
    "times",
    "transpose",
    "weighted_average",
]


def _rank(x: Expression) -> int:
    return len(x.shape)


def _not_implemented(name: str) -> Expression:
    raise NotImplementedError(f"{name}: not implemented")


def _summed(xs: Expression | Sequence[Expression]) -> Expression:
    if isinstance(xs, Expression):
        return xs
    return plus(xs)


# ------------------------------ constants ----------------------------------


def constant(
    shape: Shape | Sequence[int],
    init: Initializer,
    *,
    dtype: Any = None,
    device: jax.Device | None = None,
) -> Expression:
    """A constant tensor of column-major `shape` (float32 unless `dtype` is given).

    Only deterministic initializers (constant fill, from_vector) are allowed.

    :raises ValueError: For random initializers or a buffer/shape size mismatch.
    """
    if init.needs_key:
        raise ValueError(f"constant: {init.kind} initializer requires a parameter, not a constant")
    data = init.materialize(to_engine_shape(shape), dtype=dtype or jnp.float32, device=device)
    return Expression.from_array(data, name=f"constant{list(Shape(shape))}")


# ------------------------------ elementwise --------------------------------


def plus(xs: Sequence[Expression]) -> Expression:
    """Sum a list of expressions as a balanced tree."""
    xs = as_expressions(xs)
    if not xs:
        raise ValueError("plus: empty list")

    def _tree(lo: int, hi: int) -> Expression:
        if hi - lo == 1:
            return xs[lo]
        mid = (lo + hi) // 2
        return _tree(lo, mid) + _tree(mid, hi)

    return _tree(0, len(xs))


def debug(a: Expression, message: str = "") -> Expression:
    logger.debug("debug(%s): %s %s", a.name, message, list(a.shape))
    return a


def logit(x: Expression | Sequence[Expression]) -> Expression:
    """Logistic sigmoid (the name follows the emulated API)."""
    x = _summed(x)
    return Expression.apply(jax.nn.sigmoid, x, name=f"logit({x.name})")


def swish(x: Expression | Sequence[Expression]) -> Expression:
    x = _summed(x)
    return Expression.apply(lambda v: v * jax.nn.sigmoid(v), x, name=f"swish({x.name})")


def tanh(*xs: Expression | Sequence[Expression]) -> Expression:
    """tanh of the sum of all arguments."""
    if len(xs) == 1:
        x = _summed(xs[0])
    else:
        x = plus(list(xs))  # type: ignore[arg-type]
    return Expression.apply(jnp.tanh, x, name=f"tanh({x.name})")


def relu(x: Expression | Sequence[Expression]) -> Expression:
    x = _summed(x)
    return Expression.apply(jax.nn.relu, x, name=f"relu({x.name})")


def leakyrelu(x: Expression | Sequence[Expression]) -> Expression:
    x = _summed(x)
    return Expression.apply(lambda v: jax.nn.leaky_relu(v, 0.01), x, name=f"leakyrelu({x.name})")


def prelu(x: Expression | Sequence[Expression], alpha: float = 0.01) -> Expression:
    x = _summed(x)
    return Expression.apply(lambda v: jax.nn.leaky_relu(v, alpha), x, name=f"prelu({x.name},{alpha:g})")


def log(x: Expression) -> Expression:
    return Expression.apply(jnp.log, x, name=f"log({x.name})")


def exp(x: Expression) -> Expression:
    return Expression.apply(jnp.exp, x, name=f"exp({x.name})")


def sqrt(x: Expression, eps: float = 0.0) -> Expression:
    return Expression.apply(jnp.sqrt, x + eps, name=f"sqrt({x.name})")


def square(x: Expression) -> Expression:
    return x * x


# ------------------------------ linear algebra -----------------------------


def times(a: Expression, b: Expression) -> Expression:
    """Column-major matrix product a·b.

    `a` is [m, k], `b` is [k, n] or a length-k vector; the result is [m, n]
    (or [m]). In JAX terms this is `b_jax @ a_jax`.
    """
    if _rank(a) < 2:
        raise ValueError(f"times: left operand must be at least a matrix, got shape {list(a.shape)}")
    return Expression.apply(lambda av, bv: jnp.matmul(bv, av), a, b, name=f"times({a.name},{b.name})")


def _product(a: Expression, b: Expression, trans_a: bool, trans_b: bool, scale: float, op: str) -> Expression:
    def fn(av: jax.Array, bv: jax.Array) -> jax.Array:
        if trans_a:
            av = jnp.swapaxes(av, -1, -2)
        if trans_b:
            bv = jnp.swapaxes(bv, -1, -2)
        out = jnp.matmul(bv, av)
        return out if scale == 1 else out * scale

    return Expression.apply(fn, a, b, name=f"{op}({a.name},{b.name})")


def dot(a: Expression, b: Expression, trans_a: bool = False, trans_b: bool = False, scalar: float = 1.0) -> Expression:
    """scalar * op(a)·op(b) for column-major matrices."""
    if _rank(a) < 2 or _rank(b) < 2:
        raise ValueError(f"dot: operands must be matrices, got {list(a.shape)} and {list(b.shape)}")
    return _product(a, b, trans_a, trans_b, scalar, "dot")


def bdot(a: Expression, b: Expression, trans_a: bool = False, trans_b: bool = False, scalar: float = 1.0) -> Expression:
    """Batched `dot`: axes 0/1 are the matrix, outer axes are batch axes."""
    if _rank(a) < 3 or _rank(b) < 3:
        raise ValueError(f"bdot: operands must be at least 3-d, got {list(a.shape)} and {list(b.shape)}")
    return _product(a, b, trans_a, trans_b, scalar, "bdot")


def affine(x: Expression, W: Expression, b: Expression) -> Expression:
    """W·x + b. The product is `times(W, x)`; `b` may be empty."""
    y = times(W, x)
    if not b:
        return y
    return Expression.apply(jnp.add, y, b, name=f"affine({W.name},{x.name},{b.name})")


def scalar_product(a: Expression, b: Expression, axis: int = 0) -> Expression:
    ax = axis_to_engine(_rank(a), axis)
    return Expression.apply(
        lambda av, bv: jnp.sum(av * bv, axis=ax, keepdims=True), a, b, name=f"scalar_product({a.name},{b.name})"
    )


def weighted_average(x: Expression, weights: Expression, axis: int = 0) -> Expression:
    ax = axis_to_engine(_rank(x), axis)

    def fn(v: jax.Array, w: jax.Array) -> jax.Array:
        return jnp.sum(v * w, axis=ax, keepdims=True) / jnp.sum(jnp.broadcast_to(w, v.shape), axis=ax, keepdims=True)

    return Expression.apply(fn, x, weights, name=f"weighted_average({x.name},{weights.name})")


# ------------------------------ shape ops ----------------------------------


def transpose(a: Expression, axes: Sequence[int] | None = None) -> Expression:
    """Permute axes.

    Without `axes`, swaps axes 0 and 1 (a vector becomes a [1, n] row).
    With `axes`, result axis i is input axis axes[i].
    """
    rank = _rank(a)
    if axes is None:
        if rank == 1:
            return reshape(a, Shape([1, a.shape[0]]))
        if rank < 2:
            raise ValueError("transpose: scalar has no axes to swap")
        return Expression.apply(lambda v: jnp.swapaxes(v, -1, -2), a, name=f"transpose({a.name})")
    axes = list(axes)
    if sorted(axis_to_engine(rank, x) for x in axes) != list(range(rank)):
        raise ValueError(f"transpose: {axes} is not a permutation of {rank} axes")
    perm = axes_to_engine(rank, axes)
    return Expression.apply(lambda v: jnp.transpose(v, perm), a, name=f"transpose({a.name},{axes})")


def concatenate(xs: Sequence[Expression], axis: int = 0) -> Expression:
    xs = as_expressions(xs)
    if not xs:
        raise ValueError("concatenate: empty list")
    ax = axis_to_engine(_rank(xs[0]), axis)
    return Expression.apply(
        lambda *vs: jnp.concatenate(vs, axis=ax), *xs, name=f"concatenate[{len(xs)}]"
    )


def repeat(a: Expression, repeats: int, axis: int = 0) -> Expression:
    if repeats == 1:
        return a
    return concatenate([a] * repeats, axis=axis)


def reshape(a: Expression, shape: Shape | Sequence[int]) -> Expression:
    shape = Shape(shape)
    if shape.elements() != a.shape.elements():
        raise ValueError(f"reshape: cannot reshape {list(a.shape)} to {list(shape)}")
    engine = shape.to_engine()
    return Expression.apply(lambda v: jnp.reshape(v, engine), a, name=f"reshape({a.name},{list(shape)})")


def atleast_nd(a: Expression, dims: int) -> Expression:
    """Pad with outermost extents of 1 up to rank `dims`."""
    rank = _rank(a)
    if rank >= dims:
        return a
    return reshape(a, Shape(list(a.shape) + [1] * (dims - rank)))


def atleast_1d(a: Expression) -> Expression:
    return atleast_nd(a, 1)


def atleast_2d(a: Expression) -> Expression:
    return atleast_nd(a, 2)


def atleast_3d(a: Expression) -> Expression:
    return atleast_nd(a, 3)


def atleast_4d(a: Expression) -> Expression:
    return atleast_nd(a, 4)


def flatten(a: Expression) -> Expression:
    return reshape(a, Shape([a.shape.elements()]))


def flatten_2d(a: Expression) -> Expression:
    """Keep axis 0, collapse every other axis into axis 1."""
    dims = list(a.shape)
    return reshape(a, Shape([dims[0], math.prod(dims[1:])]))


def _index_array(indices: Sequence[int]) -> jax.Array:
    return jnp.asarray(np.asarray(indices, dtype=np.int32))


def rows(a: Expression, indices: Sequence[int]) -> Expression:
    """Select entries of axis 1 of a matrix (columns of storage, rows of the math view)."""
    if _rank(a) != 2:
        raise ValueError(f"rows: data must be a matrix, got shape {list(a.shape)}")
    idx = _index_array(indices)
    return Expression.apply(lambda v: jnp.take(v, idx, axis=0), a, name=f"rows({a.name})")


def cols(a: Expression, indices: Sequence[int]) -> Expression:
    """Select entries of axis 0 of a matrix."""
    if _rank(a) != 2:
        raise ValueError(f"cols: data must be a matrix, got shape {list(a.shape)}")
    idx = _index_array(indices)
    return Expression.apply(lambda v: jnp.take(v, idx, axis=1), a, name=f"cols({a.name})")


def select(a: Expression, axis: int, indices: Sequence[int]) -> Expression:
    """Gather `indices` along `axis`."""
    ax = axis_to_engine(_rank(a), axis)
    idx = _index_array(indices)
    return Expression.apply(lambda v: jnp.take(v, idx, axis=ax), a, name=f"select({a.name},{axis})")


def step(a: Expression, step: int, axis: int) -> Expression:
    """Slice index `step` of `axis`, keeping the axis with extent 1.

    Negative `step` counts from the end of the axis.
    """
    ax = axis_to_engine(_rank(a), axis)
    n = a.shape.engine[ax]
    i = step + n if step < 0 else step
    if i < 0 or i >= n:
        raise IndexError(f"step: index {step} out of range for axis {axis} of extent {n}")
    return Expression.apply(lambda v: jax.lax.slice_in_dim(v, i, i + 1, axis=ax), a, name=f"step({a.name},{step},{axis})")


# ------------------------------ reductions ---------------------------------


def sum(a: Expression, axis: int = 0) -> Expression:  # noqa: A001
    ax = axis_to_engine(_rank(a), axis)
    return Expression.apply(lambda v: jnp.sum(v, axis=ax, keepdims=True), a, name=f"sum({a.name},{axis})")


def mean(a: Expression, axis: int = 0) -> Expression:
    ax = axis_to_engine(_rank(a), axis)
    return Expression.apply(lambda v: jnp.mean(v, axis=ax, keepdims=True), a, name=f"mean({a.name},{axis})")


# ------------------------------ normalizers --------------------------------


def softmax(a: Expression, mask: Expression | None = None, axis: int = 0) -> Expression:
    """Softmax along `axis`; masked-out (mask == 0) positions get ~zero weight."""
    ax = axis_to_engine(_rank(a), axis)
    if not mask:
        return Expression.apply(lambda v: jax.nn.softmax(v, axis=ax), a, name=f"softmax({a.name})")
    return Expression.apply(
        lambda v, m: jax.nn.softmax(v + (1 - m) * MASK_LOGIT, axis=ax),
        a,
        mask,
        name=f"softmax({a.name},{mask.name})",
    )


def logsoftmax(a: Expression, axis: int = 0) -> Expression:
    ax = axis_to_engine(_rank(a), axis)
    return Expression.apply(lambda v: jax.nn.log_softmax(v, axis=ax), a, name=f"logsoftmax({a.name})")


def layer_norm(x: Expression, gamma: Expression, beta: Expression | None = None, eps: float = 1e-9) -> Expression:
    """Normalize over axis 0, then scale by gamma and shift by beta."""

    def norm(v: jax.Array) -> jax.Array:
        mu = jnp.mean(v, axis=-1, keepdims=True)
        var = jnp.mean(jnp.square(v - mu), axis=-1, keepdims=True)
        return (v - mu) / jnp.sqrt(var + eps)

    if beta:
        return Expression.apply(lambda v, g, b: g * norm(v) + b, x, gamma, beta, name=f"layer_norm({x.name})")
    return Expression.apply(lambda v, g: g * norm(v), x, gamma, name=f"layer_norm({x.name})")


def highway(y: Expression, x: Expression, t: Expression) -> Expression:
    """Gate between y and x: y*σ(t) + x*(1-σ(t))."""

    def fn(yv: jax.Array, xv: jax.Array, tv: jax.Array) -> jax.Array:
        g = jax.nn.sigmoid(tv)
        return yv * g + xv * (1 - g)

    return Expression.apply(fn, y, x, t, name=f"highway({y.name},{x.name},{t.name})")


# ------------------------------ dropout ------------------------------------


def seed_dropout(seed: int) -> None:
    """Reseed the module-level host RNG used when no generator is passed."""
    global _default_rng
    _default_rng = np.random.default_rng(seed)


def dropout_mask(
    prob: float,
    shape: Shape | ShapeView | Sequence[int],
    *,
    rng: np.random.Generator | None = None,
    device: jax.Device | None = None,
) -> Expression:
    """Inverted-dropout mask drawn on the host.

    Each element is 1/(1-prob) with probability 1-prob, else 0.

    :raises ValueError: If prob is outside [0, 1].
    """
    if not 0.0 <= prob <= 1.0:
        raise ValueError(f"dropout probability must be in [0, 1], got {prob}")
    engine = shape.engine if isinstance(shape, ShapeView) else to_engine_shape(shape)
    keep = 1.0 - prob
    if keep <= 0.0:
        mask = np.zeros(engine, dtype=np.float32)
    else:
        rng = rng if rng is not None else _default_rng
        mask = (rng.random(engine) < keep).astype(np.float32) * np.float32(1.0 / keep)
    data = jnp.asarray(mask)
    if device is not None:
        data = jax.device_put(data, device)
    return Expression.from_array(data, name=f"dropout_mask({prob:g})")


def dropout(x: Expression, prob: float | Expression, *, rng: np.random.Generator | None = None) -> Expression:
    """Apply a dropout mask (an Expression) or draw one for probability `prob`."""
    if isinstance(prob, Expression):
        return x * prob
    if prob == 0:
        return x
    return x * dropout_mask(prob, x.shape, rng=rng)


# ------------------------------ losses -------------------------------------


def cross_entropy(logits: Expression, labels: Expression) -> Expression:
    """Softmax cross-entropy against integer class labels.

    Labels are one-hot encoded along axis 0 (the class axis) with
    `logits.shape[0]` classes. `labels` must have logits' shape without axis 0,
    that shape with a leading extent 1, or be flat with the same element count.
    The result keeps axis 0 with extent 1.
    """
    num_classes = logits.shape[0]
    want = logits.shape.engine[:-1]
    got = labels.shape.engine
    if got not in (want, want + (1,)):
        if labels.shape.elements() != int(np.prod(want, dtype=np.int64)):
            raise ValueError(
                f"cross_entropy: labels shape {list(labels.shape)} does not match logits {list(logits.shape)}"
            )

    def fn(o: jax.Array, y: jax.Array) -> jax.Array:
        y = jnp.reshape(y, o.shape[:-1]).astype(jnp.int32)
        one_hot = jax.nn.one_hot(y, num_classes, dtype=o.dtype)
        return optax.softmax_cross_entropy(o, one_hot)[..., None]

    return Expression.apply(fn, logits, labels, name=f"cross_entropy({logits.name},{labels.name})")


def cost(
    logits: Expression,
    indices: Expression,
    mask: Expression | None,
    cost_type: str = "ce-mean",
    smoothing: float = 0.0,
) -> Expression:
    """Training cost from per-token cross-entropy.

    Axis 2 is the sequence axis, axis 1 the batch axis.

      ce-mean, cross-entropy (default) : mean over batch of per-sentence sums
      ce-mean-words                    : total / number of valid tokens
      ce-sum                           : total
      perplexity                       : exp(total / number of valid tokens)
      ce-rescore                       : -(per-sentence sums), one per batch entry
    """
    ce = cross_entropy(logits, indices)

    if smoothing > 0:
        ceq = mean(logsoftmax(logits), axis=0)
        ce = (1 - smoothing) * ce - smoothing * ceq

    if mask:
        ce = ce * mask

    def total(x: Expression) -> Expression:
        return sum(sum(x, axis=2), axis=1)

    def words() -> Expression:
        if mask:
            return total(mask)
        return scalar(ce.shape.elements())

    if cost_type == "ce-mean-words":
        return total(ce) / words()
    if cost_type == "ce-sum":
        return total(ce)
    if cost_type == "perplexity":
        return exp(total(ce) / words())
    if cost_type == "ce-rescore":
        return -sum(ce, axis=2)
    if cost_type not in ("ce-mean", "cross-entropy"):
        logger.debug("cost: unknown cost type %r, using ce-mean", cost_type)
    return mean(sum(ce, axis=2), axis=1)


Cost = cost


def guided_alignment_cost(att: Expression, aln: Expression, cost_type: str, weight: float) -> Expression:
    """Penalize attention weights that disagree with a reference alignment.

    The batch axis is the outermost axis of `att`.

    :raises ValueError: If shapes differ or `cost_type` is unknown.
    """
    if att.shape != aln.shape:
        raise ValueError(f"guided_alignment_cost: attention {list(att.shape)} vs alignment {list(aln.shape)}")
    dim_batch = att.shape[-1]

    if cost_type == "mse":
        aln_cost = sum(flatten(square(att - aln))) / (2 * dim_batch)
    elif cost_type == "mult":
        aln_cost = -log(sum(flatten(att * aln)) + ALIGNMENT_EPS) / dim_batch
    elif cost_type == "ce":
        aln_cost = -sum(flatten(aln * log(att + ALIGNMENT_EPS))) / dim_batch
    else:
        raise ValueError(f"Unknown alignment cost type: {cost_type!r}")

    return weight * aln_cost


def guided_alignment_cost_from_batch(
    graph: ExpressionGraph, batch: CorpusBatch, options: Options, att: Expression
) -> Expression:
    """`guided_alignment_cost` against the batch's reference alignment.

    Reads `guided-alignment-cost` (str) and `guided-alignment-weight` (float).
    The alignment buffer is laid out like `att` (column-major).
    """
    aln = graph.constant(att.shape.to_shape(), from_vector(batch.guided_alignment))
    cost_type = options.get("guided-alignment-cost", str)
    weight = options.get("guided-alignment-weight", float)
    return guided_alignment_cost(att, aln, cost_type, weight)


# ------------------------------ unimplemented ------------------------------


def shift(x: Expression, shape: Shape | Sequence[int]) -> Expression:
    return _not_implemented("shift")


def convert2cudnn_format(x: Expression) -> Expression:
    return _not_implemented("convert2cudnn_format")


def convert_from_cudnn_format(x: Expression) -> Expression:
    return _not_implemented("convert_from_cudnn_format")


def avg_pooling(
    x: Expression,
    height: int,
    width: int,
    pad_height: int = 0,
    pad_width: int = 0,
    stride_height: int = 1,
    stride_width: int = 1,
) -> Expression:
    return _not_implemented("avg_pooling")


def max_pooling(
    x: Expression,
    height: int,
    width: int,
    pad_height: int = 0,
    pad_width: int = 0,
    stride_height: int = 1,
    stride_width: int = 1,
) -> Expression:
    return _not_implemented("max_pooling")


def pooling_with_masking(x: Expression, mask: Expression, width: int, is_even: bool = False) -> Expression:
    return _not_implemented("pooling_with_masking")

