"""Axis-order translation between the column-major API and JAX.

Everything user-facing in marian_jax is column-major:
  Shape([d0, d1, ..., dn]) lists extents innermost-first
  axis 0 is the innermost axis, axis -1 the outermost

JAX (like NumPy) is row-major: engine axis 0 is the outermost.

A flat buffer has the same element order under both views, so converting a
shape is a pure reversal and never moves data. Converting an axis is

  engine_axis = rank - 1 - normalized_axis

Every axis argument in the operator library goes through `axis_to_engine`.
If you are tempted to call jnp with an axis directly, don't.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence


class Shape(tuple):
    """Column-major shape: extents listed innermost-first.

    Python's negative indexing on a Shape already matches the column-major
    rule (`shape[-1]` is the outermost extent).
    """

    def __new__(cls, dims: Iterable[int] = ()) -> Shape:
        dims = tuple(int(d) for d in dims)
        for d in dims:
            if d < 0:
                raise ValueError(f"Shape extents must be non-negative, got {dims}")
        return super().__new__(cls, dims)

    @property
    def rank(self) -> int:
        return len(self)

    def elements(self) -> int:
        """Total number of elements (1 for rank 0)."""
        return math.prod(self)

    def to_engine(self) -> tuple[int, ...]:
        return to_engine_shape(self)

    @classmethod
    def from_engine(cls, engine_shape: Sequence[int]) -> Shape:
        return from_engine_shape(engine_shape)

    def __repr__(self) -> str:
        return f"Shape({list(self)})"


def to_engine_shape(shape: Sequence[int]) -> tuple[int, ...]:
    """Convert a column-major shape to a JAX shape (pure reversal).

    :param Sequence[int] shape: Extents, innermost-first.
    :return tuple[int, ...]: Extents, outermost-first.
    """
    return tuple(int(d) for d in reversed(tuple(shape)))


def from_engine_shape(engine_shape: Sequence[int]) -> Shape:
    """Convert a JAX shape back to a column-major Shape.

    :param Sequence[int] engine_shape: Extents, outermost-first.
    :return Shape: Extents, innermost-first.
    """
    return Shape(reversed(tuple(engine_shape)))


def normalize_axis(rank: int, axis: int) -> int:
    """Resolve a possibly-negative column-major axis to [0, rank).

    :param int rank: Tensor rank.
    :param int axis: Column-major axis, negative counts from the outermost end.
    :raises IndexError: If the axis is out of range for `rank`.
    :return int: Non-negative column-major axis.
    """
    axis = int(axis)
    norm = axis + rank if axis < 0 else axis
    if norm < 0 or norm >= rank:
        raise IndexError(f"axis {axis} out of range for rank {rank}")
    return norm


def axis_to_engine(rank: int, axis: int) -> int:
    """Map a column-major axis index to the JAX axis index.

    :param int rank: Tensor rank.
    :param int axis: Column-major axis.
    :raises IndexError: If the axis is out of range for `rank`.
    :return int: JAX axis in [0, rank).
    """
    return rank - 1 - normalize_axis(rank, axis)


def axes_to_engine(rank: int, axes: Iterable[int]) -> tuple[int, ...]:
    """Map a sequence of column-major axes to JAX axes.

    Each axis is mapped with `axis_to_engine` and the sequence is then
    reversed, so a permutation (e.g. for transpose) keeps its meaning:
    result position i of the column-major permutation is result position
    rank-1-i of the JAX permutation.

    :param int rank: Tensor rank.
    :param Iterable[int] axes: Column-major axes.
    :return tuple[int, ...]: JAX axes.
    """
    mapped = [axis_to_engine(rank, a) for a in axes]
    mapped.reverse()
    return tuple(mapped)


class ShapeView:
    """Column-major view over a JAX shape.

    This is what `Expression.shape` returns. It translates on access instead
    of building a reversed copy.
    """

    __slots__ = ("_engine",)

    def __init__(self, engine_shape: Sequence[int]):
        self._engine = tuple(engine_shape)

    @property
    def engine(self) -> tuple[int, ...]:
        """The underlying JAX shape (outermost-first)."""
        return self._engine

    def __getitem__(self, index: int) -> int:
        return self._engine[axis_to_engine(len(self._engine), index)]

    def __len__(self) -> int:
        return len(self._engine)

    def __iter__(self):
        return reversed(self._engine)

    def elements(self) -> int:
        return math.prod(self._engine)

    def to_shape(self) -> Shape:
        return from_engine_shape(self._engine)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ShapeView):
            return self._engine == other._engine
        if isinstance(other, (tuple, list)):
            return tuple(self) == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.to_shape())

    def __repr__(self) -> str:
        return f"ShapeView({list(self)})"
