"""Parameter and constant initializers.

An `Initializer` is a small, immutable descriptor. Nothing touches the device
until `materialize` is called with a JAX shape, a PRNG key and a device.

Buffers passed to `from_vector` are flat and column-major. Because the
column-major <-> JAX conversion is a pure shape reversal, the buffer is simply
reshaped to the JAX shape; no transposition happens here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal

import jax
import jax.numpy as jnp
import numpy as np

InitKind = Literal["constant", "glorot_uniform", "uniform", "from_vector"]


@dataclass(frozen=True)
class Initializer:
    """Recipe for filling a freshly allocated tensor."""

    kind: InitKind
    value: float = 0.0
    scale: float = 1.0
    data: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def needs_key(self) -> bool:
        return self.kind in ("glorot_uniform", "uniform")

    def materialize(
        self,
        engine_shape: tuple[int, ...],
        *,
        key: jax.Array | None = None,
        dtype: Any = jnp.float32,
        device: jax.Device | None = None,
    ) -> jax.Array:
        """Create a device array of `engine_shape` from this recipe.

        :param tuple engine_shape: Target JAX shape (outermost-first).
        :param key: PRNG key, required for random initializers.
        :param dtype: Target dtype.
        :param device: Target device (default device if None).
        :raises ValueError: If a from_vector buffer does not match the shape size.
        :return jax.Array: Materialized array.
        """
        if self.kind == "constant":
            out = jnp.full(engine_shape, self.value, dtype=dtype)
        elif self.kind == "from_vector":
            assert self.data is not None
            n = math.prod(engine_shape)
            if self.data.size != n:
                raise ValueError(
                    f"from_vector: buffer has {self.data.size} elements but target shape "
                    f"{list(reversed(engine_shape))} needs {n}"
                )
            out = jnp.asarray(self.data.reshape(engine_shape), dtype=dtype)
        elif self.kind == "glorot_uniform":
            if key is None:
                raise ValueError("glorot_uniform requires a PRNG key")
            # glorot needs two axes to compute fans; promote vectors/scalars to a row.
            fan_shape = engine_shape if len(engine_shape) >= 2 else (1, max(1, math.prod(engine_shape)))
            init = jax.nn.initializers.glorot_uniform()
            out = (init(key, fan_shape, dtype) * self.scale).reshape(engine_shape)
        elif self.kind == "uniform":
            if key is None:
                raise ValueError("uniform requires a PRNG key")
            out = jax.random.uniform(key, engine_shape, dtype=dtype, minval=-self.scale, maxval=self.scale)
        else:  # pragma: no cover
            raise ValueError(f"Unknown initializer kind: {self.kind!r}")

        if device is not None:
            out = jax.device_put(out, device)
        return out


def from_value(value: float) -> Initializer:
    return Initializer(kind="constant", value=float(value))


zeros = from_value(0.0)
ones = from_value(1.0)
glorot_uniform = Initializer(kind="glorot_uniform")


def uniform(scale: float = 0.1) -> Initializer:
    """Uniform in [-scale, scale]."""
    return Initializer(kind="uniform", scale=float(scale))


def from_vector(data: Any) -> Initializer:
    """Initialize from a flat host buffer (column-major element order).

    The buffer is copied, so later mutation of `data` has no effect. Its
    element type is kept; the cast happens once, in `materialize`, so int32
    word ids never pass through a float.

    :param data: Sequence or array of numbers; flattened.
    :return Initializer: Descriptor holding a private copy.
    """
    arr = np.array(data).reshape(-1)
    return Initializer(kind="from_vector", data=arr)


def from_word2vec(file: str, dim_voc: int, dim_emb: int, normalize: bool = False) -> Initializer:
    """Word-vector files are loaded outside this package."""
    raise NotImplementedError("from_word2vec: not implemented")
