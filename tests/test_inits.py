"""Initializer tests."""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from marian_jax import inits


def test_constant_initializers_fill_value() -> None:
    out = inits.ones.materialize((2, 3))
    assert out.shape == (2, 3)
    assert out.dtype == jnp.float32
    np.testing.assert_array_equal(np.asarray(out), np.ones((2, 3)))
    np.testing.assert_array_equal(np.asarray(inits.from_value(2.5).materialize((2,))), [2.5, 2.5])


def test_from_vector_reshapes_without_transposing() -> None:
    """A flat column-major buffer keeps its element order."""
    init = inits.from_vector([1, 2, 3, 4, 5, 6])
    out = np.asarray(init.materialize((3, 2)))
    np.testing.assert_array_equal(out.reshape(-1), [1, 2, 3, 4, 5, 6])


def test_from_vector_copies_and_checks_size() -> None:
    data = np.array([1.0, 2.0], dtype=np.float32)
    init = inits.from_vector(data)
    data[0] = 42.0
    assert float(init.materialize((2,))[0]) == 1.0
    with pytest.raises(ValueError, match="from_vector"):
        init.materialize((3,))


def test_random_initializers_need_key_and_respect_range() -> None:
    assert inits.glorot_uniform.needs_key
    assert not inits.zeros.needs_key
    with pytest.raises(ValueError):
        inits.uniform().materialize((4,))

    out = np.asarray(inits.uniform(0.1).materialize((1000,), key=jax.random.PRNGKey(0)))
    assert out.min() >= -0.1 and out.max() <= 0.1
    g = inits.glorot_uniform.materialize((4,), key=jax.random.PRNGKey(1))
    assert g.shape == (4,)


def test_from_word2vec_is_not_implemented() -> None:
    with pytest.raises(NotImplementedError, match="from_word2vec"):
        inits.from_word2vec("vectors.txt", 10, 4)


def test_from_vector_keeps_integer_buffers_exact() -> None:
    init = inits.from_vector(np.array([2**24 + 1, 7], dtype=np.int32))
    out = init.materialize((2,), dtype=jnp.int32)
    assert out.dtype == jnp.int32
    assert np.asarray(out).tolist() == [2**24 + 1, 7]
