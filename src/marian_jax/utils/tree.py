"""Pytree helpers for parameter dictionaries."""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp


def param_count(params: Any) -> int:
    """Count scalar entries across every array leaf of a pytree.

    :param Any params: Parameter pytree (e.g., name -> array).
    :return int: Total number of scalars.
    """
    return sum(int(x.size) for x in jax.tree_util.tree_leaves(params) if hasattr(x, "size"))


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """True if both trees have the same structure, shapes and dtypes and close values.

    :param Any a: First pytree.
    :param Any b: Second pytree.
    :param float rtol: Relative tolerance.
    :param float atol: Absolute tolerance.
    :return bool: Whether every leaf pair matches.
    """
    if jax.tree_util.tree_structure(a) != jax.tree_util.tree_structure(b):
        return False
    for xa, xb in zip(jax.tree_util.tree_leaves(a), jax.tree_util.tree_leaves(b), strict=True):
        if xa.shape != xb.shape or xa.dtype != xb.dtype:
            return False
        if not jnp.allclose(xa, xb, rtol=rtol, atol=atol):
            return False
    return True
