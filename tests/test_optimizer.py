"""OptimizerWrapper tests."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from marian_jax import inits, ops
from marian_jax.config import OptimConfig
from marian_jax.graph import ExpressionGraph
from marian_jax.optimizer import AlgorithmType, BindingState, OptimizerWrapper, build_optimizer, optimizer
from marian_jax.utils.tree import tree_allclose


def test_sgd_step_matches_manual_update(graph: ExpressionGraph) -> None:
    p = graph.param("p", [2], inits.from_vector([1.0, -2.0]))
    opt = optimizer(AlgorithmType.SGD, 0.1)

    graph.backward(ops.sum(ops.square(p)))
    opt.update(graph)

    # p - eta * 2p
    np.testing.assert_allclose(np.asarray(graph.value("p")), [0.8, -1.6], rtol=1e-6)
    assert opt.steps == 1


def test_adam_first_step_moves_by_eta(graph: ExpressionGraph) -> None:
    """With bias correction, Adam's first step is ~eta * sign(grad)."""
    p = graph.param("p", [2], inits.from_vector([1.0, -1.0]))
    opt = OptimizerWrapper(0.01, "adam")

    graph.backward(ops.sum(p * 3.0))
    opt.update(graph)

    np.testing.assert_allclose(np.asarray(graph.value("p")), [0.99, -1.01], rtol=1e-5)


def test_binding_is_lazy_and_excludes_late_params(graph: ExpressionGraph) -> None:
    a = graph.param("a", [1], inits.ones)
    opt = optimizer("sgd", 0.5)
    assert opt.state is BindingState.UNBOUND
    assert opt.bound_names == ()

    graph.backward(ops.sum(a))
    opt.update(graph)
    assert opt.state is BindingState.BOUND
    assert opt.bound_names == ("a",)

    late = graph.param("late", [1], inits.ones)
    before = graph.values(["late"])
    graph.backward(ops.sum(a + late))
    opt.update(graph)

    assert tree_allclose(graph.values(["late"]), before)
    np.testing.assert_allclose(np.asarray(graph.value("a")), [0.0])


def test_fixed_params_are_not_updated(graph: ExpressionGraph) -> None:
    w = graph.param("w", [1], inits.ones)
    f = graph.param("f", [1], inits.ones, fixed=True)
    opt = optimizer(AlgorithmType.SGD, 1.0)

    graph.backward(ops.sum(w * f))
    opt.update(graph)

    assert opt.bound_names == ("w",)
    np.testing.assert_allclose(np.asarray(graph.value("f")), [1.0])
    np.testing.assert_allclose(np.asarray(graph.value("w")), [0.0])


def test_update_requires_gradients(graph: ExpressionGraph) -> None:
    graph.param("p", [1], inits.ones)
    with pytest.raises(RuntimeError, match="no gradient"):
        optimizer("sgd", 0.1).update(graph)


def test_update_refuses_a_second_graph(graph: ExpressionGraph) -> None:
    p = graph.param("p", [1], inits.ones)
    opt = optimizer("sgd", 0.1)
    graph.backward(p)
    opt.update(graph)

    other = ExpressionGraph()
    q = other.param("p", [1], inits.ones)
    other.backward(q)
    with pytest.raises(RuntimeError, match="different graph"):
        opt.update(other)


def test_training_reduces_loss(graph: ExpressionGraph) -> None:
    target = ops.constant([3], inits.from_vector([1.0, 2.0, 3.0]))
    p = graph.param("p", [3], inits.zeros)
    opt = optimizer(AlgorithmType.SGD, 0.1)

    losses = []
    for _ in range(30):
        loss = ops.sum(ops.square(p - target))
        losses.append(float(jnp.sum(graph.backward(loss))))
        opt.update(graph)

    assert losses[-1] < losses[0] * 0.1


def test_build_optimizer_from_config() -> None:
    opt = build_optimizer(OptimConfig(algorithm="sgd", eta=0.05))
    assert opt.algorithm is AlgorithmType.SGD
    assert opt.eta == pytest.approx(0.05)
    with pytest.raises(ValueError):
        OptimizerWrapper(0.1, "rmsprop")
