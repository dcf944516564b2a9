"""marian_jax: Marian-style expression graphs on JAX.

Model code written against a column-major, named-parameter graph API runs on
JAX unchanged:
- `Shape` / axis translation between column-major and JAX axis order
- `Expression` handles with lazily evaluated values
- `ExpressionGraph`: named parameters, gradients, backward
- the operator library (`marian_jax.ops`) and initializers (`marian_jax.inits`)
- `Options`, a kind-tagged option dictionary
- `OptimizerWrapper` (SGD/Adam via optax), bound lazily to a graph
- `CorpusBatch` / `SubBatch`
"""

from __future__ import annotations

from marian_jax._version import __version__
from marian_jax.data import CorpusBatch, SubBatch
from marian_jax.expr import Expression
from marian_jax.graph import ExpressionGraph
from marian_jax.optimizer import AlgorithmType, BindingState, OptimizerWrapper, optimizer
from marian_jax.options import DictionaryValue, Options, ValueKind
from marian_jax.shape import Shape, ShapeView

__all__ = [
    "AlgorithmType",
    "BindingState",
    "CorpusBatch",
    "DictionaryValue",
    "Expression",
    "ExpressionGraph",
    "OptimizerWrapper",
    "Options",
    "Shape",
    "ShapeView",
    "SubBatch",
    "ValueKind",
    "__version__",
    "optimizer",
]
