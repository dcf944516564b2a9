"""Fake-batch training run.

Builds a `CorpusBatch.fake_batch`, fills the streams with random word ids,
and trains a tiny model written entirely with the operator library:

    trg_emb = rows(E, target ids)             [dim, batch, trg]
    logits  = affine(tanh(trg_emb), W, b)     [vocab, batch, trg]
    loss    = cost(logits, target ids, mask)

With `cost.guided_alignment`, a dot-product attention between target and
source embeddings is scored against the batch's reference alignment.

One graph lives for the whole run; expressions are rebuilt every step.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import numpy as np
from tqdm import tqdm

from marian_jax import inits, ops
from marian_jax.config import Config, dtype_from_str
from marian_jax.data import CorpusBatch, SubBatch
from marian_jax.expr import Expression
from marian_jax.graph import ExpressionGraph
from marian_jax.optimizer import build_optimizer
from marian_jax.shape import Shape
from marian_jax.utils.devices import device_platform, resolve_device
from marian_jax.utils.io import MetricsWriter, add_file_logging, create_run_dir

logger = logging.getLogger(__name__)


def make_batch(cfg: Config, rng: np.random.Generator) -> CorpusBatch:
    """Fake (source, target) batch with random ids in [1, vocab)."""
    s = cfg.smoke
    batch = CorpusBatch.fake_batch([s.src_len, s.trg_len], s.batch_size, guided_alignment=cfg.cost.guided_alignment)
    for stream in batch:
        stream.indices[:] = rng.integers(1, s.vocab_size, size=stream.indices.size)
    return batch


def _embed(E: Expression, stream: SubBatch) -> Expression:
    # rows() -> [dim, size*width]; column index is position * size + sentence
    emb = ops.rows(E, stream.indices.tolist())
    return ops.reshape(emb, Shape([E.shape[0], stream.batch_size, stream.batch_width]))


def build_loss(graph: ExpressionGraph, cfg: Config, batch: CorpusBatch) -> Expression:
    """Emit the smoke model's loss for one batch."""
    s = cfg.smoke
    options = cfg.cost.to_options()

    E = graph.param("Wemb", Shape([s.dim_emb, s.vocab_size]), inits.glorot_uniform)
    W = graph.param("W", Shape([s.vocab_size, s.dim_emb]), inits.glorot_uniform)
    b = graph.param("b", Shape([s.vocab_size]), inits.zeros)

    trg = batch.back
    h = ops.tanh(_embed(E, trg))
    if s.dropout > 0:
        h = ops.dropout(h, graph.dropout(s.dropout, h.shape))

    logits = ops.affine(h, W, b)
    loss = ops.cost(
        logits,
        trg.indices_expr(graph),
        trg.mask_expr(graph),
        options.get("cost-type", str),
        options.get("label-smoothing", float),
    )

    if cfg.cost.guided_alignment:
        # [dim, width, batch] so bdot batches over sentences
        q = ops.transpose(_embed(E, trg), [0, 2, 1])
        k = ops.transpose(_embed(E, batch.front), [0, 2, 1])
        scores = ops.bdot(k, q, trans_a=True)  # [src, trg, batch]
        att = ops.softmax(ops.transpose(scores, [1, 0, 2]), axis=1)  # [trg, src, batch]
        att = ops.reshape(att, Shape([trg.batch_width, batch.front.batch_width, 1, trg.batch_size]))
        loss = loss + ops.guided_alignment_cost_from_batch(graph, batch, options, att)

    return loss


def run_smoke(cfg: Config, *, config_path: str | Path | None = None) -> dict[str, Any]:
    """Train the smoke model for `smoke.steps` steps.

    :param Config cfg: Validated configuration.
    :param config_path: YAML path, snapshotted into the run dir.
    :return dict[str, Any]: Summary with first/last loss and the run dir.
    """
    run_dir = create_run_dir(cfg, config_path=config_path)
    if cfg.logging.log_file:
        add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)
    logger.info("Run dir: %s", run_dir)

    device = resolve_device(cfg.graph.platform, cfg.graph.device_index, allow_cpu=cfg.graph.allow_cpu)
    graph = ExpressionGraph(device, seed=cfg.graph.seed, dtype=dtype_from_str(cfg.graph.dtype))
    opt = build_optimizer(cfg.optim)
    rng = np.random.default_rng(cfg.graph.seed)
    batch = make_batch(cfg, rng)

    losses: list[float] = []
    t0 = time.perf_counter()
    with MetricsWriter(run_dir / cfg.logging.metrics_file) as metrics:
        pbar = tqdm(range(1, cfg.smoke.steps + 1), desc="smoke", unit="step")
        for step in pbar:
            loss = build_loss(graph, cfg, batch)
            value = float(np.asarray(graph.backward(loss)).reshape(-1)[0])
            opt.update(graph)
            losses.append(value)

            if step == 1:
                logger.info(
                    "Parameters: %d (%d trainable) on %s",
                    graph.param_count(),
                    len(opt.bound_names),
                    device_platform(graph.value("W")),
                )
            if step % cfg.smoke.log_every == 0 or step == cfg.smoke.steps:
                metrics.write({"step": step, "loss": value, "wall_time": time.perf_counter() - t0})
                pbar.set_postfix(loss=f"{value:.4f}")

    summary = {
        "steps": cfg.smoke.steps,
        "first_loss": losses[0],
        "last_loss": losses[-1],
        "run_dir": str(run_dir),
    }
    logger.info("Smoke run done: loss %.4f -> %.4f", losses[0], losses[-1])
    return summary
