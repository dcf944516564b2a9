"""CorpusBatch / SubBatch tests."""

from __future__ import annotations

import numpy as np
import pytest

from marian_jax.data import CorpusBatch, SubBatch
from marian_jax.graph import ExpressionGraph


def test_sub_batch_starts_empty() -> None:
    sb = SubBatch(3, 4)
    assert sb.batch_size == 3
    assert sb.batch_width == 4
    assert sb.batch_words == 0
    assert sb.indices.shape == (12,)
    assert not sb.mask.any()
    sb.set_words(5)
    assert sb.batch_words == 5


def test_fake_batch_is_fully_valid() -> None:
    batch = CorpusBatch.fake_batch([5, 7], 3)
    assert batch.sets == 2
    assert batch.size == 3
    assert batch.words == 15
    assert batch.front.batch_width == 5
    assert batch.back.batch_width == 7
    assert batch[1] is batch.back
    assert all(sb.mask.all() for sb in batch)
    assert batch.guided_alignment.size == 0
    assert batch.sentence_ids == [0, 1, 2]


def test_fake_batch_guided_alignment_size() -> None:
    batch = CorpusBatch.fake_batch([5, 7], 3, guided_alignment=True)
    assert batch.guided_alignment.shape == (3 * 5 * 7,)
    assert not batch.guided_alignment.any()
    batch.guided_alignment = [0.5] * 4
    assert batch.guided_alignment.dtype == np.float32


def test_split_is_not_implemented() -> None:
    with pytest.raises(NotImplementedError):
        CorpusBatch.fake_batch([2], 1).split(2)


def test_stream_expressions_have_column_major_layout(graph: ExpressionGraph) -> None:
    sb = SubBatch(2, 3)
    # position-major: entry position * size + sentence
    sb.indices[:] = [10, 20, 11, 21, 12, 22]
    sb.mask[:] = [1, 1, 1, 1, 1, 0]

    idx = sb.indices_expr(graph)
    mask = sb.mask_expr(graph)

    assert idx.shape == [2, 3]
    assert mask.shape == [1, 2, 3]
    values = np.asarray(idx.val())
    # JAX view is [width, size]: row = position, column = sentence
    np.testing.assert_array_equal(values[:, 1], [20, 21, 22])
    assert np.asarray(mask.val())[2, 1, 0] == 0.0


def test_indices_expr_keeps_large_word_ids_exact(graph: ExpressionGraph) -> None:
    """Ids above 2**24 are not representable in float32 and must not pass through one."""
    sb = SubBatch(2, 1)
    sb.indices[:] = [2**24 + 1, 2**31 - 1]
    ids = np.asarray(sb.indices_expr(graph).val()).reshape(-1)
    assert ids.dtype == np.int32
    assert ids.tolist() == [2**24 + 1, 2**31 - 1]


def test_sentence_ids_can_be_set_and_are_shared() -> None:
    batch = CorpusBatch.fake_batch([3, 4], 3)
    batch.sentence_ids = [17, 4, 99]
    assert batch.sentence_ids == [17, 4, 99]
    assert CorpusBatch([SubBatch(2, 3)], sentence_ids=[5, 6]).sentence_ids == [5, 6]
    with pytest.raises(ValueError, match="sentence_ids"):
        batch.sentence_ids = [1, 2]
