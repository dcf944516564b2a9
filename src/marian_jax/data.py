"""Corpus batches.

A `SubBatch` holds one data stream (e.g. source or target) of `size`
sentences padded to `width` tokens. Both buffers are flat and column-major:
entry `position * size + sentence`, i.e. an [size, width] tensor with the
sentence index innermost. The mask is 1 for real tokens and 0 for padding.

A `CorpusBatch` is an ordered list of streams plus an optional guided
alignment buffer of `size * front.width * back.width` floats.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

import jax.numpy as jnp
import numpy as np

from marian_jax.inits import from_vector
from marian_jax.shape import Shape

if TYPE_CHECKING:
    from marian_jax.expr import Expression
    from marian_jax.graph import ExpressionGraph


class SubBatch:
    """One stream of a batch: word indices and a 0/1 mask."""

    def __init__(self, size: int, width: int):
        """Create an empty stream (all indices 0, all mask entries 0).

        :param int size: Number of sentences.
        :param int width: Padded sentence length.
        """
        if size < 0 or width < 0:
            raise ValueError(f"SubBatch: size and width must be >= 0, got {size}, {width}")
        self._size = int(size)
        self._width = int(width)
        self._words = 0
        self._indices = np.zeros(size * width, dtype=np.int32)
        self._mask = np.zeros(size * width, dtype=np.float32)

    @property
    def batch_size(self) -> int:
        return self._size

    @property
    def batch_width(self) -> int:
        return self._width

    @property
    def batch_words(self) -> int:
        """Number of real tokens, as recorded by `set_words`."""
        return self._words

    def set_words(self, words: int) -> None:
        self._words = int(words)

    @property
    def indices(self) -> np.ndarray:
        """Mutable flat index buffer."""
        return self._indices

    @property
    def mask(self) -> np.ndarray:
        """Mutable flat mask buffer."""
        return self._mask

    def indices_expr(self, graph: ExpressionGraph) -> Expression:
        """Indices as an int32 constant of shape [size, width]."""
        return graph.constant(Shape([self._size, self._width]), from_vector(self._indices), dtype=jnp.int32)

    def mask_expr(self, graph: ExpressionGraph) -> Expression:
        """Mask as a constant of shape [1, size, width] (broadcasts over classes)."""
        return graph.constant(Shape([1, self._size, self._width]), from_vector(self._mask))

    def __repr__(self) -> str:
        return f"SubBatch(size={self._size}, width={self._width}, words={self._words})"


class CorpusBatch:
    """A set of parallel streams, e.g. (source, target)."""

    def __init__(self, streams: Sequence[SubBatch] = (), sentence_ids: Sequence[int] | None = None):
        self._streams = list(streams)
        self._guided_alignment = np.zeros(0, dtype=np.float32)
        self._sentence_ids: list[int] = []
        if sentence_ids is not None:
            self.sentence_ids = sentence_ids
        elif self._streams:
            self._sentence_ids = list(range(self.size))

    @property
    def sets(self) -> int:
        return len(self._streams)

    def __getitem__(self, index: int) -> SubBatch:
        return self._streams[index]

    def __len__(self) -> int:
        return len(self._streams)

    def __iter__(self) -> Iterator[SubBatch]:
        return iter(self._streams)

    @property
    def front(self) -> SubBatch:
        """First stream (the source)."""
        return self._streams[0]

    @property
    def back(self) -> SubBatch:
        """Last stream (the target)."""
        return self._streams[-1]

    @property
    def size(self) -> int:
        """Number of sentences in the first stream."""
        return self.front.batch_size

    @property
    def words(self) -> int:
        """Real-token count of the first stream."""
        return self.front.batch_words

    @property
    def sentence_ids(self) -> list[int]:
        """Corpus ids of the sentences, shared by every stream (0..size-1 unless set)."""
        return self._sentence_ids

    @sentence_ids.setter
    def sentence_ids(self, ids: Sequence[int]) -> None:
        ids = [int(i) for i in ids]
        if self._streams and len(ids) != self.size:
            raise ValueError(f"sentence_ids: expected {self.size} ids, got {len(ids)}")
        self._sentence_ids = ids

    @property
    def guided_alignment(self) -> np.ndarray:
        return self._guided_alignment

    @guided_alignment.setter
    def guided_alignment(self, aln: Sequence[float] | np.ndarray) -> None:
        self._guided_alignment = np.array(aln, dtype=np.float32).reshape(-1)

    def split(self, n: int) -> list[CorpusBatch]:
        raise NotImplementedError("CorpusBatch.split not implemented")

    @classmethod
    def fake_batch(cls, lengths: Sequence[int], batch_size: int, guided_alignment: bool = False) -> CorpusBatch:
        """Batch with one all-valid stream per entry of `lengths`.

        Indices are all 0 and every mask entry is 1. With `guided_alignment`,
        a zero alignment of `batch_size * lengths[0] * lengths[-1]` is attached.

        :param lengths: Sentence width of each stream.
        :param int batch_size: Sentences per stream.
        :param bool guided_alignment: Attach a zero alignment buffer.
        :return CorpusBatch: The batch.
        """
        streams = []
        for length in lengths:
            sb = SubBatch(batch_size, length)
            sb.mask[:] = 1.0
            sb.set_words(sb.mask.size)
            streams.append(sb)
        batch = cls(streams)
        if guided_alignment:
            batch.guided_alignment = np.zeros(batch_size * lengths[0] * lengths[-1], dtype=np.float32)
        return batch

    def __repr__(self) -> str:
        return f"CorpusBatch(sets={self.sets}, size={self.size if self._streams else 0})"
