from __future__ import annotations

import heapq
import itertools
from collections.abc import Sequence
from typing import Generic, TypeVar

import numpy as np

T = TypeVar("T")

_F32_LE = np.dtype("<f4")


def to_float32_blob(values: Sequence[float] | None) -> bytes:
    arr = np.nan_to_num(np.asarray(list(values or []), dtype=np.float64))
    return arr.astype(_F32_LE).tobytes()


def from_float32_blob(blob: bytes | None) -> list[float]:
    if not blob or len(blob) % 4 != 0:
        return []
    return np.frombuffer(blob, dtype=_F32_LE).astype(np.float64).tolist()


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine over the common prefix; 0.0 for empty or zero-norm input."""
    if a is None or b is None or len(a) == 0 or len(b) == 0:
        return 0.0
    n = min(len(a), len(b))
    va = np.nan_to_num(np.asarray(a[:n], dtype=np.float64))
    vb = np.nan_to_num(np.asarray(b[:n], dtype=np.float64))
    norm_a = float(np.dot(va, va))
    norm_b = float(np.dot(vb, vb))
    if not (norm_a > 0 and norm_b > 0):
        return 0.0
    score = float(np.dot(va, vb)) / (norm_a**0.5 * norm_b**0.5)
    return score if np.isfinite(score) else 0.0


class BoundedTopK(Generic[T]):
    """Keeps the `limit` highest-scoring items seen so far in a min-heap.

    The root is replaced only by a strictly greater score, so among equal
    scores the earliest pushed items are kept.
    """

    def __init__(self, limit: int):
        self.limit = max(0, int(limit))
        self._heap: list[tuple[float, int, T]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def min_score(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    def push(self, score: float, item: T) -> bool:
        if self.limit <= 0:
            return False
        # negated sequence: on equal scores the later item sits nearer the root
        entry = (score, -next(self._seq), item)
        if len(self._heap) < self.limit:
            heapq.heappush(self._heap, entry)
            return True
        if score <= self._heap[0][0]:
            return False
        heapq.heapreplace(self._heap, entry)
        return True

    def sorted_desc(self) -> list[tuple[float, T]]:
        """Items best first; equal scores keep scan order."""
        ordered = sorted(self._heap, key=lambda e: (-e[0], -e[1]))
        return [(score, item) for score, _seq, item in ordered]
