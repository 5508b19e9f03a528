from __future__ import annotations

import threading
import time

import pytest

from docground.storage_sqlite import open_store


def toy_vector(text: str) -> list[float]:
    """Three-axis space: alpha, beta, everything else."""
    low = text.lower()
    if "alpha" in low:
        return [1.0, 0.0, 0.0]
    if "beta" in low:
        return [0.0, 1.0, 0.0]
    return [0.0, 0.0, 1.0]


class FakeEmbedder:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[list[str]] = []
        self.models: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    @property
    def embedded_texts(self) -> int:
        return sum(len(c) for c in self.calls)

    def __call__(self, texts, *, model_name):
        with self._lock:
            self.calls.append(list(texts))
            self.models.append(model_name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            return [toy_vector(t) for t in texts]
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "semantic.sqlite")


@pytest.fixture
def store(db_path):
    s = open_store(db_path)
    yield s
    s.close()
