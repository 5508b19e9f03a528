from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

AskMode = Literal["strict", "loose"]


@dataclass(frozen=True)
class Document:
    """A document supplied by the host application for one indexing run."""

    id: str
    title: str = "Untitled document"
    type: str = "text"
    content: str = ""


@dataclass(frozen=True)
class Chunk:
    doc_id: str
    chunk_id: str  # f"{doc_id}::{chunk_index}"
    chunk_index: int
    start_char: int
    end_char: int
    text: str
    text_hash: str
    preview: str


@dataclass(frozen=True)
class DocIndexState:
    doc_id: str
    content_fingerprint: str
    chunking_params_fingerprint: str
    chunk_count: int
    last_indexed: str  # ISO-8601 UTC
    model_name: str = ""


@dataclass
class EmbeddingRecord:
    doc_id: str
    chunk_id: str
    model_name: str
    chunk_index: int
    start_char: int
    end_char: int
    chunk_text_preview: str
    embedding: list[float]
    chunk_text_hash: str = ""


@dataclass
class RetrievedChunk:
    doc_id: str
    chunk_id: str
    text: str = ""
    chunk_index: int = 0
    start_char: int = 0
    end_char: int = 0
    score: float = 0.0
    semantic_score: float = 0.0
    rank: int = 0
    doc_title: str = ""
    prompt_text: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.doc_id, self.chunk_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModelProfile:
    size_billions: float | None
    is_small_model: bool
    recommended_mode: AskMode
    top_k: int
    max_prompt_chunk_chars: int
    num_ctx: int
    min_citations_overall: int


@dataclass
class Citation:
    doc_id: str
    chunk_id: str
    marker: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"doc_id": self.doc_id, "chunk_id": self.chunk_id}
        if self.marker is not None:
            out["marker"] = self.marker
        return out


@dataclass
class Quote:
    doc_id: str
    chunk_id: str
    quote: str


@dataclass
class Claim:
    claim: str
    citations: list[Citation] = field(default_factory=list)
    quotes: list[Quote] = field(default_factory=list)
