from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import SearchFailedError
from .rerank import RerankWeights, rerank_candidates
from .settings import settings
from .storage_sqlite import open_store
from .types import EmbeddingRecord
from .util_text import canonicalize_text
from .vector import BoundedTopK, cosine_similarity

logger = logging.getLogger(__name__)


def _positive_int(value: Any) -> int | None:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(n) or n <= 0:
        return None
    return int(n)


class SearchRequest(BaseModel):
    """Input of one interactive search call; camelCase keys are accepted too."""

    db_path: str = Field(default="", validation_alias=AliasChoices("db_path", "dbPath"))
    model_name: str = Field(default="", validation_alias=AliasChoices("model_name", "modelName"))
    query_embedding: list[float] = Field(
        default_factory=list, validation_alias=AliasChoices("query_embedding", "queryEmbedding")
    )
    query_text: str = Field(default="", validation_alias=AliasChoices("query_text", "queryText"))
    top_k: int = Field(default=1, validation_alias=AliasChoices("top_k", "topK"))
    candidate_k: int | None = Field(default=None, validation_alias=AliasChoices("candidate_k", "candidateK"))

    @field_validator("db_path", "model_name", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v or "").strip()

    @field_validator("query_text", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return str(v or "")

    @field_validator("query_embedding", mode="before")
    @classmethod
    def _embedding(cls, v: Any) -> Any:
        return v if isinstance(v, (list, tuple)) else []

    @field_validator("top_k", mode="before")
    @classmethod
    def _top_k(cls, v: Any) -> int:
        return _positive_int(v) or 1

    @field_validator("candidate_k", mode="before")
    @classmethod
    def _candidate_k(cls, v: Any) -> int | None:
        return _positive_int(v)

    @model_validator(mode="after")
    def _candidate_at_least_top_k(self) -> SearchRequest:
        self.candidate_k = max(self.top_k, self.candidate_k or self.top_k)
        return self


def scan_top_k(
    records: Iterable[EmbeddingRecord], query_embedding: Sequence[float], candidate_k: int
) -> list[tuple[float, EmbeddingRecord]]:
    """Brute-force cosine scan keeping the best `candidate_k` records.

    Result is best first; equal scores keep scan order.
    """
    best: BoundedTopK[EmbeddingRecord] = BoundedTopK(candidate_k)
    if not query_embedding:
        return []
    for rec in records:
        score = cosine_similarity(query_embedding, rec.embedding)
        best.push(score if math.isfinite(score) else 0.0, rec)
    return best.sorted_desc()


def search_top_k(
    request: SearchRequest | Mapping[str, Any], weights: RerankWeights | None = None
) -> dict[str, Any]:
    """Interactive search: scan, rerank against chunk previews, cut to top_k.

    Raises SearchFailedError for missing db_path/model_name or scan failure;
    StoreOpenError passes through with its own code.
    """
    if isinstance(request, SearchRequest):
        req = request
    else:
        try:
            req = SearchRequest.model_validate(dict(request))
        except ValidationError as e:
            raise SearchFailedError(f"Invalid search request: {e}") from e

    if not req.db_path:
        raise SearchFailedError("Search requires db_path.")
    if not req.model_name:
        raise SearchFailedError("Search requires model_name.")
    if not req.query_embedding:
        return {"results": []}

    candidate_k = req.candidate_k or req.top_k
    with open_store(req.db_path) as store:
        try:
            best = scan_top_k(
                store.iter_embeddings_for_model(req.model_name), req.query_embedding, candidate_k
            )
        except sqlite3.Error as e:
            raise SearchFailedError(f"Search scan failed: {e}") from e
    logger.debug("Search kept %d candidates for %s", len(best), req.model_name)

    rows = [
        {
            "doc_id": rec.doc_id,
            "chunk_id": rec.chunk_id,
            "chunk_index": rec.chunk_index,
            "start_char": rec.start_char,
            "end_char": rec.end_char,
            "score": score,
            "text": rec.chunk_text_preview,
        }
        for score, rec in best
    ]
    reranked = rerank_candidates(req.query_text, rows, weights)
    results = [
        {
            "doc_id": r["doc_id"],
            "chunk_id": r["chunk_id"],
            "chunk_index": r["chunk_index"],
            "start_char": r["start_char"],
            "end_char": r["end_char"],
            "score": float(r["rerank_score"]),
            "semantic_score": float(r["semantic_score"]),
        }
        for r in reranked[: req.top_k]
    ]
    return {"results": results}


def build_snippet(text: str | None, start_char: int, end_char: int, radius: int | None = None) -> str:
    """Context window around a chunk range, with ellipses where cut."""
    r = settings.search_snippet_radius if radius is None else max(0, int(radius))
    safe = canonicalize_text(text)
    start = max(0, min(int(start_char or 0), len(safe)))
    end = max(start, min(int(end_char or 0), len(safe)))
    lo = max(0, start - r)
    hi = min(len(safe), max(end, start + r))
    prefix = "…" if lo > 0 else ""
    suffix = "…" if hi < len(safe) else ""
    return f"{prefix}{safe[lo:hi]}{suffix}"
