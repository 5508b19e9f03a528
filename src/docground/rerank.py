from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .settings import settings
from .util_text import normalize_for_match, tokenize

PHRASE_MIN_CHARS = 6
DENSITY_MIN_TOKENS = 8


@dataclass(frozen=True)
class RerankWeights:
    semantic: float
    coverage: float
    density: float
    phrase: float

    @classmethod
    def from_settings(cls) -> RerankWeights:
        return cls(
            semantic=settings.rerank_w_semantic,
            coverage=settings.rerank_w_coverage,
            density=settings.rerank_w_density,
            phrase=settings.rerank_w_phrase,
        )


@dataclass(frozen=True)
class LexicalScore:
    coverage: float = 0.0  # share of unique query tokens present in text
    density: float = 0.0  # matched text tokens per text token
    phrase: float = 0.0  # 1.0 when the whole query appears verbatim


def cosine_to_unit(score: float) -> float:
    x = max(-1.0, min(1.0, float(score or 0.0)))
    return (x + 1.0) / 2.0


def score_lexical(query_tokens: list[str], text_tokens: list[str], query: str, text: str) -> LexicalScore:
    if not query_tokens or not text_tokens:
        return LexicalScore()

    query_set = set(query_tokens)
    text_counts = Counter(text_tokens)
    coverage = sum(1 for tok in query_set if tok in text_counts) / len(query_set)
    matched = sum(n for tok, n in text_counts.items() if tok in query_set)
    density = matched / max(DENSITY_MIN_TOKENS, len(text_tokens))

    q = normalize_for_match(query)
    phrase = 1.0 if len(q) >= PHRASE_MIN_CHARS and q in normalize_for_match(text) else 0.0
    return LexicalScore(coverage=coverage, density=density, phrase=phrase)


def _semantic_of(row: Mapping[str, Any]) -> float:
    raw = row.get("score")
    if raw is None:
        raw = row.get("semantic_score")
    try:
        return float(raw or 0.0)
    except (TypeError, ValueError):
        return 0.0


def rerank_candidates(
    query_text: str | None,
    candidates: Iterable[Mapping[str, Any]] | None,
    weights: RerankWeights | None = None,
) -> list[dict[str, Any]]:
    """Reorder retrieval candidates by semantic score blended with term overlap.

    Each candidate carries `text` (or `chunk_text_preview`) and `score`.
    Returned rows are copies with `semantic_score` and `rerank_score` added,
    best first.
    """
    rows = list(candidates or [])
    if not rows:
        return []

    w = weights or RerankWeights.from_settings()
    query = str(query_text or "").strip()
    query_tokens = tokenize(query)

    out: list[dict[str, Any]] = []
    for row in rows:
        text = str(row.get("text") or row.get("chunk_text_preview") or "")
        lexical = score_lexical(query_tokens, tokenize(text), query, text)
        semantic = _semantic_of(row)
        rerank_score = (
            cosine_to_unit(semantic) * w.semantic
            + lexical.coverage * w.coverage
            + lexical.density * w.density
            + lexical.phrase * w.phrase
        )
        out.append({**row, "semantic_score": semantic, "rerank_score": rerank_score})

    out.sort(key=lambda r: (r["rerank_score"], r["semantic_score"]), reverse=True)
    return out
