from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .ask_validation import (
    ValidatedAnswer,
    parse_ask_json,
    parse_loose_cited_response,
    validate_ask_response,
    validate_loose_cited_response,
)
from .errors import AskCancelledError, AskFailedError, AskParseError, SearchFailedError, SemanticError
from .model_profile import get_ask_model_profile
from .rerank import RerankWeights, rerank_candidates
from .settings import settings
from .storage_sqlite import open_store
from .types import AskMode, Document, EmbeddingRecord, RetrievedChunk
from .util_text import canonicalize_text
from .vector import BoundedTopK, cosine_similarity

logger = logging.getLogger(__name__)

EmbedTextFn = Callable[[str, str], Sequence[float]]
GenerateFn = Callable[..., str]

MIN_PROMPT_CHUNK_CHARS = 400
MAX_FALLBACK_SOURCES = 8
SNIPPET_CHARS = 260
MAX_INVALID_ECHO_CHARS = 6000
NO_EVIDENCE_NOTE = "No relevant indexed evidence found. Try rephrasing your question with more specific terms."

STRICT_SCHEMA = (
    '{"answer":[{"claim":"string","citations":[{"chunk_id":"string","doc_id":"string"}],'
    '"quotes":[{"chunk_id":"string","doc_id":"string","quote":"verbatim substring <= 25 words"}]}],'
    '"notes":"string"}'
)


def truncate_for_prompt(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...[truncated]"


def _doc_map(documents: Iterable[Document | Mapping[str, Any]] | None) -> dict[str, Document]:
    out: dict[str, Document] = {}
    for raw in documents or []:
        if isinstance(raw, Document):
            doc = raw
        elif isinstance(raw, Mapping) and raw.get("id"):
            doc = Document(
                id=str(raw["id"]),
                title=str(raw.get("title") or "Untitled document"),
                type=str(raw.get("type") or "text"),
                content=str(raw.get("content") or ""),
            )
        else:
            continue
        out[doc.id] = Document(id=doc.id, title=doc.title, type=doc.type, content=canonicalize_text(doc.content))
    return out


def retrieve_top_k_chunks(
    *,
    db_path: str,
    question: str,
    documents: Iterable[Document | Mapping[str, Any]],
    embedding_model: str,
    embed_text_fn: EmbedTextFn,
    top_k: int | None = None,
    rerank_candidate_k: int | None = None,
    max_prompt_chunk_chars: int | None = None,
    weights: RerankWeights | None = None,
) -> list[RetrievedChunk]:
    """Embed the question and return the best chunks with their full text.

    Only chunks of documents in `documents` are considered; the chunk text is
    sliced from the current document content.
    """
    q = str(question or "").strip()
    model = str(embedding_model or "").strip()
    if not q:
        raise SearchFailedError("Question is empty.")
    if not model:
        raise SearchFailedError("Embedding model is not set.")
    if not str(db_path or "").strip():
        raise SearchFailedError("Search requires db_path.")

    k = max(1, int(top_k or settings.ask_top_k))
    candidate_k = max(k, int(rerank_candidate_k or k * settings.ask_rerank_candidate_multiplier))
    max_chars = max(MIN_PROMPT_CHUNK_CHARS, int(max_prompt_chunk_chars or settings.ask_max_chunk_chars_for_prompt))

    query_vec = list(embed_text_fn(model, q) or [])
    if not query_vec:
        return []

    docs = _doc_map(documents)
    best: BoundedTopK[EmbeddingRecord] = BoundedTopK(candidate_k)
    with open_store(db_path) as store:
        try:
            for rec in store.iter_embeddings_for_model(model):
                if rec.doc_id in docs:
                    best.push(cosine_similarity(query_vec, rec.embedding), rec)
        except sqlite3.Error as e:
            raise SearchFailedError(f"Retrieval scan failed: {e}") from e

    candidates = []
    for score, rec in best.sorted_desc():
        doc = docs[rec.doc_id]
        text = doc.content[rec.start_char : rec.end_char]
        candidates.append(
            {
                "doc_id": rec.doc_id,
                "doc_title": doc.title or rec.doc_id,
                "chunk_id": rec.chunk_id,
                "chunk_index": rec.chunk_index,
                "start_char": rec.start_char,
                "end_char": rec.end_char,
                "score": score,
                "text": text,
            }
        )
    logger.debug("Retrieved %d candidates for question", len(candidates))

    reranked = rerank_candidates(q, candidates, weights)[:k]
    return [
        RetrievedChunk(
            rank=i + 1,
            doc_id=row["doc_id"],
            doc_title=row["doc_title"],
            chunk_id=row["chunk_id"],
            chunk_index=row["chunk_index"],
            start_char=row["start_char"],
            end_char=row["end_char"],
            score=float(row["rerank_score"]),
            semantic_score=float(row["semantic_score"]),
            text=row["text"],
            prompt_text=truncate_for_prompt(row["text"], max_chars),
        )
        for i, row in enumerate(reranked)
    ]


def _language_name(language: str | None) -> str:
    return "English" if str(language or "en").lower() == "en" else "Swedish"


def build_ask_system_prompt(language: str | None = "en", mode: AskMode = "strict") -> str:
    target = _language_name(language)
    if mode == "loose":
        return "\n".join(
            [
                "You are a grounded QA assistant.",
                "Use ONLY provided context. No external knowledge.",
                "Respond in two parts:",
                "1) Free-text answer using inline citation markers [1], [2], ...",
                '2) SOURCES section, one per line: [n] {"doc_id":"...","chunk_id":"..."}',
                'For interpretive statements, prefix sentence with "Hypothesis:" or "Possible interpretation:".',
                "If evidence is weak, still provide short cautious directions and cite relevant sources.",
                f"Write in {target}.",
            ]
        )
    return "\n".join(
        [
            "You are a grounded QA assistant.",
            "Answer ONLY from provided sources. No external knowledge.",
            "Return JSON ONLY with exact schema:",
            STRICT_SCHEMA,
            "Quotes are optional.",
            "Citations should be attached across the answer; ensure at least 2 total citations.",
            "Citations can only use provided doc_id/chunk_id pairs.",
            "If evidence is insufficient, still provide a short cautious suggestion with citations, or answer [] with notes.",
            f"Write claims and notes in {target}.",
        ]
    )


def build_ask_user_prompt(question: str, chunks: Sequence[RetrievedChunk]) -> str:
    context = [
        {
            "rank": c.rank,
            "doc_id": c.doc_id,
            "doc_title": c.doc_title,
            "chunk_id": c.chunk_id,
            "chunk_index": c.chunk_index,
            "start_char": c.start_char,
            "end_char": c.end_char,
            "text": c.prompt_text or c.text,
        }
        for c in chunks
    ]
    return json.dumps({"question": str(question or ""), "context": context}, ensure_ascii=False)


def build_repair_prompt(user_prompt: str, mode: AskMode) -> str:
    if mode == "loose":
        tail = [
            "Your previous response was invalid.",
            "Return cited prose with [1], [2] markers, then SOURCES:",
            '[1] {"doc_id":"...","chunk_id":"..."}',
            "Use only sources from provided context.",
        ]
    else:
        tail = [
            "Your previous response was invalid.",
            "Return JSON ONLY and match this exact schema:",
            STRICT_SCHEMA,
            "Use only sources from provided context.",
        ]
    return "\n".join([user_prompt, "", *tail])


def build_final_repair_prompt(user_prompt: str, mode: AskMode, invalid_output: str) -> str:
    """Last-chance repair prompt that shows the model its own invalid output."""
    invalid = str(invalid_output or "")[:MAX_INVALID_ECHO_CHARS]
    if mode == "loose":
        tail = [
            "Repair the invalid response below.",
            "Return cited prose with [n] markers and a SOURCES block.",
            'SOURCES lines must be: [n] {"doc_id":"...","chunk_id":"..."}',
            "Invalid response:",
            invalid,
        ]
    else:
        tail = [
            "Repair the invalid response below into valid JSON for the exact schema.",
            "Do not add explanation. Return JSON object only.",
            "Use this exact skeleton if needed:",
            '{"answer":[],"notes":"Unable to answer from provided evidence. Suggest a narrower re-query."}',
            "Invalid response:",
            invalid,
        ]
    return "\n".join([user_prompt, "", *tail])


def graceful_no_answer(message: str) -> ValidatedAnswer:
    notes = " ".join(
        p
        for p in [
            "Could not produce a valid grounded answer structure from the model output.",
            f"Technical details: {message}" if message else "",
            "Try Ask again, simplify the question, or switch generation model.",
        ]
        if p
    )
    return ValidatedAnswer(kind="strict", notes=notes, fallback=True)


def parse_and_validate_ask_output(
    text: str | None,
    retrieved: Sequence[RetrievedChunk],
    mode: AskMode = "strict",
    min_citations_overall: int = 2,
) -> ValidatedAnswer:
    """Parse and ground raw model output; never raises on malformed output.

    An unrecoverable strict answer becomes an empty answer with
    `fallback=True` and a note carrying the PARSE_FAILED code.
    """
    floor = max(1, int(min_citations_overall or 2))
    if mode == "loose":
        return validate_loose_cited_response(parse_loose_cited_response(text), retrieved, floor)
    try:
        parsed = parse_ask_json(text)
    except AskParseError as e:
        logger.debug("Strict parse failed: %s", e.message)
        return graceful_no_answer(f"[{e.code}] {e.message}")
    return validate_ask_response(parsed, retrieved, floor)


@dataclass
class AskResult:
    answer: ValidatedAnswer
    mode: AskMode
    retrieved_chunks: list[RetrievedChunk] = field(default_factory=list)
    sources: list[dict[str, Any]] = field(default_factory=list)
    repaired: bool = False
    raw_output: str = ""

    def to_payload(self) -> dict[str, Any]:
        out = self.answer.to_payload()
        out.update(
            {
                "answer_mode": self.mode,
                "sources": self.sources,
                "retrieved_chunks": [c.to_dict() for c in self.retrieved_chunks],
                "repaired": self.repaired,
                "raw_output": self.raw_output[:20000],
            }
        )
        return out


def _needs_repair(validated: ValidatedAnswer) -> bool:
    if validated.kind == "loose":
        return not validated.answer_text
    return validated.fallback


def build_sources(validated: ValidatedAnswer, chunks: Sequence[RetrievedChunk]) -> list[dict[str, Any]]:
    by_key = {c.key: c for c in chunks}
    sources: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    for idx, ref in enumerate(validated.citation_refs):
        key = (ref.doc_id, ref.chunk_id)
        chunk = by_key.get(key)
        if chunk is None or key in seen:
            continue
        seen.add(key)
        sources.append(
            {
                "doc_id": chunk.doc_id,
                "doc_title": chunk.doc_title,
                "chunk_id": chunk.chunk_id,
                "start_char": chunk.start_char,
                "end_char": chunk.end_char,
                "snippet": chunk.text[:SNIPPET_CHARS],
                "marker": ref.marker or idx + 1,
            }
        )
    if sources:
        return sources
    return [
        {
            "doc_id": c.doc_id,
            "doc_title": c.doc_title,
            "chunk_id": c.chunk_id,
            "start_char": c.start_char,
            "end_char": c.end_char,
            "snippet": c.text[:SNIPPET_CHARS],
        }
        for c in list(chunks)[:MAX_FALLBACK_SOURCES]
    ]


def ask_question(
    *,
    question: str,
    generate: GenerateFn,
    generation_model: str,
    retrieved_chunks: Sequence[RetrievedChunk] | None = None,
    db_path: str | None = None,
    documents: Iterable[Document | Mapping[str, Any]] | None = None,
    embedding_model: str | None = None,
    embed_text_fn: EmbedTextFn | None = None,
    mode: AskMode | None = None,
    language: str = "en",
    should_cancel: Callable[[], bool] | None = None,
) -> AskResult:
    """Retrieve evidence, generate an answer and keep only what it grounds.

    `generate(system_prompt, user_prompt, json_mode=..., num_ctx=...)` returns
    raw model text. Up to two repair rounds are attempted when the output cannot be
    parsed at all; the second one shows the model its invalid output.
    """
    cancelled = should_cancel or (lambda: False)
    q = str(question or "").strip()
    if not q:
        raise AskFailedError("Question is empty.")
    model = str(generation_model or "").strip()
    if not model:
        raise AskFailedError("Generation model is not configured.")

    profile = get_ask_model_profile(model)
    ask_mode: AskMode = mode or profile.recommended_mode

    chunks = list(retrieved_chunks or [])
    if not chunks:
        if embed_text_fn is None:
            raise AskFailedError("No retrieved chunks and no embedding function supplied.")
        chunks = retrieve_top_k_chunks(
            db_path=str(db_path or ""),
            question=q,
            documents=documents or [],
            embedding_model=str(embedding_model or settings.embedding_model),
            embed_text_fn=embed_text_fn,
            top_k=profile.top_k,
            max_prompt_chunk_chars=profile.max_prompt_chunk_chars,
        )
    if not chunks:
        return AskResult(answer=ValidatedAnswer(kind=ask_mode, notes=NO_EVIDENCE_NOTE), mode=ask_mode)

    system_prompt = build_ask_system_prompt(language, ask_mode)
    user_prompt = build_ask_user_prompt(q, chunks)

    def _generate(prompt: str) -> str:
        if cancelled():
            raise AskCancelledError()
        try:
            return str(generate(system_prompt, prompt, json_mode=ask_mode == "strict", num_ctx=profile.num_ctx) or "")
        except SemanticError:
            raise
        except Exception as e:
            raise AskFailedError(f"Generation failed: {e}") from e

    raw = _generate(user_prompt)
    validated = parse_and_validate_ask_output(raw, chunks, ask_mode, profile.min_citations_overall)
    repaired = False
    if _needs_repair(validated):
        logger.info("Model output unusable; requesting repair")
        repaired = True
        raw = _generate(build_repair_prompt(user_prompt, ask_mode))
        validated = parse_and_validate_ask_output(raw, chunks, ask_mode, profile.min_citations_overall)
        if _needs_repair(validated):
            logger.info("Repaired output still unusable; final repair round")
            raw = _generate(build_final_repair_prompt(user_prompt, ask_mode, raw))
            validated = parse_and_validate_ask_output(raw, chunks, ask_mode, profile.min_citations_overall)
            if validated.fallback:
                validated.notes = f"{validated.notes} (after retries)"

    if validated.kind == "strict" and not validated.answer and not validated.notes:
        validated.notes = "No grounded claims found in retrieved evidence. Try a narrower question."

    return AskResult(
        answer=validated,
        mode=ask_mode,
        retrieved_chunks=chunks,
        sources=build_sources(validated, chunks),
        repaired=repaired,
        raw_output=raw,
    )
