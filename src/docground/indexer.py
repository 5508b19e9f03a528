from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Any

from .chunking import ChunkingConfig, create_deterministic_chunks
from .errors import INDEX_CANCELLED, IndexCancelledError, IndexFailedError, SemanticError
from .fingerprints import DocFingerprints, chunking_params_fingerprint, content_fingerprint
from .settings import settings
from .storage_sqlite import SemanticStore, open_store, utc_now_iso
from .types import Chunk, DocIndexState, Document, EmbeddingRecord
from .util_text import canonicalize_text

logger = logging.getLogger(__name__)

EmbedMany = Callable[..., Sequence[Sequence[float]]]
ProgressFn = Callable[[dict[str, Any]], None]

# Documents of these types carry no indexable text content.
NON_TEXT_DOC_TYPES = {"pdf"}


@dataclass
class IndexResult:
    ok: bool = True
    indexed_docs: int = 0
    skipped_docs: int = 0
    pruned_docs: int = 0
    embedded_chunks: int = 0
    reused_chunks: int = 0
    total_chunks: int = 0
    duration_ms: int = 0

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _DocPlan:
    doc: Document
    fingerprints: DocFingerprints
    chunks: list[Chunk]
    reused: dict[str, list[float]] = field(default_factory=dict)

    @property
    def to_embed(self) -> list[Chunk]:
        return [c for c in self.chunks if c.chunk_id not in self.reused]


def normalize_documents(raw_docs: Iterable[Document | Mapping[str, Any]] | None) -> list[Document]:
    """Coerce host documents, dropping entries without id and non-text types.

    The first occurrence of a duplicated id wins.
    """
    out: list[Document] = []
    seen: set[str] = set()
    for raw in raw_docs or []:
        if isinstance(raw, Document):
            doc_id, title, doc_type, content = raw.id, raw.title, raw.type, raw.content
        elif isinstance(raw, Mapping):
            doc_id = raw.get("id")
            title, doc_type, content = raw.get("title"), raw.get("type"), raw.get("content")
        else:
            continue
        if not doc_id:
            continue
        doc = Document(
            id=str(doc_id),
            title=str(title or "Untitled document"),
            type=str(doc_type or "text"),
            content=canonicalize_text(content),
        )
        if doc.type in NON_TEXT_DOC_TYPES:
            continue
        if doc.id in seen:
            logger.warning("Duplicate document id %s ignored", doc.id)
            continue
        seen.add(doc.id)
        out.append(doc)
    return out


def _never_cancel() -> bool:
    return False


def _ignore_progress(_payload: dict[str, Any]) -> None:
    return None


class _Run:
    """State of one indexing call; never shared between calls."""

    def __init__(
        self,
        *,
        store: SemanticStore,
        model_name: str,
        embed_many: EmbedMany,
        chunk_cfg: ChunkingConfig,
        concurrency: int,
        batch_size: int,
        should_cancel: Callable[[], bool],
        on_progress: ProgressFn,
    ):
        self.store = store
        self.model_name = model_name
        self.embed_many = embed_many
        self.chunk_cfg = chunk_cfg
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.should_cancel = should_cancel
        self.on_progress = on_progress
        self.params_fp = chunking_params_fingerprint(
            chunk_min=chunk_cfg.min_chars,
            chunk_max=chunk_cfg.max_chars,
            chunk_overlap=chunk_cfg.overlap_chars,
            model_name=model_name,
        )
        self.total_to_embed = 0
        self.embedded_so_far = 0
        self.result = IndexResult()

    def emit(self, *, current_doc: str, docs_done: int, docs_total: int) -> None:
        total = self.total_to_embed
        percent = 100 if total == 0 else round(self.embedded_so_far * 100 / total)
        payload = {
            "phase": "indexing",
            "percent": percent,
            "current_doc_name": current_doc,
            "embedded_chunks": self.embedded_so_far,
            "total_chunks": total,
            "docs_done": docs_done,
            "docs_total": docs_total,
        }
        try:
            self.on_progress(payload)
        except Exception as e:
            logger.warning("Progress callback failed: %s", e)

    def plan(self, docs: list[Document]) -> list[_DocPlan]:
        plans: list[_DocPlan] = []
        for doc in docs:
            fps = DocFingerprints(content=content_fingerprint(doc.content), chunking_params=self.params_fp)
            state = self.store.get_doc_state(doc.id)
            if state is not None and fps.matches(state.content_fingerprint, state.chunking_params_fingerprint):
                logger.debug("Document %s unchanged; skipping", doc.id)
                self.result.skipped_docs += 1
                continue

            chunks = create_deterministic_chunks(doc.id, doc.content, self.chunk_cfg)
            stored = self.store.get_doc_chunk_vectors(doc.id, self.model_name)
            reused = {
                c.chunk_id: stored[c.chunk_id][1]
                for c in chunks
                if c.chunk_id in stored and stored[c.chunk_id][0] == c.text_hash
            }
            plans.append(_DocPlan(doc=doc, fingerprints=fps, chunks=chunks, reused=reused))
        self.total_to_embed = sum(len(p.to_embed) for p in plans)
        return plans

    def _call_embed(self, texts: list[str]) -> list[list[float]]:
        vectors = self.embed_many(texts, model_name=self.model_name)
        vectors = [list(v) for v in (vectors or [])]
        if len(vectors) != len(texts):
            raise IndexFailedError(
                f"Embedding function returned {len(vectors)} vectors for {len(texts)} texts."
            )
        if any(len(v) == 0 for v in vectors):
            raise IndexFailedError("Embedding function returned an empty vector.")
        return vectors

    def embed_plan(self, pool: ThreadPoolExecutor, plan: _DocPlan, progress_ctx: dict[str, int]) -> dict[str, list[float]]:
        todo = plan.to_embed
        batches = [todo[i : i + self.batch_size] for i in range(0, len(todo), self.batch_size)]
        vectors: dict[str, list[float]] = {}
        pending: dict[Future[list[list[float]]], list[Chunk]] = {}
        cancelled = False
        next_batch = 0

        try:
            while next_batch < len(batches) or pending:
                while not cancelled and next_batch < len(batches) and len(pending) < self.concurrency:
                    if self.should_cancel():
                        cancelled = True
                        break
                    batch = batches[next_batch]
                    next_batch += 1
                    pending[pool.submit(self._call_embed, [c.text for c in batch])] = batch
                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    batch = pending.pop(fut)
                    for chunk, vec in zip(batch, fut.result()):
                        vectors[chunk.chunk_id] = vec
                    self.embedded_so_far += len(batch)
                    self.emit(current_doc=plan.doc.title, **progress_ctx)
        finally:
            # in-flight batches finish before the next checkpoint
            if pending:
                wait(pending)

        if cancelled:
            raise IndexCancelledError()
        return vectors

    def write(self, plan: _DocPlan, fresh: dict[str, list[float]]) -> None:
        records = [
            EmbeddingRecord(
                doc_id=c.doc_id,
                chunk_id=c.chunk_id,
                model_name=self.model_name,
                chunk_index=c.chunk_index,
                start_char=c.start_char,
                end_char=c.end_char,
                chunk_text_preview=c.preview,
                chunk_text_hash=c.text_hash,
                embedding=fresh.get(c.chunk_id) or plan.reused.get(c.chunk_id) or [],
            )
            for c in plan.chunks
        ]
        state = DocIndexState(
            doc_id=plan.doc.id,
            content_fingerprint=plan.fingerprints.content,
            chunking_params_fingerprint=plan.fingerprints.chunking_params,
            chunk_count=len(plan.chunks),
            last_indexed=utc_now_iso(),
            model_name=self.model_name,
        )
        self.store.replace_document(
            doc_id=plan.doc.id, model_name=self.model_name, records=records, state=state
        )


def run_incremental_indexing(
    *,
    db_path: str,
    documents: Iterable[Document | Mapping[str, Any]],
    embed_many: EmbedMany,
    model_name: str | None = None,
    chunk_min: int | None = None,
    chunk_max: int | None = None,
    chunk_overlap: int | None = None,
    embedding_concurrency: int | None = None,
    batch_size: int | None = None,
    should_cancel: Callable[[], bool] | None = None,
    on_progress: ProgressFn | None = None,
    prune_missing: bool = False,
) -> IndexResult:
    """Bring the store at db_path in line with `documents`.

    Unchanged documents (same content and chunking fingerprints) are skipped
    without any write. Changed documents are re-chunked and embedded in
    batches, at most `embedding_concurrency` in flight, then written in one
    transaction each.

    Raises IndexCancelledError when should_cancel() turns true at a
    checkpoint, IndexFailedError (or the embedder's own SemanticError) when
    embedding fails, StoreOpenError when the store cannot be opened.
    Documents committed before a failure stay committed.
    """
    started = time.monotonic()
    docs = normalize_documents(documents)
    model = str(model_name or settings.embedding_model).strip()
    chunk_cfg = ChunkingConfig.build(chunk_min, chunk_max, chunk_overlap)
    concurrency = max(1, int(embedding_concurrency or settings.embedding_concurrency))
    size = max(1, int(batch_size or settings.embedding_batch_size))

    store = open_store(db_path)
    try:
        run = _Run(
            store=store,
            model_name=model,
            embed_many=embed_many,
            chunk_cfg=chunk_cfg,
            concurrency=concurrency,
            batch_size=size,
            should_cancel=should_cancel or _never_cancel,
            on_progress=on_progress or _ignore_progress,
        )
        store.set_meta("embedding_model_name", model)
        logger.info("Indexing %d documents into %s with %s", len(docs), db_path, model)

        plans = run.plan(docs)
        docs_total = len(plans)
        run.emit(current_doc=plans[0].doc.title if plans else "", docs_done=0, docs_total=docs_total)

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="embed") as pool:
            for i, plan in enumerate(plans):
                if run.should_cancel():
                    raise IndexCancelledError()
                ctx = {"docs_done": i, "docs_total": docs_total}
                try:
                    fresh = run.embed_plan(pool, plan, ctx)
                except SemanticError as e:
                    if e.code == INDEX_CANCELLED and not isinstance(e, IndexCancelledError):
                        raise IndexCancelledError(e.message) from e
                    raise
                except Exception as e:
                    raise IndexFailedError(str(e) or e.__class__.__name__) from e

                try:
                    run.write(plan, fresh)
                except sqlite3.Error as e:
                    raise IndexFailedError(f"Could not write document {plan.doc.id}: {e}") from e
                run.result.indexed_docs += 1
                run.result.embedded_chunks += len(fresh)
                run.result.reused_chunks += len(plan.reused)
                run.emit(current_doc=plan.doc.title, docs_done=i + 1, docs_total=docs_total)

        if prune_missing:
            if run.should_cancel():
                raise IndexCancelledError()
            keep = {d.id for d in docs}
            for state in store.get_all_doc_states():
                if state.doc_id not in keep:
                    store.delete_document(state.doc_id)
                    run.result.pruned_docs += 1
            if run.result.pruned_docs:
                logger.info("Pruned %d documents no longer present", run.result.pruned_docs)

        run.result.total_chunks = store.get_total_chunk_count()
        run.result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Indexing done: %d indexed, %d skipped, %d chunks embedded",
            run.result.indexed_docs,
            run.result.skipped_docs,
            run.result.embedded_chunks,
        )
        return run.result
    except IndexCancelledError:
        logger.info("Indexing cancelled for %s", db_path)
        raise
    except SemanticError as e:
        logger.error("Indexing failed for %s: [%s] %s", db_path, e.code, e.message)
        raise
    finally:
        store.close()
