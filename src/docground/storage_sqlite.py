from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from .errors import StoreOpenError
from .types import DocIndexState, EmbeddingRecord
from .vector import from_float32_blob, to_float32_blob

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS semantic_chunks (
  doc_id TEXT NOT NULL,
  chunk_id TEXT NOT NULL,
  model_name TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  start_char INTEGER NOT NULL,
  end_char INTEGER NOT NULL,
  chunk_text_hash TEXT NOT NULL,
  chunk_text_preview TEXT,
  embedding_vector BLOB,
  embedding_dim INTEGER DEFAULT 0,
  created_at TEXT NOT NULL,
  PRIMARY KEY (doc_id, chunk_id, model_name)
);

CREATE INDEX IF NOT EXISTS idx_semantic_chunks_model ON semantic_chunks(model_name);
CREATE INDEX IF NOT EXISTS idx_semantic_chunks_doc_model ON semantic_chunks(doc_id, model_name);

CREATE TABLE IF NOT EXISTS semantic_doc_state (
  doc_id TEXT PRIMARY KEY,
  content_fingerprint TEXT NOT NULL,
  chunking_params_fingerprint TEXT NOT NULL,
  model_name TEXT NOT NULL,
  chunk_count INTEGER NOT NULL,
  last_indexed TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS semantic_meta (
  meta_key TEXT PRIMARY KEY,
  meta_value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _state_from_row(row: sqlite3.Row) -> DocIndexState:
    return DocIndexState(
        doc_id=str(row["doc_id"]),
        content_fingerprint=str(row["content_fingerprint"] or ""),
        chunking_params_fingerprint=str(row["chunking_params_fingerprint"] or ""),
        chunk_count=int(row["chunk_count"] or 0),
        last_indexed=str(row["last_indexed"] or ""),
        model_name=str(row["model_name"] or ""),
    )


class SemanticStore:
    """File-backed embedding store.

    One handle per indexing or search call; single writer at a time.
    Use as a context manager or call close() on every exit path.
    """

    def __init__(self, path: str, con: sqlite3.Connection):
        self.path = path
        self._con: sqlite3.Connection | None = con

    # --- lifecycle ---

    @property
    def closed(self) -> bool:
        return self._con is None

    @property
    def con(self) -> sqlite3.Connection:
        if self._con is None:
            raise sqlite3.ProgrammingError(f"store {self.path} is closed")
        return self._con

    def close(self) -> None:
        if self._con is not None:
            self._con.close()
            self._con = None

    def __enter__(self) -> SemanticStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        con = self.con
        con.execute("BEGIN")
        try:
            yield con
        except BaseException:
            con.execute("ROLLBACK")
            raise
        con.execute("COMMIT")

    # --- meta ---

    def get_meta(self, key: str) -> str:
        row = self.con.execute(
            "SELECT meta_value FROM semantic_meta WHERE meta_key=?", (key,)
        ).fetchone()
        return str(row[0] or "") if row else ""

    def set_meta(self, key: str, value: str) -> None:
        self.con.execute(
            """
            INSERT INTO semantic_meta(meta_key, meta_value, updated_at) VALUES (?,?,?)
            ON CONFLICT(meta_key) DO UPDATE SET
              meta_value=excluded.meta_value, updated_at=excluded.updated_at
            """,
            (key, str(value or ""), utc_now_iso()),
        )

    # --- reads ---

    def get_doc_state(self, doc_id: str) -> DocIndexState | None:
        row = self.con.execute(
            "SELECT * FROM semantic_doc_state WHERE doc_id=?", (doc_id,)
        ).fetchone()
        return _state_from_row(row) if row else None

    def get_all_doc_states(self) -> list[DocIndexState]:
        rows = self.con.execute("SELECT * FROM semantic_doc_state ORDER BY doc_id").fetchall()
        return [_state_from_row(r) for r in rows]

    def get_total_chunk_count(self) -> int:
        row = self.con.execute("SELECT COUNT(*) FROM semantic_chunks").fetchone()
        return int(row[0] or 0)

    def get_doc_chunk_count(self, doc_id: str, model_name: str | None = None) -> int:
        if model_name is None:
            row = self.con.execute(
                "SELECT COUNT(*) FROM semantic_chunks WHERE doc_id=?", (doc_id,)
            ).fetchone()
        else:
            row = self.con.execute(
                "SELECT COUNT(*) FROM semantic_chunks WHERE doc_id=? AND model_name=?",
                (doc_id, model_name),
            ).fetchone()
        return int(row[0] or 0)

    def get_doc_chunk_vectors(self, doc_id: str, model_name: str) -> dict[str, tuple[str, list[float]]]:
        """chunk_id -> (chunk_text_hash, embedding) for stored rows with a vector."""
        cur = self.con.execute(
            """
            SELECT chunk_id, chunk_text_hash, embedding_vector FROM semantic_chunks
            WHERE doc_id=? AND model_name=? AND embedding_vector IS NOT NULL
            """,
            (doc_id, model_name),
        )
        out: dict[str, tuple[str, list[float]]] = {}
        for row in cur:
            vec = from_float32_blob(row["embedding_vector"])
            if vec:
                out[str(row["chunk_id"])] = (str(row["chunk_text_hash"] or ""), vec)
        return out

    def iter_embeddings_for_model(self, model_name: str) -> Iterable[EmbeddingRecord]:
        cur = self.con.execute(
            """
            SELECT doc_id, chunk_id, model_name, chunk_index, start_char, end_char,
                   chunk_text_preview, chunk_text_hash, embedding_vector
            FROM semantic_chunks
            WHERE model_name=? AND embedding_vector IS NOT NULL
            """,
            (model_name,),
        )
        for row in cur:
            yield EmbeddingRecord(
                doc_id=str(row["doc_id"]),
                chunk_id=str(row["chunk_id"]),
                model_name=str(row["model_name"]),
                chunk_index=int(row["chunk_index"] or 0),
                start_char=int(row["start_char"] or 0),
                end_char=int(row["end_char"] or 0),
                chunk_text_preview=str(row["chunk_text_preview"] or ""),
                chunk_text_hash=str(row["chunk_text_hash"] or ""),
                embedding=from_float32_blob(row["embedding_vector"]),
            )

    def get_embeddings_for_model(self, model_name: str) -> list[EmbeddingRecord]:
        return list(self.iter_embeddings_for_model(model_name))

    # --- writes ---

    def replace_document(
        self, *, doc_id: str, model_name: str, records: list[EmbeddingRecord], state: DocIndexState
    ) -> None:
        """Swap every row of one document+model and its state in one transaction."""
        now = utc_now_iso()
        with self.transaction() as con:
            con.execute(
                "DELETE FROM semantic_chunks WHERE doc_id=? AND model_name=?", (doc_id, model_name)
            )
            con.executemany(
                """
                INSERT INTO semantic_chunks(
                  doc_id, chunk_id, model_name, chunk_index, start_char, end_char,
                  chunk_text_hash, chunk_text_preview, embedding_vector, embedding_dim, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                [
                    (
                        r.doc_id,
                        r.chunk_id,
                        model_name,
                        r.chunk_index,
                        r.start_char,
                        r.end_char,
                        r.chunk_text_hash,
                        r.chunk_text_preview,
                        to_float32_blob(r.embedding) if r.embedding else None,
                        len(r.embedding or []),
                        now,
                    )
                    for r in records
                ],
            )
            con.execute(
                """
                INSERT INTO semantic_doc_state(
                  doc_id, content_fingerprint, chunking_params_fingerprint,
                  model_name, chunk_count, last_indexed
                ) VALUES (?,?,?,?,?,?)
                ON CONFLICT(doc_id) DO UPDATE SET
                  content_fingerprint=excluded.content_fingerprint,
                  chunking_params_fingerprint=excluded.chunking_params_fingerprint,
                  model_name=excluded.model_name,
                  chunk_count=excluded.chunk_count,
                  last_indexed=excluded.last_indexed
                """,
                (
                    state.doc_id,
                    state.content_fingerprint,
                    state.chunking_params_fingerprint,
                    state.model_name,
                    state.chunk_count,
                    state.last_indexed,
                ),
            )

    def delete_document(self, doc_id: str) -> None:
        with self.transaction() as con:
            con.execute("DELETE FROM semantic_chunks WHERE doc_id=?", (doc_id,))
            con.execute("DELETE FROM semantic_doc_state WHERE doc_id=?", (doc_id,))

    def remap_document_id(self, old_doc_id: str, new_doc_id: str) -> bool:
        """Move a document's rows and state to a new id without re-embedding.

        Returns False when nothing moved (same id, unknown old id, taken new id).
        """
        old_id = str(old_doc_id or "").strip()
        new_id = str(new_doc_id or "").strip()
        if not old_id or not new_id or old_id == new_id:
            return False
        if self.get_doc_state(new_id) is not None or self.get_doc_state(old_id) is None:
            return False

        with self.transaction() as con:
            con.execute("UPDATE semantic_doc_state SET doc_id=? WHERE doc_id=?", (new_id, old_id))
            con.execute(
                """
                UPDATE semantic_chunks
                SET doc_id=:new_id, chunk_id=:new_id || '::' || chunk_index
                WHERE doc_id=:old_id
                """,
                {"new_id": new_id, "old_id": old_id},
            )
        return True


def open_store(db_path: str) -> SemanticStore:
    """Open (and create if needed) the store at db_path.

    Raises StoreOpenError for unwritable, missing-directory or corrupt files.
    """
    path = str(db_path or "").strip()
    if not path:
        raise StoreOpenError("Store path is empty.")

    con: sqlite3.Connection | None = None
    try:
        if path != ":memory:":
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)
        con = sqlite3.connect(path, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.executescript(SCHEMA)
    except (sqlite3.Error, OSError) as e:
        if con is not None:
            con.close()
        logger.warning("Failed to open semantic store %s: %s", path, e)
        raise StoreOpenError(f"Could not open semantic store at {path}: {e}") from e

    return SemanticStore(path, con)
