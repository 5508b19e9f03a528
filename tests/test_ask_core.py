from __future__ import annotations

import json

import pytest

from conftest import FakeEmbedder, toy_vector
from docground.ask_core import (
    NO_EVIDENCE_NOTE,
    ask_question,
    build_ask_system_prompt,
    build_ask_user_prompt,
    retrieve_top_k_chunks,
    truncate_for_prompt,
)
from docground.errors import AskCancelledError, AskFailedError, SearchFailedError
from docground.indexer import run_incremental_indexing

DOCS = [
    {"id": "d1", "title": "Alpha notes", "content": "Alpha paragraph. " * 20},
    {"id": "d2", "title": "Beta notes", "content": "Beta paragraph. " * 20},
    {"id": "d3", "title": "Gamma notes", "content": "Gamma remark here. " * 20},
]


def _embed_text(model_name, text):
    return toy_vector(text)


@pytest.fixture
def indexed_db(db_path):
    run_incremental_indexing(
        db_path=db_path,
        documents=DOCS,
        embed_many=FakeEmbedder(),
        model_name="toy",
        chunk_min=100,
        chunk_max=120,
        chunk_overlap=20,
    )
    return db_path


def _context(user_prompt):
    # repair prompts append instructions after the JSON payload
    return json.JSONDecoder().raw_decode(user_prompt)[0]["context"]


class RecordingGenerator:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, system_prompt, user_prompt, *, json_mode, num_ctx):
        self.calls.append({"system": system_prompt, "user": user_prompt, "json_mode": json_mode, "num_ctx": num_ctx})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply(user_prompt) if callable(reply) else reply


def _strict_reply(user_prompt):
    ctx = _context(user_prompt)
    cites = [{"doc_id": c["doc_id"], "chunk_id": c["chunk_id"]} for c in ctx[:2]]
    return json.dumps({"answer": [{"claim": "Alpha is discussed.", "citations": cites, "quotes": []}], "notes": ""})


def _loose_reply(user_prompt):
    first = _context(user_prompt)[0]
    src = json.dumps({"doc_id": first["doc_id"], "chunk_id": first["chunk_id"]})
    return f"Alpha is discussed [1].\n\nSources:\n[1] {src}"


class TestRetrieveTopKChunks:
    """Retrieval with full chunk text."""

    def test_returns_best_chunks_with_text(self, indexed_db):
        chunks = retrieve_top_k_chunks(
            db_path=indexed_db,
            question="Tell me about alpha",
            documents=DOCS,
            embedding_model="toy",
            embed_text_fn=_embed_text,
            top_k=2,
        )
        assert [c.rank for c in chunks] == [1, 2]
        assert {c.doc_id for c in chunks} == {"d1"}
        content = DOCS[0]["content"]
        for c in chunks:
            assert c.text == content[c.start_char : c.end_char]
            assert c.doc_title == "Alpha notes"
            assert c.semantic_score == pytest.approx(1.0)
        assert chunks[0].score >= chunks[1].score

    def test_only_supplied_documents_are_considered(self, indexed_db):
        chunks = retrieve_top_k_chunks(
            db_path=indexed_db,
            question="alpha",
            documents=DOCS[1:],
            embedding_model="toy",
            embed_text_fn=_embed_text,
            top_k=5,
        )
        assert chunks
        assert {c.doc_id for c in chunks} <= {"d2", "d3"}

    def test_prompt_text_is_truncated(self, indexed_db):
        long_doc = {"id": "long", "title": "Long", "content": "Alpha " + "x" * 3000}
        db = indexed_db
        run_incremental_indexing(
            db_path=db, documents=[long_doc], embed_many=FakeEmbedder(), model_name="toy", chunk_min=2000, chunk_max=3100
        )
        chunks = retrieve_top_k_chunks(
            db_path=db,
            question="alpha",
            documents=[long_doc],
            embedding_model="toy",
            embed_text_fn=_embed_text,
            top_k=1,
            max_prompt_chunk_chars=500,
        )
        assert chunks[0].prompt_text.endswith("\n...[truncated]")
        assert len(chunks[0].text) > 500

    @pytest.mark.parametrize("question, model", [("  ", "toy"), ("alpha", "")])
    def test_missing_inputs_fail(self, indexed_db, question, model):
        with pytest.raises(SearchFailedError):
            retrieve_top_k_chunks(
                db_path=indexed_db, question=question, documents=DOCS, embedding_model=model, embed_text_fn=_embed_text
            )


class TestPrompts:
    """Prompt construction."""

    def test_truncate_for_prompt(self):
        assert truncate_for_prompt("abc", 10) == "abc"
        assert truncate_for_prompt("abcdef", 3) == "abc\n...[truncated]"

    def test_system_prompt_modes(self):
        assert "JSON ONLY" in build_ask_system_prompt("en", "strict")
        loose = build_ask_system_prompt("sv", "loose")
        assert "SOURCES" in loose
        assert "Swedish" in loose

    def test_user_prompt_is_json(self, indexed_db):
        chunks = retrieve_top_k_chunks(
            db_path=indexed_db, question="alpha", documents=DOCS, embedding_model="toy", embed_text_fn=_embed_text, top_k=1
        )
        payload = json.loads(build_ask_user_prompt("alpha?", chunks))
        assert payload["question"] == "alpha?"
        assert payload["context"][0]["chunk_id"] == chunks[0].chunk_id
        assert payload["context"][0]["rank"] == 1


class TestAskQuestion:
    """End-to-end ask with a fake generator."""

    def _ask(self, db, generator, model="llama3.1:8b", **kw):
        return ask_question(
            question="What about alpha?",
            generate=generator,
            generation_model=model,
            db_path=db,
            documents=DOCS,
            embedding_model="toy",
            embed_text_fn=_embed_text,
            **kw,
        )

    def test_strict_answer_with_sources(self, indexed_db):
        gen = RecordingGenerator(_strict_reply)
        result = self._ask(indexed_db, gen)
        assert result.mode == "strict"
        assert result.repaired is False
        assert [c.claim for c in result.answer.answer] == ["Alpha is discussed."]
        assert result.answer.verified_citation_count == 2
        assert len(result.sources) == 2
        assert all(s["doc_id"] == "d1" and s["snippet"] for s in result.sources)
        assert gen.calls[0]["json_mode"] is True
        assert gen.calls[0]["num_ctx"] == 3072

    def test_unparseable_output_is_repaired_once(self, indexed_db):
        gen = RecordingGenerator("I think alpha is great", _strict_reply)
        result = self._ask(indexed_db, gen)
        assert result.repaired is True
        assert len(gen.calls) == 2
        assert "Your previous response was invalid." in gen.calls[1]["user"]
        assert result.answer.answer

    def test_repeated_garbage_degrades_gracefully(self, indexed_db):
        gen = RecordingGenerator("nope")
        result = self._ask(indexed_db, gen)
        assert result.answer.answer == []
        assert result.answer.fallback is True
        assert len(gen.calls) == 3
        assert "(after retries)" in result.answer.notes
        # falls back to the top retrieved chunks
        assert result.sources
        assert len(result.sources) <= 8

    def test_final_repair_round_shows_invalid_output(self, indexed_db):
        gen = RecordingGenerator("garbage one", "garbage two", _strict_reply)
        result = self._ask(indexed_db, gen)
        assert len(gen.calls) == 3
        final_prompt = gen.calls[2]["user"]
        assert "Repair the invalid response below" in final_prompt
        assert final_prompt.endswith("Invalid response:\ngarbage two")
        assert result.repaired is True
        assert result.answer.answer
        assert result.answer.fallback is False

    def test_small_model_uses_loose_mode(self, indexed_db):
        gen = RecordingGenerator(_loose_reply)
        result = self._ask(indexed_db, gen, model="qwen3:1.7b")
        assert result.mode == "loose"
        assert result.answer.answer_text.startswith("Alpha is discussed [1]")
        assert result.sources[0]["marker"] == 1
        assert gen.calls[0]["json_mode"] is False
        assert gen.calls[0]["num_ctx"] == 2048

    def test_explicit_mode_overrides_profile(self, indexed_db):
        gen = RecordingGenerator(_loose_reply)
        result = self._ask(indexed_db, gen, mode="loose")
        assert result.mode == "loose"

    def test_no_evidence(self, db_path):
        gen = RecordingGenerator(_strict_reply)
        result = self._ask(db_path, gen)
        assert result.answer.notes == NO_EVIDENCE_NOTE
        assert gen.calls == []

    def test_cancel_before_generation(self, indexed_db):
        with pytest.raises(AskCancelledError) as exc:
            self._ask(indexed_db, RecordingGenerator(_strict_reply), should_cancel=lambda: True)
        assert exc.value.code == "ASK_CANCELLED"

    def test_generator_failure(self, indexed_db):
        def broken(*_a, **_kw):
            raise ConnectionError("down")

        with pytest.raises(AskFailedError) as exc:
            self._ask(indexed_db, broken)
        assert "down" in exc.value.message

    def test_payload(self, indexed_db):
        payload = self._ask(indexed_db, RecordingGenerator(_strict_reply)).to_payload()
        assert payload["answer_mode"] == "strict"
        assert payload["retrieved_chunks"][0]["rank"] == 1
        assert payload["sources"]
