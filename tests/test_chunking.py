from __future__ import annotations

from docground.chunking import ChunkingConfig, create_deterministic_chunks


def _para_text(n: int, body: int = 148) -> str:
    return "\n\n".join("x" * body for _ in range(n))


class TestChunkingConfig:
    """Parameter normalization."""

    def test_clamps_min_max_and_overlap(self):
        cfg = ChunkingConfig.build(50, 10, 500)
        assert cfg.min_chars == 100
        assert cfg.max_chars == 100
        assert cfg.overlap_chars == 99

    def test_negative_overlap_becomes_zero(self):
        assert ChunkingConfig.build(200, 400, -5).overlap_chars == 0

    def test_missing_values_fall_back_to_settings(self):
        cfg = ChunkingConfig.build()
        assert (cfg.min_chars, cfg.max_chars, cfg.overlap_chars) == (1200, 1800, 200)


class TestCreateDeterministicChunks:
    """Chunk boundaries, offsets and ids."""

    def test_empty_text_gives_no_chunks(self):
        assert create_deterministic_chunks("d", "") == []
        assert create_deterministic_chunks("d", None) == []

    def test_short_text_is_one_chunk(self):
        chunks = create_deterministic_chunks("d", "Short note.", ChunkingConfig.build(100, 200, 20))
        assert len(chunks) == 1
        c = chunks[0]
        assert (c.start_char, c.end_char, c.text) == (0, 11, "Short note.")
        assert c.chunk_id == "d::0"
        assert c.chunk_index == 0

    def test_prefers_paragraph_boundary_inside_window(self):
        cfg = ChunkingConfig.build(200, 400, 50)
        chunks = create_deterministic_chunks("d", _para_text(6), cfg)
        assert chunks[0].end_char == 300
        assert chunks[1].start_char == 250
        assert chunks[1].end_char == 450

    def test_hard_split_without_boundaries(self):
        cfg = ChunkingConfig.build(100, 200, 0)
        chunks = create_deterministic_chunks("d", "x" * 1000, cfg)
        assert [(c.start_char, c.end_char) for c in chunks] == [(i, i + 200) for i in range(0, 1000, 200)]

    def test_offsets_lengths_and_coverage(self):
        text = "Alpha paragraph. " * 300
        cfg = ChunkingConfig.build(1100, 1500, 200)
        chunks = create_deterministic_chunks("doc", text, cfg)

        assert len(chunks) > 1
        assert chunks[0].start_char == 0
        assert chunks[-1].end_char == len(text)
        for c in chunks[:-1]:
            assert cfg.min_chars <= c.end_char - c.start_char <= cfg.max_chars
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.start_char < nxt.start_char <= prev.end_char
        for i, c in enumerate(chunks):
            assert c.text == text[c.start_char : c.end_char]
            assert c.chunk_index == i
            assert c.chunk_id == f"doc::{i}"

    def test_same_input_same_chunks(self):
        text = "Beta paragraph. " * 320
        cfg = ChunkingConfig.build(1100, 1500, 200)
        assert create_deterministic_chunks("d", text, cfg) == create_deterministic_chunks("d", text, cfg)

    def test_offsets_refer_to_canonical_text(self):
        raw = "line one\r\nline two\r\n"
        chunks = create_deterministic_chunks("d", raw, ChunkingConfig.build(100, 200, 0))
        assert chunks[0].text == "line one\nline two\n"
        assert chunks[0].end_char == len("line one\nline two\n")

    def test_preview_is_compact_and_bounded(self):
        chunks = create_deterministic_chunks("d", "word   " * 200, ChunkingConfig.build(1000, 1500, 0))
        preview = chunks[0].preview
        assert len(preview) == 220
        assert preview.endswith("...")
        assert "  " not in preview
