from __future__ import annotations

import re
from bisect import bisect_left, bisect_right
from dataclasses import dataclass

from .fingerprints import chunk_text_hash
from .settings import settings
from .types import Chunk
from .util_text import canonicalize_text, to_preview

MIN_CHUNK_CHARS_FLOOR = 100

_PARAGRAPH_RE = re.compile(r"\n{2,}")
_LINE_RE = re.compile(r"\n+")
_SENTENCE_RE = re.compile(r"[.!?]+[\])\"']*\s+")

Span = tuple[int, int]


@dataclass(frozen=True)
class ChunkingConfig:
    min_chars: int
    max_chars: int
    overlap_chars: int

    @classmethod
    def build(
        cls,
        min_chars: int | None = None,
        max_chars: int | None = None,
        overlap_chars: int | None = None,
    ) -> ChunkingConfig:
        """Normalize raw parameters; None or 0 falls back to settings."""
        lo = max(MIN_CHUNK_CHARS_FLOOR, int(min_chars or settings.chunk_target_min_chars))
        hi = max(lo, int(max_chars or settings.chunk_target_max_chars))
        overlap = settings.chunk_overlap_chars if overlap_chars is None else int(overlap_chars)
        # overlap must stay below min so every chunk advances
        overlap = min(max(0, overlap), lo - 1)
        return cls(min_chars=lo, max_chars=hi, overlap_chars=overlap)


def _split_by_delimiter(text: str, pattern: re.Pattern[str], offset: int = 0) -> list[Span]:
    units: list[Span] = []
    last = 0
    for m in pattern.finditer(text):
        end = m.end()
        if end > last:
            units.append((offset + last, offset + end))
        last = end
    if last < len(text):
        units.append((offset + last, offset + len(text)))
    return units


def _split_hard(unit: Span, max_chars: int) -> list[Span]:
    start, stop = unit
    return [(s, min(stop, s + max_chars)) for s in range(start, stop, max_chars)]


def _split_by_sentence(text: str, unit: Span, max_chars: int) -> list[Span]:
    start, stop = unit
    sentences = _split_by_delimiter(text[start:stop], _SENTENCE_RE, offset=start)
    if len(sentences) <= 1:
        return _split_hard(unit, max_chars)

    out: list[Span] = []
    for sent in sentences:
        if sent[1] - sent[0] <= max_chars:
            out.append(sent)
        else:
            out.extend(_split_hard(sent, max_chars))
    return out


def _base_units(text: str, max_chars: int) -> list[Span]:
    if "\n\n" in text:
        units = _split_by_delimiter(text, _PARAGRAPH_RE)
    elif "\n" in text:
        units = _split_by_delimiter(text, _LINE_RE)
    else:
        units = [(0, len(text))]

    out: list[Span] = []
    for unit in units:
        if unit[1] - unit[0] <= max_chars:
            out.append(unit)
        else:
            out.extend(_split_by_sentence(text, unit, max_chars))
    return [u for u in out if u[1] > u[0]]


def _select_chunk_end(start: int, unit_ends: list[int], text_len: int, cfg: ChunkingConfig) -> int:
    min_target = min(text_len, start + cfg.min_chars)
    max_target = min(text_len, start + cfg.max_chars)

    first = bisect_right(unit_ends, start)
    if first >= len(unit_ends):
        return max_target

    # first natural boundary inside [min, max], otherwise a hard cut at max
    j = bisect_left(unit_ends, min_target, lo=first)
    if j < len(unit_ends) and unit_ends[j] <= max_target:
        return unit_ends[j]
    return max_target


def create_deterministic_chunks(
    doc_id: str, raw_text: str | None, cfg: ChunkingConfig | None = None
) -> list[Chunk]:
    """Split document content into overlapping character-range chunks.

    Pure: identical content and parameters always give identical boundaries.
    Offsets refer to the canonicalized text.
    """
    cfg = cfg or ChunkingConfig.build()
    text = canonicalize_text(raw_text)
    if not text:
        return []

    unit_ends = [end for _start, end in _base_units(text, cfg.max_chars)]
    chunks: list[Chunk] = []

    start = 0
    n = len(text)
    while start < n:
        end = _select_chunk_end(start, unit_ends, n, cfg)
        if end <= start:
            break

        piece = text[start:end]
        index = len(chunks)
        chunks.append(
            Chunk(
                doc_id=doc_id,
                chunk_id=f"{doc_id}::{index}",
                chunk_index=index,
                start_char=start,
                end_char=end,
                text=piece,
                text_hash=chunk_text_hash(piece),
                preview=to_preview(piece),
            )
        )

        if end >= n:
            break
        next_start = max(end - cfg.overlap_chars, start)
        start = next_start if next_start > start else end

    return chunks
