"""Parsing and grounding validation of generated answers.

Model output is untrusted: everything here either recovers a structure or
degrades it, and every citation or quote that survives validation points at
a chunk from the retrieved set supplied for that question.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import AskParseError
from .types import AskMode, Citation, Claim, Quote, RetrievedChunk

MAX_QUOTE_WORDS = 25

NOTE_QUOTES_OMITTED = "Some quotes omitted due to validation."
NOTE_BELOW_COVERAGE = "No cited answer met minimum citation coverage."
NOTE_NO_GROUNDED_CLAIMS = (
    "No valid grounded claims passed citation validation. "
    "Try asking a narrower question or ask again with same evidence."
)
NOTE_LOOSE_UNVERIFIED = "Some citations were unverified and omitted."
NOTE_LOOSE_NONE_VERIFIED = "No verified citations detected in loose mode output."
NOTE_LOOSE_BELOW_FLOOR = "Citation coverage is below the recommended minimum."
NOTE_LOOSE_EMPTY = "No cited answer text returned by model."

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_SOURCES_HEADER_RE = re.compile(r"(?:^|(?<=[.!?)\]]))[ \t#*_]*sources[ \t*_]*:[ \t*_]*", re.IGNORECASE | re.MULTILINE)
_SOURCE_LINE_RE = re.compile(r"^\[(\d{1,6})\]\s*(.+)$")
_DOC_ID_RE = re.compile(r"doc_id\s*[:=]\s*[\"']?([^\s,;\"']+)", re.IGNORECASE)
_CHUNK_ID_RE = re.compile(r"chunk_id\s*[:=]\s*[\"']?([^\s,;\"']+)", re.IGNORECASE)
_MARKER_RE = re.compile(r"\[(\d{1,6})\]")
_REF_SPLIT_RE = re.compile(r"\s+(?=\[\d{1,6}\])")


@dataclass
class ParsedAsk:
    answer: list[Any]
    notes: str = ""


@dataclass
class ParsedLoose:
    answer_text: str = ""
    refs: list[Citation] = field(default_factory=list)
    notes: str = ""


@dataclass
class ValidatedAnswer:
    kind: AskMode
    answer: list[Claim] = field(default_factory=list)
    answer_text: str = ""
    citation_refs: list[Citation] = field(default_factory=list)
    verified_citation_count: int = 0
    unverified_citation_count: int = 0
    notes: str = ""
    fallback: bool = False

    def to_payload(self) -> dict[str, Any]:
        out = asdict(self)
        out["answer"] = [
            {
                "claim": c.claim,
                "citations": [cit.to_dict() for cit in c.citations],
                "quotes": [asdict(q) for q in c.quotes],
            }
            for c in self.answer
        ]
        out["citation_refs"] = [c.to_dict() for c in self.citation_refs]
        return out


def _s(value: Any) -> str:
    return value if isinstance(value, str) else ""


# --- JSON recovery --------------------------------------------------------


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_first_balanced_object(text: str | None) -> str:
    """First top-level `{...}` span, ignoring braces inside JSON strings."""
    src = str(text or "")
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(src):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth > 0:
                depth -= 1
            if depth == 0 and start >= 0:
                return src[start : i + 1]
    return ""


def _strategy_direct(text: str) -> dict[str, Any] | None:
    return _load_object(text)


def _strategy_fenced(text: str) -> dict[str, Any] | None:
    for m in _FENCE_RE.finditer(text):
        body = m.group(1).strip()
        if body:
            obj = _load_object(body)
            if obj is not None:
                return obj
    return None


def _strategy_balanced(text: str) -> dict[str, Any] | None:
    span = extract_first_balanced_object(text)
    return _load_object(span) if span else None


JSON_STRATEGIES: tuple[Callable[[str], dict[str, Any] | None], ...] = (
    _strategy_direct,
    _strategy_fenced,
    _strategy_balanced,
)


def recover_json_object(text: str | None) -> dict[str, Any] | None:
    """Run the extraction strategies in order; first success wins."""
    raw = str(text or "").strip()
    if not raw:
        return None
    for strategy in JSON_STRATEGIES:
        obj = strategy(raw)
        if obj is not None:
            return obj
    return None


def parse_ask_json(text: str | None) -> ParsedAsk:
    """Recover the strict-mode answer object from raw model output.

    Accepts bare JSON, fenced JSON and JSON embedded in prose; `answers` is
    accepted in place of `answer`. Raises AskParseError otherwise.
    """
    if not str(text or "").strip():
        raise AskParseError("Model returned empty output.")
    try:
        root = json.loads(str(text).strip())
    except (ValueError, RecursionError):
        root = None
    if root is not None and not isinstance(root, dict):
        raise AskParseError("Model JSON root must be an object.")
    obj = recover_json_object(text)
    if obj is None:
        raise AskParseError("Model output is not valid JSON.")

    # known key drift
    answer = obj.get("answer")
    if not isinstance(answer, list):
        answer = obj.get("answers")
    if not isinstance(answer, list):
        raise AskParseError("Model JSON must include answer array.")
    return ParsedAsk(answer=answer, notes=_s(obj.get("notes")))


# --- validation -----------------------------------------------------------


def make_retrieved_chunk_map(retrieved: Iterable[RetrievedChunk] | None) -> dict[tuple[str, str], RetrievedChunk]:
    out: dict[tuple[str, str], RetrievedChunk] = {}
    for chunk in retrieved or []:
        if chunk is not None and chunk.doc_id and chunk.chunk_id:
            out[chunk.key] = chunk
    return out


def _join_notes(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip()).strip()


def _valid_quote(item: Any, chunk_map: dict[tuple[str, str], RetrievedChunk]) -> Quote | None:
    if not isinstance(item, dict):
        return None
    quote, doc_id, chunk_id = _s(item.get("quote")), _s(item.get("doc_id")), _s(item.get("chunk_id"))
    if not quote or not doc_id or not chunk_id:
        return None
    chunk = chunk_map.get((doc_id, chunk_id))
    if chunk is None:
        return None
    if len(quote.split()) > MAX_QUOTE_WORDS:
        return None
    if quote not in (chunk.text or ""):
        return None
    return Quote(doc_id=doc_id, chunk_id=chunk_id, quote=quote)


def validate_ask_response(
    parsed: ParsedAsk,
    retrieved: Iterable[RetrievedChunk] | None,
    min_citations_overall: int = 2,
) -> ValidatedAnswer:
    """Keep only citations and quotes backed by the retrieved chunks.

    Grounding is gated at the response level: when fewer than
    `min_citations_overall` distinct verified citations remain across all
    claims, the whole answer is emptied and a note says why.
    """
    chunk_map = make_retrieved_chunk_map(retrieved)
    floor = max(1, int(min_citations_overall or 2))
    claims: list[Claim] = []
    cited: dict[tuple[str, str], Citation] = {}
    quotes_dropped = False

    raw_items = parsed.answer if isinstance(parsed.answer, list) else []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        claim_text = _s(item.get("claim")).strip()
        if not claim_text:
            continue

        citations: list[Citation] = []
        raw_citations = item.get("citations") if isinstance(item.get("citations"), list) else []
        for c in raw_citations:
            if not isinstance(c, dict):
                continue
            key = (_s(c.get("doc_id")), _s(c.get("chunk_id")))
            if all(key) and key in chunk_map:
                citations.append(Citation(doc_id=key[0], chunk_id=key[1]))
                cited.setdefault(key, Citation(doc_id=key[0], chunk_id=key[1]))

        quotes: list[Quote] = []
        raw_quotes = item.get("quotes") if isinstance(item.get("quotes"), list) else []
        for q in raw_quotes:
            valid = _valid_quote(q, chunk_map)
            if valid is None:
                quotes_dropped = True
            else:
                quotes.append(valid)

        claims.append(Claim(claim=claim_text, citations=citations, quotes=quotes))

    notes = _join_notes(_s(parsed.notes), NOTE_QUOTES_OMITTED if quotes_dropped else "")
    below_floor = len(cited) < floor
    if raw_items and not claims and not notes:
        notes = NOTE_NO_GROUNDED_CLAIMS
    elif below_floor:
        notes = _join_notes(notes, NOTE_BELOW_COVERAGE)

    return ValidatedAnswer(
        kind="strict",
        answer=[] if below_floor else claims,
        citation_refs=list(cited.values()),
        verified_citation_count=len(cited),
        notes=notes,
    )


# --- loose mode -----------------------------------------------------------


def _loose_from_json(obj: dict[str, Any]) -> ParsedLoose:
    answer_text = (_s(obj.get("answer_text")) or _s(obj.get("answer")) or _s(obj.get("response"))).strip()
    refs: list[Citation] = []
    sources = obj.get("sources") if isinstance(obj.get("sources"), list) else []
    for idx, row in enumerate(sources):
        if not isinstance(row, dict):
            continue
        try:
            marker = int(row.get("marker") or idx + 1)
        except (TypeError, ValueError):
            continue
        doc_id, chunk_id = _s(row.get("doc_id")), _s(row.get("chunk_id"))
        if marker > 0 and doc_id and chunk_id:
            refs.append(Citation(doc_id=doc_id, chunk_id=chunk_id, marker=marker))
    return ParsedLoose(answer_text=answer_text, refs=refs, notes=_s(obj.get("notes")))


def _parse_source_line(line: str) -> Citation | None:
    m = _SOURCE_LINE_RE.match(line)
    if not m:
        return None
    marker = int(m.group(1))
    rest = m.group(2).strip()
    if marker <= 0 or not rest:
        return None

    obj = _load_object(rest)
    if obj is not None:
        doc_id, chunk_id = _s(obj.get("doc_id")), _s(obj.get("chunk_id"))
    else:
        doc_m, chunk_m = _DOC_ID_RE.search(rest), _CHUNK_ID_RE.search(rest)
        doc_id = doc_m.group(1) if doc_m else ""
        chunk_id = chunk_m.group(1) if chunk_m else ""
    if doc_id and chunk_id:
        return Citation(doc_id=doc_id, chunk_id=chunk_id, marker=marker)
    return None


def parse_loose_cited_response(text: str | None) -> ParsedLoose:
    """Split marker-annotated prose from its trailing Sources: block.

    Also accepts a JSON-shaped loose answer. Never raises; empty input gives
    an empty parse.
    """
    raw = str(text or "").strip()
    if not raw:
        return ParsedLoose()

    obj = _load_object(raw)
    if obj is not None:
        return _loose_from_json(obj)

    header = _SOURCES_HEADER_RE.search(raw)
    if header is None:
        return ParsedLoose(answer_text=raw)

    answer_text = raw[: header.start()].strip()
    refs = []
    for line in raw[header.end() :].splitlines():
        # several refs may share one line when the block is written inline
        for piece in _REF_SPLIT_RE.split(line.strip()):
            ref = _parse_source_line(piece.strip()) if piece.strip() else None
            if ref is not None:
                refs.append(ref)
    return ParsedLoose(answer_text=answer_text, refs=refs)


def validate_loose_cited_response(
    parsed: ParsedLoose,
    retrieved: Iterable[RetrievedChunk] | None,
    min_citations_overall: int = 2,
) -> ValidatedAnswer:
    """Verify marker references; the answer text is kept even when none verify."""
    chunk_map = make_retrieved_chunk_map(retrieved)
    floor = max(1, int(min_citations_overall or 2))
    answer_text = (parsed.answer_text or "").strip()
    notes = _s(parsed.notes)

    if not answer_text:
        return ValidatedAnswer(kind="loose", notes=notes or NOTE_LOOSE_EMPTY)

    raw_by_marker: dict[int, Citation] = {}
    verified_by_marker: dict[int, Citation] = {}
    for ref in parsed.refs:
        if not ref.marker or ref.marker <= 0:
            continue
        raw_by_marker.setdefault(ref.marker, ref)
        if (ref.doc_id, ref.chunk_id) in chunk_map:
            verified_by_marker[ref.marker] = ref

    used: list[int] = []
    for m in _MARKER_RE.finditer(answer_text):
        marker = int(m.group(1))
        if marker > 0 and marker not in used:
            used.append(marker)

    citation_refs = [verified_by_marker[m] for m in used if m in verified_by_marker]
    unverified = sum(1 for m in used if m in raw_by_marker) - len(citation_refs)
    unverified = max(0, unverified)

    extra: list[str] = []
    if unverified > 0:
        extra.append(NOTE_LOOSE_UNVERIFIED)
    if not citation_refs:
        extra.append(NOTE_LOOSE_NONE_VERIFIED)
    elif len(citation_refs) < floor:
        extra.append(NOTE_LOOSE_BELOW_FLOOR)

    return ValidatedAnswer(
        kind="loose",
        answer_text=answer_text,
        citation_refs=citation_refs,
        verified_citation_count=len(citation_refs),
        unverified_citation_count=unverified,
        notes=_join_notes(notes, *extra),
    )
