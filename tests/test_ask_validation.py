from __future__ import annotations

import json

import pytest

from docground.ask_core import parse_and_validate_ask_output
from docground.ask_validation import (
    NOTE_BELOW_COVERAGE,
    NOTE_LOOSE_BELOW_FLOOR,
    NOTE_LOOSE_EMPTY,
    NOTE_LOOSE_NONE_VERIFIED,
    NOTE_LOOSE_UNVERIFIED,
    NOTE_QUOTES_OMITTED,
    ParsedAsk,
    ParsedLoose,
    extract_first_balanced_object,
    parse_ask_json,
    parse_loose_cited_response,
    validate_ask_response,
    validate_loose_cited_response,
)
from docground.errors import AskParseError
from docground.types import Citation, RetrievedChunk

RETRIEVED = [
    RetrievedChunk(doc_id="d1", chunk_id="d1::0", text="Participants described long waiting times at the clinic.", rank=1),
    RetrievedChunk(doc_id="d2", chunk_id="d2::3", text="Staff shortages were mentioned by every nurse interviewed.", rank=2),
]


def _claim(claim, cites, quotes=None):
    return {
        "claim": claim,
        "citations": [{"doc_id": d, "chunk_id": c} for d, c in cites],
        "quotes": quotes or [],
    }


class TestParseAskJson:
    """Recovering the answer object."""

    def test_plain_json(self):
        parsed = parse_ask_json(json.dumps({"answer": [_claim("x", [])], "notes": "n"}))
        assert len(parsed.answer) == 1
        assert parsed.notes == "n"

    def test_fenced_json(self):
        raw = "Here you go:\n```json\n{\"answer\": []}\n```"
        assert parse_ask_json(raw).answer == []

    def test_json_embedded_in_prose(self):
        raw = 'Sure! {"answer": [{"claim": "a {brace} in text"}], "notes": ""} Hope that helps.'
        assert parse_ask_json(raw).answer[0]["claim"] == "a {brace} in text"

    def test_answers_alias(self):
        assert len(parse_ask_json('{"answers": [{"claim": "c"}]}').answer) == 1

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", '{"notes": "missing"}', '{"answer": "text"}'])
    def test_unrecoverable_output_raises(self, raw):
        with pytest.raises(AskParseError) as exc:
            parse_ask_json(raw)
        assert exc.value.code == "PARSE_FAILED"

    def test_balanced_extraction_ignores_braces_in_strings(self):
        assert extract_first_balanced_object('x {"a": "}"} y {"b": 1}') == '{"a": "}"}'

    def test_array_root_is_rejected(self):
        with pytest.raises(AskParseError) as exc:
            parse_ask_json('[{"answer": [{"claim": "c"}]}]')
        assert exc.value.code == "PARSE_FAILED"


class TestValidateAskResponse:
    """Strict-mode grounding."""

    def test_keeps_verified_citations_and_quotes(self):
        parsed = ParsedAsk(
            answer=[
                _claim(
                    "Waiting times were long.",
                    [("d1", "d1::0")],
                    [{"doc_id": "d1", "chunk_id": "d1::0", "quote": "long waiting times"}],
                ),
                _claim("Staff were short.", [("d2", "d2::3")]),
            ]
        )
        out = validate_ask_response(parsed, RETRIEVED, 2)
        assert [c.claim for c in out.answer] == ["Waiting times were long.", "Staff were short."]
        assert out.answer[0].quotes[0].quote == "long waiting times"
        assert out.verified_citation_count == 2
        assert out.notes == ""

    def test_unknown_citations_are_dropped(self):
        parsed = ParsedAsk(answer=[_claim("c", [("d1", "d1::0"), ("d9", "d9::0"), ("d2", "d2::3")])])
        out = validate_ask_response(parsed, RETRIEVED, 2)
        assert [(c.doc_id, c.chunk_id) for c in out.answer[0].citations] == [("d1", "d1::0"), ("d2", "d2::3")]

    def test_answer_emptied_below_citation_floor(self):
        parsed = ParsedAsk(answer=[_claim("one", [("d1", "d1::0")]), _claim("again", [("d1", "d1::0")])])
        out = validate_ask_response(parsed, RETRIEVED, 2)
        assert out.answer == []
        assert NOTE_BELOW_COVERAGE in out.notes
        assert out.verified_citation_count == 1

    def test_claim_without_citations_survives_when_floor_met(self):
        parsed = ParsedAsk(answer=[_claim("a", [("d1", "d1::0"), ("d2", "d2::3")]), _claim("b", [])])
        out = validate_ask_response(parsed, RETRIEVED, 2)
        assert [c.claim for c in out.answer] == ["a", "b"]
        assert out.answer[1].citations == []

    def test_bad_quotes_are_dropped_with_note(self):
        long_quote = " ".join(["word"] * 26)
        parsed = ParsedAsk(
            answer=[
                _claim(
                    "a",
                    [("d1", "d1::0"), ("d2", "d2::3")],
                    [
                        {"doc_id": "d1", "chunk_id": "d1::0", "quote": "not in the chunk"},
                        {"doc_id": "d1", "chunk_id": "d1::0", "quote": long_quote},
                        {"doc_id": "d2", "chunk_id": "d2::3", "quote": "Staff shortages"},
                    ],
                )
            ]
        )
        out = validate_ask_response(parsed, RETRIEVED, 2)
        assert [q.quote for q in out.answer[0].quotes] == ["Staff shortages"]
        assert NOTE_QUOTES_OMITTED in out.notes

    def test_model_notes_are_kept(self):
        parsed = ParsedAsk(answer=[_claim("a", [("d1", "d1::0"), ("d2", "d2::3")])], notes="Evidence is thin.")
        assert validate_ask_response(parsed, RETRIEVED, 2).notes == "Evidence is thin."

    @pytest.mark.parametrize("citations", [5, "d1::0", {"doc_id": "d1", "chunk_id": "d1::0"}, None])
    def test_non_list_citations_are_ignored(self, citations):
        parsed = ParsedAsk(answer=[{"claim": "x", "citations": citations}])
        out = validate_ask_response(parsed, RETRIEVED, 1)
        assert out.verified_citation_count == 0
        assert out.answer == []
        assert NOTE_BELOW_COVERAGE in out.notes


class TestLooseMode:
    """Marker-cited prose."""

    RAW = (
        "Waiting times were long [1]. Staffing was a concern [2]. Maybe funding too [3].\n\n"
        "Sources:\n"
        '[1] {"doc_id":"d1","chunk_id":"d1::0"}\n'
        "[2] doc_id=d2, chunk_id=d2::3\n"
        '[3] {"doc_id":"d7","chunk_id":"d7::1"}\n'
        '[4] {"doc_id":"d1","chunk_id":"d1::0"}\n'
    )

    def test_parse_splits_prose_and_sources(self):
        parsed = parse_loose_cited_response(self.RAW)
        assert parsed.answer_text.startswith("Waiting times")
        assert "Sources" not in parsed.answer_text
        assert [(r.marker, r.doc_id, r.chunk_id) for r in parsed.refs] == [
            (1, "d1", "d1::0"),
            (2, "d2", "d2::3"),
            (3, "d7", "d7::1"),
            (4, "d1", "d1::0"),
        ]

    def test_parse_without_sources_block(self):
        parsed = parse_loose_cited_response("Just prose [1].")
        assert parsed.answer_text == "Just prose [1]."
        assert parsed.refs == []

    def test_parse_json_shaped_answer(self):
        raw = json.dumps({"answer_text": "Prose [1].", "sources": [{"marker": 1, "doc_id": "d1", "chunk_id": "d1::0"}]})
        parsed = parse_loose_cited_response(raw)
        assert parsed.answer_text == "Prose [1]."
        assert parsed.refs == [Citation("d1", "d1::0", 1)]

    def test_parse_empty(self):
        assert parse_loose_cited_response("") == ParsedLoose()

    @pytest.mark.parametrize("header", ["Sources:", "SOURCES :", "sources:", "**Sources:**"])
    def test_sources_header_casing_and_spacing(self, header):
        raw = f"Waiting times were long [1].\n{header}\n" + '[1] {"doc_id":"d1","chunk_id":"d1::0"}'
        parsed = parse_loose_cited_response(raw)
        assert parsed.answer_text == "Waiting times were long [1]."
        assert parsed.refs == [Citation("d1", "d1::0", 1)]

    def test_inline_sources_block(self):
        raw = (
            "Waiting times were long [1] and staff were short [2]. Sources: "
            '[1] {"doc_id":"d1","chunk_id":"d1::0"} [2] doc_id=d2, chunk_id=d2::3'
        )
        parsed = parse_loose_cited_response(raw)
        assert parsed.answer_text == "Waiting times were long [1] and staff were short [2]."
        assert [(r.marker, r.chunk_id) for r in parsed.refs] == [(1, "d1::0"), (2, "d2::3")]
        out = validate_loose_cited_response(parsed, RETRIEVED, 2)
        assert out.verified_citation_count == 2

    def test_word_ending_in_sources_is_not_a_header(self):
        parsed = parse_loose_cited_response("Funding resources: limited [1].")
        assert parsed.answer_text == "Funding resources: limited [1]."
        assert parsed.refs == []

    def test_oversized_markers_are_skipped(self):
        raw = "Answer [" + "9" * 5000 + "] and [1].\nSources:\n[" + "9" * 5000 + "] doc_id=d2, chunk_id=d2::3\n"
        raw += '[1] {"doc_id":"d1","chunk_id":"d1::0"}'
        out = validate_loose_cited_response(parse_loose_cited_response(raw), RETRIEVED, 1)
        assert [(r.marker, r.chunk_id) for r in out.citation_refs] == [(1, "d1::0")]
        assert out.unverified_citation_count == 0

    def test_validate_keeps_only_used_verified_markers(self):
        out = validate_loose_cited_response(parse_loose_cited_response(self.RAW), RETRIEVED, 2)
        assert [(r.marker, r.chunk_id) for r in out.citation_refs] == [(1, "d1::0"), (2, "d2::3")]
        assert out.verified_citation_count == 2
        assert out.unverified_citation_count == 1
        assert NOTE_LOOSE_UNVERIFIED in out.notes
        assert out.answer_text.startswith("Waiting times")

    def test_validate_notes_no_verified_citations(self):
        out = validate_loose_cited_response(ParsedLoose(answer_text="Nothing cited."), RETRIEVED, 2)
        assert out.answer_text == "Nothing cited."
        assert out.citation_refs == []
        assert NOTE_LOOSE_NONE_VERIFIED in out.notes

    def test_validate_notes_below_floor(self):
        parsed = ParsedLoose(answer_text="One [1].", refs=[Citation("d1", "d1::0", 1)])
        out = validate_loose_cited_response(parsed, RETRIEVED, 2)
        assert out.verified_citation_count == 1
        assert NOTE_LOOSE_BELOW_FLOOR in out.notes

    def test_validate_empty_text(self):
        out = validate_loose_cited_response(ParsedLoose(), RETRIEVED, 1)
        assert out.answer_text == ""
        assert out.notes == NOTE_LOOSE_EMPTY


class TestParseAndValidate:
    """Composed entry point."""

    def test_strict_garbage_degrades_to_fallback(self):
        out = parse_and_validate_ask_output("I cannot answer that.", RETRIEVED, "strict", 2)
        assert out.fallback is True
        assert out.answer == []
        assert "PARSE_FAILED" in out.notes

    def test_strict_valid(self):
        raw = json.dumps({"answer": [_claim("a", [("d1", "d1::0"), ("d2", "d2::3")])]})
        out = parse_and_validate_ask_output(raw, RETRIEVED)
        assert out.kind == "strict"
        assert len(out.answer) == 1
        assert out.fallback is False

    def test_strict_scalar_citations_do_not_raise(self):
        out = parse_and_validate_ask_output('{"answer":[{"claim":"x","citations":5}]}', RETRIEVED, "strict", 1)
        assert out.fallback is False
        assert out.answer == []
        assert out.verified_citation_count == 0

    def test_loose_never_raises(self):
        out = parse_and_validate_ask_output(None, RETRIEVED, "loose", 1)
        assert out.kind == "loose"
        assert out.notes == NOTE_LOOSE_EMPTY

    def test_payload_shape(self):
        raw = json.dumps({"answer": [_claim("a", [("d1", "d1::0"), ("d2", "d2::3")])]})
        payload = parse_and_validate_ask_output(raw, RETRIEVED).to_payload()
        assert payload["answer"][0]["citations"] == [
            {"doc_id": "d1", "chunk_id": "d1::0"},
            {"doc_id": "d2", "chunk_id": "d2::3"},
        ]
