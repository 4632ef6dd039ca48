from __future__ import annotations

import pytest

from taleturn.modules.llm.errors import OutputParseError
from taleturn.modules.llm.parsers import extract_json_fragment, parse_turn_output, sanitize_raw_snippet


def test_extract_json_fragment_prefers_fenced_block() -> None:
    raw = 'noise {"a": 1} more ```json\n{"txt": "fenced"}\n``` tail'
    assert extract_json_fragment(raw) == '{"txt": "fenced"}'


def test_extract_json_fragment_falls_back_to_outer_braces() -> None:
    assert extract_json_fragment('prefix {"txt": "x"} suffix') == '{"txt": "x"}'
    assert extract_json_fragment("no braces") is None


def test_parse_turn_output_rejects_empty_and_non_object() -> None:
    with pytest.raises(OutputParseError) as empty:
        parse_turn_output("   ")
    assert empty.value.error_kind == "OUTPUT_JSON_PARSE"

    with pytest.raises(OutputParseError) as listed:
        parse_turn_output("[1, 2]")
    assert listed.value.error_kind == "OUTPUT_SHAPE"


def test_parse_turn_output_enforces_envelope_types() -> None:
    with pytest.raises(OutputParseError) as exc:
        parse_turn_output('{"txt": 42}')
    assert exc.value.error_kind == "OUTPUT_SCHEMA_VALIDATE"
    assert parse_turn_output('{"narrative": "ok"}') == {"narrative": "ok"}


def test_sanitize_raw_snippet_redacts_keys_and_collapses_space() -> None:
    snippet = sanitize_raw_snippet("key sk-abcdefghijkl\n\n  leaked", max_len=80)
    assert snippet == "key [REDACTED_KEY] leaked"
    assert sanitize_raw_snippet(None) is None
