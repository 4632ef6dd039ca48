from __future__ import annotations

import json
import re

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JSONSchemaValidationError

from taleturn.modules.llm.errors import (
    OUTPUT_ERROR_JSON_PARSE,
    OUTPUT_ERROR_SCHEMA_VALIDATE,
    OUTPUT_ERROR_SHAPE,
    OutputParseError,
)

_TOKEN_REDACTION_RE = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}\b")
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```", re.IGNORECASE)

# Minimal envelope both output shapes must satisfy before shape detection.
TURN_OUTPUT_ENVELOPE_SCHEMA: dict = {
    "type": "object",
    "anyOf": [
        {"required": ["narrative"]},
        {"required": ["txt"]},
    ],
    "properties": {
        "narrative": {"type": "string"},
        "txt": {"type": "string"},
        "choices": {"type": "array"},
        "acts": {"type": "array"},
        "relationshipDeltas": {"type": "object"},
        "factionDeltas": {"type": "object"},
        "worldStateChanges": {"type": "object"},
    },
}

_ENVELOPE_VALIDATOR = Draft202012Validator(TURN_OUTPUT_ENVELOPE_SCHEMA)


def sanitize_raw_snippet(raw: object, max_len: int = 200) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        text = json.dumps(raw, ensure_ascii=False, default=str)
    else:
        text = str(raw)
    text = _TOKEN_REDACTION_RE.sub("[REDACTED_KEY]", text)
    text = " ".join(text.split())
    if not text:
        return None
    return text[:max_len]


def extract_json_fragment(raw_text: str) -> str | None:
    if not raw_text:
        return None
    fenced = _FENCED_JSON_RE.search(raw_text)
    if fenced:
        return fenced.group(1).strip()
    left = raw_text.find("{")
    right = raw_text.rfind("}")
    if left == -1 or right == -1 or right <= left:
        return None
    return raw_text[left : right + 1].strip()


def parse_payload(raw: object) -> object:
    if isinstance(raw, (dict, list)):
        return raw
    raw_text = str(raw or "").strip()
    if not raw_text:
        raise OutputParseError("empty generation output", error_kind=OUTPUT_ERROR_JSON_PARSE)
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError as exc:
        fragment = extract_json_fragment(raw_text)
        if not fragment:
            raise OutputParseError(
                f"json parse error: {exc}",
                error_kind=OUTPUT_ERROR_JSON_PARSE,
                raw_snippet=sanitize_raw_snippet(raw_text),
            ) from exc
        try:
            return json.loads(fragment)
        except json.JSONDecodeError as fragment_exc:
            raise OutputParseError(
                f"json parse error: {fragment_exc}",
                error_kind=OUTPUT_ERROR_JSON_PARSE,
                raw_snippet=sanitize_raw_snippet(raw_text),
            ) from exc


def validate_envelope(payload: object) -> dict:
    if not isinstance(payload, dict):
        raise OutputParseError(
            "top-level output must be object",
            error_kind=OUTPUT_ERROR_SHAPE,
            raw_snippet=sanitize_raw_snippet(payload),
        )
    try:
        _ENVELOPE_VALIDATOR.validate(payload)
    except JSONSchemaValidationError as exc:
        raise OutputParseError(
            f"schema validate error: {exc.message}",
            error_kind=OUTPUT_ERROR_SCHEMA_VALIDATE,
            raw_snippet=sanitize_raw_snippet(payload),
        ) from exc
    return payload


def parse_turn_output(raw: object) -> dict:
    return validate_envelope(parse_payload(raw))
