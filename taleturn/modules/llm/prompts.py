from __future__ import annotations

from dataclasses import dataclass

PIPELINE_BUNDLE = "bundle"
PIPELINE_LEGACY = "legacy"

_REPAIR_MAX_CHARS = 4000

_BUNDLE_SYSTEM_PROMPT = (
    "You are the narrator of an interactive story. Answer with ONE JSON object and nothing else. "
    'Shape: {"scn": string, "txt": string, "choices": [{"id": string, "label": string}], '
    '"acts": [{"type": string, "data": object}], "meta": {"emotion": string}}. '
    "txt is the narration for this turn (at least one full sentence). "
    "choices holds at most 5 next actions. acts holds at most 8 state changes; "
    "allowed act types: REL_DELTA {npc, delta}, FACTION_DELTA {faction, delta}, "
    "RESOURCE_DELTA {key, delta}, FLAG_SET {key, value}, WORLD_SET {key, value}, SCENE_SET {scn}. "
    "emotion is one of neutral, happy, sad, angry, fearful, surprised, curious."
)

_LEGACY_SYSTEM_PROMPT = (
    "You are the narrator of an interactive story. Answer with ONE JSON object and nothing else. "
    'Shape: {"narrative": string, "emotion": string, "choices": [{"id": string, "label": string, '
    '"description": string}], "relationshipDeltas": {npc: number}, "factionDeltas": {faction: number}, '
    '"worldStateChanges": {key: value}}. '
    "narrative is the narration for this turn (at least one full sentence). Offer 2 to 4 choices."
)

_REPAIR_INSTRUCTION = (
    "Your previous answer could not be parsed as the required JSON object. "
    "Return the same content as ONE valid JSON object with the required keys. "
    "No prose, no markdown fences."
)


@dataclass(frozen=True, slots=True)
class PromptEnvelope:
    system_text: str
    user_text: str
    strategy: str

    def to_messages(self) -> list[dict]:
        return [
            {"role": "system", "content": self.system_text},
            {"role": "user", "content": self.user_text},
        ]


def system_prompt_for(strategy: str) -> str:
    if strategy == PIPELINE_LEGACY:
        return _LEGACY_SYSTEM_PROMPT
    return _BUNDLE_SYSTEM_PROMPT


def build_turn_envelope(prompt_text: str, *, strategy: str) -> PromptEnvelope:
    return PromptEnvelope(
        system_text=system_prompt_for(strategy),
        user_text=prompt_text,
        strategy=strategy,
    )


def build_repair_messages(envelope: PromptEnvelope, raw_text: str, error_message: str) -> list[dict]:
    malformed = str(raw_text or "")[:_REPAIR_MAX_CHARS]
    return [
        *envelope.to_messages(),
        {"role": "assistant", "content": malformed},
        {"role": "user", "content": f"{_REPAIR_INSTRUCTION}\nParser error: {error_message}"},
    ]
