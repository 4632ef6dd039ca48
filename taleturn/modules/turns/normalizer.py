from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from taleturn.config import settings
from taleturn.modules.turns.errors import ValidationFailed

logger = logging.getLogger(__name__)

SHAPE_LEGACY = "legacy"
SHAPE_BUNDLE = "bundle"
BUNDLE_MARKERS: tuple[str, ...] = ("txt", "acts")
LEGACY_MARKER = "narrative"
SCENE_MARKER = "scn"

ACT_TYPES = frozenset({"REL_DELTA", "FACTION_DELTA", "RESOURCE_DELTA", "FLAG_SET", "WORLD_SET", "SCENE_SET"})

MAX_BUNDLE_CHOICES = 5
MAX_BUNDLE_ACTS = 8

ALLOWED_EMOTIONS = frozenset({"neutral", "happy", "sad", "angry", "fearful", "surprised", "curious"})
DEFAULT_EMOTION = "neutral"

DEFAULT_CHOICES: tuple[dict, ...] = (
    {"id": "look_around", "label": "Look around"},
    {"id": "continue_forward", "label": "Continue forward"},
    {"id": "check_inventory", "label": "Check inventory"},
)


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


def _none_to_dict(value: Any) -> Any:
    return {} if value is None else value


class LegacyShape(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    shape: Literal["legacy"]
    narrative: str = ""
    emotion: str | None = None
    choices: list[Any] = Field(default_factory=list)
    # values stay raw so _number rejects strings and booleans instead of coercing them
    relationship_deltas: dict[str, Any] = Field(default_factory=dict, alias="relationshipDeltas")
    faction_deltas: dict[str, Any] = Field(default_factory=dict, alias="factionDeltas")
    world_state_changes: dict[str, Any] = Field(default_factory=dict, alias="worldStateChanges")
    npc_responses: list[dict] = Field(default_factory=list, alias="npcResponses")

    @field_validator("choices", "npc_responses", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> Any:
        return _none_to_list(value)

    @field_validator("relationship_deltas", "faction_deltas", "world_state_changes", mode="before")
    @classmethod
    def coerce_dicts(cls, value: Any) -> Any:
        return _none_to_dict(value)


class BundleAct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def default_data(cls, value: Any) -> Any:
        return _none_to_dict(value)


class BundleMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    emotion: str | None = None
    scn: str | None = None


class BundleShape(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shape: Literal["bundle"]
    txt: str = ""
    scn: str | None = None
    choices: list[Any] = Field(default_factory=list)
    # acts are validated one at a time in normalize_bundle
    acts: list[Any] = Field(default_factory=list)
    meta: BundleMeta = Field(default_factory=BundleMeta)

    @field_validator("choices", mode="before")
    @classmethod
    def cap_choices(cls, value: Any) -> Any:
        value = _none_to_list(value)
        return value[:MAX_BUNDLE_CHOICES] if isinstance(value, list) else value

    @field_validator("acts", mode="before")
    @classmethod
    def cap_acts(cls, value: Any) -> Any:
        value = _none_to_list(value)
        return value[:MAX_BUNDLE_ACTS] if isinstance(value, list) else value

    @field_validator("meta", mode="before")
    @classmethod
    def default_meta(cls, value: Any) -> Any:
        return {} if value is None else value


TurnShape = Annotated[Union[LegacyShape, BundleShape], Field(discriminator="shape")]
_TURN_SHAPE_ADAPTER: TypeAdapter = TypeAdapter(TurnShape)


@dataclass(slots=True)
class NormalizedTurn:
    shape: str
    narrative: str
    emotion: str
    choices: list[dict]
    relationship_deltas: dict[str, float] = field(default_factory=dict)
    faction_deltas: dict[str, float] = field(default_factory=dict)
    resource_deltas: dict[str, float] = field(default_factory=dict)
    flags: dict[str, Any] = field(default_factory=dict)
    world: dict[str, Any] = field(default_factory=dict)
    scene: str | None = None
    npc_responses: list[dict] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)

    def state_changes(self) -> dict:
        return {
            "relationships": dict(self.relationship_deltas),
            "factions": dict(self.faction_deltas),
            "resources": dict(self.resource_deltas),
            "flags": dict(self.flags),
            "world": dict(self.world),
            "current_scene": self.scene,
        }


def detect_shape(payload: dict) -> str:
    if any(marker in payload for marker in BUNDLE_MARKERS):
        return SHAPE_BUNDLE
    # a bare scn only marks a bundle when there is no legacy narrative beside it
    if SCENE_MARKER in payload and LEGACY_MARKER not in payload:
        return SHAPE_BUNDLE
    return SHAPE_LEGACY


def normalize_emotion(value: object) -> str:
    emotion = str(value or "").strip().lower()
    return emotion if emotion in ALLOWED_EMOTIONS else DEFAULT_EMOTION


def normalize_choices(raw_choices: list[Any]) -> list[dict]:
    out: list[dict] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_choices, start=1):
        if isinstance(raw, str):
            raw = {"label": raw}
        if not isinstance(raw, dict):
            continue
        label = " ".join(str(raw.get("label") or raw.get("text") or "").split())
        if not label:
            continue
        choice_id = str(raw.get("id") or "").strip() or f"choice-{index}"
        if choice_id in seen:
            continue
        seen.add(choice_id)
        choice = {"id": choice_id, "label": label}
        description = " ".join(str(raw.get("description") or "").split())
        if description:
            choice["description"] = description
        out.append(choice)
    if not out:
        return [dict(choice) for choice in DEFAULT_CHOICES]
    return out


def _number(value: object, *, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailed(f"{field_name} must be numeric", field=field_name)
    return int(value) if float(value).is_integer() else float(value)


def _add(target: dict[str, float], key: object, delta: object, *, field_name: str) -> None:
    name = str(key or "").strip()
    if not name:
        raise ValidationFailed(f"{field_name} is missing its key", field=field_name)
    target[name] = target.get(name, 0) + _number(delta, field_name=field_name)


def _require_narrative(text: str, *, field_name: str) -> str:
    narrative = str(text or "").strip()
    minimum = max(1, int(settings.narrative_min_chars))
    if len(narrative) < minimum:
        raise ValidationFailed(
            f"narrative must be at least {minimum} characters",
            field=field_name,
        )
    return narrative


def normalize_legacy(shape: LegacyShape) -> NormalizedTurn:
    narrative = _require_narrative(shape.narrative, field_name="narrative")
    relationships: dict[str, float] = {}
    for key, delta in shape.relationship_deltas.items():
        _add(relationships, key, delta, field_name="relationshipDeltas")
    factions: dict[str, float] = {}
    for key, delta in shape.faction_deltas.items():
        _add(factions, key, delta, field_name="factionDeltas")
    return NormalizedTurn(
        shape=SHAPE_LEGACY,
        narrative=narrative,
        emotion=normalize_emotion(shape.emotion),
        choices=normalize_choices(shape.choices),
        relationship_deltas=relationships,
        faction_deltas=factions,
        world={str(k): v for k, v in shape.world_state_changes.items()},
        npc_responses=list(shape.npc_responses),
    )


def normalize_bundle(shape: BundleShape) -> NormalizedTurn:
    narrative = _require_narrative(shape.txt, field_name="txt")
    result = NormalizedTurn(
        shape=SHAPE_BUNDLE,
        narrative=narrative,
        emotion=normalize_emotion(shape.meta.emotion),
        choices=normalize_choices(shape.choices),
        scene=str(shape.scn or shape.meta.scn or "").strip() or None,
    )
    for index, raw in enumerate(shape.acts):
        try:
            act = BundleAct.model_validate(raw)
        except ValidationError:
            _skip_act(result, f"Malformed act at index {index}")
            continue
        if act.type not in ACT_TYPES:
            _skip_act(result, f"Unknown act type: {act.type}")
            continue
        try:
            _apply_act(result, act)
        except ValidationFailed as exc:
            _skip_act(result, f"Failed to apply act {act.type}: {exc}")
    return result


def _skip_act(result: NormalizedTurn, violation: str) -> None:
    logger.warning("bundle act skipped: %s", violation)
    result.violations.append(violation)


def _apply_act(result: NormalizedTurn, act: BundleAct) -> None:
    """Fold one act into ``result``; raises ValidationFailed without touching it on bad data."""
    data = act.data
    if act.type == "REL_DELTA":
        _add(result.relationship_deltas, data.get("npc"), data.get("delta"), field_name="REL_DELTA")
    elif act.type == "FACTION_DELTA":
        _add(result.faction_deltas, data.get("faction"), data.get("delta"), field_name="FACTION_DELTA")
    elif act.type == "RESOURCE_DELTA":
        _add(result.resource_deltas, data.get("key"), data.get("delta"), field_name="RESOURCE_DELTA")
    elif act.type in {"FLAG_SET", "WORLD_SET"}:
        key = str(data.get("key") or "").strip()
        if not key:
            raise ValidationFailed(f"{act.type} is missing its key", field=act.type)
        target = result.flags if act.type == "FLAG_SET" else result.world
        target[key] = data.get("value")
    elif act.type == "SCENE_SET":
        scene = str(data.get("scn") or "").strip()
        if not scene:
            raise ValidationFailed("SCENE_SET is missing scn", field="SCENE_SET")
        result.scene = scene


_NORMALIZERS = {
    SHAPE_LEGACY: normalize_legacy,
    SHAPE_BUNDLE: normalize_bundle,
}


def normalize(payload: dict) -> NormalizedTurn:
    if not isinstance(payload, dict):
        raise ValidationFailed("generation output must be an object")
    tagged = {**payload, "shape": detect_shape(payload)}
    try:
        shape = _TURN_SHAPE_ADAPTER.validate_python(tagged)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationFailed(
            f"generation output failed shape validation at {location or 'root'}: {first.get('msg', 'invalid')}",
            field=location or None,
        ) from exc
    return _NORMALIZERS[shape.shape](shape)
