from __future__ import annotations

import json
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from taleturn.config import settings
from taleturn.db.models import Session as StorySession
from taleturn.db.models import Turn, World

TRUNCATE_KEEP_RATIO = 0.7
MIN_TRUNCATED_TOKENS = 16

SECTION_RULESET = "RULESET"
SECTION_WORLD = "WORLD"
SECTION_CHARACTER = "CHARACTER"
SECTION_ADVENTURE = "ADVENTURE"
SECTION_GAME_STATE = "GAME_STATE"
SECTION_SCENE = "SCENE"
SECTION_HISTORY = "HISTORY"
SECTION_INPUT = "INPUT"

# rendering order of sections in the prompt, independent of inclusion priority
CANONICAL_SECTION_ORDER: tuple[str, ...] = (
    SECTION_RULESET,
    SECTION_WORLD,
    SECTION_CHARACTER,
    SECTION_ADVENTURE,
    SECTION_GAME_STATE,
    SECTION_SCENE,
    SECTION_HISTORY,
    SECTION_INPUT,
)


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    cut = text[: max(0, max_chars)]
    boundary = max(cut.rfind("."), cut.rfind("?"), cut.rfind("!"))
    if boundary > max_chars * TRUNCATE_KEEP_RATIO:
        cut = cut[: boundary + 1]
    return cut


def _clip(value: object, *, limit: int = 160) -> str:
    text = " ".join(str(value or "").split())
    if len(text) <= limit:
        return text
    return text[:limit]


@dataclass(frozen=True, slots=True)
class ContextPiece:
    name: str
    section: str
    priority: int
    text: str
    required: bool = False
    truncatable: bool = False

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text)


@dataclass(frozen=True, slots=True)
class AssembledContext:
    prompt_text: str
    included: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    estimated_tokens: int = 0
    budget_tokens: int = 0

    @property
    def budget_ratio(self) -> float:
        if self.budget_tokens <= 0:
            return 0.0
        return round(self.estimated_tokens / self.budget_tokens, 4)

    def to_meta(self) -> dict:
        return {
            "included": list(self.included),
            "dropped": list(self.dropped),
            "truncated": list(self.truncated),
            "estimated_tokens": self.estimated_tokens,
            "budget_tokens": self.budget_tokens,
            "budget_ratio": self.budget_ratio,
        }


def resolve_selected_option(
    option_id: str | None,
    recent_turns: Sequence[Turn],
) -> dict | None:
    if not option_id:
        return None
    if recent_turns:
        for choice in recent_turns[0].choices or []:
            if isinstance(choice, dict) and str(choice.get("id")) == option_id:
                return dict(choice)
    return {"id": option_id, "label": option_id}


def _input_text(option_id: str | None, input_text: str | None, recent_turns: Sequence[Turn]) -> str:
    selected = resolve_selected_option(option_id, recent_turns)
    if selected is not None:
        label = _clip(selected.get("label") or selected.get("id"), limit=200)
        return f"Player chose option {selected.get('id')}: {label}"
    return f"Player says: {' '.join(str(input_text or '').split())}"


def _state_text(state: dict) -> str:
    compact: dict[str, object] = {}
    for key in ("flags", "resources", "relationships", "factions", "world"):
        value = state.get(key)
        if isinstance(value, dict) and value:
            compact[key] = {str(k): value[k] for k in sorted(value)}
    if not compact:
        return ""
    return json.dumps(compact, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _turn_text(turn: Turn) -> str:
    actor = turn.input_text or turn.option_id or "-"
    return f"Turn {turn.turn_number} | player: {_clip(actor, limit=120)} | story: {_clip(turn.narrative, limit=400)}"


class ContextAssembler:
    """Builds a bounded, deterministic prompt for one turn.

    Pieces are considered by priority (lower first, stable on declaration
    order). A piece that fits is kept whole. A required or truncatable piece
    that does not fit is cut down to the remaining budget; anything else is
    dropped. Sections are rendered in ``CANONICAL_SECTION_ORDER`` so inclusion
    order never changes the prompt layout.
    """

    def __init__(self, *, recent_turns_limit: int | None = None) -> None:
        limit = recent_turns_limit if recent_turns_limit is not None else settings.context_recent_turns
        self.recent_turns_limit = max(0, int(limit))

    def collect_pieces(
        self,
        session: StorySession,
        *,
        option_id: str | None,
        input_text: str | None,
        world: World | None = None,
        recent_turns: Sequence[Turn] = (),
    ) -> list[ContextPiece]:
        state = session.state_json if isinstance(session.state_json, dict) else {}
        pieces = [
            ContextPiece(
                name="input",
                section=SECTION_INPUT,
                priority=0,
                text=_input_text(option_id, input_text, recent_turns),
                required=True,
                truncatable=True,
            )
        ]
        if world is not None and world.ruleset_text:
            pieces.append(
                ContextPiece("ruleset", SECTION_RULESET, 10, world.ruleset_text.strip(), truncatable=True)
            )
        scene = state.get("current_scene") or session.entry_point_ref
        if scene:
            pieces.append(ContextPiece("scene", SECTION_SCENE, 20, f"Current scene: {_clip(scene, limit=128)}"))
        character = state.get("character_summary")
        if character or session.character_ref:
            text = _clip(character, limit=600) if character else f"Character: {session.character_ref}"
            pieces.append(ContextPiece("character", SECTION_CHARACTER, 30, text, truncatable=True))
        if world is not None and world.lore_text:
            pieces.append(ContextPiece("world_lore", SECTION_WORLD, 40, world.lore_text.strip(), truncatable=True))
        adventure = state.get("adventure_summary")
        if adventure:
            pieces.append(
                ContextPiece("adventure_summary", SECTION_ADVENTURE, 50, str(adventure).strip(), truncatable=True)
            )
        state_text = _state_text(state)
        if state_text:
            pieces.append(ContextPiece("game_state", SECTION_GAME_STATE, 60, state_text))
        for offset, turn in enumerate(list(recent_turns)[: self.recent_turns_limit]):
            pieces.append(
                ContextPiece(f"turn_{turn.turn_number}", SECTION_HISTORY, 70 + offset, _turn_text(turn))
            )
        return pieces

    def select(self, pieces: Sequence[ContextPiece], budget_tokens: int) -> AssembledContext:
        budget = max(1, int(budget_tokens))
        ordered = sorted(enumerate(pieces), key=lambda item: (item[1].priority, item[0]))
        remaining = budget
        kept: dict[str, ContextPiece] = {}
        included: list[str] = []
        dropped: list[str] = []
        truncated: list[str] = []

        for _, piece in ordered:
            cost = piece.tokens
            if cost <= remaining:
                kept[piece.name] = piece
                included.append(piece.name)
                remaining -= cost
                continue
            floor = 1 if piece.required else MIN_TRUNCATED_TOKENS
            if piece.truncatable and remaining >= floor:
                cut = truncate_text(piece.text, remaining * 4)
                shortened = ContextPiece(
                    piece.name, piece.section, piece.priority, cut, piece.required, piece.truncatable
                )
                kept[piece.name] = shortened
                included.append(piece.name)
                truncated.append(piece.name)
                remaining -= shortened.tokens
                continue
            if piece.required:
                # nothing left to spend, keep the player's action anyway
                kept[piece.name] = piece
                included.append(piece.name)
                remaining -= cost
                continue
            dropped.append(piece.name)

        prompt_text = self.render([piece for piece in pieces if piece.name in kept], kept)
        estimated = sum(piece.tokens for piece in kept.values())
        return AssembledContext(
            prompt_text=prompt_text,
            included=included,
            dropped=dropped,
            truncated=truncated,
            estimated_tokens=estimated,
            budget_tokens=budget,
        )

    @staticmethod
    def render(declared: Sequence[ContextPiece], kept: dict[str, ContextPiece]) -> str:
        by_section: dict[str, list[str]] = {}
        for piece in declared:
            by_section.setdefault(piece.section, []).append(kept[piece.name].text)
        blocks: list[str] = []
        for section in CANONICAL_SECTION_ORDER:
            texts = by_section.get(section)
            if not texts:
                continue
            body = "\n".join(texts)
            blocks.append(f"=== {section}_BEGIN ===\n{body}\n=== {section}_END ===")
        return "\n\n".join(blocks)

    def assemble(
        self,
        session: StorySession,
        *,
        option_id: str | None,
        input_text: str | None,
        budget_tokens: int | None = None,
        world: World | None = None,
        recent_turns: Sequence[Turn] = (),
    ) -> AssembledContext:
        pieces = self.collect_pieces(
            session,
            option_id=option_id,
            input_text=input_text,
            world=world,
            recent_turns=recent_turns,
        )
        budget = budget_tokens if budget_tokens is not None else settings.context_token_budget
        return self.select(pieces, budget)
