import json
import re

from taleturn.modules.llm.base import GenerationProvider

_INPUT_SECTION_RE = re.compile(r"=== INPUT_BEGIN ===\n(.*?)\n=== INPUT_END ===", re.S)
_SCENE_RE = re.compile(r"Current scene: (\S+)")


class FakeProvider(GenerationProvider):
    """Deterministic offline narrator used in dev and tests.

    Output shape follows the system prompt: the bundle prompt mentions ``"txt"``
    and gets a bundle, anything else gets the legacy shape.
    """

    name = "fake"

    def __init__(self):
        self.generate_calls = 0

    @staticmethod
    def _player_action(messages: list[dict]) -> str:
        for message in messages:
            if message.get("role") != "user":
                continue
            match = _INPUT_SECTION_RE.search(str(message.get("content") or ""))
            if match:
                return " ".join(match.group(1).split())
        return "Player waits."

    @staticmethod
    def _scene(messages: list[dict]) -> str:
        for message in messages:
            match = _SCENE_RE.search(str(message.get("content") or ""))
            if match:
                return match.group(1)
        return "opening"

    @staticmethod
    def _wants_bundle(messages: list[dict]) -> bool:
        system = next((m for m in messages if m.get("role") == "system"), {})
        return '"txt"' in str(system.get("content") or "")

    def build_payload(self, messages: list[dict]) -> dict:
        action = self._player_action(messages)
        scene = self._scene(messages)
        narrative = f"The story moves on. {action}. The air in {scene} grows still as you consider what comes next."
        choices = [
            {"id": "press_on", "label": "Press on"},
            {"id": "look_closer", "label": "Look closer"},
        ]
        if self._wants_bundle(messages):
            return {
                "scn": scene,
                "txt": narrative,
                "choices": choices,
                "acts": [{"type": "FLAG_SET", "data": {"key": "visited_" + scene, "value": True}}],
                "meta": {"emotion": "curious"},
            }
        return {
            "narrative": narrative,
            "emotion": "curious",
            "choices": choices,
            "relationshipDeltas": {},
            "factionDeltas": {},
            "worldStateChanges": {},
        }

    async def generate(
        self,
        messages: list[dict],
        *,
        timeout_s: float | None,
        model: str,
        max_tokens_override: int | None = None,
        temperature_override: float | None = None,
    ) -> tuple[str, dict]:
        self.generate_calls += 1
        payload = self.build_payload(messages)
        text = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        usage = {
            "provider": self.name,
            "model": model,
            "prompt_tokens": sum(len(str(m.get("content") or "")) for m in messages) // 4,
            "completion_tokens": len(text) // 4,
            "latency_ms": 0,
        }
        return text, usage
