from abc import ABC, abstractmethod


class GenerationProvider(ABC):
    name: str

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        *,
        timeout_s: float | None,
        model: str,
        max_tokens_override: int | None = None,
        temperature_override: float | None = None,
    ) -> tuple[str, dict]:
        pass
