import time

import httpx

from taleturn.modules.llm.base import GenerationProvider
from taleturn.modules.llm.errors import EmptyCompletionError


class OpenAICompatProvider(GenerationProvider):
    name = "openai_compat"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens) if max_tokens is not None else None

    async def generate(
        self,
        messages: list[dict],
        *,
        timeout_s: float | None,
        model: str,
        max_tokens_override: int | None = None,
        temperature_override: float | None = None,
    ) -> tuple[str, dict]:
        started = time.perf_counter()
        headers = {"authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature_override is None else float(temperature_override),
            "response_format": {"type": "json_object"},
        }
        max_tokens = max_tokens_override if max_tokens_override is not None else self.max_tokens
        if max_tokens is not None and max_tokens > 0:
            payload["max_tokens"] = int(max_tokens)

        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout=timeout_s)) as client:
            resp = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
            resp.raise_for_status()
            try:
                data = resp.json()
            except ValueError as exc:
                raise EmptyCompletionError("chat completion body is not JSON") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise EmptyCompletionError("chat completion returned no choices")
        message = choices[0].get("message") or {}
        choice_content = message.get("content", "") if isinstance(message, dict) else ""
        if not str(choice_content or "").strip():
            raise EmptyCompletionError("chat completion returned empty content")
        usage_raw = data.get("usage", {}) or {}
        usage = {
            "provider": self.name,
            "model": model,
            "prompt_tokens": int(usage_raw.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(usage_raw.get("completion_tokens", 0) or 0),
            "latency_ms": int((time.perf_counter() - started) * 1000),
        }
        return choice_content, usage
