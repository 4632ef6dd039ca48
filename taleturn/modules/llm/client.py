from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from taleturn.config import settings
from taleturn.modules.llm.base import GenerationProvider
from taleturn.modules.llm.errors import (
    EmptyCompletionError,
    MalformedOutput,
    OutputParseError,
    UpstreamFailure,
    UpstreamTimeout,
)
from taleturn.modules.llm.parsers import parse_turn_output, sanitize_raw_snippet
from taleturn.modules.llm.prompts import PromptEnvelope, build_repair_messages
from taleturn.modules.llm.providers.fake import FakeProvider
from taleturn.modules.llm.providers.openai_compat import OpenAICompatProvider

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class GenerationOutcome:
    payload: dict
    raw_text: str
    attempts: int
    repaired: bool
    usage: dict = field(default_factory=dict)

    def to_meta(self) -> dict:
        return {
            "attempts": self.attempts,
            "repaired": self.repaired,
            "usage": dict(self.usage),
        }


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, EmptyCompletionError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        return status_code == 429 or status_code >= 500
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return True
    return False


def backoff_delay_s(attempt: int, base_s: float) -> float:
    return float(base_s) * (2 ** max(0, attempt - 1))


class GenerationClient:
    """Single entry point to the external generator.

    Every provider call runs under ``asyncio.wait_for`` so a timeout cancels
    the in-flight request. Timeouts are raised straight away; transient errors
    are retried with exponential backoff; a malformed answer gets exactly one
    repair round trip through the same call path.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        *,
        model: str | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
        backoff_base_s: float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.model = model or settings.llm_model
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.llm_timeout_s)
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.llm_max_attempts))
        self.backoff_base_s = float(backoff_base_s if backoff_base_s is not None else settings.llm_backoff_base_s)
        self._sleep = sleep

    async def _call_once(self, messages: list[dict], *, timeout_s: float) -> tuple[str, dict]:
        try:
            return await asyncio.wait_for(
                self.provider.generate(messages, timeout_s=timeout_s, model=self.model),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout(
                f"generation call exceeded {timeout_s:.1f}s",
                timeout_s=timeout_s,
            ) from exc

    async def call_with_retry(self, messages: list[dict], *, timeout_s: float | None = None) -> tuple[str, dict, int]:
        effective_timeout = float(timeout_s if timeout_s is not None else self.timeout_s)
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                text, usage = await self._call_once(messages, timeout_s=effective_timeout)
                return text, dict(usage or {}), attempt
            except UpstreamTimeout as exc:
                exc.attempts = attempt
                raise
            except Exception as exc:  # noqa: BLE001
                if not is_transient_error(exc):
                    logger.warning(
                        "generation attempt %s/%s failed permanently provider=%s error=%r",
                        attempt,
                        self.max_attempts,
                        self.provider.name,
                        exc,
                    )
                    raise UpstreamFailure(
                        f"generation call failed: {exc!r}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc
                last_error = exc
                logger.warning(
                    "generation attempt %s/%s failed provider=%s error=%s",
                    attempt,
                    self.max_attempts,
                    self.provider.name,
                    exc,
                )
                if attempt < self.max_attempts:
                    await self._sleep(backoff_delay_s(attempt, self.backoff_base_s))
        raise UpstreamFailure(
            f"generation failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_error=last_error,
        )

    async def agenerate(self, envelope: PromptEnvelope, *, timeout_s: float | None = None) -> GenerationOutcome:
        messages = envelope.to_messages()
        raw_text, usage, attempts = await self.call_with_retry(messages, timeout_s=timeout_s)
        try:
            payload = parse_turn_output(raw_text)
            return GenerationOutcome(payload=payload, raw_text=raw_text, attempts=attempts, repaired=False, usage=usage)
        except OutputParseError as exc:
            first_error = exc
        logger.info(
            "generation output malformed, requesting repair kind=%s raw=%s",
            first_error.error_kind,
            first_error.raw_snippet,
        )

        repair_messages = build_repair_messages(envelope, raw_text, str(first_error))
        repaired_text, repair_usage, repair_attempts = await self.call_with_retry(repair_messages, timeout_s=timeout_s)
        attempts += repair_attempts
        try:
            payload = parse_turn_output(repaired_text)
        except OutputParseError as exc:
            raise MalformedOutput(
                f"generation output malformed after repair: {exc}",
                error_kind=exc.error_kind,
                raw_snippet=exc.raw_snippet or sanitize_raw_snippet(repaired_text),
            ) from exc
        return GenerationOutcome(
            payload=payload,
            raw_text=repaired_text,
            attempts=attempts,
            repaired=True,
            usage=repair_usage or usage,
        )

    def generate(self, envelope: PromptEnvelope, *, timeout_s: float | None = None) -> GenerationOutcome:
        return asyncio.run(self.agenerate(envelope, timeout_s=timeout_s))


def build_provider(name: str | None = None) -> GenerationProvider:
    provider_name = str(name or settings.llm_provider).strip().lower()
    if provider_name == "fake":
        return FakeProvider()
    if provider_name in {"openai", "openai_compat"}:
        return OpenAICompatProvider(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    raise RuntimeError(f"unknown LLM_PROVIDER: {provider_name}")


def build_generation_client(provider: GenerationProvider | None = None) -> GenerationClient:
    return GenerationClient(provider or build_provider())
