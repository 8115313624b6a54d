"""OpenAI API wrapper for the summary generator."""

from __future__ import annotations

import logging
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError

from leadbrief.config import settings
from leadbrief.models import GeneratorOutput

logger = logging.getLogger(__name__)

REASONING_MIN_TOKENS = 800
REASONING_MAX_TOKENS = 1600


class GeneratorError(RuntimeError):
    """The generator could not produce any output."""


def is_reasoning_model(model: str) -> bool:
    return str(model or "").lower().startswith("gpt-5")


def _get_openai_client(api_key: str, base_url: str, timeout: float) -> Optional[AsyncOpenAI]:
    if not api_key:
        logger.warning("OpenAI API key not configured: generator disabled")
        return None
    return AsyncOpenAI(
        api_key=api_key,
        base_url=base_url or None,
        timeout=timeout,
        max_retries=0,
    )


class OpenAIGenerator:
    """Thin wrapper around OpenAI chat completions for summary HTML."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        reasoning_effort: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.model = model or settings.openai_model
        self.timeout = timeout if timeout is not None else settings.generator_timeout_seconds
        self.temperature = temperature if temperature is not None else settings.openai_temperature
        self.max_tokens = max_tokens if max_tokens is not None else settings.openai_max_tokens
        self.reasoning_effort = reasoning_effort or settings.openai_reasoning_effort or (
            "minimal" if is_reasoning_model(self.model) else ""
        )
        self.client = client or _get_openai_client(
            api_key if api_key is not None else settings.openai_api_key,
            base_url if base_url is not None else settings.openai_base_url,
            self.timeout,
        )

    def token_budget(self) -> int:
        if is_reasoning_model(self.model):
            return max(REASONING_MIN_TOKENS, min(int(self.max_tokens), REASONING_MAX_TOKENS))
        return int(self.max_tokens)

    def completion_kwargs(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Request parameters; reasoning-model families take a different token knob."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if is_reasoning_model(self.model):
            kwargs["max_completion_tokens"] = self.token_budget()
            if self.reasoning_effort:
                kwargs["reasoning_effort"] = self.reasoning_effort
        else:
            kwargs["temperature"] = self.temperature
            kwargs["max_tokens"] = self.token_budget()
        return kwargs

    async def generate(self, system_prompt: str, user_prompt: str) -> GeneratorOutput:
        if not self.client:
            raise GeneratorError("OpenAI client not initialised (missing API key)")
        try:
            response = await self.client.chat.completions.create(
                **self.completion_kwargs(system_prompt, user_prompt)
            )
        except OpenAIError as exc:
            raise GeneratorError(f"OpenAI error: {str(exc)[:2000]}") from exc

        choice = response.choices[0] if response.choices else None
        usage = response.usage.model_dump() if getattr(response, "usage", None) else None
        return GeneratorOutput(
            content=(choice.message.content if choice else None) or "",
            usage=usage,
            finish_reason=choice.finish_reason if choice else None,
        )
