"""Text completion over the OpenAI chat completions API."""

import logging
from typing import Protocol

from openai import AsyncAzureOpenAI, AsyncOpenAI

from docchat.core.config import Settings

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    """Black-box LLM: prompt in, text out."""

    async def complete(self, prompt: str) -> str: ...


class OpenAICompletion:
    """Single-turn completion with a fixed model and temperature."""

    def __init__(
        self,
        client: AsyncOpenAI | AsyncAzureOpenAI,
        model: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        usage = response.usage
        if usage:
            logger.debug(
                f"[Completion] {self.model}: {usage.prompt_tokens} prompt + {usage.completion_tokens} completion tokens"
            )
        return response.choices[0].message.content or ""


def create_completion(settings: Settings, client: AsyncOpenAI | AsyncAzureOpenAI) -> OpenAICompletion:
    """Build the completion provider from settings."""
    return OpenAICompletion(
        client=client,
        model=settings.completion_model,
        temperature=settings.completion_temperature,
        max_tokens=settings.completion_max_tokens,
    )
