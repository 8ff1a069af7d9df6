"""Inference client for the thinking engine.

The engine only needs ``infer(prompt, max_tokens)``. :class:`LLMClient`
implements it over any OpenAI-compatible chat completions endpoint, with
retry and backoff for transient transport errors. Anything that still fails
is raised as :class:`InferenceFailure` with the vendor message attached.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from thinktree.utils.errors import InferenceFailure
from thinktree.utils.retry import retry_with_backoff

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    InternalServerError,
)

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class InferenceResult:
    """Text generated by one call plus its token usage."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@runtime_checkable
class InferenceService(Protocol):
    """Anything that can turn a prompt into text."""

    async def infer(self, prompt: str, max_tokens: int) -> InferenceResult: ...


class LLMClient:
    """OpenAI-compatible inference client with retry and think-tag stripping.

    Example:
        client = LLMClient(model="gpt-4o-mini")
        result = await client.infer("What is 2+2?", max_tokens=50)
        print(result.text, result.total_tokens)

    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        max_retries: int = 3,
        temperature: float = 0.7,
    ) -> None:
        """Initialize LLM client.

        Args:
            api_key: API key. If None, reads from OPENAI_API_KEY env var.
            base_url: Optional custom API base URL for OpenAI-compatible endpoints.
            model: Model name to use for completions.
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts for transient failures.
            temperature: Sampling temperature.

        Raises:
            InferenceFailure: If API key is not provided and not in environment.

        """
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise InferenceFailure("OPENAI_API_KEY environment variable not set")

        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.temperature = temperature

        # The SDK's own retries are disabled so attempts are counted in one place.
        self.async_client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout,
            max_retries=0,
        )
        self._complete_with_retry = retry_with_backoff(
            max_attempts=max(1, max_retries),
            base_delay=1.0,
            retry_on=TRANSIENT_ERRORS,
        )(self._complete)

        logger.info(f"LLM client initialized with model: {model} (temp: {temperature})")

    async def _complete(self, prompt: str, max_tokens: int) -> InferenceResult:
        response = await self.async_client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=self.temperature,
        )

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        else:
            logger.warning(f"No choices in response from {self.model}")

        usage = response.usage
        return InferenceResult(
            text=self._strip_think_tags(content),
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def infer(self, prompt: str, max_tokens: int) -> InferenceResult:
        """Generate text for ``prompt``.

        Args:
            prompt: Full prompt text.
            max_tokens: Maximum tokens in the response.

        Returns:
            Generated text and token usage.

        Raises:
            InferenceFailure: If generation fails after retries.

        """
        logger.debug(f"Sending request to {self.model} with {len(prompt)} char prompt")
        try:
            return await self._complete_with_retry(prompt, max_tokens)
        except Exception as e:
            logger.error(f"Inference failed: {e}")
            raise InferenceFailure(f"Inference failed: {e!s}") from e

    @staticmethod
    def _strip_think_tags(content: str) -> str:
        """Strip ``<think>...</think>`` blocks emitted by reasoning models.

        An unterminated ``<think>`` keeps only the text before it.
        """
        stripped = _THINK_BLOCK.sub("", content)
        lowered = stripped.lower()
        if "<think>" in lowered:
            stripped = stripped[: lowered.index("<think>")]
        return stripped.strip()
