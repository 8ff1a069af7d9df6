"""pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import os
import random
from collections import deque
from collections.abc import AsyncIterator, Iterator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from thinktree.models.llm_client import InferenceResult
from thinktree.models.thinking_store import ThinkingStore
from thinktree.tools.thinking_engine import ThinkingEngine


class ScriptedInference:
    """Fake inference service that replays queued replies.

    Each queued item is either text (returned with ``tokens`` usage), a ready
    :class:`InferenceResult`, or an exception to raise. When the queue is
    empty ``default`` is returned. Setting ``gate`` makes every call wait on
    it, which lets tests hold a call in flight.
    """

    def __init__(
        self,
        replies: list[object] | None = None,
        *,
        default: str = "Analysis of the problem. Confidence: 80%",
        tokens: tuple[int, int] = (10, 10),
    ) -> None:
        self.replies: deque[object] = deque(replies or [])
        self.default = default
        self.tokens = tokens
        self.prompts: list[str] = []
        self.max_tokens: list[int] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    def queue(self, *replies: object) -> None:
        self.replies.extend(replies)

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def infer(self, prompt: str, max_tokens: int) -> InferenceResult:
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()

        reply = self.replies.popleft() if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, InferenceResult):
            return reply
        return InferenceResult(
            text=str(reply), input_tokens=self.tokens[0], output_tokens=self.tokens[1]
        )


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set up mock environment variables for testing."""
    if not os.getenv("OPENAI_API_KEY"):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test-mock-key-for-testing")
    monkeypatch.setenv("THINKTREE_DB_PATH", ":memory:")


@pytest.fixture
def inference() -> ScriptedInference:
    """Scripted inference service with an empty queue."""
    return ScriptedInference()


@pytest.fixture
def store() -> Iterator[ThinkingStore]:
    """In-memory thinking store."""
    thinking_store = ThinkingStore(":memory:")
    yield thinking_store
    thinking_store.close()


@pytest_asyncio.fixture
async def engine(inference: ScriptedInference, store: ThinkingStore) -> AsyncIterator[ThinkingEngine]:
    """Engine over the scripted inference service and in-memory store."""
    thinking_engine = ThinkingEngine(inference, store, rng=random.Random(0))
    yield thinking_engine
    await thinking_engine.aclose()


@pytest.fixture
def mock_llm_response() -> MagicMock:
    """Create a mock chat completion response."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = "This is a mock response from the LLM."
    response.usage.prompt_tokens = 12
    response.usage.completion_tokens = 8
    return response

