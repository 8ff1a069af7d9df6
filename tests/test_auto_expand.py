"""Tests for background auto-expansion."""

from __future__ import annotations

import asyncio

import pytest

from thinktree.models.thinking_store import ThinkingStore
from thinktree.tools.thinking_engine import ThinkingEngine
from thinktree.tools.thinking_types import EventType, SessionStatus, ThinkingConfig
from thinktree.utils.errors import InferenceFailure, InvalidStateError

from conftest import ScriptedInference


def auto_config(**overrides: object) -> ThinkingConfig:
    return ThinkingConfig(auto_expand=True, **overrides)  # type: ignore[arg-type]


class TestAutoExpandLoop:
    """Tests for the auto-expand decision loop."""

    @pytest.mark.asyncio
    async def test_runs_to_synthesis(self, engine: ThinkingEngine, inference: ScriptedInference) -> None:
        """Test confident expansion continues to max_depth and then synthesizes."""
        session = await engine.start_session("Query", auto_config(max_depth=2))
        await engine.wait_idle(session.id)

        updated = await engine.get_session(session.id)
        tree = await engine.get_tree(session.id)
        assert updated.status == SessionStatus.COMPLETED
        assert updated.final_conclusion
        assert [n.depth for n in tree] == [0, 1, 2]
        assert inference.calls == 3
        assert inference.max_tokens == [1000, 1000, 3000]

    @pytest.mark.asyncio
    async def test_idles_below_threshold(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test a low-confidence node stops the loop without changing status."""
        inference.default = "Maybe. Confidence: 30%"
        session = await engine.start_session("Query", auto_config(min_confidence_threshold=60))
        await engine.wait_idle(session.id)

        assert (await engine.get_session(session.id)).status == SessionStatus.THINKING
        assert len(await engine.get_tree(session.id)) == 2
        assert inference.calls == 1

    @pytest.mark.asyncio
    async def test_budget_pauses(self, store: ThinkingStore) -> None:
        """Test running out of tokens pauses the session."""
        engine = ThinkingEngine(ScriptedInference(tokens=(10, 10)), store)
        session = await engine.start_session("Query", auto_config(max_tokens=30))
        subscription = engine.stream_events(session.id)
        await engine.wait_idle(session.id)

        updated = await engine.get_session(session.id)
        assert updated.status == SessionStatus.PAUSED
        assert updated.stats.total_tokens == 40
        assert len(await engine.get_tree(session.id)) == 3

        events = []
        while subscription.pending():
            events.append(await anext(subscription))
        assert [e.type for e in events] == [
            EventType.NODE_CREATED,
            EventType.NODE_CREATED,
            EventType.SESSION_PAUSED,
        ]
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_failure_marks_session_failed(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test an error in the loop fails the session and emits an error event."""
        inference.queue(InferenceFailure("Inference failed: upstream down"))
        session = await engine.start_session("Query", auto_config())
        subscription = engine.stream_events(session.id)
        await engine.wait_idle(session.id)

        assert (await engine.get_session(session.id)).status == SessionStatus.FAILED
        events = [event async for event in subscription]
        assert [e.type for e in events] == [EventType.ERROR]
        assert events[0].data["error"] == "INFERENCE_FAILURE"
        assert "upstream down" in events[0].data["message"]

        with pytest.raises(InvalidStateError):
            await engine.synthesize(session.id)

    @pytest.mark.asyncio
    async def test_not_started_when_disabled(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test sessions without auto_expand stay idle."""
        session = await engine.start_session("Query")
        await engine.wait_idle(session.id)
        assert inference.calls == 0


class TestAutoExpandConcurrency:
    """Tests for interleaving the loop with explicit operations."""

    @pytest.mark.asyncio
    async def test_pause_during_inference(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test pausing while a step is in flight discards its node."""
        inference.gate = asyncio.Event()
        session = await engine.start_session("Query", auto_config())
        await asyncio.wait_for(inference.started.wait(), timeout=1)

        await engine.pause(session.id)
        inference.gate.set()
        await engine.wait_idle(session.id)

        updated = await engine.get_session(session.id)
        assert updated.status == SessionStatus.PAUSED
        assert len(await engine.get_tree(session.id)) == 1
        assert updated.stats.total_tokens == 20

    @pytest.mark.asyncio
    async def test_resume_restarts_loop(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test resuming an auto session continues expansion."""
        inference.gate = asyncio.Event()
        session = await engine.start_session("Query", auto_config(max_depth=1))
        await asyncio.wait_for(inference.started.wait(), timeout=1)
        await engine.pause(session.id)
        inference.gate.set()
        await engine.wait_idle(session.id)

        await engine.resume(session.id)
        await engine.wait_idle(session.id)

        assert (await engine.get_session(session.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lock_free_during_inference(
        self, engine: ThinkingEngine, inference: ScriptedInference
    ) -> None:
        """Test the loop does not hold the session lock while waiting on the model."""
        inference.gate = asyncio.Event()
        session = await engine.start_session("Query", auto_config())
        await asyncio.wait_for(inference.started.wait(), timeout=1)

        bookmark = await asyncio.wait_for(
            engine.bookmark(session.id, session.root_node_id), timeout=1
        )
        assert bookmark.node_id == session.root_node_id
        inference.gate.set()
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_delete_cancels_loop(
        self, engine: ThinkingEngine, inference: ScriptedInference, store: ThinkingStore
    ) -> None:
        """Test deleting a session stops its loop."""
        inference.gate = asyncio.Event()
        session = await engine.start_session("Query", auto_config())
        await asyncio.wait_for(inference.started.wait(), timeout=1)

        await engine.delete_session(session.id)
        inference.gate.set()
        await engine.wait_idle()

        assert store.load_session(session.id) is None
        assert store.load_tree(session.id) == []
