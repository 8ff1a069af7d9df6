"""Tests for MCP server tool implementations.

These tests call the tool functions directly against an engine backed by
scripted inference and an in-memory store.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from typing import Any

import pytest

from conftest import ScriptedInference
from thinktree.config import reload_config
from thinktree.server import (
    _check_size,
    _error,
    _json,
    bookmark_thought,
    critique_thought,
    delete_session,
    expand_thought,
    explore_alternatives,
    get_session,
    get_thought_tree,
    init_engine,
    list_sessions,
    list_templates,
    pause_thinking,
    reset_engine,
    resume_thinking,
    start_thinking,
    synthesize_conclusion,
    watch_session,
)
from thinktree.tools.thinking_engine import ThinkingEngine
from thinktree.utils.errors import BudgetExceededError, SessionNotFoundError


@pytest.fixture(autouse=True)
def installed_engine(engine: ThinkingEngine) -> Iterator[ThinkingEngine]:
    """Install the test engine behind the tools."""
    init_engine(engine)
    yield engine
    reset_engine()
    reload_config()


async def start(**kwargs: Any) -> dict[str, Any]:
    kwargs.setdefault("query", "How should we cache API responses?")
    kwargs.setdefault("auto_expand", False)
    result = json.loads(await start_thinking.fn(**kwargs))
    assert "error" not in result, result
    return result["session"]


# =============================================================================
# Helper Tests
# =============================================================================


class TestHelpers:
    """Tests for JSON and error helpers."""

    def test_json_indent(self) -> None:
        """Test indented and compact output."""
        assert _json({"a": 1}) == '{\n  "a": 1\n}'
        assert _json({"a": 1}, indent=False) == '{"a":1}'
        assert _json(None) == "{}"

    def test_error_thinking_exception(self) -> None:
        """Test engine errors keep their code."""
        payload = json.loads(_error("tool", SessionNotFoundError("abc")))
        assert payload["error"] == "NOT_FOUND"
        assert "abc" in payload["message"]

    def test_error_budget_details(self) -> None:
        """Test budget errors report usage."""
        error = BudgetExceededError("over budget", total_tokens=120, max_tokens=100)
        payload = json.loads(_error("tool", error))
        assert payload["error"] == "BUDGET_EXCEEDED"
        assert payload["total_tokens"] == 120

    def test_error_value_error(self) -> None:
        """Test ValueError maps to INVALID_INPUT."""
        assert json.loads(_error("tool", ValueError("bad")))["error"] == "INVALID_INPUT"

    def test_error_unexpected(self) -> None:
        """Test anything else becomes a TOOL_ERROR."""
        payload = json.loads(_error("expand_thought", RuntimeError("boom")))
        assert payload["error"] == "TOOL_ERROR"
        assert payload["tool"] == "expand_thought"
        assert payload["details"] == {"type": "RuntimeError"}

    def test_check_size(self) -> None:
        """Test oversized inputs are rejected."""
        _check_size("note", None, 3)
        _check_size("note", "abc", 3)
        with pytest.raises(ValueError, match="note exceeds"):
            _check_size("note", "abcd", 3)


# =============================================================================
# Session Lifecycle Tests
# =============================================================================


class TestSessionLifecycle:
    """Tests for start, pause and resume."""

    @pytest.mark.asyncio
    async def test_start_thinking(self) -> None:
        """Test a new session is returned with its config."""
        session = await start(thinking_style="analytical", template="research", max_depth=4)

        assert session["status"] == "thinking"
        assert session["root_node_id"] == session["current_node_id"]
        assert session["config"]["thinking_style"] == "analytical"
        assert session["config"]["template"] == "research"
        assert session["config"]["max_depth"] == 4
        assert session["stats"]["branches_explored"] == 1

    @pytest.mark.asyncio
    async def test_start_uses_configured_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test unset options come from the environment."""
        monkeypatch.setenv("THINKING_MAX_BRANCHES", "2")
        reload_config()

        session = await start()
        assert session["config"]["max_branches"] == 2

    @pytest.mark.asyncio
    async def test_start_empty_query(self) -> None:
        """Test an empty query is invalid input."""
        result = json.loads(await start_thinking.fn(query="   "))
        assert result["error"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_start_oversized_query(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the query size limit."""
        monkeypatch.setenv("MAX_QUERY_SIZE", "10")
        reload_config()

        result = json.loads(await start_thinking.fn(query="x" * 11))
        assert result["error"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_start_unknown_template(self) -> None:
        """Test unknown templates are rejected."""
        result = json.loads(await start_thinking.fn(query="q", template="astrology"))
        assert result["error"] == "INVALID_CONFIG"

    @pytest.mark.asyncio
    async def test_start_invalid_config(self) -> None:
        """Test out-of-range limits are rejected."""
        result = json.loads(await start_thinking.fn(query="q", max_depth=0))
        assert result["error"] == "INVALID_CONFIG"

    @pytest.mark.asyncio
    async def test_pause_resume(self) -> None:
        """Test pausing and resuming round-trips the status."""
        session = await start()

        paused = json.loads(await pause_thinking.fn(session_id=session["id"]))
        assert paused["session"]["status"] == "paused"

        again = json.loads(await pause_thinking.fn(session_id=session["id"]))
        assert again["error"] == "INVALID_STATE"

        resumed = json.loads(await resume_thinking.fn(session_id=session["id"]))
        assert resumed["session"]["status"] == "thinking"

    @pytest.mark.asyncio
    async def test_unknown_session(self) -> None:
        """Test unknown session ids report NOT_FOUND."""
        result = json.loads(await pause_thinking.fn(session_id="missing"))
        assert result["error"] == "NOT_FOUND"


# =============================================================================
# Tree Operation Tests
# =============================================================================


class TestTreeOperations:
    """Tests for expand, critique, alternatives, bookmark and synthesis."""

    @pytest.mark.asyncio
    async def test_expand_thought(self) -> None:
        """Test expansion returns the new children."""
        session = await start()

        result = json.loads(await expand_thought.fn(session_id=session["id"], count=2))

        assert len(result["nodes"]) == 2
        assert {n["parent_id"] for n in result["nodes"]} == {session["root_node_id"]}
        assert all(n["depth"] == 1 for n in result["nodes"])
        assert all(n["confidence"] == 80 for n in result["nodes"])

    @pytest.mark.asyncio
    async def test_expand_at_max_depth(self) -> None:
        """Test expansion past max_depth returns no nodes."""
        session = await start(max_depth=1)
        first = json.loads(await expand_thought.fn(session_id=session["id"]))
        child_id = first["nodes"][0]["id"]

        result = json.loads(await expand_thought.fn(session_id=session["id"], node_id=child_id))
        assert result["nodes"] == []

    @pytest.mark.asyncio
    async def test_expand_budget_exceeded(self) -> None:
        """Test exhausting the budget reports BUDGET_EXCEEDED and pauses."""
        session = await start(max_tokens=20)

        result = json.loads(await expand_thought.fn(session_id=session["id"], count=2))
        assert result["error"] == "BUDGET_EXCEEDED"

        current = json.loads(await get_session.fn(session_id=session["id"]))
        assert current["session"]["status"] == "paused"

    @pytest.mark.asyncio
    async def test_critique_thought(self, inference: ScriptedInference) -> None:
        """Test a critique child is created under the node."""
        session = await start()
        child = json.loads(await expand_thought.fn(session_id=session["id"]))["nodes"][0]
        inference.queue("This step ignores cache invalidation. Confidence: 55%")

        result = json.loads(await critique_thought.fn(session_id=session["id"], node_id=child["id"]))

        node = result["node"]
        assert node["type"] == "critique"
        assert node["parent_id"] == child["id"]
        assert node["confidence"] == 55
        assert node["metadata"]["revised_from"] == child["id"]

    @pytest.mark.asyncio
    async def test_critique_disabled(self) -> None:
        """Test critique respects enable_self_critique."""
        session = await start(enable_self_critique=False)
        result = json.loads(await critique_thought.fn(session_id=session["id"]))
        assert result["error"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_explore_alternatives(self, inference: ScriptedInference) -> None:
        """Test alternatives become siblings of the node."""
        session = await start()
        child = json.loads(await expand_thought.fn(session_id=session["id"]))["nodes"][0]
        inference.queue(
            json.dumps(
                [
                    {"content": "Use a write-through cache", "confidence": 70},
                    {"content": "Cache at the CDN", "confidence": 65},
                ]
            )
        )

        result = json.loads(
            await explore_alternatives.fn(session_id=session["id"], node_id=child["id"], count=2)
        )

        assert [n["content"] for n in result["nodes"]] == [
            "Use a write-through cache",
            "Cache at the CDN",
        ]
        assert {n["parent_id"] for n in result["nodes"]} == {session["root_node_id"]}

    @pytest.mark.asyncio
    async def test_explore_alternatives_malformed(self, inference: ScriptedInference) -> None:
        """Test unparseable output reports PARSE_ERROR."""
        session = await start()
        child = json.loads(await expand_thought.fn(session_id=session["id"]))["nodes"][0]
        inference.queue("Not JSON at all")

        result = json.loads(
            await explore_alternatives.fn(session_id=session["id"], node_id=child["id"])
        )
        assert result["error"] == "PARSE_ERROR"

    @pytest.mark.asyncio
    async def test_bookmark_thought(self) -> None:
        """Test bookmarks are stored and listed with the session."""
        session = await start()

        result = json.loads(
            await bookmark_thought.fn(
                session_id=session["id"],
                node_id=session["root_node_id"],
                note="Good framing",
                user_id="u1",
            )
        )
        assert result["bookmark"]["note"] == "Good framing"

        details = json.loads(await get_session.fn(session_id=session["id"]))
        assert [b["note"] for b in details["bookmarks"]] == ["Good framing"]

    @pytest.mark.asyncio
    async def test_bookmark_unknown_node(self) -> None:
        """Test bookmarking a missing node reports NOT_FOUND."""
        session = await start()
        result = json.loads(await bookmark_thought.fn(session_id=session["id"], node_id="ghost"))
        assert result["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_synthesize_conclusion(self, inference: ScriptedInference) -> None:
        """Test synthesis completes the session."""
        session = await start()
        await expand_thought.fn(session_id=session["id"])
        inference.queue("Cache responses for 5 minutes with ETags.")

        result = json.loads(await synthesize_conclusion.fn(session_id=session["id"]))
        assert result["conclusion"] == "Cache responses for 5 minutes with ETags."

        details = json.loads(await get_session.fn(session_id=session["id"]))
        assert details["session"]["status"] == "completed"
        assert details["session"]["final_conclusion"] == result["conclusion"]

        rejected = json.loads(await expand_thought.fn(session_id=session["id"]))
        assert rejected["error"] == "INVALID_STATE"


# =============================================================================
# Inspection Tests
# =============================================================================


class TestInspection:
    """Tests for tree, session and template queries."""

    @pytest.mark.asyncio
    async def test_get_thought_tree(self) -> None:
        """Test the tree comes back in creation order with an outline."""
        session = await start()
        await expand_thought.fn(session_id=session["id"], count=2)

        result = json.loads(
            await get_thought_tree.fn(session_id=session["id"], outline=True, include_branches=True)
        )

        assert result["node_count"] == 3
        assert result["nodes"][0]["id"] == session["root_node_id"]
        assert result["outline"].startswith("- [observation] How should we cache")
        assert result["branches"] == []

    @pytest.mark.asyncio
    async def test_get_thought_subtree(self) -> None:
        """Test node_id limits the result to a subtree."""
        session = await start()
        child = json.loads(await expand_thought.fn(session_id=session["id"]))["nodes"][0]
        await expand_thought.fn(session_id=session["id"], node_id=child["id"])

        result = json.loads(await get_thought_tree.fn(session_id=session["id"], node_id=child["id"]))
        assert result["node_count"] == 2
        assert result["nodes"][0]["id"] == child["id"]

    @pytest.mark.asyncio
    async def test_list_sessions(self) -> None:
        """Test filters and the limit clamp."""
        await start(user_id="u1")
        second = await start(user_id="u1")
        await start(user_id="u2")
        await pause_thinking.fn(session_id=second["id"])

        by_user = json.loads(await list_sessions.fn(user_id="u1"))
        assert by_user["count"] == 2

        paused = json.loads(await list_sessions.fn(status="paused"))
        assert [s["id"] for s in paused["sessions"]] == [second["id"]]

        clamped = json.loads(await list_sessions.fn(limit=0))
        assert clamped["count"] == 1

    @pytest.mark.asyncio
    async def test_delete_session(self) -> None:
        """Test deleted sessions are gone."""
        session = await start()

        result = json.loads(await delete_session.fn(session_id=session["id"]))
        assert result["deleted"] is True

        missing = json.loads(await get_session.fn(session_id=session["id"]))
        assert missing["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_templates(self) -> None:
        """Test the built-in templates are listed."""
        result = json.loads(await list_templates.fn())
        assert {t["id"] for t in result["templates"]} == {
            "problem-solving",
            "code-review",
            "research",
            "creative",
            "debugging",
            "decision-making",
        }


# =============================================================================
# Watch Tests
# =============================================================================


class TestWatchSession:
    """Tests for watch_session."""

    @pytest.mark.asyncio
    async def test_collects_events(self) -> None:
        """Test events published while watching are returned."""
        session = await start()

        watcher = asyncio.create_task(
            watch_session.fn(session_id=session["id"], max_events=1, timeout_seconds=5)
        )
        await asyncio.sleep(0)
        await expand_thought.fn(session_id=session["id"])

        result = json.loads(await watcher)
        assert result["stopped"] == "max_events"
        assert [e["type"] for e in result["events"]] == ["node_created"]

    @pytest.mark.asyncio
    async def test_ends_with_session(self, inference: ScriptedInference) -> None:
        """Test completion ends the watch."""
        session = await start()

        watcher = asyncio.create_task(watch_session.fn(session_id=session["id"], timeout_seconds=5))
        await asyncio.sleep(0)
        inference.queue("Final answer.")
        await synthesize_conclusion.fn(session_id=session["id"])

        result = json.loads(await watcher)
        assert result["stopped"] == "ended"
        assert result["events"][-1]["type"] == "session_completed"
        assert result["events"][-1]["data"]["conclusion"] == "Final answer."

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test an idle session times out."""
        session = await start()
        result = json.loads(await watch_session.fn(session_id=session["id"], timeout_seconds=0.05))
        assert result == {"session_id": session["id"], "events": [], "stopped": "timeout"}

    @pytest.mark.asyncio
    async def test_completed_session(self, inference: ScriptedInference) -> None:
        """Test watching a finished session returns immediately."""
        session = await start()
        await synthesize_conclusion.fn(session_id=session["id"])

        result = json.loads(await watch_session.fn(session_id=session["id"]))
        assert result["events"] == []
        assert result["stopped"] == "ended"

    @pytest.mark.asyncio
    async def test_unknown_session(self) -> None:
        """Test watching a missing session reports NOT_FOUND."""
        result = json.loads(await watch_session.fn(session_id="missing"))
        assert result["error"] == "NOT_FOUND"
