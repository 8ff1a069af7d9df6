"""End-to-end tests for MCP protocol integration.

These tests verify the full MCP protocol flow using FastMCP Client.
"""

from __future__ import annotations

import json
from collections.abc import Iterator

import pytest
from fastmcp import Client

from conftest import ScriptedInference
from thinktree.server import init_engine, mcp, reset_engine
from thinktree.tools.thinking_engine import ThinkingEngine


@pytest.fixture(autouse=True)
def installed_engine(engine: ThinkingEngine) -> Iterator[ThinkingEngine]:
    """Serve the test engine through the MCP server."""
    init_engine(engine)
    yield engine
    reset_engine()


class TestMCPProtocol:
    """Test MCP protocol compliance and tool registration."""

    @pytest.mark.asyncio
    async def test_tools_registered(self) -> None:
        """Test that all expected tools are registered."""
        async with Client(mcp) as client:
            tools = await client.list_tools()

        tool_names = {tool.name for tool in tools}
        expected_tools = {
            # Session lifecycle (3)
            "start_thinking",
            "pause_thinking",
            "resume_thinking",
            # Tree operations (5)
            "expand_thought",
            "critique_thought",
            "explore_alternatives",
            "bookmark_thought",
            "synthesize_conclusion",
            # Inspection (6)
            "get_thought_tree",
            "get_session",
            "list_sessions",
            "delete_session",
            "watch_session",
            "list_templates",
        }

        missing = expected_tools - tool_names
        extra = tool_names - expected_tools
        assert tool_names == expected_tools, f"Missing: {missing}, Extra: {extra}"

    @pytest.mark.asyncio
    async def test_context_not_exposed(self) -> None:
        """Test the injected context is not part of any tool schema."""
        async with Client(mcp) as client:
            tools = await client.list_tools()

        for tool in tools:
            assert "ctx" not in tool.inputSchema.get("properties", {}), tool.name

    @pytest.mark.asyncio
    async def test_list_templates(self) -> None:
        """Test list_templates via MCP protocol."""
        async with Client(mcp) as client:
            result = await client.call_tool("list_templates", {})

        assert not result.is_error, f"Tool returned error: {result.data}"
        templates = json.loads(result.data)["templates"]
        assert len(templates) == 6

    @pytest.mark.asyncio
    async def test_thinking_workflow_via_mcp(self, inference: ScriptedInference) -> None:
        """Test a complete session through MCP protocol."""
        async with Client(mcp) as client:
            # Step 1: Start
            result = await client.call_tool(
                "start_thinking",
                {"query": "Should we shard the database?", "template": "decision-making"},
            )
            assert not result.is_error
            session = json.loads(result.data)["session"]
            session_id = session["id"]
            assert session["status"] == "thinking"

            # Step 2: Expand twice along one branch
            result = await client.call_tool("expand_thought", {"session_id": session_id})
            first = json.loads(result.data)["nodes"][0]
            assert first["depth"] == 1

            result = await client.call_tool(
                "expand_thought", {"session_id": session_id, "node_id": first["id"]}
            )
            second = json.loads(result.data)["nodes"][0]
            assert second["parent_id"] == first["id"]

            # Step 3: Critique the latest thought
            inference.queue("Sharding adds operational cost. Confidence: 65%")
            result = await client.call_tool("critique_thought", {"session_id": session_id})
            critique = json.loads(result.data)["node"]
            assert critique["parent_id"] == second["id"]
            assert critique["type"] == "critique"

            # Step 4: Synthesize
            inference.queue("Defer sharding; add read replicas first.")
            result = await client.call_tool("synthesize_conclusion", {"session_id": session_id})
            assert json.loads(result.data)["conclusion"] == "Defer sharding; add read replicas first."

            # Step 5: Inspect
            result = await client.call_tool("get_session", {"session_id": session_id})
            final = json.loads(result.data)["session"]
            assert final["status"] == "completed"
            assert final["stats"]["branches_explored"] == 4
            assert final["stats"]["revisions_count"] == 1

    @pytest.mark.asyncio
    async def test_error_payload_via_mcp(self) -> None:
        """Test engine errors come back as JSON payloads, not protocol errors."""
        async with Client(mcp) as client:
            result = await client.call_tool("expand_thought", {"session_id": "missing"})

        assert not result.is_error
        assert json.loads(result.data)["error"] == "NOT_FOUND"
