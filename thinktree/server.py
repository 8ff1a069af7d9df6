"""Thinktree MCP Server.

FastMCP 2.0 server exposing interactive thinking sessions. The server owns
the language-model calls: each tool grows, critiques or summarizes a tree of
thoughts for the caller and reports what changed.

Tools:
1. start_thinking / pause_thinking / resume_thinking - Session lifecycle
2. expand_thought / critique_thought / explore_alternatives - Grow the tree
3. bookmark_thought / synthesize_conclusion - Mark and conclude
4. get_thought_tree / get_session / list_sessions / delete_session - Inspect
5. watch_session - Drain the live event stream of a session
6. list_templates - Built-in reasoning templates

Run with: thinktree
Or: python -m thinktree.server
"""

# Note: We intentionally do NOT use `from __future__ import annotations` here
# because it causes issues with Pydantic/FastMCP type resolution at decorator time.

import asyncio
import time
from typing import Any, Literal

import orjson

# Note: uvloop is installed automatically when importing thinktree.utils.session
# (via ThinkingEngine -> SessionLocks imports)
from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from loguru import logger

from thinktree.config import get_config
from thinktree.models.llm_client import LLMClient
from thinktree.models.thinking_store import ThinkingStore
from thinktree.tools.thinking_engine import OutputBudgets, ThinkingEngine
from thinktree.tools.thought_tree import render_outline
from thinktree.utils.errors import ThinkingException, ToolExecutionError
from thinktree.utils.logging import configure_logging, log_context

# Load environment variables from .env file (for local development)
load_dotenv()

ThinkingStyleStr = Literal["thorough", "fast", "creative", "analytical", "methodical"]
SessionStatusStr = Literal["thinking", "paused", "completed", "failed"]

DEFAULT_WATCH_EVENTS = 50
DEFAULT_WATCH_TIMEOUT = 30.0


def _json(data: dict[str, Any] | None, *, indent: bool = True) -> str:
    """Serialize data to JSON string with proper typing.

    Type-safe wrapper around orjson.dumps that returns str.
    """
    if data is None:
        data = {}
    opts = orjson.OPT_INDENT_2 if indent else 0
    result: bytes = orjson.dumps(data, option=opts, default=str)
    return result.decode("utf-8")


def _error(tool_name: str, e: Exception) -> str:
    """Render an exception raised by a tool as a JSON error payload."""
    if isinstance(e, ThinkingException):
        logger.warning(f"{tool_name} rejected: [{e.code}] {e}")
        return _json(e.to_dict(), indent=False)
    if isinstance(e, ValueError):
        logger.warning(f"{tool_name} invalid input: {e}")
        return _json({"error": "INVALID_INPUT", "message": str(e)}, indent=False)
    error = ToolExecutionError(tool_name, str(e), {"type": type(e).__name__})
    logger.error(f"{tool_name} failed: {e}")
    return _json(error.to_dict(), indent=False)


def _check_size(name: str, value: str | None, limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValueError(f"{name} exceeds maximum size ({len(value)} > {limit} characters)")


# =============================================================================
# Initialize FastMCP Server
# =============================================================================

mcp = FastMCP(
    name=get_config().server.name,
    instructions="""Thinktree MCP Server - Interactive thinking sessions.

ARCHITECTURE: The server calls the language model. Each session is a tree of
thoughts rooted at your query; you steer which branches grow.

WORKFLOW:
1. start_thinking(query, thinking_style?, template?, auto_expand?) -> session
2. expand_thought(session_id, node_id?, count?) -> new child thoughts
3. critique_thought(session_id, node_id?) -> self-critique child
4. explore_alternatives(session_id, node_id, count?) -> sibling alternatives
5. synthesize_conclusion(session_id) -> final answer, session completed

SESSION CONTROL:
- pause_thinking / resume_thinking
- bookmark_thought(session_id, node_id, note?)
- watch_session(session_id) streams node and status events as they happen

LIMITS:
- Sessions pause automatically when their token budget is used up
- Expansion stops at max_depth; at most max_branches children per call

TEMPLATES: list_templates() shows the built-in scripts (problem-solving,
code-review, research, creative, debugging, decision-making).
""",
)

# =============================================================================
# Engine
# =============================================================================

_engine: ThinkingEngine | None = None
_store: ThinkingStore | None = None


def init_engine(engine: ThinkingEngine | None = None) -> ThinkingEngine:
    """Install the engine used by the tools.

    Args:
        engine: Pre-built engine (tests). Built from configuration if None.

    Returns:
        The installed engine.

    """
    global _engine, _store
    if engine is None:
        config = get_config()
        inference = config.inference
        _store = ThinkingStore(config.store.get_validated_db_path())
        engine = ThinkingEngine(
            inference=LLMClient(
                base_url=inference.base_url or None,
                model=inference.model,
                timeout=inference.timeout,
                max_retries=inference.max_retries,
                temperature=inference.temperature,
            ),
            store=_store,
            output_budgets=OutputBudgets(
                expand=inference.expand_max_tokens,
                critique=inference.critique_max_tokens,
                alternatives=inference.alternatives_max_tokens,
                synthesis=inference.synthesis_max_tokens,
            ),
            default_model=inference.model,
        )
        logger.info(f"Thinking engine initialized (model={inference.model})")
    _engine = engine
    return engine


def get_engine() -> ThinkingEngine:
    """Get the engine, building it from configuration on first use."""
    if _engine is None:
        return init_engine()
    return _engine


def reset_engine() -> None:
    """Forget the current engine and close its store (for testing)."""
    global _engine, _store
    if _store is not None:
        _store.close()
    _engine = None
    _store = None


# =============================================================================
# Session lifecycle
# =============================================================================


@mcp.tool
async def start_thinking(
    query: str,
    thinking_style: ThinkingStyleStr | None = None,
    template: str | None = None,
    max_tokens: int | None = None,
    max_depth: int | None = None,
    max_branches: int | None = None,
    min_confidence_threshold: int | None = None,
    enable_self_critique: bool | None = None,
    enable_parallel_exploration: bool | None = None,
    auto_expand: bool | None = None,
    user_id: str | None = None,
    project_id: str | None = None,
    ctx: Context | None = None,
) -> str:
    """Start a thinking session rooted at a query.

    Unset options fall back to the server's configured defaults.

    Args:
        query: The question or problem to think about (required)
        thinking_style: thorough, fast, creative, analytical or methodical
        template: Built-in template id that scripts each expansion step
        max_tokens: Token budget for the whole session
        max_depth: Maximum tree depth (1-50)
        max_branches: Maximum children per expansion call (1-10)
        min_confidence_threshold: Auto-expansion continues above this (0-100)
        enable_self_critique: Allow critique_thought
        enable_parallel_exploration: Allow explore_alternatives
        auto_expand: Grow the tree in the background after starting
        user_id: Optional owner id
        project_id: Optional project id

    Returns:
        JSON with the new session

    """
    try:
        limits = get_config().input_limits
        _check_size("query", query, limits.max_query_size)
        config = get_config().thinking.build(
            {
                "thinking_style": thinking_style,
                "template": template,
                "max_tokens": max_tokens,
                "max_depth": max_depth,
                "max_branches": max_branches,
                "min_confidence_threshold": min_confidence_threshold,
                "enable_self_critique": enable_self_critique,
                "enable_parallel_exploration": enable_parallel_exploration,
                "auto_expand": auto_expand,
            }
        )

        with log_context(tool_name="start_thinking"):
            session = await get_engine().start_session(
                query, config, user_id=user_id, project_id=project_id
            )

        if ctx:
            await ctx.info(
                f"Started session {session.id} "
                f"(style={session.config.thinking_style.value}, template={session.config.template})"
            )
        return _json({"session": session.to_dict()})

    except Exception as e:
        return _error("start_thinking", e)


@mcp.tool
async def pause_thinking(session_id: str, ctx: Context | None = None) -> str:
    """Pause a thinking session. Auto-expansion stops until resumed.

    Args:
        session_id: Session to pause (required)

    Returns:
        JSON with the updated session

    """
    try:
        with log_context(session_id=session_id, tool_name="pause_thinking"):
            session = await get_engine().pause(session_id)
        if ctx:
            await ctx.info(f"Paused session {session_id}")
        return _json({"session": session.to_dict()})
    except Exception as e:
        return _error("pause_thinking", e)


@mcp.tool
async def resume_thinking(session_id: str, ctx: Context | None = None) -> str:
    """Resume a paused session.

    Args:
        session_id: Session to resume (required)

    Returns:
        JSON with the updated session

    """
    try:
        with log_context(session_id=session_id, tool_name="resume_thinking"):
            session = await get_engine().resume(session_id)
        if ctx:
            await ctx.info(f"Resumed session {session_id}")
            if session.stats.total_tokens >= session.config.max_tokens:
                await ctx.warning("Token budget is already used up; the next step will pause again")
        return _json({"session": session.to_dict()})
    except Exception as e:
        return _error("resume_thinking", e)


# =============================================================================
# Tree operations
# =============================================================================


@mcp.tool
async def expand_thought(
    session_id: str,
    node_id: str | None = None,
    count: int = 1,
    ctx: Context | None = None,
) -> str:
    """Generate child thoughts under a node.

    Args:
        session_id: Session to expand (required)
        node_id: Node to expand (default: the session's current node)
        count: Number of children, clamped to the session's max_branches

    Returns:
        JSON with the created nodes

    """
    try:
        with log_context(session_id=session_id, tool_name="expand_thought"):
            nodes = await get_engine().expand(session_id, node_id, count)

        if ctx:
            if nodes:
                await ctx.info(f"Created {len(nodes)} thought(s)")
            else:
                await ctx.warning("Max depth reached; nothing was expanded")
        return _json({"session_id": session_id, "nodes": [n.to_dict() for n in nodes]})
    except Exception as e:
        return _error("expand_thought", e)


@mcp.tool
async def critique_thought(
    session_id: str,
    node_id: str | None = None,
    ctx: Context | None = None,
) -> str:
    """Critically evaluate a thought and attach the critique as its child.

    Args:
        session_id: Session to work on (required)
        node_id: Node to critique (default: the session's current node)

    Returns:
        JSON with the critique node

    """
    try:
        with log_context(session_id=session_id, tool_name="critique_thought"):
            node = await get_engine().critique(session_id, node_id)
        if ctx:
            await ctx.info(f"Critique added (confidence={node.confidence}%)")
        return _json({"session_id": session_id, "node": node.to_dict()})
    except Exception as e:
        return _error("critique_thought", e)


@mcp.tool
async def explore_alternatives(
    session_id: str,
    node_id: str | None = None,
    count: int = 3,
    ctx: Context | None = None,
) -> str:
    """Generate alternative approaches as siblings of a thought.

    Args:
        session_id: Session to work on (required)
        node_id: Node to find alternatives for (default: the current node)
        count: Number of alternatives, clamped to the session's max_branches

    Returns:
        JSON with the sibling nodes

    """
    try:
        with log_context(session_id=session_id, tool_name="explore_alternatives"):
            nodes = await get_engine().explore_alternatives(session_id, node_id, count)
        if ctx:
            await ctx.info(f"Explored {len(nodes)} alternative(s)")
        return _json({"session_id": session_id, "nodes": [n.to_dict() for n in nodes]})
    except Exception as e:
        return _error("explore_alternatives", e)


@mcp.tool
async def bookmark_thought(
    session_id: str,
    node_id: str,
    note: str | None = None,
    user_id: str | None = None,
    ctx: Context | None = None,
) -> str:
    """Bookmark a thought for later reference.

    Args:
        session_id: Session the node belongs to (required)
        node_id: Node to bookmark (required)
        note: Optional note stored with the bookmark
        user_id: Optional user id

    Returns:
        JSON with the bookmark

    """
    try:
        _check_size("note", note, get_config().input_limits.max_note_size)
        with log_context(session_id=session_id, tool_name="bookmark_thought"):
            bookmark = await get_engine().bookmark(session_id, node_id, user_id=user_id, note=note)
        if ctx:
            await ctx.info(f"Bookmarked node {node_id}")
        return _json({"bookmark": bookmark.to_dict()})
    except Exception as e:
        return _error("bookmark_thought", e)


@mcp.tool
async def synthesize_conclusion(session_id: str, ctx: Context | None = None) -> str:
    """Synthesize the whole tree into a final conclusion and complete the session.

    Args:
        session_id: Session to conclude (required)

    Returns:
        JSON with the conclusion

    """
    try:
        with log_context(session_id=session_id, tool_name="synthesize_conclusion"):
            conclusion = await get_engine().synthesize(session_id)
        if ctx:
            await ctx.info("Session completed")
        return _json({"session_id": session_id, "conclusion": conclusion})
    except Exception as e:
        return _error("synthesize_conclusion", e)


# =============================================================================
# Inspection
# =============================================================================


@mcp.tool
async def get_thought_tree(
    session_id: str,
    node_id: str | None = None,
    outline: bool = False,
    include_branches: bool = False,
) -> str:
    """Get the thoughts of a session.

    Args:
        session_id: Session to inspect (required)
        node_id: Only return this node and its descendants
        outline: Also return an indented text outline
        include_branches: Also return high-confidence branches from the root

    Returns:
        JSON with nodes in creation order (or subtree pre-order)

    """
    try:
        engine = get_engine()
        if node_id:
            nodes = await engine.get_subtree(session_id, node_id)
        else:
            nodes = await engine.get_tree(session_id)

        result: dict[str, Any] = {
            "session_id": session_id,
            "node_count": len(nodes),
            "nodes": [n.to_dict() for n in nodes],
        }
        if outline and nodes:
            result["outline"] = render_outline(nodes, node_id or nodes[0].id)
        if include_branches:
            branches = await engine.find_high_confidence_branches(session_id)
            result["branches"] = [b.to_dict() for b in branches]
        return _json(result)
    except Exception as e:
        return _error("get_thought_tree", e)


@mcp.tool
async def get_session(session_id: str) -> str:
    """Get a session with its statistics and bookmarks.

    Args:
        session_id: Session to inspect (required)

    Returns:
        JSON with the session and its bookmarks

    """
    try:
        engine = get_engine()
        session = await engine.get_session(session_id)
        bookmarks = await engine.list_bookmarks(session_id)
        return _json(
            {"session": session.to_dict(), "bookmarks": [b.to_dict() for b in bookmarks]}
        )
    except Exception as e:
        return _error("get_session", e)


@mcp.tool
async def list_sessions(
    user_id: str | None = None,
    project_id: str | None = None,
    status: SessionStatusStr | None = None,
    limit: int = 50,
) -> str:
    """List sessions, newest first.

    Args:
        user_id: Filter by owner
        project_id: Filter by project
        status: Filter by status
        limit: Maximum sessions to return (default 50)

    Returns:
        JSON with the matching sessions

    """
    try:
        limit = max(1, min(limit, get_config().input_limits.max_list_limit))
        sessions = await get_engine().list_sessions(
            user_id=user_id, project_id=project_id, status=status, limit=limit
        )
        return _json({"count": len(sessions), "sessions": [s.to_dict() for s in sessions]})
    except Exception as e:
        return _error("list_sessions", e)


@mcp.tool
async def delete_session(session_id: str, ctx: Context | None = None) -> str:
    """Delete a session with all its thoughts and bookmarks.

    Args:
        session_id: Session to delete (required)

    Returns:
        JSON confirmation

    """
    try:
        with log_context(session_id=session_id, tool_name="delete_session"):
            await get_engine().delete_session(session_id)
        if ctx:
            await ctx.info(f"Deleted session {session_id}")
        return _json({"session_id": session_id, "deleted": True})
    except Exception as e:
        return _error("delete_session", e)


@mcp.tool
async def watch_session(
    session_id: str,
    max_events: int = DEFAULT_WATCH_EVENTS,
    timeout_seconds: float = DEFAULT_WATCH_TIMEOUT,
    ctx: Context | None = None,
) -> str:
    """Collect live events of a session.

    Returns when the session completes or fails, after max_events events,
    or once timeout_seconds pass without the stream ending.

    Args:
        session_id: Session to watch (required)
        max_events: Stop after this many events (default 50)
        timeout_seconds: Stop after this many seconds (default 30)

    Returns:
        JSON with the collected events and why watching stopped

    """
    try:
        subscription = get_engine().stream_events(session_id)
        events: list[dict[str, Any]] = []
        stopped = "ended"
        deadline = time.monotonic() + max(0.0, timeout_seconds)

        async with subscription:
            while True:
                if len(events) >= max_events:
                    stopped = "max_events"
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    stopped = "timeout"
                    break
                try:
                    event = await asyncio.wait_for(anext(subscription), timeout=remaining)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    stopped = "timeout"
                    break

                events.append(event.to_dict())
                if ctx:
                    await ctx.info(f"{event.type.value}: {event.node_id or session_id}")

        return _json({"session_id": session_id, "events": events, "stopped": stopped})
    except Exception as e:
        return _error("watch_session", e)


@mcp.tool
async def list_templates() -> str:
    """List built-in reasoning templates and their steps.

    Returns:
        JSON with the templates

    """
    try:
        templates = get_engine().list_templates()
        return _json({"templates": [t.to_dict() for t in templates]})
    except Exception as e:
        return _error("list_templates", e)


# =============================================================================
# Entry point
# =============================================================================


def main() -> None:
    """Run the Thinktree MCP server."""
    configure_logging()
    server = get_config().server
    logger.info(f"Starting {server.name} (transport: {server.transport})")

    init_engine()

    try:
        if server.transport == "stdio":
            mcp.run(transport="stdio")
        elif server.transport == "http":
            mcp.run(transport="streamable-http", host=server.host, port=server.port)
        elif server.transport == "sse":
            mcp.run(transport="sse", host=server.host, port=server.port)
        else:
            logger.warning(f"Unknown transport '{server.transport}', falling back to stdio")
            mcp.run(transport="stdio")
    finally:
        reset_engine()


if __name__ == "__main__":
    main()
