"""Custom exceptions for Thinktree."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from thinktree.tools.thinking_types import ThoughtNode


class ThinkingException(Exception):
    """Base exception for Thinktree.

    Every engine failure carries a stable ``code`` so callers on the
    other side of a tool boundary can branch on it without parsing text.
    """

    code = "THINKING_ERROR"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Returns:
            Dictionary with the error code and message.

        """
        return {"error": self.code, "message": str(self)}


class NotFoundError(ThinkingException):
    """Raised when a session or node does not exist."""

    code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    """Raised when a session ID is not found."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class NodeNotFoundError(NotFoundError):
    """Raised when a node ID is not part of the session's tree."""

    def __init__(self, session_id: str, node_id: str) -> None:
        self.session_id = session_id
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id} (session {session_id})")


class InvalidStateError(ThinkingException):
    """Raised when an operation is not legal in the session's current status."""

    code = "INVALID_STATE"


class BudgetExceededError(ThinkingException):
    """Raised when the session's token ceiling is hit.

    The session has already been paused when this is raised. Nodes that were
    committed before the ceiling was crossed are attached as ``nodes``.
    """

    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        total_tokens: int,
        max_tokens: int,
        nodes: list[ThoughtNode] | None = None,
    ) -> None:
        self.total_tokens = total_tokens
        self.max_tokens = max_tokens
        self.nodes = nodes or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["total_tokens"] = self.total_tokens
        data["max_tokens"] = self.max_tokens
        data["created_node_ids"] = [node.id for node in self.nodes]
        return data


class ParseError(ThinkingException):
    """Raised when structured model output does not match the expected shape."""

    code = "PARSE_ERROR"


class InferenceFailure(ThinkingException):
    """Raised when the language-model call itself fails."""

    code = "INFERENCE_FAILURE"


class ConfigException(ThinkingException):
    """Raised during configuration issues."""

    code = "INVALID_CONFIG"


class ToolExecutionError(Exception):
    """Raised when tool execution fails in MCP context.

    Provides structured error information that can be returned
    to the LLM client in a parseable format.
    """

    def __init__(
        self,
        tool_name: str,
        error_message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize tool execution error.

        Args:
            tool_name: Name of the tool that failed.
            error_message: Human-readable error message.
            details: Optional dictionary with additional error details.

        """
        self.tool_name = tool_name
        self.error_message = error_message
        self.details = details or {}
        super().__init__(f"Tool {tool_name} failed: {error_message}")

    def to_mcp_error(self) -> str:
        """Convert to MCP-compatible error format.

        Returns:
            Formatted error string for MCP response.

        """
        return f"[{self.tool_name}] {self.error_message}. Details: {self.details}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the error.

        """
        return {
            "error": "TOOL_ERROR",
            "tool": self.tool_name,
            "message": self.error_message,
            "details": self.details,
        }
