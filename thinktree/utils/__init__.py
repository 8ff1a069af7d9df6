"""Utility modules for Thinktree."""

from .confidence import (
    DEFAULT_CRITIQUE_CONFIDENCE,
    DEFAULT_EXPANSION_CONFIDENCE,
    clamp_confidence,
    extract_confidence,
    extract_rationale,
)
from .errors import (
    BudgetExceededError,
    ConfigException,
    InferenceFailure,
    InvalidStateError,
    NodeNotFoundError,
    NotFoundError,
    ParseError,
    SessionNotFoundError,
    ThinkingException,
    ToolExecutionError,
)
from .retry import retry_with_backoff
from .session import SessionLocks, is_uvloop_installed

__all__ = [
    "DEFAULT_CRITIQUE_CONFIDENCE",
    "DEFAULT_EXPANSION_CONFIDENCE",
    "clamp_confidence",
    "extract_confidence",
    "extract_rationale",
    "ThinkingException",
    "NotFoundError",
    "SessionNotFoundError",
    "NodeNotFoundError",
    "InvalidStateError",
    "BudgetExceededError",
    "ParseError",
    "InferenceFailure",
    "ConfigException",
    "ToolExecutionError",
    "retry_with_backoff",
    "SessionLocks",
    "is_uvloop_installed",
]
