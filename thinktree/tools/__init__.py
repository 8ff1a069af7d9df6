"""Thinking session types, templates and tree helpers.

The engine lives in :mod:`thinktree.tools.thinking_engine` and is imported
from there directly.
"""

from .templates import BUILTIN_TEMPLATES, ReasoningTemplate, TemplateCatalog, TemplateStep
from .thinking_types import (
    Bookmark,
    EventType,
    NodeMetadata,
    SessionStats,
    SessionStatus,
    ThinkingConfig,
    ThinkingEvent,
    ThinkingSession,
    ThinkingStyle,
    ThoughtNode,
    ThoughtStatus,
    ThoughtType,
)
from .thought_tree import BranchSummary, ThoughtTree

__all__ = [
    # Templates
    "BUILTIN_TEMPLATES",
    "ReasoningTemplate",
    "TemplateCatalog",
    "TemplateStep",
    # Types
    "Bookmark",
    "EventType",
    "NodeMetadata",
    "SessionStats",
    "SessionStatus",
    "ThinkingConfig",
    "ThinkingEvent",
    "ThinkingSession",
    "ThinkingStyle",
    "ThoughtNode",
    "ThoughtStatus",
    "ThoughtType",
    # Tree
    "BranchSummary",
    "ThoughtTree",
]
