"""Thinking session types and data structures.

All enums, dataclasses and (de)serialization helpers used by the engine,
the store and the server live here so the persisted record shapes stay in
one place. ``to_dict``/``from_dict`` round-trip losslessly: config, stats,
metadata and link lists stay nested, and timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from thinktree.utils.errors import ConfigException

# =============================================================================
# Enums
# =============================================================================


class ThoughtType(str, Enum):
    """Kind of reasoning step a node represents."""

    OBSERVATION = "observation"
    HYPOTHESIS = "hypothesis"
    ANALYSIS = "analysis"
    CRITIQUE = "critique"
    CONCLUSION = "conclusion"
    QUESTION = "question"
    EVIDENCE = "evidence"
    ALTERNATIVE = "alternative"
    SYNTHESIS = "synthesis"


class ThoughtStatus(str, Enum):
    """Status tag of a single node."""

    EXPLORING = "exploring"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    BOOKMARKED = "bookmarked"
    REVISED = "revised"


class SessionStatus(str, Enum):
    """Lifecycle status of a thinking session."""

    THINKING = "thinking"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class ThinkingStyle(str, Enum):
    """Flavor applied to default prompts and type progression."""

    THOROUGH = "thorough"
    FAST = "fast"
    CREATIVE = "creative"
    ANALYTICAL = "analytical"
    METHODICAL = "methodical"


class EventType(str, Enum):
    """Types of events published on a session's stream."""

    NODE_CREATED = "node_created"
    NODE_UPDATED = "node_updated"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.SESSION_COMPLETED, EventType.ERROR)


# =============================================================================
# Helpers
# =============================================================================


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Configuration
# =============================================================================

MAX_DEPTH_LIMIT = 50
MAX_BRANCHES_LIMIT = 10


@dataclass(frozen=True)
class ThinkingConfig:
    """Per-session configuration, immutable once the session starts.

    Attributes:
        max_tokens: Token ceiling for the whole session.
        max_depth: Deepest level a node may be created at (root is 0).
        max_branches: Upper bound on nodes created by one expand or
            alternatives call.
        min_confidence_threshold: Auto-expansion continues only while the
            current node is at least this confident.
        enable_self_critique: Whether critique is allowed.
        enable_parallel_exploration: Whether alternatives are allowed.
        auto_expand: Whether the engine drives expansion on its own.
        thinking_style: Prompt flavor and type-progression bias.
        template: Optional reasoning template id.
        model: Inference model id recorded on every node. Filled in by the
            engine when left empty.

    """

    max_tokens: int = 10000
    max_depth: int = 10
    max_branches: int = 5
    min_confidence_threshold: int = 60
    enable_self_critique: bool = True
    enable_parallel_exploration: bool = True
    auto_expand: bool = False
    thinking_style: ThinkingStyle = ThinkingStyle.THOROUGH
    template: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.thinking_style, ThinkingStyle):
            try:
                object.__setattr__(self, "thinking_style", ThinkingStyle(self.thinking_style))
            except ValueError as e:
                styles = ", ".join(s.value for s in ThinkingStyle)
                raise ConfigException(
                    f"Unknown thinking_style '{self.thinking_style}'. Expected one of: {styles}"
                ) from e
        if self.max_tokens < 1:
            raise ConfigException(f"max_tokens must be >= 1, got {self.max_tokens}")
        if not 1 <= self.max_depth <= MAX_DEPTH_LIMIT:
            raise ConfigException(
                f"max_depth must be between 1 and {MAX_DEPTH_LIMIT}, got {self.max_depth}"
            )
        if not 1 <= self.max_branches <= MAX_BRANCHES_LIMIT:
            raise ConfigException(
                f"max_branches must be between 1 and {MAX_BRANCHES_LIMIT}, "
                f"got {self.max_branches}"
            )
        if not 0 <= self.min_confidence_threshold <= 100:
            raise ConfigException(
                "min_confidence_threshold must be between 0 and 100, "
                f"got {self.min_confidence_threshold}"
            )

    def clamp_count(self, count: int) -> int:
        """Clamp a requested node count into ``[1, max_branches]``."""
        return max(1, min(count, self.max_branches))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_tokens": self.max_tokens,
            "max_depth": self.max_depth,
            "max_branches": self.max_branches,
            "min_confidence_threshold": self.min_confidence_threshold,
            "enable_self_critique": self.enable_self_critique,
            "enable_parallel_exploration": self.enable_parallel_exploration,
            "auto_expand": self.auto_expand,
            "thinking_style": self.thinking_style.value,
            "template": self.template,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThinkingConfig:
        """Build a config from a (possibly partial) dictionary.

        Raises:
            ConfigException: On unknown keys or out-of-range values.

        """
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigException(f"Unknown config field(s): {', '.join(unknown)}")
        return cls(**data)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class NodeMetadata:
    """Cost and provenance of a single node."""

    tokens: int = 0
    duration_ms: int = 0
    model: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    revised_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokens": self.tokens,
            "duration_ms": self.duration_ms,
            "model": self.model,
            "timestamp": format_timestamp(self.timestamp),
            "revised_from": self.revised_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeMetadata:
        return cls(
            tokens=int(data.get("tokens", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
            model=data.get("model", ""),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            revised_from=data.get("revised_from"),
        )


@dataclass
class ThoughtNode:
    """One step of reasoning in the thought tree."""

    id: str
    session_id: str
    parent_id: str | None
    content: str
    type: ThoughtType
    confidence: int
    depth: int
    children: list[str] = field(default_factory=list)
    status: ThoughtStatus = ThoughtStatus.COMPLETED
    reasoning: str | None = None
    alternatives: list[str] = field(default_factory=list)
    metadata: NodeMetadata = field(default_factory=NodeMetadata)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def add_child(self, node_id: str) -> None:
        """Append a child id, ignoring ids that are already linked."""
        if node_id not in self.children:
            self.children.append(node_id)

    def add_alternative(self, node_id: str) -> None:
        if node_id not in self.alternatives:
            self.alternatives.append(node_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "parent_id": self.parent_id,
            "content": self.content,
            "type": self.type.value,
            "confidence": self.confidence,
            "depth": self.depth,
            "children": list(self.children),
            "status": self.status.value,
            "reasoning": self.reasoning,
            "alternatives": list(self.alternatives),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThoughtNode:
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            parent_id=data.get("parent_id"),
            content=data["content"],
            type=ThoughtType(data["type"]),
            confidence=int(data["confidence"]),
            depth=int(data["depth"]),
            children=list(data.get("children") or []),
            status=ThoughtStatus(data.get("status", ThoughtStatus.COMPLETED.value)),
            reasoning=data.get("reasoning"),
            alternatives=list(data.get("alternatives") or []),
            metadata=NodeMetadata.from_dict(data.get("metadata") or {}),
        )


@dataclass
class SessionStats:
    """Running totals for a session.

    Every field only grows, except ``average_confidence`` which is
    recomputed from the full ``confidence_progression`` on each update.
    """

    total_tokens: int = 0
    total_duration_ms: int = 0
    branches_explored: int = 0
    revisions_count: int = 0
    average_confidence: float = 0.0
    confidence_progression: list[int] = field(default_factory=list)
    thoughts_by_type: dict[ThoughtType, int] = field(default_factory=dict)
    max_depth_reached: int = 0

    def record_node(self, node: ThoughtNode) -> None:
        """Account for a newly created node."""
        self.branches_explored += 1
        self.confidence_progression.append(node.confidence)
        self.average_confidence = sum(self.confidence_progression) / len(
            self.confidence_progression
        )
        self.thoughts_by_type[node.type] = self.thoughts_by_type.get(node.type, 0) + 1
        self.max_depth_reached = max(self.max_depth_reached, node.depth)

    def record_usage(self, tokens: int, duration_ms: int) -> None:
        """Account for one inference call."""
        self.total_tokens += max(0, tokens)
        self.total_duration_ms += max(0, duration_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "total_duration_ms": self.total_duration_ms,
            "branches_explored": self.branches_explored,
            "revisions_count": self.revisions_count,
            "average_confidence": self.average_confidence,
            "confidence_progression": list(self.confidence_progression),
            "thoughts_by_type": {t.value: n for t, n in self.thoughts_by_type.items()},
            "max_depth_reached": self.max_depth_reached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionStats:
        return cls(
            total_tokens=int(data.get("total_tokens", 0)),
            total_duration_ms=int(data.get("total_duration_ms", 0)),
            branches_explored=int(data.get("branches_explored", 0)),
            revisions_count=int(data.get("revisions_count", 0)),
            average_confidence=float(data.get("average_confidence", 0.0)),
            confidence_progression=[int(c) for c in data.get("confidence_progression") or []],
            thoughts_by_type={
                ThoughtType(t): int(n) for t, n in (data.get("thoughts_by_type") or {}).items()
            },
            max_depth_reached=int(data.get("max_depth_reached", 0)),
        )


@dataclass
class ThinkingSession:
    """One end-to-end reasoning run over a single query."""

    id: str
    query: str
    root_node_id: str
    current_node_id: str
    config: ThinkingConfig
    status: SessionStatus = SessionStatus.THINKING
    stats: SessionStats = field(default_factory=SessionStats)
    user_id: str | None = None
    project_id: str | None = None
    final_conclusion: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "query": self.query,
            "root_node_id": self.root_node_id,
            "current_node_id": self.current_node_id,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "final_conclusion": self.final_conclusion,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThinkingSession:
        return cls(
            id=data["id"],
            user_id=data.get("user_id"),
            project_id=data.get("project_id"),
            query=data["query"],
            root_node_id=data["root_node_id"],
            current_node_id=data["current_node_id"],
            config=ThinkingConfig.from_dict(data.get("config") or {}),
            status=SessionStatus(data["status"]),
            stats=SessionStats.from_dict(data.get("stats") or {}),
            final_conclusion=data.get("final_conclusion"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            completed_at=parse_timestamp(data.get("completed_at")),
        )


@dataclass
class Bookmark:
    """A user's marker on an interesting node."""

    id: str
    session_id: str
    node_id: str
    user_id: str | None = None
    note: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "node_id": self.node_id,
            "user_id": self.user_id,
            "note": self.note,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class ThinkingEvent:
    """A typed notification published on a session's event stream."""

    type: EventType
    session_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": format_timestamp(self.timestamp),
        }
