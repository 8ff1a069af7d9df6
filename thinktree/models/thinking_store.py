"""Persistent storage for thinking sessions, thought nodes and bookmarks.

Schema Design:
- One row per session, per node and per bookmark
- Config, stats, node metadata and the children/alternatives link lists are
  stored as nested JSON (orjson), never flattened into columns
- Nodes cascade-delete with their session; bookmarks do too
- Thread-safe for concurrent access; ``:memory:`` for tests
- Multi-row writes are grouped with ``Database.transaction()``

The stores own no policy. They persist and reload exactly what they are given,
and the thinking engine decides what is legal.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

import orjson
from loguru import logger

from thinktree.tools.thinking_types import (
    Bookmark,
    NodeMetadata,
    SessionStats,
    SessionStatus,
    ThinkingConfig,
    ThinkingSession,
    ThoughtNode,
    ThoughtStatus,
    ThoughtType,
    format_timestamp,
    parse_timestamp,
)
from thinktree.utils.errors import NodeNotFoundError

DEFAULT_DB_PATH = Path.home() / ".thinktree" / "thinking.db"
DEFAULT_LIST_LIMIT = 50

# Allowed base directories for database files (security: prevent path traversal)
# Users can override via THINKTREE_ALLOWED_DB_DIRS env var (colon-separated)
_DEFAULT_ALLOWED_DIRS = [
    Path.home() / ".thinktree",
    Path.home() / ".local" / "share" / "thinktree",
    Path("/tmp"),  # nosec B108 - intentionally allowed for dev/testing
    Path.cwd(),
]


def _get_allowed_db_dirs() -> list[Path]:
    """Get list of allowed directories for database files."""
    env_dirs = os.getenv("THINKTREE_ALLOWED_DB_DIRS")
    if env_dirs:
        return [Path(d).resolve() for d in env_dirs.split(":") if d]
    return [d.resolve() for d in _DEFAULT_ALLOWED_DIRS]


def validate_db_path(db_path: Path | str) -> Path:
    """Validate and sanitize database path to prevent path traversal.

    Args:
        db_path: Proposed database path.

    Returns:
        Validated, resolved Path object.

    Raises:
        ValueError: If path is outside allowed directories or contains traversal.

    """
    if str(db_path) == ":memory:":
        return Path(":memory:")

    path_str = str(db_path)
    if ".." in Path(path_str).parts:
        raise ValueError(f"Invalid database path: traversal detected in '{db_path}'")

    path = Path(db_path).resolve()
    allowed_dirs = _get_allowed_db_dirs()
    if not any(path == d or d in path.parents for d in allowed_dirs):
        allowed_list = ", ".join(str(d) for d in allowed_dirs)
        raise ValueError(
            f"Database path '{path}' is outside allowed directories. "
            f"Allowed: {allowed_list}. "
            f"Set THINKTREE_ALLOWED_DB_DIRS to add custom directories."
        )
    return path


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode("utf-8")


def _loads(value: str | None, default: Any) -> Any:
    return orjson.loads(value) if value else default


_SCHEMA = """
CREATE TABLE IF NOT EXISTS thinking_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    project_id TEXT,
    query TEXT NOT NULL,
    root_node_id TEXT NOT NULL,
    current_node_id TEXT NOT NULL,
    config TEXT NOT NULL,
    status TEXT NOT NULL,
    stats TEXT NOT NULL,
    final_conclusion TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS thought_nodes (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES thinking_sessions(id) ON DELETE CASCADE,
    parent_id TEXT,
    content TEXT NOT NULL,
    type TEXT NOT NULL,
    confidence INTEGER NOT NULL,
    depth INTEGER NOT NULL,
    children TEXT NOT NULL,
    status TEXT NOT NULL,
    reasoning TEXT,
    alternatives TEXT NOT NULL,
    metadata TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bookmarked_thoughts (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    session_id TEXT NOT NULL REFERENCES thinking_sessions(id) ON DELETE CASCADE,
    node_id TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON thinking_sessions(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON thinking_sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON thinking_sessions(status);
CREATE INDEX IF NOT EXISTS idx_nodes_session ON thought_nodes(session_id, created_at);
CREATE INDEX IF NOT EXISTS idx_bookmarks_session ON bookmarked_thoughts(session_id);
"""


class Database:
    """Thread-safe SQLite connection shared by the individual stores."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Open (and if needed create) the database.

        Args:
            db_path: Path to SQLite database. If None, uses default path.
                Use ":memory:" for in-memory database (testing).

        Raises:
            ValueError: If db_path is outside allowed directories.

        """
        if db_path is None:
            self.db_path = DEFAULT_DB_PATH
        else:
            self.db_path = validate_db_path(db_path)

        self.lock = threading.RLock()
        self._connection: sqlite3.Connection | None = None
        self._transaction_depth = 0
        self._init_db()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # We handle threading ourselves
                timeout=30.0,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            if str(self.db_path) != ":memory:":
                # WAL for file-based databases only
                self._connection.execute("PRAGMA journal_mode=WAL")
        return self._connection

    def _init_db(self) -> None:
        with self.lock:
            self.connection.executescript(_SCHEMA)
            self.connection.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several store writes into one commit.

        Holds the lock for the whole block. Writes made inside it are committed
        once on exit, or rolled back together if the block raises. Nested
        blocks join the outermost one.

        Usage:
            with db.transaction():
                store.save_node(node)
                store.update_node(parent)

        """
        with self.lock:
            conn = self.connection
            self._transaction_depth += 1
            try:
                yield conn
            except BaseException:
                self._transaction_depth -= 1
                if self._transaction_depth == 0:
                    conn.rollback()
                raise
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                conn.commit()

    def commit(self) -> None:
        """Commit pending writes unless an enclosing transaction owns them."""
        with self.lock:
            if self._transaction_depth == 0:
                self.connection.commit()

    def close(self) -> None:
        """Close database connection."""
        with self.lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class SessionStore:
    """CRUD for session records."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def save_session(self, session: ThinkingSession) -> None:
        """Insert or update a session.

        Updates happen in place so the session's nodes and bookmarks are kept.
        """
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """
                INSERT INTO thinking_sessions (
                    id, user_id, project_id, query, root_node_id, current_node_id,
                    config, status, stats, final_conclusion,
                    created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    current_node_id = excluded.current_node_id,
                    status = excluded.status,
                    stats = excluded.stats,
                    final_conclusion = excluded.final_conclusion,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at
                """,
                (
                    session.id,
                    session.user_id,
                    session.project_id,
                    session.query,
                    session.root_node_id,
                    session.current_node_id,
                    _dumps(session.config.to_dict()),
                    session.status.value,
                    _dumps(session.stats.to_dict()),
                    session.final_conclusion,
                    format_timestamp(session.created_at),
                    format_timestamp(session.updated_at),
                    format_timestamp(session.completed_at),
                ),
            )
            self._db.commit()

    def load_session(self, session_id: str) -> ThinkingSession | None:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT * FROM thinking_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(
        self,
        user_id: str | None = None,
        project_id: str | None = None,
        status: SessionStatus | str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[ThinkingSession]:
        """List sessions, newest first, optionally filtered.

        Args:
            user_id: Only sessions owned by this user.
            project_id: Only sessions in this project.
            status: Only sessions in this status.
            limit: Maximum number of sessions returned.

        Returns:
            Matching sessions ordered by creation time, newest first.

        """
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SessionStatus(status).value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._db.lock:
            rows = self._db.connection.execute(
                f"SELECT * FROM thinking_sessions {where} "  # nosec B608 - fixed clauses
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with its nodes and bookmarks.

        Returns:
            True if a session was deleted.

        """
        with self._db.lock:
            conn = self._db.connection
            cursor = conn.execute("DELETE FROM thinking_sessions WHERE id = ?", (session_id,))
            self._db.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ThinkingSession:
        return ThinkingSession(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            query=row["query"],
            root_node_id=row["root_node_id"],
            current_node_id=row["current_node_id"],
            config=ThinkingConfig.from_dict(_loads(row["config"], {})),
            status=SessionStatus(row["status"]),
            stats=SessionStats.from_dict(_loads(row["stats"], {})),
            final_conclusion=row["final_conclusion"],
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            updated_at=parse_timestamp(row["updated_at"]),  # type: ignore[arg-type]
            completed_at=parse_timestamp(row["completed_at"]),
        )


class ThoughtNodeStore:
    """CRUD for individual thought nodes plus whole-tree retrieval."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def save_node(self, node: ThoughtNode) -> None:
        """Insert a new node.

        Raises:
            sqlite3.IntegrityError: If the id already exists or the session
                row is missing.

        """
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """
                INSERT INTO thought_nodes (
                    id, session_id, parent_id, content, type, confidence, depth,
                    children, status, reasoning, alternatives, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node.id,
                    node.session_id,
                    node.parent_id,
                    node.content,
                    node.type.value,
                    node.confidence,
                    node.depth,
                    _dumps(node.children),
                    node.status.value,
                    node.reasoning,
                    _dumps(node.alternatives),
                    _dumps(node.metadata.to_dict()),
                    format_timestamp(node.metadata.timestamp),
                ),
            )
            self._db.commit()

    def update_node(self, node: ThoughtNode) -> None:
        """Persist the mutable parts of an existing node.

        Raises:
            NodeNotFoundError: If the node was never saved.

        """
        with self._db.lock:
            conn = self._db.connection
            cursor = conn.execute(
                """
                UPDATE thought_nodes
                SET content = ?, confidence = ?, children = ?, status = ?,
                    reasoning = ?, alternatives = ?, metadata = ?
                WHERE id = ? AND session_id = ?
                """,
                (
                    node.content,
                    node.confidence,
                    _dumps(node.children),
                    node.status.value,
                    node.reasoning,
                    _dumps(node.alternatives),
                    _dumps(node.metadata.to_dict()),
                    node.id,
                    node.session_id,
                ),
            )
            self._db.commit()
            if cursor.rowcount == 0:
                raise NodeNotFoundError(node.session_id, node.id)

    def load_node(self, session_id: str, node_id: str) -> ThoughtNode | None:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT * FROM thought_nodes WHERE session_id = ? AND id = ?",
                (session_id, node_id),
            ).fetchone()
        return self._row_to_node(row) if row else None

    def load_tree(self, session_id: str) -> list[ThoughtNode]:
        """All nodes of a session in creation order."""
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT * FROM thought_nodes WHERE session_id = ? ORDER BY created_at, rowid",
                (session_id,),
            ).fetchall()
        return [self._row_to_node(row) for row in rows]

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> ThoughtNode:
        return ThoughtNode(
            id=row["id"],
            session_id=row["session_id"],
            parent_id=row["parent_id"],
            content=row["content"],
            type=ThoughtType(row["type"]),
            confidence=row["confidence"],
            depth=row["depth"],
            children=list(_loads(row["children"], [])),
            status=ThoughtStatus(row["status"]),
            reasoning=row["reasoning"],
            alternatives=list(_loads(row["alternatives"], [])),
            metadata=NodeMetadata.from_dict(_loads(row["metadata"], {})),
        )


class BookmarkStore:
    """Bookmark records. Append-only apart from session deletion."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def save_bookmark(self, bookmark: Bookmark) -> None:
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """
                INSERT INTO bookmarked_thoughts (id, user_id, session_id, node_id, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    bookmark.id,
                    bookmark.user_id,
                    bookmark.session_id,
                    bookmark.node_id,
                    bookmark.note,
                    format_timestamp(bookmark.created_at),
                ),
            )
            self._db.commit()

    def list_bookmarks(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
    ) -> list[Bookmark]:
        """Bookmarks in creation order, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.lock:
            rows = self._db.connection.execute(
                f"SELECT * FROM bookmarked_thoughts {where} "  # nosec B608 - fixed clauses
                "ORDER BY created_at, rowid",
                params,
            ).fetchall()
        return [
            Bookmark(
                id=row["id"],
                user_id=row["user_id"],
                session_id=row["session_id"],
                node_id=row["node_id"],
                note=row["note"],
                created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            )
            for row in rows
        ]


class ThinkingStore(SessionStore, ThoughtNodeStore, BookmarkStore):
    """Single entry point over the session, node and bookmark stores.

    Usage:
        store = ThinkingStore(":memory:")
        store.save_session(session)
        store.save_node(root)
        tree = store.load_tree(session.id)
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db = Database(db_path)
        self._db = self.db
        logger.debug(f"Thinking store opened at {self.db.db_path}")

    def transaction(self) -> AbstractContextManager[sqlite3.Connection]:
        """Make every write inside the block commit or roll back together."""
        return self.db.transaction()

    def close(self) -> None:
        self.db.close()
