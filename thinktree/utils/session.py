"""Per-session async locking.

Mutating operations on one thinking session read-modify-write the same
tree and statistics, so they are serialized behind a lock keyed by session
id. Different sessions never contend.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

# Install uvloop as default event loop policy (Linux/macOS only)
if sys.platform != "win32":
    try:
        import warnings

        import uvloop

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=DeprecationWarning)
            uvloop.install()
    except ImportError:
        pass  # uvloop not installed, use default asyncio


class SessionLocks:
    """Registry of ``asyncio.Lock`` objects keyed by session id.

    Locks are created lazily on first use and dropped with ``discard`` when
    a session is deleted. ``asyncio.Lock`` is not re-entrant: a coroutine
    holding a session's lock must not try to take it again.

    Usage:
        locks = SessionLocks()
        async with locks.hold(session_id):
            ...  # exclusive access to the session
    """

    def __init__(self) -> None:
        """Initialize an empty lock registry."""
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> asyncio.Lock:
        """Return the lock for ``session_id``, creating it if needed."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncGenerator[None, None]:
        """Async context manager for exclusive access to one session.

        Does NOT block the event loop while waiting for the lock.

        Args:
            session_id: Session identifier.

        """
        async with self.get(session_id):
            yield

    def is_locked(self, session_id: str) -> bool:
        """Check whether an operation currently holds the session."""
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def discard(self, session_id: str) -> None:
        """Forget the lock of a deleted session."""
        self._locks.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._locks)


def is_uvloop_installed() -> bool:
    """Check if uvloop is installed and active.

    Returns:
        True if uvloop is the active event loop policy.

    """
    if sys.platform == "win32":
        return False
    try:
        import uvloop

        policy = asyncio.get_event_loop_policy()
        return isinstance(policy, uvloop.EventLoopPolicy)
    except ImportError:
        return False
