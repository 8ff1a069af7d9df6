"""In-memory thought tree for one session.

Holds a session's nodes in creation order and answers the structural
questions the engine and the tools ask: root-to-node paths, subtrees, the
outline used for synthesis, and high-confidence branches.

Design Principles:
    - Nodes are only ever added; the tree never forgets one
    - O(1) node lookup via a dict keyed by id
    - Traversals follow ``children`` links and tolerate dangling or repeated
      ids instead of looping
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from thinktree.tools.thinking_types import ThoughtNode

OUTLINE_CONTENT_LIMIT = 100


@dataclass
class BranchSummary:
    """Aggregate view of one top-level branch (a child of the root)."""

    branch_root_id: str
    node_count: int
    average_confidence: float
    max_depth: int
    node_ids: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_root_id": self.branch_root_id,
            "node_count": self.node_count,
            "average_confidence": round(self.average_confidence, 2),
            "max_depth": self.max_depth,
            "node_ids": list(self.node_ids),
        }


class ThoughtTree:
    """Nodes of one session, indexed by id and kept in creation order."""

    def __init__(self, root_id: str, nodes: Iterable[ThoughtNode] = ()) -> None:
        self.root_id = root_id
        self._nodes: dict[str, ThoughtNode] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: ThoughtNode) -> None:
        self._nodes[node.id] = node

    def get(self, node_id: str) -> ThoughtNode | None:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ThoughtNode]:
        return iter(self._nodes.values())

    @property
    def root(self) -> ThoughtNode | None:
        return self._nodes.get(self.root_id)

    def nodes(self) -> list[ThoughtNode]:
        """All nodes in creation order."""
        return list(self._nodes.values())

    def path_to(self, node_id: str) -> list[ThoughtNode]:
        """Nodes from the root down to ``node_id``, inclusive.

        Returns an empty list for unknown ids.
        """
        path: list[ThoughtNode] = []
        seen: set[str] = set()
        current = self._nodes.get(node_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            path.append(current)
            current = self._nodes.get(current.parent_id) if current.parent_id else None
        path.reverse()
        return path

    def walk(self, start_id: str | None = None) -> Iterator[tuple[ThoughtNode, int]]:
        """Depth-first pre-order walk yielding ``(node, level)``.

        ``level`` is relative to the start node. Each node is yielded at
        most once even if it is linked from several parents.
        """
        start = self._nodes.get(start_id or self.root_id)
        if start is None:
            return
        visited: set[str] = set()
        stack: list[tuple[ThoughtNode, int]] = [(start, 0)]
        while stack:
            node, level = stack.pop()
            if node.id in visited:
                continue
            visited.add(node.id)
            yield node, level
            for child_id in reversed(node.children):
                child = self._nodes.get(child_id)
                if child is not None and child.id not in visited:
                    stack.append((child, level + 1))

    def subtree(self, node_id: str) -> list[ThoughtNode]:
        """``node_id`` and every node reachable below it, in pre-order."""
        return [node for node, _ in self.walk(node_id)]

    def high_confidence_branches(
        self,
        min_confidence: float = 80,
        min_depth: int = 3,
    ) -> list[BranchSummary]:
        """Find top-level branches that went deep with high confidence.

        Each child of the root starts a branch. A branch qualifies when its
        deepest node reaches ``min_depth`` and its mean confidence is at
        least ``min_confidence``.

        Args:
            min_confidence: Minimum mean confidence across the branch.
            min_depth: Minimum absolute depth the branch must reach.

        Returns:
            Qualifying branches, best mean confidence first, deeper first on ties.

        """
        root = self.root
        if root is None:
            return []

        branches: list[BranchSummary] = []
        for child_id in root.children:
            nodes = self.subtree(child_id)
            if not nodes:
                continue
            summary = BranchSummary(
                branch_root_id=child_id,
                node_count=len(nodes),
                average_confidence=sum(n.confidence for n in nodes) / len(nodes),
                max_depth=max(n.depth for n in nodes),
                node_ids=[n.id for n in nodes],
            )
            if summary.max_depth >= min_depth and summary.average_confidence >= min_confidence:
                branches.append(summary)

        branches.sort(key=lambda b: (b.average_confidence, b.max_depth), reverse=True)
        return branches


def render_outline(nodes: Sequence[ThoughtNode], root_id: str) -> str:
    """Depth-indented outline of every node reachable from the root.

    One line per node: ``- [type] content (NN%)`` with content cut at 100
    characters. Nodes not reachable from the root are left out.
    """
    tree = ThoughtTree(root_id, nodes)
    lines = []
    for node, level in tree.walk():
        content = node.content[:OUTLINE_CONTENT_LIMIT]
        if len(node.content) > OUTLINE_CONTENT_LIMIT:
            content += "..."
        lines.append(f"{'  ' * level}- [{node.type.value}] {content} ({node.confidence}%)\n")
    return "".join(lines)
