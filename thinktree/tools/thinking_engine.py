"""Thinking session engine.

Owns the session state machine and every tree mutation: expansion, critique,
alternatives, bookmarking, synthesis and the optional auto-expand loop.

Guarantees:
    - Mutating operations on one session are serialized by a per-session
      lock. Explicit operations hold it for their whole duration; the
      auto-expand loop never holds it while waiting on inference.
    - Preconditions (existence, status, depth, budget) are checked before
      any inference call is made.
    - Every mutation is written to the store before the event announcing
      it is published. The writes of one mutation share a transaction. The
      in-memory maps are a write-through cache; if a store write fails the
      transaction rolls back and the session is evicted and reloaded on
      next access.

Usage:
    engine = ThinkingEngine(inference=LLMClient(), store=ThinkingStore())
    session = await engine.start_session("Why is the sky blue?")
    nodes = await engine.expand(session.id, session.root_node_id, count=2)
    answer = await engine.synthesize(session.id)
"""

from __future__ import annotations

import asyncio
import copy
import random
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger

from thinktree.models.llm_client import InferenceResult, InferenceService
from thinktree.models.thinking_store import DEFAULT_LIST_LIMIT, ThinkingStore
from thinktree.tools.progression import DEFAULT_STYLE_BIAS, StyleBias, next_thought_type
from thinktree.tools.prompts import (
    build_alternatives_prompt,
    build_critique_prompt,
    build_expansion_prompt,
    build_synthesis_prompt,
    parse_alternatives,
)
from thinktree.tools.templates import ReasoningTemplate, TemplateCatalog
from thinktree.tools.thinking_types import (
    Bookmark,
    EventType,
    NodeMetadata,
    SessionStatus,
    ThinkingConfig,
    ThinkingEvent,
    ThinkingSession,
    ThoughtNode,
    ThoughtStatus,
    ThoughtType,
    utcnow,
)
from thinktree.tools.thought_tree import BranchSummary, ThoughtTree
from thinktree.utils.confidence import (
    DEFAULT_CRITIQUE_CONFIDENCE,
    DEFAULT_EXPANSION_CONFIDENCE,
    extract_confidence,
    extract_rationale,
)
from thinktree.utils.errors import (
    BudgetExceededError,
    ConfigException,
    InferenceFailure,
    InvalidStateError,
    NodeNotFoundError,
    SessionNotFoundError,
    ThinkingException,
)
from thinktree.utils.events import EventBus, EventSubscription
from thinktree.utils.session import SessionLocks

ROOT_CONFIDENCE = 100
ROOT_REASONING = "Initial query"
CRITIQUE_REASONING = "Self-critique of parent reasoning step"


@dataclass(frozen=True)
class OutputBudgets:
    """Maximum response tokens requested per kind of inference call."""

    expand: int = 1000
    critique: int = 1500
    alternatives: int = 2000
    synthesis: int = 3000


@dataclass(frozen=True)
class _ExpansionPlan:
    parent_id: str
    thought_type: ThoughtType
    prompt: str


def _new_id() -> str:
    return str(uuid.uuid4())


class ThinkingEngine:
    """Drives thinking sessions over an inference service and a store.

    Each engine keeps its own cache, locks, event bus and background tasks,
    so several engines can live in one process (tests rely on this).
    """

    def __init__(
        self,
        inference: InferenceService,
        store: ThinkingStore,
        *,
        templates: TemplateCatalog | None = None,
        event_bus: EventBus | None = None,
        rng: random.Random | None = None,
        style_bias: StyleBias = DEFAULT_STYLE_BIAS,
        output_budgets: OutputBudgets | None = None,
        default_model: str = "default",
    ) -> None:
        """Initialize the engine.

        Args:
            inference: Service used for every model call.
            store: Durable store; the source of truth.
            templates: Template catalog. Defaults to the built-in templates.
            event_bus: Event bus. A private one is created if omitted.
            rng: Random source for style perturbation.
            style_bias: Style perturbation probabilities.
            output_budgets: Response token limits per operation.
            default_model: Model id recorded when a config names none.

        """
        self._inference = inference
        self._store = store
        self._templates = templates or TemplateCatalog()
        self._bus = event_bus or EventBus()
        self._rng = rng or random.Random()
        self._style_bias = style_bias
        self._budgets = output_budgets or OutputBudgets()
        self._default_model = default_model

        self._sessions: dict[str, ThinkingSession] = {}
        self._trees: dict[str, ThoughtTree] = {}
        self._locks = SessionLocks()
        self._auto_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    # =========================================================================
    # Cache and persistence helpers
    # =========================================================================

    def _load(self, session_id: str) -> tuple[ThinkingSession, ThoughtTree]:
        """Return the cached session and tree, reloading from the store if needed.

        Raises:
            SessionNotFoundError: If the store has no such session.

        """
        session = self._sessions.get(session_id)
        tree = self._trees.get(session_id)
        if session is not None and tree is not None:
            return session, tree

        session = self._store.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        tree = ThoughtTree(session.root_node_id, self._store.load_tree(session_id))
        self._sessions[session_id] = session
        self._trees[session_id] = tree
        return session, tree

    @staticmethod
    def _node(tree: ThoughtTree, session_id: str, node_id: str) -> ThoughtNode:
        node = tree.get(node_id)
        if node is None:
            raise NodeNotFoundError(session_id, node_id)
        return node

    def _evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._trees.pop(session_id, None)

    @contextmanager
    def _write_through(self, session_id: str) -> Iterator[None]:
        """Run a group of store writes as one transaction.

        If any write fails the whole group is rolled back and the session is
        evicted from the cache, so the next access reloads the last committed
        state.
        """
        try:
            with self._store.transaction():
                yield
        except Exception as e:
            logger.error(f"Store write failed for session {session_id}, evicting cache: {e}")
            self._evict(session_id)
            raise

    def _emit(
        self,
        event_type: EventType,
        session_id: str,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._bus.publish(
            ThinkingEvent(type=event_type, session_id=session_id, node_id=node_id, data=data or {})
        )

    @staticmethod
    def _require_status(session: ThinkingSession, allowed: SessionStatus, operation: str) -> None:
        if session.status != allowed:
            raise InvalidStateError(
                f"Cannot {operation} session {session.id} in status "
                f"'{session.status.value}' (requires '{allowed.value}')"
            )

    async def _infer(self, prompt: str, max_tokens: int) -> tuple[InferenceResult, int]:
        """Make one inference call and time it. No retries here."""
        started = time.perf_counter()
        try:
            result = await self._inference.infer(prompt, max_tokens)
        except InferenceFailure:
            raise
        except Exception as e:
            raise InferenceFailure(f"Inference failed: {e!s}") from e
        duration_ms = int((time.perf_counter() - started) * 1000)
        return result, duration_ms

    def _template(self, config: ThinkingConfig) -> ReasoningTemplate | None:
        return self._templates.get_template(config.template) if config.template else None

    # =========================================================================
    # Budget and status transitions (caller holds the session lock)
    # =========================================================================

    @staticmethod
    def _budget_exhausted(session: ThinkingSession) -> bool:
        return session.stats.total_tokens >= session.config.max_tokens

    def _pause_for_budget(
        self, session: ThinkingSession, created: list[ThoughtNode]
    ) -> BudgetExceededError:
        """Pause the session and build the error describing why."""
        total, ceiling = session.stats.total_tokens, session.config.max_tokens
        logger.warning(
            f"Token budget exhausted for session {session.id} ({total}/{ceiling}), pausing"
        )
        if session.status == SessionStatus.THINKING:
            self._set_status(session, SessionStatus.PAUSED, reason="budget_exceeded")
        return BudgetExceededError(
            f"Token budget exceeded: {total}/{ceiling} tokens used",
            total_tokens=total,
            max_tokens=ceiling,
            nodes=[copy.deepcopy(node) for node in created],
        )

    def _set_status(
        self, session: ThinkingSession, status: SessionStatus, *, reason: str | None = None
    ) -> None:
        """Persist a pause/resume transition and announce it."""
        session.status = status
        session.touch()
        with self._write_through(session.id):
            self._store.save_session(session)

        event_type = (
            EventType.SESSION_PAUSED if status == SessionStatus.PAUSED else EventType.SESSION_RESUMED
        )
        self._emit(event_type, session.id, data={"reason": reason} if reason else None)
        logger.info(f"Session {session.id} is now {status.value}")

    def _check_budget(self, session: ThinkingSession) -> None:
        if self._budget_exhausted(session):
            raise self._pause_for_budget(session, [])

    # =========================================================================
    # Node creation (caller holds the session lock)
    # =========================================================================

    def _plan_expansion(
        self, session: ThinkingSession, tree: ThoughtTree, parent: ThoughtNode
    ) -> _ExpansionPlan:
        config = session.config
        template = self._template(config)
        step = template.step_for_depth(parent.depth) if template else None
        thought_type = next_thought_type(
            parent.type,
            parent.depth,
            config.thinking_style,
            template,
            rng=self._rng,
            bias=self._style_bias,
        )
        prompt = build_expansion_prompt(
            tree.path_to(parent.id), thought_type, config.thinking_style, step
        )
        return _ExpansionPlan(parent_id=parent.id, thought_type=thought_type, prompt=prompt)

    def _commit_nodes(
        self,
        session: ThinkingSession,
        tree: ThoughtTree,
        parent: ThoughtNode,
        nodes: list[ThoughtNode],
        *,
        linked_from: ThoughtNode | None = None,
    ) -> None:
        """Attach new nodes under ``parent``, persist, then announce them.

        Args:
            session: Owning session; its stats and current node advance.
            tree: Session tree.
            parent: Node the new nodes hang under.
            nodes: Freshly built nodes, in creation order.
            linked_from: Node whose ``alternatives`` list gains the new ids.

        """
        for node in nodes:
            tree.add(node)
            parent.add_child(node.id)
            if linked_from is not None:
                linked_from.add_alternative(node.id)
            session.stats.record_node(node)
            session.current_node_id = node.id
        session.touch()

        with self._write_through(session.id):
            for node in nodes:
                self._store.save_node(node)
            self._store.update_node(parent)
            if linked_from is not None:
                self._store.update_node(linked_from)
            self._store.save_session(session)

        for node in nodes:
            self._emit(EventType.NODE_CREATED, session.id, node.id, node.to_dict())
            logger.info(
                f"Created {node.type.value} node {node.id} in session {session.id} "
                f"(depth={node.depth}, confidence={node.confidence})"
            )
        if linked_from is not None:
            self._emit(EventType.NODE_UPDATED, session.id, linked_from.id, linked_from.to_dict())

    def _expansion_child(
        self,
        session: ThinkingSession,
        parent: ThoughtNode,
        plan: _ExpansionPlan,
        result: InferenceResult,
        duration_ms: int,
    ) -> ThoughtNode:
        return ThoughtNode(
            id=_new_id(),
            session_id=session.id,
            parent_id=parent.id,
            content=result.text,
            type=plan.thought_type,
            confidence=extract_confidence(result.text, DEFAULT_EXPANSION_CONFIDENCE),
            depth=parent.depth + 1,
            reasoning=extract_rationale(result.text),
            metadata=NodeMetadata(
                tokens=result.total_tokens,
                duration_ms=duration_ms,
                model=session.config.model or self._default_model,
            ),
        )

    def _finish(self, session: ThinkingSession, conclusion: str) -> None:
        """Store the conclusion, complete the session and announce it."""
        now = utcnow()
        session.final_conclusion = conclusion
        session.status = SessionStatus.COMPLETED
        session.completed_at = now
        session.updated_at = now
        with self._write_through(session.id):
            self._store.save_session(session)
        self._emit(EventType.SESSION_COMPLETED, session.id, data={"conclusion": conclusion})
        logger.info(f"Synthesized final conclusion for session {session.id}")

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start_session(
        self,
        query: str,
        config: ThinkingConfig | dict[str, Any] | None = None,
        user_id: str | None = None,
        project_id: str | None = None,
    ) -> ThinkingSession:
        """Create a session with its root node.

        Args:
            query: The question to think about. Becomes the root's content.
            config: Session config, or a partial dict of config fields.
            user_id: Optional owner.
            project_id: Optional project grouping.

        Returns:
            The new session in status ``thinking``.

        Raises:
            ValueError: If the query is empty.
            ConfigException: If the config is invalid or names an unknown template.

        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")

        if config is None:
            config = ThinkingConfig()
        elif isinstance(config, dict):
            config = ThinkingConfig.from_dict(config)
        if config.template and config.template not in self._templates:
            raise ConfigException(f"Unknown template: {config.template}")
        if not config.model:
            config = replace(config, model=self._default_model)

        session_id = _new_id()
        root = ThoughtNode(
            id=_new_id(),
            session_id=session_id,
            parent_id=None,
            content=query,
            type=ThoughtType.OBSERVATION,
            confidence=ROOT_CONFIDENCE,
            depth=0,
            reasoning=ROOT_REASONING,
            metadata=NodeMetadata(model=config.model or self._default_model),
        )
        session = ThinkingSession(
            id=session_id,
            user_id=user_id,
            project_id=project_id,
            query=query,
            root_node_id=root.id,
            current_node_id=root.id,
            config=config,
        )
        session.stats.record_node(root)

        async with self._locks.hold(session_id):
            self._sessions[session_id] = session
            self._trees[session_id] = ThoughtTree(root.id, [root])
            with self._write_through(session_id):
                self._store.save_session(session)
                self._store.save_node(root)

        logger.info(
            f"Started thinking session {session_id} "
            f"(style={config.thinking_style.value}, template={config.template}, "
            f"auto_expand={config.auto_expand})"
        )

        if config.auto_expand:
            self._schedule_auto_expand(session_id)
        return copy.deepcopy(session)

    async def pause(self, session_id: str) -> ThinkingSession:
        """Pause a thinking session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidStateError: If the session is not ``thinking``.

        """
        async with self._locks.hold(session_id):
            session, _ = self._load(session_id)
            self._require_status(session, SessionStatus.THINKING, "pause")
            self._set_status(session, SessionStatus.PAUSED)
            return copy.deepcopy(session)

    async def resume(self, session_id: str) -> ThinkingSession:
        """Resume a paused session, restarting auto-expansion if configured.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidStateError: If the session is not ``paused``.

        """
        async with self._locks.hold(session_id):
            session, _ = self._load(session_id)
            self._require_status(session, SessionStatus.PAUSED, "resume")
            self._set_status(session, SessionStatus.THINKING)
            snapshot = copy.deepcopy(session)

        if snapshot.config.auto_expand:
            self._schedule_auto_expand(session_id)
        return snapshot

    # =========================================================================
    # Tree operations
    # =========================================================================

    async def expand(
        self,
        session_id: str,
        node_id: str | None = None,
        count: int = 1,
    ) -> list[ThoughtNode]:
        """Create up to ``count`` children under a node, one inference call each.

        Args:
            session_id: Session to expand.
            node_id: Node to expand. Defaults to the session's current node.
            count: Requested children, clamped to ``[1, max_branches]``.

        Returns:
            Created nodes in creation order. Empty when the node already sits
            at ``max_depth``.

        Raises:
            SessionNotFoundError: If the session does not exist.
            NodeNotFoundError: If the node is not in the session.
            InvalidStateError: If the session is not ``thinking``.
            BudgetExceededError: If the token ceiling is reached, before or
                during the call. The session is paused; nodes committed
                during this call are on the error's ``nodes``.
            InferenceFailure: If a model call fails. Nodes committed before
                the failure stay in the tree.

        """
        async with self._locks.hold(session_id):
            session, tree = self._load(session_id)
            parent = self._node(tree, session_id, node_id or session.current_node_id)
            self._require_status(session, SessionStatus.THINKING, "expand")

            if parent.depth >= session.config.max_depth:
                logger.warning(
                    f"Max depth {session.config.max_depth} reached at node {parent.id}, "
                    "nothing to expand"
                )
                return []
            self._check_budget(session)

            created: list[ThoughtNode] = []
            for _ in range(session.config.clamp_count(count)):
                plan = self._plan_expansion(session, tree, parent)
                result, duration_ms = await self._infer(plan.prompt, self._budgets.expand)
                node = self._expansion_child(session, parent, plan, result, duration_ms)
                session.stats.record_usage(result.total_tokens, duration_ms)
                self._commit_nodes(session, tree, parent, [node])
                created.append(node)

                if self._budget_exhausted(session):
                    raise self._pause_for_budget(session, created)

            return [copy.deepcopy(node) for node in created]

    async def critique(self, session_id: str, node_id: str | None = None) -> ThoughtNode:
        """Attach one ``critique`` child under a node.

        Args:
            session_id: Session to work on.
            node_id: Node to critique. Defaults to the session's current node.

        Returns:
            The critique node.

        Raises:
            SessionNotFoundError: If the session does not exist.
            NodeNotFoundError: If the node is not in the session.
            InvalidStateError: If the session is not ``thinking``, self-critique
                is disabled, or the node already sits at ``max_depth``.
            BudgetExceededError: If the token ceiling is reached.
            InferenceFailure: If the model call fails.

        """
        async with self._locks.hold(session_id):
            session, tree = self._load(session_id)
            target = self._node(tree, session_id, node_id or session.current_node_id)
            self._require_status(session, SessionStatus.THINKING, "critique")
            if not session.config.enable_self_critique:
                raise InvalidStateError(f"Self-critique is disabled for session {session_id}")
            if target.depth >= session.config.max_depth:
                raise InvalidStateError(
                    f"Cannot critique node {target.id}: max depth "
                    f"{session.config.max_depth} reached"
                )
            self._check_budget(session)

            prompt = build_critique_prompt(tree.path_to(target.id), target)
            result, duration_ms = await self._infer(prompt, self._budgets.critique)

            node = ThoughtNode(
                id=_new_id(),
                session_id=session_id,
                parent_id=target.id,
                content=result.text,
                type=ThoughtType.CRITIQUE,
                confidence=extract_confidence(result.text, DEFAULT_CRITIQUE_CONFIDENCE),
                depth=target.depth + 1,
                reasoning=CRITIQUE_REASONING,
                metadata=NodeMetadata(
                    tokens=result.total_tokens,
                    duration_ms=duration_ms,
                    model=session.config.model or self._default_model,
                    revised_from=target.id,
                ),
            )
            session.stats.record_usage(result.total_tokens, duration_ms)
            session.stats.revisions_count += 1
            self._commit_nodes(session, tree, target, [node])

            if self._budget_exhausted(session):
                raise self._pause_for_budget(session, [node])
            return copy.deepcopy(node)

    async def explore_alternatives(
        self,
        session_id: str,
        node_id: str | None = None,
        count: int = 3,
    ) -> list[ThoughtNode]:
        """Create ``count`` sibling alternatives of a node from one inference call.

        Siblings share the target's parent and depth and are linked from the
        target's ``alternatives`` list. Either all of them are created or none.

        Args:
            session_id: Session to work on.
            node_id: Target node. Defaults to the session's current node.
            count: Requested alternatives, clamped to ``[1, max_branches]``.

        Returns:
            The sibling nodes in creation order.

        Raises:
            SessionNotFoundError: If the session does not exist.
            NodeNotFoundError: If the node is not in the session.
            InvalidStateError: If the session is not ``thinking``, parallel
                exploration is disabled, or the target is the root.
            BudgetExceededError: If the token ceiling is reached.
            InferenceFailure: If the model call fails.
            ParseError: If the output is not a list of ``count`` well-formed
                alternatives. The call's tokens are still accounted.

        """
        async with self._locks.hold(session_id):
            session, tree = self._load(session_id)
            target = self._node(tree, session_id, node_id or session.current_node_id)
            self._require_status(session, SessionStatus.THINKING, "explore alternatives for")
            if not session.config.enable_parallel_exploration:
                raise InvalidStateError(
                    f"Parallel exploration is disabled for session {session_id}"
                )
            if target.parent_id is None:
                raise InvalidStateError("The root node has no parent, so it cannot have siblings")
            parent = self._node(tree, session_id, target.parent_id)
            self._check_budget(session)

            count = session.config.clamp_count(count)
            prompt = build_alternatives_prompt(tree.path_to(target.id), target, count)
            result, duration_ms = await self._infer(prompt, self._budgets.alternatives)
            session.stats.record_usage(result.total_tokens, duration_ms)

            try:
                proposals = parse_alternatives(result.text, count)
            except ThinkingException:
                session.touch()
                with self._write_through(session_id):
                    self._store.save_session(session)
                raise

            token_shares = _split(result.total_tokens, count)
            duration_shares = _split(duration_ms, count)
            model = session.config.model or self._default_model
            siblings = [
                ThoughtNode(
                    id=_new_id(),
                    session_id=session_id,
                    parent_id=parent.id,
                    content=proposal.content,
                    type=ThoughtType.ALTERNATIVE,
                    confidence=proposal.confidence,
                    depth=target.depth,
                    reasoning=proposal.reasoning,
                    metadata=NodeMetadata(
                        tokens=token_shares[i], duration_ms=duration_shares[i], model=model
                    ),
                )
                for i, proposal in enumerate(proposals)
            ]
            self._commit_nodes(session, tree, parent, siblings, linked_from=target)
            logger.info(
                f"Explored {len(siblings)} alternatives of node {target.id} "
                f"in session {session_id}"
            )

            if self._budget_exhausted(session):
                raise self._pause_for_budget(session, siblings)
            return [copy.deepcopy(node) for node in siblings]

    async def bookmark(
        self,
        session_id: str,
        node_id: str,
        user_id: str | None = None,
        note: str | None = None,
    ) -> Bookmark:
        """Mark a node as bookmarked and record a bookmark entry.

        Allowed in every session status; the tree shape does not change.

        Raises:
            SessionNotFoundError: If the session does not exist.
            NodeNotFoundError: If the node is not in the session.

        """
        async with self._locks.hold(session_id):
            session, tree = self._load(session_id)
            node = self._node(tree, session_id, node_id)

            node.status = ThoughtStatus.BOOKMARKED
            session.touch()
            bookmark = Bookmark(
                id=_new_id(), session_id=session_id, node_id=node_id, user_id=user_id, note=note
            )
            with self._write_through(session_id):
                self._store.update_node(node)
                self._store.save_bookmark(bookmark)
                self._store.save_session(session)

            self._emit(EventType.NODE_UPDATED, session_id, node_id, node.to_dict())
            logger.info(f"Bookmarked node {node_id} in session {session_id}")
            return bookmark

    async def synthesize(self, session_id: str) -> str:
        """Turn the whole tree into one final conclusion and complete the session.

        Allowed from ``thinking``, ``paused`` and ``completed`` (re-running
        overwrites the conclusion). A session paused for budget exhaustion
        is concluded this way, moving straight from ``paused`` to
        ``completed``; synthesis itself is not checked against the token
        ceiling.

        Returns:
            The conclusion text.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidStateError: If the session has failed.
            InferenceFailure: If the model call fails.

        """
        async with self._locks.hold(session_id):
            session, tree = self._load(session_id)
            if session.status == SessionStatus.FAILED:
                raise InvalidStateError(f"Cannot synthesize failed session {session_id}")

            prompt = build_synthesis_prompt(
                session.query, tree.nodes(), session.root_node_id, session.stats
            )
            result, duration_ms = await self._infer(prompt, self._budgets.synthesis)
            session.stats.record_usage(result.total_tokens, duration_ms)
            self._finish(session, result.text)
            return result.text

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_session(self, session_id: str) -> ThinkingSession:
        session, _ = self._load(session_id)
        return copy.deepcopy(session)

    async def get_tree(self, session_id: str) -> list[ThoughtNode]:
        """All nodes of a session in creation order."""
        _, tree = self._load(session_id)
        return [copy.deepcopy(node) for node in tree]

    async def get_path(self, session_id: str, node_id: str) -> list[ThoughtNode]:
        """Nodes from the root down to ``node_id``."""
        _, tree = self._load(session_id)
        self._node(tree, session_id, node_id)
        return [copy.deepcopy(node) for node in tree.path_to(node_id)]

    async def get_subtree(self, session_id: str, node_id: str) -> list[ThoughtNode]:
        """``node_id`` and all of its descendants, pre-order."""
        _, tree = self._load(session_id)
        self._node(tree, session_id, node_id)
        return [copy.deepcopy(node) for node in tree.subtree(node_id)]

    async def find_high_confidence_branches(
        self,
        session_id: str,
        min_confidence: float = 80,
        min_depth: int = 3,
    ) -> list[BranchSummary]:
        _, tree = self._load(session_id)
        return tree.high_confidence_branches(min_confidence=min_confidence, min_depth=min_depth)

    async def list_sessions(
        self,
        user_id: str | None = None,
        project_id: str | None = None,
        status: SessionStatus | str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[ThinkingSession]:
        return self._store.list_sessions(
            user_id=user_id, project_id=project_id, status=status, limit=limit
        )

    async def list_bookmarks(self, session_id: str) -> list[Bookmark]:
        self._load(session_id)
        return self._store.list_bookmarks(session_id=session_id)

    def list_templates(self) -> list[ReasoningTemplate]:
        return self._templates.list_templates()

    async def delete_session(self, session_id: str) -> None:
        """Delete a session, its nodes and bookmarks, and stop its background work.

        Raises:
            SessionNotFoundError: If the session does not exist.

        """
        task = self._auto_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        async with self._locks.hold(session_id):
            self._load(session_id)
            self._evict(session_id)
            self._store.delete_session(session_id)
            self._bus.close_session(session_id)
        self._locks.discard(session_id)
        logger.info(f"Deleted session {session_id}")

    def stream_events(self, session_id: str) -> EventSubscription:
        """Subscribe to a session's events.

        The subscription is registered before this returns, so nothing
        published afterwards is missed. A session that already ended yields
        an empty, closed subscription.

        Raises:
            SessionNotFoundError: If the session does not exist.

        """
        session, _ = self._load(session_id)
        if session.status.is_terminal:
            return self._bus.closed_subscription(session_id)
        return self._bus.subscribe(session_id)

    # =========================================================================
    # Auto-expansion
    # =========================================================================

    def _schedule_auto_expand(self, session_id: str) -> None:
        """Start the auto-expand loop unless one is already running."""
        running = self._auto_tasks.get(session_id)
        if running is not None and not running.done():
            return

        task = asyncio.create_task(self._auto_expand(session_id), name=f"auto-expand-{session_id}")
        self._auto_tasks[session_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._auto_tasks.get(session_id) is done:
                del self._auto_tasks[session_id]

        task.add_done_callback(_forget)

    async def _auto_expand(self, session_id: str) -> None:
        """Expand the current node until confidence, budget or depth says stop.

        Each step plans under the lock, runs inference without it, and
        re-validates the session under the lock before committing.
        """
        try:
            while True:
                async with self._locks.hold(session_id):
                    session, tree = self._load(session_id)
                    if session.status != SessionStatus.THINKING or not session.config.auto_expand:
                        return
                    current = self._node(tree, session_id, session.current_node_id)
                    config = session.config

                    if current.depth >= config.max_depth:
                        plan = None
                        prompt = build_synthesis_prompt(
                            session.query, tree.nodes(), session.root_node_id, session.stats
                        )
                        max_tokens = self._budgets.synthesis
                    elif (
                        current.confidence >= config.min_confidence_threshold
                        and not self._budget_exhausted(session)
                    ):
                        plan = self._plan_expansion(session, tree, current)
                        prompt = plan.prompt
                        max_tokens = self._budgets.expand
                    else:
                        logger.info(
                            f"Auto-expansion idle for session {session_id} "
                            f"(confidence={current.confidence}, "
                            f"tokens={session.stats.total_tokens}/{config.max_tokens})"
                        )
                        return

                result, duration_ms = await self._infer(prompt, max_tokens)

                async with self._locks.hold(session_id):
                    session, tree = self._load(session_id)
                    if session.status != SessionStatus.THINKING:
                        if not session.status.is_terminal:
                            session.stats.record_usage(result.total_tokens, duration_ms)
                            with self._write_through(session_id):
                                self._store.save_session(session)
                        logger.info(
                            f"Session {session_id} became {session.status.value} "
                            "during auto-expansion, discarding result"
                        )
                        return

                    session.stats.record_usage(result.total_tokens, duration_ms)
                    if plan is None:
                        self._finish(session, result.text)
                        return

                    parent = self._node(tree, session_id, plan.parent_id)
                    node = self._expansion_child(session, parent, plan, result, duration_ms)
                    self._commit_nodes(session, tree, parent, [node])
                    if self._budget_exhausted(session):
                        self._pause_for_budget(session, [node])
                        return
        except asyncio.CancelledError:
            raise
        except SessionNotFoundError:
            logger.info(f"Session {session_id} disappeared, stopping auto-expansion")
        except Exception as e:
            logger.bind(session_id=session_id).error(f"Auto-expansion failed: {e}")
            await self._fail(session_id, e)

    async def _fail(self, session_id: str, error: Exception) -> None:
        """Move a session to ``failed`` and publish an ``error`` event."""
        code = error.code if isinstance(error, ThinkingException) else type(error).__name__
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id) or self._store.load_session(session_id)
            if session is not None and not session.status.is_terminal:
                session.status = SessionStatus.FAILED
                session.touch()
                try:
                    with self._write_through(session_id):
                        self._store.save_session(session)
                except Exception:
                    logger.exception(f"Could not persist failure of session {session_id}")
            self._emit(EventType.ERROR, session_id, data={"error": code, "message": str(error)})

    async def wait_idle(self, session_id: str | None = None) -> None:
        """Wait for running auto-expand loops (one session or all) to finish."""
        if session_id is not None:
            task = self._auto_tasks.get(session_id)
            tasks = [task] if task is not None else []
        else:
            tasks = list(self._auto_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background work. The store is left open for its owner."""
        tasks = list(self._auto_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._auto_tasks.clear()


def _split(total: int, parts: int) -> list[int]:
    """Split ``total`` into ``parts`` integers that sum to it, larger shares first."""
    base, remainder = divmod(max(0, total), parts)
    return [base + (1 if i < remainder else 0) for i in range(parts)]
