"""Prompt construction and structured-response parsing.

Prompts are plain text. Rendering them into a vendor wire format is the
inference client's job.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import orjson
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from thinktree.tools.templates import TemplateStep
from thinktree.tools.thinking_types import (
    SessionStats,
    ThinkingStyle,
    ThoughtNode,
    ThoughtType,
)
from thinktree.tools.thought_tree import render_outline
from thinktree.utils.confidence import DEFAULT_EXPANSION_CONFIDENCE, clamp_confidence
from thinktree.utils.errors import ParseError

STYLE_MODIFIERS: dict[ThinkingStyle, str] = {
    ThinkingStyle.THOROUGH: "Be extremely thorough and consider all angles.",
    ThinkingStyle.FAST: "Be concise and focus on the most important points.",
    ThinkingStyle.CREATIVE: "Think creatively and consider unconventional approaches.",
    ThinkingStyle.ANALYTICAL: "Provide deep analytical reasoning with supporting evidence.",
    ThinkingStyle.METHODICAL: "Follow a systematic, step-by-step approach.",
}

DEFAULT_TYPE_PROMPTS: dict[ThoughtType, str] = {
    ThoughtType.OBSERVATION: "Observe and understand the situation. What are the key facts?",
    ThoughtType.ANALYSIS: "Analyze the information deeply. What patterns or insights emerge?",
    ThoughtType.HYPOTHESIS: (
        "Generate hypotheses. What might be true? What are possible explanations?"
    ),
    ThoughtType.EVIDENCE: "What evidence supports or refutes the hypotheses?",
    ThoughtType.CRITIQUE: "Critically examine the reasoning so far. What are the flaws or gaps?",
    ThoughtType.CONCLUSION: "Draw a conclusion based on all the thinking so far.",
    ThoughtType.QUESTION: "What key questions need to be answered?",
    ThoughtType.ALTERNATIVE: "Consider alternative perspectives or approaches.",
    ThoughtType.SYNTHESIS: "Synthesize the different threads of thinking into a coherent whole.",
}


def format_path_context(path: Sequence[ThoughtNode]) -> str:
    """Render a root-to-node path, oldest first."""
    return "\n\n".join(
        f"Step {i} [{node.type.value}, confidence: {node.confidence}%]:\n{node.content}"
        for i, node in enumerate(path, start=1)
    )


def build_expansion_prompt(
    path: Sequence[ThoughtNode],
    thought_type: ThoughtType,
    style: ThinkingStyle,
    step: TemplateStep | None = None,
) -> str:
    """Prompt for one expansion step.

    Args:
        path: Nodes from the root to the parent being expanded.
        thought_type: Type chosen for the new child.
        style: Session thinking style (ignored for template steps).
        step: Template step governing this depth, if any.

    Returns:
        Prompt text.

    """
    context = format_path_context(path)
    if step is not None:
        return (
            f"{step.prompt}\n\n"
            f"Context from previous thinking:\n{context}\n\n"
            f"Provide your {thought_type.value} and explain your reasoning. "
            "Include a confidence level (0-100)."
        )
    return f"{DEFAULT_TYPE_PROMPTS[thought_type]}\n\n{context}\n\n{STYLE_MODIFIERS[style]}"


def build_critique_prompt(path: Sequence[ThoughtNode], target: ThoughtNode) -> str:
    return f"""Review this reasoning step critically:

Path Context:
{format_path_context(path)}

Current Step:
Type: {target.type.value}
Content: {target.content}
Confidence: {target.confidence}%

Provide a critical analysis:
1. What are the strengths of this reasoning?
2. What are the weaknesses or potential flaws?
3. What assumptions might be incorrect?
4. What alternative interpretations exist?
5. How can this reasoning be improved?

Be brutally honest and thorough."""


def build_alternatives_prompt(
    path: Sequence[ThoughtNode], target: ThoughtNode, count: int
) -> str:
    return f"""Given this reasoning path:

{format_path_context(path)}

Current conclusion: {target.content}

Generate {count} alternative approaches or conclusions that:
1. Take a different perspective
2. Consider factors not yet explored
3. Challenge the current assumptions
4. Offer creative or unconventional thinking

For each alternative, provide:
- The alternative reasoning
- Why it's worth considering
- Confidence level (0-100)

Format as JSON array:
[
  {{
    "content": "...",
    "reasoning": "...",
    "confidence": 75
  }}
]"""


def build_synthesis_prompt(
    query: str,
    nodes: Sequence[ThoughtNode],
    root_id: str,
    stats: SessionStats,
) -> str:
    return f"""You have explored this question through an extended thinking process:

Original Query: {query}

Thinking Process:
{render_outline(nodes, root_id)}
Session Statistics:
- Total thoughts explored: {stats.branches_explored}
- Maximum depth: {stats.max_depth_reached}
- Average confidence: {stats.average_confidence:.1f}%
- Revisions/critiques: {stats.revisions_count}

Now synthesize all this thinking into a comprehensive, well-reasoned final answer:

1. Start with your conclusion
2. Explain the reasoning process that led to it
3. Acknowledge uncertainties and alternatives considered
4. Provide actionable recommendations if applicable

Be clear, confident, and thorough."""


# =============================================================================
# Alternatives parsing
# =============================================================================

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


class AlternativeProposal(BaseModel):
    """One alternative as returned by the model."""

    content: str = Field(min_length=1)
    reasoning: str | None = None
    confidence: int = DEFAULT_EXPANSION_CONFIDENCE

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_EXPANSION_CONFIDENCE
        try:
            return clamp_confidence(float(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"confidence is not a number: {value!r}") from e


_PROPOSALS = TypeAdapter(list[AlternativeProposal])


def parse_alternatives(text: str, count: int) -> list[AlternativeProposal]:
    """Parse the model's JSON array of alternatives.

    Extra items are dropped. Anything that would leave fewer than ``count``
    valid items is an error, so callers can create all siblings or none.

    Args:
        text: Raw model output.
        count: Number of alternatives requested.

    Returns:
        Exactly ``count`` proposals.

    Raises:
        ParseError: If no array is found, the JSON is invalid, an item has
            the wrong shape, or too few items are returned.

    """
    match = _JSON_ARRAY.search(text)
    if not match:
        raise ParseError("Failed to parse alternatives: no JSON array in model output")

    try:
        raw = orjson.loads(match.group(0))
    except orjson.JSONDecodeError as e:
        raise ParseError(f"Failed to parse alternatives: invalid JSON ({e})") from e

    try:
        proposals = _PROPOSALS.validate_python(raw)
    except ValidationError as e:
        raise ParseError(
            f"Failed to parse alternatives: unexpected shape ({e.error_count()} error(s))"
        ) from e

    if len(proposals) < count:
        raise ParseError(
            f"Failed to parse alternatives: expected {count}, got {len(proposals)}"
        )
    return proposals[:count]
