"""Next-thought-type selection.

The default progression is a fixed table keyed by the parent's type. A
thinking style may perturb it at random; the probabilities are plain
configuration, not part of any contract, and the random source is injectable
so tests can pin the outcome.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from thinktree.tools.templates import ReasoningTemplate
from thinktree.tools.thinking_types import ThinkingStyle, ThoughtType

TYPE_PROGRESSION: dict[ThoughtType, ThoughtType] = {
    ThoughtType.OBSERVATION: ThoughtType.ANALYSIS,
    ThoughtType.ANALYSIS: ThoughtType.HYPOTHESIS,
    ThoughtType.HYPOTHESIS: ThoughtType.EVIDENCE,
    ThoughtType.EVIDENCE: ThoughtType.ANALYSIS,
    ThoughtType.CRITIQUE: ThoughtType.SYNTHESIS,
    ThoughtType.CONCLUSION: ThoughtType.OBSERVATION,
    ThoughtType.QUESTION: ThoughtType.HYPOTHESIS,
    ThoughtType.ALTERNATIVE: ThoughtType.ANALYSIS,
    ThoughtType.SYNTHESIS: ThoughtType.CONCLUSION,
}


@dataclass(frozen=True)
class StyleBias:
    """Probabilities of a style overriding the progression table.

    Attributes:
        creative_alternative: Chance a creative session branches into an
            ``alternative`` thought.
        analytical_repeat: Chance an analytical session emits ``analysis``
            when the parent is not already an analysis.

    """

    creative_alternative: float = 0.3
    analytical_repeat: float = 0.4


DEFAULT_STYLE_BIAS = StyleBias()


def next_thought_type(
    parent_type: ThoughtType,
    parent_depth: int,
    style: ThinkingStyle,
    template: ReasoningTemplate | None = None,
    *,
    rng: random.Random | None = None,
    bias: StyleBias = DEFAULT_STYLE_BIAS,
) -> ThoughtType:
    """Decide the type of the next child of a node.

    Args:
        parent_type: Type of the node being expanded.
        parent_depth: Depth of the node being expanded.
        style: Session thinking style.
        template: Active template, if any. Its matching step wins outright.
        rng: Random source for style perturbation.
        bias: Perturbation probabilities.

    Returns:
        The thought type for the new child.

    """
    if template is not None:
        step = template.step_for_depth(parent_depth)
        if step is not None:
            return step.type

    rng = rng or random.Random()
    if style == ThinkingStyle.CREATIVE:
        if rng.random() < bias.creative_alternative:
            return ThoughtType.ALTERNATIVE
    elif style == ThinkingStyle.ANALYTICAL:
        if parent_type != ThoughtType.ANALYSIS and rng.random() < bias.analytical_repeat:
            return ThoughtType.ANALYSIS

    return TYPE_PROGRESSION.get(parent_type, ThoughtType.ANALYSIS)
