"""Reasoning template catalog.

A template scripts expansion: the step whose ``order`` equals
``parent.depth + 1`` decides the next thought type and prompt. Past the last
step the engine falls back to the default type progression.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from thinktree.tools.thinking_types import ThoughtType


@dataclass(frozen=True)
class TemplateStep:
    """A single scripted step."""

    order: int
    type: ThoughtType
    prompt: str
    min_confidence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "type": self.type.value,
            "prompt": self.prompt,
            "min_confidence": self.min_confidence,
        }


@dataclass(frozen=True)
class ReasoningTemplate:
    """A named, ordered sequence of typed reasoning steps."""

    id: str
    name: str
    description: str
    category: str
    steps: tuple[TemplateStep, ...]

    def step_for_depth(self, parent_depth: int) -> TemplateStep | None:
        """Return the step governing a child of a node at ``parent_depth``."""
        order = parent_depth + 1
        for step in self.steps:
            if step.order == order:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "steps": [step.to_dict() for step in self.steps],
        }


def _steps(*specs: tuple[ThoughtType, str, int]) -> tuple[TemplateStep, ...]:
    return tuple(
        TemplateStep(order=i, type=t, prompt=p, min_confidence=c)
        for i, (t, p, c) in enumerate(specs, start=1)
    )


T = ThoughtType

BUILTIN_TEMPLATES: tuple[ReasoningTemplate, ...] = (
    ReasoningTemplate(
        id="problem-solving",
        name="Problem Solving",
        description="Systematic approach to breaking down and solving complex problems",
        category="general",
        steps=_steps(
            (T.OBSERVATION, "What is the core problem? Break it down into its fundamental components.", 70),
            (T.ANALYSIS, "What are the constraints, requirements, and boundaries of this problem?", 65),
            (T.HYPOTHESIS, "What are possible solution approaches? Generate at least 3 different strategies.", 60),
            (T.ANALYSIS, "Evaluate each solution approach against the constraints. What are the pros and cons?", 70),
            (T.CRITIQUE, "What are the weaknesses in each approach? What could go wrong?", 65),
            (T.CONCLUSION, "Select the best approach and explain why. What is the implementation plan?", 75),
        ),
    ),
    ReasoningTemplate(
        id="code-review",
        name="Code Review",
        description="Comprehensive code analysis for bugs, security, and performance",
        category="development",
        steps=_steps(
            (T.OBSERVATION, "Understand the code: What is its purpose? What does it do?", 80),
            (T.ANALYSIS, "Find potential bugs: Logic errors, edge cases, null checks, type safety.", 70),
            (T.ANALYSIS, "Security check: Input validation, SQL injection, XSS, authentication, authorization.", 75),
            (T.ANALYSIS, "Performance analysis: Time complexity, space complexity, bottlenecks, optimizations.", 65),
            (T.CRITIQUE, "Code quality: Readability, maintainability, best practices, design patterns.", 70),
            (T.CONCLUSION, "Prioritized list of improvements with specific code suggestions.", 75),
        ),
    ),
    ReasoningTemplate(
        id="research",
        name="Research Analysis",
        description="Structured approach to research questions and hypothesis testing",
        category="analysis",
        steps=_steps(
            (T.QUESTION, "What is the research question? What are we trying to discover?", 75),
            (T.HYPOTHESIS, "Generate hypotheses: What are the possible answers or explanations?", 65),
            (T.EVIDENCE, "Gather evidence: What data, facts, or information supports or refutes each hypothesis?", 70),
            (T.ANALYSIS, "Analyze the evidence: What patterns emerge? What contradictions exist?", 70),
            (T.CRITIQUE, "Challenge the analysis: What biases might exist? What alternative interpretations?", 65),
            (T.CONCLUSION, "Draw conclusions: What can we confidently say? What remains uncertain?", 75),
        ),
    ),
    ReasoningTemplate(
        id="creative",
        name="Creative Ideation",
        description="Divergent thinking for generating novel ideas and solutions",
        category="creative",
        steps=_steps(
            (T.OBSERVATION, "What is the creative challenge or opportunity?", 70),
            (T.HYPOTHESIS, "Brainstorm wildly: Generate as many ideas as possible without judgment.", 50),
            (T.SYNTHESIS, "Combine ideas: Can we merge concepts to create something new?", 60),
            (T.ANALYSIS, "Refine the ideas: Make them more concrete and actionable.", 65),
            (T.CRITIQUE, "Evaluate novelty: How original is each idea? Has it been done before?", 70),
            (T.CONCLUSION, "Select the most promising ideas and create an execution plan.", 75),
        ),
    ),
    ReasoningTemplate(
        id="debugging",
        name="Systematic Debugging",
        description="Methodical approach to finding and fixing bugs",
        category="development",
        steps=_steps(
            (T.OBSERVATION, "Reproduce the bug: What are the exact steps? What is the expected vs actual behavior?", 80),
            (T.ANALYSIS, "Isolate the problem: What component or function is responsible?", 70),
            (T.HYPOTHESIS, "Hypothesize the root cause: What could be causing this behavior?", 65),
            (T.EVIDENCE, "Test the hypothesis: Add logging, breakpoints, or tests to verify.", 75),
            (T.CONCLUSION, "Implement the fix: Write the corrected code.", 80),
            (T.CRITIQUE, "Verify the fix: Test thoroughly. Could this fix cause other issues?", 85),
        ),
    ),
    ReasoningTemplate(
        id="decision-making",
        name="Decision Analysis",
        description="Structured framework for making complex decisions",
        category="analysis",
        steps=_steps(
            (T.OBSERVATION, "Define the decision: What needs to be decided? What are the stakes?", 75),
            (T.ANALYSIS, "Define criteria: What factors matter most? How should we weight them?", 70),
            (T.HYPOTHESIS, "List all options: What are the possible choices?", 65),
            (T.ANALYSIS, "Score each option against the criteria. Create a decision matrix.", 70),
            (T.CRITIQUE, "Sensitivity analysis: How would the decision change if our assumptions change?", 65),
            (T.CONCLUSION, "Make the decision and explain the reasoning behind it.", 75),
        ),
    ),
)


class TemplateCatalog:
    """Read-only lookup over a fixed set of templates."""

    def __init__(self, templates: Iterable[ReasoningTemplate] = BUILTIN_TEMPLATES) -> None:
        self._templates = {template.id: template for template in templates}

    def get_template(self, name: str) -> ReasoningTemplate | None:
        """Look up a template by id."""
        return self._templates.get(name)

    def list_templates(self) -> list[ReasoningTemplate]:
        """All templates in catalog order."""
        return list(self._templates.values())

    def __contains__(self, name: object) -> bool:
        return name in self._templates
