"""Confidence and rationale heuristics for free-form model output.

Both functions are pure and best-effort. They never raise on odd input;
when nothing recognizable is found they fall back to documented defaults.
"""

from __future__ import annotations

import re

DEFAULT_EXPANSION_CONFIDENCE = 70
DEFAULT_CRITIQUE_CONFIDENCE = 75

HIGH_CONFIDENCE = 85
MEDIUM_CONFIDENCE = 70
LOW_CONFIDENCE = 50

MAX_RATIONALE_LENGTH = 200

_EXPLICIT_CONFIDENCE = re.compile(r"confidence[:\s]+(\d+)%?", re.IGNORECASE)
_RATIONALE_CLAUSE = re.compile(r"(?:reasoning|because|rationale)[:\s]+([^.]+\.)", re.IGNORECASE)

# Checked in order: the first lexicon with a hit wins.
_LEXICONS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (HIGH_CONFIDENCE, ("certain", "definitely", "clearly", "obviously")),
    (MEDIUM_CONFIDENCE, ("likely", "probably", "suggests", "indicates")),
    (LOW_CONFIDENCE, ("possibly", "might", "could", "maybe", "uncertain")),
)


def clamp_confidence(value: float) -> int:
    """Round and clamp a confidence value into 0-100."""
    return max(0, min(100, int(round(value))))


def extract_confidence(text: str, default: int = DEFAULT_EXPANSION_CONFIDENCE) -> int:
    """Infer a 0-100 confidence score from generated text.

    An explicit ``confidence: NN%`` marker wins. Otherwise the text is
    scanned for certainty language (high 85, medium 70, low 50). Lexicon
    matching is substring based, so "uncertain" also contains "certain"
    and scores high; the first lexicon with any hit decides.

    Args:
        text: Generated text.
        default: Score returned when no marker or certainty word is found.

    Returns:
        Confidence in the range 0-100.

    """
    match = _EXPLICIT_CONFIDENCE.search(text)
    if match:
        return clamp_confidence(int(match.group(1)))

    lowered = text.lower()
    for score, words in _LEXICONS:
        if any(word in lowered for word in words):
            return score

    return clamp_confidence(default)


def extract_rationale(text: str) -> str:
    """Pull a short rationale out of generated text.

    Prefers a leading ``reasoning:``/``because``/``rationale:`` clause up to
    the next full stop. Falls back to the first sentence, truncated.

    Args:
        text: Generated text.

    Returns:
        Rationale string, at most 200 characters for the fallback path.

    """
    match = _RATIONALE_CLAUSE.search(text)
    if match:
        return match.group(1).strip()

    first_sentence = text.split(".", 1)[0].strip()
    return first_sentence[:MAX_RATIONALE_LENGTH]
