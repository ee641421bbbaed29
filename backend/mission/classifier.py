"""Turn classification: did the agent deliver, or is it waiting on a human?

The classifier is an ordered chain of (name, predicate, outcome) rules.
The first matching rule decides. Keep the chain free of I/O so it can be
tested in isolation.
"""

from collections.abc import Callable
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)

SHORT_REPLY_THRESHOLD = 60

COMPLETION_MARKERS: tuple[str, ...] = (
    "[TASK_COMPLETE]",
    "TASK_COMPLETE",
    "[DONE]",
    "[MISSION_COMPLETE]",
    "[COMPLETE]",
)

WAITING_MARKERS: tuple[str, ...] = (
    "[WAITING_FOR_INPUT]",
    "[NEEDS_INPUT]",
    "[NEEDS_APPROVAL]",
    "[APPROVAL_REQUIRED]",
    "[QUESTION]",
    "APPROVAL REQUIRED",
)


class TurnOutcome(StrEnum):
    COMPLETED = "completed"
    WAITING_FOR_INPUT = "waiting_for_input"


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    upper = text.upper()
    return any(marker.upper() in upper for marker in markers)


def _last_non_blank_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""


Rule = tuple[str, Callable[[str], bool], TurnOutcome]

RULES: list[Rule] = [
    ("empty", lambda text: not text.strip(), TurnOutcome.COMPLETED),
    (
        "completion_marker",
        lambda text: _contains_any(text, COMPLETION_MARKERS),
        TurnOutcome.COMPLETED,
    ),
    (
        "waiting_marker",
        lambda text: _contains_any(text, WAITING_MARKERS),
        TurnOutcome.WAITING_FOR_INPUT,
    ),
    (
        "trailing_question",
        lambda text: _last_non_blank_line(text).endswith("?"),
        TurnOutcome.WAITING_FOR_INPUT,
    ),
    (
        "short_reply",
        lambda text: len(text.strip()) < SHORT_REPLY_THRESHOLD,
        TurnOutcome.WAITING_FOR_INPUT,
    ),
]


def classify_with_rule(final_text: str | None) -> tuple[TurnOutcome, str]:
    """Classify a turn and return the outcome with the name of the deciding rule."""
    text = final_text or ""
    for name, predicate, outcome in RULES:
        if predicate(text):
            return outcome, name
    return TurnOutcome.COMPLETED, "default"


def classify(final_text: str | None) -> TurnOutcome:
    """Classify an agent's final message of a turn.

    Args:
        final_text: The agent's last message, or None if none was seen.

    Returns:
        TurnOutcome.COMPLETED or TurnOutcome.WAITING_FOR_INPUT.
    """
    outcome, rule = classify_with_rule(final_text)
    logger.debug("turn_classified", outcome=outcome.value, rule=rule)
    return outcome
