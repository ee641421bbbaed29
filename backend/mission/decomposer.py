"""Goal decomposition: free-text mission goal -> ordered task list.

The decomposer is deterministic and does not call a model. It splits the
goal on sentence, bullet and numbered-item boundaries and on a small set
of sequencing conjunctions, cleans each fragment, and assigns the
resulting tasks round-robin across the team.
"""

import re
import uuid

import structlog

from models.schemas import Task, TaskPriority, TaskStatus, TeamMember

logger = structlog.get_logger(__name__)

MIN_FRAGMENT_WORDS = 3
MAX_TITLE_LENGTH = 80

# Line starts that introduce a list item.
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

# Sentence terminators followed by whitespace.
_SENTENCE_RE = re.compile(r"(?<=[.!?;])\s+")

# Conjunctions that introduce a new sub-intent. Longer phrases first so
# "and then" wins over "then".
_CONJUNCTION_RE = re.compile(
    r",\s+and\s+"
    r"|\s+(?:and\s+then|and\s+also|after\s+that|additionally|finally|then|also)\s+",
    re.IGNORECASE,
)

_LEADING_NUMERAL_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")
_TRAILING_PUNCT_RE = re.compile(r"[\s.,;:!?]+$")
_LEADING_CONNECTOR_RE = re.compile(r"^(?:and|then|also|finally|additionally)\b[\s,]*", re.IGNORECASE)


def _split_lines(goal: str) -> list[str]:
    """Split on newlines and inline bullet/numbered items."""
    pieces: list[str] = []
    for line in goal.splitlines():
        line = line.strip()
        if not line:
            continue
        # Inline numbered items: "1) do x 2) do y"
        parts = re.split(r"\s+(?=\d+[.)]\s)", line)
        pieces.extend(part for part in parts if part.strip())
    return pieces


def _split_fragments(goal: str) -> list[str]:
    fragments: list[str] = []
    for line in _split_lines(goal):
        line = _BULLET_RE.sub("", line)
        for sentence in _SENTENCE_RE.split(line):
            fragments.extend(_CONJUNCTION_RE.split(sentence))
    return fragments


def clean_fragment(fragment: str) -> str:
    """Strip bullets, leading numerals, connectors and trailing punctuation; capitalize."""
    text = _LEADING_NUMERAL_RE.sub("", fragment.strip())
    text = _LEADING_CONNECTOR_RE.sub("", text)
    text = _TRAILING_PUNCT_RE.sub("", text).strip()
    text = re.sub(r"\s+", " ", text)
    if not text:
        return ""
    return text[0].upper() + text[1:]


def extract_fragments(goal: str) -> list[str]:
    """Return the distinct, cleaned sub-intents of a goal in order.

    Fragments under three words are dropped and duplicates are removed
    case-insensitively (first occurrence wins).
    """
    seen: set[str] = set()
    result: list[str] = []
    for raw in _split_fragments(goal):
        cleaned = clean_fragment(raw)
        if len(cleaned.split()) < MIN_FRAGMENT_WORDS:
            continue
        key = cleaned.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
    return result


def _title(text: str) -> str:
    if len(text) <= MAX_TITLE_LENGTH:
        return text
    return text[: MAX_TITLE_LENGTH - 3].rstrip() + "..."


def decompose_goal(
    goal: str,
    team: list[TeamMember],
    mission_id: str | None = None,
) -> list[Task]:
    """Turn a mission goal into an ordered list of assigned tasks.

    Args:
        goal: Free-text mission goal.
        team: Ordered team; tasks are assigned round-robin in this order.
        mission_id: Optional mission id stamped on each task.

    Returns:
        One task per distinct sub-intent when at least two are found,
        otherwise a single task for the whole goal. An empty goal yields
        an empty list, which callers must reject.
    """
    stripped = goal.strip()
    if not stripped:
        return []

    whole = clean_fragment(re.sub(r"\s+", " ", stripped))
    fragments = [f for f in extract_fragments(stripped) if f.lower() != whole.lower()]
    if len(fragments) < 2:
        fragments = [whole]

    tasks: list[Task] = []
    for index, fragment in enumerate(fragments):
        agent = team[index % len(team)] if team else None
        tasks.append(
            Task(
                id=f"task-{uuid.uuid4().hex[:12]}",
                title=_title(fragment),
                description=fragment,
                priority=TaskPriority.HIGH if index == 0 else TaskPriority.NORMAL,
                status=TaskStatus.ASSIGNED if agent else TaskStatus.INBOX,
                agent_id=agent.id if agent else None,
                mission_id=mission_id,
            )
        )

    logger.info(
        "goal_decomposed",
        mission_id=mission_id,
        task_count=len(tasks),
        team_size=len(team),
        split=len(fragments) > 1,
    )
    return tasks
