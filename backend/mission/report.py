"""Mission report generation.

ReportGenerator runs once per mission, at the transition out of running.
It builds a markdown document (goal, outcome, team, executive summary,
key findings, task breakdown, per-agent output, artifacts, usage) and
keeps a bounded history of reports in the StateStore.
"""

import re
import time

import structlog
from pydantic import ValidationError

from mission.artifacts import strip_metadata_lines
from models.database import MISSION_REPORTS_KEY, StateStore
from models.schemas import (
    Artifact,
    MissionOutcome,
    MissionReport,
    Task,
    TaskStats,
    TaskStatus,
    TeamMember,
)

logger = structlog.get_logger(__name__)

SUMMARY_MAX_CHARS = 200
MAX_KEY_FINDINGS = 5
OUTPUT_TRUNCATE_THRESHOLD = 40
OUTPUT_HEAD_LINES = 15
OUTPUT_TAIL_LINES = 5
OUTPUT_SUMMARY_LINES = 10

ABORT_MARKERS = ("[ABORTED]", "MISSION ABORTED")

_HEADING_RE = re.compile(r"^\s*(?:#{1,6}\s+(.+?)\s*#*|\*\*(.+?)\*\*:?)\s*$")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$")
_SUMMARY_HEADING_RE = re.compile(r"\b(summary|overview)\b", re.IGNORECASE)
_FINDINGS_HEADING_RE = re.compile(r"\bkey findings\b", re.IGNORECASE)


def _heading_text(line: str) -> str | None:
    match = _HEADING_RE.match(line)
    if not match:
        return None
    return (match.group(1) or match.group(2) or "").strip()


def _section(lines: list[str], heading_re: re.Pattern[str]) -> list[str] | None:
    """Lines under the first heading matching ``heading_re``, up to the next heading."""
    for index, line in enumerate(lines):
        heading = _heading_text(line)
        if heading is None or not heading_re.search(heading):
            continue
        body: list[str] = []
        for following in lines[index + 1:]:
            if _heading_text(following) is not None:
                break
            body.append(following)
        return body
    return None


def _is_prose(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not (
        stripped.startswith(("#", "|", "```", ">"))
        or _LIST_ITEM_RE.match(stripped)
        or _heading_text(stripped) is not None
    )


def truncate_at_sentence(text: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    """Cut text to ``limit`` characters, preferring a sentence boundary."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    window = text[:limit]
    boundary = max(window.rfind(". "), window.rfind("! "), window.rfind("? "))
    if window[-1] in ".!?":
        boundary = max(boundary, limit - 1)
    if boundary > 0:
        return window[: boundary + 1]
    return window[: limit - 3].rstrip() + "..."


def extract_executive_summary(outputs: list[str]) -> str:
    """First Summary/Overview section, else the first prose lines."""
    for output in outputs:
        section = _section(output.splitlines(), _SUMMARY_HEADING_RE)
        if section:
            prose = [line.strip() for line in section if line.strip()]
            if prose:
                return truncate_at_sentence(" ".join(prose))
    for output in outputs:
        prose = [line.strip() for line in output.splitlines() if _is_prose(line)]
        if prose:
            return truncate_at_sentence(" ".join(prose[:3]))
    return ""


def extract_key_findings(outputs: list[str]) -> list[str]:
    """Items under a Key Findings heading, else the longest list items."""
    for output in outputs:
        section = _section(output.splitlines(), _FINDINGS_HEADING_RE)
        if section:
            items = [m.group(1).strip() for line in section if (m := _LIST_ITEM_RE.match(line))]
            if items:
                return items[:MAX_KEY_FINDINGS]

    candidates: list[str] = []
    for output in outputs:
        for line in output.splitlines():
            match = _LIST_ITEM_RE.match(line)
            if match and match.group(1).strip() not in candidates:
                candidates.append(match.group(1).strip())
    return sorted(candidates, key=len, reverse=True)[:MAX_KEY_FINDINGS]


def truncate_output(text: str) -> str:
    """Keep head, any summary section and tail of long agent output."""
    lines = text.splitlines()
    if len(lines) <= OUTPUT_TRUNCATE_THRESHOLD:
        return text
    head = lines[:OUTPUT_HEAD_LINES]
    tail = lines[-OUTPUT_TAIL_LINES:]
    middle = lines[OUTPUT_HEAD_LINES:-OUTPUT_TAIL_LINES]
    parts = list(head)
    summary = _section(middle, _SUMMARY_HEADING_RE)
    if summary:
        start = next(
            i for i, line in enumerate(middle)
            if (h := _heading_text(line)) is not None and _SUMMARY_HEADING_RE.search(h)
        )
        kept = min(len(summary), OUTPUT_SUMMARY_LINES)
        if start > 0:
            parts.append(f"... ({start} lines omitted) ...")
        parts.extend(middle[start:start + 1 + kept])
        omitted = len(middle) - start - 1 - kept
    else:
        omitted = len(middle)
    if omitted > 0:
        parts.append(f"... ({omitted} lines omitted) ...")
    parts.extend(tail)
    return "\n".join(parts)


def classify_outcome(aborted: bool, outputs: list[str], stats: TaskStats) -> MissionOutcome:
    if aborted or any(marker in output.upper() for output in outputs for marker in ABORT_MARKERS):
        return MissionOutcome.ABORTED
    if not any(output.strip() for output in outputs):
        return MissionOutcome.NO_OUTPUT
    if stats.total and stats.done == stats.total:
        return MissionOutcome.COMPLETE
    return MissionOutcome.PARTIAL


def estimate_cost(tokens: int, cost_per_1k_tokens: float = 0.01) -> float:
    return round(tokens / 1000 * cost_per_1k_tokens, 4)


def task_stats(tasks: list[Task]) -> TaskStats:
    """Count tasks per lifecycle bucket; inbox and assigned are both pending."""
    return TaskStats(
        total=len(tasks),
        done=sum(1 for t in tasks if t.status == TaskStatus.DONE),
        in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
        blocked=sum(1 for t in tasks if t.status == TaskStatus.BLOCKED),
        pending=sum(1 for t in tasks if t.status in (TaskStatus.INBOX, TaskStatus.ASSIGNED)),
    )


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


class ReportGenerator:
    """Builds and stores mission reports.

    Attributes:
        history_limit: Reports kept in the StateStore.
        cost_per_1k_tokens: Dollar rate for the cost estimate.
    """

    def __init__(
        self,
        store: StateStore,
        history_limit: int = 20,
        cost_per_1k_tokens: float = 0.01,
    ) -> None:
        self._store = store
        self.history_limit = history_limit
        self.cost_per_1k_tokens = cost_per_1k_tokens

    def build(
        self,
        *,
        mission_id: str,
        label: str,
        goal: str,
        team: list[TeamMember],
        tasks: list[Task],
        outputs: dict[str, str],
        artifacts: list[Artifact],
        token_count: int,
        started_at: float,
        aborted: bool = False,
        completed_at: float | None = None,
    ) -> MissionReport:
        """Compose the report for a finished mission.

        Args:
            outputs: Agent id -> accumulated output text.
            aborted: True when the mission was aborted by a human.
        """
        completed_at = time.time() if completed_at is None else completed_at
        cleaned = {agent_id: strip_metadata_lines(text) for agent_id, text in outputs.items()}
        ordered = [cleaned.get(member.id, "") for member in team]
        stats = task_stats(tasks)
        outcome = classify_outcome(aborted, ordered, stats)
        duration = max(completed_at - started_at, 0.0)
        cost = estimate_cost(token_count, self.cost_per_1k_tokens)
        names = {member.id: member.name for member in team}

        sections: list[str] = [f"# Mission Report: {label or goal[:60]}"]
        sections.append(f"## Goal\n{goal}")
        sections.append(
            f"## Outcome\n**{outcome.value}** ({stats.done}/{stats.total} tasks done, "
            f"duration {_format_duration(duration)})"
        )
        sections.append(
            "## Team\n"
            + "\n".join(
                f"- **{m.name}**" + (f": {m.role_description}" if m.role_description else "")
                for m in team
            )
        )
        summary = extract_executive_summary(ordered)
        sections.append(f"## Executive Summary\n{summary or '_No summary available._'}")
        findings = extract_key_findings(ordered)
        sections.append(
            "## Key Findings\n"
            + ("\n".join(f"- {item}" for item in findings) if findings else "_No findings extracted._")
        )
        sections.append(
            "## Task Breakdown\n"
            + "\n".join(
                f"- [{t.status.value}] {t.title} ({names.get(t.agent_id or '', 'unassigned')})"
                for t in tasks
            )
        )
        agent_sections = []
        for member in team:
            text = cleaned.get(member.id, "").strip()
            body = truncate_output(text) if text else "_No output._"
            agent_sections.append(f"### {member.name}\n{body}")
        sections.append("## Agent Outputs\n" + "\n\n".join(agent_sections))
        sections.append(
            "## Artifacts\n"
            + (
                "\n".join(f"- **{a.title}** ({a.type.value}) by {a.agent_name}" for a in artifacts)
                if artifacts
                else "_No artifacts._"
            )
        )
        sections.append(
            f"## Usage\n- Tokens (estimated): {token_count}\n- Estimated cost: ${cost:.4f}"
        )

        report = MissionReport(
            mission_id=mission_id,
            label=label,
            goal=goal,
            outcome=outcome,
            task_stats=stats,
            duration_seconds=duration,
            token_count=token_count,
            cost_estimate=cost,
            artifacts=list(artifacts),
            report_text="\n\n".join(sections) + "\n",
            completed_at=completed_at,
        )
        logger.info(
            "mission_report_built",
            mission_id=mission_id,
            outcome=outcome.value,
            token_count=token_count,
            artifact_count=len(artifacts),
        )
        return report

    async def save(self, report: MissionReport) -> None:
        await self._store.prepend_bounded(
            MISSION_REPORTS_KEY,
            report.model_dump(mode="json"),
            self.history_limit,
        )

    async def history(self) -> list[MissionReport]:
        raw = await self._store.get_json(MISSION_REPORTS_KEY, default=[])
        reports: list[MissionReport] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                reports.append(MissionReport.model_validate(item))
            except ValidationError:
                logger.warning("report_entry_malformed")
        return reports
