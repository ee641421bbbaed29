"""Tests for mission/report.py -- outcome classification and report text."""

from mission.report import (
    ReportGenerator,
    classify_outcome,
    estimate_cost,
    extract_executive_summary,
    extract_key_findings,
    task_stats,
    truncate_at_sentence,
    truncate_output,
)
from models.database import StateStore
from models.schemas import (
    Artifact,
    ArtifactType,
    MissionOutcome,
    Task,
    TaskStats,
    TaskStatus,
)
from tests.conftest import make_team

# =========================================================================
# Text helpers
# =========================================================================


class TestTextHelpers:
    """Summary, findings and truncation."""

    def test_truncate_at_sentence_prefers_boundary(self) -> None:
        assert truncate_at_sentence("One. Two three four.", limit=10) == "One."

    def test_truncate_at_sentence_without_boundary(self) -> None:
        assert truncate_at_sentence("abcdefghijklmnop", limit=10) == "abcdefg..."

    def test_truncate_at_sentence_short_text(self) -> None:
        assert truncate_at_sentence("  Short   text. ") == "Short text."

    def test_executive_summary_from_summary_section(self) -> None:
        output = "# Notes\nSome preamble.\n## Summary\nThe market is growing.\nPrices fell.\n## Details\nMore."
        assert extract_executive_summary([output]) == "The market is growing. Prices fell."

    def test_executive_summary_falls_back_to_prose(self) -> None:
        output = "# Title\nIntro line one.\n- a list item\nSecond prose line."
        assert extract_executive_summary(["", output]) == "Intro line one. Second prose line."

    def test_key_findings_section(self) -> None:
        output = "## Key Findings\n- Alpha result\n- Beta result\n## Next\n- Not a finding"
        assert extract_key_findings([output]) == ["Alpha result", "Beta result"]

    def test_key_findings_fall_back_to_longest_items(self) -> None:
        output = "- short\n- a much longer list item\n1. medium item"
        assert extract_key_findings([output]) == [
            "a much longer list item",
            "medium item",
            "short",
        ]

    def test_short_output_is_not_truncated(self) -> None:
        text = "\n".join(f"line {i}" for i in range(40))
        assert truncate_output(text) == text

    def test_long_output_keeps_head_and_tail(self) -> None:
        lines = [f"line {i}" for i in range(50)]
        truncated = truncate_output("\n".join(lines)).splitlines()
        assert truncated[:15] == lines[:15]
        assert truncated[15] == "... (30 lines omitted) ..."
        assert truncated[16:] == lines[-5:]

    def test_long_output_keeps_summary_section(self) -> None:
        lines = [f"line {i}" for i in range(50)]
        lines[20] = "## Summary"
        truncated = truncate_output("\n".join(lines)).splitlines()
        assert truncated[15] == "... (5 lines omitted) ..."
        assert truncated[16] == "## Summary"
        assert truncated[17:27] == lines[21:31]
        assert truncated[27] == "... (14 lines omitted) ..."
        assert truncated[28:] == lines[-5:]


# =========================================================================
# Outcome
# =========================================================================


class TestClassifyOutcome:
    """Outcome precedence."""

    def test_aborted_flag(self) -> None:
        stats = TaskStats(total=1, done=1)
        assert classify_outcome(True, ["done"], stats) == MissionOutcome.ABORTED

    def test_abort_marker_in_output(self) -> None:
        stats = TaskStats(total=1, done=1)
        assert classify_outcome(False, ["work [aborted]"], stats) == MissionOutcome.ABORTED

    def test_no_output(self) -> None:
        assert classify_outcome(False, ["", "  "], TaskStats(total=1, done=1)) == MissionOutcome.NO_OUTPUT

    def test_complete_and_partial(self) -> None:
        assert classify_outcome(False, ["x"], TaskStats(total=2, done=2)) == MissionOutcome.COMPLETE
        assert classify_outcome(False, ["x"], TaskStats(total=2, done=1)) == MissionOutcome.PARTIAL
        assert classify_outcome(False, ["x"], TaskStats()) == MissionOutcome.PARTIAL

    def test_estimate_cost(self) -> None:
        assert estimate_cost(1500, 0.02) == 0.03
        assert estimate_cost(0) == 0.0

    def test_task_stats_buckets(self) -> None:
        tasks = [
            Task(title="a", agent_id="agent-1", status=TaskStatus.INBOX),
            Task(title="b", agent_id="agent-1", status=TaskStatus.ASSIGNED),
            Task(title="c", agent_id="agent-2", status=TaskStatus.DONE),
            Task(title="d", agent_id="agent-2", status=TaskStatus.BLOCKED),
        ]
        stats = task_stats(tasks)
        assert (stats.total, stats.done, stats.in_progress, stats.blocked, stats.pending) == (
            4,
            1,
            0,
            1,
            2,
        )


# =========================================================================
# ReportGenerator
# =========================================================================


class TestReportGenerator:
    """Report composition and history."""

    def _build(self, generator: ReportGenerator, **overrides: object):
        team = make_team(2)
        params = {
            "mission_id": "mission_abc",
            "label": "Market research",
            "goal": "Research the e-bike market",
            "team": team,
            "tasks": [
                Task(title="Research pricing", agent_id="agent-1", status=TaskStatus.DONE),
                Task(title="Write summary", agent_id="agent-2", status=TaskStatus.DONE),
            ],
            "outputs": {
                "agent-1": "web_search()\n## Summary\nPrices are falling fast.\n[TASK_COMPLETE]",
            },
            "artifacts": [
                Artifact(
                    agent_id="agent-1",
                    agent_name="Researcher",
                    type=ArtifactType.MARKDOWN,
                    title="prices.md",
                    content="| a |",
                )
            ],
            "token_count": 2000,
            "started_at": 100.0,
            "completed_at": 165.0,
        }
        params.update(overrides)
        return generator.build(**params)

    async def test_build_report(self, state_store: StateStore) -> None:
        report = self._build(ReportGenerator(state_store, cost_per_1k_tokens=0.01))

        assert report.outcome == MissionOutcome.COMPLETE
        assert report.duration_seconds == 65.0
        assert report.cost_estimate == 0.02
        assert report.task_stats.done == 2
        text = report.report_text
        assert text.startswith("# Mission Report: Market research")
        for heading in (
            "## Goal",
            "## Outcome",
            "## Team",
            "## Executive Summary",
            "## Key Findings",
            "## Task Breakdown",
            "## Agent Outputs",
            "## Artifacts",
            "## Usage",
        ):
            assert heading in text
        assert "Prices are falling fast." in text
        assert "duration 1m 5s" in text
        assert "web_search()" not in text
        assert "### Writer\n_No output._" in text
        assert "- [done] Research pricing (Researcher)" in text
        assert "**prices.md** (markdown) by Researcher" in text

    async def test_aborted_report(self, state_store: StateStore) -> None:
        report = self._build(ReportGenerator(state_store), aborted=True)
        assert report.outcome == MissionOutcome.ABORTED

    async def test_history_is_bounded(self, state_store: StateStore) -> None:
        generator = ReportGenerator(state_store, history_limit=2)
        for mission_id in ("m1", "m2", "m3"):
            await generator.save(self._build(generator, mission_id=mission_id))

        history = await generator.history()

        assert [r.mission_id for r in history] == ["m3", "m2"]
        assert history[0].artifacts[0].title == "prices.md"
