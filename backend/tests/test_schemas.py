"""Tests for models/schemas.py -- Pydantic records and request/response models.

Validates model construction, validation rules, enum values and
defaults.
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    AgentState,
    AgentStatusRecord,
    CreateMissionRequest,
    HealthResponse,
    MissionOutcome,
    MissionReport,
    ProcessType,
    SteerRequest,
    Task,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TeamConfig,
    TeamMember,
)

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    """Enum values used on the wire."""

    def test_process_types(self) -> None:
        assert {p.value for p in ProcessType} == {"sequential", "hierarchical", "parallel"}

    def test_task_statuses(self) -> None:
        assert {s.value for s in TaskStatus} == {
            "inbox",
            "assigned",
            "in_progress",
            "done",
            "blocked",
        }

    def test_agent_states(self) -> None:
        assert AgentState("waiting_for_input") == AgentState.WAITING_FOR_INPUT
        assert AgentState.NONE == "none"

    def test_outcomes(self) -> None:
        assert MissionOutcome.NO_OUTPUT == "no-output"


# =========================================================================
# Records
# =========================================================================


class TestTeamMember:
    """Team member validation."""

    def test_defaults(self) -> None:
        member = TeamMember(id="agent-1", name="Researcher")
        assert member.model_id is None
        assert member.role_description == ""
        assert member.status == "available"

    def test_name_required(self) -> None:
        with pytest.raises(ValidationError):
            TeamMember(id="agent-1", name="")


class TestTask:
    """Task defaults."""

    def test_defaults(self) -> None:
        task = Task(title="Research pricing")
        assert task.id.startswith("task-")
        assert task.status == TaskStatus.INBOX
        assert task.priority == TaskPriority.NORMAL
        assert task.agent_id is None

    def test_ids_are_unique(self) -> None:
        assert Task(title="a").id != Task(title="a").id


class TestAgentStatusRecord:
    """Status record defaults."""

    def test_defaults(self) -> None:
        record = AgentStatusRecord(agent_id="agent-1")
        assert record.status == AgentState.NONE
        assert record.completed_at is None
        assert record.missing_since is None


class TestMissionReport:
    """Reports are immutable."""

    def test_frozen(self) -> None:
        report = MissionReport(
            mission_id="mission_abc",
            outcome=MissionOutcome.COMPLETE,
            task_stats=TaskStats(total=1, done=1),
            report_text="# Mission Report",
        )
        with pytest.raises(ValidationError):
            report.outcome = MissionOutcome.PARTIAL  # type: ignore[misc]


class TestTeamConfig:
    """Saved team configuration."""

    def test_name_bounds(self) -> None:
        with pytest.raises(ValidationError):
            TeamConfig(name="", team=[])
        with pytest.raises(ValidationError):
            TeamConfig(name="x" * 201, team=[])


# =========================================================================
# Requests
# =========================================================================


class TestCreateMissionRequest:
    """Mission creation request validation."""

    def test_valid_request(self) -> None:
        request = CreateMissionRequest(goal="Research the market")
        assert request.team is None
        assert request.process_type == ProcessType.PARALLEL
        assert request.label is None

    def test_goal_min_length(self) -> None:
        with pytest.raises(ValidationError):
            CreateMissionRequest(goal="")

    def test_goal_max_length(self) -> None:
        with pytest.raises(ValidationError):
            CreateMissionRequest(goal="x" * 10001)

    def test_process_type_from_string(self) -> None:
        request = CreateMissionRequest.model_validate(
            {"goal": "Research", "process_type": "hierarchical"}
        )
        assert request.process_type == ProcessType.HIERARCHICAL

    def test_invalid_process_type(self) -> None:
        with pytest.raises(ValidationError):
            CreateMissionRequest.model_validate({"goal": "Research", "process_type": "mesh"})

    def test_inline_team(self) -> None:
        request = CreateMissionRequest.model_validate(
            {"goal": "Research", "team": [{"id": "agent-1", "name": "Researcher"}]}
        )
        assert request.team[0].name == "Researcher"


class TestSteerRequest:
    """Steer messages must not be empty."""

    def test_empty_message_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SteerRequest(message="")


class TestHealthResponse:
    """Health check response."""

    def test_defaults(self) -> None:
        response = HealthResponse(status="healthy", timestamp=1.0)
        assert response.gateway_reachable is False
        assert response.mission_running is False
        assert response.version == "0.1.0"

    def test_invalid_status(self) -> None:
        with pytest.raises(ValidationError):
            HealthResponse(status="degraded", timestamp=1.0)  # type: ignore[arg-type]
