"""Pydantic schemas for mission records and API request/response models.

This module defines the data models shared by the orchestration engine,
the persistence layer, and the HTTP API and WebSocket handlers.
All models use Pydantic v2 with strict type validation.
"""

import time
import uuid
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProcessType(StrEnum):
    """Dispatch topology for a mission."""

    SEQUENTIAL = "sequential"
    HIERARCHICAL = "hierarchical"
    PARALLEL = "parallel"


class TaskStatus(StrEnum):
    """Task lifecycle status.

    Transitions only move forward (inbox -> assigned -> in_progress ->
    done/blocked), except for an explicit re-dispatch back to assigned.
    """

    INBOX = "inbox"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class TaskPriority(StrEnum):
    """Task priority."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class AgentState(StrEnum):
    """Derived liveness status of one agent."""

    ACTIVE = "active"
    IDLE = "idle"
    WAITING_FOR_INPUT = "waiting_for_input"
    ERROR = "error"
    STOPPED = "stopped"
    SPAWNING = "spawning"
    PAUSED = "paused"
    NONE = "none"


class SpawnState(StrEnum):
    """Per-agent session provisioning state."""

    PENDING = "pending"
    SPAWNING = "spawning"
    READY = "ready"
    ERROR = "error"


class CheckpointStatus(StrEnum):
    """Status of the live mission checkpoint."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ArtifactType(StrEnum):
    """Kind of content an artifact carries."""

    HTML = "html"
    MARKDOWN = "markdown"
    CODE = "code"
    TEXT = "text"


class ApprovalStatus(StrEnum):
    """Approval request resolution state."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ApprovalSource(StrEnum):
    """Where an approval request originated."""

    AGENT = "agent"
    GATEWAY = "gateway"


class MissionOutcome(StrEnum):
    """Outcome classification written into the mission report."""

    ABORTED = "aborted"
    NO_OUTPUT = "no-output"
    PARTIAL = "partial"
    COMPLETE = "complete"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Mission records
# ---------------------------------------------------------------------------


class TeamMember(BaseModel):
    """A configured agent on the mission team.

    Identity is stable across missions. The engine references team members
    but never owns or mutates them.
    """

    id: str = Field(
        description="Stable team member identifier",
        examples=["agent-researcher"],
    )
    name: str = Field(
        min_length=1,
        description="Display name, also used to derive the session label",
        examples=["Researcher"],
    )
    model_id: str | None = Field(
        default=None,
        description="Model id or preset alias resolved at spawn time",
        examples=["openai/gpt-4.1", "coder"],
    )
    role_description: str = Field(default="", description="What this agent is responsible for")
    goal: str = Field(default="", description="The agent's standing goal")
    backstory: str = Field(default="", description="Persona context for the agent")
    status: str = Field(default="available", description="Roster-level availability")


class Task(BaseModel):
    """One unit of work derived from the mission goal."""

    id: str = Field(default_factory=lambda: _new_id("task"))
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.INBOX
    agent_id: str | None = None
    mission_id: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class AgentSession(BaseModel):
    """The remote session bound to one agent for the current mission."""

    agent_id: str
    session_key: str
    model_used: str | None = None


class AgentStatusRecord(BaseModel):
    """Authoritative derived status for one agent.

    Attributes:
        agent_id: The team member this status describes.
        status: Current derived state.
        last_seen: Unix timestamp of the last liveness signal.
        last_message: Tail of the most recent message, if any.
        completed_at: When the push stream last reported an explicit
            completion for this agent. Used to keep a stale poll from
            flipping the agent back to active.
        missing_since: When the agent's session first went missing from
            a poll, for the grace window.
    """

    agent_id: str
    status: AgentState = AgentState.NONE
    last_seen: float = 0.0
    last_message: str | None = None
    completed_at: float | None = None
    missing_since: float | None = None


class Artifact(BaseModel):
    """A deliverable extracted from agent output."""

    id: str = Field(default_factory=lambda: _new_id("art"))
    agent_id: str
    agent_name: str
    type: ArtifactType
    title: str
    content: str
    timestamp: float = Field(default_factory=time.time)


class ApprovalRequest(BaseModel):
    """A human-in-the-loop approval request."""

    id: str = Field(default_factory=lambda: _new_id("apr"))
    agent_id: str | None = None
    agent_name: str | None = None
    action: str
    context: str = ""
    requested_at: float = Field(default_factory=time.time)
    status: ApprovalStatus = ApprovalStatus.PENDING
    source: ApprovalSource = ApprovalSource.AGENT
    gateway_id: str | None = Field(
        default=None,
        description="Approval id on the gateway, for gateway-sourced requests",
    )
    resolved_at: float | None = None


class MissionCheckpoint(BaseModel):
    """Serializable snapshot of a mission, enough to survive a restart."""

    id: str
    label: str
    goal: str = ""
    process_type: ProcessType = ProcessType.PARALLEL
    team: list[TeamMember] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    agent_sessions: dict[str, AgentSession] = Field(default_factory=dict)
    status: CheckpointStatus = CheckpointStatus.RUNNING
    started_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    completed_at: float | None = None


class TaskStats(BaseModel):
    """Task counts by status."""

    total: int = 0
    done: int = 0
    in_progress: int = 0
    blocked: int = 0
    pending: int = 0


class MissionReport(BaseModel):
    """Immutable report generated once per mission."""

    model_config = ConfigDict(frozen=True)

    mission_id: str
    label: str = ""
    goal: str = ""
    outcome: MissionOutcome
    task_stats: TaskStats
    duration_seconds: float = 0.0
    token_count: int = 0
    cost_estimate: float = 0.0
    artifacts: list[Artifact] = Field(default_factory=list)
    report_text: str
    completed_at: float = Field(default_factory=time.time)


class TeamConfig(BaseModel):
    """A saved, named team configuration."""

    name: str = Field(min_length=1, max_length=200)
    team: list[TeamMember]
    process_type: ProcessType = ProcessType.PARALLEL
    saved_at: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# API request/response models
# ---------------------------------------------------------------------------


class CreateMissionRequest(BaseModel):
    """Request body for launching a new mission."""

    goal: str = Field(
        min_length=1,
        max_length=10000,
        description="Natural-language mission goal",
        examples=[
            "Research the top three vector databases. Then write a comparison table"
            " and draft a recommendation memo."
        ],
    )
    team: list[TeamMember] | None = Field(
        default=None,
        description="Team for this mission; defaults to the saved roster",
    )
    process_type: ProcessType = Field(
        default=ProcessType.PARALLEL,
        description="Dispatch topology",
    )
    label: str | None = Field(
        default=None,
        max_length=200,
        description="Optional display label; derived from the goal if omitted",
    )


class MissionResponse(BaseModel):
    """Response for mission creation."""

    mission_id: str = Field(
        description="Unique mission identifier",
        examples=["mission_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/missions/mission_abc123def456"],
    )
    status: CheckpointStatus
    tasks: list[Task] = Field(default_factory=list)


class MissionDetailResponse(BaseModel):
    """Snapshot of the current mission."""

    mission_id: str
    label: str
    goal: str
    process_type: ProcessType
    status: CheckpointStatus
    team: list[TeamMember]
    tasks: list[Task]
    statuses: dict[str, AgentStatusRecord]
    sessions: dict[str, AgentSession]
    spawn_states: dict[str, SpawnState]
    artifacts: list[Artifact]
    token_count: int = 0
    started_at: float
    completed_at: float | None = None


class SteerRequest(BaseModel):
    """Request body for steering an agent."""

    message: str = Field(min_length=1, max_length=10000)


class PauseRequest(BaseModel):
    """Request body for pausing or resuming an agent."""

    paused: bool = True


class AgentOutputResponse(BaseModel):
    """Rolling output buffer for one agent."""

    agent_id: str
    lines: list[str]
    token_estimate: int = 0


class SaveTeamConfigRequest(BaseModel):
    """Request body for saving a named team configuration."""

    name: str = Field(min_length=1, max_length=200)
    team: list[TeamMember]
    process_type: ProcessType = ProcessType.PARALLEL


class HealthResponse(BaseModel):
    """Health check response with gateway status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    gateway_reachable: bool = Field(
        default=False,
        description="Whether the agent gateway answered a session listing",
    )
    mission_running: bool = Field(
        default=False,
        description="Whether a mission is currently running",
    )
