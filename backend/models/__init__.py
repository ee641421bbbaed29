"""Models module for mission records and API schemas.

This module exposes the Pydantic models shared by the engine, the
persistence layer and the API.
"""

from models.schemas import (
    AgentOutputResponse,
    AgentSession,
    AgentState,
    AgentStatusRecord,
    ApprovalRequest,
    ApprovalSource,
    ApprovalStatus,
    Artifact,
    ArtifactType,
    CheckpointStatus,
    CreateMissionRequest,
    HealthResponse,
    MissionCheckpoint,
    MissionDetailResponse,
    MissionOutcome,
    MissionReport,
    MissionResponse,
    PauseRequest,
    ProcessType,
    SaveTeamConfigRequest,
    SpawnState,
    SteerRequest,
    Task,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TeamConfig,
    TeamMember,
)

__all__ = [
    "AgentOutputResponse",
    "AgentSession",
    "AgentState",
    "AgentStatusRecord",
    "ApprovalRequest",
    "ApprovalSource",
    "ApprovalStatus",
    "Artifact",
    "ArtifactType",
    "CheckpointStatus",
    "CreateMissionRequest",
    "HealthResponse",
    "MissionCheckpoint",
    "MissionDetailResponse",
    "MissionOutcome",
    "MissionReport",
    "MissionResponse",
    "PauseRequest",
    "ProcessType",
    "SaveTeamConfigRequest",
    "SpawnState",
    "SteerRequest",
    "Task",
    "TaskPriority",
    "TaskStats",
    "TaskStatus",
    "TeamConfig",
    "TeamMember",
]
