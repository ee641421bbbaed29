"""Event type definitions for the mission event system.

This module defines all event types that flow from the orchestration engine
to its consumers (WebSocket clients, activity feeds). Every meaningful state
change in a mission produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the mission engine.

    Events are categorized by:
    - Mission lifecycle: Start, completion, abort, and stream close
    - Agent lifecycle: Spawning, status changes, output, turns
    - Tasks: Creation, dispatch, and status transitions
    - Human in the loop: Approval requests and resolutions
    - Results: Artifacts, reports, and checkpoints
    """

    # Mission lifecycle
    MISSION_STARTED = "mission_started"
    MISSION_COMPLETE = "mission_complete"
    MISSION_ABORTED = "mission_aborted"
    MISSION_CLOSED = "mission_closed"

    # Agent lifecycle
    AGENT_SPAWNED = "agent_spawned"
    AGENT_SPAWN_FAILED = "agent_spawn_failed"
    AGENT_STATUS = "agent_status"
    AGENT_OUTPUT = "agent_output"
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TURN_COMPLETE = "agent_turn_complete"
    AGENT_WAITING = "agent_waiting"

    # Tasks
    TASK_CREATED = "task_created"
    TASK_DISPATCHED = "task_dispatched"
    TASK_STATUS = "task_status"
    DISPATCH_FAILED = "dispatch_failed"

    # Human in the loop
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"

    # Results
    ARTIFACT_CREATED = "artifact_created"
    REPORT_READY = "report_ready"
    CHECKPOINT_SAVED = "checkpoint_saved"


class MissionEvent(BaseModel):
    """An event emitted during a mission.

    This is the primary data structure that flows from the engine to
    consumers. Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - mission_id: Which mission this event belongs to
    - agent_id: Which team member produced this event (if applicable)
    - agent_name: Human-readable team member name
    - data: Event-specific payload

    Payload schemas by event type:

    AGENT_SPAWNED:
        - session_key: str - Gateway session key
        - model: str | None - Model applied to the session
        - reused: bool - Whether an existing labelled session was reused

    AGENT_STATUS:
        - status: str - New derived status
        - previous: str - Previous derived status
        - source: str - "push", "poll", "dispatch", "turn" or "human"

    AGENT_OUTPUT:
        - lines: list[str] - Lines appended to the rolling buffer
        - tokens: int - Token estimate added by this content

    AGENT_TOOL_CALL:
        - tool: str - Tool name

    AGENT_TURN_COMPLETE / AGENT_WAITING:
        - preview: str - Tail of the agent's final message

    TASK_DISPATCHED / TASK_STATUS:
        - task_id: str
        - title: str
        - status: str

    DISPATCH_FAILED:
        - error: str
        - task_ids: list[str]

    ARTIFACT_CREATED:
        - artifact: dict - Serialized Artifact

    APPROVAL_REQUESTED / APPROVAL_RESOLVED:
        - approval: dict - Serialized ApprovalRequest

    REPORT_READY:
        - outcome: str
        - cost_estimate: float
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    mission_id: str
    agent_id: str | None = None
    agent_name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "agent_spawned",
                    "timestamp": 1699876543.123,
                    "mission_id": "mission_abc123def456",
                    "agent_id": "agent-researcher",
                    "agent_name": "Researcher",
                    "data": {
                        "session_key": "agent:main:mission-researcher",
                        "model": "openai/gpt-4.1",
                        "reused": False,
                    },
                }
            ]
        }
    }
