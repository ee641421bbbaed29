"""HTTP API routes for the mission orchestration backend.

This module defines the control endpoints for missions, agents,
approvals, team configuration and health. Real-time events are handled
via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Literal

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from mission.engine import MissionError
from mission.gateway import GatewayError
from models.schemas import (
    AgentOutputResponse,
    AgentSession,
    ApprovalRequest,
    CreateMissionRequest,
    HealthResponse,
    MissionCheckpoint,
    MissionDetailResponse,
    MissionReport,
    MissionResponse,
    PauseRequest,
    SaveTeamConfigRequest,
    SteerRequest,
    TeamConfig,
    TeamMember,
)

if TYPE_CHECKING:
    from mission.engine import MissionEngine

logger = structlog.get_logger(__name__)

router = APIRouter()

API_VERSION = "0.1.0"

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _http_error(error: Exception, operation: str) -> HTTPException:
    """Map an engine or gateway failure onto an HTTPException."""
    if isinstance(error, MissionError):
        logger.warning(f"{operation}_rejected", error=str(error), status_code=error.status_code)
        return HTTPException(status_code=error.status_code, detail=str(error))
    if isinstance(error, GatewayError):
        logger.error(f"{operation}_gateway_failed", error=str(error), status_code=error.status_code)
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Gateway error: {error}",
        )
    logger.error(f"{operation}_failed", error=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {operation.replace('_', ' ')}: {error}",
    )


def _current_detail(engine: MissionEngine) -> MissionDetailResponse:
    detail = engine.detail()
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No mission")
    return detail


# Mission engine dependency (set during application startup)
_engine: MissionEngine | None = None


def set_mission_engine(engine: MissionEngine | None) -> None:
    """Set the mission engine instance for the routes.

    This should be called during application startup to inject the engine
    dependency.

    Args:
        engine: The MissionEngine instance to use for all routes.
    """
    global _engine
    _engine = engine
    logger.info("mission_engine_configured", configured=engine is not None)


def get_mission_engine() -> MissionEngine:
    """Get the mission engine instance.

    Returns:
        The configured MissionEngine instance.

    Raises:
        RuntimeError: If the engine has not been configured.
    """
    if _engine is None:
        logger.error("mission_engine_not_configured")
        raise RuntimeError("MissionEngine not configured. Call set_mission_engine() during startup.")
    return _engine


# -----------------------------------------------------------------------------
# Missions
# -----------------------------------------------------------------------------


@router.post(
    "/api/missions",
    response_model=MissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Launch a mission",
    description="Decompose a goal into tasks and dispatch them to the team.",
)
async def create_mission(request: CreateMissionRequest) -> MissionResponse:
    """Launch a new mission, superseding any running one.

    When the request carries no team, the saved roster is used.

    Args:
        request: Goal, optional team, topology and label.

    Returns:
        MissionResponse with the mission id, websocket URL and task list.

    Raises:
        HTTPException: 400 for an empty team or a goal without tasks.
    """
    engine = get_mission_engine()
    team = request.team if request.team is not None else await engine.roster.load()

    try:
        mission = await engine.launch(
            goal=request.goal,
            team=team,
            process_type=request.process_type,
            label=request.label,
        )
    except (MissionError, GatewayError) as e:
        raise _http_error(e, "create_mission") from e

    logger.info(
        "mission_created",
        mission_id=mission.mission_id,
        process_type=request.process_type.value,
        team_size=len(team),
    )
    return MissionResponse(
        mission_id=mission.mission_id,
        websocket_url=f"/ws/missions/{mission.mission_id}",
        status=mission.status,
        tasks=engine.board.snapshot(),
    )


@router.get(
    "/api/missions/current",
    response_model=MissionDetailResponse,
    summary="Get the current mission",
)
async def get_current_mission() -> MissionDetailResponse:
    """Get the current (or most recently finished) mission.

    Raises:
        HTTPException: 404 if no mission has been launched.
    """
    return _current_detail(get_mission_engine())


@router.post(
    "/api/missions/current/stop",
    response_model=MissionDetailResponse,
    summary="Stop the current mission",
)
async def stop_mission() -> MissionDetailResponse:
    """End the running mission; the outcome follows the task stats."""
    engine = get_mission_engine()
    try:
        await engine.stop()
    except MissionError as e:
        raise _http_error(e, "stop_mission") from e
    return _current_detail(engine)


@router.post(
    "/api/missions/current/abort",
    response_model=MissionDetailResponse,
    summary="Abort the current mission",
)
async def abort_mission() -> MissionDetailResponse:
    """Abort the running mission and kill every agent session."""
    engine = get_mission_engine()
    try:
        await engine.abort()
    except MissionError as e:
        raise _http_error(e, "abort_mission") from e
    return _current_detail(engine)


@router.get(
    "/api/missions/checkpoint",
    response_model=MissionCheckpoint | None,
    summary="Get the stale checkpoint",
    description="A checkpoint left running by an unclean exit, if any.",
)
async def get_stale_checkpoint() -> MissionCheckpoint | None:
    return get_mission_engine().stale_checkpoint


@router.post(
    "/api/missions/checkpoint/{action}",
    response_model=MissionCheckpoint,
    summary="Resolve the stale checkpoint",
)
async def resolve_stale_checkpoint(
    action: Annotated[Literal["abort", "dismiss"], Path(description="abort or dismiss")],
) -> MissionCheckpoint:
    """Archive ("abort") or drop ("dismiss") the stale checkpoint."""
    try:
        return await get_mission_engine().resolve_stale_checkpoint(action)
    except MissionError as e:
        raise _http_error(e, "resolve_checkpoint") from e


@router.get(
    "/api/missions/history",
    response_model=list[MissionCheckpoint],
    summary="List archived missions",
)
async def list_mission_history(
    limit: Annotated[int, Query(description="Maximum missions to return", ge=1, le=200)] = 20,
) -> list[MissionCheckpoint]:
    history = await get_mission_engine().checkpoints.history()
    return history[:limit]


@router.get(
    "/api/reports",
    response_model=list[MissionReport],
    summary="List mission reports",
)
async def list_reports(
    limit: Annotated[int, Query(description="Maximum reports to return", ge=1, le=200)] = 20,
) -> list[MissionReport]:
    reports = await get_mission_engine().reports.history()
    return reports[:limit]


# -----------------------------------------------------------------------------
# Agents
# -----------------------------------------------------------------------------


@router.post(
    "/api/agents/{agent_id}/steer",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Steer an agent",
)
async def steer_agent(
    agent_id: Annotated[str, Path(description="The agent ID")],
    request: SteerRequest,
) -> dict[str, str]:
    """Send an agent a system directive."""
    try:
        await get_mission_engine().steer(agent_id, request.message)
    except (MissionError, GatewayError) as e:
        raise _http_error(e, "steer_agent") from e
    return {"status": "sent", "agent_id": agent_id}


@router.post(
    "/api/agents/{agent_id}/pause",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Pause or resume an agent",
)
async def pause_agent(
    agent_id: Annotated[str, Path(description="The agent ID")],
    request: PauseRequest,
) -> dict[str, object]:
    try:
        await get_mission_engine().pause(agent_id, request.paused)
    except (MissionError, GatewayError) as e:
        raise _http_error(e, "pause_agent") from e
    return {"status": "paused" if request.paused else "resumed", "agent_id": agent_id}


@router.post(
    "/api/agents/{agent_id}/kill",
    summary="Kill an agent's session",
)
async def kill_agent(
    agent_id: Annotated[str, Path(description="The agent ID")],
) -> dict[str, str]:
    try:
        await get_mission_engine().kill(agent_id)
    except MissionError as e:
        raise _http_error(e, "kill_agent") from e
    return {"status": "killed", "agent_id": agent_id}


@router.post(
    "/api/agents/{agent_id}/respawn",
    response_model=AgentSession,
    summary="Respawn an agent's session",
)
async def respawn_agent(
    agent_id: Annotated[str, Path(description="The agent ID")],
) -> AgentSession:
    try:
        return await get_mission_engine().respawn(agent_id)
    except MissionError as e:
        raise _http_error(e, "respawn_agent") from e


@router.post(
    "/api/agents/{agent_id}/redispatch",
    summary="Re-dispatch an agent's tasks",
)
async def redispatch_agent(
    agent_id: Annotated[str, Path(description="The agent ID")],
) -> dict[str, object]:
    try:
        accepted = await get_mission_engine().redispatch(agent_id)
    except MissionError as e:
        raise _http_error(e, "redispatch_agent") from e
    return {"status": "dispatched" if accepted else "failed", "agent_id": agent_id}


@router.get(
    "/api/agents/{agent_id}/output",
    response_model=AgentOutputResponse,
    summary="Get an agent's buffered output",
)
async def get_agent_output(
    agent_id: Annotated[str, Path(description="The agent ID")],
) -> AgentOutputResponse:
    try:
        lines, tokens = get_mission_engine().agent_output(agent_id)
    except MissionError as e:
        raise _http_error(e, "get_agent_output") from e
    return AgentOutputResponse(agent_id=agent_id, lines=lines, token_estimate=tokens)


# -----------------------------------------------------------------------------
# Approvals
# -----------------------------------------------------------------------------


@router.get(
    "/api/approvals",
    response_model=list[ApprovalRequest],
    summary="List approval requests",
)
async def list_approvals(
    pending_only: Annotated[bool, Query(description="Only pending requests")] = False,
) -> list[ApprovalRequest]:
    approvals = get_mission_engine().approvals
    return approvals.pending() if pending_only else approvals.all()


@router.post(
    "/api/approvals/{approval_id}/{decision}",
    response_model=ApprovalRequest,
    summary="Approve or deny a request",
)
async def resolve_approval(
    approval_id: Annotated[str, Path(description="The approval ID")],
    decision: Annotated[Literal["approve", "deny"], Path(description="approve or deny")],
) -> ApprovalRequest:
    try:
        return await get_mission_engine().resolve_approval(approval_id, decision == "approve")
    except (MissionError, GatewayError) as e:
        raise _http_error(e, "resolve_approval") from e


# -----------------------------------------------------------------------------
# Team
# -----------------------------------------------------------------------------


@router.get("/api/team", response_model=list[TeamMember], summary="Get the team roster")
async def get_team() -> list[TeamMember]:
    return await get_mission_engine().roster.load()


@router.put("/api/team", response_model=list[TeamMember], summary="Replace the team roster")
async def put_team(team: list[TeamMember]) -> list[TeamMember]:
    ids = [member.id for member in team]
    if len(set(ids)) != len(ids):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Duplicate agent ids")
    await get_mission_engine().roster.save(team)
    return team


@router.get(
    "/api/team/configs",
    response_model=list[TeamConfig],
    summary="List saved team configurations",
)
async def list_team_configs() -> list[TeamConfig]:
    return await get_mission_engine().roster.list_configs()


@router.post(
    "/api/team/configs",
    response_model=TeamConfig,
    status_code=status.HTTP_201_CREATED,
    summary="Save a team configuration",
)
async def save_team_config(request: SaveTeamConfigRequest) -> TeamConfig:
    return await get_mission_engine().roster.save_config(
        request.name,
        request.team,
        request.process_type,
    )


@router.delete(
    "/api/team/configs/{name}",
    summary="Delete a saved team configuration",
)
async def delete_team_config(
    name: Annotated[str, Path(description="Configuration name")],
) -> dict[str, str]:
    if not await get_mission_engine().roster.delete_config(name):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Team configuration {name} not found",
        )
    return {"status": "deleted", "name": name}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with gateway reachability.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with gateway status.

    Returns:
        HealthResponse with status, gateway reachability and whether a
        mission is running.
    """
    gateway_reachable = False
    mission_running = False

    try:
        engine = get_mission_engine()
        mission_running = engine.is_running
        await engine.gateway.list_sessions()
        gateway_reachable = True
    except RuntimeError:
        # Engine not configured yet (e.g., during startup)
        pass
    except GatewayError as e:
        logger.warning("health_check_gateway_unreachable", error=str(e))

    return HealthResponse(
        status="healthy" if gateway_reachable else "unhealthy",
        timestamp=time.time(),
        version=API_VERSION,
        gateway_reachable=gateway_reachable,
        mission_running=mission_running,
    )
