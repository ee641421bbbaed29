"""WebSocket handler for real-time mission event streaming.

This module handles WebSocket connections that stream mission events to
the dashboard and receive commands (stop, ping) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, get_event_bus
from mission.engine import MissionError

if TYPE_CHECKING:
    from mission.engine import MissionEngine

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_engine: "MissionEngine | None" = None


def set_mission_engine(engine: "MissionEngine | None") -> None:
    """Set the mission engine used by WebSocket command handlers."""
    global _engine
    _engine = engine
    logger.info("websocket_mission_engine_configured", configured=engine is not None)


def get_mission_engine() -> "MissionEngine":
    """Return the configured mission engine for WebSocket command handlers."""
    if _engine is None:
        raise RuntimeError(
            "MissionEngine not configured for WebSocket handlers. "
            "Call set_mission_engine() during startup."
        )
    return _engine


@websocket_router.websocket("/ws/missions/{mission_id}")
async def websocket_endpoint(websocket: WebSocket, mission_id: str) -> None:
    """WebSocket endpoint for real-time mission events.

    This endpoint handles bidirectional communication:
    - Server -> Client: Mission events (status, output, tasks, artifacts, ...)
    - Client -> Server: Commands (stop, ping)

    Args:
        websocket: The WebSocket connection.
        mission_id: The mission to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", mission_id=mission_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so no event falls between the two.
    queue = event_bus.subscribe(mission_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(mission_id)
        if history:
            logger.info(
                "replaying_event_history",
                mission_id=mission_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", mission_id=mission_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", mission_id=mission_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the event bus, skipping ones already replayed."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.MISSION_CLOSED:
                        logger.info("mission_closed_sentinel", mission_id=mission_id)
                        break

                    if event.timestamp <= last_replay_timestamp:
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", mission_id=mission_id)
            except Exception as e:
                logger.error("websocket_send_error", mission_id=mission_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", mission_id=mission_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        mission_id=mission_id,
                        command_type=command_type,
                    )

                    if command_type == "stop":
                        error = await handle_stop_command(mission_id)
                        if error is not None:
                            await websocket.send_json({"type": "error", "error": error})
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            mission_id=mission_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", mission_id=mission_id)
            except Exception as e:
                logger.error("websocket_receive_error", mission_id=mission_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Usually ends on disconnect or on the mission_closed sentinel.
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", mission_id=mission_id)
    except Exception as e:
        logger.error("websocket_error", mission_id=mission_id, error=str(e))
    finally:
        event_bus.unsubscribe(mission_id, queue)
        logger.info("websocket_cleanup_complete", mission_id=mission_id)


async def handle_stop_command(mission_id: str) -> str | None:
    """Handle a stop command from the WebSocket client.

    Args:
        mission_id: The mission the client is watching.

    Returns:
        An error message for the client, or None on success.
    """
    logger.info("stop_command_processing", mission_id=mission_id)

    engine = get_mission_engine()
    mission = engine.mission
    if mission is None or mission.mission_id != mission_id:
        logger.warning("stop_command_mission_not_current", mission_id=mission_id)
        return f"Mission {mission_id} is not the current mission"

    try:
        await engine.stop()
    except MissionError as e:
        logger.warning("stop_command_failed", mission_id=mission_id, error=str(e))
        return str(e)
    return None
