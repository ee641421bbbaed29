"""Event system for mission activity communication.

This package provides the event infrastructure between the orchestration
engine and its consumers. The event system is based on an async pub/sub
pattern using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - MissionEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, MissionEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("mission_123")
    >>> await bus.publish(MissionEvent(
    ...     type=EventType.TASK_DISPATCHED,
    ...     mission_id="mission_123",
    ...     agent_id="agent-1",
    ...     data={"task_id": "task-1", "title": "Research", "status": "in_progress"},
    ... ))
    >>> event = await queue.get()

Event Flow:
    1. Engine components publish events via EventBus.publish()
    2. WebSocket handler subscribes to mission events
    3. Events are forwarded to the client via WebSocket
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    MissionEvent,
)

__all__ = [
    "EventType",
    "MissionEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
