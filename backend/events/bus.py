"""Async event bus for mission pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between the orchestration engine and
its consumers (via WebSocket).

The event bus supports:
- Multiple subscribers per mission
- Async event delivery via asyncio.Queue
- Mission lifecycle management (close mission terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, MissionEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for mission events.

    The EventBus manages subscriptions per mission, allowing multiple
    WebSocket connections to receive events for the same mission.
    Events are delivered via asyncio.Queue for non-blocking consumption.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. This handles the race condition where
        the engine starts emitting events before the WebSocket connects.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("mission_123")
        >>> await bus.publish(MissionEvent(
        ...     type=EventType.AGENT_SPAWNED,
        ...     mission_id="mission_123",
        ...     agent_id="agent-1",
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("mission_123", queue)
        >>> await bus.close_mission("mission_123")

    Attributes:
        _subscribers: Dict mapping mission_id to list of subscriber queues
        _event_buffer: Dict mapping mission_id to list of buffered events
        _lock: Lock guarding the subscription registry
    """

    # Maximum number of events to retain per mission for replay on reconnect.
    MAX_HISTORY_PER_MISSION = 5000

    # Maximum number of events buffered for a mission nobody listens to.
    MAX_BUFFER_PER_MISSION = 1000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[MissionEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[MissionEvent]] = defaultdict(list)
        self._event_history: dict[str, list[MissionEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, mission_id: str) -> asyncio.Queue[MissionEvent]:
        """Subscribe to events for a mission.

        If there are buffered events for this mission (events that were
        published before any subscriber connected), they are delivered
        immediately to the new subscriber.

        Args:
            mission_id: The mission to subscribe to

        Returns:
            An asyncio.Queue that will receive MissionEvent objects
        """
        queue: asyncio.Queue[MissionEvent] = asyncio.Queue()
        buffered_events: list[MissionEvent] = []

        with self._lock:
            self._subscribers[mission_id].append(queue)
            subscriber_count = len(self._subscribers[mission_id])

            if mission_id in self._event_buffer:
                buffered_events = self._event_buffer[mission_id]
                del self._event_buffer[mission_id]

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            mission_id=mission_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, mission_id: str, queue: asyncio.Queue[MissionEvent]) -> None:
        """Unsubscribe a queue from mission events.

        If the queue is not registered, this is a no-op.

        Args:
            mission_id: The mission to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            if mission_id not in self._subscribers:
                return
            try:
                self._subscribers[mission_id].remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", mission_id=mission_id)
                return
            subscriber_count = len(self._subscribers[mission_id])
            if not self._subscribers[mission_id]:
                del self._subscribers[mission_id]
        logger.info(
            "subscriber_removed",
            mission_id=mission_id,
            subscriber_count=subscriber_count,
        )

    async def publish(self, event: MissionEvent) -> None:
        """Publish an event to all subscribers for its mission.

        If there are no subscribers, the event is buffered until a
        subscriber connects. All published events are also stored in
        the mission's event history for replay on reconnect.

        Args:
            event: The MissionEvent to publish
        """
        with self._lock:
            if event.type != EventType.MISSION_CLOSED:
                history = self._event_history[event.mission_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_MISSION:
                    self._event_history[event.mission_id] = history[
                        -self.MAX_HISTORY_PER_MISSION:
                    ]

            subscribers = list(self._subscribers.get(event.mission_id, []))

            if not subscribers:
                buffer = self._event_buffer[event.mission_id]
                buffer.append(event)
                if len(buffer) > self.MAX_BUFFER_PER_MISSION:
                    del buffer[: len(buffer) - self.MAX_BUFFER_PER_MISSION]
                return

        # Publish to all subscribers with timeout to avoid blocking
        # if a consumer stalls (e.g. frozen WebSocket client)
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    mission_id=event.mission_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            mission_id=event.mission_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            agent_id=event.agent_id,
        )

    def get_event_history(self, mission_id: str) -> list[MissionEvent]:
        """Get all stored events for a mission, in chronological order."""
        with self._lock:
            return list(self._event_history.get(mission_id, []))

    async def close_mission(self, mission_id: str) -> None:
        """Close a mission and notify all subscribers.

        Puts a MISSION_CLOSED sentinel into each subscriber queue so that
        consumers can detect the mission has ended and break out cleanly.
        Event history is preserved for late reconnects.

        Args:
            mission_id: The mission to close
        """
        queues_to_signal: list[asyncio.Queue[MissionEvent]] = []

        with self._lock:
            if mission_id in self._subscribers:
                queues_to_signal = list(self._subscribers[mission_id])
                del self._subscribers[mission_id]
            buffer_count = len(self._event_buffer.pop(mission_id, []))

        sentinel = MissionEvent(
            type=EventType.MISSION_CLOSED,
            mission_id=mission_id,
            data={"reason": "mission_closed"},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        logger.info(
            "mission_stream_closed",
            mission_id=mission_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, mission_id: str) -> int:
        """Get the number of subscribers for a mission."""
        with self._lock:
            return len(self._subscribers.get(mission_id, []))

    def clear_event_history(self, mission_id: str) -> None:
        """Drop stored event history for a mission."""
        with self._lock:
            self._event_history.pop(mission_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
