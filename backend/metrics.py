"""In-memory usage metrics for running missions.

This module provides the MetricsCollector class that accumulates token
estimates, tool calls, turns and dispatches for a mission and for each
agent in it. When a mission finishes, ReportGenerator reads the final
totals to compute the cost estimate.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("mission_abc123")
    >>> collector.record_tokens("mission_abc123", "agent-1", 42)
    >>> collector.record_tool_call("mission_abc123", "agent-1")
    >>> final = collector.finish("mission_abc123")
    >>> print(final)  # MissionMetricsData(...)
"""

import math
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text (four characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass
class MissionMetricsData:
    """Accumulated metrics for a single mission.

    Attributes:
        total_tokens: Token estimate across all agents.
        agent_tokens: Token estimate per agent id.
        tool_calls: Number of tool invocations seen on the push streams.
        turns: Number of completed agent turns.
        dispatches: Number of dispatch calls that reached the gateway.
        duration_ms: Total mission time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    total_tokens: int = 0
    agent_tokens: dict[str, int] = field(default_factory=dict)
    tool_calls: int = 0
    turns: int = 0
    dispatches: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        """Convert to a plain dict for reports and API responses."""
        return {
            "total_tokens": self.total_tokens,
            "agent_tokens": dict(self.agent_tokens),
            "tool_calls": self.tool_calls,
            "turns": self.turns,
            "dispatches": self.dispatches,
            "duration_ms": self.duration_ms,
        }


class MetricsCollector:
    """In-memory collector that tracks per-mission metrics.

    Each running mission gets its own MissionMetricsData instance. All
    mutations happen on the event loop thread, so no locking is needed.

    Attributes:
        _missions: Mapping from mission_id to its metrics data.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._missions: dict[str, MissionMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def start(self, mission_id: str) -> None:
        """Begin tracking metrics for a mission.

        If the mission is already being tracked, this is a no-op.

        Args:
            mission_id: The mission to start tracking.
        """
        if mission_id in self._missions:
            logger.debug("metrics_already_tracking", mission_id=mission_id)
            return

        self._missions[mission_id] = MissionMetricsData()
        logger.debug("metrics_tracking_started", mission_id=mission_id)

    def record_tokens(self, mission_id: str, agent_id: str, tokens: int) -> None:
        """Add a token estimate for one agent.

        Args:
            mission_id: The mission the output belongs to.
            agent_id: The agent that produced the output.
            tokens: Estimated tokens to add.
        """
        data = self._missions.get(mission_id)
        if data is None:
            logger.warning("metrics_record_no_mission", mission_id=mission_id)
            return
        if tokens <= 0:
            return

        data.total_tokens += tokens
        data.agent_tokens[agent_id] = data.agent_tokens.get(agent_id, 0) + tokens

    def record_tool_call(self, mission_id: str, agent_id: str) -> None:
        """Increment the tool call counter for a mission."""
        data = self._missions.get(mission_id)
        if data is None:
            logger.warning("metrics_tool_no_mission", mission_id=mission_id, agent_id=agent_id)
            return

        data.tool_calls += 1

    def record_turn(self, mission_id: str, agent_id: str) -> None:
        """Increment the completed turn counter for a mission."""
        data = self._missions.get(mission_id)
        if data is None:
            logger.warning("metrics_turn_no_mission", mission_id=mission_id, agent_id=agent_id)
            return

        data.turns += 1

    def record_dispatch(self, mission_id: str) -> None:
        """Increment the dispatch counter for a mission."""
        data = self._missions.get(mission_id)
        if data is not None:
            data.dispatches += 1

    def finish(self, mission_id: str) -> MissionMetricsData | None:
        """Finalize metrics for a mission, calculating duration.

        The mission's metrics data is removed from the collector after
        this call. The returned data includes the calculated duration_ms.

        Args:
            mission_id: The mission to finalize.

        Returns:
            The final MissionMetricsData, or None if not tracked.
        """
        data = self._missions.pop(mission_id, None)
        if data is None:
            logger.warning("metrics_finish_no_mission", mission_id=mission_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_mission_finished",
            mission_id=mission_id,
            total_tokens=data.total_tokens,
            tool_calls=data.tool_calls,
            turns=data.turns,
            dispatches=data.dispatches,
            duration_ms=data.duration_ms,
        )

        return data

    def get(self, mission_id: str) -> MissionMetricsData | None:
        """Get current (in-progress) metrics for a mission.

        Does NOT remove the mission from the collector.

        Args:
            mission_id: The mission to query.

        Returns:
            Current MissionMetricsData, or None if not tracked.
        """
        return self._missions.get(mission_id)
