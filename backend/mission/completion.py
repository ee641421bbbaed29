"""Mission-wide completion detection.

Two paths can finish a mission:
- The explicit path: every expected agent has produced a confirmed
  completion signal (its session key is in the done set).
- The safety net: every task has been handed out, every agent's
  derived status is terminal and some activity has been seen since the
  mission was armed.

Any agent waiting for input or paused blocks both paths. Once a path
fires, the detector waits a settle delay so trailing output can flush,
re-checks the generation and the condition, and then calls back.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from mission.generation import GenerationCounter
from models.schemas import AgentState

logger = structlog.get_logger(__name__)

TERMINAL_STATES = frozenset({AgentState.IDLE, AgentState.NONE, AgentState.ERROR, AgentState.STOPPED})
BLOCKING_STATES = frozenset({AgentState.WAITING_FOR_INPUT, AgentState.PAUSED})

CompleteCallback = Callable[[int], Awaitable[None]]
StatusProvider = Callable[[], dict[str, AgentState]]


class CompletionDetector:
    """Tracks done signals and decides when a mission is finished.

    Attributes:
        settle_delay: Seconds to wait before confirming completion.
        expected_count: Number of agents expected to signal done.
    """

    def __init__(self, generations: GenerationCounter, settle_delay: float = 5.5) -> None:
        self._generations = generations
        self.settle_delay = settle_delay
        self.expected_count = 0
        self._done: set[str] = set()
        self._generation: int | None = None
        self._on_complete: CompleteCallback | None = None
        self._activity_seen = False
        self._dispatch_complete = False
        self._fired = False
        self._settle_task: asyncio.Task[None] | None = None

    @property
    def done_count(self) -> int:
        return len(self._done)

    @property
    def fired(self) -> bool:
        return self._fired

    def done_keys(self) -> set[str]:
        return set(self._done)

    def arm(self, expected_count: int, generation: int, on_complete: CompleteCallback) -> None:
        """Start watching a new mission."""
        self.disarm()
        self.expected_count = expected_count
        self._generation = generation
        self._on_complete = on_complete
        self._done = set()
        self._activity_seen = False
        self._dispatch_complete = False
        self._fired = False

    def disarm(self) -> None:
        task = self._settle_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._settle_task = None
        self._generation = None
        self._on_complete = None

    def note_activity(self) -> None:
        self._activity_seen = True

    def mark_dispatch_complete(self) -> None:
        """Allow the safety net once every agent has been handed its tasks."""
        self._dispatch_complete = True

    def record_done(self, key: str) -> bool:
        """Add a session key (or agent id) to the done set. Returns True if new."""
        self._activity_seen = True
        if key in self._done:
            return False
        self._done.add(key)
        logger.info(
            "agent_done_recorded",
            key=key,
            done_count=len(self._done),
            expected=self.expected_count,
        )
        return True

    def clear_done(self, key: str) -> None:
        self._done.discard(key)

    def should_complete(self, statuses: dict[str, AgentState]) -> bool:
        """Decide whether the mission looks finished right now."""
        if self._generation is None or self._fired:
            return False
        if any(status in BLOCKING_STATES for status in statuses.values()):
            return False
        if self.expected_count and len(self._done) >= self.expected_count:
            return True
        return (
            self._dispatch_complete
            and self._activity_seen
            and bool(statuses)
            and all(status in TERMINAL_STATES for status in statuses.values())
        )

    def evaluate(self, statuses: StatusProvider, generation: int) -> bool:
        """Schedule the settle check if the mission looks finished.

        Returns:
            True if a settle check is (now) pending.
        """
        if self._generations.is_stale(generation, "completion_evaluate"):
            return False
        if generation != self._generation:
            return False
        if self._settle_task is not None and not self._settle_task.done():
            return True
        if not self.should_complete(statuses()):
            return False
        logger.info(
            "mission_settling",
            generation=generation,
            done_count=len(self._done),
            expected=self.expected_count,
        )
        self._settle_task = asyncio.create_task(
            self._settle(statuses, generation),
            name=f"completion-settle-{generation}",
        )
        return True

    async def _settle(self, statuses: StatusProvider, generation: int) -> None:
        await asyncio.sleep(self.settle_delay)
        if self._generations.is_stale(generation, "completion_settle"):
            return
        if generation != self._generation or not self.should_complete(statuses()):
            logger.info("mission_settle_cancelled", generation=generation)
            return
        self._fired = True
        callback = self._on_complete
        logger.info("mission_completion_confirmed", generation=generation)
        if callback is not None:
            await callback(generation)
