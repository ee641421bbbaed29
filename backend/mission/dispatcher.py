"""Task ownership and dispatch under the three execution topologies.

TaskBoard is the single owner of task-status mutations; every change
goes through it and triggers its change callback (which persists the
checkpoint). TaskDispatcher groups tasks by agent and sends them through
the gateway:

- sequential: one agent at a time with a fixed stagger between agents
- hierarchical: the first team member leads, the rest are dispatched
  afterwards with a "delegated by" marker
- parallel: every agent group at once

A failed dispatch fails open: the agent's tasks are forced to done, the
agent is marked error and recorded as done, so one unreachable agent
cannot wedge the mission.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from events.types import EventType
from metrics import MetricsCollector
from mission.completion import CompletionDetector
from mission.gateway import GatewayClient, GatewayError
from mission.generation import GenerationCounter
from mission.prompts import build_dispatch_message, build_lead_briefing
from mission.reconciler import StatusReconciler
from mission.report import task_stats
from mission.sessions import SessionManager
from models.schemas import (
    AgentState,
    ProcessType,
    Task,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TeamMember,
)

logger = structlog.get_logger(__name__)

Emit = Callable[[EventType, str | None, dict[str, Any]], Awaitable[None]]
TasksChanged = Callable[[list[Task]], Awaitable[None]]

_STATUS_RANK = {
    TaskStatus.INBOX: 0,
    TaskStatus.ASSIGNED: 1,
    TaskStatus.IN_PROGRESS: 2,
    TaskStatus.DONE: 3,
    TaskStatus.BLOCKED: 3,
}


def make_idempotency_key(mission_id: str, agent_id: str, attempt: int) -> str:
    return f"{mission_id}:{agent_id}:{attempt}:{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# TaskBoard
# ---------------------------------------------------------------------------


class TaskBoard:
    """Single owner of the mission's task list."""

    def __init__(self, on_change: TasksChanged | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        self._on_change = on_change

    def load(self, tasks: list[Task]) -> None:
        self._tasks = {task.id: task.model_copy() for task in tasks}

    def snapshot(self) -> list[Task]:
        return [task.model_copy() for task in self._tasks.values()]

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    def for_agent(self, agent_id: str) -> list[Task]:
        return [task.model_copy() for task in self._tasks.values() if task.agent_id == agent_id]

    def stats(self) -> TaskStats:
        return task_stats(list(self._tasks.values()))

    async def add(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy()
        if self._on_change is not None:
            await self._on_change([task.model_copy()])
        return task

    async def set_status(
        self,
        task_ids: list[str],
        status: TaskStatus,
        allow_backward: bool = False,
    ) -> list[Task]:
        """Move tasks to a new status.

        Transitions are monotonic forward. The only backward move allowed
        is to ``assigned`` with ``allow_backward`` (explicit re-dispatch).

        Returns:
            The tasks that actually changed.
        """
        now = time.time()
        changed: list[Task] = []
        for task_id in task_ids:
            task = self._tasks.get(task_id)
            if task is None or task.status == status:
                continue
            forward = _STATUS_RANK[status] > _STATUS_RANK[task.status]
            backward_ok = allow_backward and status == TaskStatus.ASSIGNED
            if not forward and not backward_ok:
                logger.debug(
                    "task_transition_rejected",
                    task_id=task_id,
                    current=task.status.value,
                    requested=status.value,
                )
                continue
            task.status = status
            task.updated_at = now
            changed.append(task.model_copy())
        if changed and self._on_change is not None:
            await self._on_change(changed)
        return changed

    async def complete_agent(self, agent_id: str) -> list[Task]:
        """Mark an agent's unfinished tasks done."""
        ids = [
            task.id
            for task in self._tasks.values()
            if task.agent_id == agent_id and task.status not in (TaskStatus.DONE, TaskStatus.BLOCKED)
        ]
        return await self.set_status(ids, TaskStatus.DONE)


# ---------------------------------------------------------------------------
# TaskDispatcher
# ---------------------------------------------------------------------------


class TaskDispatcher:
    """Sends task bundles to agent sessions under a topology.

    Attributes:
        stagger_seconds: Delay between agents in sequential mode.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        sessions: SessionManager,
        board: TaskBoard,
        statuses: StatusReconciler,
        completion: CompletionDetector,
        generations: GenerationCounter,
        emit: Emit,
        metrics: MetricsCollector | None = None,
        stagger_seconds: float = 30.0,
    ) -> None:
        self._gateway = gateway
        self._sessions = sessions
        self._board = board
        self._statuses = statuses
        self._completion = completion
        self._generations = generations
        self._emit = emit
        self._metrics = metrics
        self.stagger_seconds = stagger_seconds
        self._ledger: set[str] = set()
        self._attempts: dict[str, int] = {}

    def reset(self) -> None:
        self._attempts.clear()
        self._ledger.clear()

    def next_idempotency_key(self, mission_id: str, agent_id: str) -> str:
        attempt = self._attempts.get(agent_id, 0) + 1
        self._attempts[agent_id] = attempt
        return make_idempotency_key(mission_id, agent_id, attempt)

    def has_applied(self, idempotency_key: str) -> bool:
        return idempotency_key in self._ledger

    def group_by_agent(self, team: list[TeamMember]) -> list[tuple[TeamMember, list[Task]]]:
        """Pair each team member (in team order) with its assigned, undispatched tasks."""
        groups: list[tuple[TeamMember, list[Task]]] = []
        for member in team:
            tasks = [
                task
                for task in self._board.for_agent(member.id)
                if task.status in (TaskStatus.INBOX, TaskStatus.ASSIGNED)
            ]
            if tasks:
                groups.append((member, tasks))
        return groups

    async def dispatch(
        self,
        mission_id: str,
        goal: str,
        team: list[TeamMember],
        process_type: ProcessType,
        generation: int,
    ) -> None:
        """Dispatch every assigned task under the given topology."""
        if self._generations.is_stale(generation, "dispatch"):
            return
        logger.info(
            "dispatch_started",
            mission_id=mission_id,
            process_type=process_type.value,
            team_size=len(team),
        )

        if process_type == ProcessType.SEQUENTIAL:
            await self._dispatch_sequential(mission_id, goal, team, generation)
        elif process_type == ProcessType.HIERARCHICAL:
            await self._dispatch_hierarchical(mission_id, goal, team, generation)
        else:
            groups = self.group_by_agent(team)
            await asyncio.gather(
                *(
                    self.dispatch_agent(mission_id, member, tasks, goal, generation)
                    for member, tasks in groups
                )
            )

    async def _dispatch_sequential(
        self,
        mission_id: str,
        goal: str,
        team: list[TeamMember],
        generation: int,
    ) -> None:
        for index, (member, tasks) in enumerate(self.group_by_agent(team)):
            if index > 0:
                await asyncio.sleep(self.stagger_seconds)
                if self._generations.is_stale(generation, "sequential_stagger"):
                    return
            await self.dispatch_agent(mission_id, member, tasks, goal, generation)

    async def _dispatch_hierarchical(
        self,
        mission_id: str,
        goal: str,
        team: list[TeamMember],
        generation: int,
    ) -> None:
        if not team:
            return
        lead = team[0]
        if not self._board.for_agent(lead.id):
            briefing = Task(
                title=f"Lead the team: {goal}"[:80],
                description=build_lead_briefing(lead, team, goal),
                priority=TaskPriority.HIGH,
                status=TaskStatus.ASSIGNED,
                agent_id=lead.id,
                mission_id=mission_id,
            )
            await self._board.add(briefing)
            await self._emit(
                EventType.TASK_CREATED,
                lead.id,
                {"task_id": briefing.id, "title": briefing.title, "status": briefing.status.value},
            )

        groups = self.group_by_agent(team)
        lead_group = [g for g in groups if g[0].id == lead.id]
        others = [g for g in groups if g[0].id != lead.id]
        for member, tasks in lead_group:
            await self.dispatch_agent(mission_id, member, tasks, goal, generation)
        if self._generations.is_stale(generation, "hierarchical_delegate"):
            return
        await asyncio.gather(
            *(
                self.dispatch_agent(mission_id, member, tasks, goal, generation, delegated_by=lead.name)
                for member, tasks in others
            )
        )

    async def dispatch_agent(
        self,
        mission_id: str,
        member: TeamMember,
        tasks: list[Task],
        goal: str,
        generation: int,
        delegated_by: str | None = None,
        idempotency_key: str | None = None,
    ) -> bool:
        """Send one agent its task bundle.

        A key already in the ledger sends nothing and mutates nothing.

        Returns:
            True if the gateway accepted the dispatch.
        """
        if self._generations.is_stale(generation, "dispatch_agent"):
            return False
        key = idempotency_key or self.next_idempotency_key(mission_id, member.id)
        if key in self._ledger:
            logger.info("dispatch_duplicate_skipped", agent_id=member.id, idempotency_key=key)
            return False
        self._ledger.add(key)

        task_ids = [task.id for task in tasks]
        session = self._sessions.session_for(member.id)
        if session is None:
            await self._fail(member, task_ids, "no session for agent", generation)
            return False

        message = build_dispatch_message(member, tasks, goal, delegated_by=delegated_by)
        try:
            await self._gateway.dispatch(session.session_key, message, member.id, key)
        except GatewayError as e:
            if self._generations.is_stale(generation, "dispatch_agent"):
                return False
            await self._fail(member, task_ids, str(e), generation)
            return False

        if self._generations.is_stale(generation, "dispatch_agent"):
            return False

        if self._metrics is not None:
            self._metrics.record_dispatch(mission_id)
        self._completion.note_activity()
        changed = await self._board.set_status(task_ids, TaskStatus.IN_PROGRESS)
        previous, current = self._statuses.set_status(member.id, AgentState.ACTIVE)
        if previous != current:
            await self._emit(
                EventType.AGENT_STATUS,
                member.id,
                {"status": current.value, "previous": previous.value, "source": "dispatch"},
            )
        for task in changed:
            await self._emit(
                EventType.TASK_DISPATCHED,
                member.id,
                {
                    "task_id": task.id,
                    "title": task.title,
                    "status": task.status.value,
                    "delegated_by": delegated_by,
                },
            )
        logger.info(
            "agent_dispatched",
            mission_id=mission_id,
            agent_id=member.id,
            task_count=len(task_ids),
            idempotency_key=key,
        )
        return True

    async def _fail(
        self,
        member: TeamMember,
        task_ids: list[str],
        error: str,
        generation: int,
    ) -> None:
        if self._generations.is_stale(generation, "dispatch_failed"):
            return
        logger.error("dispatch_failed", agent_id=member.id, error=error)
        await self._board.set_status(task_ids, TaskStatus.DONE)
        previous, current = self._statuses.set_status(member.id, AgentState.ERROR)
        session = self._sessions.session_for(member.id)
        self._completion.record_done(session.session_key if session else member.id)
        await self._emit(
            EventType.DISPATCH_FAILED,
            member.id,
            {"error": error, "task_ids": task_ids},
        )
        if previous != current:
            await self._emit(
                EventType.AGENT_STATUS,
                member.id,
                {"status": current.value, "previous": previous.value, "source": "dispatch"},
            )

    async def redispatch(
        self,
        mission_id: str,
        member: TeamMember,
        goal: str,
        generation: int,
    ) -> bool:
        """Move an agent's tasks back to assigned and dispatch them again."""
        tasks = self._board.for_agent(member.id)
        if not tasks:
            return False
        await self._board.set_status([t.id for t in tasks], TaskStatus.ASSIGNED, allow_backward=True)
        session = self._sessions.session_for(member.id)
        self._completion.clear_done(session.session_key if session else member.id)
        self._completion.clear_done(member.id)
        refreshed = self._board.for_agent(member.id)
        return await self.dispatch_agent(mission_id, member, refreshed, goal, generation)
