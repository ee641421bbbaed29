"""Mission orchestration engine.

MissionEngine owns the live mission and wires the components together:

    decompose_goal -> SessionManager -> TaskDispatcher -> gateway
        -> StreamIngestor / StatusReconciler -> classify -> CompletionDetector
        -> ReportGenerator

with artifact extraction sampling the output buffers throughout and the
CheckpointStore persisting after every task-status mutation.

Concurrency model:
    Everything runs on one event loop. Each launch advances a generation
    counter; every async chain carries the generation it started under
    and checks it before committing a mutation, so results from a
    superseded launch are dropped silently. Background work per mission:
    the LangGraph pipeline task, the monitor loop (poll, prune, approvals,
    completion) and one task per live push-stream connection.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from config import Settings, settings as default_settings
from events.bus import EventBus
from events.types import EventType, MissionEvent
from metrics import MetricsCollector
from mission.approvals import ApprovalQueue
from mission.artifacts import extract_artifacts, merge_artifacts
from mission.checkpoint import CheckpointStore
from mission.classifier import TurnOutcome, classify
from mission.completion import CompletionDetector
from mission.decomposer import decompose_goal
from mission.dispatcher import TaskBoard, TaskDispatcher
from mission.gateway import GatewayClient, GatewayError
from mission.generation import GenerationCounter
from mission.graph import MissionGraph, create_mission_initial_state
from mission.prompts import PAUSE_DIRECTIVE, RESUME_DIRECTIVE, system_directive
from mission.reconciler import StatusReconciler
from mission.report import ReportGenerator
from mission.roster import TeamRoster
from mission.sessions import SessionManager
from mission.streams import StreamIngestor
from models.database import StateStore
from models.schemas import (
    AgentSession,
    AgentState,
    ApprovalRequest,
    Artifact,
    CheckpointStatus,
    MissionCheckpoint,
    MissionDetailResponse,
    MissionReport,
    ProcessType,
    Task,
    TaskStatus,
    TeamMember,
)

logger = structlog.get_logger(__name__)

PREVIEW_CHARS = 280


class MissionError(Exception):
    """A caller mistake: invalid input, missing mission, unknown agent.

    Attributes:
        status_code: HTTP status the API layer should answer with.
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MissionState:
    """The live mission. Mutated only by MissionEngine."""

    mission_id: str
    label: str
    goal: str
    process_type: ProcessType
    team: list[TeamMember]
    generation: int
    started_at: float = field(default_factory=time.time)
    status: CheckpointStatus = CheckpointStatus.RUNNING
    artifacts: list[Artifact] = field(default_factory=list)
    finished: bool = False
    aborted: bool = False
    superseded: bool = False
    completed_at: float | None = None
    report: MissionReport | None = None
    final_tasks: list[Task] = field(default_factory=list)
    final_outputs: dict[str, str] = field(default_factory=dict)
    completion: asyncio.Future[CheckpointStatus | None] | None = None

    def member(self, agent_id: str) -> TeamMember | None:
        for member in self.team:
            if member.id == agent_id:
                return member
        return None


def _preview(text: str) -> str:
    text = text.strip()
    return text if len(text) <= PREVIEW_CHARS else "..." + text[-PREVIEW_CHARS:]


class MissionEngine:
    """Coordinates one mission at a time across gateway-hosted agents.

    Usage:
        >>> engine = MissionEngine(gateway, store, event_bus)
        >>> await engine.startup()
        >>> mission = await engine.launch(goal, team, ProcessType.PARALLEL)
        >>> ...
        >>> await engine.shutdown()
    """

    def __init__(
        self,
        gateway: GatewayClient,
        store: StateStore,
        event_bus: EventBus,
        config: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or default_settings
        self.gateway = gateway
        self.store = store
        self.event_bus = event_bus
        self.metrics = metrics or MetricsCollector()

        self.generations = GenerationCounter()
        self.sessions = SessionManager(
            gateway,
            self.generations,
            default_model=self.config.default_model,
            model_aliases=self.config.model_aliases,
        )
        self.statuses = StatusReconciler(
            active_window=self.config.status_active_window_seconds,
            idle_window=self.config.status_idle_window_seconds,
            missing_grace_seconds=self.config.status_missing_grace_seconds,
        )
        self.completion = CompletionDetector(
            self.generations,
            settle_delay=self.config.settle_delay_seconds,
        )
        self.board = TaskBoard(on_change=self._on_tasks_changed)
        self.dispatcher = TaskDispatcher(
            gateway,
            self.sessions,
            self.board,
            self.statuses,
            self.completion,
            self.generations,
            emit=self._emit,
            metrics=self.metrics,
            stagger_seconds=self.config.sequential_stagger_seconds,
        )
        self.streams = StreamIngestor(
            gateway,
            self,
            self.generations,
            max_streams=self.config.max_concurrent_streams,
            stale_seconds=self.config.stream_stale_seconds,
            buffer_lines=self.config.output_buffer_lines,
        )
        self.checkpoints = CheckpointStore(store, history_limit=self.config.mission_history_limit)
        self.roster = TeamRoster(store)
        self.approvals = ApprovalQueue(
            store,
            gateway,
            retention_hours=self.config.approval_retention_hours,
        )
        self.reports = ReportGenerator(
            store,
            history_limit=self.config.report_history_limit,
            cost_per_1k_tokens=self.config.cost_per_1k_tokens,
        )
        self.graph = MissionGraph(self)

        self.stale_checkpoint: MissionCheckpoint | None = None
        self._mission: MissionState | None = None
        self._checkpoint_lock = asyncio.Lock()
        self._graph_task: asyncio.Task[Any] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._awaiting_report: dict[str, MissionState] = {}

        logger.info("mission_engine_initialized", gateway_url=gateway.base_url)

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def mission(self) -> MissionState | None:
        return self._mission

    @property
    def is_running(self) -> bool:
        return self._mission is not None and not self._mission.finished

    def is_superseded(self, mission_id: str, generation: int) -> bool:
        """True when a run should end without a report."""
        if mission_id in self._awaiting_report:
            return False
        mission = self._mission
        return (
            mission is None
            or mission.mission_id != mission_id
            or mission.generation != generation
            or mission.superseded
        )

    def _require_mission(self) -> MissionState:
        if self._mission is None or self._mission.finished:
            raise MissionError("no mission is running", status_code=409)
        return self._mission

    def _require_member(self, agent_id: str) -> tuple[MissionState, TeamMember]:
        mission = self._require_mission()
        member = mission.member(agent_id)
        if member is None:
            raise MissionError(f"unknown agent: {agent_id}", status_code=404)
        return mission, member

    def _require_session(self, agent_id: str) -> AgentSession:
        session = self.sessions.session_for(agent_id)
        if session is None:
            raise MissionError(f"agent {agent_id} has no session", status_code=409)
        return session

    def detail(self) -> MissionDetailResponse | None:
        """Snapshot of the current (or last finished) mission."""
        mission = self._mission
        if mission is None:
            return None
        tracked = self.metrics.get(mission.mission_id)
        if tracked is not None:
            token_count = tracked.total_tokens
        else:
            token_count = mission.report.token_count if mission.report else 0
        return MissionDetailResponse(
            mission_id=mission.mission_id,
            label=mission.label,
            goal=mission.goal,
            process_type=mission.process_type,
            status=mission.status,
            team=mission.team,
            tasks=self.board.snapshot(),
            statuses=self.statuses.snapshot(),
            sessions=self.sessions.snapshot(),
            spawn_states=self.sessions.spawn_states(),
            artifacts=list(mission.artifacts),
            token_count=token_count,
            started_at=mission.started_at,
            completed_at=mission.completed_at,
        )

    def agent_output(self, agent_id: str) -> tuple[list[str], int]:
        mission = self._mission
        if mission is None or mission.member(agent_id) is None:
            raise MissionError(f"unknown agent: {agent_id}", status_code=404)
        tracked = self.metrics.get(mission.mission_id)
        tokens = tracked.agent_tokens.get(agent_id, 0) if tracked else 0
        return self.streams.output_lines(agent_id), tokens

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Load persisted approvals and surface any checkpoint left running."""
        await self.approvals.load()
        self.stale_checkpoint = await self.checkpoints.find_stale()
        if self.stale_checkpoint is not None:
            logger.warning(
                "unclean_exit_detected",
                mission_id=self.stale_checkpoint.id,
                label=self.stale_checkpoint.label,
            )

    async def shutdown(self) -> None:
        """Stop background work. The live checkpoint stays on disk."""
        self.generations.advance()
        self.completion.disarm()
        await self.streams.close_all()
        for task in (self._monitor_task, self._graph_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("mission_engine_shutdown")

    async def resolve_stale_checkpoint(self, action: str) -> MissionCheckpoint:
        """Handle the resume banner: "abort" archives the checkpoint, "dismiss" drops it."""
        stale = self.stale_checkpoint
        if stale is None:
            raise MissionError("no stale checkpoint", status_code=404)
        if action == "abort":
            result = await self.checkpoints.archive(stale, CheckpointStatus.ABORTED)
        elif action == "dismiss":
            await self.checkpoints.clear()
            result = stale
        else:
            raise MissionError(f"unknown checkpoint action: {action}")
        self.stale_checkpoint = None
        logger.info("stale_checkpoint_resolved", mission_id=stale.id, action=action)
        return result

    async def launch(
        self,
        goal: str,
        team: list[TeamMember],
        process_type: ProcessType = ProcessType.PARALLEL,
        label: str | None = None,
    ) -> MissionState:
        """Start a new mission, superseding any running one.

        Raises:
            MissionError: If the team is empty or the goal yields no tasks.
        """
        if not team:
            raise MissionError("team is empty")
        mission_id = f"mission_{uuid.uuid4().hex[:12]}"
        tasks = decompose_goal(goal, team, mission_id)
        if not tasks:
            raise MissionError("goal produced no tasks")

        if self.is_running:
            await self._supersede()
        if self.stale_checkpoint is not None:
            await self.resolve_stale_checkpoint("abort")

        generation = self.generations.advance()
        mission = MissionState(
            mission_id=mission_id,
            label=label or goal.strip().splitlines()[0][:80],
            goal=goal.strip(),
            process_type=process_type,
            team=list(team),
            generation=generation,
        )
        mission.completion = asyncio.get_running_loop().create_future()
        self._mission = mission

        self.sessions.reset()
        self.statuses.reset([member.id for member in team])
        self.streams.reset(generation)
        self.dispatcher.reset()
        self.board.load(tasks)
        self.metrics.start(mission_id)
        self.completion.arm(len(team), generation, self._on_mission_complete)

        await self._save_checkpoint()
        await self._emit(
            EventType.MISSION_STARTED,
            None,
            {
                "goal": mission.goal,
                "label": mission.label,
                "process_type": process_type.value,
                "team": [member.model_dump(mode="json") for member in team],
                "task_count": len(tasks),
            },
        )
        logger.info(
            "mission_launched",
            mission_id=mission_id,
            generation=generation,
            process_type=process_type.value,
            team_size=len(team),
            task_count=len(tasks),
        )

        self._graph_task = asyncio.create_task(
            self._run_graph(mission),
            name=f"mission-graph-{mission_id}",
        )
        self._monitor_task = asyncio.create_task(
            self._monitor_loop(generation),
            name=f"mission-monitor-{mission_id}",
        )
        return mission

    async def _run_graph(self, mission: MissionState) -> None:
        state = create_mission_initial_state(
            mission.mission_id,
            mission.generation,
            mission.goal,
            mission.process_type.value,
        )
        try:
            await self.graph.run(state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("mission_graph_failed", mission_id=mission.mission_id, error=str(e))
            await self._finish(mission, CheckpointStatus.ABORTED, aborted=True, reason=str(e))
        if mission.mission_id in self._awaiting_report:
            await self.finalize_report(mission.mission_id)

    async def _supersede(self) -> None:
        mission = self._mission
        if mission is None:
            return
        mission.superseded = True
        logger.info("mission_superseded", mission_id=mission.mission_id)
        await self._finish(mission, CheckpointStatus.ABORTED, aborted=True, reason="superseded")

    async def stop(self) -> MissionState:
        """User-requested stop: end the mission, kill sessions, outcome from task stats."""
        mission = self._require_mission()
        await self._finish(mission, CheckpointStatus.COMPLETED, aborted=False, reason="stopped")
        await self._kill_all(mission)
        return mission

    async def abort(self) -> MissionState:
        """Abort the mission and kill every session."""
        mission = self._require_mission()
        await self._finish(mission, CheckpointStatus.ABORTED, aborted=True, reason="aborted")
        await self._kill_all(mission)
        return mission

    async def _kill_all(self, mission: MissionState) -> None:
        await asyncio.gather(*(self.sessions.kill_session(m.id) for m in mission.team))
        await self.checkpoints.save_session_map(self.sessions.snapshot())

    async def _on_mission_complete(self, generation: int) -> None:
        mission = self._mission
        if mission is None or mission.generation != generation:
            return
        await self._finish(mission, CheckpointStatus.COMPLETED, aborted=False, reason="completed")

    async def _finish(
        self,
        mission: MissionState,
        status: CheckpointStatus,
        aborted: bool,
        reason: str,
    ) -> None:
        """Move a mission out of running exactly once."""
        if mission.finished:
            return
        mission.finished = True
        mission.aborted = aborted
        mission.completed_at = time.time()

        # Nothing from this generation is ingested after the advance.
        self.generations.advance()
        self.completion.disarm()
        mission.final_tasks = self.board.snapshot()
        stats = self.board.stats()
        mission.final_outputs = {m.id: self.streams.output_text(m.id) for m in mission.team}
        snapshot = self._snapshot(mission)
        if not mission.superseded:
            self._awaiting_report[mission.mission_id] = mission
        await self.streams.close_all()
        monitor = self._monitor_task
        if monitor is not None and not monitor.done() and monitor is not asyncio.current_task():
            monitor.cancel()

        async with self._checkpoint_lock:
            await self.checkpoints.archive(snapshot, status)
        mission.status = status

        event_type = EventType.MISSION_ABORTED if aborted else EventType.MISSION_COMPLETE
        await self._emit(
            event_type,
            None,
            {"status": status.value, "reason": reason, "task_stats": stats.model_dump()},
            mission=mission,
        )
        logger.info(
            "mission_finished",
            mission_id=mission.mission_id,
            status=status.value,
            reason=reason,
        )

        if mission.completion is not None and not mission.completion.done():
            mission.completion.set_result(None if mission.superseded else status)
        if mission.superseded:
            self.metrics.finish(mission.mission_id)
            await self.event_bus.close_mission(mission.mission_id)

    # -------------------------------------------------------------------------
    # Pipeline steps (called by MissionGraph nodes)
    # -------------------------------------------------------------------------

    async def publish_tasks(self, generation: int) -> list[str]:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "publish_tasks"):
            return []
        tasks = self.board.snapshot()
        for task in tasks:
            await self._emit(
                EventType.TASK_CREATED,
                task.agent_id,
                {
                    "task_id": task.id,
                    "title": task.title,
                    "status": task.status.value,
                    "priority": task.priority.value,
                },
            )
        return [task.id for task in tasks]

    async def provision_sessions(self, generation: int) -> dict[str, AgentSession]:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "provision_sessions"):
            return {}
        for member in mission.team:
            if self.sessions.session_for(member.id) is None:
                await self._set_status(member.id, AgentState.SPAWNING, "spawn")
        persisted = await self.checkpoints.load_session_map()
        return await self.sessions.ensure_sessions(
            mission.team,
            generation,
            on_session_ready=self._make_session_ready(generation),
            on_spawn_failed=self._make_spawn_failed(generation),
            persisted=persisted,
        )

    async def dispatch_tasks(self, generation: int) -> None:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "dispatch_tasks"):
            return
        await self.dispatcher.dispatch(
            mission.mission_id,
            mission.goal,
            mission.team,
            mission.process_type,
            generation,
        )
        if self.generations.is_stale(generation, "dispatch_complete"):
            return
        self.completion.mark_dispatch_complete()
        self.completion.evaluate(self.statuses.statuses, generation)

    async def wait_for_completion(self, mission_id: str) -> CheckpointStatus | None:
        mission = self._awaiting_report.get(mission_id)
        if mission is None and self._mission is not None and self._mission.mission_id == mission_id:
            mission = self._mission
        if mission is None or mission.completion is None:
            return None
        return await asyncio.shield(mission.completion)

    async def finalize_report(self, mission_id: str) -> MissionReport | None:
        """Build the report once for a finished mission."""
        mission = self._awaiting_report.pop(mission_id, None)
        if mission is None or mission.superseded:
            return None

        final_metrics = self.metrics.finish(mission_id)
        report = self.reports.build(
            mission_id=mission_id,
            label=mission.label,
            goal=mission.goal,
            team=mission.team,
            tasks=mission.final_tasks,
            outputs=mission.final_outputs,
            artifacts=mission.artifacts,
            token_count=final_metrics.total_tokens if final_metrics else 0,
            started_at=mission.started_at,
            aborted=mission.aborted,
            completed_at=mission.completed_at,
        )
        mission.report = report
        await self.reports.save(report)
        await self._emit(
            EventType.REPORT_READY,
            None,
            {
                "outcome": report.outcome.value,
                "cost_estimate": report.cost_estimate,
                "token_count": report.token_count,
                "report_text": report.report_text,
            },
            mission=mission,
        )
        await self.event_bus.close_mission(mission_id)
        return report

    # -------------------------------------------------------------------------
    # Session callbacks
    # -------------------------------------------------------------------------

    def _make_session_ready(self, generation: int):
        async def on_session_ready(member: TeamMember, session: AgentSession, reused: bool) -> None:
            if self.generations.is_stale(generation, "session_ready"):
                return
            await self._emit(
                EventType.AGENT_SPAWNED,
                member.id,
                {"session_key": session.session_key, "model": session.model_used, "reused": reused},
            )
            if self.statuses.status_of(member.id) == AgentState.SPAWNING:
                await self._set_status(member.id, AgentState.NONE, "spawn")
            await self.checkpoints.save_session_map(self.sessions.snapshot())
            await self._save_checkpoint()
            await self._sync_streams(generation)

        return on_session_ready

    def _make_spawn_failed(self, generation: int):
        async def on_spawn_failed(member: TeamMember, error: str) -> None:
            if self.generations.is_stale(generation, "spawn_failed"):
                return
            await self._emit(EventType.AGENT_SPAWN_FAILED, member.id, {"error": error})
            await self._set_status(member.id, AgentState.ERROR, "spawn")

        return on_spawn_failed

    async def _sync_streams(self, generation: int) -> None:
        mission = self._mission
        if mission is None:
            return
        await self.streams.sync([m.id for m in mission.team], self.sessions.snapshot(), generation)

    # -------------------------------------------------------------------------
    # StreamHandler implementation
    # -------------------------------------------------------------------------

    async def on_stream_output(
        self, agent_id: str, lines: list[str], tokens: int, generation: int
    ) -> None:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "stream_output"):
            return
        if tokens:
            self.metrics.record_tokens(mission.mission_id, agent_id, tokens)
        if not lines and not tokens:
            return
        self.completion.note_activity()
        await self._emit(EventType.AGENT_OUTPUT, agent_id, {"lines": lines, "tokens": tokens})
        if lines:
            if self.statuses.status_of(agent_id) in (
                AgentState.NONE,
                AgentState.IDLE,
                AgentState.STOPPED,
                AgentState.SPAWNING,
            ):
                await self._set_status(agent_id, AgentState.ACTIVE, "push")
            await self._scan_artifacts(mission, agent_id, self.streams.output_text(agent_id))

    async def on_stream_tool(self, agent_id: str, tool: str, generation: int) -> None:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "stream_tool"):
            return
        self.metrics.record_tool_call(mission.mission_id, agent_id)
        self.completion.note_activity()
        await self._emit(EventType.AGENT_TOOL_CALL, agent_id, {"tool": tool})

    async def on_turn_end(
        self,
        agent_id: str,
        final_text: str,
        state: str,
        error: str | None,
        generation: int,
    ) -> None:
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "turn_end"):
            return
        member = mission.member(agent_id)
        if member is None:
            return
        self.metrics.record_turn(mission.mission_id, agent_id)
        session = self.sessions.session_for(agent_id)
        done_key = session.session_key if session else agent_id

        if state == "aborted":
            await self._set_status(agent_id, AgentState.STOPPED, "turn")
        elif state == "error":
            logger.warning("agent_turn_failed", agent_id=agent_id, error=error)
            await self._set_status(agent_id, AgentState.ERROR, "turn", message=error)
            self.completion.record_done(done_key)
            await self.board.complete_agent(agent_id)
        else:
            await self._scan_artifacts(mission, agent_id, final_text)
            for request in await self.approvals.add_from_agent(agent_id, member.name, final_text):
                await self._emit(
                    EventType.APPROVAL_REQUESTED,
                    agent_id,
                    {"approval": request.model_dump(mode="json")},
                )
            outcome = classify(final_text)
            if outcome == TurnOutcome.COMPLETED:
                await self._set_status(agent_id, AgentState.IDLE, "turn", message=_preview(final_text))
                self.completion.record_done(done_key)
                await self.board.complete_agent(agent_id)
                await self._emit(
                    EventType.AGENT_TURN_COMPLETE,
                    agent_id,
                    {"preview": _preview(final_text)},
                )
            else:
                await self._set_status(
                    agent_id,
                    AgentState.WAITING_FOR_INPUT,
                    "turn",
                    message=_preview(final_text),
                )
                await self._emit(EventType.AGENT_WAITING, agent_id, {"preview": _preview(final_text)})

        if self.generations.is_current(generation):
            self.completion.evaluate(self.statuses.statuses, generation)

    async def on_stream_error(self, agent_id: str, error: str, generation: int) -> None:
        if self._mission is None or self.generations.is_stale(generation, "stream_error"):
            return
        logger.warning("agent_stream_error", agent_id=agent_id, error=error)
        await self._set_status(agent_id, AgentState.ERROR, "push", message=error)

    async def _scan_artifacts(self, mission: MissionState, agent_id: str, text: str) -> None:
        member = mission.member(agent_id)
        if member is None or not text:
            return
        added = merge_artifacts(mission.artifacts, extract_artifacts(agent_id, member.name, text))
        for artifact in added:
            await self._emit(
                EventType.ARTIFACT_CREATED,
                agent_id,
                {"artifact": artifact.model_dump(mode="json")},
            )

    # -------------------------------------------------------------------------
    # Monitor loop
    # -------------------------------------------------------------------------

    async def _monitor_loop(self, generation: int) -> None:
        while self.generations.is_current(generation):
            try:
                await self.tick(generation)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("mission_monitor_tick_failed", generation=generation, error=str(e))
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def tick(self, generation: int, now: float | None = None) -> None:
        """One reconciler tick: poll, prune/sync streams, approvals, completion."""
        mission = self._mission
        if mission is None or self.generations.is_stale(generation, "tick"):
            return
        now = time.time() if now is None else now

        try:
            records = await self.gateway.list_sessions()
        except GatewayError as e:
            logger.warning("session_poll_failed", error=str(e))
            records = None
        if self.generations.is_stale(generation, "tick_poll"):
            return

        if records is not None:
            by_key = {record.key: record for record in records}
            observations = {}
            for agent_id, session in self.sessions.snapshot().items():
                record = by_key.get(session.session_key)
                observations[agent_id] = (
                    self.statuses.observe(record.updated_at, record.error, record.last_message, now)
                    if record is not None
                    else None
                )
            for agent_id, previous, current in self.statuses.apply_poll(observations, now=now):
                if current == AgentState.ACTIVE:
                    self.streams.revive(agent_id)
                    self.completion.note_activity()
                await self._emit(
                    EventType.AGENT_STATUS,
                    agent_id,
                    {"status": current.value, "previous": previous.value, "source": "poll"},
                )

        await self.streams.prune_stale(now)
        await self._sync_streams(generation)

        try:
            raw_approvals = await self.gateway.list_approvals()
        except GatewayError as e:
            logger.debug("approval_poll_failed", error=str(e))
            raw_approvals = []
        if self.generations.is_stale(generation, "tick_approvals"):
            return
        for request in await self.approvals.merge_gateway(raw_approvals, self._agent_for_key):
            await self._emit(
                EventType.APPROVAL_REQUESTED,
                request.agent_id,
                {"approval": request.model_dump(mode="json")},
            )

        self.completion.evaluate(self.statuses.statuses, generation)

    def _agent_for_key(self, session_key: str) -> tuple[str | None, str | None]:
        agent_id = self.sessions.agent_for_key(session_key)
        mission = self._mission
        member = mission.member(agent_id) if mission and agent_id else None
        return agent_id, member.name if member else None

    # -------------------------------------------------------------------------
    # Human actions
    # -------------------------------------------------------------------------

    async def steer(self, agent_id: str, message: str) -> None:
        """Send an agent a directive; clears waiting_for_input."""
        self._require_member(agent_id)
        session = self._require_session(agent_id)
        await self.gateway.send_message(session.session_key, system_directive(message))
        self.streams.revive(agent_id)
        self.completion.note_activity()
        await self._set_status(agent_id, AgentState.ACTIVE, "human")
        await self._sync_streams(self.generations.current)
        logger.info("agent_steered", agent_id=agent_id)

    async def pause(self, agent_id: str, paused: bool = True) -> None:
        """Pause or resume an agent. The mission is paused when every agent is."""
        mission, _ = self._require_member(agent_id)
        session = self._require_session(agent_id)
        directive = PAUSE_DIRECTIVE if paused else RESUME_DIRECTIVE
        await self.gateway.send_message(session.session_key, system_directive(directive))
        if not paused:
            self.streams.revive(agent_id)
        await self._set_status(agent_id, AgentState.PAUSED if paused else AgentState.ACTIVE, "human")

        statuses = self.statuses.statuses()
        all_paused = all(statuses.get(m.id) == AgentState.PAUSED for m in mission.team)
        mission.status = CheckpointStatus.PAUSED if all_paused else CheckpointStatus.RUNNING
        await self._save_checkpoint()
        logger.info("agent_pause_toggled", agent_id=agent_id, paused=paused)

    async def kill(self, agent_id: str) -> None:
        """Kill an agent's session. Its unfinished tasks become blocked."""
        _, member = self._require_member(agent_id)
        session = self.sessions.session_for(agent_id)
        await self.streams.close(agent_id)
        await self.sessions.kill_session(agent_id)
        await self._set_status(agent_id, AgentState.STOPPED, "human")
        self.completion.record_done(session.session_key if session else agent_id)
        unfinished = [
            t.id for t in self.board.for_agent(agent_id) if t.status not in (TaskStatus.DONE, TaskStatus.BLOCKED)
        ]
        await self.board.set_status(unfinished, TaskStatus.BLOCKED)
        await self.checkpoints.save_session_map(self.sessions.snapshot())
        await self._save_checkpoint()
        logger.info("agent_killed", agent_id=agent_id, name=member.name)
        self.completion.evaluate(self.statuses.statuses, self.generations.current)

    async def respawn(self, agent_id: str) -> AgentSession:
        """Replace an agent's session with a fresh one."""
        mission, member = self._require_member(agent_id)
        await self.streams.close(agent_id)
        await self.sessions.kill_session(agent_id)
        self.sessions.forget(agent_id)
        await self._set_status(agent_id, AgentState.SPAWNING, "human")
        generation = mission.generation
        await self.sessions.ensure_sessions(
            [member],
            generation,
            on_session_ready=self._make_session_ready(generation),
            on_spawn_failed=self._make_spawn_failed(generation),
        )
        session = self.sessions.session_for(agent_id)
        if session is None:
            raise MissionError(f"respawn failed for agent {agent_id}", status_code=502)
        return session

    async def redispatch(self, agent_id: str) -> bool:
        """Send an agent its tasks again with a fresh idempotency key."""
        mission, member = self._require_member(agent_id)
        self.streams.revive(agent_id)
        ok = await self.dispatcher.redispatch(
            mission.mission_id,
            member,
            mission.goal,
            mission.generation,
        )
        await self._sync_streams(mission.generation)
        return ok

    async def resolve_approval(self, approval_id: str, approve: bool) -> ApprovalRequest:
        """Approve or deny a pending approval; clears waiting on its agent."""
        request = await self.approvals.resolve(approval_id, approve, send_directive=self._send_directive)
        if request is None:
            raise MissionError(f"no pending approval: {approval_id}", status_code=404)
        if request.agent_id and self.statuses.status_of(request.agent_id) == AgentState.WAITING_FOR_INPUT:
            await self._set_status(request.agent_id, AgentState.ACTIVE, "human")
        await self._emit(
            EventType.APPROVAL_RESOLVED,
            request.agent_id,
            {"approval": request.model_dump(mode="json")},
        )
        return request

    async def _send_directive(self, agent_id: str, message: str) -> None:
        session = self.sessions.session_for(agent_id)
        if session is None:
            logger.warning("directive_without_session", agent_id=agent_id)
            return
        await self.gateway.send_message(session.session_key, message)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _set_status(
        self,
        agent_id: str,
        status: AgentState,
        source: str,
        message: str | None = None,
    ) -> None:
        terminal = status in (AgentState.IDLE, AgentState.WAITING_FOR_INPUT, AgentState.ERROR)
        previous, current = self.statuses.record_push(
            agent_id,
            status,
            turn_ended=terminal,
            message=message,
        )
        if previous != current:
            await self._emit(
                EventType.AGENT_STATUS,
                agent_id,
                {"status": current.value, "previous": previous.value, "source": source},
            )

    async def _on_tasks_changed(self, changed: list[Task]) -> None:
        for task in changed:
            await self._emit(
                EventType.TASK_STATUS,
                task.agent_id,
                {"task_id": task.id, "title": task.title, "status": task.status.value},
            )
        await self._save_checkpoint()

    def _snapshot(self, mission: MissionState) -> MissionCheckpoint:
        return MissionCheckpoint(
            id=mission.mission_id,
            label=mission.label,
            goal=mission.goal,
            process_type=mission.process_type,
            team=list(mission.team),
            tasks=self.board.snapshot(),
            agent_sessions=self.sessions.snapshot(),
            status=mission.status,
            started_at=mission.started_at,
        )

    async def _save_checkpoint(self) -> None:
        mission = self._mission
        if mission is None or mission.finished:
            return
        async with self._checkpoint_lock:
            if mission.finished:
                return
            snapshot = self._snapshot(mission)
            saved = await self.checkpoints.save(snapshot)
        if saved:
            await self._emit(
                EventType.CHECKPOINT_SAVED,
                None,
                {"status": snapshot.status.value, "task_count": len(snapshot.tasks)},
            )

    async def _emit(
        self,
        event_type: EventType,
        agent_id: str | None,
        data: dict[str, Any],
        mission: MissionState | None = None,
    ) -> None:
        mission = mission or self._mission
        if mission is None:
            return
        member = mission.member(agent_id) if agent_id else None
        await self.event_bus.publish(
            MissionEvent(
                type=event_type,
                mission_id=mission.mission_id,
                agent_id=agent_id,
                agent_name=member.name if member else None,
                data=data,
            )
        )
