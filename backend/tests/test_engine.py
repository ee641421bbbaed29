"""Tests for mission/engine.py -- end-to-end mission lifecycle.

Drives a MissionEngine against the in-memory FakeGateway: launch,
provisioning, dispatch, turn-end completion, reports, supersede and the
human controls.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable

import pytest

from config import Settings
from events.bus import EventBus
from events.types import EventType
from mission.checkpoint import CheckpointStore
from mission.engine import MissionEngine, MissionError
from mission.gateway import GatewayEvent, SessionRecord
from models.database import StateStore
from models.schemas import (
    AgentSession,
    AgentState,
    ApprovalStatus,
    CheckpointStatus,
    MissionCheckpoint,
    MissionOutcome,
    ProcessType,
    TaskStatus,
)
from tests.conftest import FakeGateway, make_team

GOAL = "Research e-bike pricing. Then write a short summary."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture()
async def engine(
    fake_gateway: FakeGateway,
    state_store: StateStore,
    event_bus: EventBus,
    fast_settings: Settings,
) -> AsyncIterator[MissionEngine]:
    engine = MissionEngine(fake_gateway, state_store, event_bus, config=fast_settings)
    await engine.startup()
    yield engine
    await engine.shutdown()


async def launch_and_dispatch(
    engine: MissionEngine,
    fake_gateway: FakeGateway,
    size: int = 2,
    process_type: ProcessType = ProcessType.PARALLEL,
):
    """Launch a mission and wait until every agent has been dispatched."""
    before = len(fake_gateway.calls_to("dispatch"))
    mission = await engine.launch(GOAL, make_team(size), process_type)
    await wait_until(lambda: len(fake_gateway.calls_to("dispatch")) >= before + size)
    await wait_until(
        lambda: all(status == AgentState.ACTIVE for status in engine.statuses.statuses().values())
    )
    return mission


def session_key(engine: MissionEngine, agent_id: str) -> str:
    session = engine.sessions.session_for(agent_id)
    assert session is not None
    return session.session_key


def finish_turn(engine: MissionEngine, fake_gateway: FakeGateway, agent_id: str, text: str) -> None:
    fake_gateway.push(
        session_key(engine, agent_id),
        GatewayEvent("done", {"state": "final", "message": {"text": text}}),
    )


def event_types(event_bus: EventBus, mission_id: str) -> list[EventType]:
    return [event.type for event in event_bus.get_event_history(mission_id)]


# =========================================================================
# Launch
# =========================================================================


class TestLaunch:
    """Launch validation, provisioning and dispatch."""

    async def test_empty_team_rejected(self, engine: MissionEngine) -> None:
        with pytest.raises(MissionError) as exc_info:
            await engine.launch(GOAL, [])
        assert exc_info.value.status_code == 400
        assert engine.mission is None

    async def test_launch_spawns_and_dispatches(
        self,
        engine: MissionEngine,
        fake_gateway: FakeGateway,
        event_bus: EventBus,
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        assert engine.is_running
        assert mission.label == GOAL
        assert len(fake_gateway.calls_to("spawn_session")) == 2
        assert set(engine.sessions.snapshot()) == {"agent-1", "agent-2"}
        statuses = engine.statuses.statuses()
        assert statuses == {"agent-1": AgentState.ACTIVE, "agent-2": AgentState.ACTIVE}

        types = event_types(event_bus, mission.mission_id)
        assert types.index(EventType.MISSION_STARTED) < types.index(EventType.TASK_CREATED)
        assert types.count(EventType.AGENT_SPAWNED) == 2

        checkpoint = await engine.checkpoints.load()
        assert checkpoint is not None
        assert checkpoint.id == mission.mission_id
        assert set(checkpoint.agent_sessions) == {"agent-1", "agent-2"}

    async def test_dispatch_keys_are_scoped_to_mission(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        keys = [args[3] for args in fake_gateway.calls_to("dispatch")]

        assert len(set(keys)) == 2
        assert all(key.startswith(f"{mission.mission_id}:") for key in keys)

    async def test_launch_takes_back_saved_sessions(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        fake_gateway.add_session("agent:main:saved", "mission-researcher-agent-1")
        await engine.checkpoints.save_session_map(
            {"agent-1": AgentSession(agent_id="agent-1", session_key="agent:main:saved")}
        )

        await launch_and_dispatch(engine, fake_gateway)

        assert session_key(engine, "agent-1") == "agent:main:saved"
        assert [args[0] for args in fake_gateway.calls_to("spawn_session")] == ["agent-2"]

    async def test_detail_snapshot(self, engine: MissionEngine, fake_gateway: FakeGateway) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        detail = engine.detail()

        assert detail is not None
        assert detail.mission_id == mission.mission_id
        assert detail.status == CheckpointStatus.RUNNING
        assert all(t.status == TaskStatus.IN_PROGRESS for t in detail.tasks)
        assert set(detail.sessions) == {"agent-1", "agent-2"}


# =========================================================================
# Completion and reports
# =========================================================================


class TestCompletion:
    """Turn-end signals finish the mission and produce a report."""

    async def test_all_agents_complete(
        self,
        engine: MissionEngine,
        fake_gateway: FakeGateway,
        event_bus: EventBus,
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        finish_turn(engine, fake_gateway, "agent-1", "## Summary\nPrices are falling.\n[TASK_COMPLETE]")
        finish_turn(engine, fake_gateway, "agent-2", "Summary written. [TASK_COMPLETE]")
        await wait_until(lambda: mission.report is not None)

        assert mission.status == CheckpointStatus.COMPLETED
        assert mission.report.outcome == MissionOutcome.COMPLETE
        assert all(t.status == TaskStatus.DONE for t in mission.final_tasks)
        assert not engine.is_running

        types = event_types(event_bus, mission.mission_id)
        assert types.count(EventType.AGENT_TURN_COMPLETE) == 2
        assert EventType.MISSION_COMPLETE in types
        assert types[-1] == EventType.REPORT_READY

        assert await engine.checkpoints.load() is None
        history = await engine.checkpoints.history()
        assert history[0].id == mission.mission_id
        assert history[0].status == CheckpointStatus.COMPLETED
        reports = await engine.reports.history()
        assert reports[0].mission_id == mission.mission_id

    async def test_sequential_mission_waits_for_queued_agents(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        engine.dispatcher.stagger_seconds = 0.3
        mission = await engine.launch(GOAL, make_team(2), ProcessType.SEQUENTIAL)
        await wait_until(lambda: len(fake_gateway.calls_to("dispatch")) == 1)
        first = next(
            agent_id
            for agent_id, status in engine.statuses.statuses().items()
            if status == AgentState.ACTIVE
        )
        second = "agent-2" if first == "agent-1" else "agent-1"

        # The first agent finishes while the second is still queued at none.
        finish_turn(engine, fake_gateway, first, "Research done. [TASK_COMPLETE]")
        await wait_until(lambda: engine.statuses.status_of(first) == AgentState.IDLE)
        assert engine.statuses.status_of(second) == AgentState.NONE
        await asyncio.sleep(0.1)

        assert engine.is_running
        assert mission.report is None

        await wait_until(lambda: len(fake_gateway.calls_to("dispatch")) == 2)
        await wait_until(lambda: engine.statuses.status_of(second) == AgentState.ACTIVE)
        assert engine.is_running

        finish_turn(engine, fake_gateway, second, "Summary written. [TASK_COMPLETE]")
        await wait_until(lambda: mission.report is not None)
        assert mission.status == CheckpointStatus.COMPLETED

    async def test_waiting_agent_blocks_completion(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        finish_turn(engine, fake_gateway, "agent-1", "Should I compare Europe or the US?")
        finish_turn(engine, fake_gateway, "agent-2", "Done. [TASK_COMPLETE]")
        await wait_until(lambda: engine.statuses.status_of("agent-1") == AgentState.WAITING_FOR_INPUT)
        await wait_until(lambda: engine.statuses.status_of("agent-2") == AgentState.IDLE)
        await asyncio.sleep(0.1)

        assert engine.is_running
        assert mission.report is None

    async def test_steer_clears_waiting(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        finish_turn(engine, fake_gateway, "agent-1", "Should I compare Europe or the US?")
        await wait_until(lambda: engine.statuses.status_of("agent-1") == AgentState.WAITING_FOR_INPUT)

        await engine.steer("agent-1", "Compare Europe")

        assert engine.statuses.status_of("agent-1") == AgentState.ACTIVE
        key, message = fake_gateway.calls_to("send_message")[-1]
        assert key == session_key(engine, "agent-1")
        assert message.startswith("[System Directive]")
        assert "Compare Europe" in message

    async def test_output_is_buffered_and_counted(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)

        fake_gateway.push(
            session_key(engine, "agent-1"),
            GatewayEvent("chunk", {"text": "First finding about pricing\nsecond line"}),
        )
        await wait_until(lambda: bool(engine.agent_output("agent-1")[0]))

        lines, tokens = engine.agent_output("agent-1")
        assert lines[0] == "First finding about pricing"
        assert tokens > 0

    async def test_agent_output_unknown_agent(self, engine: MissionEngine, fake_gateway: FakeGateway) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        with pytest.raises(MissionError) as exc_info:
            engine.agent_output("ghost")
        assert exc_info.value.status_code == 404


# =========================================================================
# Stop, abort, supersede
# =========================================================================


class TestEndingMissions:
    """Manual endings and relaunch."""

    async def test_stop_without_mission(self, engine: MissionEngine) -> None:
        with pytest.raises(MissionError) as exc_info:
            await engine.stop()
        assert exc_info.value.status_code == 409

    async def test_stop_kills_sessions_and_reports(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)
        keys = {session_key(engine, "agent-1"), session_key(engine, "agent-2")}

        await engine.stop()
        await wait_until(lambda: mission.report is not None)

        assert mission.status == CheckpointStatus.COMPLETED
        assert mission.report.outcome == MissionOutcome.NO_OUTPUT
        assert {args[0] for args in fake_gateway.calls_to("delete_session")} == keys
        assert engine.sessions.snapshot() == {}

    async def test_abort(
        self,
        engine: MissionEngine,
        fake_gateway: FakeGateway,
        event_bus: EventBus,
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        await engine.abort()
        await wait_until(lambda: mission.report is not None)

        assert mission.status == CheckpointStatus.ABORTED
        assert mission.report.outcome == MissionOutcome.ABORTED
        assert len(fake_gateway.calls_to("abort")) == 2
        assert EventType.MISSION_ABORTED in event_types(event_bus, mission.mission_id)
        history = await engine.checkpoints.history()
        assert history[0].status == CheckpointStatus.ABORTED

    async def test_relaunch_supersedes_and_reuses_sessions(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        first = await launch_and_dispatch(engine, fake_gateway)
        first_keys = engine.sessions.snapshot()

        second = await launch_and_dispatch(engine, fake_gateway)

        assert first.superseded
        assert first.status == CheckpointStatus.ABORTED
        assert first.report is None
        assert engine.mission is second
        assert engine.is_running
        # Sessions from the first mission are found again by label.
        assert len(fake_gateway.calls_to("spawn_session")) == 2
        assert fake_gateway.calls_to("delete_session") == []
        assert {
            a: s.session_key for a, s in engine.sessions.snapshot().items()
        } == {a: s.session_key for a, s in first_keys.items()}

        await asyncio.sleep(0.05)
        assert await engine.reports.history() == []

    async def test_late_turn_end_from_superseded_mission_ignored(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        first = await launch_and_dispatch(engine, fake_gateway)
        stale_generation = first.generation
        await launch_and_dispatch(engine, fake_gateway)

        await engine.on_turn_end("agent-1", "Done [TASK_COMPLETE]", "final", None, stale_generation)

        assert engine.statuses.status_of("agent-1") == AgentState.ACTIVE
        assert engine.completion.done_count == 0


# =========================================================================
# Human controls
# =========================================================================


class TestHumanControls:
    """Pause, kill, respawn and redispatch."""

    async def test_steer_unknown_agent(self, engine: MissionEngine, fake_gateway: FakeGateway) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        with pytest.raises(MissionError) as exc_info:
            await engine.steer("ghost", "hello")
        assert exc_info.value.status_code == 404

    async def test_pause_all_pauses_mission(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)

        await engine.pause("agent-1")
        assert mission.status == CheckpointStatus.RUNNING
        await engine.pause("agent-2")
        assert mission.status == CheckpointStatus.PAUSED
        assert (await engine.checkpoints.load()).status == CheckpointStatus.PAUSED

        await engine.pause("agent-1", paused=False)
        assert mission.status == CheckpointStatus.RUNNING
        assert engine.statuses.status_of("agent-1") == AgentState.ACTIVE
        assert len(fake_gateway.calls_to("send_message")) == 3

    async def test_kill_blocks_unfinished_tasks(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        key = session_key(engine, "agent-1")

        await engine.kill("agent-1")

        assert engine.sessions.session_for("agent-1") is None
        assert fake_gateway.calls_to("delete_session") == [(key,)]
        assert engine.statuses.status_of("agent-1") == AgentState.STOPPED
        assert all(t.status == TaskStatus.BLOCKED for t in engine.board.for_agent("agent-1"))
        assert engine.is_running

    async def test_respawn_replaces_session(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        old_key = session_key(engine, "agent-1")

        session = await engine.respawn("agent-1")

        assert session.session_key != old_key
        assert session_key(engine, "agent-1") == session.session_key
        assert (old_key,) in fake_gateway.calls_to("delete_session")

    async def test_redispatch_uses_fresh_key(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)
        first_keys = {args[3] for args in fake_gateway.calls_to("dispatch")}

        assert await engine.redispatch("agent-1") is True

        last = fake_gateway.calls_to("dispatch")[-1]
        assert last[2] == "agent-1"
        assert last[3] not in first_keys


# =========================================================================
# Approvals and the monitor tick
# =========================================================================


class TestApprovalsAndTick:
    """Approval flow and reconciler polling."""

    async def test_agent_approval_round_trip(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        await launch_and_dispatch(engine, fake_gateway)

        finish_turn(engine, fake_gateway, "agent-1", "Release built.\n[APPROVAL_REQUIRED] Deploy to production")
        await wait_until(lambda: bool(engine.approvals.pending()))
        [request] = engine.approvals.pending()
        assert request.agent_id == "agent-1"

        resolved = await engine.resolve_approval(request.id, approve=True)

        assert resolved.status == ApprovalStatus.APPROVED
        key, message = fake_gateway.calls_to("send_message")[-1]
        assert key == session_key(engine, "agent-1")
        assert "[APPROVED]" in message

    async def test_resolve_unknown_approval(self, engine: MissionEngine) -> None:
        with pytest.raises(MissionError) as exc_info:
            await engine.resolve_approval("apr-missing", approve=True)
        assert exc_info.value.status_code == 404

    async def test_tick_merges_gateway_approvals(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)
        fake_gateway.approvals = [
            {"id": "gw-1", "command": "rm -rf build/", "sessionKey": session_key(engine, "agent-2")}
        ]

        await engine.tick(mission.generation)

        [request] = engine.approvals.pending()
        assert request.gateway_id == "gw-1"
        assert request.agent_id == "agent-2"
        assert request.agent_name == "Writer"

    async def test_tick_applies_poll_errors(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)
        key = session_key(engine, "agent-1")
        now = time.time()
        fake_gateway.sessions[key] = SessionRecord(
            key=key,
            label="mission-researcher",
            updated_at=now,
            error="model overloaded",
        )

        await engine.tick(mission.generation, now=now)

        assert engine.statuses.status_of("agent-1") == AgentState.ERROR
        assert engine.statuses.status_of("agent-2") == AgentState.ACTIVE

    async def test_tick_on_stale_generation_is_noop(
        self, engine: MissionEngine, fake_gateway: FakeGateway
    ) -> None:
        mission = await launch_and_dispatch(engine, fake_gateway)
        polls = len(fake_gateway.calls_to("list_sessions"))

        await engine.tick(mission.generation - 1)

        assert len(fake_gateway.calls_to("list_sessions")) == polls


# =========================================================================
# Startup recovery
# =========================================================================


class TestStartupRecovery:
    """A checkpoint left running surfaces as stale on startup."""

    async def test_stale_checkpoint_abort(
        self,
        fake_gateway: FakeGateway,
        state_store: StateStore,
        event_bus: EventBus,
        fast_settings: Settings,
    ) -> None:
        await CheckpointStore(state_store).save(
            MissionCheckpoint(id="mission_old", label="Old run", team=make_team(1))
        )
        engine = MissionEngine(fake_gateway, state_store, event_bus, config=fast_settings)
        await engine.startup()

        assert engine.stale_checkpoint is not None
        assert engine.stale_checkpoint.id == "mission_old"

        archived = await engine.resolve_stale_checkpoint("abort")

        assert archived.status == CheckpointStatus.ABORTED
        assert engine.stale_checkpoint is None
        assert await engine.checkpoints.load() is None
        assert (await engine.checkpoints.history())[0].id == "mission_old"
        await engine.shutdown()

    async def test_no_stale_checkpoint(self, engine: MissionEngine) -> None:
        assert engine.stale_checkpoint is None
        with pytest.raises(MissionError):
            await engine.resolve_stale_checkpoint("dismiss")
