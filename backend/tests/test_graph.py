"""Tests for mission/graph.py -- the LangGraph mission pipeline.

The engine is mocked so each test controls what every node sees.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from mission.graph import MissionGraph, create_mission_graph, create_mission_initial_state
from models.schemas import CheckpointStatus, MissionOutcome


@pytest.fixture()
def mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.is_superseded = MagicMock(return_value=False)
    engine.publish_tasks = AsyncMock(return_value=["task-1", "task-2"])
    engine.provision_sessions = AsyncMock(return_value={})
    engine.dispatch_tasks = AsyncMock()
    engine.wait_for_completion = AsyncMock(return_value=CheckpointStatus.COMPLETED)
    engine.finalize_report = AsyncMock(
        return_value=SimpleNamespace(outcome=MissionOutcome.COMPLETE)
    )
    return engine


def _initial_state():
    return create_mission_initial_state("mission_abc", 3, "Research pricing", "parallel")


class TestInitialState:
    """create_mission_initial_state defaults."""

    def test_defaults(self) -> None:
        state = _initial_state()
        assert state["status"] == "planning"
        assert state["task_ids"] == []
        assert state["final_status"] is None
        assert state["outcome"] is None


class TestMissionGraph:
    """Node ordering and early exits."""

    async def test_full_run(self, mock_engine: MagicMock) -> None:
        final = await MissionGraph(mock_engine).run(_initial_state())

        assert final["status"] == "complete"
        assert final["task_ids"] == ["task-1", "task-2"]
        assert final["final_status"] == "completed"
        assert final["outcome"] == "complete"
        mock_engine.publish_tasks.assert_awaited_once_with(3)
        mock_engine.provision_sessions.assert_awaited_once_with(3)
        mock_engine.dispatch_tasks.assert_awaited_once_with(3)
        mock_engine.finalize_report.assert_awaited_once_with("mission_abc")

    async def test_no_tasks_ends_early(self, mock_engine: MagicMock) -> None:
        mock_engine.publish_tasks = AsyncMock(return_value=[])

        final = await MissionGraph(mock_engine).run(_initial_state())

        assert final["status"] == "failed"
        assert final["error_message"] == "goal produced no tasks"
        mock_engine.provision_sessions.assert_not_awaited()

    async def test_superseded_before_dispatch(self, mock_engine: MagicMock) -> None:
        # Current for decompose and provisioning, superseded afterwards.
        mock_engine.is_superseded = MagicMock(side_effect=[False, False, True, True, True])

        final = await MissionGraph(mock_engine).run(_initial_state())

        mock_engine.provision_sessions.assert_awaited_once()
        mock_engine.dispatch_tasks.assert_not_awaited()
        mock_engine.wait_for_completion.assert_not_awaited()
        assert final["status"] == "dispatching"

    async def test_superseded_while_waiting_skips_report(self, mock_engine: MagicMock) -> None:
        mock_engine.wait_for_completion = AsyncMock(return_value=None)

        final = await MissionGraph(mock_engine).run(_initial_state())

        assert final["status"] == "superseded"
        mock_engine.finalize_report.assert_not_awaited()

    async def test_report_already_taken(self, mock_engine: MagicMock) -> None:
        mock_engine.finalize_report = AsyncMock(return_value=None)

        final = await MissionGraph(mock_engine).run(_initial_state())

        assert final["status"] == "superseded"
        assert final["final_status"] == "completed"

    def test_factory(self, mock_engine: MagicMock) -> None:
        graph = create_mission_graph(mock_engine)
        assert isinstance(graph, MissionGraph)
        assert graph.engine is mock_engine
