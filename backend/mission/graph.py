"""LangGraph pipeline for one mission run.

Graph Structure:
    START -> decompose -> ensure_sessions -> dispatch -> await_completion -> report -> END

Each node delegates to the MissionEngine, which owns all mutable state.
Conditional edges end the run early when decomposition produced no
tasks or a newer launch has superseded the mission.
"""

from typing import TYPE_CHECKING, Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

if TYPE_CHECKING:
    from mission.engine import MissionEngine

logger = structlog.get_logger(__name__)


class MissionGraphState(TypedDict):
    """State for the mission pipeline graph.

    Attributes:
        mission_id: Mission this run belongs to
        generation: Launch generation the run was started under
        goal: The mission goal
        process_type: Dispatch topology
        task_ids: Tasks produced by decomposition
        status: Current pipeline status
        final_status: Checkpoint status the mission finished with
        outcome: Report outcome classification
        error_message: Error message if the pipeline failed
    """

    mission_id: str
    generation: int
    goal: str
    process_type: str
    task_ids: list[str]
    status: Literal[
        "planning",
        "provisioning",
        "dispatching",
        "running",
        "reporting",
        "complete",
        "superseded",
        "failed",
    ]
    final_status: str | None
    outcome: str | None
    error_message: str | None


def create_mission_initial_state(
    mission_id: str,
    generation: int,
    goal: str,
    process_type: str,
) -> MissionGraphState:
    """Create the initial state for a mission graph run."""
    return MissionGraphState(
        mission_id=mission_id,
        generation=generation,
        goal=goal,
        process_type=process_type,
        task_ids=[],
        status="planning",
        final_status=None,
        outcome=None,
        error_message=None,
    )


class MissionGraph:
    """The mission pipeline.

    Usage:
        >>> graph = MissionGraph(engine)
        >>> state = create_mission_initial_state(mission_id, generation, goal, "parallel")
        >>> final_state = await graph.run(state)
    """

    NODES = ["decompose", "ensure_sessions", "dispatch", "await_completion", "report"]

    def __init__(self, engine: "MissionEngine") -> None:
        self.engine = engine
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(MissionGraphState)

        graph.add_node("decompose", self._decompose)
        graph.add_node("ensure_sessions", self._ensure_sessions)
        graph.add_node("dispatch", self._dispatch)
        graph.add_node("await_completion", self._await_completion)
        graph.add_node("report", self._report)

        graph.add_edge(START, "decompose")
        graph.add_conditional_edges(
            "decompose",
            self._route_after_decompose,
            {"continue": "ensure_sessions", "end": END},
        )
        graph.add_conditional_edges(
            "ensure_sessions",
            self._route_if_current,
            {"continue": "dispatch", "end": END},
        )
        graph.add_conditional_edges(
            "dispatch",
            self._route_if_current,
            {"continue": "await_completion", "end": END},
        )
        graph.add_conditional_edges(
            "await_completion",
            self._route_after_completion,
            {"report": "report", "end": END},
        )
        graph.add_edge("report", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _decompose(self, state: MissionGraphState) -> dict[str, Any]:
        """Publish the decomposed task list for the mission."""
        if self.engine.is_superseded(state["mission_id"], state["generation"]):
            return {"status": "superseded"}
        task_ids = await self.engine.publish_tasks(state["generation"])
        if not task_ids:
            return {"status": "failed", "error_message": "goal produced no tasks"}
        return {"task_ids": task_ids, "status": "provisioning"}

    async def _ensure_sessions(self, state: MissionGraphState) -> dict[str, Any]:
        """Spawn or reuse one gateway session per team member."""
        if self.engine.is_superseded(state["mission_id"], state["generation"]):
            return {"status": "superseded"}
        await self.engine.provision_sessions(state["generation"])
        return {"status": "dispatching"}

    async def _dispatch(self, state: MissionGraphState) -> dict[str, Any]:
        """Send every agent its task bundle under the chosen topology."""
        if self.engine.is_superseded(state["mission_id"], state["generation"]):
            return {"status": "superseded"}
        await self.engine.dispatch_tasks(state["generation"])
        return {"status": "running"}

    async def _await_completion(self, state: MissionGraphState) -> dict[str, Any]:
        """Suspend until the mission finishes (completion, stop or abort)."""
        final_status = await self.engine.wait_for_completion(state["mission_id"])
        if final_status is None:
            return {"status": "superseded"}
        return {"status": "reporting", "final_status": final_status.value}

    async def _report(self, state: MissionGraphState) -> dict[str, Any]:
        """Build, store and publish the mission report."""
        report = await self.engine.finalize_report(state["mission_id"])
        if report is None:
            return {"status": "superseded"}
        return {"status": "complete", "outcome": report.outcome.value}

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _route_after_decompose(self, state: MissionGraphState) -> str:
        if state.get("status") in ("failed", "superseded"):
            logger.info(
                "mission_graph_ended_early",
                mission_id=state["mission_id"],
                status=state.get("status"),
            )
            return "end"
        return "continue"

    def _route_if_current(self, state: MissionGraphState) -> str:
        if state.get("status") == "superseded":
            return "end"
        if self.engine.is_superseded(state["mission_id"], state["generation"]):
            return "end"
        return "continue"

    def _route_after_completion(self, state: MissionGraphState) -> str:
        return "end" if state.get("status") == "superseded" else "report"

    async def run(self, initial_state: MissionGraphState) -> MissionGraphState:
        """Run the graph to completion."""
        logger.info(
            "mission_graph_started",
            mission_id=initial_state["mission_id"],
            generation=initial_state["generation"],
        )
        final_state = await self._compiled_graph.ainvoke(initial_state)
        logger.info(
            "mission_graph_finished",
            mission_id=initial_state["mission_id"],
            status=final_state.get("status"),
        )
        return final_state


def create_mission_graph(engine: "MissionEngine") -> MissionGraph:
    """Factory function to create a mission graph bound to an engine."""
    return MissionGraph(engine)
