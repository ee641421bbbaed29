"""Mission orchestration: decomposition, sessions, dispatch, status and reporting.

This package exports the components needed to run a mission:
- MissionEngine, the coordinator that owns the live mission
- GatewayClient for the remote agent gateway
- The pure helpers (decomposer, classifier, status merge) used by the engine
"""

from mission.classifier import TurnOutcome, classify
from mission.decomposer import decompose_goal
from mission.engine import MissionEngine, MissionError, MissionState
from mission.gateway import GatewayClient, GatewayError, GatewayEvent, SessionRecord
from mission.graph import MissionGraph, create_mission_graph, create_mission_initial_state
from mission.reconciler import PollObservation, PushSignal, StatusReconciler, merge

__all__ = [
    # Engine
    "MissionEngine",
    "MissionError",
    "MissionState",
    # Graph
    "MissionGraph",
    "create_mission_graph",
    "create_mission_initial_state",
    # Gateway
    "GatewayClient",
    "GatewayError",
    "GatewayEvent",
    "SessionRecord",
    # Pure helpers
    "TurnOutcome",
    "classify",
    "decompose_goal",
    "PollObservation",
    "PushSignal",
    "StatusReconciler",
    "merge",
]
