"""Tests for mission/reconciler.py -- push/poll status merge.

The merge rules are pure, so most tests here call ``merge`` directly with
fixed clocks. StatusReconciler is covered for its bookkeeping.
"""

import pytest

from mission.reconciler import (
    PollObservation,
    PushSignal,
    StatusReconciler,
    derive_poll_status,
    merge,
)
from models.schemas import AgentState, AgentStatusRecord


def _record(status: AgentState, **kwargs: object) -> AgentStatusRecord:
    return AgentStatusRecord(agent_id="agent-1", status=status, **kwargs)


def _poll(status: AgentState, updated_at: float | None = None, error: str | None = None) -> PollObservation:
    return PollObservation(status=status, updated_at=updated_at, error=error)


# =========================================================================
# derive_poll_status
# =========================================================================


class TestDerivePollStatus:
    """Recency windows."""

    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (0.0, AgentState.ACTIVE),
            (29.0, AgentState.ACTIVE),
            (31.0, AgentState.IDLE),
            (299.0, AgentState.IDLE),
            (301.0, AgentState.STOPPED),
        ],
    )
    def test_windows(self, age: float, expected: AgentState) -> None:
        assert derive_poll_status(1000.0 - age, 1000.0) == expected

    def test_error_always_wins(self) -> None:
        assert derive_poll_status(1000.0, 1000.0, error="boom") == AgentState.ERROR

    def test_unknown_recency_is_stopped(self) -> None:
        assert derive_poll_status(None, 1000.0) == AgentState.STOPPED


# =========================================================================
# merge precedence
# =========================================================================


class TestMerge:
    """Precedence between push signals and poll observations."""

    def test_poll_error_overrides_running_statuses(self) -> None:
        for status in (AgentState.ACTIVE, AgentState.IDLE, AgentState.NONE):
            merged = merge(None, _poll(AgentState.ERROR, 100.0, "crashed"), _record(status), now=100.0)
            assert merged.status == AgentState.ERROR

    @pytest.mark.parametrize("status", [AgentState.WAITING_FOR_INPUT, AgentState.PAUSED])
    def test_poll_error_does_not_release_held_agent(self, status: AgentState) -> None:
        previous = _record(status, completed_at=100.0)
        merged = merge(None, _poll(AgentState.ERROR, 90.0, "boom"), previous, now=200.0)
        assert merged.status == status

    @pytest.mark.parametrize("status", [AgentState.WAITING_FOR_INPUT, AgentState.PAUSED])
    def test_missing_session_does_not_stop_held_agent(self, status: AgentState) -> None:
        first = merge(None, None, _record(status), now=200.0, missing_grace_seconds=60.0)
        later = merge(None, None, first, now=261.0, missing_grace_seconds=60.0)
        assert later.status == status
        assert later.missing_since == 200.0

    def test_turn_end_idle_survives_lagging_active_poll(self) -> None:
        previous = _record(AgentState.IDLE, completed_at=100.0)
        merged = merge(None, _poll(AgentState.ACTIVE, 103.0), previous, now=104.0)
        assert merged.status == AgentState.IDLE
        assert merged.completed_at == 100.0

    def test_turn_end_idle_yields_to_newer_activity(self) -> None:
        previous = _record(AgentState.IDLE, completed_at=100.0)
        merged = merge(None, _poll(AgentState.ACTIVE, 110.0), previous, now=111.0)
        assert merged.status == AgentState.ACTIVE
        assert merged.completed_at is None

    def test_plain_idle_follows_poll(self) -> None:
        merged = merge(None, _poll(AgentState.ACTIVE, 50.0), _record(AgentState.IDLE), now=51.0)
        assert merged.status == AgentState.ACTIVE

    @pytest.mark.parametrize("polled", [AgentState.IDLE, AgentState.STOPPED])
    def test_waiting_survives_non_active_polls(self, polled: AgentState) -> None:
        previous = _record(AgentState.WAITING_FOR_INPUT, completed_at=100.0)
        merged = merge(None, _poll(polled, 90.0), previous, now=500.0)
        assert merged.status == AgentState.WAITING_FOR_INPUT

    def test_waiting_yields_to_newer_activity(self) -> None:
        previous = _record(AgentState.WAITING_FOR_INPUT, completed_at=100.0)
        merged = merge(None, _poll(AgentState.ACTIVE, 120.0), previous, now=121.0)
        assert merged.status == AgentState.ACTIVE

    def test_paused_ignores_polls(self) -> None:
        merged = merge(None, _poll(AgentState.ACTIVE, 100.0), _record(AgentState.PAUSED), now=100.0)
        assert merged.status == AgentState.PAUSED

    @pytest.mark.parametrize("polled", [AgentState.IDLE, AgentState.STOPPED])
    def test_error_is_not_downgraded(self, polled: AgentState) -> None:
        previous = _record(AgentState.ERROR, last_seen=100.0)
        merged = merge(None, _poll(polled, 90.0), previous, now=500.0)
        assert merged.status == AgentState.ERROR

    def test_error_cleared_by_fresh_activity(self) -> None:
        previous = _record(AgentState.ERROR, last_seen=100.0)
        merged = merge(None, _poll(AgentState.ACTIVE, 150.0), previous, now=151.0)
        assert merged.status == AgentState.ACTIVE

    def test_missing_session_keeps_status_for_grace_window(self) -> None:
        previous = _record(AgentState.ACTIVE)
        first = merge(None, None, previous, now=100.0, missing_grace_seconds=60.0)
        assert first.status == AgentState.ACTIVE
        assert first.missing_since == 100.0

        still = merge(None, None, first, now=150.0, missing_grace_seconds=60.0)
        assert still.status == AgentState.ACTIVE

        gone = merge(None, None, still, now=161.0, missing_grace_seconds=60.0)
        assert gone.status == AgentState.STOPPED

    def test_missing_error_stays_error(self) -> None:
        merged = merge(None, None, _record(AgentState.ERROR), now=1000.0, missing_grace_seconds=0.0)
        assert merged.status == AgentState.ERROR

    def test_reappearing_session_clears_missing_since(self) -> None:
        previous = _record(AgentState.ACTIVE, missing_since=100.0)
        merged = merge(None, _poll(AgentState.ACTIVE, 120.0), previous, now=120.0)
        assert merged.missing_since is None

    def test_push_turn_end_records_completion_time(self) -> None:
        push = PushSignal(status=AgentState.IDLE, at=200.0, turn_ended=True, message="done")
        merged = merge(push, None, _record(AgentState.ACTIVE), poll_ran=False)
        assert merged.status == AgentState.IDLE
        assert merged.completed_at == 200.0
        assert merged.last_message == "done"
        assert merged.last_seen == 200.0

    def test_push_then_lagging_poll_in_same_merge(self) -> None:
        push = PushSignal(status=AgentState.IDLE, at=200.0, turn_ended=True)
        merged = merge(push, _poll(AgentState.ACTIVE, 199.0), _record(AgentState.ACTIVE), now=200.0)
        assert merged.status == AgentState.IDLE

    def test_active_push_clears_completion(self) -> None:
        push = PushSignal(status=AgentState.ACTIVE, at=300.0)
        previous = _record(AgentState.IDLE, completed_at=200.0)
        merged = merge(push, None, previous, poll_ran=False)
        assert merged.status == AgentState.ACTIVE
        assert merged.completed_at is None

    def test_previous_is_not_mutated(self) -> None:
        previous = _record(AgentState.ACTIVE)
        merge(None, _poll(AgentState.STOPPED, 1.0), previous, now=1000.0)
        assert previous.status == AgentState.ACTIVE


# =========================================================================
# StatusReconciler
# =========================================================================


class TestStatusReconciler:
    """Owner of the per-agent status map."""

    def test_reset_starts_every_agent_at_none(self) -> None:
        reconciler = StatusReconciler()
        reconciler.reset(["agent-1", "agent-2"])
        assert reconciler.statuses() == {
            "agent-1": AgentState.NONE,
            "agent-2": AgentState.NONE,
        }

    def test_unknown_agent_reads_as_none(self) -> None:
        assert StatusReconciler().status_of("ghost") == AgentState.NONE

    def test_record_push_returns_transition(self) -> None:
        reconciler = StatusReconciler()
        reconciler.reset(["agent-1"])
        assert reconciler.record_push("agent-1", AgentState.ACTIVE) == (
            AgentState.NONE,
            AgentState.ACTIVE,
        )
        assert reconciler.record_push("agent-1", AgentState.ACTIVE) == (
            AgentState.ACTIVE,
            AgentState.ACTIVE,
        )

    def test_set_status_marks_turn_end_for_terminal_states(self) -> None:
        reconciler = StatusReconciler()
        reconciler.reset(["agent-1"])
        reconciler.set_status("agent-1", AgentState.IDLE)
        assert reconciler.get("agent-1").completed_at is not None

        reconciler.set_status("agent-1", AgentState.ACTIVE)
        assert reconciler.get("agent-1").completed_at is None

    def test_apply_poll_reports_only_changes(self) -> None:
        reconciler = StatusReconciler()
        reconciler.reset(["agent-1", "agent-2"])
        reconciler.set_status("agent-2", AgentState.PAUSED)
        now = 1000.0
        changes = reconciler.apply_poll(
            {
                "agent-1": reconciler.observe(now - 1.0, None, "working", now),
                "agent-2": reconciler.observe(now - 1.0, None, None, now),
            },
            now=now,
        )
        assert changes == [("agent-1", AgentState.NONE, AgentState.ACTIVE)]
        assert reconciler.get("agent-1").last_message == "working"

    def test_observe_uses_configured_windows(self) -> None:
        reconciler = StatusReconciler(active_window=5.0, idle_window=10.0)
        assert reconciler.observe(89.0, None, None, 100.0).status == AgentState.STOPPED
        assert reconciler.observe(93.0, None, None, 100.0).status == AgentState.IDLE
        assert reconciler.observe(99.0, None, None, 100.0).status == AgentState.ACTIVE
