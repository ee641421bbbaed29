"""Status reconciliation between the push stream and the session poll.

Two sources report agent liveness: push events from the live stream
connections and a periodic poll of gateway session metadata. They
disagree transiently. ``merge`` folds both into one authoritative
status per agent with hysteresis, and is a pure function so the
precedence rules can be tested without timers or network.

StatusReconciler owns the status map. Every writer (push handler,
turn classifier, dispatcher failure path, human actions, poll tick)
goes through its methods; everyone else reads snapshots.
"""

import time
from dataclasses import dataclass

import structlog

from models.schemas import AgentState, AgentStatusRecord

logger = structlog.get_logger(__name__)

# A poll reporting "active" only overrides a push-reported turn end when
# the session was updated this long after the turn ended.
TURN_END_MARGIN_SECONDS = 5.0

# Only a human action or an active poll moves an agent out of these.
HUMAN_HELD_STATES = frozenset({AgentState.WAITING_FOR_INPUT, AgentState.PAUSED})


@dataclass(frozen=True)
class PushSignal:
    """A status change reported by the push stream or a direct writer.

    Attributes:
        status: The new status.
        at: When the signal was observed.
        turn_ended: True when the signal marks the end of an agent turn
            (completion, waiting or error). Recorded so a lagging poll
            cannot flip the agent back to active.
        message: Optional tail of the agent's last message.
    """

    status: AgentState
    at: float
    turn_ended: bool = False
    message: str | None = None


@dataclass(frozen=True)
class PollObservation:
    """One agent's session as seen by a poll tick."""

    status: AgentState
    updated_at: float | None = None
    error: str | None = None
    last_message: str | None = None


def derive_poll_status(
    updated_at: float | None,
    now: float,
    error: str | None = None,
    active_window: float = 30.0,
    idle_window: float = 300.0,
) -> AgentState:
    """Compute a status from session recency.

    ``<active_window`` seconds -> active, ``<idle_window`` -> idle,
    otherwise stopped. An explicit error always yields error.
    """
    if error:
        return AgentState.ERROR
    if updated_at is None:
        return AgentState.STOPPED
    age = now - updated_at
    if age < active_window:
        return AgentState.ACTIVE
    if age < idle_window:
        return AgentState.IDLE
    return AgentState.STOPPED


def _apply_push(push: PushSignal, previous: AgentStatusRecord) -> AgentStatusRecord:
    if push.turn_ended:
        completed_at: float | None = push.at
    elif push.status == AgentState.ACTIVE:
        completed_at = None
    else:
        completed_at = previous.completed_at
    return previous.model_copy(
        update={
            "status": push.status,
            "last_seen": max(previous.last_seen, push.at),
            "last_message": push.message if push.message is not None else previous.last_message,
            "completed_at": completed_at,
            "missing_since": None,
        }
    )


def _poll_is_newer_than_turn_end(poll: PollObservation, previous: AgentStatusRecord) -> bool:
    if previous.completed_at is None:
        return True
    if poll.updated_at is None:
        return False
    return poll.updated_at > previous.completed_at + TURN_END_MARGIN_SECONDS


def _apply_poll(
    poll: PollObservation | None,
    previous: AgentStatusRecord,
    now: float,
    missing_grace_seconds: float,
) -> AgentStatusRecord:
    if poll is None:
        # Session absent from the poll response.
        if previous.status in (AgentState.ERROR, AgentState.STOPPED, AgentState.NONE):
            return previous
        missing_since = previous.missing_since or now
        if previous.status in HUMAN_HELD_STATES:
            return previous.model_copy(update={"missing_since": missing_since})
        if now - missing_since >= missing_grace_seconds:
            return previous.model_copy(
                update={"status": AgentState.STOPPED, "missing_since": missing_since}
            )
        return previous.model_copy(update={"missing_since": missing_since})

    update: dict[str, object] = {"missing_since": None}
    if poll.updated_at is not None:
        update["last_seen"] = max(previous.last_seen, poll.updated_at)
    if poll.last_message:
        update["last_message"] = poll.last_message

    current = previous.status
    if current == AgentState.PAUSED:
        pass
    elif current == AgentState.WAITING_FOR_INPUT:
        if poll.status == AgentState.ACTIVE and _poll_is_newer_than_turn_end(poll, previous):
            update["status"] = AgentState.ACTIVE
            update["completed_at"] = None
    elif poll.error:
        update["status"] = AgentState.ERROR
    elif current == AgentState.IDLE and previous.completed_at is not None:
        if poll.status == AgentState.ACTIVE and _poll_is_newer_than_turn_end(poll, previous):
            update["status"] = AgentState.ACTIVE
            update["completed_at"] = None
    elif current == AgentState.ERROR:
        # Error is sticky; only fresh activity clears it.
        if poll.status == AgentState.ACTIVE and (
            poll.updated_at is not None and poll.updated_at > previous.last_seen
        ):
            update["status"] = AgentState.ACTIVE
    else:
        update["status"] = poll.status

    return previous.model_copy(update=update)


def merge(
    push: PushSignal | None,
    poll: PollObservation | None,
    previous: AgentStatusRecord,
    *,
    now: float | None = None,
    missing_grace_seconds: float = 60.0,
    poll_ran: bool = True,
) -> AgentStatusRecord:
    """Fold a push signal and/or a poll observation into the previous status.

    Precedence rules:
        - A poll error field yields ``error`` unless the agent is
          waiting for input or paused.
        - An agent the push stream marked ``idle`` through an explicit
          turn end is not flipped back to ``active`` by a poll that has
          not seen newer activity.
        - ``waiting_for_input`` survives every poll result except an
          ``active`` one with newer activity.
        - ``paused`` only changes through an explicit push/human signal.
        - ``error`` is never downgraded by an idle/stopped/missing poll.
        - A session absent from the poll keeps its last status for
          ``missing_grace_seconds`` and is then marked ``stopped``; waiting
          and paused agents are never marked ``stopped`` this way.

    Args:
        push: Optional signal from the push stream or a direct writer.
        poll: This agent's poll observation; None when its session was
            absent from the poll response.
        previous: The current authoritative record.
        now: Clock override for tests.
        missing_grace_seconds: Hysteresis window for absent sessions.
        poll_ran: False when only a push signal is being applied.

    Returns:
        The next authoritative record (``previous`` is not mutated).
    """
    now = time.time() if now is None else now
    record = previous
    if push is not None:
        record = _apply_push(push, record)
    if poll_ran:
        record = _apply_poll(poll, record, now, missing_grace_seconds)
    return record


class StatusReconciler:
    """Single owner of the per-agent status map.

    Attributes:
        active_window: Recency threshold for an active poll status.
        idle_window: Recency threshold for an idle poll status.
        missing_grace_seconds: Grace window for sessions absent from a poll.
    """

    def __init__(
        self,
        active_window: float = 30.0,
        idle_window: float = 300.0,
        missing_grace_seconds: float = 60.0,
    ) -> None:
        self.active_window = active_window
        self.idle_window = idle_window
        self.missing_grace_seconds = missing_grace_seconds
        self._statuses: dict[str, AgentStatusRecord] = {}

    def reset(self, agent_ids: list[str]) -> None:
        """Start a fresh status map for a new mission."""
        self._statuses = {agent_id: AgentStatusRecord(agent_id=agent_id) for agent_id in agent_ids}

    def get(self, agent_id: str) -> AgentStatusRecord:
        return self._statuses.get(agent_id) or AgentStatusRecord(agent_id=agent_id)

    def status_of(self, agent_id: str) -> AgentState:
        return self.get(agent_id).status

    def snapshot(self) -> dict[str, AgentStatusRecord]:
        return dict(self._statuses)

    def statuses(self) -> dict[str, AgentState]:
        return {agent_id: record.status for agent_id, record in self._statuses.items()}

    def record_push(
        self,
        agent_id: str,
        status: AgentState,
        *,
        turn_ended: bool = False,
        message: str | None = None,
        at: float | None = None,
    ) -> tuple[AgentState, AgentState]:
        """Apply a push-stream or direct-writer status.

        Returns:
            (previous, current) status, so callers can publish changes.
        """
        previous = self.get(agent_id)
        signal = PushSignal(
            status=status,
            at=time.time() if at is None else at,
            turn_ended=turn_ended,
            message=message,
        )
        updated = merge(signal, None, previous, poll_ran=False)
        self._statuses[agent_id] = updated
        if previous.status != updated.status:
            logger.debug(
                "agent_status_pushed",
                agent_id=agent_id,
                previous=previous.status.value,
                status=updated.status.value,
            )
        return previous.status, updated.status

    def set_status(self, agent_id: str, status: AgentState) -> tuple[AgentState, AgentState]:
        """Write a status directly (classifier, dispatch failure, human actions)."""
        terminal = status in (
            AgentState.IDLE,
            AgentState.WAITING_FOR_INPUT,
            AgentState.ERROR,
        )
        return self.record_push(agent_id, status, turn_ended=terminal)

    def apply_poll(
        self,
        observations: dict[str, PollObservation | None],
        now: float | None = None,
    ) -> list[tuple[str, AgentState, AgentState]]:
        """Merge one poll tick.

        Args:
            observations: Agent id -> observation (None when the agent has
                a session key that was absent from the poll). Agents without
                a session are simply not included.
            now: Clock override for tests.

        Returns:
            (agent_id, previous, current) for every agent whose status changed.
        """
        now = time.time() if now is None else now
        changes: list[tuple[str, AgentState, AgentState]] = []
        for agent_id, observation in observations.items():
            previous = self.get(agent_id)
            updated = merge(
                None,
                observation,
                previous,
                now=now,
                missing_grace_seconds=self.missing_grace_seconds,
            )
            self._statuses[agent_id] = updated
            if updated.status != previous.status:
                changes.append((agent_id, previous.status, updated.status))
        if changes:
            logger.info(
                "agent_statuses_reconciled",
                changed=[(agent_id, current.value) for agent_id, _, current in changes],
            )
        return changes

    def observe(
        self,
        updated_at: float | None,
        error: str | None,
        last_message: str | None,
        now: float,
    ) -> PollObservation:
        """Build a PollObservation from raw session metadata."""
        return PollObservation(
            status=derive_poll_status(
                updated_at,
                now,
                error,
                active_window=self.active_window,
                idle_window=self.idle_window,
            ),
            updated_at=updated_at,
            error=error,
            last_message=last_message,
        )
