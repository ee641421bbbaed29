"""Remote session provisioning: one gateway session per team member.

SessionManager is the single owner of the agent -> session map. It
reuses an existing gateway session carrying the agent's deterministic
label when one exists, otherwise spawns a new one, and publishes each
session into the map as soon as it is ready so stream opening does not
wait for the whole batch.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable

import structlog

from mission.gateway import GatewayClient, GatewayError, SessionRecord
from mission.generation import GenerationCounter
from models.schemas import AgentSession, SpawnState, TeamMember

logger = structlog.get_logger(__name__)

SessionReadyCallback = Callable[[TeamMember, AgentSession, bool], Awaitable[None]]
SpawnFailedCallback = Callable[[TeamMember, str], Awaitable[None]]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "agent"


def session_label(name: str) -> str:
    """Deterministic gateway label for a team member."""
    return f"mission-{slugify(name)}"


class SessionManager:
    """Spawn-or-reuse session provisioning.

    Attributes:
        default_model: Model used when a member has no model id.
        model_aliases: Preset id -> gateway model id.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        generations: GenerationCounter,
        default_model: str = "",
        model_aliases: dict[str, str] | None = None,
    ) -> None:
        self._gateway = gateway
        self._generations = generations
        self.default_model = default_model
        self.model_aliases = dict(model_aliases or {})
        self._sessions: dict[str, AgentSession] = {}
        self._spawn_states: dict[str, SpawnState] = {}
        self._label_locks: dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict[str, AgentSession]:
        return dict(self._sessions)

    def spawn_states(self) -> dict[str, SpawnState]:
        return dict(self._spawn_states)

    def session_for(self, agent_id: str) -> AgentSession | None:
        return self._sessions.get(agent_id)

    def agent_for_key(self, session_key: str) -> str | None:
        for agent_id, session in self._sessions.items():
            if session.session_key == session_key:
                return agent_id
        return None

    def resolve_model(self, member: TeamMember) -> str | None:
        """Resolve a member's model id through the alias table, then the default."""
        if member.model_id:
            return self.model_aliases.get(member.model_id, member.model_id)
        return self.default_model or None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Forget every tracked session (remote sessions are left alone)."""
        self._sessions.clear()
        self._spawn_states.clear()

    def restore(self, sessions: dict[str, AgentSession]) -> None:
        """Seed the map from a persisted session map."""
        for agent_id, session in sessions.items():
            if self._key_owner(session.session_key, exclude=agent_id) is not None:
                logger.warning(
                    "session_restore_key_collision",
                    agent_id=agent_id,
                    session_key=session.session_key,
                )
                continue
            self._sessions[agent_id] = session
            self._spawn_states[agent_id] = SpawnState.READY

    def forget(self, agent_id: str) -> None:
        self._sessions.pop(agent_id, None)
        self._spawn_states[agent_id] = SpawnState.PENDING

    def _key_owner(self, session_key: str, exclude: str | None = None) -> str | None:
        for agent_id, session in self._sessions.items():
            if agent_id != exclude and session.session_key == session_key:
                return agent_id
        return None

    async def ensure_sessions(
        self,
        team: list[TeamMember],
        generation: int,
        on_session_ready: SessionReadyCallback | None = None,
        on_spawn_failed: SpawnFailedCallback | None = None,
        persisted: dict[str, AgentSession] | None = None,
    ) -> dict[str, AgentSession]:
        """Make sure every team member has exactly one session.

        Members that already have a tracked session are skipped. The
        gateway is asked once for existing sessions; a failed lookup is
        treated as "no existing sessions". A persisted session whose key
        is still live under the member's label is taken back first. Each
        remaining member is then handled concurrently; one member's spawn
        failure never fails its siblings.

        Args:
            team: Members to provision.
            generation: Mission generation this call belongs to.
            on_session_ready: Awaited as soon as a member's session is
                published (member, session, reused).
            on_spawn_failed: Awaited when a member's spawn fails.
            persisted: Last saved agent -> session map.

        Returns:
            Snapshot of the session map after provisioning.
        """
        pending = [member for member in team if member.id not in self._sessions]
        if not pending:
            return self.snapshot()

        for member in pending:
            self._spawn_states[member.id] = SpawnState.SPAWNING

        try:
            existing = await self._gateway.list_sessions()
        except GatewayError as e:
            logger.warning("session_lookup_failed", error=str(e))
            existing = []

        if self._generations.is_stale(generation, "ensure_sessions"):
            return self.snapshot()

        if persisted:
            pending = await self._take_back(pending, existing, persisted, on_session_ready)

        by_label: dict[str, SessionRecord] = {s.label: s for s in existing if s.label}
        await asyncio.gather(
            *(
                self._ensure_one(member, by_label, generation, on_session_ready, on_spawn_failed)
                for member in pending
            )
        )
        return self.snapshot()

    async def _take_back(
        self,
        pending: list[TeamMember],
        existing: list[SessionRecord],
        persisted: dict[str, AgentSession],
        on_session_ready: SessionReadyCallback | None,
    ) -> list[TeamMember]:
        """Restore persisted sessions still live on the gateway; return who is left."""
        live = {record.key: record.label for record in existing}
        candidates: dict[str, AgentSession] = {}
        for member in pending:
            session = persisted.get(member.id)
            if session is None:
                continue
            label = session_label(member.name)
            if live.get(session.session_key) in (label, f"{label}-{slugify(member.id)}"):
                candidates[member.id] = session
        self.restore(candidates)

        remaining: list[TeamMember] = []
        for member in pending:
            session = self._sessions.get(member.id)
            if session is None:
                remaining.append(member)
                continue
            logger.info("session_restored", agent_id=member.id, session_key=session.session_key)
            if on_session_ready is not None:
                await on_session_ready(member, session, True)
        return remaining

    async def _ensure_one(
        self,
        member: TeamMember,
        by_label: dict[str, SessionRecord],
        generation: int,
        on_session_ready: SessionReadyCallback | None,
        on_spawn_failed: SpawnFailedCallback | None,
    ) -> None:
        label = session_label(member.name)
        lock = self._label_locks.setdefault(label, asyncio.Lock())

        async with lock:
            if member.id in self._sessions:
                return

            found = by_label.get(label)
            reused = False
            if found is not None and self._key_owner(found.key, exclude=member.id) is None:
                session = AgentSession(
                    agent_id=member.id,
                    session_key=found.key,
                    model_used=found.model,
                )
                reused = True
            else:
                spawn_label = label
                if found is not None:
                    # Label already bound to another agent.
                    spawn_label = f"{label}-{slugify(member.id)}"
                model = self.resolve_model(member)
                try:
                    result = await self._gateway.spawn_session(
                        friendly_id=member.id,
                        label=spawn_label,
                        model=model,
                    )
                except GatewayError as e:
                    if self._generations.is_stale(generation, "spawn_session"):
                        return
                    self._spawn_states[member.id] = SpawnState.ERROR
                    logger.error(
                        "session_spawn_failed",
                        agent_id=member.id,
                        label=spawn_label,
                        error=str(e),
                    )
                    if on_spawn_failed is not None:
                        await on_spawn_failed(member, str(e))
                    return

                if self._generations.is_stale(generation, "spawn_session"):
                    return
                owner = self._key_owner(result.session_key, exclude=member.id)
                if owner is not None:
                    self._spawn_states[member.id] = SpawnState.ERROR
                    message = f"gateway returned session key already bound to {owner}"
                    logger.error(
                        "session_key_collision",
                        agent_id=member.id,
                        owner=owner,
                        session_key=result.session_key,
                    )
                    if on_spawn_failed is not None:
                        await on_spawn_failed(member, message)
                    return

                session = AgentSession(
                    agent_id=member.id,
                    session_key=result.session_key,
                    model_used=result.model_applied or model,
                )
                by_label[spawn_label] = SessionRecord(
                    key=result.session_key,
                    label=spawn_label,
                    model=session.model_used,
                )

            if self._generations.is_stale(generation, "publish_session"):
                return
            self._sessions[member.id] = session
            self._spawn_states[member.id] = SpawnState.READY
            logger.info(
                "session_ready",
                agent_id=member.id,
                session_key=session.session_key,
                reused=reused,
                model=session.model_used,
            )

        if on_session_ready is not None:
            await on_session_ready(member, session, reused)

    async def kill_session(self, agent_id: str) -> bool:
        """Abort in-flight work and delete an agent's session.

        Both gateway calls are best-effort. An agent without a session is
        a no-op.

        Returns:
            True if a session was tracked for the agent.
        """
        session = self._sessions.get(agent_id)
        if session is None:
            return False

        try:
            await self._gateway.abort(session.session_key)
        except GatewayError as e:
            logger.warning("session_abort_failed", agent_id=agent_id, error=str(e))
        try:
            await self._gateway.delete_session(session.session_key)
        except GatewayError as e:
            logger.warning("session_delete_failed", agent_id=agent_id, error=str(e))

        self.forget(agent_id)
        logger.info("session_killed", agent_id=agent_id, session_key=session.session_key)
        return True
