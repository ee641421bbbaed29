"""Mission checkpoint persistence.

CheckpointStore owns three keys in the StateStore: the single live
checkpoint, the bounded archive of finished missions (newest first), and
the per-agent session map. Like the store underneath it, it never raises
on storage failure; a mission keeps running in memory.
"""

import time

import structlog
from pydantic import ValidationError

from models.database import (
    AGENT_SESSIONS_KEY,
    MISSION_CHECKPOINT_KEY,
    MISSION_HISTORY_KEY,
    StateStore,
)
from models.schemas import AgentSession, CheckpointStatus, MissionCheckpoint

logger = structlog.get_logger(__name__)

RESUMABLE_STATES = (CheckpointStatus.RUNNING, CheckpointStatus.PAUSED)


class CheckpointStore:
    """Live checkpoint, archived history and session map.

    Attributes:
        history_limit: Maximum archived checkpoints kept.
    """

    def __init__(self, store: StateStore, history_limit: int = 20) -> None:
        self._store = store
        self.history_limit = history_limit

    async def save(self, checkpoint: MissionCheckpoint) -> bool:
        """Overwrite the live checkpoint."""
        checkpoint = checkpoint.model_copy(update={"updated_at": time.time()})
        saved = await self._store.set_json(MISSION_CHECKPOINT_KEY, checkpoint.model_dump(mode="json"))
        if saved:
            logger.debug(
                "checkpoint_saved",
                mission_id=checkpoint.id,
                status=checkpoint.status.value,
                task_count=len(checkpoint.tasks),
            )
        return saved

    async def load(self) -> MissionCheckpoint | None:
        raw = await self._store.get_json(MISSION_CHECKPOINT_KEY)
        if raw is None:
            return None
        try:
            return MissionCheckpoint.model_validate(raw)
        except ValidationError as e:
            logger.warning("checkpoint_malformed", error=str(e))
            return None

    async def clear(self) -> None:
        await self._store.delete(MISSION_CHECKPOINT_KEY)

    async def archive(self, checkpoint: MissionCheckpoint, status: CheckpointStatus) -> MissionCheckpoint:
        """Record a finished mission in history and drop it as the live checkpoint.

        Args:
            checkpoint: The mission's final snapshot.
            status: Terminal status (completed or aborted).

        Returns:
            The archived copy.
        """
        now = time.time()
        archived = checkpoint.model_copy(
            update={"status": status, "updated_at": now, "completed_at": now}
        )
        await self._store.prepend_bounded(
            MISSION_HISTORY_KEY,
            archived.model_dump(mode="json"),
            self.history_limit,
        )
        current = await self.load()
        if current is None or current.id == checkpoint.id:
            await self.clear()
        logger.info("checkpoint_archived", mission_id=checkpoint.id, status=status.value)
        return archived

    async def history(self) -> list[MissionCheckpoint]:
        raw = await self._store.get_json(MISSION_HISTORY_KEY, default=[])
        checkpoints: list[MissionCheckpoint] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                checkpoints.append(MissionCheckpoint.model_validate(item))
            except ValidationError:
                logger.warning("history_entry_malformed")
        return checkpoints

    async def find_stale(self) -> MissionCheckpoint | None:
        """Return a checkpoint left in-progress by an unclean exit, if any."""
        checkpoint = await self.load()
        if checkpoint is not None and checkpoint.status in RESUMABLE_STATES:
            logger.info("stale_checkpoint_found", mission_id=checkpoint.id)
            return checkpoint
        return None

    async def save_session_map(self, sessions: dict[str, AgentSession]) -> bool:
        return await self._store.set_json(
            AGENT_SESSIONS_KEY,
            {agent_id: session.model_dump(mode="json") for agent_id, session in sessions.items()},
        )

    async def load_session_map(self) -> dict[str, AgentSession]:
        raw = await self._store.get_json(AGENT_SESSIONS_KEY, default={})
        sessions: dict[str, AgentSession] = {}
        for agent_id, item in (raw if isinstance(raw, dict) else {}).items():
            try:
                sessions[agent_id] = AgentSession.model_validate(item)
            except ValidationError:
                logger.warning("session_map_entry_malformed", agent_id=agent_id)
        return sessions
