"""SQLite-backed key-value persistence using aiosqlite.

This module provides the StateStore class for persisting mission state
(team roster, checkpoints, reports, approvals) to a local SQLite file.
All operations are async and designed to fail gracefully -- a storage
error should never crash a running mission.

Tables:
    kv: One JSON document per key, with its last write time.

Usage:
    >>> from models.database import StateStore
    >>> store = StateStore("./data/mission_state.db")
    >>> await store.init()
    >>> await store.set_json("team:roster", [{"id": "a1", "name": "Ada"}])
    >>> roster = await store.get_json("team:roster", default=[])
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)

# Keys used by the engine's persistence owners.
TEAM_ROSTER_KEY = "team:roster"
TEAM_CONFIGS_KEY = "team:configs"
AGENT_SESSIONS_KEY = "agent:sessions"
MISSION_CHECKPOINT_KEY = "mission:checkpoint"
MISSION_HISTORY_KEY = "mission:history"
MISSION_REPORTS_KEY = "mission:reports"
APPROVALS_KEY = "approvals:queue"


class StateStore:
    """Async best-effort key-value store.

    The StateStore manages a single SQLite database file holding JSON
    values by key. Apart from init(), all public methods catch exceptions
    internally and log errors rather than propagating them; reads fall
    back to the caller's default.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the state store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create the key-value table if it does not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("state_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "state_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def get_json(self, key: str, default: Any = None) -> Any:
        """Read and decode the JSON value stored under a key.

        Args:
            key: The key to look up.
            default: Returned when the key is missing, unreadable, or
                     holds malformed JSON.

        Returns:
            The decoded value, or ``default``.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("state_get_failed", key=key, error=str(e))
            return default

        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("state_value_malformed", key=key)
            return default

    async def set_json(self, key: str, value: Any) -> bool:
        """Encode and store a value under a key, replacing any previous one.

        Args:
            key: The key to write.
            value: A JSON-serializable value.

        Returns:
            True if the write succeeded.
        """
        try:
            payload = json.dumps(value)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO kv (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (key, payload, time.time()),
                )
                await db.commit()
            logger.debug("state_saved", key=key, size=len(payload))
            return True
        except Exception as e:
            logger.error("state_save_failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Remove a key. Removing a missing key is not an error."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv WHERE key = ?", (key,))
                await db.commit()
            logger.debug("state_deleted", key=key)
            return True
        except Exception as e:
            logger.error("state_delete_failed", key=key, error=str(e))
            return False

    async def keys(self) -> list[str]:
        """List stored keys, most recently written first."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT key FROM kv ORDER BY updated_at DESC")
                rows = await cursor.fetchall()
                return [row[0] for row in rows]
        except Exception as e:
            logger.error("state_keys_failed", error=str(e))
            return []

    async def prepend_bounded(self, key: str, item: Any, limit: int) -> list[Any]:
        """Insert an item at the head of a stored list, trimming to a limit.

        Args:
            key: Key holding a JSON list.
            item: The item to insert first.
            limit: Maximum list length kept.

        Returns:
            The list as written.
        """
        current = await self.get_json(key, default=[])
        if not isinstance(current, list):
            current = []
        updated = [item, *current][: max(limit, 0)]
        await self.set_json(key, updated)
        return updated
