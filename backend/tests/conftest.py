"""Shared test fixtures for backend tests.

Provides an in-memory fake gateway, a temporary StateStore, a fresh
EventBus and engine settings tuned for fast tests, so tests never touch
a real gateway.
"""

import asyncio
import sys
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from mission.gateway import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from config import Settings  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import MissionEvent  # noqa: E402
from mission.gateway import (  # noqa: E402
    GatewayError,
    GatewayEvent,
    SessionRecord,
    SpawnResult,
)
from models.database import StateStore  # noqa: E402
from models.schemas import TeamMember  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def state_store(tmp_path: Path) -> StateStore:
    """An initialized StateStore backed by a temporary SQLite file."""
    store = StateStore(str(tmp_path / "state.db"))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory stand-in for GatewayClient.

    Records every call in ``calls`` as (operation, args) tuples. Set
    ``fail`` to a set of operation names that should raise GatewayError.
    Push events are fed per session key with ``push()``; the stream ends
    when ``None`` is pushed.
    """

    def __init__(self) -> None:
        self.base_url = "http://gateway.test"
        self.sessions: dict[str, SessionRecord] = {}
        self.approvals: list[dict[str, Any]] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: set[str] = set()
        self.spawn_count = 0
        self._streams: dict[str, asyncio.Queue[GatewayEvent | None]] = {}

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if operation in self.fail:
            raise GatewayError(f"{operation} failed", operation=operation, status_code=500)

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def add_session(self, key: str, label: str, updated_at: float | None = None, **kwargs: Any) -> None:
        self.sessions[key] = SessionRecord(key=key, label=label, updated_at=updated_at, **kwargs)

    async def close(self) -> None:
        self._record("close")

    async def list_sessions(self) -> list[SessionRecord]:
        self._record("list_sessions")
        return list(self.sessions.values())

    async def spawn_session(self, friendly_id: str, label: str, model: str | None = None) -> SpawnResult:
        self._record("spawn_session", friendly_id, label, model)
        self.spawn_count += 1
        key = f"agent:main:{friendly_id}:{self.spawn_count}"
        self.sessions[key] = SessionRecord(key=key, label=label, model=model, updated_at=time.time())
        return SpawnResult(session_key=key, model_applied=model)

    async def delete_session(self, session_key: str) -> None:
        self._record("delete_session", session_key)
        self.sessions.pop(session_key, None)

    async def dispatch(
        self,
        session_key: str,
        message: str,
        agent_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        self._record("dispatch", session_key, message, agent_id, idempotency_key)
        return {"ok": True}

    async def abort(self, session_key: str) -> None:
        self._record("abort", session_key)

    async def send_message(self, session_key: str, message: str) -> None:
        self._record("send_message", session_key, message)

    async def list_approvals(self) -> list[dict[str, Any]]:
        self._record("list_approvals")
        return list(self.approvals)

    async def resolve_approval(self, approval_id: str, approve: bool) -> None:
        self._record("resolve_approval", approval_id, approve)

    def push(self, session_key: str, event: GatewayEvent | None) -> None:
        self._streams.setdefault(session_key, asyncio.Queue()).put_nowait(event)

    async def stream_events(self, session_key: str) -> AsyncIterator[GatewayEvent]:
        self._record("stream_events", session_key)
        queue = self._streams.setdefault(session_key, asyncio.Queue())
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    """A fresh FakeGateway for each test."""
    return FakeGateway()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def fast_settings(tmp_path: Path) -> Settings:
    """Settings with every delay shrunk so engine tests run quickly."""
    return Settings(
        database_path=str(tmp_path / "engine.db"),
        settle_delay_seconds=0.01,
        sequential_stagger_seconds=0.0,
        poll_interval_seconds=3600.0,
        stream_stale_seconds=60.0,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_member(
    agent_id: str = "agent-1",
    name: str = "Researcher",
    model_id: str | None = None,
    role_description: str = "Finds and summarizes sources",
) -> TeamMember:
    """Create a TeamMember with sensible defaults."""
    return TeamMember(
        id=agent_id,
        name=name,
        model_id=model_id,
        role_description=role_description,
    )


def make_team(size: int = 2) -> list[TeamMember]:
    names = ["Researcher", "Writer", "Reviewer", "Analyst", "Coder"]
    return [make_member(f"agent-{i + 1}", names[i % len(names)]) for i in range(size)]


def drain(queue: "asyncio.Queue[MissionEvent]") -> list[MissionEvent]:
    """Collect everything currently in a subscriber queue."""
    events: list[MissionEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
