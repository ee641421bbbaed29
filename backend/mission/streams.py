"""Push-stream ingestion for agent sessions.

StreamIngestor keeps a bounded number of live ``/chat-events``
connections open (the first N team members, in team order, that have a
session), turns each content event into buffered output lines and token
estimates, and hands turn ends, tool calls and stream errors to a
StreamHandler (the mission engine).

Each agent has an OutputBuffer: a rolling window of lines with
tail-deduplication so duplicate connections or replays after a reconnect
do not double the output.
"""

import asyncio
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from metrics import estimate_tokens
from mission.gateway import GatewayClient, GatewayError, GatewayEvent, message_text
from mission.generation import GenerationCounter
from models.schemas import AgentSession

logger = structlog.get_logger(__name__)

DEDUP_WINDOW = 10
MIN_DEDUP_LENGTH = 8


# ---------------------------------------------------------------------------
# OutputBuffer
# ---------------------------------------------------------------------------


def _is_structural(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith("```") or set(stripped) <= set("|-: =*#")


class OutputBuffer:
    """Rolling per-agent output buffer.

    Text is split into lines; an unterminated trailing line is held as a
    partial until more text (or a flush) completes it. A complete line
    of at least MIN_DEDUP_LENGTH characters that already appears in the
    last DEDUP_WINDOW lines is dropped. Short and structural lines
    (fences, table rules) are always kept.
    """

    def __init__(self, max_lines: int = 200) -> None:
        self.max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._partial = ""

    def __len__(self) -> int:
        return len(self._lines)

    def append_line(self, line: str) -> bool:
        """Append one complete line. Returns False if it was deduplicated."""
        if len(line.strip()) >= MIN_DEDUP_LENGTH and not _is_structural(line):
            tail = list(self._lines)[-DEDUP_WINDOW:]
            if line in tail:
                return False
        self._lines.append(line)
        return True

    def append_text(self, text: str) -> list[str]:
        """Append raw text; returns the complete lines actually added."""
        if not text:
            return []
        combined = self._partial + text
        *complete, self._partial = combined.split("\n")
        return [line for line in complete if self.append_line(line)]

    def flush(self) -> list[str]:
        """Commit any partial line."""
        if not self._partial:
            return []
        line, self._partial = self._partial, ""
        return [line] if self.append_line(line) else []

    def lines(self) -> list[str]:
        lines = list(self._lines)
        if self._partial:
            lines.append(self._partial)
        return lines

    def text(self) -> str:
        return "\n".join(self.lines())

    def clear(self) -> None:
        self._lines.clear()
        self._partial = ""


# ---------------------------------------------------------------------------
# StreamIngestor
# ---------------------------------------------------------------------------


class StreamHandler(Protocol):
    """Callbacks the ingestor drives. Implementations check the generation."""

    async def on_stream_output(
        self, agent_id: str, lines: list[str], tokens: int, generation: int
    ) -> None: ...

    async def on_stream_tool(self, agent_id: str, tool: str, generation: int) -> None: ...

    async def on_turn_end(
        self,
        agent_id: str,
        final_text: str,
        state: str,
        error: str | None,
        generation: int,
    ) -> None: ...

    async def on_stream_error(self, agent_id: str, error: str, generation: int) -> None: ...


@dataclass
class _Connection:
    session_key: str
    task: asyncio.Task[None] | None = None
    last_activity: float = field(default_factory=time.time)


class StreamIngestor:
    """Bounded set of live push-stream connections.

    Attributes:
        max_streams: Maximum number of concurrent connections.
        stale_seconds: Idle time after which a connection is pruned.
        buffer_lines: Lines kept per agent buffer.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        handler: StreamHandler,
        generations: GenerationCounter,
        max_streams: int = 3,
        stale_seconds: float = 60.0,
        buffer_lines: int = 200,
    ) -> None:
        self._gateway = gateway
        self._handler = handler
        self._generations = generations
        self.max_streams = max_streams
        self.stale_seconds = stale_seconds
        self.buffer_lines = buffer_lines
        self._buffers: dict[str, OutputBuffer] = {}
        self._turn_text: dict[str, str] = {}
        self._connections: dict[str, _Connection] = {}
        self._pruned: set[str] = set()
        self._generation = 0

    # -------------------------------------------------------------------------
    # Buffers
    # -------------------------------------------------------------------------

    def reset(self, generation: int) -> None:
        """Start a new mission: drop buffers and pruning state."""
        self._generation = generation
        self._buffers.clear()
        self._turn_text.clear()
        self._pruned.clear()

    def buffer(self, agent_id: str) -> OutputBuffer:
        if agent_id not in self._buffers:
            self._buffers[agent_id] = OutputBuffer(self.buffer_lines)
        return self._buffers[agent_id]

    def output_lines(self, agent_id: str) -> list[str]:
        buffer = self._buffers.get(agent_id)
        return buffer.lines() if buffer else []

    def output_text(self, agent_id: str) -> str:
        buffer = self._buffers.get(agent_id)
        return buffer.text() if buffer else ""

    def connected_agents(self) -> list[str]:
        return list(self._connections)

    def is_pruned(self, agent_id: str) -> bool:
        return agent_id in self._pruned

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def revive(self, agent_id: str) -> None:
        """Make a pruned agent eligible for a connection again."""
        if agent_id in self._pruned:
            self._pruned.discard(agent_id)
            logger.debug("stream_revived", agent_id=agent_id)

    def select(self, team_order: Iterable[str], sessions: dict[str, AgentSession]) -> list[str]:
        """First ``max_streams`` agents, in team order, with a session and not pruned."""
        selected: list[str] = []
        for agent_id in team_order:
            if len(selected) >= self.max_streams:
                break
            if agent_id in sessions and agent_id not in self._pruned:
                selected.append(agent_id)
        return selected

    async def sync(
        self,
        team_order: Iterable[str],
        sessions: dict[str, AgentSession],
        generation: int,
    ) -> None:
        """Open connections for the selected agents and close the rest."""
        if self._generations.is_stale(generation, "stream_sync"):
            return
        selected = self.select(team_order, sessions)

        for agent_id in list(self._connections):
            connection = self._connections[agent_id]
            session = sessions.get(agent_id)
            if agent_id not in selected or session is None or session.session_key != connection.session_key:
                await self.close(agent_id)

        for agent_id in selected:
            if agent_id not in self._connections:
                self._open(agent_id, sessions[agent_id].session_key, generation)

    def _open(self, agent_id: str, session_key: str, generation: int) -> None:
        connection = _Connection(session_key=session_key)
        self._connections[agent_id] = connection
        connection.task = asyncio.create_task(
            self._run(agent_id, connection, generation),
            name=f"stream-{agent_id}",
        )
        logger.info("stream_opened", agent_id=agent_id, session_key=session_key)

    async def close(self, agent_id: str) -> None:
        connection = self._connections.pop(agent_id, None)
        if connection is None or connection.task is None:
            return
        if connection.task is not asyncio.current_task():
            connection.task.cancel()
            try:
                await connection.task
            except asyncio.CancelledError:
                pass
        logger.info("stream_closed", agent_id=agent_id)

    async def close_all(self) -> None:
        for agent_id in list(self._connections):
            await self.close(agent_id)

    async def prune_stale(self, now: float | None = None) -> list[str]:
        """Close connections idle for ``stale_seconds``; they stay pruned until revived."""
        now = time.time() if now is None else now
        pruned: list[str] = []
        for agent_id, connection in list(self._connections.items()):
            if now - connection.last_activity >= self.stale_seconds:
                self._pruned.add(agent_id)
                await self.close(agent_id)
                pruned.append(agent_id)
        if pruned:
            logger.info("streams_pruned", agent_ids=pruned)
        return pruned

    async def _run(self, agent_id: str, connection: _Connection, generation: int) -> None:
        try:
            async for event in self._gateway.stream_events(connection.session_key):
                if self._generations.is_stale(generation, "stream_event"):
                    break
                connection.last_activity = time.time()
                await self.handle_event(agent_id, event, generation)
        except GatewayError as e:
            logger.warning("stream_failed", agent_id=agent_id, error=str(e))
        finally:
            # Drop our own entry so the next sync can reconnect.
            if self._connections.get(agent_id) is connection:
                del self._connections[agent_id]

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    async def ingest_text(self, agent_id: str, text: str, full_replace: bool, generation: int) -> None:
        """Fold one content event into the agent's turn text and buffer."""
        previous = self._turn_text.get(agent_id, "")
        if full_replace:
            delta = text[len(previous):] if text.startswith(previous) else text
            self._turn_text[agent_id] = text
        else:
            delta = text
            self._turn_text[agent_id] = previous + text
        if not delta:
            return
        lines = self.buffer(agent_id).append_text(delta)
        await self._handler.on_stream_output(agent_id, lines, estimate_tokens(delta), generation)

    async def handle_event(self, agent_id: str, event: GatewayEvent, generation: int) -> None:
        """Dispatch one push-stream event."""
        data = event.data
        if event.name == "chunk":
            text = data.get("text") or data.get("delta") or data.get("content") or ""
            if isinstance(text, str) and text:
                await self.ingest_text(agent_id, text, data.get("fullReplace") is not False, generation)
        elif event.name == "message":
            if data.get("role") in ("user", "system"):
                return
            text = message_text(data.get("message")) or message_text(data) or ""
            if text:
                await self.ingest_text(agent_id, text, True, generation)
        elif event.name == "tool":
            tool = str(data.get("name") or data.get("tool") or "tool")
            buffer = self.buffer(agent_id)
            lines = buffer.flush()
            if buffer.append_line(f"{tool}()"):
                lines.append(f"{tool}()")
            await self._handler.on_stream_output(agent_id, lines, 0, generation)
            await self._handler.on_stream_tool(agent_id, tool, generation)
        elif event.name == "done":
            final = message_text(data.get("message"))
            if final:
                await self.ingest_text(agent_id, final, True, generation)
            final_text = self._turn_text.pop(agent_id, "")
            lines = self.buffer(agent_id).flush()
            if lines:
                await self._handler.on_stream_output(agent_id, lines, 0, generation)
            await self._handler.on_turn_end(
                agent_id,
                final_text,
                str(data.get("state") or "final"),
                data.get("errorMessage"),
                generation,
            )
        elif event.name == "error":
            message = str(data.get("message") or data.get("error") or data.get("text") or "stream error")
            await self._handler.on_stream_error(agent_id, message, generation)
        elif event.name == "open":
            logger.debug("stream_ready", agent_id=agent_id)
