"""HTTP client for the remote agent gateway.

The gateway hosts one session per agent, accepts dispatch messages and
streams session output as server-sent events. GatewayClient wraps an
httpx.AsyncClient and normalizes every failure (transport error,
non-2xx status, ``{"ok": false}`` body, malformed JSON) into
GatewayError so callers have one exception type to degrade on.

Usage:
    >>> client = GatewayClient("http://localhost:18789")
    >>> sessions = await client.list_sessions()
    >>> async for event in client.stream_events(sessions[0].key):
    ...     print(event.name, event.data)
    >>> await client.close()
"""

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog
from httpx_sse import ServerSentEvent, aconnect_sse

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    """A gateway call failed.

    Attributes:
        operation: The client method that failed (e.g. "spawn_session").
        status_code: HTTP status, when the gateway answered at all.
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


@dataclass
class SessionRecord:
    """A gateway session, normalized from the session listing."""

    key: str
    label: str | None = None
    status: str | None = None
    updated_at: float | None = None
    last_message: str | None = None
    error: str | None = None
    model: str | None = None


@dataclass
class SpawnResult:
    """Result of a spawn request."""

    session_key: str
    model_applied: str | None = None


@dataclass
class GatewayEvent:
    """One named event from the session push stream."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> float | None:
    """Normalize epoch milliseconds, epoch seconds or ISO-8601 to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        # Anything past year 33658 in seconds is really milliseconds.
        return number / 1000.0 if number > 1e12 else number
    if isinstance(value, str):
        text = value.strip()
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def message_text(message: Any) -> str | None:
    """Extract plain text from a gateway message (string, or dict with text/content parts)."""
    if message is None:
        return None
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        if isinstance(message.get("text"), str):
            return message["text"]
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                part.get("text", "")
                for part in content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            ]
            return "".join(parts) if parts else None
    return None


def _session_from_payload(payload: dict[str, Any]) -> SessionRecord | None:
    key = payload.get("key") or payload.get("sessionKey")
    if not key:
        return None
    error = payload.get("error")
    return SessionRecord(
        key=str(key),
        label=payload.get("label"),
        status=payload.get("status"),
        updated_at=parse_timestamp(payload.get("updatedAt")),
        last_message=message_text(payload.get("lastMessage")),
        error=str(error) if error else None,
        model=payload.get("model"),
    )


# ---------------------------------------------------------------------------
# GatewayClient
# ---------------------------------------------------------------------------


class GatewayClient:
    """Async client for the gateway HTTP surface.

    Attributes:
        base_url: Gateway base URL.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Gateway base URL.
            token: Optional bearer token sent on every request.
            timeout: Per-request timeout in seconds. Streams have no read timeout.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("gateway_request_failed", operation=operation, error=str(e))
            raise GatewayError(f"{operation} failed: {e}", operation=operation) from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(
                "gateway_request_rejected",
                operation=operation,
                status_code=response.status_code,
                error=detail,
            )
            raise GatewayError(
                f"{operation} failed: {detail}",
                operation=operation,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(
                f"{operation} returned malformed JSON",
                operation=operation,
                status_code=response.status_code,
            ) from e
        if isinstance(payload, list):
            return {"items": payload}
        if not isinstance(payload, dict):
            raise GatewayError(
                f"{operation} returned an unexpected payload",
                operation=operation,
                status_code=response.status_code,
            )
        if payload.get("ok") is False:
            raise GatewayError(
                f"{operation} failed: {payload.get('error') or 'gateway reported failure'}",
                operation=operation,
                status_code=response.status_code,
            )
        return payload

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def list_sessions(self) -> list[SessionRecord]:
        """List gateway sessions."""
        payload = await self._request("list_sessions", "GET", "/sessions")
        raw_sessions = payload.get("sessions", payload.get("items", []))
        sessions: list[SessionRecord] = []
        for raw in raw_sessions if isinstance(raw_sessions, list) else []:
            if isinstance(raw, dict):
                record = _session_from_payload(raw)
                if record is not None:
                    sessions.append(record)
        return sessions

    async def spawn_session(
        self,
        friendly_id: str,
        label: str,
        model: str | None = None,
    ) -> SpawnResult:
        """Create a session carrying a deterministic label.

        Raises:
            GatewayError: If the gateway rejects the spawn or returns no key.
        """
        body: dict[str, Any] = {"friendlyId": friendly_id, "label": label}
        if model:
            body["model"] = model
        payload = await self._request("spawn_session", "POST", "/sessions", json=body)
        session_key = payload.get("sessionKey") or payload.get("key")
        if not session_key:
            raise GatewayError("spawn_session returned no session key", operation="spawn_session")
        model_applied = payload.get("modelApplied")
        if isinstance(model_applied, bool):
            model_applied = model if model_applied else None
        return SpawnResult(session_key=str(session_key), model_applied=model_applied)

    async def delete_session(self, session_key: str) -> None:
        await self._request(
            "delete_session",
            "DELETE",
            "/sessions",
            params={"sessionKey": session_key},
        )

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        session_key: str,
        message: str,
        agent_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Send a task bundle to an agent session."""
        return await self._request(
            "dispatch",
            "POST",
            "/agent-dispatch",
            json={
                "sessionKey": session_key,
                "message": message,
                "agentId": agent_id,
                "idempotencyKey": idempotency_key,
            },
        )

    async def abort(self, session_key: str) -> None:
        """Best-effort abort of any in-flight generation."""
        await self._request("abort", "POST", "/chat-abort", json={"sessionKey": session_key})

    async def send_message(self, session_key: str, message: str) -> None:
        """Send an out-of-band directive to a session."""
        await self._request(
            "send_message",
            "POST",
            "/sessions/send",
            json={"sessionKey": session_key, "message": message},
        )

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    async def list_approvals(self) -> list[dict[str, Any]]:
        """List gateway-side pending approvals."""
        payload = await self._request("list_approvals", "GET", "/approvals")
        approvals = payload.get("approvals", payload.get("items", []))
        return [a for a in approvals if isinstance(a, dict)] if isinstance(approvals, list) else []

    async def resolve_approval(self, approval_id: str, approve: bool) -> None:
        decision = "approve" if approve else "deny"
        await self._request(
            "resolve_approval",
            "POST",
            f"/approvals/{approval_id}/{decision}",
        )

    # -------------------------------------------------------------------------
    # Push stream
    # -------------------------------------------------------------------------

    async def stream_events(self, session_key: str) -> AsyncIterator[GatewayEvent]:
        """Yield named events from a session's push stream until it closes.

        Raises:
            GatewayError: If the stream cannot be opened.
        """
        try:
            async with aconnect_sse(
                self._client,
                "GET",
                "/chat-events",
                params={"sessionKey": session_key},
                timeout=httpx.Timeout(None, connect=10.0),
            ) as event_source:
                status_code = event_source.response.status_code
                if status_code >= 400:
                    raise GatewayError(
                        f"stream_events failed with status {status_code}",
                        operation="stream_events",
                        status_code=status_code,
                    )
                async for sse in event_source.aiter_sse():
                    event = _to_gateway_event(sse)
                    if event is not None:
                        yield event
        except httpx.HTTPError as e:
            raise GatewayError(f"stream_events failed: {e}", operation="stream_events") from e


def _to_gateway_event(sse: ServerSentEvent) -> GatewayEvent | None:
    """Decode one server-sent event. Data that is not a JSON object is wrapped."""
    if not sse.data:
        return None
    try:
        data = json.loads(sse.data)
    except json.JSONDecodeError:
        data = {"text": sse.data}
    if not isinstance(data, dict):
        data = {"value": data}
    return GatewayEvent(name=sse.event or "message", data=data)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase or "gateway request failed"
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return json.dumps(payload)
