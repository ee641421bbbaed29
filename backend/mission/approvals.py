"""Human-in-the-loop approval queue.

Approval requests come from two places: agent output carrying an
approval marker, and the gateway's own approvals endpoint (polled on the
reconciler tick). Resolving a gateway approval goes through the gateway;
resolving an agent approval sends the agent an [APPROVED]/[DENIED]
directive. Resolved entries are kept for ``retention_hours``.
"""

import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import ValidationError

from mission.gateway import GatewayClient, parse_timestamp
from mission.prompts import approval_directive
from models.database import APPROVALS_KEY, StateStore
from models.schemas import ApprovalRequest, ApprovalSource, ApprovalStatus

logger = structlog.get_logger(__name__)

APPROVAL_MARKER_RE = re.compile(
    r"\[APPROVAL_REQUIRED\]|\[NEEDS_APPROVAL\]|APPROVAL REQUIRED:",
    re.IGNORECASE,
)

SendDirective = Callable[[str, str], Awaitable[None]]
AgentResolver = Callable[[str], tuple[str | None, str | None]]


def scan_approval_markers(text: str) -> list[tuple[str, str]]:
    """Find approval markers in agent output.

    Returns:
        (action, context) per marker. The action is the text after the
        marker on its line (or the next non-blank line when the marker
        stands alone); the context is up to two preceding non-blank lines.
    """
    lines = text.splitlines()
    found: list[tuple[str, str]] = []
    for index, line in enumerate(lines):
        match = APPROVAL_MARKER_RE.search(line)
        if not match:
            continue
        action = line[match.end():].strip().lstrip(":").strip()
        if not action:
            following = [candidate.strip() for candidate in lines[index + 1:] if candidate.strip()]
            action = following[0] if following else "Approval requested"
        preceding = [candidate.strip() for candidate in lines[:index] if candidate.strip()]
        found.append((action, "\n".join(preceding[-2:])))
    return found


class ApprovalQueue:
    """Pending and recently resolved approval requests.

    Attributes:
        retention_hours: How long resolved requests are kept.
    """

    def __init__(
        self,
        store: StateStore,
        gateway: GatewayClient,
        retention_hours: float = 24.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self.retention_hours = retention_hours
        self._requests: list[ApprovalRequest] = []

    async def load(self) -> list[ApprovalRequest]:
        raw = await self._store.get_json(APPROVALS_KEY, default=[])
        requests: list[ApprovalRequest] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                requests.append(ApprovalRequest.model_validate(item))
            except ValidationError:
                logger.warning("approval_entry_malformed")
        self._requests = requests
        if self._prune():
            await self._persist()
        return list(self._requests)

    def all(self) -> list[ApprovalRequest]:
        return list(self._requests)

    def pending(self) -> list[ApprovalRequest]:
        return [r for r in self._requests if r.status == ApprovalStatus.PENDING]

    def get(self, approval_id: str) -> ApprovalRequest | None:
        for request in self._requests:
            if request.id == approval_id:
                return request
        return None

    def _prune(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        cutoff = now - self.retention_hours * 3600
        kept = [
            r
            for r in self._requests
            if r.status == ApprovalStatus.PENDING or (r.resolved_at or r.requested_at) >= cutoff
        ]
        removed = len(kept) != len(self._requests)
        self._requests = kept
        return removed

    async def _persist(self) -> None:
        await self._store.set_json(APPROVALS_KEY, [r.model_dump(mode="json") for r in self._requests])

    async def add_from_agent(self, agent_id: str, agent_name: str, text: str) -> list[ApprovalRequest]:
        """Create requests for every approval marker in an agent's turn."""
        added: list[ApprovalRequest] = []
        for action, context in scan_approval_markers(text):
            duplicate = any(
                r.agent_id == agent_id and r.action == action and r.status == ApprovalStatus.PENDING
                for r in self._requests
            )
            if duplicate:
                continue
            request = ApprovalRequest(
                agent_id=agent_id,
                agent_name=agent_name,
                action=action,
                context=context,
                source=ApprovalSource.AGENT,
            )
            self._requests.append(request)
            added.append(request)
        if added:
            await self._persist()
            logger.info("approvals_requested", agent_id=agent_id, count=len(added))
        return added

    async def merge_gateway(
        self,
        raw_approvals: list[dict[str, Any]],
        resolve_agent: AgentResolver | None = None,
    ) -> list[ApprovalRequest]:
        """Merge gateway-side approvals, deduplicated by gateway id.

        Args:
            raw_approvals: Items from GatewayClient.list_approvals().
            resolve_agent: Maps a session key to (agent_id, agent_name).
        """
        known = {r.gateway_id for r in self._requests if r.gateway_id}
        added: list[ApprovalRequest] = []
        for raw in raw_approvals:
            gateway_id = raw.get("id")
            if not gateway_id or str(gateway_id) in known:
                continue
            agent_id, agent_name = (None, None)
            session_key = raw.get("sessionKey")
            if resolve_agent is not None and session_key:
                agent_id, agent_name = resolve_agent(str(session_key))
            request = ApprovalRequest(
                agent_id=agent_id,
                agent_name=agent_name,
                action=str(raw.get("command") or raw.get("action") or raw.get("title") or "Approval requested"),
                context=str(raw.get("context") or raw.get("reason") or raw.get("description") or ""),
                requested_at=parse_timestamp(raw.get("createdAt")) or time.time(),
                source=ApprovalSource.GATEWAY,
                gateway_id=str(gateway_id),
            )
            known.add(request.gateway_id)
            self._requests.append(request)
            added.append(request)
        if added:
            await self._persist()
            logger.info("gateway_approvals_merged", count=len(added))
        return added

    async def resolve(
        self,
        approval_id: str,
        approve: bool,
        send_directive: SendDirective | None = None,
    ) -> ApprovalRequest | None:
        """Approve or deny a pending request.

        Gateway requests are resolved through the gateway (a GatewayError
        propagates and leaves the request pending). Agent requests are
        answered with a directive to the agent.

        Returns:
            The resolved request, or None if no pending request has that id.
        """
        request = self.get(approval_id)
        if request is None or request.status != ApprovalStatus.PENDING:
            return None

        if request.source == ApprovalSource.GATEWAY and request.gateway_id:
            await self._gateway.resolve_approval(request.gateway_id, approve)
        elif request.agent_id and send_directive is not None:
            await send_directive(request.agent_id, approval_directive(request.action, approve))

        request.status = ApprovalStatus.APPROVED if approve else ApprovalStatus.DENIED
        request.resolved_at = time.time()
        self._prune()
        await self._persist()
        logger.info(
            "approval_resolved",
            approval_id=approval_id,
            agent_id=request.agent_id,
            status=request.status.value,
            source=request.source.value,
        )
        return request
