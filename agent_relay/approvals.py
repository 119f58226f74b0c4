"""Correlates out-of-band tool approval requests with human decisions."""

import asyncio
import json
import logging
import uuid
from typing import Any, Optional

from .models import ApprovalDecision, EventType, PendingApproval
from .notifier import Notifier
from .session_registry import ChannelSessionRegistry

logger = logging.getLogger(__name__)

MAX_INPUT_PREVIEW = 500


def parse_decision(response: Optional[str] = None, approved: Optional[bool] = None) -> ApprovalDecision:
    """
    Map a decision payload to an ApprovalDecision.

    `response` wins when present; otherwise the legacy boolean `approved`
    maps to allow/deny.

    Raises:
        ValueError: If neither field is usable
    """
    if response is not None:
        return ApprovalDecision(response)
    if approved is not None:
        return ApprovalDecision.ALLOW if approved else ApprovalDecision.DENY
    raise ValueError("Decision payload needs 'response' or 'approved'")


def format_tool_input(tool_input: Any) -> str:
    """Render tool input for display, truncated."""
    if tool_input is None:
        return ""
    text = tool_input if isinstance(tool_input, str) else json.dumps(tool_input, indent=2, default=str)
    if len(text) > MAX_INPUT_PREVIEW:
        return text[:MAX_INPUT_PREVIEW] + "..."
    return text


class ApprovalCoordinator:
    """
    Holds approval requests until a decision arrives or the timeout elapses.

    Each request is registered before the UI is notified, so a decision can
    never arrive for an id that is not yet pending. Resolution and removal
    happen together: whichever of decision and timeout comes first wins and
    the other finds nothing to resolve.
    """

    def __init__(
        self,
        registry: ChannelSessionRegistry,
        notifier: Notifier,
        config: Optional[dict] = None,
    ):
        self.registry = registry
        self.notifier = notifier
        self.config = config or {}

        approvals_config = self.config.get("approvals", {})
        self.default_timeout = approvals_config.get("timeout_seconds", 300)

        server_config = self.config.get("server", {})
        base_url = server_config.get(
            "public_url",
            f"http://{server_config.get('host', '127.0.0.1')}:{server_config.get('port', 8420)}",
        )
        self.approval_target = f"{base_url}/approval-response"

        self._pending: dict[str, PendingApproval] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def list_pending(self, channel_id: Optional[str] = None) -> list[PendingApproval]:
        return [
            p for p in self._pending.values()
            if channel_id is None or p.channel_id == channel_id
        ]

    def is_allowlisted(self, channel_id: str, tool_name: str) -> bool:
        session = self.registry.get(channel_id)
        return bool(session and tool_name in session.tool_allowlist)

    async def request_approval(
        self,
        channel_id: str,
        tool_name: str,
        request_id: Optional[str] = None,
        timeout: Optional[float] = None,
        tool_input: Any = None,
    ) -> ApprovalDecision:
        """
        Ask the channel's user to approve a tool call.

        Tools on the channel's session allowlist are allowed immediately with
        nothing registered or notified. Otherwise waits for resolve_approval();
        a timeout counts as deny.

        Raises:
            ValueError: If `request_id` is already pending
        """
        if self.is_allowlisted(channel_id, tool_name):
            logger.info(f"Auto-approved {tool_name} for channel {channel_id} (session allowlist)")
            return ApprovalDecision.ALLOW

        request_id = request_id or uuid.uuid4().hex[:8]
        if request_id in self._pending:
            raise ValueError(f"Approval request {request_id} is already pending")
        timeout = timeout if timeout is not None else self.default_timeout

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingApproval(
            request_id=request_id,
            channel_id=channel_id,
            tool_name=tool_name,
            future=future,
        )
        logger.info(f"Approval request {request_id}: {tool_name} on channel {channel_id}")

        try:
            await self.notifier.notify(
                channel_id,
                EventType.APPROVAL_REQUEST,
                request_id=request_id,
                tool_name=tool_name,
                approval_target=self.approval_target,
                tool_input=format_tool_input(tool_input),
            )
        except Exception as e:
            logger.error(f"Failed to notify approval request {request_id}: {e}")

        try:
            decision = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Approval request {request_id} timed out after {timeout}s, denying")
            decision = ApprovalDecision.DENY
        finally:
            self._pending.pop(request_id, None)

        logger.info(f"Approval request {request_id} resolved: {decision.value}")
        return decision

    def resolve_approval(self, request_id: str, decision: ApprovalDecision) -> bool:
        """
        Deliver a decision for a pending request.

        Returns:
            True if a pending request was resolved, False for unknown or
            already-resolved ids
        """
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            logger.info(f"Ignoring {decision.value} for unknown or resolved approval {request_id}")
            return False

        if decision == ApprovalDecision.ALLOW_SESSION:
            session = self.registry.get_or_create(pending.channel_id)
            session.tool_allowlist.add(pending.tool_name)
            logger.info(f"Added {pending.tool_name} to session allowlist for channel {pending.channel_id}")

        pending.future.set_result(decision)
        return True

    def cancel_channel(self, channel_id: str) -> int:
        """Deny every request pending on a channel (teardown). Returns the number denied."""
        denied = 0
        for pending in self.list_pending(channel_id):
            if self.resolve_approval(pending.request_id, ApprovalDecision.DENY):
                denied += 1
        return denied
