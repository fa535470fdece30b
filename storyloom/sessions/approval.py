"""Human approval gate for gated tool invocations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from storyloom.models import (
    ApprovalDecision,
    ApprovalRequest,
    Decision,
    InvocationStatus,
    Side,
    ToolInvocation,
)

from .channel import SyncChannel
from .registry import InvocationRegistry

logger = logging.getLogger("storyloom.approval")


@dataclass(frozen=True, slots=True)
class ApprovalResolution:
    status: InvocationStatus
    edited_args: dict[str, Any] | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == InvocationStatus.APPROVED


@dataclass(slots=True)
class _PendingApproval:
    request: ApprovalRequest
    future: asyncio.Future[ApprovalResolution]


class ApprovalGate:
    """Parks gated invocations until the UI approves, rejects or they expire.

    The gate performs the ``awaiting_approval`` transition and the decision
    transition itself, so a decision that arrives for an invocation that is
    no longer waiting is dropped without touching any state.
    """

    def __init__(
        self,
        *,
        channel: SyncChannel,
        invocations: InvocationRegistry,
        timeout_s: float | None = None,
    ) -> None:
        self._channel = channel
        self._invocations = invocations
        self._timeout_s = timeout_s
        self._pending: dict[str, _PendingApproval] = {}

    @property
    def timeout_s(self) -> float | None:
        return self._timeout_s

    def is_pending(self, invocation_id: str) -> bool:
        return invocation_id in self._pending

    def pending_requests(self) -> list[ApprovalRequest]:
        return [entry.request for entry in self._pending.values()]

    async def request(
        self,
        invocation: ToolInvocation,
        *,
        description: str = "",
        args_schema: dict[str, Any] | None = None,
    ) -> ApprovalResolution:
        """Emit an approval request and wait for its resolution."""
        if not self._invocations.transition(invocation, InvocationStatus.AWAITING_APPROVAL):
            return ApprovalResolution(status=invocation.status, reason="invocation is no longer pending")

        requested_at = invocation.updated_at
        expires_at = requested_at + timedelta(seconds=self._timeout_s) if self._timeout_s is not None else None
        request = ApprovalRequest(
            invocation_id=invocation.invocation_id,
            tool_name=invocation.tool_name,
            description=description,
            args=dict(invocation.args),
            args_schema=args_schema or {},
            requested_at=requested_at,
            expires_at=expires_at,
        )
        future: asyncio.Future[ApprovalResolution] = asyncio.get_running_loop().create_future()
        self._pending[invocation.invocation_id] = _PendingApproval(request=request, future=future)
        self._channel.publish(request, recipient=Side.UI)
        logger.info(
            "approval_requested",
            extra={
                "session_id": invocation.session_id,
                "invocation_id": invocation.invocation_id,
                "tool_name": invocation.tool_name,
                "timeout_s": self._timeout_s,
            },
        )

        try:
            if self._timeout_s is None:
                return await future
            try:
                return await asyncio.wait_for(future, self._timeout_s)
            except TimeoutError:
                reason = f"No decision was made within {self._timeout_s:g} seconds."
                self._invocations.transition(invocation, InvocationStatus.EXPIRED, reason=reason)
                logger.info(
                    "approval_expired",
                    extra={"session_id": invocation.session_id, "invocation_id": invocation.invocation_id},
                )
                return ApprovalResolution(status=InvocationStatus.EXPIRED, reason=reason)
        finally:
            self._pending.pop(invocation.invocation_id, None)

    def submit(self, decision: ApprovalDecision) -> bool:
        """Apply a UI decision. Returns ``False`` when it was a no-op."""
        entry = self._pending.get(decision.invocation_id)
        if entry is None or entry.future.done():
            logger.debug("approval_decision_ignored", extra={"invocation_id": decision.invocation_id})
            return False

        invocation = self._invocations.get(decision.invocation_id)
        status = InvocationStatus.APPROVED if decision.decision == Decision.APPROVE else InvocationStatus.REJECTED
        if not self._invocations.transition(invocation, status, reason=decision.reason):
            return False
        invocation.decided_at = decision.decided_at
        entry.future.set_result(
            ApprovalResolution(
                status=status,
                edited_args=decision.edited_args if status == InvocationStatus.APPROVED else None,
                reason=decision.reason,
            )
        )
        logger.info(
            "approval_decided",
            extra={
                "session_id": invocation.session_id,
                "invocation_id": invocation.invocation_id,
                "decision": decision.decision.value,
                "edited": bool(decision.edited_args),
            },
        )
        return True

    def expire(self, invocation_id: str, *, reason: str) -> bool:
        entry = self._pending.get(invocation_id)
        if entry is None or entry.future.done():
            return False
        invocation = self._invocations.get(invocation_id)
        if not self._invocations.transition(invocation, InvocationStatus.EXPIRED, reason=reason):
            return False
        entry.future.set_result(ApprovalResolution(status=InvocationStatus.EXPIRED, reason=reason))
        return True

    def expire_all(self, *, reason: str) -> int:
        return sum(1 for invocation_id in list(self._pending) if self.expire(invocation_id, reason=reason))


__all__ = ["ApprovalGate", "ApprovalResolution"]
