"""Invocation bookkeeping and status transitions."""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any

from storyloom.errors import InvocationNotFoundError, StoryloomError
from storyloom.models import InvocationEvent, InvocationStatus, Side, ToolInvocation, ToolResult

from .channel import SyncChannel
from .telemetry import InvocationTelemetryEvent, InvocationTelemetrySink, NoOpTelemetrySink

logger = logging.getLogger("storyloom.pipeline")

_S = InvocationStatus

_ALLOWED: dict[InvocationStatus, frozenset[InvocationStatus]] = {
    _S.REQUESTED: frozenset({_S.AWAITING_APPROVAL, _S.RUNNING, _S.FAILED, _S.EXPIRED}),
    _S.AWAITING_APPROVAL: frozenset({_S.APPROVED, _S.REJECTED, _S.EXPIRED}),
    _S.APPROVED: frozenset({_S.RUNNING, _S.FAILED, _S.EXPIRED}),
    _S.RUNNING: frozenset({_S.RUNNING, _S.SUCCEEDED, _S.FAILED}),
}

_TELEMETRY_TYPES = {
    _S.SUCCEEDED: "invocation_completed",
    _S.FAILED: "invocation_failed",
    _S.REJECTED: "invocation_rejected",
    _S.EXPIRED: "invocation_expired",
}

_DEFAULT_CONTENT = {
    _S.REJECTED: "The user rejected this tool call. Do not retry it unless the user asks again.",
    _S.EXPIRED: "The approval request expired before the user made a decision.",
}


class InvocationRegistry:
    """Owns every :class:`ToolInvocation` of a session for its whole life.

    All status changes go through :meth:`transition`, which enforces the
    allowed state machine, publishes one ``invocation_event`` per change and
    guarantees exactly one terminal event per invocation.
    """

    def __init__(
        self,
        session_id: str,
        *,
        channel: SyncChannel,
        telemetry: InvocationTelemetrySink | None = None,
    ) -> None:
        self.session_id = session_id
        self._channel = channel
        self._telemetry = telemetry or NoOpTelemetrySink()
        self._invocations: dict[str, ToolInvocation] = {}
        self._results: dict[str, asyncio.Future[ToolResult]] = {}
        self._event_counts: dict[str, int] = {}
        self._background: set[asyncio.Task[None]] = set()

    def create(
        self,
        *,
        tool_name: str,
        args: dict[str, Any],
        gated: bool,
        state_version: int,
        requested_by: Side = Side.AGENT,
    ) -> ToolInvocation:
        invocation = ToolInvocation(
            invocation_id=secrets.token_hex(8),
            session_id=self.session_id,
            tool_name=tool_name,
            args=args,
            gated=gated,
            requested_by=requested_by,
            state_version=state_version,
        )
        self._invocations[invocation.invocation_id] = invocation
        self._results[invocation.invocation_id] = asyncio.get_running_loop().create_future()
        self._event_counts[invocation.invocation_id] = 0
        logger.info(
            "invocation_requested",
            extra={
                "session_id": self.session_id,
                "invocation_id": invocation.invocation_id,
                "tool_name": tool_name,
                "gated": gated,
            },
        )
        self._publish(invocation)
        self._emit_telemetry("invocation_requested", invocation)
        return invocation

    def get(self, invocation_id: str) -> ToolInvocation:
        invocation = self._invocations.get(invocation_id)
        if invocation is None:
            raise InvocationNotFoundError(invocation_id)
        return invocation

    def list_invocations(self, *, status: InvocationStatus | None = None) -> list[ToolInvocation]:
        items = list(self._invocations.values())
        if status is not None:
            items = [item for item in items if item.status == status]
        return items

    def pending(self) -> list[ToolInvocation]:
        return [item for item in self._invocations.values() if not item.terminal]

    def transition(
        self,
        invocation: ToolInvocation,
        status: InvocationStatus,
        *,
        progress: dict[str, Any] | None = None,
        result: ToolResult | None = None,
        error: StoryloomError | None = None,
        reason: str | None = None,
    ) -> bool:
        current = invocation.status
        if status not in _ALLOWED.get(current, frozenset()):
            logger.debug(
                "invocation_transition_ignored",
                extra={
                    "invocation_id": invocation.invocation_id,
                    "from_status": current.value,
                    "to_status": status.value,
                },
            )
            return False

        if status != current:
            invocation.update_status(status)
        problem = error.to_problem_details() if error is not None else None
        if status.terminal:
            invocation.error = problem
            invocation.result = result or self._build_result(invocation, problem, reason)
            result = invocation.result

        self._publish(invocation, progress=progress, result=result if status.terminal else None, reason=reason)

        if status.terminal:
            waiter = self._results[invocation.invocation_id]
            if not waiter.done():
                waiter.set_result(invocation.result)  # type: ignore[arg-type]
            self._emit_telemetry(_TELEMETRY_TYPES[status], invocation)
            log = logger.warning if status == _S.FAILED else logger.info
            log(
                "invocation_finished",
                extra={
                    "session_id": self.session_id,
                    "invocation_id": invocation.invocation_id,
                    "tool_name": invocation.tool_name,
                    "status": status.value,
                    "error_code": problem.model_extra.get("code") if problem and problem.model_extra else None,
                },
            )
        return True

    def progress(self, invocation: ToolInvocation, payload: dict[str, Any]) -> bool:
        return self.transition(invocation, _S.RUNNING, progress=payload)

    def fail(self, invocation: ToolInvocation, error: StoryloomError) -> bool:
        return self.transition(invocation, _S.FAILED, error=error, reason=error.detail or error.title)

    def abort(self, invocation: ToolInvocation, error: StoryloomError) -> bool:
        """Terminate an invocation that was interrupted (cancel or shutdown)."""
        if invocation.status in {_S.REQUESTED, _S.AWAITING_APPROVAL}:
            return self.transition(invocation, _S.EXPIRED, error=error, reason=error.detail or error.title)
        return self.fail(invocation, error)

    async def wait(self, invocation_id: str, *, timeout: float | None = None) -> ToolResult:
        self.get(invocation_id)
        waiter = self._results[invocation_id]
        return await asyncio.wait_for(asyncio.shield(waiter), timeout)

    def _build_result(
        self,
        invocation: ToolInvocation,
        problem: Any,
        reason: str | None,
    ) -> ToolResult:
        status = invocation.status
        if status == _S.FAILED:
            content = f"Tool '{invocation.tool_name}' failed: {reason or 'unknown error'}"
        else:
            content = reason if status == _S.EXPIRED and reason else _DEFAULT_CONTENT.get(status, "")
        return ToolResult(
            invocation_id=invocation.invocation_id,
            tool_name=invocation.tool_name,
            status=status,
            ok=status == _S.SUCCEEDED,
            content=content,
            error=problem if status == _S.FAILED else None,
        )

    def _publish(
        self,
        invocation: ToolInvocation,
        *,
        progress: dict[str, Any] | None = None,
        result: ToolResult | None = None,
        reason: str | None = None,
    ) -> None:
        sequence = self._event_counts.get(invocation.invocation_id, 0)
        self._event_counts[invocation.invocation_id] = sequence + 1
        self._channel.publish(
            InvocationEvent(
                invocation_id=invocation.invocation_id,
                tool_name=invocation.tool_name,
                status=invocation.status,
                sequence=sequence,
                terminal=invocation.terminal,
                progress=progress,
                result=result,
                error=invocation.error if invocation.terminal else None,
                reason=reason,
            )
        )

    def _emit_telemetry(self, event_type: str, invocation: ToolInvocation) -> None:
        duration_ms = None
        if invocation.completed_at is not None:
            duration_ms = (invocation.completed_at - invocation.requested_at).total_seconds() * 1000
        event = InvocationTelemetryEvent(
            event_type=event_type,  # type: ignore[arg-type]
            session_id=self.session_id,
            invocation_id=invocation.invocation_id,
            tool_name=invocation.tool_name,
            status=invocation.status,
            gated=invocation.gated,
            attempts=invocation.attempts,
            duration_ms=duration_ms,
            error_code=(invocation.error.model_extra or {}).get("code") if invocation.error else None,
        )
        task = asyncio.create_task(self._telemetry.emit(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)


__all__ = ["InvocationRegistry"]
