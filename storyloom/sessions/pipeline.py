"""Tool invocation requests: validation, routing and dispatch."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from storyloom.catalog import ToolRegistry, ToolSpec, resolve_state_refs
from storyloom.config import EngineConfig
from storyloom.errors import (
    InvocationCancelledError,
    InvocationLimitError,
    MissingCredentialError,
    StoryloomError,
)
from storyloom.models import ApprovalDecision, SharedState, Side, ToolInvocation

from .approval import ApprovalGate
from .registry import InvocationRegistry
from .store import StateStore
from .supervisor import ExecutionSupervisor

logger = logging.getLogger("storyloom.pipeline")


class InvocationPipeline:
    """Turns a tool request into a running invocation.

    ``request_invocation`` validates synchronously, so ``UnknownToolError`` and
    ``InvalidArgumentsError`` reach the caller and no invocation is created.
    Everything after that (approval wait, credential check, execution) runs
    in a background task per invocation and ends in a terminal event.
    """

    def __init__(
        self,
        *,
        session_id: str,
        tools: ToolRegistry,
        invocations: InvocationRegistry,
        store: StateStore,
        gate: ApprovalGate,
        supervisor: ExecutionSupervisor,
        config: EngineConfig | None = None,
    ) -> None:
        self.session_id = session_id
        self._tools = tools
        self._invocations = invocations
        self._store = store
        self._gate = gate
        self._supervisor = supervisor
        self._config = config or EngineConfig()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._abort_errors: dict[str, StoryloomError] = {}

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    def request_invocation(
        self,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        *,
        requested_by: Side = Side.AGENT,
    ) -> str:
        spec = self._tools.get(tool_name)
        limit = self._config.limits.max_inflight_invocations
        if len(self._tasks) >= limit:
            raise InvocationLimitError(f"At most {limit} invocations may be in flight per session.")

        snapshot = self._store.snapshot()
        resolved = resolve_state_refs(spec, args or {}, snapshot)
        validated = self._tools.validate_args(tool_name, resolved, state=snapshot)

        invocation = self._invocations.create(
            tool_name=spec.name,
            args=validated.model_dump(mode="json"),
            gated=spec.gated,
            state_version=snapshot.version,
            requested_by=requested_by,
        )
        task = asyncio.create_task(
            self._drive(invocation, spec, validated, snapshot),
            name=f"storyloom-invocation-{invocation.invocation_id}",
        )
        self._tasks[invocation.invocation_id] = task
        task.add_done_callback(lambda _: self._settle(invocation))
        return invocation.invocation_id

    def decide(self, decision: ApprovalDecision) -> bool:
        return self._gate.submit(decision)

    def cancel(self, invocation_id: str, *, reason: str | None = None) -> bool:
        """Cancel an invocation; a no-op returning ``False`` once it has finished."""
        invocation = self._invocations.get(invocation_id)
        task = self._tasks.get(invocation_id)
        if invocation.terminal or task is None or task.done():
            return False
        self._abort_errors[invocation_id] = InvocationCancelledError(reason or "Cancelled by request.")
        task.cancel()
        logger.info("invocation_cancel_requested", extra={"session_id": self.session_id, "invocation_id": invocation_id})
        return True

    async def shutdown(self, error: StoryloomError) -> None:
        """Abort every in-flight invocation with ``error`` and wait for them to settle."""
        tasks = list(self._tasks.items())
        for invocation_id, task in tasks:
            self._abort_errors.setdefault(invocation_id, error)
            task.cancel()
        if tasks:
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)

    async def _drive(
        self,
        invocation: ToolInvocation,
        spec: ToolSpec,
        args: BaseModel,
        requested: SharedState,
    ) -> None:
        try:
            if spec.gated:
                resolution = await self._gate.request(
                    invocation,
                    description=spec.desc,
                    args_schema=spec.args_model.model_json_schema(),
                )
                if not resolution.approved:
                    return
                if resolution.edited_args:
                    args = self._apply_edits(invocation, spec, resolution.edited_args, requested)

            # Approval can take arbitrarily long; the UI may have cleared the key meanwhile.
            credential = self._store.snapshot().credential
            if spec.requires_credential and self._config.require_credential and not credential:
                raise MissingCredentialError()

            logger.info(
                "invocation_dispatched",
                extra={
                    "session_id": self.session_id,
                    "invocation_id": invocation.invocation_id,
                    "tool_name": spec.name,
                    "state_version": requested.version,
                },
            )
            await self._supervisor.execute(invocation, spec, args, snapshot=requested, credential=credential)
        except asyncio.CancelledError:
            self._invocations.abort(invocation, self._abort_error(invocation.invocation_id))
            raise
        except StoryloomError as exc:
            self._invocations.fail(invocation, exc)
        except Exception as exc:
            logger.exception(
                "invocation_error",
                extra={"session_id": self.session_id, "invocation_id": invocation.invocation_id},
            )
            self._invocations.fail(invocation, StoryloomError(f"{type(exc).__name__}: {exc}"))

    def _abort_error(self, invocation_id: str) -> StoryloomError:
        return self._abort_errors.get(invocation_id) or InvocationCancelledError("Cancelled by request.")

    def _settle(self, invocation: ToolInvocation) -> None:
        # A task cancelled before its first step never runs _drive's handlers.
        if not invocation.terminal:
            self._invocations.abort(invocation, self._abort_error(invocation.invocation_id))
        self._tasks.pop(invocation.invocation_id, None)
        self._abort_errors.pop(invocation.invocation_id, None)

    def _apply_edits(
        self,
        invocation: ToolInvocation,
        spec: ToolSpec,
        edited: Mapping[str, Any],
        requested: SharedState,
    ) -> BaseModel:
        merged = {**invocation.args, **edited}
        resolved = resolve_state_refs(spec, merged, self._store.snapshot())
        # The tool runs against the request-time state, so edits are checked there too.
        validated = self._tools.validate_args(spec.name, resolved, state=requested)
        invocation.args = validated.model_dump(mode="json")
        return validated


__all__ = ["InvocationPipeline"]
