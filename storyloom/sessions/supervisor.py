"""Runs approved invocations against the generation backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from storyloom.backends import GenerationBackend, GenerationResult
from storyloom.catalog import ArtifactDraft, ToolContext, ToolSpec
from storyloom.config import RetryPolicy
from storyloom.errors import InvalidArgumentsError, PermanentBackendError, StoryloomError, TransientBackendError
from storyloom.models import Artifact, InvocationStatus, PatchOp, SharedState, Side, ToolInvocation, ToolResult

from .registry import InvocationRegistry
from .store import DEFAULT_MAX_PATCH_RETRIES, StateStore

logger = logging.getLogger("storyloom.supervisor")

Sleep = Callable[[float], Awaitable[Any]]


def _describe(artifact: Artifact) -> str:
    if artifact.supersedes:
        return f"Created revision {artifact.revision} of {artifact.kind.value} '{artifact.name}'."
    return f"Created {artifact.kind.value} '{artifact.name}'."


class ExecutionSupervisor:
    """Executes one invocation at a time per call; many calls run concurrently.

    Every call emits at least one ``running`` event, retries transient
    backend failures with exponential backoff, appends the produced artifact
    to the store and finishes the invocation with exactly one terminal event.
    """

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        store: StateStore,
        invocations: InvocationRegistry,
        retry: RetryPolicy | None = None,
        max_patch_retries: int = DEFAULT_MAX_PATCH_RETRIES,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._store = store
        self._invocations = invocations
        self._retry = retry or RetryPolicy()
        self._max_patch_retries = max_patch_retries
        self._sleep = sleep

    async def execute(
        self,
        invocation: ToolInvocation,
        spec: ToolSpec,
        args: BaseModel,
        *,
        snapshot: SharedState,
        credential: str | None,
    ) -> ToolResult:
        self._invocations.progress(invocation, {"stage": "preparing"})
        try:
            ctx = ToolContext(session_id=invocation.session_id, invocation_id=invocation.invocation_id, state=snapshot)
            draft = ArtifactDraft.model_validate(await spec.func(args, ctx))
            generated = await self._generate(invocation, draft.prompt, credential)
            artifact = self._build_artifact(invocation, spec, draft, generated)
            self._invocations.progress(invocation, {"stage": "saving", "artifact_id": artifact.id})
            self._append(invocation, artifact)
        except StoryloomError as exc:
            self._invocations.fail(invocation, exc)
            if invocation.result is None:
                raise
            return invocation.result

        result = ToolResult(
            invocation_id=invocation.invocation_id,
            tool_name=invocation.tool_name,
            status=InvocationStatus.SUCCEEDED,
            ok=True,
            content=_describe(artifact),
            artifact=artifact,
        )
        self._invocations.transition(invocation, InvocationStatus.SUCCEEDED, result=result)
        return result

    async def _generate(self, invocation: ToolInvocation, prompt: str, credential: str | None) -> GenerationResult:
        max_attempts = self._retry.max_attempts
        attempt = 0
        while True:
            attempt += 1
            invocation.attempts = attempt
            self._invocations.progress(
                invocation,
                {"stage": "generating", "attempt": attempt, "max_attempts": max_attempts},
            )
            try:
                return await self._backend.generate(prompt, credential)
            except TransientBackendError as exc:
                last_error = exc
            except StoryloomError:
                raise
            except (OSError, TimeoutError) as exc:
                last_error = TransientBackendError(f"Generation backend unreachable: {type(exc).__name__}")
            except Exception as exc:
                logger.exception(
                    "generation_error",
                    extra={"invocation_id": invocation.invocation_id, "tool_name": invocation.tool_name},
                )
                raise PermanentBackendError(f"Generation failed: {exc}") from exc

            if attempt >= max_attempts:
                raise TransientBackendError(
                    f"Generation failed after {max_attempts} attempts: {last_error.detail or last_error.title}",
                    extra={"attempts": max_attempts},
                )
            delay = self._retry.delay_for(attempt)
            logger.warning(
                "generation_retry",
                extra={
                    "session_id": invocation.session_id,
                    "invocation_id": invocation.invocation_id,
                    "attempt": attempt,
                    "delay_s": delay,
                    "error": last_error.detail,
                },
            )
            self._invocations.progress(
                invocation,
                {"stage": "retrying", "attempt": attempt, "delay_s": delay, "reason": last_error.detail},
            )
            await self._sleep(delay)

    def _build_artifact(
        self,
        invocation: ToolInvocation,
        spec: ToolSpec,
        draft: ArtifactDraft,
        generated: GenerationResult,
    ) -> Artifact:
        kind = draft.kind or spec.artifact_kind
        if kind is None:
            raise StoryloomError(f"Tool '{spec.name}' did not say which kind of artifact it produces")
        return Artifact(
            kind=kind,
            name=draft.name,
            description=draft.description,
            media_ref=generated.media_ref,
            source_invocation_id=invocation.invocation_id,
            revision=draft.revision,
            supersedes=draft.supersedes,
        )

    def _append(self, invocation: ToolInvocation, artifact: Artifact) -> None:
        def _derive(state: SharedState) -> list[PatchOp] | None:
            if state.find_artifact(artifact.id) is not None:
                return None
            if artifact.supersedes:
                # Re-checked on the latest state: a concurrent edit may have landed first.
                for item in state.sequence(artifact.kind):
                    if item.supersedes == artifact.supersedes:
                        raise InvalidArgumentsError(
                            invocation.tool_name,
                            f"artifact '{artifact.supersedes}' already has a newer revision '{item.id}'",
                        )
            return [PatchOp(op="append", path=artifact.kind.field_name, value=artifact)]

        self._store.apply_with_retry(_derive, actor=Side.ENGINE, max_attempts=self._max_patch_retries)


__all__ = ["ExecutionSupervisor"]
