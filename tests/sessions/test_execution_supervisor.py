from __future__ import annotations

import pytest
from conftest import FakeBackend

from storyloom.catalog import ArtifactDraft, ToolContext, build_registry, tool
from storyloom.config import RetryPolicy
from storyloom.errors import PermanentBackendError, TransientBackendError
from storyloom.models import ArtifactKind, InvocationStatus, PatchOp, Side
from storyloom.sessions.channel import SyncChannel
from storyloom.sessions.registry import InvocationRegistry
from storyloom.sessions.store import StateStore
from storyloom.sessions.supervisor import ExecutionSupervisor
from storyloom.story_tools import CharacterArgs, EditArgs, default_registry


class SketchArgs(CharacterArgs):
    pass


@tool(gated=False)
async def sketch(args: SketchArgs, ctx: ToolContext) -> ArtifactDraft:
    return ArtifactDraft(prompt=args.prompt, name=args.name)


class _Harness:
    def __init__(self, backend: FakeBackend, retry: RetryPolicy | None = None) -> None:
        self.channel = SyncChannel("s")
        self.store = StateStore(session_id="s")
        self.registry = InvocationRegistry("s", channel=self.channel)
        self.delays: list[float] = []
        self.supervisor = ExecutionSupervisor(
            backend=backend,
            store=self.store,
            invocations=self.registry,
            retry=retry or RetryPolicy(),
            sleep=self._sleep,
        )

    async def _sleep(self, delay: float) -> None:
        self.delays.append(delay)

    async def run(self, tool_name: str = "create_character", args=None, *, tools=None):
        tools = tools or default_registry()
        spec = tools.get(tool_name)
        args = args or CharacterArgs(name="Ari", prompt="a fox scout")
        invocation = self.registry.create(tool_name=tool_name, args=args.model_dump(), gated=False, state_version=0)
        sub = await self.channel.subscribe(Side.AGENT)
        result = await self.supervisor.execute(
            invocation, spec, args, snapshot=self.store.snapshot(), credential="sk-test"
        )
        events = []
        while not sub.queue.empty():
            events.append(sub.queue.get_nowait().payload)
        return invocation, result, [item for item in events if item.kind == "invocation_event"]


@pytest.mark.asyncio
async def test_success_appends_artifact_and_finishes_once() -> None:
    backend = FakeBackend(["media://ari"])
    harness = _Harness(backend)

    invocation, result, events = await harness.run()

    assert result.ok
    assert result.content == "Created character 'Ari'."
    assert result.artifact.media_ref == "media://ari"
    assert result.artifact.source_invocation_id == invocation.invocation_id
    assert harness.store.snapshot().characters == (result.artifact,)
    assert backend.calls == [("Character portrait of Ari: a fox scout", "sk-test")]
    assert events[0].status == InvocationStatus.RUNNING
    assert [item.progress["stage"] for item in events if not item.terminal] == ["preparing", "generating", "saving"]
    assert [item.status for item in events if item.terminal] == [InvocationStatus.SUCCEEDED]
    assert invocation.attempts == 1


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff() -> None:
    backend = FakeBackend([TransientBackendError("busy"), OSError("reset"), "media://ok"])
    harness = _Harness(backend)

    invocation, result, events = await harness.run()

    assert result.ok
    assert invocation.attempts == 3
    assert len(backend.calls) == 3
    assert harness.delays == [0.5, 1.0]
    stages = [item.progress["stage"] for item in events if item.progress]
    assert stages.count("retrying") == 2
    assert stages.count("generating") == 3


@pytest.mark.asyncio
async def test_exhausted_retries_fail_with_transient_error() -> None:
    backend = FakeBackend([TransientBackendError("busy")] * 3)
    harness = _Harness(backend)

    invocation, result, events = await harness.run()

    assert not result.ok
    assert result.status == InvocationStatus.FAILED
    assert result.error.model_extra["code"] == "backend-transient"
    assert "after 3 attempts" in result.error.detail
    assert harness.delays == [0.5, 1.0]
    assert harness.store.version == 0
    assert [item.status for item in events if item.terminal] == [InvocationStatus.FAILED]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried() -> None:
    backend = FakeBackend([PermanentBackendError("content policy")])
    harness = _Harness(backend)

    invocation, result, _ = await harness.run()

    assert len(backend.calls) == 1
    assert harness.delays == []
    assert result.error.model_extra["code"] == "backend-permanent"
    assert invocation.status == InvocationStatus.FAILED


@pytest.mark.asyncio
async def test_unexpected_backend_exception_becomes_permanent() -> None:
    backend = FakeBackend([ValueError("bad payload")])
    harness = _Harness(backend)

    _, result, _ = await harness.run()

    assert result.error.model_extra["code"] == "backend-permanent"
    assert "bad payload" in result.error.detail


@pytest.mark.asyncio
async def test_artifact_lands_after_concurrent_writes() -> None:
    backend = FakeBackend()
    harness = _Harness(backend)

    async def _interleave(prompt: str, credential: str | None):
        # The UI edits the title while generation is in flight.
        harness.store.apply(harness.store.version, [PatchOp(path="values.title", value="Fox Tales")], actor=Side.UI)
        return await FakeBackend.generate(backend, prompt, credential)

    backend.generate = _interleave  # type: ignore[method-assign]
    _, result, _ = await harness.run()

    snapshot = harness.store.snapshot()
    assert snapshot.values == {"title": "Fox Tales"}
    assert snapshot.characters == (result.artifact,)
    assert snapshot.version == 2


@pytest.mark.asyncio
async def test_tool_without_artifact_kind_fails() -> None:
    harness = _Harness(FakeBackend())
    _, result, _ = await harness.run(
        "sketch", SketchArgs(name="Ari", prompt="p"), tools=build_registry([sketch])
    )

    assert not result.ok
    assert result.error.model_extra["code"] == "internal"
    assert harness.store.version == 0


@pytest.mark.asyncio
async def test_edit_creates_a_new_revision() -> None:
    backend = FakeBackend()
    harness = _Harness(backend)
    _, first, _ = await harness.run()

    _, second, _ = await harness.run(
        "edit_artifact", EditArgs(artifact_id=first.artifact.id, instructions="add a scarf")
    )

    assert second.ok
    assert second.artifact.kind == ArtifactKind.CHARACTER
    assert second.artifact.supersedes == first.artifact.id
    assert second.artifact.revision == 2
    assert second.content == "Created revision 2 of character 'Ari'."
    assert [item.id for item in harness.store.snapshot().current(ArtifactKind.CHARACTER)] == [second.artifact.id]


@pytest.mark.asyncio
async def test_second_edit_of_the_same_revision_fails() -> None:
    backend = FakeBackend()
    harness = _Harness(backend)
    _, first, _ = await harness.run()
    # Both edits were requested against the same state, before either landed.
    requested = harness.store.snapshot()
    spec = default_registry().get("edit_artifact")
    args = EditArgs(artifact_id=first.artifact.id, instructions="add a scarf")

    results = []
    for _ in range(2):
        invocation = harness.registry.create(
            tool_name="edit_artifact", args=args.model_dump(), gated=False, state_version=requested.version
        )
        results.append(
            await harness.supervisor.execute(invocation, spec, args, snapshot=requested, credential="sk-test")
        )

    assert [item.ok for item in results] == [True, False]
    assert results[1].error.model_extra["code"] == "invalid-arguments"
    assert f"newer revision '{results[0].artifact.id}'" in results[1].error.detail
    revisions = [item for item in harness.store.snapshot().characters if item.supersedes == first.artifact.id]
    assert revisions == [results[0].artifact]
