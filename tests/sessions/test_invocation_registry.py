from __future__ import annotations

import asyncio

import pytest

from storyloom.errors import InvocationCancelledError, InvocationNotFoundError, TransientBackendError
from storyloom.models import InvocationStatus, Side
from storyloom.sessions.channel import SyncChannel
from storyloom.sessions.registry import InvocationRegistry
from storyloom.sessions.telemetry import InvocationTelemetryEvent, LoggingTelemetrySink


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[InvocationTelemetryEvent] = []

    async def emit(self, event: InvocationTelemetryEvent) -> None:
        self.events.append(event)


async def _registry(sink=None):
    channel = SyncChannel("s")
    sub = await channel.subscribe(Side.AGENT)
    return InvocationRegistry("s", channel=channel, telemetry=sink), sub


def _events(sub) -> list:
    items = []
    while not sub.queue.empty():
        items.append(sub.queue.get_nowait().payload)
    return items


@pytest.mark.asyncio
async def test_lifecycle_publishes_one_event_per_transition() -> None:
    registry, sub = await _registry()
    invocation = registry.create(tool_name="create_character", args={"name": "Ari"}, gated=False, state_version=3)

    assert registry.progress(invocation, {"stage": "preparing"})
    assert registry.progress(invocation, {"stage": "generating"})
    assert registry.transition(invocation, InvocationStatus.SUCCEEDED)

    events = _events(sub)
    assert [item.status for item in events] == [
        InvocationStatus.REQUESTED,
        InvocationStatus.RUNNING,
        InvocationStatus.RUNNING,
        InvocationStatus.SUCCEEDED,
    ]
    assert [item.sequence for item in events] == [0, 1, 2, 3]
    assert [item.terminal for item in events] == [False, False, False, True]
    assert events[1].progress == {"stage": "preparing"}
    assert invocation.completed_at is not None
    assert invocation.state_version == 3


@pytest.mark.asyncio
async def test_only_the_first_terminal_transition_counts() -> None:
    registry, sub = await _registry()
    invocation = registry.create(tool_name="t", args={}, gated=False, state_version=0)
    registry.progress(invocation, {"stage": "generating"})

    assert registry.fail(invocation, TransientBackendError("down"))
    assert not registry.transition(invocation, InvocationStatus.SUCCEEDED)
    assert not registry.abort(invocation, InvocationCancelledError("late"))
    assert not registry.progress(invocation, {"stage": "late"})

    terminal = [item for item in _events(sub) if item.terminal]
    assert len(terminal) == 1
    assert terminal[0].status == InvocationStatus.FAILED
    assert terminal[0].error.model_extra["code"] == "backend-transient"

    result = await registry.wait(invocation.invocation_id, timeout=1)
    assert not result.ok
    assert result.content == "Tool 't' failed: down"


@pytest.mark.asyncio
async def test_illegal_transitions_are_ignored() -> None:
    registry, _ = await _registry()
    invocation = registry.create(tool_name="t", args={}, gated=True, state_version=0)

    assert not registry.transition(invocation, InvocationStatus.SUCCEEDED)
    assert not registry.transition(invocation, InvocationStatus.APPROVED)
    assert invocation.status == InvocationStatus.REQUESTED


@pytest.mark.asyncio
async def test_abort_expires_waiting_and_fails_running_invocations() -> None:
    registry, _ = await _registry()
    waiting = registry.create(tool_name="t", args={}, gated=True, state_version=0)
    registry.transition(waiting, InvocationStatus.AWAITING_APPROVAL)
    running = registry.create(tool_name="t", args={}, gated=False, state_version=0)
    registry.progress(running, {"stage": "generating"})

    registry.abort(waiting, InvocationCancelledError("stop"))
    registry.abort(running, InvocationCancelledError("stop"))

    assert waiting.status == InvocationStatus.EXPIRED
    assert waiting.result.content == "stop"
    assert waiting.decided_at is not None
    assert running.status == InvocationStatus.FAILED
    assert running.error.model_extra["code"] == "cancelled"
    assert registry.pending() == []
    assert len(registry.list_invocations(status=InvocationStatus.FAILED)) == 1


@pytest.mark.asyncio
async def test_wait_unknown_invocation_raises() -> None:
    registry, _ = await _registry()
    with pytest.raises(InvocationNotFoundError):
        await registry.wait("missing")


@pytest.mark.asyncio
async def test_wait_timeout_does_not_cancel_the_result() -> None:
    registry, _ = await _registry()
    invocation = registry.create(tool_name="t", args={}, gated=False, state_version=0)

    with pytest.raises(TimeoutError):
        await registry.wait(invocation.invocation_id, timeout=0.01)

    registry.progress(invocation, {"stage": "x"})
    registry.transition(invocation, InvocationStatus.SUCCEEDED)
    result = await registry.wait(invocation.invocation_id, timeout=1)
    assert result.status == InvocationStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_telemetry_receives_request_and_outcome() -> None:
    sink = RecordingSink()
    registry, _ = await _registry(sink)
    invocation = registry.create(tool_name="t", args={}, gated=True, state_version=0)
    registry.transition(invocation, InvocationStatus.AWAITING_APPROVAL)
    registry.transition(invocation, InvocationStatus.REJECTED)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert [event.event_type for event in sink.events] == ["invocation_requested", "invocation_rejected"]
    assert sink.events[-1].duration_ms is not None
    assert sink.events[-1].gated is True


@pytest.mark.asyncio
async def test_logging_sink_writes_event_type(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingTelemetrySink()
    event = InvocationTelemetryEvent(
        event_type="invocation_failed",
        session_id="s",
        invocation_id="i",
        tool_name="t",
        status=InvocationStatus.FAILED,
        gated=False,
        error_code="backend-permanent",
    )
    with caplog.at_level("INFO", logger="storyloom.telemetry"):
        await sink.emit(event)

    record = caplog.records[-1]
    assert record.getMessage() == "invocation_failed"
    assert record.error_code == "backend-permanent"
