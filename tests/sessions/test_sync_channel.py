from __future__ import annotations

import pytest

from storyloom.errors import ProtocolError, SessionClosedError
from storyloom.models import (
    Envelope,
    InvocationEvent,
    InvocationStatus,
    Side,
    SnapshotRequest,
    StatePatch,
)
from storyloom.sessions.channel import SyncChannel


def _recording_channel() -> tuple[SyncChannel, list[Envelope]]:
    channel = SyncChannel("s")
    handled: list[Envelope] = []

    async def _handler(envelope: Envelope) -> int:
        handled.append(envelope)
        return envelope.seq

    channel.bind(_handler)
    return channel, handled


@pytest.mark.asyncio
async def test_duplicates_are_dropped_per_sender() -> None:
    channel, handled = _recording_channel()
    first = channel.envelope(SnapshotRequest(), sender=Side.UI, seq=0, client_id="ui-1")

    assert await channel.deliver(first) == 0
    assert await channel.deliver(first) is None
    # Same seq from a different client is a different stream.
    other = channel.envelope(SnapshotRequest(), sender=Side.UI, seq=0, client_id="ui-2")
    assert await channel.deliver(other) == 0
    agent = channel.envelope(SnapshotRequest(), sender=Side.AGENT, seq=0, client_id="ui-1")
    assert await channel.deliver(agent) == 0

    assert len(handled) == 3


@pytest.mark.asyncio
async def test_out_of_order_retransmit_is_dropped() -> None:
    channel, handled = _recording_channel()
    for seq in (0, 1, 2):
        await channel.deliver(channel.envelope(SnapshotRequest(), sender=Side.AGENT, seq=seq))

    assert await channel.deliver(channel.envelope(SnapshotRequest(), sender=Side.AGENT, seq=1)) is None
    assert [item.seq for item in handled] == [0, 1, 2]


@pytest.mark.asyncio
async def test_engine_only_messages_are_refused_from_clients() -> None:
    channel, handled = _recording_channel()
    event = InvocationEvent(invocation_id="i", tool_name="t", status=InvocationStatus.SUCCEEDED, terminal=True)

    with pytest.raises(ProtocolError):
        await channel.deliver(channel.envelope(event, sender=Side.AGENT, seq=0))
    with pytest.raises(ProtocolError):
        await channel.deliver(channel.envelope(SnapshotRequest(), sender=Side.ENGINE, seq=0))
    with pytest.raises(ProtocolError):
        await channel.deliver(
            Envelope(session_id="other", sender=Side.UI, seq=0, payload=SnapshotRequest())
        )
    assert handled == []


@pytest.mark.asyncio
async def test_publish_stamps_increasing_sequence_numbers() -> None:
    channel, _ = _recording_channel()
    sub = await channel.subscribe(Side.UI)

    for index in range(3):
        channel.publish(StatePatch(base_version=index, version=index + 1, ops=[{"path": "values.n", "value": index}]))

    received = [sub.queue.get_nowait() for _ in range(3)]
    assert [item.seq for item in received] == [0, 1, 2]
    assert all(item.sender == Side.ENGINE for item in received)
    assert [item.payload.version for item in received] == [1, 2, 3]


@pytest.mark.asyncio
async def test_closed_channel_refuses_traffic() -> None:
    channel, _ = _recording_channel()
    sub = await channel.subscribe(Side.AGENT)
    channel.close()

    assert await sub.queue.get() is None
    assert channel.publish(SnapshotRequest()) is None
    with pytest.raises(SessionClosedError):
        await channel.deliver(channel.envelope(SnapshotRequest(), sender=Side.AGENT, seq=0))
    with pytest.raises(SessionClosedError):
        await channel.subscribe(Side.UI)


@pytest.mark.asyncio
async def test_unbound_channel_raises() -> None:
    channel = SyncChannel("s")
    with pytest.raises(RuntimeError):
        await channel.deliver(channel.envelope(SnapshotRequest(), sender=Side.UI, seq=0))
