"""Fan-out of channel envelopes to per-connection queues."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from storyloom.models import ApprovalRequest, Envelope, InvocationEvent, InvocationStatus, Side

logger = logging.getLogger("storyloom.channel")


def _is_droppable(envelope: Envelope) -> bool:
    payload = envelope.payload
    return (
        isinstance(payload, InvocationEvent)
        and not payload.terminal
        and payload.status == InvocationStatus.RUNNING
    )


def _is_pinned(envelope: Envelope | None) -> bool:
    """Messages a snapshot cannot replace: approval requests and terminal events."""
    if envelope is None:
        return True
    payload = envelope.payload
    return isinstance(payload, ApprovalRequest) or (isinstance(payload, InvocationEvent) and payload.terminal)


@dataclass(slots=True)
class Subscription:
    queue: asyncio.Queue[Envelope | None]
    side: Side | None
    kinds: frozenset[str] | None = None
    evicted: int = 0

    def accepts(self, envelope: Envelope) -> bool:
        if envelope.recipient is not None and self.side is not None and envelope.recipient != self.side:
            return False
        if self.kinds is not None and envelope.kind not in self.kinds:
            return False
        return True


class UpdateBroker:
    """Bounded pub/sub; progress events are dropped first under backpressure.

    A full queue otherwise evicts its oldest entry that a snapshot can stand
    in for. Approval requests and terminal invocation events are only evicted
    when nothing else is left, and every eviction bumps
    :attr:`Subscription.evicted` so the reader knows to resync.
    """

    def __init__(self, *, max_queue_size: int = 500) -> None:
        self._max_queue_size = max_queue_size
        self._subs: list[Subscription] = []
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    async def subscribe(
        self,
        *,
        side: Side | None = None,
        kinds: Iterable[str] | None = None,
    ) -> tuple[Subscription, Callable[[], Awaitable[None]]]:
        sub = Subscription(
            queue=asyncio.Queue(maxsize=self._max_queue_size),
            side=side,
            kinds=frozenset(kinds) if kinds is not None else None,
        )
        async with self._lock:
            self._subs.append(sub)

        async def _unsubscribe() -> None:
            async with self._lock:
                if sub in self._subs:
                    self._subs.remove(sub)

        return sub, _unsubscribe

    def publish(self, envelope: Envelope, *, only: Subscription | None = None) -> None:
        targets = [only] if only is not None else list(self._subs)
        for sub in targets:
            if only is None and not sub.accepts(envelope):
                continue
            self._offer(sub, envelope)

    def _offer(self, sub: Subscription, envelope: Envelope) -> None:
        try:
            sub.queue.put_nowait(envelope)
            return
        except asyncio.QueueFull:
            pass
        if _is_droppable(envelope):
            logger.debug("update_dropped", extra={"kind": envelope.kind, "seq": envelope.seq})
            return

        held: list[Envelope | None] = []
        while not sub.queue.empty():
            held.append(sub.queue.get_nowait())
        victim = next((index for index, item in enumerate(held) if not _is_pinned(item)), None)
        sub.evicted += 1
        if victim is not None:
            evicted = held.pop(victim)
            held.append(envelope)
            logger.debug("update_evicted", extra={"kind": evicted.kind if evicted else None, "seq": envelope.seq})
        elif _is_pinned(envelope):
            held.pop(0)
            held.append(envelope)
            logger.warning("pinned_update_evicted", extra={"kind": envelope.kind, "seq": envelope.seq})
        else:
            # Queue holds only pinned messages; the newcomer is what gets lost.
            logger.debug("update_evicted", extra={"kind": envelope.kind, "seq": envelope.seq})
        for item in held:
            sub.queue.put_nowait(item)

    def close(self) -> None:
        for sub in list(self._subs):
            try:
                sub.queue.put_nowait(None)
            except asyncio.QueueFull:
                try:
                    sub.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                sub.queue.put_nowait(None)
        self._subs.clear()


__all__ = ["Subscription", "UpdateBroker"]
