"""Bidirectional ordered message stream for one session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from storyloom.errors import ProtocolError, SessionClosedError
from storyloom.models import ENGINE_ONLY_KINDS, ChannelPayload, Envelope, Side

from .broker import Subscription, UpdateBroker

logger = logging.getLogger("storyloom.channel")

InboundHandler = Callable[[Envelope], Awaitable[Any]]


@dataclass(slots=True)
class ChannelSubscription:
    subscription: Subscription
    unsubscribe: Callable[[], Awaitable[None]]

    @property
    def queue(self) -> asyncio.Queue[Envelope | None]:
        return self.subscription.queue

    @property
    def side(self) -> Side | None:
        return self.subscription.side


class SyncChannel:
    """Carries envelopes between the engine and the connected agent/UI.

    Outbound envelopes are stamped with a monotonically increasing engine
    sequence number and fanned out through an :class:`UpdateBroker`, so each
    subscriber sees them in publish order. Inbound envelopes are de-duplicated
    per ``(sender, client_id)`` on their ``seq`` and handed to the bound
    handler one at a time, preserving each sender's order.
    """

    def __init__(self, session_id: str, *, max_queue_size: int = 500) -> None:
        self.session_id = session_id
        self._broker = UpdateBroker(max_queue_size=max_queue_size)
        self._seq = 0
        self._last_seen: dict[tuple[Side, str | None], int] = {}
        self._handler: InboundHandler | None = None
        self._inbound_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return self._broker.subscriber_count

    def bind(self, handler: InboundHandler) -> None:
        self._handler = handler

    def next_seq(self, sender: Side, client_id: str | None) -> int:
        """First ``seq`` the channel will accept from ``(sender, client_id)``.

        De-duplication state outlives connections, so a client that reconnects
        under the same ``client_id`` must continue its numbering from here.
        """
        return self._last_seen.get((sender, client_id), -1) + 1

    async def subscribe(self, side: Side | None = None) -> ChannelSubscription:
        if self._closed:
            raise SessionClosedError(self.session_id)
        subscription, unsubscribe = await self._broker.subscribe(side=side)
        return ChannelSubscription(subscription=subscription, unsubscribe=unsubscribe)

    def publish(
        self,
        payload: BaseModel,
        *,
        recipient: Side | None = None,
        target: ChannelSubscription | None = None,
    ) -> Envelope | None:
        if self._closed:
            logger.debug("publish_after_close", extra={"session_id": self.session_id})
            return None
        envelope = Envelope(
            session_id=self.session_id,
            sender=Side.ENGINE,
            seq=self._seq,
            recipient=recipient,
            payload=payload,  # type: ignore[arg-type]
        )
        self._seq += 1
        self._broker.publish(envelope, only=target.subscription if target is not None else None)
        return envelope

    async def deliver(self, envelope: Envelope) -> Any:
        """Hand an inbound envelope to the session.

        Returns the handler's result, or ``None`` for a duplicate. Errors
        raised by the handler propagate to the caller.
        """
        if self._closed:
            raise SessionClosedError(self.session_id)
        if envelope.session_id != self.session_id:
            raise ProtocolError(
                f"Envelope for session '{envelope.session_id}' sent to session '{self.session_id}'"
            )
        if envelope.sender == Side.ENGINE:
            raise ProtocolError("Clients cannot send as the engine")
        if envelope.kind in ENGINE_ONLY_KINDS:
            raise ProtocolError(f"'{envelope.kind}' messages are only sent by the engine")
        if self._handler is None:
            raise RuntimeError("channel_not_bound")

        async with self._inbound_lock:
            key = (envelope.sender, envelope.client_id)
            last = self._last_seen.get(key, -1)
            if envelope.seq <= last:
                logger.debug(
                    "duplicate_dropped",
                    extra={
                        "session_id": self.session_id,
                        "sender": envelope.sender.value,
                        "seq": envelope.seq,
                        "last_seen": last,
                    },
                )
                return None
            self._last_seen[key] = envelope.seq
            return await self._handler(envelope)

    def envelope(
        self,
        payload: ChannelPayload,
        *,
        sender: Side,
        seq: int,
        client_id: str | None = None,
    ) -> Envelope:
        return Envelope(
            session_id=self.session_id,
            sender=sender,
            seq=seq,
            client_id=client_id,
            payload=payload,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker.close()
        logger.debug("channel_closed", extra={"session_id": self.session_id})


__all__ = ["ChannelSubscription", "InboundHandler", "SyncChannel"]
