"""Per-side handle on a session's sync channel."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from storyloom.errors import ConflictError, ProtocolError, StoryloomError
from storyloom.models import (
    ApprovalDecision,
    ChannelPayload,
    Decision,
    Envelope,
    ErrorMessage,
    InvocationCancel,
    InvocationRequest,
    PatchOp,
    SharedState,
    Side,
    SnapshotRequest,
    StatePatch,
    StateSnapshot,
    ToolResult,
)

from .channel import ChannelSubscription
from .store import DEFAULT_MAX_PATCH_RETRIES, AppliedPatch, PatchDeriver, coerce_ops

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger("storyloom.session")


class SessionConnection:
    """One connected agent or UI.

    Outbound messages are stamped with this connection's ``client_id`` and a
    per-connection sequence number, so a retransmitted envelope is dropped
    by the channel. Inbound messages arrive through :meth:`messages` in the
    order the engine published them.
    """

    def __init__(
        self,
        session: Session,
        *,
        side: Side,
        subscription: ChannelSubscription,
        client_id: str | None = None,
        known_version: int | None = None,
        next_seq: int = 0,
    ) -> None:
        self._session = session
        self.side = side
        self.client_id = client_id or secrets.token_hex(6)
        self._subscription = subscription
        self._seq = next_seq
        self._known_version = known_version
        self._evicted_seen = 0
        self._resyncing = False
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def subscription(self) -> ChannelSubscription:
        return self._subscription

    @property
    def closed(self) -> bool:
        return self._closed

    def expected_seq(self) -> int:
        """Next ``seq`` the channel accepts from this client."""
        return self._session.channel.next_seq(self.side, self.client_id)

    @property
    def known_version(self) -> int | None:
        """Latest state version seen on this connection's stream."""
        return self._known_version

    def state(self) -> SharedState:
        snapshot = self._session.store.snapshot()
        return snapshot if self.side == Side.UI else snapshot.redacted()

    # Outbound --------------------------------------------------------------

    async def send(self, payload: ChannelPayload) -> Any:
        envelope = self._session.channel.envelope(
            payload,
            sender=self.side,
            seq=self._seq,
            client_id=self.client_id,
        )
        self._seq += 1
        return await self.forward(envelope)

    async def forward(self, envelope: Envelope) -> Any:
        """Deliver an envelope built elsewhere (e.g. decoded from a socket)."""
        if self._closed:
            raise ProtocolError("Connection is closed")
        if envelope.sender != self.side:
            raise ProtocolError(f"A {self.side.value} connection cannot send as {envelope.sender.value}")
        if envelope.client_id != self.client_id:
            envelope = envelope.model_copy(update={"client_id": self.client_id})
        return await self._session.channel.deliver(envelope)

    async def patch(
        self,
        derive: PatchDeriver,
        *,
        max_attempts: int = DEFAULT_MAX_PATCH_RETRIES,
    ) -> AppliedPatch | None:
        """Derive ops from the latest state and apply them, re-deriving on conflict."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        attempt = 0
        while True:
            attempt += 1
            state = self.state()
            ops = derive(state)
            if not ops:
                return None
            try:
                return await self.send(StatePatch(base_version=state.version, ops=coerce_ops(ops)))
            except ConflictError:
                if attempt >= max_attempts:
                    raise

    async def apply(self, base_version: int, ops: Sequence[PatchOp | Mapping[str, Any]]) -> AppliedPatch | None:
        return await self.send(StatePatch(base_version=base_version, ops=coerce_ops(ops)))

    async def set_credential(self, credential: str | None) -> AppliedPatch | None:
        if self.side != Side.UI:
            raise ProtocolError("Only the UI may set the credential")
        op = PatchOp(op="replace" if credential else "remove", path="credential", value=credential or None)
        return await self.send(StatePatch(base_version=self._session.store.version, ops=[op]))

    async def decide(
        self,
        invocation_id: str,
        decision: Decision | str,
        *,
        edited_args: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> bool:
        result = await self.send(
            ApprovalDecision(
                invocation_id=invocation_id,
                decision=Decision(decision),
                edited_args=edited_args,
                reason=reason,
            )
        )
        return bool(result)

    async def approve(self, invocation_id: str, *, edited_args: dict[str, Any] | None = None) -> bool:
        return await self.decide(invocation_id, Decision.APPROVE, edited_args=edited_args)

    async def reject(self, invocation_id: str, *, reason: str | None = None) -> bool:
        return await self.decide(invocation_id, Decision.REJECT, reason=reason)

    async def request_snapshot(self) -> None:
        await self.send(SnapshotRequest(known_version=self._known_version))

    async def request_invocation(self, tool_name: str, args: dict[str, Any] | None = None) -> str:
        return await self.send(InvocationRequest(tool_name=tool_name, args=args or {}))

    async def cancel(self, invocation_id: str, *, reason: str | None = None) -> bool:
        return bool(await self.send(InvocationCancel(invocation_id=invocation_id, reason=reason)))

    async def wait_result(self, invocation_id: str, *, timeout: float | None = None) -> ToolResult:
        return await self._session.invocations.wait(invocation_id, timeout=timeout)

    def reply(self, payload: BaseModel) -> None:
        """Publish an engine message to this connection only."""
        self._session.channel.publish(payload, target=self._subscription)

    def push_error(self, error: StoryloomError, *, in_reply_to: int | None = None) -> None:
        self.reply(ErrorMessage(error=error.to_problem_details(), in_reply_to=in_reply_to))

    # Inbound ---------------------------------------------------------------

    async def receive(self, *, timeout: float | None = None) -> Envelope | None:
        """Next envelope, or ``None`` once the session or connection closed."""
        if self._closed and self._subscription.queue.empty():
            return None
        envelope = await asyncio.wait_for(self._subscription.queue.get(), timeout)
        if envelope is not None:
            await self._observe(envelope)
        return envelope

    async def messages(self) -> AsyncIterator[Envelope]:
        while True:
            envelope = await self.receive()
            if envelope is None:
                return
            yield envelope

    async def _observe(self, envelope: Envelope) -> None:
        payload: BaseModel = envelope.payload
        if isinstance(payload, StateSnapshot):
            self._known_version = payload.state.version
            # Anything evicted ahead of an intact snapshot is older than it.
            self._evicted_seen = self._subscription.subscription.evicted
            self._resyncing = False
            return
        stale = False
        if isinstance(payload, StatePatch) and payload.version is not None:
            stale = self._known_version is not None and payload.base_version != self._known_version
            self._known_version = payload.version
            if stale:
                logger.debug(
                    "version_gap",
                    extra={"session_id": self.session_id, "client_id": self.client_id, "version": payload.version},
                )
        evicted = self._subscription.subscription.evicted
        if evicted != self._evicted_seen:
            self._evicted_seen = evicted
            stale = True
        if self._resyncing:
            if not self._subscription.queue.empty():
                return
            # The requested snapshot never arrived, so it was evicted as well.
            self._resyncing = False
            stale = True
        if stale and not self._closed and not self._session.closed:
            self._resyncing = True
            await self.request_snapshot()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._session.detach(self)
        queue = self._subscription.queue
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(None)


__all__ = ["SessionConnection"]
