"""Session aggregate and session manager."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from storyloom.backends import GenerationBackend
from storyloom.catalog import ToolRegistry
from storyloom.config import EngineConfig
from storyloom.errors import ConflictError, ProtocolError, SessionClosedError, SessionNotFoundError
from storyloom.models import (
    ApprovalDecision,
    Envelope,
    InvocationCancel,
    InvocationRequest,
    SharedState,
    Side,
    SnapshotRequest,
    StatePatch,
    StateSnapshot,
    redact_ops,
)
from storyloom.story_tools import default_registry

from .approval import ApprovalGate
from .channel import SyncChannel
from .connection import SessionConnection
from .pipeline import InvocationPipeline
from .registry import InvocationRegistry
from .store import AppliedPatch, StateStore
from .supervisor import ExecutionSupervisor
from .telemetry import InvocationTelemetrySink

logger = logging.getLogger("storyloom.session")


class Session:
    """Owns one state store, one sync channel and every invocation of a session."""

    def __init__(
        self,
        session_id: str,
        *,
        tools: ToolRegistry,
        backend: GenerationBackend,
        config: EngineConfig | None = None,
        telemetry_sink: InvocationTelemetrySink | None = None,
        initial_state: SharedState | None = None,
        on_close: Callable[[Session], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self._config = config or EngineConfig()
        self._tools = tools
        limits = self._config.limits
        self._store = StateStore(session_id=session_id, initial=initial_state)
        self._channel = SyncChannel(session_id, max_queue_size=limits.update_queue_size)
        self._invocations = InvocationRegistry(session_id, channel=self._channel, telemetry=telemetry_sink)
        self._gate = ApprovalGate(
            channel=self._channel,
            invocations=self._invocations,
            timeout_s=self._config.approval_timeout_s,
        )
        self._supervisor = ExecutionSupervisor(
            backend=backend,
            store=self._store,
            invocations=self._invocations,
            retry=self._config.retry,
            max_patch_retries=limits.max_patch_retries,
        )
        self._pipeline = InvocationPipeline(
            session_id=session_id,
            tools=tools,
            invocations=self._invocations,
            store=self._store,
            gate=self._gate,
            supervisor=self._supervisor,
            config=self._config,
        )
        self._connections: list[SessionConnection] = []
        self._idle_task: asyncio.Task[None] | None = None
        self._on_close = on_close
        self._closed = False
        self._remove_listener = self._store.add_listener(self._broadcast_patch)
        self._channel.bind(self._handle_inbound)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def channel(self) -> SyncChannel:
        return self._channel

    @property
    def invocations(self) -> InvocationRegistry:
        return self._invocations

    @property
    def gate(self) -> ApprovalGate:
        return self._gate

    @property
    def pipeline(self) -> InvocationPipeline:
        return self._pipeline

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connections(self) -> list[SessionConnection]:
        return list(self._connections)

    @property
    def has_pending(self) -> bool:
        return bool(self._invocations.pending())

    def request_invocation(self, tool_name: str, args: dict[str, Any] | None = None) -> str:
        return self._pipeline.request_invocation(tool_name, args)

    async def connect(
        self,
        side: Side | str,
        *,
        client_id: str | None = None,
        last_version: int | None = None,
    ) -> SessionConnection:
        """Attach an agent or UI; stale or fresh clients get a snapshot first."""
        if self._closed:
            raise SessionClosedError(self.session_id)
        side = Side(side)
        if side == Side.ENGINE:
            raise ProtocolError("Only agent and ui sides can connect")

        subscription = await self._channel.subscribe(side)
        connection = SessionConnection(
            self,
            side=side,
            subscription=subscription,
            client_id=client_id,
            known_version=last_version,
            next_seq=self._channel.next_seq(side, client_id) if client_id else 0,
        )
        self._connections.append(connection)
        self._cancel_idle_close()

        if last_version is None or last_version != self._store.version:
            self.send_snapshot(connection)
        if side == Side.UI:
            for request in self._gate.pending_requests():
                self._channel.publish(request, recipient=Side.UI, target=subscription)

        logger.info(
            "session_connected",
            extra={
                "session_id": self.session_id,
                "side": side.value,
                "client_id": connection.client_id,
                "last_version": last_version,
                "version": self._store.version,
            },
        )
        return connection

    def send_snapshot(self, connection: SessionConnection) -> None:
        self._channel.publish(StateSnapshot(state=connection.state()), target=connection.subscription)

    def resync(self, connection: SessionConnection) -> None:
        """Re-offer waiting approvals (to a UI) and then a fresh snapshot.

        The snapshot goes last: once the client has read it, everything the
        queue evicted before it is covered.
        """
        if connection.side == Side.UI:
            for request in self._gate.pending_requests():
                self._channel.publish(request, recipient=Side.UI, target=connection.subscription)
        self.send_snapshot(connection)

    async def detach(self, connection: SessionConnection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
        await connection.subscription.unsubscribe()
        logger.info(
            "session_disconnected",
            extra={
                "session_id": self.session_id,
                "side": connection.side.value,
                "client_id": connection.client_id,
                "remaining": len(self._connections),
            },
        )
        if self._connections or self._closed:
            return
        grace = self._config.limits.disconnect_grace_s
        if grace is not None:
            self._idle_task = asyncio.create_task(self._close_when_idle(grace))

    async def close(self, *, reason: str = "Session closed.") -> None:
        """Expire waiting approvals, abort running invocations and close the channel."""
        if self._closed:
            return
        self._closed = True
        self._cancel_idle_close()
        expired = self._gate.expire_all(reason=f"{reason} No decision was made.")
        await self._pipeline.shutdown(SessionClosedError(self.session_id))
        self._remove_listener()
        self._channel.close()
        self._connections.clear()
        logger.info("session_closed", extra={"session_id": self.session_id, "expired_approvals": expired})
        if self._on_close is not None:
            self._on_close(self)

    async def _close_when_idle(self, grace: float) -> None:
        await asyncio.sleep(grace)
        if self._connections or self._closed:
            return
        logger.info("session_idle", extra={"session_id": self.session_id, "grace_s": grace})
        self._idle_task = None
        await self.close(reason="All connections dropped.")

    def _cancel_idle_close(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _broadcast_patch(self, applied: AppliedPatch) -> None:
        patch = StatePatch(
            base_version=applied.base_version,
            ops=list(applied.ops),
            version=applied.new_version,
            actor=applied.actor,
        )
        if not any(op.path == "credential" for op in applied.ops):
            self._channel.publish(patch)
            return
        self._channel.publish(patch, recipient=Side.UI)
        self._channel.publish(
            patch.model_copy(update={"ops": redact_ops(applied.ops)}),
            recipient=Side.AGENT,
        )

    def _connection_for(self, envelope: Envelope) -> SessionConnection | None:
        for connection in self._connections:
            if connection.side == envelope.sender and connection.client_id == envelope.client_id:
                return connection
        return None

    async def _handle_inbound(self, envelope: Envelope) -> Any:
        payload = envelope.payload
        if isinstance(payload, StatePatch):
            try:
                return self._store.apply(payload.base_version, payload.ops, actor=envelope.sender)
            except ConflictError:
                connection = self._connection_for(envelope)
                if connection is not None:
                    self.send_snapshot(connection)
                raise
        if isinstance(payload, SnapshotRequest):
            connection = self._connection_for(envelope)
            if connection is not None:
                self.resync(connection)
            return self._store.version
        if isinstance(payload, ApprovalDecision):
            if envelope.sender != Side.UI:
                raise ProtocolError("Only the UI may decide on approvals")
            return self._pipeline.decide(payload)
        if isinstance(payload, InvocationRequest):
            if envelope.sender != Side.AGENT:
                raise ProtocolError("Only the agent may request tool invocations")
            return self._pipeline.request_invocation(payload.tool_name, payload.args, requested_by=envelope.sender)
        if isinstance(payload, InvocationCancel):
            return self._pipeline.cancel(payload.invocation_id, reason=payload.reason)
        raise ProtocolError(f"Unsupported message kind '{envelope.kind}'")


class SessionManager:
    """Registry for :class:`Session` instances by session id."""

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        tools: ToolRegistry | None = None,
        config: EngineConfig | None = None,
        telemetry_sink: InvocationTelemetrySink | None = None,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._backend = backend
        self._tools = tools or default_registry()
        self._config = config or EngineConfig()
        self._telemetry_sink = telemetry_sink

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def config(self) -> EngineConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_or_create(self, session_id: str) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(
                    session_id,
                    tools=self._tools,
                    backend=self._backend,
                    config=self._config,
                    telemetry_sink=self._telemetry_sink,
                    on_close=self._forget,
                )
                self._sessions[session_id] = session
                logger.info("session_created", extra={"session_id": session_id})
        return session

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._sessions.get(session_id)

    async def require(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def drop(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close(reason="Server shutting down.")

    def _forget(self, session: Session) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]


__all__ = ["Session", "SessionManager"]
