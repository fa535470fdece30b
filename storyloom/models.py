"""Shared-state, invocation and channel message models."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .errors import ProblemDetails

REDACTED = "***"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class Side(str, Enum):
    AGENT = "agent"
    UI = "ui"
    ENGINE = "engine"


class InvocationStatus(str, Enum):
    REQUESTED = "requested"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        InvocationStatus.SUCCEEDED,
        InvocationStatus.REJECTED,
        InvocationStatus.FAILED,
        InvocationStatus.EXPIRED,
    }
)


class ArtifactKind(str, Enum):
    CHARACTER = "character"
    BACKGROUND = "background"
    SCENE = "scene"

    @property
    def field_name(self) -> str:
        return f"{self.value}s"


SEQUENCE_FIELDS: dict[str, ArtifactKind] = {kind.field_name: kind for kind in ArtifactKind}


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Artifact(BaseModel):
    """Generated content record. Immutable once ``media_ref`` is set."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    kind: ArtifactKind
    name: str
    description: str = ""
    media_ref: str | None = None
    source_invocation_id: str
    revision: int = Field(default=1, ge=1)
    supersedes: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class SharedState(BaseModel):
    """Versioned state object shared by the agent and the UI.

    Snapshots are frozen; every accepted patch produces a new snapshot with
    ``version`` incremented by one.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(default=0, ge=0)
    values: dict[str, Any] = Field(default_factory=dict)
    characters: tuple[Artifact, ...] = ()
    backgrounds: tuple[Artifact, ...] = ()
    scenes: tuple[Artifact, ...] = ()
    credential: str | None = Field(default=None, repr=False)

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)

    def sequence(self, kind: ArtifactKind) -> tuple[Artifact, ...]:
        return getattr(self, kind.field_name)

    def current(self, kind: ArtifactKind) -> list[Artifact]:
        """Latest revision of every artifact lineage, in sequence order."""
        items = self.sequence(kind)
        superseded = {item.supersedes for item in items if item.supersedes}
        return [item for item in items if item.id not in superseded]

    def find_artifact(self, artifact_id: str) -> Artifact | None:
        for kind in ArtifactKind:
            for item in self.sequence(kind):
                if item.id == artifact_id:
                    return item
        return None

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path (``values.style``, ``characters``, ``version``)."""
        head, _, rest = path.partition(".")
        if head == "values":
            node: Any = self.values
            if not rest:
                return node
            for key in rest.split("."):
                if not isinstance(node, dict) or key not in node:
                    raise KeyError(path)
                node = node[key]
            return node
        if head in SEQUENCE_FIELDS and not rest:
            return [item.model_dump(mode="json") for item in getattr(self, head)]
        if head == "version" and not rest:
            return self.version
        raise KeyError(path)

    def redacted(self) -> SharedState:
        if self.credential is None:
            return self
        return self.model_copy(update={"credential": REDACTED})


class PatchOp(BaseModel):
    """Single field-level mutation addressed by path."""

    op: Literal["replace", "append", "remove"] = "replace"
    path: str = Field(min_length=1)
    value: Any = None


@dataclass(slots=True)
class ToolInvocation:
    invocation_id: str
    session_id: str
    tool_name: str
    args: dict[str, Any]
    gated: bool
    status: InvocationStatus = InvocationStatus.REQUESTED
    requested_by: Side = Side.AGENT
    state_version: int = 0
    result: ToolResult | None = None
    error: ProblemDetails | None = None
    attempts: int = 0
    requested_at: datetime = field(default_factory=_utc_now)
    decided_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def update_status(self, status: InvocationStatus) -> None:
        now = _utc_now()
        if self.status == InvocationStatus.AWAITING_APPROVAL and status in {
            InvocationStatus.APPROVED,
            InvocationStatus.REJECTED,
            InvocationStatus.EXPIRED,
        }:
            self.decided_at = now
        if status.terminal:
            self.completed_at = now
        self.status = status
        self.updated_at = now


class ToolResult(BaseModel):
    """What the agent's reasoning loop receives as the tool output."""

    invocation_id: str
    tool_name: str
    status: InvocationStatus
    ok: bool
    content: str
    artifact: Artifact | None = None
    error: ProblemDetails | None = None


class ToolInvocationModel(BaseModel):
    invocation_id: str
    session_id: str
    tool_name: str
    args: dict[str, Any]
    gated: bool
    status: InvocationStatus
    requested_by: Side
    state_version: int
    result: ToolResult | None = None
    error: ProblemDetails | None = None
    attempts: int = 0
    requested_at: datetime
    decided_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime

    @classmethod
    def from_invocation(cls, invocation: ToolInvocation) -> ToolInvocationModel:
        return cls(
            invocation_id=invocation.invocation_id,
            session_id=invocation.session_id,
            tool_name=invocation.tool_name,
            args=dict(invocation.args),
            gated=invocation.gated,
            status=invocation.status,
            requested_by=invocation.requested_by,
            state_version=invocation.state_version,
            result=invocation.result,
            error=invocation.error,
            attempts=invocation.attempts,
            requested_at=invocation.requested_at,
            decided_at=invocation.decided_at,
            completed_at=invocation.completed_at,
            updated_at=invocation.updated_at,
        )


# Channel payloads -----------------------------------------------------------


class StatePatch(BaseModel):
    kind: Literal["state_patch"] = "state_patch"
    base_version: int = Field(ge=0)
    ops: list[PatchOp] = Field(min_length=1)
    version: int | None = None
    actor: Side | None = None


class StateSnapshot(BaseModel):
    kind: Literal["state_snapshot"] = "state_snapshot"
    state: SharedState


class SnapshotRequest(BaseModel):
    kind: Literal["snapshot_request"] = "snapshot_request"
    known_version: int | None = None


class InvocationEvent(BaseModel):
    kind: Literal["invocation_event"] = "invocation_event"
    invocation_id: str
    tool_name: str
    status: InvocationStatus
    sequence: int = 0
    terminal: bool = False
    progress: dict[str, Any] | None = None
    result: ToolResult | None = None
    error: ProblemDetails | None = None
    reason: str | None = None


class ApprovalRequest(BaseModel):
    kind: Literal["approval_request"] = "approval_request"
    invocation_id: str
    tool_name: str
    description: str = ""
    args: dict[str, Any] = Field(default_factory=dict)
    args_schema: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime = Field(default_factory=_utc_now)
    expires_at: datetime | None = None


class ApprovalDecision(BaseModel):
    kind: Literal["approval_decision"] = "approval_decision"
    invocation_id: str
    decision: Decision
    edited_args: dict[str, Any] | None = None
    reason: str | None = None
    decided_at: datetime = Field(default_factory=_utc_now)


class InvocationRequest(BaseModel):
    kind: Literal["invocation_request"] = "invocation_request"
    tool_name: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


class InvocationCancel(BaseModel):
    kind: Literal["invocation_cancel"] = "invocation_cancel"
    invocation_id: str
    reason: str | None = None


class ErrorMessage(BaseModel):
    kind: Literal["error"] = "error"
    error: ProblemDetails
    in_reply_to: int | None = None


class Ack(BaseModel):
    """Engine reply to a wire client's message, keyed by the message's ``seq``."""

    kind: Literal["ack"] = "ack"
    in_reply_to: int
    duplicate: bool = False
    result: dict[str, Any] = Field(default_factory=dict)


ChannelPayload = Annotated[
    StatePatch
    | StateSnapshot
    | SnapshotRequest
    | InvocationEvent
    | ApprovalRequest
    | ApprovalDecision
    | InvocationRequest
    | InvocationCancel
    | ErrorMessage
    | Ack,
    Field(discriminator="kind"),
]

ENGINE_ONLY_KINDS = frozenset({"state_snapshot", "invocation_event", "approval_request", "error", "ack"})


class Envelope(BaseModel):
    """Transport frame: one payload tagged with session, sender and sequence."""

    session_id: str
    sender: Side
    seq: int = Field(ge=0)
    client_id: str | None = None
    recipient: Side | None = None
    message_id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utc_now)
    payload: ChannelPayload

    @property
    def kind(self) -> str:
        return self.payload.kind


def redact_ops(ops: Sequence[PatchOp]) -> list[PatchOp]:
    redacted: list[PatchOp] = []
    for op in ops:
        if op.path == "credential" and op.value is not None:
            redacted.append(op.model_copy(update={"value": REDACTED}))
        else:
            redacted.append(op)
    return redacted


__all__ = [
    "Ack",
    "ApprovalDecision",
    "ApprovalRequest",
    "Artifact",
    "ArtifactKind",
    "ChannelPayload",
    "Decision",
    "ENGINE_ONLY_KINDS",
    "Envelope",
    "ErrorMessage",
    "InvocationCancel",
    "InvocationEvent",
    "InvocationRequest",
    "InvocationStatus",
    "PatchOp",
    "REDACTED",
    "SEQUENCE_FIELDS",
    "SharedState",
    "Side",
    "SnapshotRequest",
    "StatePatch",
    "StateSnapshot",
    "TERMINAL_STATUSES",
    "ToolInvocation",
    "ToolInvocationModel",
    "ToolResult",
    "redact_ops",
]
