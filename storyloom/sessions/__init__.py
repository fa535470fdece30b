"""Session engine: state store, sync channel, approvals and execution."""

from .approval import ApprovalGate, ApprovalResolution
from .broker import Subscription, UpdateBroker
from .channel import ChannelSubscription, SyncChannel
from .connection import SessionConnection
from .pipeline import InvocationPipeline
from .registry import InvocationRegistry
from .session import Session, SessionManager
from .store import AppliedPatch, StateStore, apply_ops
from .supervisor import ExecutionSupervisor
from .telemetry import (
    InvocationTelemetryEvent,
    InvocationTelemetrySink,
    LoggingTelemetrySink,
    NoOpTelemetrySink,
)

__all__ = [
    "AppliedPatch",
    "ApprovalGate",
    "ApprovalResolution",
    "ChannelSubscription",
    "ExecutionSupervisor",
    "InvocationPipeline",
    "InvocationRegistry",
    "InvocationTelemetryEvent",
    "InvocationTelemetrySink",
    "LoggingTelemetrySink",
    "NoOpTelemetrySink",
    "Session",
    "SessionConnection",
    "SessionManager",
    "StateStore",
    "Subscription",
    "SyncChannel",
    "UpdateBroker",
    "apply_ops",
]
