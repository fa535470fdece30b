"""Telemetry contracts for invocation observability.

A minimal schema that hosts can map onto their own logging, metrics or
tracing systems.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from storyloom.models import InvocationStatus


class InvocationTelemetryEvent(BaseModel):
    event_type: Literal[
        "invocation_requested",
        "invocation_completed",
        "invocation_failed",
        "invocation_rejected",
        "invocation_expired",
    ]
    session_id: str
    invocation_id: str
    tool_name: str
    status: InvocationStatus
    gated: bool
    attempts: int = 0
    duration_ms: float | None = None
    error_code: str | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)


class InvocationTelemetrySink(Protocol):
    async def emit(self, event: InvocationTelemetryEvent) -> None: ...


class NoOpTelemetrySink:
    async def emit(self, event: InvocationTelemetryEvent) -> None:
        _ = event
        return None


class LoggingTelemetrySink:
    def __init__(self, logger: logging.Logger | None = None, *, level: int = logging.INFO) -> None:
        self._logger = logger or logging.getLogger("storyloom.telemetry")
        self._level = level

    async def emit(self, event: InvocationTelemetryEvent) -> None:
        self._logger.log(self._level, event.event_type, extra=event.model_dump(mode="json"))


__all__ = [
    "InvocationTelemetryEvent",
    "InvocationTelemetrySink",
    "LoggingTelemetrySink",
    "NoOpTelemetrySink",
]
