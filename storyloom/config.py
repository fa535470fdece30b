"""Engine configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

ENV_PREFIX = "STORYLOOM_"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient backend failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_s: float = Field(default=0.5, ge=0.0)
    backoff_mult: float = Field(default=2.0, ge=1.0)
    max_backoff_s: float = Field(default=8.0, ge=0.0)

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after the given (1-based) failed attempt."""
        delay = self.backoff_base_s * (self.backoff_mult ** max(attempt - 1, 0))
        return min(delay, self.max_backoff_s)


@dataclass(slots=True)
class SessionLimits:
    update_queue_size: int = 500
    max_inflight_invocations: int = 16
    max_patch_retries: int = 8
    disconnect_grace_s: float | None = 30.0


@dataclass(slots=True)
class EngineConfig:
    approval_timeout_s: float | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    limits: SessionLimits = field(default_factory=SessionLimits)
    require_credential: bool = True

    def __post_init__(self) -> None:
        if self.approval_timeout_s is not None and self.approval_timeout_s <= 0:
            raise ValueError("approval_timeout_s must be positive when set")
        if self.limits.update_queue_size < 1:
            raise ValueError("update_queue_size must be >= 1")
        if self.limits.max_inflight_invocations < 1:
            raise ValueError("max_inflight_invocations must be >= 1")
        if self.limits.max_patch_retries < 1:
            raise ValueError("max_patch_retries must be >= 1")
        if self.limits.disconnect_grace_s is not None and self.limits.disconnect_grace_s < 0:
            raise ValueError("disconnect_grace_s must be >= 0 when set")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            raw = env.get(f"{ENV_PREFIX}{name}")
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        def _float(name: str) -> float | None:
            raw = _get(name)
            if raw is None:
                return None
            try:
                return float(raw)
            except ValueError as exc:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc

        def _int(name: str) -> int | None:
            raw = _get(name)
            if raw is None:
                return None
            try:
                return int(raw)
            except ValueError as exc:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc

        retry_overrides = {
            key: value
            for key, value in (
                ("max_attempts", _int("MAX_ATTEMPTS")),
                ("backoff_base_s", _float("BACKOFF_BASE_S")),
                ("backoff_mult", _float("BACKOFF_MULT")),
                ("max_backoff_s", _float("MAX_BACKOFF_S")),
            )
            if value is not None
        }
        limits = SessionLimits()
        if (queue_size := _int("UPDATE_QUEUE_SIZE")) is not None:
            limits.update_queue_size = queue_size
        if (inflight := _int("MAX_INFLIGHT_INVOCATIONS")) is not None:
            limits.max_inflight_invocations = inflight
        if (patch_retries := _int("MAX_PATCH_RETRIES")) is not None:
            limits.max_patch_retries = patch_retries
        if (grace := _float("DISCONNECT_GRACE_S")) is not None:
            limits.disconnect_grace_s = grace

        require_credential = True
        if (raw := _get("REQUIRE_CREDENTIAL")) is not None:
            require_credential = raw.lower() not in {"0", "false", "no", "off"}

        return cls(
            approval_timeout_s=_float("APPROVAL_TIMEOUT_S"),
            retry=RetryPolicy.model_validate(retry_overrides),
            limits=limits,
            require_credential=require_credential,
        )


__all__ = ["ENV_PREFIX", "EngineConfig", "RetryPolicy", "SessionLimits"]
