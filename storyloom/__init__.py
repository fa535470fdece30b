"""Public package surface for storyloom."""

from __future__ import annotations

from .backends import GenerationBackend, GenerationResult, HttpGenerationBackend
from .catalog import ArtifactDraft, ToolContext, ToolRegistry, ToolSpec, build_registry, tool
from .config import EngineConfig, RetryPolicy, SessionLimits
from .errors import (
    ConflictError,
    InvalidArgumentsError,
    MissingCredentialError,
    PermanentBackendError,
    StoryloomError,
    TransientBackendError,
    UnknownToolError,
)
from .models import (
    Artifact,
    ArtifactKind,
    Decision,
    Envelope,
    InvocationStatus,
    PatchOp,
    SharedState,
    Side,
    ToolResult,
)
from .sessions import Session, SessionConnection, SessionManager, StateStore
from .story_tools import default_registry

__all__ = [
    "__version__",
    "Artifact",
    "ArtifactDraft",
    "ArtifactKind",
    "ConflictError",
    "Decision",
    "EngineConfig",
    "Envelope",
    "GenerationBackend",
    "GenerationResult",
    "HttpGenerationBackend",
    "InvalidArgumentsError",
    "InvocationStatus",
    "MissingCredentialError",
    "PatchOp",
    "PermanentBackendError",
    "RetryPolicy",
    "Session",
    "SessionConnection",
    "SessionLimits",
    "SessionManager",
    "SharedState",
    "Side",
    "StateStore",
    "StoryloomError",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "TransientBackendError",
    "UnknownToolError",
    "build_registry",
    "default_registry",
    "tool",
]

__version__ = "0.1.0"
