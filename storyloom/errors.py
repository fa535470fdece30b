"""Error taxonomy shared by the store, pipeline, supervisor and bindings."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

_TYPE_PREFIX = "https://storyloom.dev/errors/"


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str | None = None
    instance: str | None = None

    model_config = ConfigDict(extra="allow")


class StoryloomError(Exception):
    """Base class for every error the engine raises on purpose."""

    code: str = "internal"
    title: str = "Internal error"
    status_code: int = 500
    retryable: bool = False
    user_actionable: bool = False

    def __init__(self, detail: str | None = None, *, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail or self.title)
        self.detail = detail
        self.extra = extra or {}

    @property
    def type_uri(self) -> str:
        return f"{_TYPE_PREFIX}{self.code}"

    def to_problem_details(self) -> ProblemDetails:
        payload: dict[str, Any] = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
            "code": self.code,
            "retryable": self.retryable,
            "user_actionable": self.user_actionable,
        }
        if self.detail:
            payload["detail"] = self.detail
        if self.extra:
            payload.update(self.extra)
        return ProblemDetails.model_validate(payload)


class ConflictError(StoryloomError):
    code = "conflict"
    title = "Stale state version"
    status_code = 409
    retryable = True

    def __init__(self, base_version: int, current_version: int) -> None:
        super().__init__(
            f"Patch based on version {base_version} but state is at version {current_version}.",
            extra={"base_version": base_version, "current_version": current_version},
        )
        self.base_version = base_version
        self.current_version = current_version


class PatchValidationError(StoryloomError):
    code = "invalid-patch"
    title = "Invalid state patch"
    status_code = 422


class UnknownToolError(StoryloomError):
    code = "unknown-tool"
    title = "Unknown tool"
    status_code = 404

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is not registered.", extra={"tool_name": tool_name})
        self.tool_name = tool_name


class InvalidArgumentsError(StoryloomError):
    code = "invalid-arguments"
    title = "Invalid tool arguments"
    status_code = 422

    def __init__(self, tool_name: str, errors: list[dict[str, Any]] | str) -> None:
        if isinstance(errors, str):
            detail = errors
            errors = [{"msg": errors}]
        else:
            detail = "; ".join(
                f"{'.'.join(str(part) for part in err.get('loc', ())) or '<args>'}: {err.get('msg', 'invalid')}"
                for err in errors
            )
        super().__init__(
            f"Invalid arguments for '{tool_name}': {detail}",
            extra={"tool_name": tool_name, "errors": errors},
        )
        self.tool_name = tool_name
        self.errors = errors


class MissingCredentialError(StoryloomError):
    code = "missing-credential"
    title = "Missing credential"
    status_code = 412
    user_actionable = True

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or "A generation credential is required. Enter an API key to continue.")


class BackendError(StoryloomError):
    code = "backend-error"
    title = "Generation backend error"
    status_code = 502


class TransientBackendError(BackendError):
    code = "backend-transient"
    title = "Generation backend temporarily unavailable"
    status_code = 503
    retryable = True


class PermanentBackendError(BackendError):
    code = "backend-permanent"
    title = "Generation backend rejected the request"


class InvocationNotFoundError(StoryloomError):
    code = "invocation-not-found"
    title = "Invocation not found"
    status_code = 404

    def __init__(self, invocation_id: str) -> None:
        super().__init__(f"Invocation '{invocation_id}' was not found.", extra={"invocation_id": invocation_id})


class InvocationLimitError(StoryloomError):
    code = "invocation-limit"
    title = "Too many in-flight invocations"
    status_code = 429
    retryable = True


class InvocationCancelledError(StoryloomError):
    code = "cancelled"
    title = "Invocation cancelled"
    status_code = 409


class ProtocolError(StoryloomError):
    code = "protocol-error"
    title = "Invalid channel message"
    status_code = 400


class SessionNotFoundError(StoryloomError):
    code = "session-not-found"
    title = "Session not found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' was not found.", extra={"session_id": session_id})


class SessionClosedError(StoryloomError):
    code = "session-closed"
    title = "Session closed"
    status_code = 410

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' is closed.", extra={"session_id": session_id})


__all__ = [
    "BackendError",
    "ConflictError",
    "InvalidArgumentsError",
    "InvocationCancelledError",
    "InvocationLimitError",
    "InvocationNotFoundError",
    "MissingCredentialError",
    "PatchValidationError",
    "PermanentBackendError",
    "ProblemDetails",
    "ProtocolError",
    "SessionClosedError",
    "SessionNotFoundError",
    "StoryloomError",
    "TransientBackendError",
    "UnknownToolError",
]
