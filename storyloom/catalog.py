"""Tool registry: metadata, argument schemas and state references."""

from __future__ import annotations

import asyncio
import inspect
import json
import typing
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, cast

from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidArgumentsError, UnknownToolError
from .models import ArtifactKind, SharedState

STATE_REF_KEY = "$state"


@dataclass(frozen=True, slots=True)
class ToolContext:
    """What a tool function sees: the state as it was when the call was requested."""

    session_id: str
    invocation_id: str
    state: SharedState


class ArtifactDraft(BaseModel):
    """Tool function output: the generation prompt plus the artifact's display fields."""

    prompt: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    kind: ArtifactKind | None = None
    supersedes: str | None = None
    revision: int = Field(default=1, ge=1)


ToolFunc = Callable[[Any, ToolContext], Awaitable[ArtifactDraft]]
ArgsCheck = Callable[[Any, SharedState], None]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    func: ToolFunc
    name: str
    desc: str
    args_model: type[BaseModel]
    gated: bool = True
    artifact_kind: ArtifactKind | None = None
    requires_credential: bool = True
    state_refs: Mapping[str, str] = field(default_factory=dict)
    tags: Sequence[str] = field(default_factory=tuple)
    extra: Mapping[str, Any] = field(default_factory=dict)
    check: ArgsCheck | None = None

    def to_tool_record(self) -> dict[str, Any]:
        """Serialisable description for the agent's prompt."""
        safe_extra: dict[str, Any] = {}
        for key, value in self.extra.items():
            try:
                json.dumps(value, ensure_ascii=False)
            except (TypeError, ValueError):
                continue
            safe_extra[key] = value
        return {
            "name": self.name,
            "desc": self.desc,
            "gated": self.gated,
            "artifact_kind": self.artifact_kind.value if self.artifact_kind else None,
            "requires_credential": self.requires_credential,
            "state_refs": dict(self.state_refs),
            "tags": list(self.tags),
            "args_schema": self.args_model.model_json_schema(),
            "extra": safe_extra,
        }


def tool(
    *,
    name: str | None = None,
    desc: str | None = None,
    gated: bool = True,
    artifact_kind: ArtifactKind | str | None = None,
    requires_credential: bool = True,
    state_refs: Mapping[str, str] | None = None,
    tags: Sequence[str] | None = None,
    check: ArgsCheck | None = None,
    extra: Mapping[str, Any] | None = None,
) -> Callable[[ToolFunc], ToolFunc]:
    """Annotate a tool function with registry metadata.

    ``check`` runs against the validated args and the request-time state before
    an invocation is created; it raises :class:`InvalidArgumentsError` to refuse
    the call up front.
    """

    if isinstance(artifact_kind, str):
        artifact_kind = ArtifactKind(artifact_kind)

    payload: dict[str, Any] = {
        "name": name,
        "desc": desc,
        "gated": gated,
        "artifact_kind": artifact_kind,
        "requires_credential": requires_credential,
        "state_refs": dict(state_refs or {}),
        "tags": tuple(dict.fromkeys(tags or ())),
        "extra": dict(extra or {}),
        "check": check,
    }

    def decorator(func: ToolFunc) -> ToolFunc:
        cast(Any, func).__storyloom_tool__ = payload
        return func

    return decorator


def _args_model(func: Callable[..., Any]) -> type[BaseModel]:
    params = list(inspect.signature(func).parameters.values())
    if len(params) != 2:
        raise ValueError(f"Tool '{func.__name__}' must accept exactly two parameters (args, ctx); got {len(params)}")
    hints = typing.get_type_hints(func)
    model = hints.get(params[0].name)
    if not (inspect.isclass(model) and issubclass(model, BaseModel)):
        raise TypeError(f"Tool '{func.__name__}' must annotate its first parameter with a pydantic model")
    return model


def spec_from_function(func: ToolFunc) -> ToolSpec:
    if not asyncio.iscoroutinefunction(func):
        raise TypeError("Tool function must be declared with async def")
    meta = getattr(func, "__storyloom_tool__", None) or {}
    return ToolSpec(
        func=func,
        name=meta.get("name") or func.__name__,
        desc=meta.get("desc") or inspect.getdoc(func) or func.__name__,
        args_model=_args_model(func),
        gated=meta.get("gated", True),
        artifact_kind=meta.get("artifact_kind"),
        requires_credential=meta.get("requires_credential", True),
        state_refs=dict(meta.get("state_refs", {})),
        tags=tuple(meta.get("tags", ())),
        extra=dict(meta.get("extra", {})),
        check=meta.get("check"),
    )


def _validation_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]


class ToolRegistry:
    """Known tools, keyed by name."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)
        return spec

    def validate_args(self, name: str, args: Any, *, state: SharedState | None = None) -> BaseModel:
        """Validate ``args`` against the tool's model, then its ``check`` when ``state`` is given."""
        spec = self.get(name)
        if not isinstance(args, Mapping):
            raise InvalidArgumentsError(name, "arguments must be an object")
        try:
            validated = spec.args_model.model_validate(dict(args))
        except ValidationError as exc:
            raise InvalidArgumentsError(name, _validation_errors(exc)) from exc
        if state is not None and spec.check is not None:
            spec.check(validated, state)
        return validated

    def records(self) -> list[dict[str, Any]]:
        return [spec.to_tool_record() for spec in self._specs.values()]


def build_registry(funcs: Iterable[ToolFunc]) -> ToolRegistry:
    """Derive :class:`ToolSpec` objects from annotated tool functions."""
    return ToolRegistry(spec_from_function(func) for func in funcs)


def _is_state_ref(value: Any) -> bool:
    return isinstance(value, Mapping) and len(value) == 1 and STATE_REF_KEY in value


def resolve_state_refs(spec: ToolSpec, args: Mapping[str, Any], state: SharedState) -> dict[str, Any]:
    """Replace ``{"$state": path}`` values and fill declared defaults from ``state``."""

    def _lookup(arg_name: str, path: Any) -> Any:
        if not isinstance(path, str) or not path:
            raise InvalidArgumentsError(spec.name, f"'{arg_name}' has an invalid state reference")
        if path == "credential" or path.startswith("credential."):
            raise InvalidArgumentsError(spec.name, "the credential cannot be copied into tool arguments")
        try:
            return state.lookup(path)
        except KeyError:
            raise InvalidArgumentsError(
                spec.name, f"'{arg_name}' references '{path}', which is not set"
            ) from None

    resolved: dict[str, Any] = {}
    for key, value in args.items():
        resolved[key] = _lookup(key, value[STATE_REF_KEY]) if _is_state_ref(value) else value
    for arg_name, path in spec.state_refs.items():
        if resolved.get(arg_name) is not None:
            continue
        try:
            resolved[arg_name] = state.lookup(path)
        except KeyError:
            continue
    return resolved


__all__ = [
    "ArgsCheck",
    "ArtifactDraft",
    "STATE_REF_KEY",
    "ToolContext",
    "ToolFunc",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
    "resolve_state_refs",
    "spec_from_function",
    "tool",
]
