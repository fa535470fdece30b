"""Versioned shared-state store with optimistic concurrency."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from storyloom.errors import ConflictError, PatchValidationError
from storyloom.models import SEQUENCE_FIELDS, Artifact, ArtifactKind, PatchOp, SharedState, Side

logger = logging.getLogger("storyloom.store")

DEFAULT_MAX_PATCH_RETRIES = 8


@dataclass(frozen=True, slots=True)
class AppliedPatch:
    base_version: int
    new_version: int
    state: SharedState
    ops: tuple[PatchOp, ...]
    actor: Side


StateListener = Callable[[AppliedPatch], None]
PatchDeriver = Callable[[SharedState], Sequence[PatchOp | Mapping[str, Any]] | None]


def coerce_ops(ops: Sequence[PatchOp | Mapping[str, Any]]) -> list[PatchOp]:
    parsed: list[PatchOp] = []
    for op in ops:
        if isinstance(op, PatchOp):
            parsed.append(op)
            continue
        try:
            parsed.append(PatchOp.model_validate(op))
        except ValidationError as exc:
            raise PatchValidationError(f"Malformed patch operation: {exc.errors()[0]['msg']}") from exc
    return parsed


def _coerce_artifact(item: Any, kind: ArtifactKind) -> Artifact:
    if isinstance(item, Artifact):
        artifact = item
    elif isinstance(item, Mapping):
        payload = dict(item)
        payload.setdefault("kind", kind)
        try:
            artifact = Artifact.model_validate(payload)
        except ValidationError as exc:
            raise PatchValidationError(f"Invalid artifact: {exc.errors()[0]['msg']}") from exc
    else:
        raise PatchValidationError(f"Expected an artifact record, got {type(item).__name__}")
    if artifact.kind != kind:
        raise PatchValidationError(f"Artifact '{artifact.id}' is a {artifact.kind.value}, not a {kind.value}")
    return artifact


def _as_items(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _check_immutable(existing: Sequence[Artifact], replacement: Sequence[Artifact]) -> None:
    frozen = {item.id: item for item in existing if item.media_ref is not None}
    for item in replacement:
        previous = frozen.get(item.id)
        if previous is not None and previous != item:
            raise PatchValidationError(
                f"Artifact '{item.id}' already has media and cannot change; create a new revision instead"
            )


def _apply_sequence_op(op: PatchOp, kind: ArtifactKind, items: list[Artifact]) -> list[Artifact]:
    if op.op == "append":
        known = {item.id for item in items}
        for raw in _as_items(op.value):
            artifact = _coerce_artifact(raw, kind)
            if artifact.id in known:
                raise PatchValidationError(f"Artifact '{artifact.id}' is already present in {kind.field_name}")
            known.add(artifact.id)
            items.append(artifact)
        return items
    if op.op == "replace":
        if not isinstance(op.value, (list, tuple)):
            raise PatchValidationError(f"Replacing {kind.field_name} requires a list of artifacts")
        replacement = [_coerce_artifact(raw, kind) for raw in op.value]
        if len({item.id for item in replacement}) != len(replacement):
            raise PatchValidationError(f"Duplicate artifact ids in {kind.field_name}")
        _check_immutable(items, replacement)
        return replacement
    artifact_id = op.value
    remaining = [item for item in items if item.id != artifact_id]
    if len(remaining) == len(items):
        raise PatchValidationError(f"Artifact '{artifact_id}' is not present in {kind.field_name}")
    return remaining


def _apply_values_op(op: PatchOp, keys: list[str], values: dict[str, Any]) -> dict[str, Any]:
    if not keys:
        if op.op == "remove":
            return {}
        if op.op != "replace" or not isinstance(op.value, Mapping):
            raise PatchValidationError("The values root can only be replaced with a mapping or removed")
        return copy.deepcopy(dict(op.value))

    parent: dict[str, Any] = values
    for key in keys[:-1]:
        child = parent.get(key)
        if child is None:
            if op.op == "remove":
                return values
            child = {}
            parent[key] = child
        elif not isinstance(child, dict):
            raise PatchValidationError(f"Path segment '{key}' is not a mapping")
        parent = child

    leaf = keys[-1]
    if op.op == "replace":
        parent[leaf] = copy.deepcopy(op.value)
    elif op.op == "remove":
        parent.pop(leaf, None)
    else:
        current = parent.get(leaf)
        if current is None:
            current = []
        elif not isinstance(current, list):
            raise PatchValidationError(f"Cannot append to non-list value at 'values.{'.'.join(keys)}'")
        current.extend(copy.deepcopy(_as_items(op.value)))
        parent[leaf] = current
    return values


def apply_ops(state: SharedState, ops: Sequence[PatchOp], *, actor: Side) -> SharedState:
    """Return the state that results from applying ``ops`` to ``state``.

    Pure function: ``state`` is left untouched and the returned snapshot has
    ``version`` advanced by exactly one. Raises :class:`PatchValidationError`
    for any operation that cannot be applied; nothing is applied in that case.
    """
    values = copy.deepcopy(state.values)
    sequences = {name: list(getattr(state, name)) for name in SEQUENCE_FIELDS}
    credential = state.credential

    for op in ops:
        head, _, rest = op.path.partition(".")
        if head == "credential":
            if rest:
                raise PatchValidationError("The credential is a scalar field")
            if actor != Side.UI:
                raise PatchValidationError("Only the UI may set the credential")
            if op.op == "append":
                raise PatchValidationError("Cannot append to the credential")
            if op.op == "remove" or op.value in (None, ""):
                credential = None
            elif isinstance(op.value, str):
                credential = op.value
            else:
                raise PatchValidationError("The credential must be a string")
        elif head in SEQUENCE_FIELDS:
            if rest:
                raise PatchValidationError(f"Artifact sequences are patched as a whole, not at '{op.path}'")
            sequences[head] = _apply_sequence_op(op, SEQUENCE_FIELDS[head], sequences[head])
        elif head == "values":
            keys = rest.split(".") if rest else []
            if any(not key for key in keys):
                raise PatchValidationError(f"Invalid path '{op.path}'")
            values = _apply_values_op(op, keys, values)
        else:
            raise PatchValidationError(f"Unknown state path '{op.path}'")

    return SharedState(
        version=state.version + 1,
        values=values,
        characters=tuple(sequences["characters"]),
        backgrounds=tuple(sequences["backgrounds"]),
        scenes=tuple(sequences["scenes"]),
        credential=credential,
    )


def _credential_only(ops: Sequence[PatchOp], actor: Side) -> bool:
    return actor == Side.UI and all(op.path == "credential" for op in ops)


class StateStore:
    """Holds the single shared-state object of a session.

    Writes are serialized through :meth:`apply`, which is synchronous and
    never awaits, so two coroutines cannot interleave inside it. Reads return
    the latest frozen snapshot without copying.
    """

    def __init__(self, *, session_id: str, initial: SharedState | None = None) -> None:
        self.session_id = session_id
        self._state = initial or SharedState()
        self._listeners: list[StateListener] = []

    @property
    def version(self) -> int:
        return self._state.version

    def snapshot(self) -> SharedState:
        return self._state

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def apply(
        self,
        base_version: int,
        ops: Sequence[PatchOp | Mapping[str, Any]],
        *,
        actor: Side = Side.AGENT,
    ) -> AppliedPatch:
        parsed = coerce_ops(ops)
        if not parsed:
            raise PatchValidationError("A patch needs at least one operation")
        current = self._state
        # UI credential entry always wins, whatever version it was based on.
        if base_version != current.version and not _credential_only(parsed, actor):
            logger.debug(
                "patch_conflict",
                extra={
                    "session_id": self.session_id,
                    "actor": actor.value,
                    "base_version": base_version,
                    "current_version": current.version,
                },
            )
            raise ConflictError(base_version, current.version)

        new_state = apply_ops(current, parsed, actor=actor)
        self._state = new_state
        applied = AppliedPatch(
            base_version=current.version,
            new_version=new_state.version,
            state=new_state,
            ops=tuple(parsed),
            actor=actor,
        )
        logger.debug(
            "patch_applied",
            extra={
                "session_id": self.session_id,
                "actor": actor.value,
                "version": new_state.version,
                "paths": [op.path for op in parsed],
            },
        )
        for listener in list(self._listeners):
            try:
                listener(applied)
            except Exception:
                logger.exception("state_listener_error", extra={"session_id": self.session_id})
        return applied

    def apply_with_retry(
        self,
        derive: PatchDeriver,
        *,
        actor: Side = Side.AGENT,
        base: SharedState | None = None,
        max_attempts: int = DEFAULT_MAX_PATCH_RETRIES,
    ) -> AppliedPatch | None:
        """Derive a patch from a snapshot and apply it, re-deriving on conflict.

        ``base`` is the snapshot the caller last observed (defaults to the
        latest). On :class:`ConflictError` the latest snapshot is re-read and
        ``derive`` is called again, so appends land next to whatever was
        appended meanwhile. Returns ``None`` when ``derive`` yields no ops.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        state = base or self._state
        attempt = 0
        while True:
            attempt += 1
            ops = derive(state)
            if not ops:
                return None
            try:
                return self.apply(state.version, ops, actor=actor)
            except ConflictError:
                if attempt >= max_attempts:
                    raise
                logger.debug(
                    "patch_retry",
                    extra={"session_id": self.session_id, "actor": actor.value, "attempt": attempt},
                )
                state = self._state


__all__ = [
    "AppliedPatch",
    "DEFAULT_MAX_PATCH_RETRIES",
    "PatchDeriver",
    "StateListener",
    "StateStore",
    "apply_ops",
    "coerce_ops",
]
