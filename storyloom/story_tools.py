"""Storybook tools: characters, backgrounds, scenes and artifact edits.

Each tool only composes the generation prompt and the artifact's display
fields. The execution supervisor owns the backend call and the state patch.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from .catalog import ArtifactDraft, ToolContext, ToolRegistry, build_registry, tool
from .errors import InvalidArgumentsError
from .models import Artifact, ArtifactKind, SharedState

_STYLE_REF = {"style": "values.style"}


class CharacterArgs(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    prompt: str = Field(min_length=1, description="What the character looks like")
    style: str | None = Field(default=None, description="Art style; defaults to the story's style")


class BackgroundArgs(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    prompt: str = Field(min_length=1, description="What the setting looks like")
    style: str | None = None


class SceneArgs(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    prompt: str = Field(min_length=1, description="What happens in the scene")
    character_ids: list[str] = Field(default_factory=list)
    background_id: str | None = None
    style: str | None = None


class EditArgs(BaseModel):
    artifact_id: str = Field(min_length=1)
    instructions: str = Field(min_length=1, description="How the new revision should differ")
    name: str | None = None
    style: str | None = None


def _with_style(prompt: str, style: str | None) -> str:
    return f"{prompt}. Style: {style}" if style else prompt


def _require(state: SharedState, tool_name: str, artifact_id: str, kind: ArtifactKind | None = None) -> Artifact:
    artifact = state.find_artifact(artifact_id)
    if artifact is None:
        raise InvalidArgumentsError(tool_name, f"artifact '{artifact_id}' does not exist")
    if kind is not None and artifact.kind != kind:
        raise InvalidArgumentsError(tool_name, f"artifact '{artifact_id}' is a {artifact.kind.value}, not a {kind.value}")
    return artifact


def _require_latest(state: SharedState, tool_name: str, artifact: Artifact) -> None:
    newer = [item.id for item in state.sequence(artifact.kind) if item.supersedes == artifact.id]
    if newer:
        raise InvalidArgumentsError(tool_name, f"artifact '{artifact.id}' already has a newer revision '{newer[-1]}'")


def _check_scene(args: SceneArgs, state: SharedState) -> None:
    for item in args.character_ids:
        _require(state, "create_scene", item, ArtifactKind.CHARACTER)
    if args.background_id:
        _require(state, "create_scene", args.background_id, ArtifactKind.BACKGROUND)


def _check_edit(args: EditArgs, state: SharedState) -> None:
    _require_latest(state, "edit_artifact", _require(state, "edit_artifact", args.artifact_id))


@tool(
    desc="Design a new story character and generate their portrait",
    artifact_kind=ArtifactKind.CHARACTER,
    state_refs=_STYLE_REF,
    tags=["storybook", "character"],
)
async def create_character(args: CharacterArgs, ctx: ToolContext) -> ArtifactDraft:
    return ArtifactDraft(
        prompt=_with_style(f"Character portrait of {args.name}: {args.prompt}", args.style),
        name=args.name,
        description=args.prompt,
    )


@tool(
    desc="Paint a new background setting for the story",
    artifact_kind=ArtifactKind.BACKGROUND,
    state_refs=_STYLE_REF,
    tags=["storybook", "background"],
)
async def create_background(args: BackgroundArgs, ctx: ToolContext) -> ArtifactDraft:
    return ArtifactDraft(
        prompt=_with_style(f"Background illustration of {args.name}: {args.prompt}", args.style),
        name=args.name,
        description=args.prompt,
    )


@tool(
    desc="Compose a scene from existing characters and an optional background",
    artifact_kind=ArtifactKind.SCENE,
    state_refs=_STYLE_REF,
    tags=["storybook", "scene"],
    check=_check_scene,
)
async def create_scene(args: SceneArgs, ctx: ToolContext) -> ArtifactDraft:
    """Characters and background are described as they were when the call was requested."""
    cast_members = [_require(ctx.state, "create_scene", item, ArtifactKind.CHARACTER) for item in args.character_ids]
    parts = [f"Scene '{args.name}': {args.prompt}"]
    if cast_members:
        parts.append("Featuring " + "; ".join(f"{item.name} ({item.description})" for item in cast_members))
    if args.background_id:
        background = _require(ctx.state, "create_scene", args.background_id, ArtifactKind.BACKGROUND)
        parts.append(f"Set in {background.name} ({background.description})")
    return ArtifactDraft(
        prompt=_with_style(". ".join(parts), args.style),
        name=args.name,
        description=args.prompt,
    )


@tool(
    desc="Create a new revision of an existing character, background or scene",
    state_refs=_STYLE_REF,
    tags=["storybook", "edit"],
    check=_check_edit,
)
async def edit_artifact(args: EditArgs, ctx: ToolContext) -> ArtifactDraft:
    original = _require(ctx.state, "edit_artifact", args.artifact_id)
    _require_latest(ctx.state, "edit_artifact", original)
    description = f"{original.description} (revised: {args.instructions})"
    return ArtifactDraft(
        prompt=_with_style(f"{original.kind.value.capitalize()} {original.name}: {description}", args.style),
        name=args.name or original.name,
        description=description,
        kind=original.kind,
        supersedes=original.id,
        revision=original.revision + 1,
    )


STORY_TOOLS = (create_character, create_background, create_scene, edit_artifact)


def default_registry() -> ToolRegistry:
    return build_registry(STORY_TOOLS)


__all__ = [
    "BackgroundArgs",
    "CharacterArgs",
    "EditArgs",
    "STORY_TOOLS",
    "SceneArgs",
    "create_background",
    "create_character",
    "create_scene",
    "default_registry",
    "edit_artifact",
]
