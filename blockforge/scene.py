from __future__ import annotations

from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .geometry import Vec3


class SceneError(ValueError):
    """Raised when a scene document fails validation; nothing is built."""


class Position(BaseModel):
    x: int = 0
    y: int = 0
    z: int = 0

    def to_vec(self) -> Vec3:
        return Vec3(self.x, self.y, self.z)


class Transform(BaseModel):
    position: Position = Field(default_factory=Position)
    rotation: int = 0
    scale: float = Field(default=1.0, gt=0)

    @field_validator("rotation")
    @classmethod
    def validate_rotation(cls, value: int) -> int:
        if value % 90 != 0:
            raise ValueError("rotation must be a multiple of 90 degrees")
        return value % 360


class ComponentNode(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1, max_length=128)
    type: str = Field(min_length=1)
    transform: Transform = Field(default_factory=Transform)
    params: dict[str, Any] = Field(default_factory=dict)
    materials: dict[str, str] = Field(default_factory=dict)
    children: list["ComponentNode"] = Field(default_factory=list)

    def walk(self) -> Iterator["ComponentNode"]:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


class Bounds(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    depth: int = Field(gt=0)


class Style(BaseModel):
    theme: str = "default"
    palette: dict[str, str] = Field(default_factory=dict)


class Scene(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1, max_length=128)
    title: str = ""
    seed: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
    bounds: Bounds
    style: Style = Field(default_factory=Style)
    components: list[ComponentNode] = Field(min_length=1)
    detail_passes: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "Scene":
        seen: set[str] = set()
        for root in self.components:
            for node in root.walk():
                if node.id in seen:
                    raise ValueError(f"duplicate component id: {node.id}")
                seen.add(node.id)
        return self


def load_scene(data: Any) -> Scene:
    if isinstance(data, Scene):
        return data
    try:
        return Scene.model_validate(data)
    except ValidationError as exc:
        raise SceneError(f"Invalid scene: {exc}") from exc
