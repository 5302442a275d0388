"""Geometric primitives produced by component expansion.

Every primitive is an immutable dataclass drawn from the closed ``ShapeKind``
set. Functions in this module dispatch over the concrete classes and raise
``TypeError`` for anything outside that set, so a new shape has to be handled
everywhere before it can be used.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

Cell = tuple[int, int, int]


class ShapeKind(str, Enum):
    BOX = "box"
    HOLLOW_BOX = "hollow_box"
    SPHERE = "sphere"
    CYLINDER = "cylinder"
    LINE = "line"
    POINT = "point"
    STAIR = "stair"
    SLAB = "slab"
    DOOR = "door"


HOLLOW_FILL_RATIO = 0.3


@dataclass(frozen=True, order=True)
class Vec3:
    x: int
    y: int
    z: int

    def __add__(self, other: "Vec3") -> "Vec3":
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Vec3") -> "Vec3":
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def as_tuple(self) -> Cell:
        return (self.x, self.y, self.z)

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "z": self.z}

    def distance_to(self, other: "Vec3") -> float:
        return math.sqrt((self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2)

    @classmethod
    def of(cls, value: Any) -> "Vec3":
        if isinstance(value, Vec3):
            return value
        if isinstance(value, Mapping):
            return cls(int(value.get("x", 0)), int(value.get("y", 0)), int(value.get("z", 0)))
        x, y, z = value
        return cls(int(x), int(y), int(z))


ORIGIN = Vec3(0, 0, 0)


@dataclass(frozen=True)
class Box:
    id: str
    block: str
    start: Vec3
    end: Vec3
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.BOX


@dataclass(frozen=True)
class HollowBox:
    id: str
    block: str
    start: Vec3
    end: Vec3
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.HOLLOW_BOX


@dataclass(frozen=True)
class Sphere:
    id: str
    block: str
    center: Vec3
    radius: int
    hollow: bool = False
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.SPHERE


@dataclass(frozen=True)
class Cylinder:
    id: str
    block: str
    base: Vec3
    radius: int
    height: int
    hollow: bool = False
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.CYLINDER


@dataclass(frozen=True)
class Line:
    id: str
    block: str
    start: Vec3
    end: Vec3
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.LINE


@dataclass(frozen=True)
class Point:
    id: str
    block: str
    pos: Vec3
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.POINT


@dataclass(frozen=True)
class Stair:
    id: str
    block: str
    pos: Vec3
    facing: str = "north"
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.STAIR


@dataclass(frozen=True)
class Slab:
    id: str
    block: str
    pos: Vec3
    half: str = "bottom"
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.SLAB


@dataclass(frozen=True)
class Door:
    id: str
    block: str
    pos: Vec3
    facing: str = "north"
    layer: int = 0
    source: str = ""
    kind: ClassVar[ShapeKind] = ShapeKind.DOOR


GeometryPrimitive = Union[Box, HollowBox, Sphere, Cylinder, Line, Point, Stair, Slab, Door]

_CLASSES: dict[ShapeKind, type] = {
    ShapeKind.BOX: Box,
    ShapeKind.HOLLOW_BOX: HollowBox,
    ShapeKind.SPHERE: Sphere,
    ShapeKind.CYLINDER: Cylinder,
    ShapeKind.LINE: Line,
    ShapeKind.POINT: Point,
    ShapeKind.STAIR: Stair,
    ShapeKind.SLAB: Slab,
    ShapeKind.DOOR: Door,
}
_VEC_FIELDS = frozenset({"start", "end", "center", "base", "pos"})


def _span(a: int, b: int) -> range:
    return range(min(a, b), max(a, b) + 1)


def _extent(a: int, b: int) -> int:
    return abs(b - a) + 1


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def normalize_box(start: Vec3, end: Vec3) -> tuple[Vec3, Vec3]:
    return (
        Vec3(min(start.x, end.x), min(start.y, end.y), min(start.z, end.z)),
        Vec3(max(start.x, end.x), max(start.y, end.y), max(start.z, end.z)),
    )


def box_volume(start: Vec3, end: Vec3) -> int:
    return _extent(start.x, end.x) * _extent(start.y, end.y) * _extent(start.z, end.z)


def estimate_cells(prim: GeometryPrimitive) -> int:
    """Closed-form cell estimate used for statistics and bulk routing."""
    if isinstance(prim, Box):
        return box_volume(prim.start, prim.end)
    if isinstance(prim, HollowBox):
        w = _extent(prim.start.x, prim.end.x)
        h = _extent(prim.start.y, prim.end.y)
        d = _extent(prim.start.z, prim.end.z)
        return w * h * d - max(0, w - 2) * max(0, h - 2) * max(0, d - 2)
    if isinstance(prim, Sphere):
        volume = 4.0 / 3.0 * math.pi * prim.radius**3
        return round_half_up(volume * HOLLOW_FILL_RATIO if prim.hollow else volume)
    if isinstance(prim, Cylinder):
        volume = math.pi * prim.radius**2 * prim.height
        return round_half_up(volume * HOLLOW_FILL_RATIO if prim.hollow else volume)
    if isinstance(prim, Line):
        delta = prim.end - prim.start
        return max(abs(delta.x), abs(delta.y), abs(delta.z)) + 1
    if isinstance(prim, (Point, Stair, Slab)):
        return 1
    if isinstance(prim, Door):
        return 2
    raise TypeError(f"unsupported primitive: {prim!r}")


def _box_cells(start: Vec3, end: Vec3, hollow: bool) -> list[Cell]:
    lo, hi = normalize_box(start, end)
    cells: list[Cell] = []
    for x in _span(lo.x, hi.x):
        for y in _span(lo.y, hi.y):
            for z in _span(lo.z, hi.z):
                if hollow and lo.x < x < hi.x and lo.y < y < hi.y and lo.z < z < hi.z:
                    continue
                cells.append((x, y, z))
    return cells


def _line_cells(start: Vec3, end: Vec3) -> list[Cell]:
    delta = end - start
    steps = max(abs(delta.x), abs(delta.y), abs(delta.z))
    if steps == 0:
        return [start.as_tuple()]
    cells: list[Cell] = []
    for i in range(steps + 1):
        t = i / steps
        cells.append(
            (
                start.x + round_half_up(delta.x * t),
                start.y + round_half_up(delta.y * t),
                start.z + round_half_up(delta.z * t),
            )
        )
    return cells


def _sphere_cells(center: Vec3, radius: int, hollow: bool) -> list[Cell]:
    outer = radius * radius
    inner = (radius - 1) * (radius - 1)
    cells: list[Cell] = []
    for dx in range(-radius, radius + 1):
        for dy in range(-radius, radius + 1):
            for dz in range(-radius, radius + 1):
                d2 = dx * dx + dy * dy + dz * dz
                if d2 > outer or (hollow and d2 <= inner):
                    continue
                cells.append((center.x + dx, center.y + dy, center.z + dz))
    return cells


def _cylinder_cells(base: Vec3, radius: int, height: int, hollow: bool) -> list[Cell]:
    outer = radius * radius
    inner = (radius - 1) * (radius - 1)
    cells: list[Cell] = []
    for dy in range(max(height, 0)):
        for dx in range(-radius, radius + 1):
            for dz in range(-radius, radius + 1):
                d2 = dx * dx + dz * dz
                if d2 > outer or (hollow and d2 <= inner):
                    continue
                cells.append((base.x + dx, base.y + dy, base.z + dz))
    return cells


def rasterize(prim: GeometryPrimitive) -> list[tuple[Cell, str]]:
    """Expand a primitive into ``(cell, block_state)`` pairs in emission order."""
    if isinstance(prim, Box):
        return [(cell, prim.block) for cell in _box_cells(prim.start, prim.end, hollow=False)]
    if isinstance(prim, HollowBox):
        return [(cell, prim.block) for cell in _box_cells(prim.start, prim.end, hollow=True)]
    if isinstance(prim, Sphere):
        return [(cell, prim.block) for cell in _sphere_cells(prim.center, prim.radius, prim.hollow)]
    if isinstance(prim, Cylinder):
        return [(cell, prim.block) for cell in _cylinder_cells(prim.base, prim.radius, prim.height, prim.hollow)]
    if isinstance(prim, Line):
        return [(cell, prim.block) for cell in _line_cells(prim.start, prim.end)]
    if isinstance(prim, Point):
        return [(prim.pos.as_tuple(), prim.block)]
    if isinstance(prim, Stair):
        return [(prim.pos.as_tuple(), with_properties(prim.block, facing=prim.facing))]
    if isinstance(prim, Slab):
        return [(prim.pos.as_tuple(), with_properties(prim.block, type=prim.half))]
    if isinstance(prim, Door):
        upper = prim.pos + Vec3(0, 1, 0)
        return [
            (prim.pos.as_tuple(), with_properties(prim.block, facing=prim.facing, half="lower")),
            (upper.as_tuple(), with_properties(prim.block, facing=prim.facing, half="upper")),
        ]
    raise TypeError(f"unsupported primitive: {prim!r}")


def with_properties(block: str, **props: str) -> str:
    if not props or "[" in block:
        return block
    inner = ",".join(f"{key}={value}" for key, value in props.items())
    return f"{block}[{inner}]"


def base_block(block: str) -> str:
    """Strip namespace and block-state properties: ``minecraft:oak_door[half=upper]`` -> ``oak_door``."""
    name = block.split("[", 1)[0].strip()
    if name.startswith("minecraft:"):
        name = name[len("minecraft:") :]
    return name


def translate(prim: GeometryPrimitive, offset: Vec3) -> GeometryPrimitive:
    changes = {f.name: getattr(prim, f.name) + offset for f in fields(prim) if f.name in _VEC_FIELDS}
    return replace(prim, **changes)


def primitive_to_dict(prim: GeometryPrimitive) -> dict[str, Any]:
    if type(prim) not in _CLASSES.values():
        raise TypeError(f"unsupported primitive: {prim!r}")
    return {"kind": prim.kind.value, **asdict(prim)}


def primitive_from_dict(data: Mapping[str, Any]) -> GeometryPrimitive:
    kind = ShapeKind(data["kind"])
    cls = _CLASSES[kind]
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        kwargs[f.name] = Vec3.of(value) if f.name in _VEC_FIELDS else value
    return cls(**kwargs)
