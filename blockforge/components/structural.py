from __future__ import annotations

import math
from typing import TYPE_CHECKING

from ..geometry import Box, Cylinder, GeometryPrimitive, Line, Point, Stair, Vec3, round_half_up

if TYPE_CHECKING:
    from . import ComponentContext

_DIRECTIONS = {
    "north": Vec3(0, 0, -1),
    "south": Vec3(0, 0, 1),
    "east": Vec3(1, 0, 0),
    "west": Vec3(-1, 0, 0),
}


def column(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    h = ctx.size("height", 8, minimum=3)
    r = ctx.size("radius", 1)
    has_base = ctx.flag("base", True)
    has_capital = ctx.flag("capital", True)
    block = ctx.material("block", "$primary")
    accent = ctx.material("accent_block", "$accent")
    pos = ctx.position
    shaft_y = pos.y + (1 if has_base else 0)
    prims: list[GeometryPrimitive] = []

    if r == 1:
        top = pos.y + h - (2 if has_capital else 1)
        prims.append(Line(id=ctx.next_id("shaft"), block=block, start=Vec3(pos.x, shaft_y, pos.z), end=Vec3(pos.x, top, pos.z)))
    else:
        shaft_h = max(1, h - (1 if has_base else 0) - (2 if has_capital else 0))
        prims.append(Cylinder(id=ctx.next_id("shaft"), block=block, base=Vec3(pos.x, shaft_y, pos.z), radius=r, height=shaft_h))

    if has_base:
        if r == 1:
            for offset in (Vec3(0, 0, 0), Vec3(1, 0, 0), Vec3(-1, 0, 0), Vec3(0, 0, 1), Vec3(0, 0, -1)):
                prims.append(Point(id=ctx.next_id("base"), block=accent, pos=pos + offset))
        else:
            prims.append(Cylinder(id=ctx.next_id("base"), block=accent, base=pos, radius=r + 1, height=1))

    if has_capital:
        cap_y = pos.y + h - 2
        style = ctx.param("style", "simple")
        if style == "doric":
            prims.append(Box(id=ctx.next_id("capital"), block=accent, start=Vec3(pos.x - r, cap_y, pos.z - r), end=Vec3(pos.x + r, cap_y, pos.z + r)))
            prims.append(
                Box(id=ctx.next_id("capital"), block=accent, start=Vec3(pos.x - r - 1, cap_y + 1, pos.z - r - 1), end=Vec3(pos.x + r + 1, cap_y + 1, pos.z + r + 1))
            )
        else:
            prims.append(Box(id=ctx.next_id("capital"), block=accent, start=Vec3(pos.x - r, cap_y, pos.z - r), end=Vec3(pos.x + r, cap_y + 1, pos.z + r)))
    return prims


def platform(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    w = ctx.size("width", 10)
    d = ctx.size("depth", 10)
    t = ctx.size("thickness", 1)
    support_h = int(ctx.param("support_height", 4))
    pos = ctx.position
    prims: list[GeometryPrimitive] = []

    if ctx.flag("supports", False) and support_h > 0:
        support = ctx.material("support_block", "$secondary")
        for dx, dz in ((0, 0), (w - 1, 0), (0, d - 1), (w - 1, d - 1)):
            prims.append(
                Line(
                    id=ctx.next_id("support"),
                    block=support,
                    start=pos + Vec3(dx, -support_h, dz),
                    end=pos + Vec3(dx, -1, dz),
                    layer=0,
                )
            )

    prims.append(Box(id=ctx.next_id("deck"), block=ctx.material("floor_block", "$primary"), start=pos, end=pos + Vec3(w - 1, t - 1, d - 1), layer=1))

    if ctx.flag("railings", True):
        rail = ctx.material("railing_block", "$fence")
        y = t
        for start, end in (
            (Vec3(0, y, d - 1), Vec3(w - 1, y, d - 1)),
            (Vec3(0, y, 0), Vec3(w - 1, y, 0)),
            (Vec3(w - 1, y, 0), Vec3(w - 1, y, d - 1)),
            (Vec3(0, y, 0), Vec3(0, y, d - 1)),
        ):
            prims.append(Line(id=ctx.next_id("railing"), block=rail, start=pos + start, end=pos + end, layer=2))
    return prims


def _spiral_facing(angle: float) -> str:
    if angle < math.pi / 4:
        return "east"
    if angle < 3 * math.pi / 4:
        return "north"
    if angle < 5 * math.pi / 4:
        return "west"
    if angle < 7 * math.pi / 4:
        return "south"
    return "east"


def staircase(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    h = ctx.size("height", 8)
    block = ctx.material("block", "$roof")
    pos = ctx.position
    prims: list[GeometryPrimitive] = []

    if ctx.param("style", "straight") == "spiral":
        r = ctx.size("radius", 3)
        support = ctx.material("slab_block", "$roof_slab")
        steps = h * 2
        per_turn = max(8, r * 4)
        for step in range(steps):
            angle = (step * 2 * math.pi / per_turn) % (2 * math.pi)
            cell = Vec3(
                pos.x + round_half_up(math.cos(angle) * r),
                pos.y + step // 2,
                pos.z + round_half_up(math.sin(angle) * r),
            )
            prims.append(Stair(id=ctx.next_id("step"), block=block, pos=cell, facing=_spiral_facing(angle), layer=step))
            prims.append(Point(id=ctx.next_id("support"), block=support, pos=cell + Vec3(0, -1, 0), layer=step))
        prims.append(Line(id=ctx.next_id("pillar"), block=ctx.material("pillar_block", "$secondary"), start=pos, end=pos + Vec3(0, h, 0)))
        return prims

    direction = ctx.param("direction", "north")
    step_dir = _DIRECTIONS.get(direction, _DIRECTIONS["north"])
    if direction not in _DIRECTIONS:
        direction = "north"
    w = ctx.size("width", 3)
    across = Vec3(step_dir.z, 0, step_dir.x)
    for step in range(h):
        for i in range(w):
            offset = i - w // 2
            cell = Vec3(
                pos.x + step_dir.x * step + across.x * offset,
                pos.y + step,
                pos.z + step_dir.z * step + across.z * offset,
            )
            prims.append(Stair(id=ctx.next_id("step"), block=block, pos=cell, facing=direction, layer=step))
    return prims


def _arch_profile(style: str, half: int, h: int) -> list[tuple[int, int]]:
    profile: list[tuple[int, int]] = []
    if style == "flat":
        profile.extend((x, h - 1) for x in range(-half, half + 1))
        for y in range(h - 1):
            profile.extend([(-half, y), (half, y)])
    elif style == "pointed":
        for x in range(-half, half + 1):
            drop = abs(x) * (h - 1) // half if half else 0
            profile.append((x, h - 1 - drop))
        for y in range(h - 1):
            profile.extend([(-half, y), (half, y)])
    else:
        spring = math.floor(h * 0.3)
        for x in range(-half, half + 1):
            nx = x / half if half else 0.0
            profile.append((x, math.floor(math.sqrt(max(0.0, 1 - nx * nx)) * (h - 1)) + spring))
        for y in range(spring):
            profile.extend([(-half, y), (half, y)])
    seen: set[tuple[int, int]] = set()
    unique: list[tuple[int, int]] = []
    for point in profile:
        if point not in seen:
            seen.add(point)
            unique.append(point)
    return unique


def arch(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    w = ctx.size("width", 5)
    h = ctx.size("height", 4)
    t = ctx.size("thickness", 1)
    block = ctx.material("block", "$primary")
    along_x = ctx.param("direction", "ns") == "ns"
    profile = _arch_profile(str(ctx.param("style", "rounded")), w // 2, h)
    prims: list[GeometryPrimitive] = []
    for depth in range(t):
        for px, py in profile:
            offset = Vec3(px, py, depth) if along_x else Vec3(depth, py, px)
            prims.append(Point(id=ctx.next_id("voussoir"), block=block, pos=ctx.position + offset))
    return prims
