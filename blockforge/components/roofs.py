from __future__ import annotations

import math
from typing import TYPE_CHECKING

from ..geometry import GeometryPrimitive, Point, Slab, Sphere, Stair, Vec3, round_half_up

if TYPE_CHECKING:
    from . import ComponentContext


def roof_gable(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    """Two stair slopes meeting at a slab ridge, with filled gable ends.

    ``direction`` is the ridge axis: ``ew`` runs the ridge along x, ``ns`` along z.
    """
    w = ctx.size("width", 10)
    d = ctx.size("depth", 10)
    oh = ctx.size("overhang", 1, minimum=0)
    pitch = float(ctx.param("pitch", 0.5))
    ridge_along_x = ctx.param("direction", "ew") != "ns"
    block = ctx.material("block", "$roof")
    slab = ctx.material("slab_block", "$roof_slab")
    gable = ctx.material("gable_block", "$primary")
    pos = ctx.position

    length, span = (w, d) if ridge_along_x else (d, w)
    near_facing, far_facing = ("south", "north") if ridge_along_x else ("east", "west")
    roof_h = math.ceil(span / 2 * pitch)
    half_span = math.ceil(span / 2)

    def cell(along: int, y: int, across: int) -> Vec3:
        if ridge_along_x:
            return pos + Vec3(along, y, across)
        return pos + Vec3(across, y, along)

    prims: list[GeometryPrimitive] = []
    for layer in range(roof_h + 1):
        if half_span - layer <= 0:
            continue
        for along in range(-oh, length + oh):
            prims.append(Stair(id=ctx.next_id("slope"), block=block, pos=cell(along, layer, -oh + layer), facing=near_facing, layer=layer))
        for along in range(-oh, length + oh):
            prims.append(
                Stair(id=ctx.next_id("slope"), block=block, pos=cell(along, layer, span + oh - 1 - layer), facing=far_facing, layer=layer)
            )

    for along in range(-oh, length + oh):
        prims.append(Slab(id=ctx.next_id("ridge"), block=slab, pos=cell(along, roof_h, span // 2), half="bottom", layer=roof_h + 1))

    for end in (-oh, length + oh - 1):
        for layer in range(roof_h):
            reach = half_span - layer - 1
            for offset in range(-reach, reach + 1):
                prims.append(Point(id=ctx.next_id("gable"), block=gable, pos=cell(end, layer, span // 2 + offset), layer=layer + roof_h + 2))
    return prims


def roof_dome(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    r = ctx.size("radius", 5)
    cap_height = round_half_up(r * float(ctx.param("height_ratio", 1.0)))
    prims: list[GeometryPrimitive] = [
        Sphere(
            id=ctx.next_id("dome"),
            block=ctx.material("block", "$primary"),
            center=ctx.position,
            radius=r,
            hollow=ctx.flag("hollow", True),
            layer=0,
        )
    ]
    cap = ctx.material("cap_block", "$accent")
    if cap != "none":
        prims.append(Point(id=ctx.next_id("cap"), block=cap, pos=ctx.position + Vec3(0, cap_height, 0), layer=1))
    return prims
