from __future__ import annotations

from typing import TYPE_CHECKING

from ..geometry import Box, GeometryPrimitive, HollowBox, Vec3

if TYPE_CHECKING:
    from . import ComponentContext


def _far_corner(ctx: "ComponentContext", w: int, h: int, d: int) -> Vec3:
    return ctx.position + Vec3(w - 1, h - 1, d - 1)


def box(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    w = ctx.size("width", 1)
    h = ctx.size("height", 1)
    d = ctx.size("depth", 1)
    return [
        Box(
            id=ctx.next_id("box"),
            block=ctx.material("block", "$primary"),
            start=ctx.position,
            end=_far_corner(ctx, w, h, d),
        )
    ]


def wall(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    """Hollow shell of the given extent; a depth of 1 gives a flat wall."""
    w = ctx.size("width", 1)
    h = ctx.size("height", 1)
    d = ctx.size("depth", 1)
    return [
        HollowBox(
            id=ctx.next_id("wall"),
            block=ctx.material("block", "$primary"),
            start=ctx.position,
            end=_far_corner(ctx, w, h, d),
            layer=1,
        )
    ]
