from __future__ import annotations

from typing import TYPE_CHECKING

from ..geometry import Cylinder, GeometryPrimitive, Sphere

if TYPE_CHECKING:
    from . import ComponentContext


def sphere(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    return [
        Sphere(
            id=ctx.next_id("sphere"),
            block=ctx.material("block", "$primary"),
            center=ctx.position,
            radius=ctx.size("radius", 5),
            hollow=ctx.flag("hollow", False),
        )
    ]


def cylinder(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    return [
        Cylinder(
            id=ctx.next_id("cylinder"),
            block=ctx.material("block", "$primary"),
            base=ctx.position,
            radius=ctx.size("radius", 3),
            height=ctx.size("height", 10),
            hollow=ctx.flag("hollow", False),
        )
    ]
