from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterator

from ..geometry import Box, Door, GeometryPrimitive, HollowBox, Point, Vec3

if TYPE_CHECKING:
    from . import ComponentContext

_WALL_FACING = {"south": "south", "north": "north", "east": "east", "west": "west"}


def _opening_cells(origin: Vec3, wall: str, width: int, height: int) -> Iterator[Vec3]:
    for dx in range(width):
        for dy in range(height):
            if wall in ("east", "west"):
                yield origin + Vec3(0, dy, dx)
            else:
                yield origin + Vec3(dx, dy, 0)


def room(ctx: "ComponentContext") -> list[GeometryPrimitive]:
    """Floor slab, hollow walls, ceiling, then door and window openings cut into the walls."""
    w = ctx.size("width", 8)
    h = ctx.size("height", 4)
    d = ctx.size("depth", 8)
    t = ctx.size("wall_thickness", 1)
    has_floor = ctx.flag("floor", True)
    has_ceiling = ctx.flag("ceiling", True)
    pos = ctx.position

    total_w = w + 2 * t
    total_d = d + 2 * t
    prims: list[GeometryPrimitive] = []

    if has_floor:
        prims.append(
            Box(
                id=ctx.next_id("floor"),
                block=ctx.material("floor_block", "$floor"),
                start=pos,
                end=pos + Vec3(total_w - 1, t - 1, total_d - 1),
                layer=0,
            )
        )

    wall_y = pos.y + (t if has_floor else 0)
    prims.append(
        HollowBox(
            id=ctx.next_id("walls"),
            block=ctx.material("wall_block", "$primary"),
            start=Vec3(pos.x, wall_y, pos.z),
            end=Vec3(pos.x + total_w - 1, wall_y + h - 1, pos.z + total_d - 1),
            layer=1,
        )
    )

    if has_ceiling:
        prims.append(
            Box(
                id=ctx.next_id("ceiling"),
                block=ctx.material("ceiling_block", "$primary"),
                start=Vec3(pos.x, wall_y + h, pos.z),
                end=Vec3(pos.x + total_w - 1, wall_y + h + t - 1, pos.z + total_d - 1),
                layer=2,
            )
        )

    center_x = pos.x + total_w // 2
    center_z = pos.z + total_d // 2
    openings: list[dict[str, Any]] = list(ctx.param("openings", []) or [])
    for opening in openings:
        kind = opening.get("type", "door")
        wall = opening.get("wall", "south")
        if wall not in _WALL_FACING:
            continue
        offset = int(opening.get("offset", 0))
        y_offset = int(opening.get("y_offset", 0))
        open_w = int(opening.get("width", 1 if kind == "door" else 2))
        open_h = int(opening.get("height", 2 if kind == "door" else 1))
        y = wall_y + y_offset
        if wall == "south":
            origin = Vec3(center_x + offset - open_w // 2, y, pos.z)
        elif wall == "north":
            origin = Vec3(center_x + offset - open_w // 2, y, pos.z + total_d - 1)
        elif wall == "west":
            origin = Vec3(pos.x, y, center_z + offset - open_w // 2)
        else:
            origin = Vec3(pos.x + total_w - 1, y, center_z + offset - open_w // 2)

        for cell in _opening_cells(origin, wall, open_w, open_h):
            prims.append(Point(id=ctx.next_id("opening"), block="air", pos=cell, layer=3))

        if kind == "door":
            prims.append(
                Door(
                    id=ctx.next_id("door"),
                    block=ctx.material("door_block", "$door"),
                    pos=origin,
                    facing=_WALL_FACING[wall],
                    layer=4,
                )
            )
        elif kind == "window":
            for cell in _opening_cells(origin, wall, open_w, open_h):
                prims.append(Point(id=ctx.next_id("window"), block=ctx.material("glass_block", "$glass"), pos=cell, layer=4))

    return prims
