"""Scene to BuildPlan compilation.

A BuildPlan is a pure function of ``(scene, seed, server_version)``: the
geometry order, the generator draws made by detail passes and the palette
resolution are all fixed, so compiling twice yields the same content hash.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .components import FALLBACK_COMPONENT, get_component
from .config import DEFAULT_SERVER_VERSION
from .expander import expand_tree
from .geometry import Box, GeometryPrimitive, HollowBox, Line, Point, Vec3, estimate_cells, primitive_from_dict, primitive_to_dict
from .hashing import content_hash
from .palette import DEFAULT_BLOCK, resolve_block, resolve_palette
from .scene import Bounds, Scene, load_scene
from .seed import SeededRandom, seed_from_string

LOG = logging.getLogger("blockforge.plan")

LIGHT_SPACING = 8
LIGHT_LAYER = 100
GROUND_COVER_LAYER = 99
GROUND_COVER_COUNT = 8
GROUND_COVER_BLOCKS = ("grass_block", "dirt", "coarse_dirt")
TRIM_LAYER = 101


@dataclass(frozen=True)
class BuildPlan:
    scene_id: str
    seed: int
    bounds: dict[str, int]
    theme: str
    server_version: str
    palette: dict[str, str]
    geometry: tuple[GeometryPrimitive, ...]
    stats: dict[str, Any]
    hash: str = ""
    warnings: tuple[str, ...] = ()
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "scene_id": self.scene_id,
            "seed": self.seed,
            "bounds": dict(self.bounds),
            "theme": self.theme,
            "server_version": self.server_version,
            "palette": dict(self.palette),
            "geometry": [primitive_to_dict(prim) for prim in self.geometry],
            "stats": dict(self.stats),
            "hash": self.hash,
            "warnings": list(self.warnings),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildPlan":
        return cls(
            scene_id=data["scene_id"],
            seed=int(data["seed"]),
            bounds=dict(data["bounds"]),
            theme=data.get("theme", "default"),
            server_version=data.get("server_version", DEFAULT_SERVER_VERSION),
            palette=dict(data["palette"]),
            geometry=tuple(primitive_from_dict(item) for item in data["geometry"]),
            stats=dict(data["stats"]),
            hash=data.get("hash", ""),
            warnings=tuple(data.get("warnings", ())),
            created_at=data.get("created_at", ""),
        )

    def compute_hash(self) -> str:
        return content_hash(self.to_dict())


def _lighting(geometry: list[GeometryPrimitive], rng: SeededRandom, bounds: Bounds) -> list[GeometryPrimitive]:
    lights: list[GeometryPrimitive] = []
    floors = [prim for prim in geometry if isinstance(prim, Box) and prim.layer == 0]
    if not floors:
        corners = ((2, 2), (bounds.width - 3, 2), (2, bounds.depth - 3), (bounds.width - 3, bounds.depth - 3))
        for x, z in corners:
            lights.append(Point(id=f"detail:light_{len(lights)}", block="$light", pos=Vec3(x, 1, z), layer=LIGHT_LAYER))
        return lights
    for floor in floors:
        lo_x, hi_x = sorted((floor.start.x, floor.end.x))
        lo_z, hi_z = sorted((floor.start.z, floor.end.z))
        top = max(floor.start.y, floor.end.y)
        for x in range(lo_x, hi_x + 1, LIGHT_SPACING):
            for z in range(lo_z, hi_z + 1, LIGHT_SPACING):
                if rng.chance(0.5):
                    lights.append(
                        Point(id=f"detail:light_{len(lights)}", block="$light", pos=Vec3(x, top + 1, z), layer=LIGHT_LAYER, source=floor.source)
                    )
    return lights


def _landscaping(geometry: list[GeometryPrimitive], rng: SeededRandom, bounds: Bounds) -> list[GeometryPrimitive]:
    cover: list[GeometryPrimitive] = []
    for i in range(GROUND_COVER_COUNT):
        x = rng.integer(0, bounds.width - 1)
        z = rng.integer(0, bounds.depth - 1)
        block = rng.pick(GROUND_COVER_BLOCKS) or GROUND_COVER_BLOCKS[0]
        cover.append(Point(id=f"detail:ground_{i}", block=block, pos=Vec3(x, 0, z), layer=GROUND_COVER_LAYER))
    return cover


def _edge_trim(geometry: list[GeometryPrimitive], rng: SeededRandom, bounds: Bounds) -> list[GeometryPrimitive]:
    """Vertical trim lines on the four corners of every hollow shell."""
    trims: list[GeometryPrimitive] = []
    for prim in geometry:
        if not isinstance(prim, HollowBox):
            continue
        lo_y, hi_y = sorted((prim.start.y, prim.end.y))
        for x in sorted({prim.start.x, prim.end.x}):
            for z in sorted({prim.start.z, prim.end.z}):
                trims.append(
                    Line(
                        id=f"detail:trim_{len(trims)}",
                        block="$trim",
                        start=Vec3(x, lo_y, z),
                        end=Vec3(x, hi_y, z),
                        layer=TRIM_LAYER,
                        source=prim.source,
                    )
                )
    return trims


DetailPass = Callable[[list[GeometryPrimitive], SeededRandom, Bounds], list[GeometryPrimitive]]

DETAIL_PASSES: dict[str, DetailPass] = {
    "lighting": _lighting,
    "landscaping": _landscaping,
    "edge_trim": _edge_trim,
}


def _resolve_material(
    block: str,
    palette: dict[str, str],
    theme: str,
    server_version: str,
    warnings: list[str],
) -> str:
    resolved: Optional[str]
    if block.startswith("$"):
        resolved = palette.get(block[1:]) or resolve_block(block, theme, server_version)
    else:
        resolved = resolve_block(block, theme, server_version)
    if resolved is None:
        warnings.append(f"unresolvable material {block!r}, using {DEFAULT_BLOCK}")
        LOG.warning("Unresolvable material %r, using %s", block, DEFAULT_BLOCK)
        return DEFAULT_BLOCK
    return resolved


def plan_stats(geometry: list[GeometryPrimitive], components: int, passes: int) -> dict[str, Any]:
    by_kind: Counter[str] = Counter()
    by_block: Counter[str] = Counter()
    for prim in geometry:
        cells = estimate_cells(prim)
        by_kind[prim.kind.value] += cells
        by_block[prim.block] += cells
    return {
        "total_cells": sum(by_kind.values()),
        "unique_blocks": len(by_block),
        "primitives": len(geometry),
        "cells_by_kind": dict(sorted(by_kind.items())),
        "cells_by_block": dict(sorted(by_block.items())),
        "components_expanded": components,
        "detail_passes_applied": passes,
    }


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def compile_plan(
    scene: Scene | dict[str, Any],
    seed: Optional[int] = None,
    server_version: str = DEFAULT_SERVER_VERSION,
) -> BuildPlan:
    """Expand, decorate, resolve and hash a scene.

    Raises ``SceneError`` for invalid documents. Unknown component types,
    unknown detail passes and unresolvable materials only add warnings.
    """
    scene = load_scene(scene)
    if seed is None:
        seed = scene.seed if scene.seed is not None else seed_from_string(scene.id)
    rng = SeededRandom(seed)
    warnings: list[str] = []
    theme = scene.style.theme

    palette = resolve_palette(theme, scene.style.palette, server_version, warnings)

    geometry: list[GeometryPrimitive] = []
    components = 0
    for root in scene.components:
        if get_component(root.type) is None:
            warnings.append(f"unknown component type {root.type!r} on node {root.id}, using {FALLBACK_COMPONENT}")
            LOG.warning("Unknown component type %r on %s, falling back to %s", root.type, root.id, FALLBACK_COMPONENT)
            root = root.model_copy(update={"type": FALLBACK_COMPONENT})
        geometry.extend(expand_tree(root, rng, theme, warnings=warnings))
        components += sum(1 for _ in root.walk())

    passes = 0
    for name in scene.detail_passes:
        detail = DETAIL_PASSES.get(name)
        if detail is None:
            warnings.append(f"unknown detail pass {name!r}")
            LOG.warning("Unknown detail pass %r", name)
            continue
        added = detail(geometry, rng, scene.bounds)
        geometry.extend(added)
        passes += 1
        LOG.debug("Detail pass %s added %d primitives", name, len(added))

    resolved = [
        replace(prim, block=_resolve_material(prim.block, palette, theme, server_version, warnings)) for prim in geometry
    ]

    plan = BuildPlan(
        scene_id=scene.id,
        seed=seed,
        bounds=scene.bounds.model_dump(),
        theme=theme,
        server_version=server_version,
        palette=palette,
        geometry=tuple(resolved),
        stats=plan_stats(resolved, components, passes),
        warnings=tuple(warnings),
        created_at=_utcnow(),
    )
    plan = replace(plan, hash=plan.compute_hash())
    LOG.info(
        "Compiled scene %s seed=%s primitives=%d cells=%d hash=%s",
        plan.scene_id,
        seed,
        len(resolved),
        plan.stats["total_cells"],
        plan.hash[:16],
    )
    return plan


def verify_determinism(scene: Scene | dict[str, Any], seed: int, server_version: str = DEFAULT_SERVER_VERSION) -> bool:
    first = compile_plan(scene, seed, server_version)
    second = compile_plan(scene, seed, server_version)
    return first.hash == second.hash and len(first.geometry) == len(second.geometry)
