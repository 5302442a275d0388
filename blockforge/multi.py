"""Several independent structures compiled in parallel, built as one stream."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from .config import DEFAULT_SERVER_VERSION
from .geometry import ORIGIN, Vec3, translate
from .plan import BuildPlan, plan_stats, compile_plan
from .scene import Scene

LOG = logging.getLogger("blockforge.multi")

DEFAULT_WORKERS = 4


@dataclass(frozen=True)
class StructureEntry:
    scene: Scene | dict[str, Any]
    offset: Vec3 = ORIGIN
    seed: Optional[int] = None


def _merged_bounds(plans: Sequence[BuildPlan], offsets: Sequence[Vec3]) -> dict[str, int]:
    lo_x = min(offset.x for offset in offsets)
    lo_y = min(offset.y for offset in offsets)
    lo_z = min(offset.z for offset in offsets)
    return {
        "width": max(offset.x + plan.bounds["width"] for plan, offset in zip(plans, offsets)) - lo_x,
        "height": max(offset.y + plan.bounds["height"] for plan, offset in zip(plans, offsets)) - lo_y,
        "depth": max(offset.z + plan.bounds["depth"] for plan, offset in zip(plans, offsets)) - lo_z,
    }


def merge_plans(plans: Sequence[BuildPlan], offsets: Sequence[Vec3], *, scene_id: Optional[str] = None) -> BuildPlan:
    """Concatenate plans in the given order; primitive ids are prefixed with the structure index."""
    if not plans:
        raise ValueError("at least one plan is required")
    if len(plans) != len(offsets):
        raise ValueError("one offset per plan is required")

    geometry = []
    palette: dict[str, str] = {}
    warnings: list[str] = []
    components = 0
    passes = 0
    for index, (plan, offset) in enumerate(zip(plans, offsets)):
        for prim in plan.geometry:
            geometry.append(replace(translate(prim, offset), id=f"{index}/{prim.id}"))
        for key, block in plan.palette.items():
            palette.setdefault(key, block)
        warnings.extend(f"{plan.scene_id}: {warning}" for warning in plan.warnings)
        components += int(plan.stats.get("components_expanded", 0))
        passes += int(plan.stats.get("detail_passes_applied", 0))

    themes = {plan.theme for plan in plans}
    merged = BuildPlan(
        scene_id=scene_id or "+".join(plan.scene_id for plan in plans),
        seed=plans[0].seed,
        bounds=_merged_bounds(plans, offsets),
        theme=plans[0].theme if len(themes) == 1 else "mixed",
        server_version=plans[0].server_version,
        palette=palette,
        geometry=tuple(geometry),
        stats={**plan_stats(geometry, components, passes), "structures": len(plans)},
        warnings=tuple(warnings),
        created_at=datetime.now(tz=timezone.utc).isoformat(),
    )
    return replace(merged, hash=merged.compute_hash())


def compile_concurrent(
    entries: Sequence[StructureEntry],
    *,
    server_version: str = DEFAULT_SERVER_VERSION,
    max_workers: int = DEFAULT_WORKERS,
    scene_id: Optional[str] = None,
) -> BuildPlan:
    """Compile each structure on a worker thread and merge the results.

    Every compile owns its generator, so the merged plan does not depend on
    thread scheduling. ``SceneError`` from any entry propagates.
    """
    if not entries:
        raise ValueError("at least one structure is required")
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="blockforge-compile") as pool:
        futures = [pool.submit(compile_plan, entry.scene, entry.seed, server_version) for entry in entries]
        plans = [future.result() for future in futures]
    merged = merge_plans(plans, [entry.offset for entry in entries], scene_id=scene_id)
    LOG.info("Merged %d structures into %s (%d primitives)", len(plans), merged.scene_id, len(merged.geometry))
    return merged
