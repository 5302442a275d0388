"""Scene to placement compilation and build runs shared by the API and the CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .config import BuilderSettings
from .executor import BuildExecutor, BuildReport, ProgressEvent
from .geometry import Vec3
from .multi import StructureEntry, compile_concurrent
from .placement import PlacementOptions, PlacementPlan, compile_placement
from .plan import BuildPlan, compile_plan
from .scene import SceneError
from .state import BuildStateManager
from .targets import WorldTarget

LOG = logging.getLogger("blockforge.pipeline")

TargetFactory = Callable[[BuilderSettings], WorldTarget]


@dataclass(frozen=True)
class CompiledBuild:
    plan: BuildPlan
    placement: PlacementPlan

    def summary(self) -> dict[str, Any]:
        return {
            "scene_id": self.plan.scene_id,
            "seed": self.plan.seed,
            "plan_hash": self.plan.hash,
            "stats": dict(self.plan.stats),
            "warnings": list(self.plan.warnings),
            "placement": self.placement.summary(),
            "placement_stats": dict(self.placement.stats),
        }


def load_document(path: Path | str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise SceneError(f"Cannot read scene file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SceneError(f"Invalid JSON in {path}: {exc}") from exc


def compile_build(
    settings: BuilderSettings,
    *,
    scene: Any = None,
    structures: Optional[Sequence[StructureEntry]] = None,
    seed: Optional[int] = None,
    server_version: Optional[str] = None,
    prefer_bulk: Optional[bool] = None,
) -> CompiledBuild:
    """Compile one scene or a set of offset structures to a placement plan."""
    version = server_version or settings.server_version
    if structures:
        plan = compile_concurrent(structures, server_version=version)
    elif scene is not None:
        plan = compile_plan(scene, seed, version)
    else:
        raise SceneError("Either a scene or a list of structures is required")

    options = PlacementOptions.from_settings(settings)
    if prefer_bulk is not None:
        options = replace(options, prefer_bulk=prefer_bulk)
    return CompiledBuild(plan=plan, placement=compile_placement(plan, options))


def run_build(
    settings: BuilderSettings,
    target: WorldTarget,
    compiled: CompiledBuild,
    start: Vec3,
    *,
    state: Optional[BuildStateManager] = None,
    checkpoint: Optional[str] = None,
    on_executor: Optional[Callable[[BuildExecutor], None]] = None,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
) -> BuildReport:
    executor = BuildExecutor(target, settings, state=state, on_progress=on_progress)
    if on_executor is not None:
        on_executor(executor)
    if checkpoint:
        return executor.execute_from_checkpoint(compiled.placement, start, checkpoint)
    return executor.execute(compiled.placement, start)


def resume_build(
    settings: BuilderSettings,
    target: WorldTarget,
    compiled: CompiledBuild,
    state: BuildStateManager,
    *,
    build_id: Optional[str] = None,
    on_executor: Optional[Callable[[BuildExecutor], None]] = None,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
) -> Optional[BuildReport]:
    """``None`` when there is nothing to resume."""
    descriptor = state.prepare_resume(build_id)
    if descriptor is None:
        return None
    executor = BuildExecutor(target, settings, state=state, on_progress=on_progress)
    if on_executor is not None:
        on_executor(executor)
    return executor.execute(compiled.placement, descriptor.start_pos, resume=descriptor)
