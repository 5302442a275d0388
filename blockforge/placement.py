"""BuildPlan to PlacementPlan compilation.

Every primitive becomes either bulk region commands or discrete placements.
Checkpoints record both list lengths at the moment they are emitted, so any
checkpoint is a plain prefix slice of the plan and resuming from it never
needs to recompute anything. Each bulk op also records how many discrete
placements preceded it, which lets consumers replay the plan in the exact
order it was emitted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Optional, Sequence, Union

from .batching import CellPlacement, optimize
from .config import VANILLA_FILL_LIMIT
from .geometry import (
    Box,
    Cell,
    Cylinder,
    GeometryPrimitive,
    HollowBox,
    ShapeKind,
    Sphere,
    Vec3,
    box_volume,
    estimate_cells,
    normalize_box,
    rasterize,
)
from .hashing import PLACEMENT_EXCLUDED_FIELDS, content_hash

if TYPE_CHECKING:
    from .config import BuilderSettings
    from .plan import BuildPlan

LOG = logging.getLogger("blockforge.placement")

# Shapes at or below this many cells are cheaper to place one by one.
BULK_MIN_CELLS = 32
DISCRETE_BATCH_SIZE = 100


class CheckpointError(LookupError):
    """Raised when a checkpoint id is not part of a placement plan."""


class BulkCommand(str, Enum):
    FILL = "fill"
    WALLS = "walls"
    SPHERE = "sphere"
    CYLINDER = "cylinder"


# Bulk command able to place each shape kind in one call.
KIND_COMMANDS = {
    ShapeKind.BOX: BulkCommand.FILL,
    ShapeKind.HOLLOW_BOX: BulkCommand.WALLS,
    ShapeKind.SPHERE: BulkCommand.SPHERE,
    ShapeKind.CYLINDER: BulkCommand.CYLINDER,
}


@dataclass(frozen=True)
class PlacementOptions:
    prefer_bulk: bool = True
    max_region_volume: int = VANILLA_FILL_LIMIT
    checkpoint_interval: int = 5_000
    min_run_length: Optional[int] = 10
    bulk_command_latency_s: float = 0.6
    placements_per_second: float = 50.0
    bulk_commands: tuple[BulkCommand, ...] = tuple(BulkCommand)

    @classmethod
    def from_settings(cls, settings: "BuilderSettings") -> "PlacementOptions":
        return cls(
            prefer_bulk=settings.prefer_bulk,
            max_region_volume=settings.max_region_volume,
            checkpoint_interval=settings.checkpoint_interval,
            min_run_length=settings.min_run_length,
            bulk_command_latency_s=settings.bulk_command_latency_ms / 1000.0,
            placements_per_second=settings.placements_per_second,
            bulk_commands=tuple(BulkCommand(name) for name in settings.bulk_commands),
        )

    def supports(self, command: BulkCommand) -> bool:
        return self.prefer_bulk and command in self.bulk_commands

    def to_dict(self) -> dict[str, Any]:
        return {
            "prefer_bulk": self.prefer_bulk,
            "max_region_volume": self.max_region_volume,
            "checkpoint_interval": self.checkpoint_interval,
            "min_run_length": self.min_run_length,
            "bulk_commands": [command.value for command in self.bulk_commands],
        }


@dataclass(frozen=True)
class BulkRegionOp:
    id: int
    command: BulkCommand
    block: str
    start: Optional[Vec3] = None
    end: Optional[Vec3] = None
    center: Optional[Vec3] = None
    base: Optional[Vec3] = None
    radius: int = 0
    height: int = 0
    hollow: bool = False
    estimated_cells: int = 0
    checkpoint_after: bool = False
    source: str = ""
    discrete_before: int = 0

    def to_primitive(self) -> GeometryPrimitive:
        ident = f"bulk:{self.id}"
        if self.command is BulkCommand.FILL:
            return Box(id=ident, block=self.block, start=self.start, end=self.end, source=self.source)
        if self.command is BulkCommand.WALLS:
            return HollowBox(id=ident, block=self.block, start=self.start, end=self.end, source=self.source)
        if self.command is BulkCommand.SPHERE:
            return Sphere(id=ident, block=self.block, center=self.center, radius=self.radius, hollow=self.hollow, source=self.source)
        if self.command is BulkCommand.CYLINDER:
            return Cylinder(
                id=ident, block=self.block, base=self.base, radius=self.radius, height=self.height, hollow=self.hollow, source=self.source
            )
        raise TypeError(f"unsupported bulk command: {self.command!r}")

    def cells(self) -> list[tuple[Cell, str]]:
        return rasterize(self.to_primitive())

    def translated(self, offset: Vec3) -> "BulkRegionOp":
        return replace(
            self,
            start=self.start + offset if self.start else None,
            end=self.end + offset if self.end else None,
            center=self.center + offset if self.center else None,
            base=self.base + offset if self.base else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "command": self.command.value,
            "block": self.block,
            "estimated_cells": self.estimated_cells,
            "checkpoint_after": self.checkpoint_after,
            "source": self.source,
            "discrete_before": self.discrete_before,
        }
        for name in ("start", "end", "center", "base"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value.to_dict()
        if self.command in (BulkCommand.SPHERE, BulkCommand.CYLINDER):
            data["params"] = {"radius": self.radius, "height": self.height, "hollow": self.hollow}
        return data


@dataclass(frozen=True)
class DiscretePlacement:
    x: int
    y: int
    z: int
    block: str
    batch_id: int

    @property
    def pos(self) -> Vec3:
        return Vec3(self.x, self.y, self.z)

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "z": self.z, "block": self.block, "batch_id": self.batch_id}


@dataclass(frozen=True)
class Checkpoint:
    id: str
    after_bulk_op_index: Optional[int]
    after_discrete_index: Optional[int]
    bulk_ops_done: int
    discrete_done: int
    cells_done: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "after_bulk_op_index": self.after_bulk_op_index,
            "after_discrete_index": self.after_discrete_index,
            "bulk_ops_done": self.bulk_ops_done,
            "discrete_done": self.discrete_done,
            "cells_done": self.cells_done,
        }


@dataclass(frozen=True)
class PlacementSlice:
    bulk_ops: tuple[BulkRegionOp, ...]
    discrete: tuple[DiscretePlacement, ...]


@dataclass(frozen=True)
class PlacementPlan:
    plan_id: str
    plan_hash: str
    strategy: dict[str, Any]
    bulk_ops: tuple[BulkRegionOp, ...]
    discrete: tuple[DiscretePlacement, ...]
    checkpoints: tuple[Checkpoint, ...]
    stats: dict[str, Any] = field(default_factory=dict)
    hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "plan_hash": self.plan_hash,
            "strategy": dict(self.strategy),
            "bulk_ops": [op.to_dict() for op in self.bulk_ops],
            "discrete_placements": [item.to_dict() for item in self.discrete],
            "checkpoints": [cp.to_dict() for cp in self.checkpoints],
            "stats": dict(self.stats),
            "hash": self.hash,
        }

    def compute_hash(self) -> str:
        return content_hash(self.to_dict(), PLACEMENT_EXCLUDED_FIELDS)

    def summary(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "plan_hash": self.plan_hash,
            "placement_hash": self.hash,
            "bulk_ops": len(self.bulk_ops),
            "discrete_placements": len(self.discrete),
            "checkpoints": len(self.checkpoints),
            "estimated_time": self.stats.get("estimated_time"),
        }


def slice_region(start: Vec3, end: Vec3, max_volume: int) -> list[tuple[Vec3, Vec3]]:
    """Split a box along its longest axis until every piece fits ``max_volume``."""
    lo, hi = normalize_box(start, end)
    if box_volume(lo, hi) <= max_volume:
        return [(lo, hi)]
    spans = {"x": hi.x - lo.x, "y": hi.y - lo.y, "z": hi.z - lo.z}
    axis = max(spans, key=lambda name: (spans[name], name == "x", name == "z"))
    if spans[axis] == 0:
        return [(lo, hi)]
    mid = getattr(lo, axis) + spans[axis] // 2
    first_hi = replace(hi, **{axis: mid})
    second_lo = replace(lo, **{axis: mid + 1})
    return slice_region(lo, first_hi, max_volume) + slice_region(second_lo, hi, max_volume)


def shell_faces(start: Vec3, end: Vec3) -> list[tuple[Vec3, Vec3]]:
    """Cover the boundary of a box with disjoint solid slabs.

    Floor and ceiling span the full footprint, the north and south walls span
    the full width between them, and the west and east walls fill what is left.
    Every boundary cell lands in exactly one slab, so a hollow box of any size
    can be placed with plain fills.
    """
    lo, hi = normalize_box(start, end)
    faces = [(lo, replace(hi, y=lo.y))]
    if hi.y > lo.y:
        faces.append((replace(lo, y=hi.y), hi))
    y0, y1 = lo.y + 1, hi.y - 1
    if y0 > y1:
        return faces
    faces.append((Vec3(lo.x, y0, lo.z), Vec3(hi.x, y1, lo.z)))
    if hi.z > lo.z:
        faces.append((Vec3(lo.x, y0, hi.z), Vec3(hi.x, y1, hi.z)))
    z0, z1 = lo.z + 1, hi.z - 1
    if z0 > z1:
        return faces
    faces.append((Vec3(lo.x, y0, z0), Vec3(lo.x, y1, z1)))
    if hi.x > lo.x:
        faces.append((Vec3(hi.x, y0, z0), Vec3(hi.x, y1, z1)))
    return faces


def _bulk_from_primitive(prim: GeometryPrimitive, op_id: int, estimate: int) -> BulkRegionOp:
    if isinstance(prim, Box):
        lo, hi = normalize_box(prim.start, prim.end)
        return BulkRegionOp(op_id, BulkCommand.FILL, prim.block, start=lo, end=hi, estimated_cells=estimate, source=prim.source)
    if isinstance(prim, HollowBox):
        lo, hi = normalize_box(prim.start, prim.end)
        return BulkRegionOp(op_id, BulkCommand.WALLS, prim.block, start=lo, end=hi, estimated_cells=estimate, source=prim.source)
    if isinstance(prim, Sphere):
        return BulkRegionOp(
            op_id, BulkCommand.SPHERE, prim.block, center=prim.center, radius=prim.radius, hollow=prim.hollow,
            estimated_cells=estimate, source=prim.source,
        )
    if isinstance(prim, Cylinder):
        return BulkRegionOp(
            op_id, BulkCommand.CYLINDER, prim.block, base=prim.base, radius=prim.radius, height=prim.height,
            hollow=prim.hollow, estimated_cells=estimate, source=prim.source,
        )
    raise TypeError(f"primitive is not bulk capable: {prim!r}")


class _PlacementBuilder:
    def __init__(self, interval: int) -> None:
        self.interval = interval
        self.bulk_ops: list[BulkRegionOp] = []
        self.discrete: list[DiscretePlacement] = []
        self.checkpoints: list[Checkpoint] = []
        self.emitted = 0

    def _crossed(self, before: int) -> bool:
        return self.interval > 0 and before // self.interval < self.emitted // self.interval

    def _checkpoint(self, *, bulk_index: Optional[int] = None, discrete_index: Optional[int] = None) -> None:
        self.checkpoints.append(
            Checkpoint(
                id=f"cp-{len(self.checkpoints)}",
                after_bulk_op_index=bulk_index,
                after_discrete_index=discrete_index,
                bulk_ops_done=len(self.bulk_ops),
                discrete_done=len(self.discrete),
                cells_done=self.emitted,
            )
        )

    def add_bulk(self, op: BulkRegionOp) -> None:
        op = replace(op, discrete_before=len(self.discrete))
        before = self.emitted
        self.emitted += op.estimated_cells
        if self._crossed(before):
            op = replace(op, checkpoint_after=True)
            self.bulk_ops.append(op)
            self._checkpoint(bulk_index=len(self.bulk_ops) - 1)
        else:
            self.bulk_ops.append(op)

    def add_fills(self, pieces: list[tuple[Vec3, Vec3]], block: str, source: str) -> None:
        for lo, hi in pieces:
            self.add_bulk(
                BulkRegionOp(
                    len(self.bulk_ops), BulkCommand.FILL, block, start=lo, end=hi,
                    estimated_cells=box_volume(lo, hi), source=source,
                )
            )

    def add_cell(self, cell: Cell, block: str) -> None:
        x, y, z = cell
        self.discrete.append(DiscretePlacement(x, y, z, block, batch_id=len(self.discrete) // DISCRETE_BATCH_SIZE))
        before = self.emitted
        self.emitted += 1
        if self._crossed(before):
            self._checkpoint(discrete_index=len(self.discrete) - 1)


def compile_placement(plan: "BuildPlan", options: Optional[PlacementOptions] = None) -> PlacementPlan:
    options = options or PlacementOptions()
    builder = _PlacementBuilder(options.checkpoint_interval)
    sliced = 0
    oversize = 0
    runs = 0
    merged = 0

    cap = options.max_region_volume
    for prim in sorted(plan.geometry, key=lambda item: item.layer):
        estimate = estimate_cells(prim)
        command = KIND_COMMANDS.get(prim.kind)
        if options.prefer_bulk and command is not None and estimate > BULK_MIN_CELLS:
            # The server checks the whole region of a walls command, not just its shell.
            region = box_volume(prim.start, prim.end) if isinstance(prim, HollowBox) else estimate
            if options.supports(command) and region <= cap:
                builder.add_bulk(_bulk_from_primitive(prim, len(builder.bulk_ops), estimate))
                continue
            if isinstance(prim, (Box, HollowBox)) and options.supports(BulkCommand.FILL):
                if isinstance(prim, Box):
                    pieces = slice_region(prim.start, prim.end, cap)
                else:
                    pieces = [piece for lo, hi in shell_faces(prim.start, prim.end) for piece in slice_region(lo, hi, cap)]
                sliced += len(pieces)
                builder.add_fills(pieces, prim.block, prim.source)
                continue
            if region > cap:
                oversize += 1
                LOG.info("Primitive %s (%d cells) exceeds region cap %d, placing discretely", prim.id, region, cap)
            else:
                LOG.debug("No %s command available for %s, placing discretely", command.value, prim.id)

        cells = rasterize(prim)
        if options.supports(BulkCommand.FILL) and options.min_run_length:
            result = optimize((CellPlacement(x, y, z, block) for (x, y, z), block in cells), options.min_run_length)
            for run in result.bulk_runs:
                runs += 1
                merged += run.length
                builder.add_bulk(
                    BulkRegionOp(
                        len(builder.bulk_ops), BulkCommand.FILL, run.block, start=run.start, end=run.end,
                        estimated_cells=run.length, source=prim.source,
                    )
                )
            for cell in result.remaining:
                builder.add_cell((cell.x, cell.y, cell.z), cell.block)
        else:
            for cell, block in cells:
                builder.add_cell(cell, block)

    bulk_cells = sum(op.estimated_cells for op in builder.bulk_ops)
    rate = options.placements_per_second if options.placements_per_second > 0 else 1.0
    stats = {
        "bulk_ops": len(builder.bulk_ops),
        "bulk_cells": bulk_cells,
        "discrete_cells": len(builder.discrete),
        "total_cells": bulk_cells + len(builder.discrete),
        "run_merges": runs,
        "merged_cells": merged,
        "sliced_regions": sliced,
        "oversize_fallbacks": oversize,
        "checkpoints": len(builder.checkpoints),
        "estimated_time": round(len(builder.bulk_ops) * options.bulk_command_latency_s + len(builder.discrete) / rate, 3),
    }
    placement = PlacementPlan(
        plan_id=f"{plan.scene_id}:{plan.hash[:12]}",
        plan_hash=plan.hash,
        strategy=options.to_dict(),
        bulk_ops=tuple(builder.bulk_ops),
        discrete=tuple(builder.discrete),
        checkpoints=tuple(builder.checkpoints),
        stats=stats,
    )
    placement = replace(placement, hash=placement.compute_hash())
    LOG.info(
        "Placement %s: %d bulk ops (%d cells), %d discrete, %d checkpoints, ~%.1fs",
        placement.plan_id,
        stats["bulk_ops"],
        bulk_cells,
        stats["discrete_cells"],
        stats["checkpoints"],
        stats["estimated_time"],
    )
    return placement


def find_checkpoint(placement: PlacementPlan, checkpoint_id: str) -> Checkpoint:
    for checkpoint in placement.checkpoints:
        if checkpoint.id == checkpoint_id:
            return checkpoint
    raise CheckpointError(f"Unknown checkpoint {checkpoint_id!r} in {placement.plan_id}")


def state_at_checkpoint(placement: PlacementPlan, checkpoint_id: str) -> PlacementSlice:
    checkpoint = find_checkpoint(placement, checkpoint_id)
    return PlacementSlice(
        bulk_ops=placement.bulk_ops[: checkpoint.bulk_ops_done],
        discrete=placement.discrete[: checkpoint.discrete_done],
    )


def remaining_after_checkpoint(placement: PlacementPlan, checkpoint_id: str) -> PlacementSlice:
    checkpoint = find_checkpoint(placement, checkpoint_id)
    return PlacementSlice(
        bulk_ops=placement.bulk_ops[checkpoint.bulk_ops_done :],
        discrete=placement.discrete[checkpoint.discrete_done :],
    )


def emission_order(
    bulk_ops: Sequence[BulkRegionOp], discrete: Sequence[DiscretePlacement]
) -> Iterator[Union[BulkRegionOp, DiscretePlacement]]:
    """Yield bulk ops and discrete placements interleaved as they were compiled."""
    cursor = 0
    for op in bulk_ops:
        while cursor < min(op.discrete_before, len(discrete)):
            yield discrete[cursor]
            cursor += 1
        yield op
    yield from discrete[cursor:]


def to_legacy_operations(placement: PlacementPlan) -> list[dict[str, Any]]:
    """Flatten to the ``{op, block, from/to/pos/center/base, ...}`` vocabulary."""
    ops: list[dict[str, Any]] = []
    for op in emission_order(placement.bulk_ops, placement.discrete):
        if isinstance(op, DiscretePlacement):
            ops.append({"op": "set", "block": op.block, "pos": op.pos.to_dict()})
        elif op.command in (BulkCommand.FILL, BulkCommand.WALLS):
            ops.append({"op": op.command.value, "block": op.block, "from": op.start.to_dict(), "to": op.end.to_dict()})
        elif op.command is BulkCommand.SPHERE:
            ops.append({"op": "sphere", "block": op.block, "center": op.center.to_dict(), "radius": op.radius, "hollow": op.hollow})
        elif op.command is BulkCommand.CYLINDER:
            ops.append(
                {
                    "op": "cylinder",
                    "block": op.block,
                    "base": op.base.to_dict(),
                    "radius": op.radius,
                    "height": op.height,
                    "hollow": op.hollow,
                }
            )
        else:
            raise TypeError(f"unsupported bulk command: {op.command!r}")
    return ops
