"""Run-length merging of discrete cells and placement ordering.

``optimize`` sorts by (y, z, x) so that cells on the same x-row sit next to
each other; that order only serves run detection. ``placement_order`` is the
order cells are actually placed in: bottom-up, nearest first.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional

from .geometry import Vec3


class CellPlacement(NamedTuple):
    x: int
    y: int
    z: int
    block: str

    @property
    def pos(self) -> Vec3:
        return Vec3(self.x, self.y, self.z)


@dataclass(frozen=True)
class BulkRun:
    start: Vec3
    end: Vec3
    block: str

    @property
    def length(self) -> int:
        return self.end.x - self.start.x + 1

    def cells(self) -> list[CellPlacement]:
        return [CellPlacement(x, self.start.y, self.start.z, self.block) for x in range(self.start.x, self.end.x + 1)]


@dataclass(frozen=True)
class BatchResult:
    bulk_runs: tuple[BulkRun, ...]
    remaining: tuple[CellPlacement, ...]


def _run_key(cell: CellPlacement) -> tuple[int, int, int]:
    return (cell.y, cell.z, cell.x)


def optimize(cells: Iterable[CellPlacement], min_run_length: int) -> BatchResult:
    ordered = sorted(cells, key=_run_key)
    runs: list[BulkRun] = []
    remaining: list[CellPlacement] = []
    i = 0
    while i < len(ordered):
        first = ordered[i]
        j = i + 1
        while j < len(ordered):
            prev, nxt = ordered[j - 1], ordered[j]
            if nxt.block != first.block or nxt.y != first.y or nxt.z != first.z or nxt.x != prev.x + 1:
                break
            j += 1
        if j - i >= min_run_length:
            last = ordered[j - 1]
            runs.append(BulkRun(start=first.pos, end=last.pos, block=first.block))
        else:
            remaining.extend(ordered[i:j])
        i = j
    return BatchResult(bulk_runs=tuple(runs), remaining=tuple(remaining))


def batching_stats(result: BatchResult) -> dict[str, float]:
    merged = sum(run.length for run in result.bulk_runs)
    total = merged + len(result.remaining)
    return {
        "bulk_runs": len(result.bulk_runs),
        "merged_cells": merged,
        "remaining_cells": len(result.remaining),
        "commands_saved": merged - len(result.bulk_runs),
        "merge_ratio": round(merged / total, 4) if total else 0.0,
    }


def placement_order(cells: Iterable[CellPlacement], agent: Optional[Vec3] = None) -> list[CellPlacement]:
    """Ascending y, then distance from ``agent``, then block name."""
    anchor = agent or Vec3(0, 0, 0)

    def key(cell: CellPlacement) -> tuple[int, float, str, int, int]:
        distance = math.sqrt((cell.x - anchor.x) ** 2 + (cell.y - anchor.y) ** 2 + (cell.z - anchor.z) ** 2)
        return (cell.y, round(distance, 1), cell.block, cell.x, cell.z)

    return sorted(cells, key=key)
