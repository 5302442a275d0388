from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from .batching import CellPlacement
from .geometry import Vec3

LOG = logging.getLogger("blockforge.stations")

DEFAULT_REACH = 4.5
STATION_PADDING = 1.0
_DIAGONAL = 0.7


@dataclass(frozen=True)
class Station:
    position: Vec3
    cells: tuple[CellPlacement, ...]


class StationPlanner:
    """Greedy set cover: repeatedly pick the vantage point reaching the most uncovered cells."""

    def __init__(self, reach: float = DEFAULT_REACH) -> None:
        self.reach = reach

    def _candidates(self, cell: CellPlacement, occupied: set[tuple[int, int, int]]) -> list[Vec3]:
        r = self.reach - STATION_PADDING
        d = r * _DIAGONAL
        offsets = ((-r, 0.0), (r, 0.0), (0.0, -r), (0.0, r), (-d, -d), (d, -d), (-d, d), (d, d))
        candidates: list[Vec3] = []
        for dx, dz in offsets:
            candidate = Vec3(math.floor(cell.x + dx), cell.y, math.floor(cell.z + dz))
            if (candidate.x, candidate.y, candidate.z) in occupied:
                continue
            if (candidate.x, candidate.y - 1, candidate.z) in occupied:
                continue
            candidates.append(candidate)
        if not candidates:
            candidates.append(self._on_top(cell, occupied))
        return candidates

    @staticmethod
    def _on_top(cell: CellPlacement, occupied: set[tuple[int, int, int]]) -> Vec3:
        y = cell.y + 1
        while (cell.x, y, cell.z) in occupied:
            y += 1
        return Vec3(cell.x, y, cell.z)

    def _covered(self, station: Vec3, cells: Sequence[CellPlacement], uncovered: Sequence[int]) -> list[int]:
        return [i for i in uncovered if station.distance_to(cells[i].pos) <= self.reach]

    def plan(self, cells: Sequence[CellPlacement]) -> list[Station]:
        occupied = {(cell.x, cell.y, cell.z) for cell in cells}
        uncovered = list(range(len(cells)))
        stations: list[Station] = []
        while uncovered:
            best: Vec3 | None = None
            best_cover: list[int] = []
            for index in uncovered:
                for candidate in self._candidates(cells[index], occupied):
                    cover = self._covered(candidate, cells, uncovered)
                    if len(cover) > len(best_cover):
                        best, best_cover = candidate, cover
            if best is None or not best_cover:
                best = self._on_top(cells[uncovered[0]], occupied)
                best_cover = [uncovered[0]]
            stations.append(Station(position=best, cells=tuple(cells[i] for i in best_cover)))
            taken = set(best_cover)
            uncovered = [i for i in uncovered if i not in taken]
        LOG.debug("Planned %d stations for %d cells", len(stations), len(cells))
        return stations
