"""Fault-tolerant execution of a PlacementPlan against a world target.

A build is a list of steps in the order the plan was compiled: one per bulk
op and one per run of discrete placements sharing a batch. Each finished
step is flushed to the state manager, which is what a resumed build starts
from. Placements are strictly sequential; a cleared building
flag stops the build between placements without undoing anything.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .batching import CellPlacement, optimize, placement_order
from .config import BuilderSettings
from .geometry import Vec3
from .placement import (
    DISCRETE_BATCH_SIZE,
    BulkCommand,
    BulkRegionOp,
    CheckpointError,
    DiscretePlacement,
    PlacementPlan,
    emission_order,
    find_checkpoint,
)
from .state import BuildStateManager, ResumeDescriptor, ResumeMismatchError
from .stations import StationPlanner
from .targets import TargetError, WorldTarget

LOG = logging.getLogger("blockforge.executor")


@dataclass(frozen=True)
class VerificationPolicy:
    """Leniencies applied when a placement cannot be verified.

    ``assume_unloaded_success``: a read-back from an unloaded chunk counts as placed.
    ``trust_creative``: in creative mode, an in-reach placement skips read-back.
    """

    assume_unloaded_success: bool = True
    trust_creative: bool = True


STRICT_POLICY = VerificationPolicy(assume_unloaded_success=False, trust_creative=False)


class PlacementState(str, Enum):
    PLACED = "placed"
    FAILED = "failed"


@dataclass(frozen=True)
class PlacementResult:
    state: PlacementState
    attempts: int
    already_present: bool = False
    verified: bool = True
    error_class: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is PlacementState.PLACED


@dataclass(frozen=True)
class BuildWarning:
    step: int
    error_class: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "error_class": self.error_class, "message": self.message}


@dataclass(frozen=True)
class ProgressEvent:
    build_id: Optional[str]
    step: int
    total_steps: int
    placed: int
    failed: int


@dataclass
class BuildReport:
    build_id: Optional[str]
    plan_id: str
    plan_hash: str
    placement_hash: str
    steps_total: int = 0
    steps_completed: int = 0
    resumed_from_step: Optional[int] = None
    placed: int = 0
    failed: int = 0
    skipped: int = 0
    already_present: int = 0
    unverified: int = 0
    bulk_ops: int = 0
    bulk_cells: int = 0
    fallbacks_used: int = 0
    stations: int = 0
    cancelled: bool = False
    duration_s: float = 0.0
    warnings: list[BuildWarning] = field(default_factory=list)

    def warn(self, step: int, error_class: str, message: str) -> None:
        self.warnings.append(BuildWarning(step, error_class, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "plan_id": self.plan_id,
            "plan_hash": self.plan_hash,
            "placement_hash": self.placement_hash,
            "steps_total": self.steps_total,
            "steps_completed": self.steps_completed,
            "resumed_from_step": self.resumed_from_step,
            "placed": self.placed,
            "failed": self.failed,
            "skipped": self.skipped,
            "already_present": self.already_present,
            "unverified": self.unverified,
            "bulk_ops": self.bulk_ops,
            "bulk_cells": self.bulk_cells,
            "fallbacks_used": self.fallbacks_used,
            "stations": self.stations,
            "cancelled": self.cancelled,
            "duration_s": round(self.duration_s, 3),
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


@dataclass(frozen=True)
class BuildStep:
    index: int
    bulk_op: Optional[BulkRegionOp] = None
    placements: tuple[DiscretePlacement, ...] = ()

    @property
    def cell_count(self) -> int:
        return self.bulk_op.estimated_cells if self.bulk_op else len(self.placements)


def build_steps(
    bulk_ops: Sequence[BulkRegionOp],
    discrete: Sequence[DiscretePlacement],
    cuts: Sequence[int] = (),
) -> list[BuildStep]:
    """Split a plan into steps, keeping the order it was compiled in.

    A discrete batch is broken wherever a bulk op was emitted and at every
    discrete index in ``cuts``, so checkpoints always fall between steps.
    """
    cut_at = set(cuts)
    steps: list[BuildStep] = []
    batch: list[DiscretePlacement] = []
    position = 0
    for item in emission_order(bulk_ops, discrete):
        if isinstance(item, BulkRegionOp):
            if batch:
                steps.append(BuildStep(index=len(steps), placements=tuple(batch)))
                batch = []
            steps.append(BuildStep(index=len(steps), bulk_op=item))
            continue
        if batch and (item.batch_id != batch[-1].batch_id or position in cut_at):
            steps.append(BuildStep(index=len(steps), placements=tuple(batch)))
            batch = []
        batch.append(item)
        position += 1
    if batch:
        steps.append(BuildStep(index=len(steps), placements=tuple(batch)))
    return steps


def plan_steps(placement: PlacementPlan) -> list[BuildStep]:
    return build_steps(placement.bulk_ops, placement.discrete, [cp.discrete_done for cp in placement.checkpoints])


def step_after_checkpoint(steps: Sequence[BuildStep], placement: PlacementPlan, checkpoint_id: str) -> int:
    """Index of the first step not covered by ``checkpoint_id``."""
    checkpoint = find_checkpoint(placement, checkpoint_id)
    bulk_done = discrete_done = 0
    for step in steps:
        if step.bulk_op is not None:
            bulk_done += 1
        else:
            discrete_done += len(step.placements)
        if (bulk_done, discrete_done) == (checkpoint.bulk_ops_done, checkpoint.discrete_done):
            return step.index + 1
    raise CheckpointError(f"Checkpoint {checkpoint_id!r} does not fall between steps of {placement.plan_id}")


class RateLimiter:
    def __init__(self, min_interval: float, clock: Callable[[], float], sleep: Callable[[float], None]) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    def wait(self) -> None:
        now = self._clock()
        if self._last is not None and self.min_interval > 0:
            remaining = self._last + self.min_interval - now
            if remaining > 0:
                self._sleep(remaining)
                now += remaining
        self._last = now


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class BuildExecutor:
    def __init__(
        self,
        target: WorldTarget,
        settings: BuilderSettings,
        *,
        state: Optional[BuildStateManager] = None,
        policy: VerificationPolicy = VerificationPolicy(),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        use_stations: bool = True,
    ) -> None:
        self.target = target
        self.settings = settings
        self.state = state
        self.policy = policy
        self.on_progress = on_progress
        self.use_stations = use_stations
        self._sleep_fn = sleep
        self._building = threading.Event()
        self._placements_seen = 0
        self.planner = StationPlanner(settings.reach)

        interval = 1.0 / settings.placements_per_second if settings.placements_per_second > 0 else 0.0
        if target.uses_text_commands:
            interval = max(interval, settings.text_command_min_delay_ms / 1000.0)
        self.rate_limiter = RateLimiter(interval, clock, sleep)

    @property
    def is_building(self) -> bool:
        return self._building.is_set()

    def cancel(self) -> None:
        if self._building.is_set():
            LOG.info("Cancellation requested; stopping after the current placement")
        self._building.clear()

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep_fn(seconds)

    def place_with_retry(self, pos: Vec3, block: str, *, in_reach: bool = True) -> PlacementResult:
        """Place one cell, verifying by read-back; retried with backoff until the budget runs out."""
        delays = self.settings.retry_delays_ms
        attempts = max(1, len(delays))
        error_class = "VerificationMismatch"
        message = f"{block} not observed at {pos.x},{pos.y},{pos.z}"
        for attempt in range(1, attempts + 1):
            try:
                if self.target.check_block(pos, block):
                    return PlacementResult(PlacementState.PLACED, attempt, already_present=True)
                self.target.set_block(pos, block)
                if in_reach and self.policy.trust_creative and self.target.is_creative():
                    return PlacementResult(PlacementState.PLACED, attempt, verified=False)
                self._sleep(self.settings.settle_delay_ms / 1000.0)
                observed = self.target.check_block(pos, block)
                if observed is None and self.policy.assume_unloaded_success:
                    LOG.debug("Cell %s is unloaded; assuming %s was placed", pos, block)
                    return PlacementResult(PlacementState.PLACED, attempt, verified=False)
                if observed:
                    return PlacementResult(PlacementState.PLACED, attempt)
                error_class = "VerificationMismatch"
                message = f"{block} not observed at {pos.x},{pos.y},{pos.z}"
            except TargetError as exc:
                error_class = type(exc).__name__
                message = str(exc)
            delay = delays[attempt - 1] / 1000.0 if attempt - 1 < len(delays) else 0.0
            LOG.debug("Attempt %d/%d for %s at %s failed (%s); backing off %.3fs", attempt, attempts, block, pos, message, delay)
            self._sleep(delay)
        return PlacementResult(PlacementState.FAILED, attempts, error_class=error_class, error=message)

    def move_to(self, pos: Vec3) -> bool:
        """Move the agent and poll until it arrives; a timeout only logs a warning."""
        try:
            self.target.move_agent(pos)
        except TargetError as exc:
            LOG.warning("Move to %s failed: %s; continuing from current position", pos, exc)
            return False
        poll = self.settings.move_poll_interval_ms / 1000.0
        polls = max(1, math.ceil(self.settings.move_timeout_ms / max(self.settings.move_poll_interval_ms, 1)))
        for _ in range(polls + 1):
            current = self.target.agent_position()
            if current is not None and current.distance_to(pos) <= self.settings.move_tolerance:
                return True
            self._sleep(poll)
        LOG.warning("Agent did not reach %s within %dms; continuing", pos, self.settings.move_timeout_ms)
        return False

    def execute(
        self,
        placement: PlacementPlan,
        start_pos: Vec3,
        *,
        resume: Optional[ResumeDescriptor] = None,
    ) -> BuildReport:
        if resume is not None:
            recorded = resume.blueprint_summary.get("placement_hash")
            if recorded != placement.hash:
                raise ResumeMismatchError(
                    f"Build {resume.build_id} was recorded for placement {recorded}, not {placement.hash}"
                )
            start_pos = resume.start_pos
        return self._run(placement, plan_steps(placement), start_pos, resume)

    def execute_from_checkpoint(self, placement: PlacementPlan, start_pos: Vec3, checkpoint_id: str) -> BuildReport:
        steps = plan_steps(placement)
        first_step = step_after_checkpoint(steps, placement, checkpoint_id)
        LOG.info("Executing %s from checkpoint %s (step %d)", placement.plan_id, checkpoint_id, first_step)
        return self._run(placement, steps, start_pos, None, first_step=first_step, checkpoint=checkpoint_id)

    def _run(
        self,
        placement: PlacementPlan,
        steps: list[BuildStep],
        origin: Vec3,
        resume: Optional[ResumeDescriptor],
        *,
        first_step: int = 0,
        checkpoint: Optional[str] = None,
    ) -> BuildReport:
        completed: set[int] = set()
        if resume is not None:
            build_id: Optional[str] = resume.build_id
            first_step = resume.resume_from_step
            completed = set(resume.completed_steps)
        elif self.state is not None:
            build_id = self.state.start_build(
                placement, origin, total_steps=len(steps), first_step=first_step, checkpoint=checkpoint
            )
        else:
            build_id = None

        report = BuildReport(
            build_id=build_id,
            plan_id=placement.plan_id,
            plan_hash=placement.plan_hash,
            placement_hash=placement.hash,
            steps_total=len(steps),
            resumed_from_step=first_step if resume is not None else None,
        )
        started = time.monotonic()
        self._placements_seen = 0
        self._building.set()
        LOG.info("Build %s: %d steps from %s (start step %d)", build_id, len(steps), origin, first_step)
        try:
            for step in steps:
                if step.index < first_step or step.index in completed:
                    continue
                if not self.is_building:
                    report.cancelled = True
                    report.skipped += step.cell_count
                    continue
                if step.bulk_op is not None:
                    finished = self._run_bulk_step(step, origin, report)
                else:
                    cells = [CellPlacement(p.x + origin.x, p.y + origin.y, p.z + origin.z, p.block) for p in step.placements]
                    finished = self._place_cells(step.index, cells, origin, report)
                if not finished:
                    report.cancelled = True
                    continue
                report.steps_completed += 1
                if self.state is not None:
                    self.state.complete_step(step.index)
        finally:
            self._building.clear()
            report.duration_s = time.monotonic() - started

        if report.cancelled:
            LOG.info("Build %s cancelled after %d placements; state kept for resume", build_id, report.placed)
        elif self.state is not None:
            self.state.complete_build()
        LOG.info(
            "Build %s done: placed=%d failed=%d skipped=%d bulk=%d fallbacks=%d warnings=%d",
            build_id,
            report.placed,
            report.failed,
            report.skipped,
            report.bulk_ops,
            report.fallbacks_used,
            len(report.warnings),
        )
        return report

    def _run_bulk_step(self, step: BuildStep, origin: Vec3, report: BuildReport) -> bool:
        op = step.bulk_op.translated(origin)
        try:
            applied = self.target.run_bulk(op)
        except TargetError as exc:
            report.warn(step.index, type(exc).__name__, str(exc))
            LOG.warning("Bulk op %d (%s) failed: %s", op.id, op.command.value, exc)
            applied = False
        if applied:
            report.bulk_ops += 1
            report.bulk_cells += op.estimated_cells
            if self.state is not None:
                self.state.add_bulk_op({**op.to_dict(), "step": step.index, "at": _utcnow()})
            return True
        report.fallbacks_used += 1
        LOG.info("Bulk op %d (%s) rejected; placing it as fill runs and single cells", op.id, op.command.value)
        cells = [CellPlacement(x, y, z, block) for (x, y, z), block in op.cells()]
        leftovers = self._fill_runs(step.index, op, cells, report) if op.command is not BulkCommand.FILL else cells
        return self._place_cells(step.index, leftovers, origin, report)

    def _fill_runs(
        self, step_index: int, op: BulkRegionOp, cells: list[CellPlacement], report: BuildReport
    ) -> list[CellPlacement]:
        """Issue a fill per straight run of ``cells``; returns what still needs single placements."""
        if not self.settings.min_run_length:
            return cells
        result = optimize(cells, self.settings.min_run_length)
        leftovers = list(result.remaining)
        for run in result.bulk_runs:
            fill = BulkRegionOp(
                op.id, BulkCommand.FILL, run.block, start=run.start, end=run.end,
                estimated_cells=run.length, source=op.source,
            )
            try:
                applied = self.target.run_bulk(fill)
            except TargetError as exc:
                report.warn(step_index, type(exc).__name__, str(exc))
                applied = False
            if applied:
                report.bulk_ops += 1
                report.bulk_cells += run.length
                if self.state is not None:
                    self.state.add_bulk_op({**fill.to_dict(), "step": step_index, "at": _utcnow()})
            else:
                leftovers.extend(run.cells())
        LOG.debug("Bulk op %d: %d fill runs, %d single cells", op.id, len(result.bulk_runs), len(leftovers))
        return leftovers

    def _place_cells(self, step_index: int, cells: list[CellPlacement], origin: Vec3, report: BuildReport) -> bool:
        latest: dict[tuple[int, int, int], CellPlacement] = {}
        for cell in cells:
            latest[(cell.x, cell.y, cell.z)] = cell
        unique = list(latest.values())

        agent = self.target.agent_position()
        if agent is None:
            for cell in placement_order(unique, origin):
                if not self._place_one(step_index, cell, True, report):
                    return False
            return True

        if self.use_stations:
            ordered = placement_order(unique, agent)
            for offset in range(0, len(ordered), DISCRETE_BATCH_SIZE):
                for station in self.planner.plan(ordered[offset : offset + DISCRETE_BATCH_SIZE]):
                    if not self.is_building:
                        return False
                    self.move_to(station.position)
                    report.stations += 1
                    current = self.target.agent_position() or station.position
                    for cell in placement_order(station.cells, station.position):
                        in_reach = current.distance_to(cell.pos) <= self.settings.reach
                        if not self._place_one(step_index, cell, in_reach, report):
                            return False
            return True

        for cell in placement_order(unique, agent):
            current = self.target.agent_position() or agent
            if current.distance_to(cell.pos) > self.settings.reach:
                self.move_to(Vec3(cell.x, cell.y, cell.z - 1))
                current = self.target.agent_position() or current
            in_reach = current.distance_to(cell.pos) <= self.settings.reach
            if not self._place_one(step_index, cell, in_reach, report):
                return False
        return True

    def _place_one(self, step_index: int, cell: CellPlacement, in_reach: bool, report: BuildReport) -> bool:
        if not self.is_building:
            return False
        self.rate_limiter.wait()
        result = self.place_with_retry(cell.pos, cell.block, in_reach=in_reach)
        if result.ok:
            report.placed += 1
            report.already_present += int(result.already_present)
            report.unverified += int(not result.verified)
            if self.state is not None:
                self.state.add_undo_entries([{"x": cell.x, "y": cell.y, "z": cell.z, "block": cell.block}])
                self.state.update_progress(placed=1)
        else:
            report.failed += 1
            report.warn(step_index, result.error_class or "PlacementFailed", result.error or "placement failed")
            if self.state is not None:
                self.state.update_progress(failed=1)

        self._placements_seen += 1
        if self.on_progress is not None and self._placements_seen % max(1, self.settings.progress_interval) == 0:
            self.on_progress(ProgressEvent(report.build_id, step_index, report.steps_total, report.placed, report.failed))
        return True
