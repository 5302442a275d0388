from __future__ import annotations

from dataclasses import replace
from typing import Optional

import pytest

from blockforge.config import BuilderSettings
from blockforge.executor import (
    STRICT_POLICY,
    BuildExecutor,
    PlacementState,
    RateLimiter,
    build_steps,
    plan_steps,
)
from blockforge.geometry import Box, Point, Sphere, Vec3, base_block
from blockforge.placement import (
    BulkCommand,
    PlacementOptions,
    compile_placement,
    remaining_after_checkpoint,
    state_at_checkpoint,
)
from blockforge.plan import compile_plan
from blockforge.state import STATUS_COMPLETED, STATUS_IN_PROGRESS, BuildStateManager, ResumeMismatchError
from blockforge.targets import SimulatedWorld, TargetError
from conftest import component, make_plan, make_scene


class FakeWorld(SimulatedWorld):
    """In-memory world with injectable faults."""

    def __init__(self, *, drop_sets: int = 0, errors: int = 0, crash_after: Optional[int] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.drop_sets = drop_sets
        self.errors = errors
        self.crash_after = crash_after
        self.checks = 0

    def check_block(self, pos, block):
        self.checks += 1
        return super().check_block(pos, block)

    def set_block(self, pos, block):
        if self.crash_after is not None and self.set_calls >= self.crash_after:
            raise ConnectionError("server connection lost")
        if self.errors:
            self.errors -= 1
            self.set_calls += 1
            raise TargetError("Unknown or incomplete command")
        if self.drop_sets:
            self.drop_sets -= 1
            self.set_calls += 1
            return
        super().set_block(pos, block)


class StuckWorld(SimulatedWorld):
    def move_agent(self, pos):
        self.moves.append(pos)


class IgnoredCreativeWorld(StuckWorld):
    """Creative world whose agent never moves and whose out-of-reach placements do nothing."""

    def __init__(self, **kwargs) -> None:
        super().__init__(creative=True, agent=Vec3(0, 0, 0), **kwargs)

    def set_block(self, pos, block):
        if self.agent.distance_to(pos) <= 4.5:
            super().set_block(pos, block)
        else:
            self.set_calls += 1


def _executor(world, settings: BuilderSettings, **kwargs):
    sleeps: list[float] = []
    return BuildExecutor(world, settings, sleep=sleeps.append, **kwargs), sleeps


def _expected_world(placement, origin: Vec3) -> dict:
    expected = {}
    for step in plan_steps(placement):
        if step.bulk_op is not None:
            for cell, block in step.bulk_op.translated(origin).cells():
                expected[cell] = base_block(block)
        for item in step.placements:
            expected[(item.x + origin.x, item.y + origin.y, item.z + origin.z)] = base_block(item.block)
    return {cell: block for cell, block in expected.items() if block != "air"}


def _world_blocks(world: SimulatedWorld) -> dict:
    return {cell: base_block(block) for cell, block in world.blocks.items() if base_block(block) != "air"}


def _house_placement(options: Optional[PlacementOptions] = None):
    scene = make_scene(
        component("hall", "room", width=5, height=3, depth=5, openings=[{"type": "door", "wall": "south"}]),
        component("dome", "sphere", position=(20, 4, 20), radius=3, hollow=True),
        component("wall", "wall", position=(0, 0, 20), width=6, height=2, depth=1),
    )
    return compile_placement(compile_plan(scene, seed=7), options)


def _points(count: int):
    return make_plan(*(Point(f"p{i}", "stone", Vec3(i * 2, 0, 0)) for i in range(count)))


def test_retry_exhaustion_follows_backoff_schedule(settings):
    world = FakeWorld(drop_sets=99)
    executor, sleeps = _executor(world, settings)
    result = executor.place_with_retry(Vec3(0, 0, 0), "stone")
    assert result.state is PlacementState.FAILED
    assert result.attempts == 3
    assert result.error_class == "VerificationMismatch"
    assert sleeps == [0.05, 0.1, 0.2]
    assert world.set_calls == 3


def test_retry_recovers_on_second_attempt(settings):
    world = FakeWorld(drop_sets=1)
    executor, sleeps = _executor(world, settings)
    result = executor.place_with_retry(Vec3(0, 0, 0), "stone")
    assert result.ok
    assert result.attempts == 2
    assert sleeps == [0.05]


def test_target_errors_are_retried_then_reported(settings):
    world = FakeWorld(errors=99)
    executor, sleeps = _executor(world, settings)
    result = executor.place_with_retry(Vec3(0, 0, 0), "stone")
    assert result.state is PlacementState.FAILED
    assert result.error_class == "TargetError"
    assert len(sleeps) == 3


def test_matching_cell_is_not_placed_again(settings):
    world = FakeWorld()
    world.blocks[(0, 0, 0)] = "minecraft:stone"
    executor, sleeps = _executor(world, settings)
    result = executor.place_with_retry(Vec3(0, 0, 0), "stone")
    assert result.ok and result.already_present
    assert world.set_calls == 0
    assert sleeps == []


def test_unloaded_cells_follow_verification_policy(settings):
    lenient, _ = _executor(SimulatedWorld(unloaded={(0, 0, 0)}), settings)
    result = lenient.place_with_retry(Vec3(0, 0, 0), "stone")
    assert result.ok
    assert result.verified is False

    strict, sleeps = _executor(SimulatedWorld(unloaded={(0, 0, 0)}), settings, policy=STRICT_POLICY)
    assert strict.place_with_retry(Vec3(0, 0, 0), "stone").state is PlacementState.FAILED
    assert sleeps == [0.05, 0.1, 0.2]


def test_creative_in_reach_skips_read_back(settings):
    world = FakeWorld(creative=True, drop_sets=99)
    executor, _ = _executor(world, settings)
    result = executor.place_with_retry(Vec3(0, 0, 0), "stone", in_reach=True)
    assert result.ok and not result.verified
    assert world.checks == 1

    out_of_reach = executor.place_with_retry(Vec3(1, 0, 0), "stone", in_reach=False)
    assert out_of_reach.state is PlacementState.FAILED


def test_full_build_matches_placement_plan(settings):
    placement = _house_placement()
    world = SimulatedWorld()
    state = BuildStateManager(settings.state_dir)
    executor, _ = _executor(world, settings, state=state)
    origin = Vec3(100, 64, -50)

    report = executor.execute(placement, origin)

    assert report.failed == 0
    assert not report.cancelled
    assert report.bulk_ops == len(placement.bulk_ops)
    assert report.steps_completed == report.steps_total
    assert _world_blocks(world) == _expected_world(placement, origin)
    assert state.load_state(report.build_id)["status"] == STATUS_COMPLETED


def test_unsupported_bulk_ops_fall_back_to_discrete(settings):
    placement = _house_placement()
    world = SimulatedWorld(bulk_commands=())
    executor, _ = _executor(world, settings)
    report = executor.execute(placement, Vec3(0, 0, 0))
    assert report.fallbacks_used == len(placement.bulk_ops)
    assert report.bulk_ops == 0
    assert report.failed == 0
    assert _world_blocks(world) == _expected_world(placement, Vec3(0, 0, 0))


def test_station_mode_moves_the_agent(settings):
    placement = compile_placement(_points(12), PlacementOptions(min_run_length=None))
    world = SimulatedWorld(agent=Vec3(-5, 0, 0))
    executor, _ = _executor(world, settings)
    report = executor.execute(placement, Vec3(0, 0, 0))
    assert report.stations == len(world.moves) > 0
    assert report.placed == 12


def test_sequential_mode_walks_to_distant_cells(settings):
    placement = compile_placement(_points(12), PlacementOptions(min_run_length=None))
    world = SimulatedWorld(agent=Vec3(0, 0, 0))
    executor, _ = _executor(world, settings, use_stations=False)
    report = executor.execute(placement, Vec3(0, 0, 0))
    assert report.stations == 0
    assert world.moves
    assert report.placed == 12


def test_move_timeout_warns_and_continues(settings):
    settings = replace(settings, move_poll_interval_ms=200, move_timeout_ms=3000)
    executor, sleeps = _executor(StuckWorld(agent=Vec3(0, 0, 0)), settings)
    assert executor.move_to(Vec3(50, 0, 0)) is False
    assert sleeps == [0.2] * 16


def test_duplicate_cells_are_last_write_wins(settings):
    plan = make_plan(Point("a", "stone", Vec3(0, 0, 0)), Point("b", "glass", Vec3(0, 0, 0), layer=1))
    world = SimulatedWorld()
    executor, _ = _executor(world, settings)
    report = executor.execute(compile_placement(plan), Vec3(0, 0, 0))
    assert world.blocks == {(0, 0, 0): "glass"}
    assert report.placed == 1


def test_failed_placements_are_counted_and_reported(settings):
    world = FakeWorld(drop_sets=6)
    executor, _ = _executor(world, settings)
    report = executor.execute(compile_placement(_points(3)), Vec3(0, 0, 0))
    assert report.failed == 2
    assert report.placed == 1
    assert [warning.error_class for warning in report.warnings] == ["VerificationMismatch"] * 2
    assert report.warnings[0].step == 0


def test_progress_events(settings):
    settings = replace(settings, progress_interval=10)
    events = []
    executor, _ = _executor(SimulatedWorld(), settings, on_progress=events.append)
    executor.execute(compile_placement(_points(25)), Vec3(0, 0, 0))
    assert [event.placed for event in events] == [10, 20]


def test_cancel_stops_between_placements_and_resume_finishes(settings):
    settings = replace(settings, progress_interval=5)
    placement = compile_placement(_points(250))
    world = SimulatedWorld()
    state = BuildStateManager(settings.state_dir)
    executor, _ = _executor(world, settings, state=state)
    executor.on_progress = lambda event: executor.cancel()

    report = executor.execute(placement, Vec3(0, 0, 0))
    assert report.cancelled
    assert report.placed == 5
    assert report.skipped == 150
    assert state.load_state(report.build_id)["status"] == STATUS_IN_PROGRESS

    descriptor = BuildStateManager(settings.state_dir).prepare_resume()
    assert descriptor.build_id == report.build_id
    resumed, _ = _executor(world, settings, state=state)
    final = resumed.execute(placement, Vec3(0, 0, 0), resume=descriptor)
    assert not final.cancelled
    assert final.already_present == 5
    assert len(world.blocks) == 250
    assert state.load_state(report.build_id)["status"] == STATUS_COMPLETED


def test_crash_leaves_resumable_state(settings):
    plan = make_plan(
        Box("a", "stone", Vec3(0, 0, 0), Vec3(3, 3, 3)),
        Box("b", "dirt", Vec3(10, 0, 0), Vec3(13, 3, 3)),
        *(Point(f"p{i}", "glass", Vec3(i * 2, 10, 0)) for i in range(5)),
    )
    placement = compile_placement(plan)
    assert len(build_steps(placement.bulk_ops, placement.discrete)) == 3

    state = BuildStateManager(settings.state_dir)
    crashing = FakeWorld(crash_after=0)
    executor, _ = _executor(crashing, settings, state=state)
    with pytest.raises(ConnectionError):
        executor.execute(placement, Vec3(0, 64, 0))
    assert not executor.is_building

    restarted = BuildStateManager(settings.state_dir)
    descriptor = restarted.prepare_resume()
    assert descriptor.resume_from_step == 2
    assert descriptor.completed_steps == [0, 1]
    assert descriptor.start_pos == Vec3(0, 64, 0)

    healthy = SimulatedWorld()
    healthy.blocks.update(crashing.blocks)
    resumed, _ = _executor(healthy, settings, state=restarted)
    report = resumed.execute(placement, Vec3(999, 0, 0), resume=descriptor)
    assert report.resumed_from_step == 2
    assert report.bulk_ops == 0
    assert report.placed == 5
    assert _world_blocks(healthy) == _expected_world(placement, Vec3(0, 64, 0))
    assert restarted.status == STATUS_COMPLETED


def test_resume_rejects_a_different_placement(settings):
    state = BuildStateManager(settings.state_dir)
    executor, _ = _executor(FakeWorld(crash_after=0), settings, state=state)
    with pytest.raises(ConnectionError):
        executor.execute(compile_placement(_points(3)), Vec3(0, 0, 0))
    descriptor = state.prepare_resume()
    with pytest.raises(ResumeMismatchError):
        executor.execute(compile_placement(_points(4)), Vec3(0, 0, 0), resume=descriptor)


def test_execute_from_checkpoint_runs_only_the_suffix(settings):
    placement = compile_placement(_points(120), PlacementOptions(checkpoint_interval=50))
    rest = remaining_after_checkpoint(placement, "cp-0")
    world = SimulatedWorld()
    executor, _ = _executor(world, settings)
    report = executor.execute_from_checkpoint(placement, Vec3(0, 0, 0), "cp-0")
    assert report.placed == len(rest.discrete) == 70
    assert set(world.blocks) == {(item.x, item.y, item.z) for item in rest.discrete}


def test_text_command_targets_are_throttled(settings):
    class ConsoleLike(SimulatedWorld):
        uses_text_commands = True

    executor, _ = _executor(ConsoleLike(), replace(settings, placements_per_second=50))
    assert executor.rate_limiter.min_interval == 0.5
    fast, _ = _executor(SimulatedWorld(), replace(settings, placements_per_second=50))
    assert fast.rate_limiter.min_interval == pytest.approx(0.02)


def test_rate_limiter_waits_out_the_interval():
    ticks = iter([0.0, 0.2, 5.0])
    sleeps: list[float] = []
    limiter = RateLimiter(0.5, clock=lambda: next(ticks), sleep=sleeps.append)
    limiter.wait()
    limiter.wait()
    limiter.wait()
    assert sleeps == [pytest.approx(0.3)]


def test_build_steps_split_bulk_ops_and_batches():
    placement = compile_placement(
        make_plan(Box("a", "stone", Vec3(0, 0, 0), Vec3(3, 3, 3)), *(Point(f"p{i}", "dirt", Vec3(i * 2, 9, 0)) for i in range(150)))
    )
    steps = build_steps(placement.bulk_ops, placement.discrete)
    assert [step.index for step in steps] == [0, 1, 2]
    assert steps[0].bulk_op is not None
    assert [len(step.placements) for step in steps[1:]] == [100, 50]


def test_build_steps_follow_compile_order():
    placement = compile_placement(
        make_plan(
            Point("under", "stone", Vec3(0, 0, 0)),
            Box("cube", "glass", Vec3(0, 0, 0), Vec3(3, 3, 3), layer=1),
            Point("over", "dirt", Vec3(9, 9, 9), layer=2),
        )
    )
    steps = plan_steps(placement)
    assert [step.bulk_op is not None for step in steps] == [False, True, False]
    assert steps[0].placements[0].block == "stone"


def _split_at(placement, checkpoint_id: str, settings, origin: Vec3) -> dict:
    done = state_at_checkpoint(placement, checkpoint_id)
    prefix = replace(placement, bulk_ops=done.bulk_ops, discrete=done.discrete, checkpoints=())
    world = SimulatedWorld()
    _executor(world, settings)[0].execute(prefix, origin)
    _executor(world, settings)[0].execute_from_checkpoint(placement, origin, checkpoint_id)
    return _world_blocks(world)


def test_later_layers_overwrite_earlier_ones_across_checkpoints(settings):
    plan = make_plan(
        Point("under", "stone", Vec3(0, 0, 0)),
        Box("cube", "glass", Vec3(0, 0, 0), Vec3(3, 3, 3), layer=1),
    )
    placement = compile_placement(plan, PlacementOptions(checkpoint_interval=1))
    assert [cp.id for cp in placement.checkpoints] == ["cp-0", "cp-1"]

    full = SimulatedWorld()
    _executor(full, settings)[0].execute(placement, Vec3(0, 0, 0))
    assert full.blocks[(0, 0, 0)] == "glass"
    for checkpoint in placement.checkpoints:
        assert _split_at(placement, checkpoint.id, settings, Vec3(0, 0, 0)) == _world_blocks(full)


def test_every_checkpoint_split_rebuilds_the_same_house(settings):
    placement = _house_placement(PlacementOptions(checkpoint_interval=20))
    origin = Vec3(5, 64, 5)
    full = SimulatedWorld()
    _executor(full, settings)[0].execute(placement, origin)
    assert len(placement.checkpoints) > 2
    for checkpoint in placement.checkpoints:
        assert _split_at(placement, checkpoint.id, settings, origin) == _world_blocks(full)


def test_checkpoint_build_resumes_after_the_checkpoint(settings):
    placement = compile_placement(_points(120), PlacementOptions(checkpoint_interval=50))
    rest = remaining_after_checkpoint(placement, "cp-0")
    crashing = FakeWorld(crash_after=10)
    executor, _ = _executor(crashing, settings, state=BuildStateManager(settings.state_dir))
    with pytest.raises(ConnectionError):
        executor.execute_from_checkpoint(placement, Vec3(0, 0, 0), "cp-0")

    restarted = BuildStateManager(settings.state_dir)
    descriptor = restarted.prepare_resume()
    assert descriptor.resume_from_step == 1
    assert descriptor.completed_steps == [0]
    assert descriptor.blueprint_summary["from_checkpoint"] == "cp-0"

    healthy = SimulatedWorld()
    healthy.blocks.update(crashing.blocks)
    resumed, _ = _executor(healthy, settings, state=restarted)
    report = resumed.execute(placement, Vec3(0, 0, 0), resume=descriptor)
    assert report.placed == 70
    assert report.already_present == 10
    assert set(healthy.blocks) == {(item.x, item.y, item.z) for item in rest.discrete}
    assert restarted.status == STATUS_COMPLETED


def test_station_placements_out_of_reach_are_verified(settings):
    placement = compile_placement(make_plan(*(Point(f"p{i}", "stone", Vec3(40 + i * 2, 0, 0)) for i in range(5))))
    world = IgnoredCreativeWorld()
    executor, _ = _executor(world, settings)
    report = executor.execute(placement, Vec3(0, 0, 0))
    assert report.stations > 0
    assert report.placed == 0
    assert report.failed == 5
    assert world.blocks == {}


def test_rejected_sphere_is_placed_with_fill_runs(settings):
    placement = compile_placement(make_plan(Sphere("s", "stone", Vec3(0, 0, 0), 6)))
    op = placement.bulk_ops[0]
    assert op.command is BulkCommand.SPHERE
    world = SimulatedWorld(bulk_commands=[BulkCommand.FILL])
    executor, _ = _executor(world, settings)
    report = executor.execute(placement, Vec3(0, 64, 0))
    assert report.fallbacks_used == 1
    assert report.failed == 0
    assert world.bulk_calls == report.bulk_ops > 0
    assert world.set_calls < len(op.cells())
    assert _world_blocks(world) == _expected_world(placement, Vec3(0, 64, 0))
