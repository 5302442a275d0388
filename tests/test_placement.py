from __future__ import annotations

import pytest

from blockforge.config import BuilderSettings
from blockforge.geometry import Box, HollowBox, Line, Point, Sphere, Vec3, box_volume, rasterize
from blockforge.placement import (
    BulkCommand,
    CheckpointError,
    PlacementOptions,
    compile_placement,
    emission_order,
    remaining_after_checkpoint,
    slice_region,
    state_at_checkpoint,
    to_legacy_operations,
)
from conftest import make_plan


def test_large_sphere_becomes_one_bulk_op():
    placement = compile_placement(make_plan(Sphere("s", "stone", Vec3(0, 64, 0), 10)))
    assert len(placement.bulk_ops) == 1
    op = placement.bulk_ops[0]
    assert op.command is BulkCommand.SPHERE
    assert op.estimated_cells == 4189
    assert placement.discrete == ()


def test_small_box_is_placed_discretely():
    placement = compile_placement(make_plan(Box("b", "stone", Vec3(0, 0, 0), Vec3(2, 2, 2))))
    assert placement.bulk_ops == ()
    assert len(placement.discrete) == 27
    assert {(item.x, item.y, item.z) for item in placement.discrete} == {
        (x, y, z) for x in range(3) for y in range(3) for z in range(3)
    }


def test_oversized_box_is_sliced_under_the_cap():
    placement = compile_placement(make_plan(Box("b", "stone", Vec3(0, 0, 0), Vec3(39, 39, 39))))
    assert len(placement.bulk_ops) >= 2
    assert all(op.command is BulkCommand.FILL for op in placement.bulk_ops)
    assert all(op.estimated_cells <= 32768 for op in placement.bulk_ops)
    assert sum(op.estimated_cells for op in placement.bulk_ops) == 64000
    assert placement.stats["sliced_regions"] == len(placement.bulk_ops)


def test_slice_region_partitions_exactly():
    pieces = slice_region(Vec3(0, 0, 0), Vec3(99, 9, 9), 1000)
    assert sum(box_volume(lo, hi) for lo, hi in pieces) == 10000
    assert all(box_volume(lo, hi) <= 1000 for lo, hi in pieces)


def test_oversized_hollow_sphere_falls_back_to_discrete():
    placement = compile_placement(make_plan(Sphere("s", "stone", Vec3(0, 0, 0), 30, hollow=True)))
    assert placement.stats["oversize_fallbacks"] == 1
    assert all(op.command is BulkCommand.FILL for op in placement.bulk_ops)
    assert placement.discrete


def test_discrete_runs_are_merged_into_fills():
    plan = make_plan(Line("row", "stone", Vec3(0, 0, 0), Vec3(14, 0, 0)))
    placement = compile_placement(plan)
    assert len(placement.bulk_ops) == 1
    assert placement.bulk_ops[0].estimated_cells == 15
    assert placement.discrete == ()

    unmerged = compile_placement(plan, PlacementOptions(min_run_length=None))
    assert len(unmerged.discrete) == 15


def test_prefer_bulk_disabled_places_everything_discretely():
    placement = compile_placement(
        make_plan(HollowBox("h", "stone", Vec3(0, 0, 0), Vec3(5, 5, 5))), PlacementOptions(prefer_bulk=False)
    )
    assert placement.bulk_ops == ()
    assert len(placement.discrete) == 216 - 64


def test_layers_are_compiled_in_order():
    plan = make_plan(
        Point("top", "glass", Vec3(0, 5, 0), layer=2),
        Point("bottom", "stone", Vec3(0, 0, 0), layer=0),
        Point("middle", "dirt", Vec3(0, 1, 0), layer=1),
    )
    assert [item.block for item in compile_placement(plan).discrete] == ["stone", "dirt", "glass"]


def test_discrete_batches_hold_one_hundred_placements():
    plan = make_plan(*(Point(f"p{i}", "stone", Vec3(i * 2, 0, 0)) for i in range(250)))
    placement = compile_placement(plan)
    assert [item.batch_id for item in placement.discrete].count(0) == 100
    assert placement.discrete[-1].batch_id == 2


def test_checkpoints_are_prefix_slices():
    plan = make_plan(
        Box("floor", "stone", Vec3(0, 0, 0), Vec3(9, 0, 9)),
        *(Point(f"p{i}", "dirt", Vec3(i * 2, 1, 0)) for i in range(120)),
    )
    placement = compile_placement(plan, PlacementOptions(checkpoint_interval=50))
    assert placement.checkpoints
    assert [cp.id for cp in placement.checkpoints] == [f"cp-{i}" for i in range(len(placement.checkpoints))]
    for checkpoint in placement.checkpoints:
        done = state_at_checkpoint(placement, checkpoint.id)
        rest = remaining_after_checkpoint(placement, checkpoint.id)
        assert done.bulk_ops + rest.bulk_ops == placement.bulk_ops
        assert done.discrete + rest.discrete == placement.discrete
        assert len(done.discrete) == checkpoint.discrete_done
        assert sum(op.estimated_cells for op in done.bulk_ops) + len(done.discrete) == checkpoint.cells_done
    assert placement.bulk_ops[0].checkpoint_after


def test_unknown_checkpoint_raises():
    placement = compile_placement(make_plan(Point("p", "stone", Vec3(0, 0, 0))))
    with pytest.raises(CheckpointError):
        state_at_checkpoint(placement, "cp-7")


def test_placement_hash_is_stable_and_content_based():
    plan = make_plan(Sphere("s", "stone", Vec3(0, 0, 0), 5), Point("p", "dirt", Vec3(9, 9, 9)))
    fast = compile_placement(plan, PlacementOptions(placements_per_second=1000))
    slow = compile_placement(plan, PlacementOptions(placements_per_second=1))
    assert fast.hash == slow.hash
    assert fast.stats["estimated_time"] != slow.stats["estimated_time"]
    other = compile_placement(make_plan(Sphere("s", "stone", Vec3(0, 0, 0), 6)))
    assert other.hash != fast.hash
    assert fast.plan_id == f"plan:{plan.hash[:12]}"


def test_legacy_operations():
    plan = make_plan(Sphere("s", "stone", Vec3(0, 0, 0), 5), Point("p", "dirt", Vec3(9, 9, 9)))
    ops = to_legacy_operations(compile_placement(plan))
    assert ops[0]["op"] == "sphere"
    assert ops[0]["radius"] == 5
    assert ops[-1] == {"op": "set", "block": "dirt", "pos": {"x": 9, "y": 9, "z": 9}}


def test_bulk_op_translation_and_cells():
    placement = compile_placement(make_plan(Box("b", "stone", Vec3(0, 0, 0), Vec3(3, 3, 3))))
    op = placement.bulk_ops[0].translated(Vec3(100, 0, 0))
    assert op.start == Vec3(100, 0, 0)
    assert len(op.cells()) == 64


def test_large_hollow_box_is_split_into_face_fills():
    shell = HollowBox("shell", "stone", Vec3(0, 0, 0), Vec3(39, 39, 39))
    placement = compile_placement(make_plan(shell))
    assert placement.bulk_ops
    assert all(op.command is BulkCommand.FILL for op in placement.bulk_ops)
    assert all(box_volume(op.start, op.end) <= 32768 for op in placement.bulk_ops)
    assert sum(op.estimated_cells for op in placement.bulk_ops) == 9128
    covered = {cell for op in placement.bulk_ops for cell, _ in op.cells()}
    assert covered == {cell for cell, _ in rasterize(shell)}
    assert placement.discrete == ()


def test_small_hollow_box_stays_one_walls_op():
    placement = compile_placement(make_plan(HollowBox("h", "stone", Vec3(0, 0, 0), Vec3(9, 9, 9))))
    assert [op.command for op in placement.bulk_ops] == [BulkCommand.WALLS]


def test_bulk_commands_limit_what_is_emitted():
    sphere = Sphere("s", "stone", Vec3(0, 0, 0), 10)
    placement = compile_placement(make_plan(sphere), PlacementOptions(bulk_commands=(BulkCommand.FILL, BulkCommand.WALLS)))
    assert {op.command for op in placement.bulk_ops} == {BulkCommand.FILL}
    assert placement.stats["oversize_fallbacks"] == 0
    assert sum(op.estimated_cells for op in placement.bulk_ops) + len(placement.discrete) == len(rasterize(sphere))

    walls_only = compile_placement(
        make_plan(HollowBox("h", "stone", Vec3(0, 0, 0), Vec3(9, 9, 9))), PlacementOptions(bulk_commands=(BulkCommand.FILL,))
    )
    assert {op.command for op in walls_only.bulk_ops} == {BulkCommand.FILL}
    assert sum(op.estimated_cells for op in walls_only.bulk_ops) == 1000 - 512


def test_settings_default_to_console_commands(tmp_path):
    options = PlacementOptions.from_settings(BuilderSettings(state_dir=tmp_path))
    assert options.bulk_commands == (BulkCommand.FILL, BulkCommand.WALLS)
    assert options.to_dict()["bulk_commands"] == ["fill", "walls"]


def test_emission_order_interleaves_layers():
    plan = make_plan(
        Point("under", "stone", Vec3(0, 0, 0)),
        Box("cube", "glass", Vec3(0, 0, 0), Vec3(3, 3, 3), layer=1),
        Point("over", "dirt", Vec3(9, 9, 9), layer=2),
    )
    placement = compile_placement(plan)
    assert placement.bulk_ops[0].discrete_before == 1
    ordered = list(emission_order(placement.bulk_ops, placement.discrete))
    assert [item.block for item in ordered] == ["stone", "glass", "dirt"]
    assert [op["op"] for op in to_legacy_operations(placement)] == ["set", "fill", "set"]
