from __future__ import annotations

import itertools
import json
from pathlib import Path

from blockforge.geometry import Point, Vec3
from blockforge.placement import compile_placement
from blockforge.state import STATUS_COMPLETED, STATUS_IN_PROGRESS, BuildStateManager
from conftest import make_plan


def _placement():
    return compile_placement(make_plan(*(Point(f"p{i}", "stone", Vec3(i * 2, 0, 0)) for i in range(5))))


def _sequential_ids():
    counter = itertools.count()
    return lambda: f"20260101T000000{next(counter):06d}-test"


def _manager(tmp_path: Path, **kwargs) -> BuildStateManager:
    kwargs.setdefault("id_factory", _sequential_ids())
    return BuildStateManager(tmp_path / "state", **kwargs)


def test_start_build_writes_record(tmp_path: Path):
    manager = _manager(tmp_path)
    placement = _placement()
    build_id = manager.start_build(placement, Vec3(10, 64, 10), total_steps=3)
    record = json.loads(manager.path_for(build_id).read_text(encoding="utf-8"))
    assert manager.path_for(build_id).name == f"build-{build_id}.json"
    assert record["status"] == STATUS_IN_PROGRESS
    assert record["start_pos"] == {"x": 10, "y": 64, "z": 10}
    assert record["blueprint_summary"]["placement_hash"] == placement.hash
    assert record["blueprint_summary"]["total_steps"] == 3


def test_completed_steps_survive_a_crash(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=4)
    manager.update_progress(placed=3)
    manager.complete_step(0)
    manager.update_progress(placed=2, failed=1)
    manager.complete_step(1)

    restarted = _manager(tmp_path)
    descriptor = restarted.prepare_resume()
    assert descriptor is not None
    assert descriptor.build_id == build_id
    assert descriptor.resume_from_step == 2
    assert descriptor.completed_steps == [0, 1]
    assert descriptor.blocks_placed_so_far == 5
    assert descriptor.blocks_failed_so_far == 1


def test_progress_is_flushed_periodically(tmp_path: Path):
    manager = _manager(tmp_path, save_interval=10)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    manager.update_progress(placed=4)
    assert manager.load_state(build_id)["progress"]["blocks_placed"] == 0
    manager.update_progress(placed=6)
    assert manager.load_state(build_id)["progress"]["blocks_placed"] == 10


def test_terminal_records_are_immutable(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    manager.complete_step(0)
    manager.complete_build()
    manager.update_progress(placed=50)
    manager.complete_step(1)
    manager.fail_build("too late")

    record = manager.load_state(build_id)
    assert record["status"] == STATUS_COMPLETED
    assert record["progress"]["blocks_placed"] == 0
    assert record["progress"]["completed_steps"] == [0]
    assert "failure_reason" not in record
    assert manager.prepare_resume(build_id) is None


def test_fail_build_records_reason(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    manager.fail_build("server went away")
    record = manager.load_state(build_id)
    assert record["status"] == "failed"
    assert record["failure_reason"] == "server went away"


def test_retention_keeps_newest_terminal_records(tmp_path: Path):
    manager = _manager(tmp_path, max_terminal_records=3)
    kept_running = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    finished = []
    for _ in range(5):
        finished.append(manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1))
        manager.complete_build()

    remaining = {summary["build_id"] for summary in manager.list_builds()}
    assert remaining == {kept_running, *finished[-3:]}


def test_list_builds_is_newest_first(tmp_path: Path):
    manager = _manager(tmp_path)
    first = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    second = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    assert [summary["build_id"] for summary in manager.list_builds()] == [second, first]


def test_undo_history_is_bounded_and_persisted(tmp_path: Path):
    manager = _manager(tmp_path, undo_limit=3)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    manager.add_undo_entries({"x": i, "y": 0, "z": 0, "block": "stone"} for i in range(5))
    manager.complete_step(0)
    record = manager.load_state(build_id)
    assert [entry["x"] for entry in record["undo_history"]] == [2, 3, 4]


def test_bulk_op_history(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    manager.add_bulk_op({"id": 0, "command": "fill"})
    manager.complete_step(0)
    record = manager.load_state(build_id)
    assert record["bulk_op_history"] == [{"id": 0, "command": "fill"}]
    assert record["progress"]["bulk_ops"] == 1


def test_unwritable_state_dir_keeps_build_in_memory(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    manager = BuildStateManager(blocker / "state", id_factory=_sequential_ids())
    manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=2)
    manager.complete_step(0)
    assert manager.persist_ok is False
    summary = manager.current_summary()
    assert summary["current_step"] == 1
    assert summary["persisted"] is False
    assert manager.list_builds() == []


def test_delete_state(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=1)
    assert manager.delete_state(build_id) is True
    assert manager.delete_state(build_id) is False
    assert manager.load_state(build_id) is None


def test_current_summary_percent(tmp_path: Path):
    manager = _manager(tmp_path)
    manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=4)
    manager.complete_step(0)
    assert manager.current_summary()["percent"] == 25.0


def test_build_started_mid_plan_marks_earlier_steps_done(tmp_path: Path):
    manager = _manager(tmp_path)
    build_id = manager.start_build(_placement(), Vec3(0, 0, 0), total_steps=4, first_step=2, checkpoint="cp-1")
    record = manager.load_state(build_id)
    assert record["progress"]["current_step"] == 2
    assert record["progress"]["completed_steps"] == [0, 1]
    assert record["blueprint_summary"]["from_checkpoint"] == "cp-1"

    descriptor = _manager(tmp_path).prepare_resume()
    assert descriptor.resume_from_step == 2
    assert descriptor.completed_steps == [0, 1]
