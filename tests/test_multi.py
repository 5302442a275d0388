from __future__ import annotations

import pytest

from blockforge.geometry import Point, Vec3
from blockforge.multi import StructureEntry, compile_concurrent, merge_plans
from blockforge.scene import SceneError
from conftest import component, make_plan, make_scene


def _entries():
    return [
        StructureEntry(make_scene(component("tower", "box", width=3, height=6, depth=3), scene_id="tower"), seed=1),
        StructureEntry(
            make_scene(component("hut", "room", width=5, height=3, depth=5), scene_id="hut", theme="rustic"),
            offset=Vec3(40, 0, 0),
            seed=2,
        ),
    ]


def test_merge_prefixes_ids_and_applies_offsets():
    first = make_plan(Point("a", "stone", Vec3(1, 1, 1)), scene_id="one")
    second = make_plan(Point("a", "dirt", Vec3(1, 1, 1)), scene_id="two")
    merged = merge_plans([first, second], [Vec3(0, 0, 0), Vec3(10, 0, 5)])
    assert [prim.id for prim in merged.geometry] == ["0/a", "1/a"]
    assert merged.geometry[1].pos == Vec3(11, 1, 6)
    assert merged.scene_id == "one+two"
    assert merged.stats["structures"] == 2
    assert merged.bounds["width"] == 74
    assert merged.hash == merged.compute_hash()


def test_merge_rejects_bad_input():
    with pytest.raises(ValueError):
        merge_plans([], [])
    with pytest.raises(ValueError):
        merge_plans([make_plan()], [])


def test_concurrent_compile_is_deterministic():
    first = compile_concurrent(_entries(), scene_id="village")
    second = compile_concurrent(_entries(), max_workers=1, scene_id="village")
    assert first.hash == second.hash
    assert first.scene_id == "village"
    assert first.theme == "mixed"
    assert {prim.id.split("/", 1)[0] for prim in first.geometry} == {"0", "1"}


def test_concurrent_compile_propagates_scene_errors():
    broken = StructureEntry({"id": "broken", "components": "nope"})
    with pytest.raises(SceneError):
        compile_concurrent([_entries()[0], broken])
    with pytest.raises(ValueError):
        compile_concurrent([])
