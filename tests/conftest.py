from __future__ import annotations

import importlib
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from blockforge.config import BuilderSettings  # noqa: E402
from blockforge.plan import BuildPlan  # noqa: E402


def make_scene(*components, scene_id: str = "test-scene", seed=None, detail_passes=(), theme: str = "default", palette=None) -> dict:
    scene = {
        "id": scene_id,
        "bounds": {"width": 32, "height": 32, "depth": 32},
        "style": {"theme": theme, "palette": dict(palette or {})},
        "components": list(components),
        "detail_passes": list(detail_passes),
    }
    if seed is not None:
        scene["seed"] = seed
    return scene


def component(node_id: str, kind: str, position=(0, 0, 0), children=(), materials=None, **params) -> dict:
    x, y, z = position
    return {
        "id": node_id,
        "type": kind,
        "transform": {"position": {"x": x, "y": y, "z": z}},
        "params": params,
        "materials": dict(materials or {}),
        "children": list(children),
    }


def make_plan(*geometry, scene_id: str = "plan") -> BuildPlan:
    plan = BuildPlan(
        scene_id=scene_id,
        seed=1,
        bounds={"width": 64, "height": 64, "depth": 64},
        theme="default",
        server_version="1.21.1",
        palette={},
        geometry=tuple(geometry),
        stats={},
    )
    return replace(plan, hash=plan.compute_hash())


@pytest.fixture()
def settings(tmp_path: Path) -> BuilderSettings:
    return BuilderSettings(
        state_dir=tmp_path / "state",
        placements_per_second=0,
        settle_delay_ms=0,
        move_poll_interval_ms=0,
    )


@pytest.fixture()
def app_module(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("BLOCKFORGE_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("BLOCKFORGE_PLACEMENTS_PER_SECOND", "0")
    monkeypatch.setenv("BLOCKFORGE_SETTLE_DELAY_MS", "0")
    monkeypatch.setenv("BLOCKFORGE_RETRY_DELAYS_MS", "0,0,0")
    monkeypatch.setenv("BLOCKFORGE_JOB_HISTORY", "10")
    monkeypatch.delenv("BLOCKFORGE_API_TOKEN", raising=False)

    if "blockforge.service" in sys.modules:
        module = importlib.reload(sys.modules["blockforge.service"])
    else:
        module = importlib.import_module("blockforge.service")
    return module


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
