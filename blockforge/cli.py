from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from .config import BuilderSettings
from .executor import ProgressEvent
from .geometry import Vec3
from .multi import StructureEntry
from .pipeline import CompiledBuild, compile_build, load_document, resume_build, run_build
from .placement import CheckpointError, to_legacy_operations
from .scene import SceneError
from .state import BuildStateManager, ResumeMismatchError
from .targets import ConsoleTarget, SimulatedWorld, TargetError, WorldTarget

LOG = logging.getLogger("blockforge.cli")


def _structures(path: Optional[str]) -> Optional[list[StructureEntry]]:
    """``[{"scene": {...} | "file.json", "offset": [x, y, z], "seed": n}, ...]``"""
    if not path:
        return None
    data = load_document(path)
    if not isinstance(data, list) or not data:
        raise SceneError(f"{path} must contain a non-empty list of structures")
    base = Path(path).resolve().parent
    entries = []
    for item in data:
        scene = item.get("scene")
        if isinstance(scene, str):
            scene = load_document(base / scene)
        entries.append(StructureEntry(scene=scene, offset=Vec3.of(item.get("offset", [0, 0, 0])), seed=item.get("seed")))
    return entries


def _compile(settings: BuilderSettings, args: argparse.Namespace) -> CompiledBuild:
    structures = _structures(args.structures)
    scene = None if structures else load_document(args.scene) if args.scene else None
    return compile_build(
        settings,
        scene=scene,
        structures=structures,
        seed=args.seed,
        server_version=args.server_version,
        prefer_bulk=False if args.no_bulk else None,
    )


def _target(settings: BuilderSettings, args: argparse.Namespace) -> WorldTarget:
    if args.dry_run:
        return SimulatedWorld(creative=True)
    return ConsoleTarget.from_settings(settings)


def _log_progress(event: ProgressEvent) -> None:
    LOG.info("step %d/%d placed=%d failed=%d", event.step + 1, event.total_steps, event.placed, event.failed)


def _emit(payload: Any, json_out: Optional[str]) -> None:
    text = json.dumps(payload, indent=2, sort_keys=True)
    if json_out:
        out = Path(json_out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text + "\n", encoding="utf-8")
    print(text)


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("scene", nargs="?", default=None, help="Scene JSON file")
    parser.add_argument("--structures", default=None, help="JSON list of {scene, offset, seed} to build together")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--server-version", default=None)
    parser.add_argument("--no-bulk", action="store_true", help="Place every cell individually")
    parser.add_argument("--json-out", default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blockforge", description="Compile and build structures on a Minecraft server.")
    parser.add_argument("--state-dir", default=None, help="Build state directory (default: BLOCKFORGE_STATE_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    compile_cmd = sub.add_parser("compile", help="Compile a scene and print the plan summary (dry run)")
    _add_source_args(compile_cmd)
    compile_cmd.add_argument("--operations", action="store_true", help="Include the flattened operation list")

    build_cmd = sub.add_parser("build", help="Compile and execute a scene")
    _add_source_args(build_cmd)
    build_cmd.add_argument("--start", type=int, nargs=3, metavar=("X", "Y", "Z"), default=(0, 0, 0))
    build_cmd.add_argument("--checkpoint", default=None, help="Only execute what follows this checkpoint id")
    build_cmd.add_argument("--dry-run", action="store_true", help="Build into an in-memory world")

    resume_cmd = sub.add_parser("resume", help="Resume an interrupted build of the same scene")
    _add_source_args(resume_cmd)
    resume_cmd.add_argument("--build-id", default=None, help="Build to resume (default: newest in progress)")
    resume_cmd.add_argument("--dry-run", action="store_true", help="Resume into an in-memory world")

    sub.add_parser("list", help="List recorded builds, newest first")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = BuilderSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    state_dir = Path(args.state_dir).resolve() if args.state_dir else settings.state_dir
    state = BuildStateManager(
        state_dir,
        max_terminal_records=settings.max_terminal_records,
        undo_limit=settings.undo_history_limit,
        save_interval=settings.progress_interval,
    )

    try:
        if args.command == "list":
            _emit(state.list_builds(), None)
            return 0

        compiled = _compile(settings, args)
        if args.command == "compile":
            payload = compiled.summary()
            if args.operations:
                payload["operations"] = to_legacy_operations(compiled.placement)
            _emit(payload, args.json_out)
            return 0

        target = _target(settings, args)
        if args.command == "build":
            report = run_build(
                settings, target, compiled, Vec3(*args.start), state=state, checkpoint=args.checkpoint, on_progress=_log_progress
            )
        else:
            report = resume_build(settings, target, compiled, state, build_id=args.build_id, on_progress=_log_progress)
            if report is None:
                print("No resumable build found", file=sys.stderr)
                return 1
    except (SceneError, CheckpointError, ResumeMismatchError, TargetError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    _emit(report.to_dict(), args.json_out)
    return 1 if report.failed or report.cancelled else 0


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
