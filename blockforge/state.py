"""Durable build progress.

One JSON record per build (``build-<id>.json``). Ids start with a UTC
timestamp, so sorting ids sorts builds chronologically. Only one executor
writes a given record; terminal records are never modified again.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from .geometry import Vec3

if TYPE_CHECKING:
    from .config import BuilderSettings
    from .placement import PlacementPlan

LOG = logging.getLogger("blockforge.state")

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

MAX_TERMINAL_RECORDS = 10
UNDO_HISTORY_LIMIT = 10_000
SAVE_INTERVAL = 10
_FILE_PREFIX = "build-"


class ResumeMismatchError(RuntimeError):
    """Raised when a resume targets a placement plan other than the one recorded."""


@dataclass(frozen=True)
class ResumeDescriptor:
    build_id: str
    start_pos: Vec3
    blueprint_summary: dict[str, Any]
    resume_from_step: int
    completed_steps: list[int]
    blocks_placed_so_far: int
    blocks_failed_so_far: int
    undo_history: list[dict[str, Any]] = field(default_factory=list)
    bulk_op_history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "start_pos": self.start_pos.to_dict(),
            "blueprint_summary": dict(self.blueprint_summary),
            "resume_from_step": self.resume_from_step,
            "completed_steps": list(self.completed_steps),
            "blocks_placed_so_far": self.blocks_placed_so_far,
            "blocks_failed_so_far": self.blocks_failed_so_far,
            "undo_history": len(self.undo_history),
            "bulk_op_history": len(self.bulk_op_history),
        }


def new_build_id() -> str:
    return f"{datetime.now(tz=timezone.utc):%Y%m%dT%H%M%S%f}-{uuid.uuid4().hex[:8]}"


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class BuildStateManager:
    def __init__(
        self,
        state_dir: Path | str,
        *,
        max_terminal_records: int = MAX_TERMINAL_RECORDS,
        undo_limit: int = UNDO_HISTORY_LIMIT,
        save_interval: int = SAVE_INTERVAL,
        id_factory: Callable[[], str] = new_build_id,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.max_terminal_records = max_terminal_records
        self.save_interval = max(1, save_interval)
        self._undo_limit = undo_limit
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._state: Optional[dict[str, Any]] = None
        self._undo: deque[dict[str, Any]] = deque(maxlen=undo_limit)
        self._unsaved = 0
        self.persist_ok = True

    @classmethod
    def from_settings(cls, settings: "BuilderSettings") -> "BuildStateManager":
        return cls(
            settings.state_dir,
            max_terminal_records=settings.max_terminal_records,
            undo_limit=settings.undo_history_limit,
            save_interval=settings.progress_interval,
        )

    @property
    def build_id(self) -> Optional[str]:
        return self._state["build_id"] if self._state else None

    @property
    def status(self) -> Optional[str]:
        return self._state["status"] if self._state else None

    def path_for(self, build_id: str) -> Path:
        return self.state_dir / f"{_FILE_PREFIX}{build_id}.json"

    def _snapshot(self) -> dict[str, Any]:
        assert self._state is not None
        snapshot = json.loads(json.dumps(self._state))
        snapshot["undo_history"] = list(self._undo)
        return snapshot

    def _save(self) -> bool:
        if self._state is None:
            return False
        self._state["last_updated"] = _utcnow()
        path = self.path_for(self._state["build_id"])
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(json.dumps(self._snapshot(), indent=2, ensure_ascii=True), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            if self.persist_ok:
                LOG.warning("Cannot persist build %s (continuing in memory): %s", self._state["build_id"], exc)
            self.persist_ok = False
            return False
        if not self.persist_ok:
            LOG.info("Persistence restored for build %s", self._state["build_id"])
        self.persist_ok = True
        self._unsaved = 0
        return True

    def _mutable(self, action: str) -> bool:
        if self._state is None:
            LOG.warning("Ignoring %s: no active build", action)
            return False
        if self._state["status"] in TERMINAL_STATUSES:
            LOG.warning("Ignoring %s: build %s is %s", action, self._state["build_id"], self._state["status"])
            return False
        return True

    def start_build(
        self,
        placement: "PlacementPlan",
        start_pos: Vec3,
        *,
        total_steps: int,
        first_step: int = 0,
        checkpoint: Optional[str] = None,
    ) -> str:
        """Open a new record; steps before ``first_step`` were placed by an earlier run."""
        with self._lock:
            build_id = self._id_factory()
            now = _utcnow()
            self._undo = deque(maxlen=self._undo_limit)
            self._state = {
                "build_id": build_id,
                "started_at": now,
                "last_updated": now,
                "start_pos": start_pos.to_dict(),
                "blueprint_summary": {
                    **placement.summary(),
                    "total_steps": total_steps,
                    "from_checkpoint": checkpoint,
                    "first_step": first_step,
                },
                "progress": {
                    "current_step": first_step,
                    "blocks_placed": 0,
                    "blocks_failed": 0,
                    "completed_steps": list(range(first_step)),
                    "bulk_ops": 0,
                },
                "bulk_op_history": [],
                "status": STATUS_IN_PROGRESS,
            }
            self._save()
            LOG.info("Started build %s (%d steps, first step %d)", build_id, total_steps, first_step)
            return build_id

    def update_progress(self, placed: int = 0, failed: int = 0) -> None:
        with self._lock:
            if not self._mutable("progress update"):
                return
            progress = self._state["progress"]
            progress["blocks_placed"] += placed
            progress["blocks_failed"] += failed
            self._unsaved += placed + failed
            if self._unsaved >= self.save_interval:
                self._save()

    def complete_step(self, index: int) -> None:
        with self._lock:
            if not self._mutable(f"completion of step {index}"):
                return
            progress = self._state["progress"]
            if index not in progress["completed_steps"]:
                progress["completed_steps"].append(index)
                progress["completed_steps"].sort()
            progress["current_step"] = max(progress["current_step"], index + 1)
            self._save()

    def add_undo_entries(self, entries: Iterable[dict[str, Any]]) -> None:
        with self._lock:
            if self._mutable("undo history"):
                self._undo.extend(entries)

    def add_bulk_op(self, record: dict[str, Any]) -> None:
        with self._lock:
            if not self._mutable("bulk op history"):
                return
            self._state["bulk_op_history"].append(record)
            self._state["progress"]["bulk_ops"] += 1

    def complete_build(self) -> None:
        self._finish(STATUS_COMPLETED, completed_at=_utcnow())

    def fail_build(self, reason: str) -> None:
        self._finish(STATUS_FAILED, failed_at=_utcnow(), failure_reason=reason)

    def _finish(self, status: str, **extra: str) -> None:
        with self._lock:
            if not self._mutable(f"transition to {status}"):
                return
            self._state["status"] = status
            self._state.update(extra)
            self._save()
            LOG.info("Build %s %s", self._state["build_id"], status)
            self.cleanup_old_states()

    def _record_files(self) -> list[Path]:
        if not self.state_dir.is_dir():
            return []
        return sorted(self.state_dir.glob(f"{_FILE_PREFIX}*.json"))

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOG.warning("Unreadable build state %s: %s", path.name, exc)
            return None

    def load_state(self, build_id: str) -> Optional[dict[str, Any]]:
        path = self.path_for(build_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_builds(self) -> list[dict[str, Any]]:
        """Newest first."""
        summaries: list[dict[str, Any]] = []
        for path in reversed(self._record_files()):
            record = self._read(path)
            if record is None:
                continue
            summaries.append(
                {
                    "build_id": record["build_id"],
                    "status": record["status"],
                    "started_at": record.get("started_at"),
                    "last_updated": record.get("last_updated"),
                    "progress": record.get("progress", {}),
                    "blueprint_summary": record.get("blueprint_summary", {}),
                }
            )
        return summaries

    def delete_state(self, build_id: str) -> bool:
        path = self.path_for(build_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOG.warning("Cannot delete build state %s: %s", build_id, exc)
            return False
        return True

    def cleanup_old_states(self) -> int:
        """Drop terminal records beyond the retention cap, oldest first."""
        terminal: list[str] = []
        for path in self._record_files():
            record = self._read(path)
            if record and record.get("status") in TERMINAL_STATUSES:
                terminal.append(record["build_id"])
        terminal.sort()
        excess = terminal[: max(0, len(terminal) - self.max_terminal_records)]
        removed = sum(1 for build_id in excess if self.delete_state(build_id))
        if removed:
            LOG.info("Purged %d old build records", removed)
        return removed

    def resumable_record(self, build_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """The newest (or named) in-progress record, without adopting it."""
        if build_id is not None:
            record = self.load_state(build_id)
            if record is None:
                LOG.warning("No build state for %s", build_id)
                return None
            if record.get("status") != STATUS_IN_PROGRESS:
                LOG.warning("Build %s is %s and cannot be resumed", build_id, record.get("status"))
                return None
            return record
        for path in reversed(self._record_files()):
            candidate = self._read(path)
            if candidate and candidate.get("status") == STATUS_IN_PROGRESS:
                return candidate
        return None

    def prepare_resume(self, build_id: Optional[str] = None) -> Optional[ResumeDescriptor]:
        """Adopt the newest (or named) in-progress record; terminal records are never resumed."""
        with self._lock:
            record = self.resumable_record(build_id)
            if record is None:
                return None

            undo = list(record.get("undo_history", []))
            self._state = {key: value for key, value in record.items() if key != "undo_history"}
            self._undo = deque(undo, maxlen=self._undo_limit)
            self._unsaved = 0
            progress = record["progress"]
            LOG.info("Resuming build %s from step %d", record["build_id"], progress["current_step"])
            return ResumeDescriptor(
                build_id=record["build_id"],
                start_pos=Vec3.of(record["start_pos"]),
                blueprint_summary=dict(record.get("blueprint_summary", {})),
                resume_from_step=int(progress["current_step"]),
                completed_steps=sorted(int(step) for step in progress.get("completed_steps", [])),
                blocks_placed_so_far=int(progress.get("blocks_placed", 0)),
                blocks_failed_so_far=int(progress.get("blocks_failed", 0)),
                undo_history=list(self._undo),
                bulk_op_history=list(record.get("bulk_op_history", [])),
            )

    def current_summary(self) -> Optional[dict[str, Any]]:
        with self._lock:
            if self._state is None:
                return None
            summary = self._state["blueprint_summary"]
            progress = self._state["progress"]
            total = int(summary.get("total_steps", 0))
            return {
                "build_id": self._state["build_id"],
                "status": self._state["status"],
                "current_step": progress["current_step"],
                "total_steps": total,
                "percent": round(100.0 * len(progress["completed_steps"]) / total, 1) if total else 100.0,
                "blocks_placed": progress["blocks_placed"],
                "blocks_failed": progress["blocks_failed"],
                "bulk_ops": progress["bulk_ops"],
                "undo_entries": len(self._undo),
                "persisted": self.persist_ok,
            }
