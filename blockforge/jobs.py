from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

LOG = logging.getLogger("blockforge.jobs")

JobCallable = Callable[[], dict[str, Any]]


@dataclass
class JobRecord:
    id: str
    action: str
    status: str = "queued"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "error": self.error,
        }


@dataclass
class _QueuedJob:
    record: JobRecord
    fn: JobCallable = field(repr=False)


class BuildQueue:
    """One worker thread, so at most one build touches the world at a time."""

    def __init__(self, history_limit: int = 50) -> None:
        self._history_limit = history_limit
        self._queue: "queue.Queue[Optional[_QueuedJob]]" = queue.Queue()
        self._records: OrderedDict[str, JobRecord] = OrderedDict()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._worker_loop, name="blockforge-builder", daemon=True)
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        self._queue.put(None)
        self._thread.join(timeout=5)
        self._started = False

    def enqueue(self, action: str, fn: JobCallable) -> JobRecord:
        record = JobRecord(id=str(uuid.uuid4()), action=action)
        with self._lock:
            self._records[record.id] = record
            self._records.move_to_end(record.id)
            while len(self._records) > self._history_limit:
                self._records.popitem(last=False)
        self._queue.put(_QueuedJob(record=record, fn=fn))
        LOG.info("Queued %s job %s", action, record.id)
        return self._copy(record)

    def list(self) -> list[JobRecord]:
        with self._lock:
            return list(reversed([self._copy(record) for record in self._records.values()]))

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._records.get(job_id)
            return self._copy(record) if record else None

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                return

            self._update(item.record.id, status="running", started_at=self._utcnow())
            try:
                result = item.fn()
            except Exception as exc:  # noqa: BLE001
                LOG.exception("Job %s (%s) failed", item.record.id, item.record.action)
                self._update(item.record.id, status="failed", error=f"{type(exc).__name__}: {exc}", finished_at=self._utcnow())
            else:
                self._update(item.record.id, status="succeeded", result=result, finished_at=self._utcnow())
            finally:
                self._queue.task_done()

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return
            for name, value in changes.items():
                setattr(record, name, value)

    @staticmethod
    def _utcnow() -> str:
        return datetime.now(tz=timezone.utc).isoformat()

    @staticmethod
    def _copy(record: JobRecord) -> JobRecord:
        return JobRecord(
            id=record.id,
            action=record.action,
            status=record.status,
            started_at=record.started_at,
            finished_at=record.finished_at,
            result=dict(record.result) if record.result is not None else None,
            error=record.error,
        )
