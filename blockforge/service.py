from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .auth import require_token
from .config import BuilderSettings
from .executor import BuildExecutor
from .jobs import BuildQueue
from .models import (
    BuildListResponse,
    BuildRequest,
    CancelResponse,
    CompileOptionsRequest,
    CompileRequest,
    CompileResponse,
    JobListResponse,
    JobResponse,
    ResumeRequest,
)
from .pipeline import CompiledBuild, compile_build, resume_build, run_build
from .placement import CheckpointError, find_checkpoint, to_legacy_operations
from .scene import SceneError
from .state import BuildStateManager, ResumeMismatchError
from .targets import ConsoleTarget, TargetError, WorldTarget

LOG = logging.getLogger("blockforge.service")


def create_target(settings: BuilderSettings) -> WorldTarget:
    return ConsoleTarget.from_settings(settings)


class ActiveBuild:
    """The executor currently owned by the build worker, if any."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executor: Optional[BuildExecutor] = None

    def attach(self, executor: BuildExecutor) -> None:
        with self._lock:
            self._executor = executor

    def detach(self) -> None:
        with self._lock:
            self._executor = None

    def cancel(self) -> bool:
        with self._lock:
            if self._executor is None or not self._executor.is_building:
                return False
            self._executor.cancel()
            return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = BuilderSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    app.state.settings = settings
    app.state.builds = BuildStateManager.from_settings(settings)
    app.state.active = ActiveBuild()
    app.state.jobs = BuildQueue(history_limit=settings.job_history)
    app.state.jobs.start()
    LOG.info("Build service ready (state dir %s)", settings.state_dir)
    try:
        yield
    finally:
        app.state.active.cancel()
        app.state.jobs.stop()


app = FastAPI(title="Blockforge Build Service", lifespan=lifespan)


def get_settings(request: Request) -> BuilderSettings:
    return request.app.state.settings


def get_jobs(request: Request) -> BuildQueue:
    return request.app.state.jobs


def get_builds(request: Request) -> BuildStateManager:
    return request.app.state.builds


def get_active(request: Request) -> ActiveBuild:
    return request.app.state.active


def enqueue_job(jobs: BuildQueue, action: str, func) -> JobResponse:
    record = jobs.enqueue(action, func)
    return JobResponse(job_id=record.id, status=record.status)


def _compile(settings: BuilderSettings, payload: CompileRequest) -> CompiledBuild:
    return compile_build(
        settings,
        scene=payload.scene,
        structures=payload.entries(),
        seed=payload.seed,
        server_version=payload.server_version,
        prefer_bulk=payload.prefer_bulk,
    )


@app.exception_handler(SceneError)
@app.exception_handler(ResumeMismatchError)
@app.exception_handler(CheckpointError)
@app.exception_handler(TargetError)
async def build_error_handler(_: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/plans/compile", response_model=CompileResponse)
def api_compile(
    payload: CompileOptionsRequest,
    _: None = Depends(require_token),
    settings: BuilderSettings = Depends(get_settings),
):
    compiled = _compile(settings, payload)
    operations = to_legacy_operations(compiled.placement) if payload.include_operations else None
    return CompileResponse(**compiled.summary(), operations=operations)


@app.post("/api/builds", response_model=JobResponse)
def api_build(
    payload: BuildRequest,
    _: None = Depends(require_token),
    settings: BuilderSettings = Depends(get_settings),
    jobs: BuildQueue = Depends(get_jobs),
    builds: BuildStateManager = Depends(get_builds),
    active: ActiveBuild = Depends(get_active),
):
    compiled = _compile(settings, payload)
    if payload.checkpoint:
        find_checkpoint(compiled.placement, payload.checkpoint)
    start = payload.start.to_vec()

    def job() -> dict:
        target = create_target(settings)
        try:
            report = run_build(
                settings, target, compiled, start, state=builds, checkpoint=payload.checkpoint, on_executor=active.attach
            )
        finally:
            active.detach()
        return report.to_dict()

    return enqueue_job(jobs, "build.start", job)


@app.post("/api/builds/resume", response_model=JobResponse)
def api_resume(
    payload: ResumeRequest,
    _: None = Depends(require_token),
    settings: BuilderSettings = Depends(get_settings),
    jobs: BuildQueue = Depends(get_jobs),
    builds: BuildStateManager = Depends(get_builds),
    active: ActiveBuild = Depends(get_active),
):
    record = builds.resumable_record(payload.build_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No resumable build")
    compiled = _compile(settings, payload)
    recorded = record.get("blueprint_summary", {}).get("placement_hash")
    if recorded != compiled.placement.hash:
        raise ResumeMismatchError(f"Build {record['build_id']} was recorded for a different placement plan")
    build_id = record["build_id"]

    def job() -> dict:
        target = create_target(settings)
        try:
            report = resume_build(settings, target, compiled, builds, build_id=build_id, on_executor=active.attach)
        finally:
            active.detach()
        if report is None:
            raise RuntimeError(f"Build {build_id} is no longer resumable")
        return report.to_dict()

    return enqueue_job(jobs, "build.resume", job)


@app.post("/api/builds/cancel", response_model=CancelResponse)
async def api_cancel(
    _: None = Depends(require_token),
    builds: BuildStateManager = Depends(get_builds),
    active: ActiveBuild = Depends(get_active),
):
    cancelled = active.cancel()
    return CancelResponse(cancelled=cancelled, build_id=builds.build_id if cancelled else None)


@app.get("/api/builds", response_model=BuildListResponse)
async def api_builds(
    _: None = Depends(require_token),
    builds: BuildStateManager = Depends(get_builds),
):
    return BuildListResponse(builds=builds.list_builds())


@app.get("/api/builds/{build_id}")
async def api_build_details(
    build_id: str,
    _: None = Depends(require_token),
    builds: BuildStateManager = Depends(get_builds),
):
    record = builds.load_state(build_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Build not found")
    record.pop("undo_history", None)
    return record


@app.get("/api/jobs", response_model=JobListResponse)
async def api_jobs(
    _: None = Depends(require_token),
    jobs: BuildQueue = Depends(get_jobs),
):
    return JobListResponse(jobs=[record.to_dict() for record in jobs.list()])


@app.get("/api/jobs/{job_id}")
async def api_job_details(
    job_id: str,
    _: None = Depends(require_token),
    jobs: BuildQueue = Depends(get_jobs),
):
    record = jobs.get(job_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return record.to_dict()
