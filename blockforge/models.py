from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .multi import StructureEntry
from .scene import Position


class StructureRequest(BaseModel):
    scene: dict[str, Any]
    offset: Position = Field(default_factory=Position)
    seed: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)

    def to_entry(self) -> StructureEntry:
        return StructureEntry(scene=self.scene, offset=self.offset.to_vec(), seed=self.seed)


class CompileRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    scene: Optional[dict[str, Any]] = None
    structures: list[StructureRequest] = Field(default_factory=list)
    seed: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
    server_version: Optional[str] = Field(default=None, pattern=r"^\d+(\.\d+){0,2}$")
    prefer_bulk: Optional[bool] = None

    @model_validator(mode="after")
    def validate_source(self) -> "CompileRequest":
        if (self.scene is None) == (not self.structures):
            raise ValueError("Provide exactly one of 'scene' or 'structures'")
        return self

    def entries(self) -> list[StructureEntry]:
        return [structure.to_entry() for structure in self.structures]


class CompileOptionsRequest(CompileRequest):
    include_operations: bool = False


class BuildRequest(CompileRequest):
    start: Position = Field(default_factory=Position)
    checkpoint: Optional[str] = Field(default=None, pattern=r"^cp-\d+$")


class ResumeRequest(CompileRequest):
    build_id: Optional[str] = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")


JobStatus = Literal["queued", "running", "succeeded", "failed"]


class JobResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobDetailsResponse(BaseModel):
    id: str
    action: str
    status: JobStatus
    started_at: Optional[str]
    finished_at: Optional[str]
    result: Optional[dict[str, Any]]
    error: Optional[str]


class JobListResponse(BaseModel):
    jobs: list[JobDetailsResponse]


class CompileResponse(BaseModel):
    scene_id: str
    seed: int
    plan_hash: str
    stats: dict[str, Any]
    warnings: list[str]
    placement: dict[str, Any]
    placement_stats: dict[str, Any]
    operations: Optional[list[dict[str, Any]]] = None


class BuildListResponse(BaseModel):
    builds: list[dict[str, Any]]


class CancelResponse(BaseModel):
    cancelled: bool
    build_id: Optional[str]
