from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..model import EventKind, RunEvent


# -------------------- Requests --------------------

class EventIn(BaseModel):
    kind: EventKind = EventKind.PUSH
    ref: str = "refs/heads/main"
    changed_paths: list[str] = Field(default_factory=list)
    commit: str | None = None
    base_ref: str | None = None

    def to_event(self) -> RunEvent:
        return RunEvent(
            kind=self.kind,
            ref=self.ref,
            changed_paths=tuple(self.changed_paths),
            commit=self.commit,
            base_ref=self.base_ref,
        )


class CreateRunRequest(BaseModel):
    # exactly one of the two definition forms
    definition: dict[str, Any] | None = None
    definition_yaml: str | None = None
    event: EventIn = Field(default_factory=EventIn)
    env: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)


# -------------------- Responses --------------------

class CreateRunResponse(BaseModel):
    triggered: bool
    run_id: str | None = None
    status: str | None = None
    instances: list[str] = Field(default_factory=list)


class StepOut(BaseModel):
    name: str
    status: str
    cause: str | None = None
    exit_code: int | None = None
    message: str | None = None
    continued: bool = False
    duration: float = 0.0
    artifacts: list[str] = Field(default_factory=list)


class InstanceOut(BaseModel):
    id: str
    job: str
    matrix: dict[str, Any] = Field(default_factory=dict)
    status: str
    reason: str | None = None
    steps: list[StepOut] = Field(default_factory=list)


class RunResponse(BaseModel):
    run_id: str
    workflow: str
    status: str
    exit_code: int
    duration: float | None = None
    jobs: list[InstanceOut] = Field(default_factory=list)


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    status: str
    concurrency_group: str | None = None


class ArtifactOut(BaseModel):
    run_id: str
    name: str
    job_instance_id: str
    digest: str
    size: int
    retention_days: int | None = None
    created_at: float = 0.0


class ErrorOut(BaseModel):
    kind: str
    message: str
