# reporter.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .model import JobInstance, JobStatus, Run, RunStatus

EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 2,
}


@dataclass
class RunReport:
    run_id: str
    workflow: str
    status: RunStatus
    exit_code: int
    jobs: List[Dict[str, Any]] = field(default_factory=list)
    duration: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for job in self.jobs:
            out[job["status"]] = out.get(job["status"], 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3) if self.duration is not None else None,
            "jobs": list(self.jobs),
        }


def aggregate(statuses: List[JobStatus]) -> RunStatus:
    """failed beats cancelled beats succeeded; skipped instances alone succeed."""
    if any(s is JobStatus.FAILED for s in statuses):
        return RunStatus.FAILED
    if any(s is JobStatus.CANCELLED for s in statuses):
        return RunStatus.CANCELLED
    return RunStatus.SUCCEEDED


def finalize(run: Run) -> RunReport:
    """
    Aggregate a finished run into its report and mark the run terminal.

    Every instance must already be terminal; anything still pending or running
    at this point is recorded as cancelled.
    """
    for inst in run.instances:
        if not inst.is_terminal:
            inst.finish(JobStatus.CANCELLED, inst.reason or "run ended before the job finished")

    if not run.is_terminal:
        run.status = aggregate([i.status for i in run.instances])
        run.finished_at = time.time()

    return _report(run)


def snapshot(run: Run) -> RunReport:
    """Report on a run that may still be in flight; mutates nothing."""
    if run.is_terminal:
        return _report(run)
    return RunReport(
        run_id=run.run_id,
        workflow=run.workflow.name,
        status=run.status,
        exit_code=-1,
        jobs=[instance_dict(i) for i in run.instances],
    )


def _report(run: Run) -> RunReport:
    return RunReport(
        run_id=run.run_id,
        workflow=run.workflow.name,
        status=run.status,
        exit_code=EXIT_CODES[run.status],
        jobs=[instance_dict(i) for i in run.instances],
        duration=(run.finished_at - run.created_at) if run.finished_at else None,
    )


def instance_dict(inst: JobInstance) -> Dict[str, Any]:
    return {
        "id": inst.instance_id,
        "job": inst.job.name,
        "matrix": dict(inst.matrix),
        "status": inst.status.value,
        "reason": inst.reason,
        "steps": [s.to_dict() for s in inst.steps],
    }
