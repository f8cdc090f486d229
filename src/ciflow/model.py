# model.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import expressions
from .concurrency import CancellationToken
from .expressions import Expression, StepCondition

if TYPE_CHECKING:
    from .dag import JobGraph


def _frozen_map(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


# ----------------------------------------------------------------------
# Statuses
# ----------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "workflow_dispatch"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunStatus.QUEUED, RunStatus.RUNNING)


class FailureCause(str, Enum):
    EXIT_CODE = "exit_code"
    TIMEOUT = "timeout"
    ERROR = "error"
    UNKNOWN_ACTION = "unknown_action"


# ----------------------------------------------------------------------
# Definition (immutable once loaded)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command or action inside a job."""
    name: str
    run: str | None = None
    uses: str | None = None
    condition: StepCondition = StepCondition.SUCCESS
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout_minutes: float | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "with_", _frozen_map(self.with_))
        object.__setattr__(self, "env", _frozen_map(self.env))

    @property
    def command(self) -> str:
        """The opaque executable reference: a shell command or an action name."""
        return self.run if self.run is not None else (self.uses or "")

    def templates(self) -> List[Expression]:
        out = [expressions.parse(self.command)]
        out.extend(expressions.parse(v) for v in self.with_.values())
        out.extend(expressions.parse(v) for v in self.env.values())
        return out


@dataclass(frozen=True)
class MatrixStrategy:
    """Named axes (declaration order kept) plus exclude/include combinations."""
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...]
    exclude: Tuple[Mapping[str, Any], ...] = ()
    include: Tuple[Mapping[str, Any], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "axes", tuple((str(k), tuple(v)) for k, v in self.axes))
        object.__setattr__(self, "exclude", tuple(_frozen_map(e) for e in self.exclude))
        object.__setattr__(self, "include", tuple(_frozen_map(e) for e in self.include))

    @property
    def axis_names(self) -> List[str]:
        return [name for name, _ in self.axes]


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str
    cancel_in_progress: bool = False

    @property
    def template(self) -> Expression:
        return expressions.parse(self.group)


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + optional matrix.

    `needs` names jobs that must reach a terminal status before this one starts.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    matrix: MatrixStrategy | None = None
    concurrency: ConcurrencySpec | None = None
    fail_fast: bool = True
    max_parallel: int | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "env", _frozen_map(self.env))

    @property
    def has_always_step(self) -> bool:
        return any(s.condition is StepCondition.ALWAYS for s in self.steps)


@dataclass(frozen=True)
class EventFilter:
    """Filters for one event kind. `None` means the filter is not declared."""
    branches: Tuple[str, ...] | None = None
    branches_ignore: Tuple[str, ...] | None = None
    paths: Tuple[str, ...] | None = None
    paths_ignore: Tuple[str, ...] | None = None

    @property
    def has_path_filters(self) -> bool:
        return self.paths is not None or self.paths_ignore is not None


@dataclass(frozen=True)
class TriggerRules:
    """Event kind -> filter. An empty rule set accepts every event."""
    events: Mapping[str, EventFilter | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "events", _frozen_map(self.events))


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Tuple[Job, ...]
    graph: "JobGraph"
    triggers: TriggerRules = field(default_factory=TriggerRules)
    concurrency: ConcurrencySpec | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen_map(self.env))

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Runtime
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunEvent:
    """Trigger metadata for one run."""
    kind: EventKind = EventKind.PUSH
    ref: str = "refs/heads/main"
    changed_paths: Tuple[str, ...] = ()
    commit: str | None = None
    base_ref: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind(self.kind))
        object.__setattr__(self, "changed_paths", tuple(self.changed_paths))

    @property
    def branch(self) -> str:
        return _branch_name(self.ref)

    @property
    def base_branch(self) -> str | None:
        return _branch_name(self.base_ref) if self.base_ref else None

    def context(self) -> Dict[str, Any]:
        return {
            "event_name": self.kind.value,
            "ref": self.ref,
            "ref_name": self.branch,
            "sha": self.commit or "",
            "base_ref": self.base_ref or "",
        }


def _branch_name(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass
class StepResult:
    name: str
    status: StepStatus
    cause: FailureCause | None = None
    exit_code: int | None = None
    message: str | None = None
    continued: bool = False
    duration: float = 0.0
    artifacts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "cause": self.cause.value if self.cause else None,
            "exit_code": self.exit_code,
            "message": self.message,
            "continued": self.continued,
            "duration": round(self.duration, 3),
            "artifacts": list(self.artifacts),
        }


@dataclass(eq=False)
class JobInstance:
    """One Job bound to one matrix combination; the unit the Scheduler runs."""
    run_id: str
    job: Job
    matrix: Dict[str, Any]
    index: int
    instance_id: str
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    reason: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def id(self) -> str:
        return self.instance_id

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    def finish(self, status: JobStatus, reason: str | None = None) -> None:
        self.status = status
        if reason is not None:
            self.reason = reason
        self.finished_at = time.time()


@dataclass(eq=False)
class Run:
    """One materialization of a workflow for one event."""
    workflow: WorkflowDefinition
    event: RunEvent
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    instances: List[JobInstance] = field(default_factory=list)
    status: RunStatus = RunStatus.QUEUED
    concurrency_group: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict, repr=False)
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    _listener: Optional[Callable[[str], None]] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def id(self) -> str:
        return self.run_id

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def instance(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.instance_id == instance_id:
                return inst
        raise KeyError(instance_id)

    def instances_of(self, job_name: str) -> List[JobInstance]:
        return [i for i in self.instances if i.job.name == job_name]

    def begin(self, listener: Callable[[str], None]) -> bool:
        """
        Move a queued run to running and register the callback notified on
        cancellation (the Scheduler's event queue).

        Returns False when the run was cancelled before it started.
        """
        with self._lock:
            if self.status is not RunStatus.QUEUED:
                return False
            self.status = RunStatus.RUNNING
            self._listener = listener
            return True

    def detach(self) -> None:
        with self._lock:
            self._listener = None

    def cancel(self, reason: str = "cancelled") -> None:
        """
        Request cooperative cancellation. Safe to call from any thread.

        A run that has not started is finalized on the spot; a running one is
        signalled through its token and the Scheduler's listener.
        """
        with self._lock:
            if self.status.terminal or self.token.cancelled:
                return
            self.token.cancel(reason)
            listener = self._listener
            if self.status is RunStatus.QUEUED:
                for inst in self.instances:
                    if not inst.is_terminal:
                        inst.finish(JobStatus.CANCELLED, reason)
                self.status = RunStatus.CANCELLED
                self.finished_at = time.time()
        if listener is not None:
            listener(reason)

    def context(self) -> Dict[str, Dict[str, Any]]:
        """Binding context for `${{ }}` templates at run level."""
        return {
            "github": {**self.event.context(), "workflow": self.workflow.name, "run_id": self.run_id},
            "event": self.event.context(),
            "workflow": {"name": self.workflow.name},
            "env": {**self.workflow.env, **self.env},
        }

