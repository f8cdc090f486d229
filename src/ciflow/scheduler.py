"""Dependency-ordered, event-driven dispatch of a Run's JobInstances.

Worker threads execute instances and post a completion event to a queue;
the thread calling ``Scheduler.run`` is the only one that moves instances out
of the pending set. Run cancellation posts to the same queue, so the loop
never has to poll.
"""

from __future__ import annotations

import logging
import queue
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from . import expressions
from .concurrency import ConcurrencyGovernor
from .executor import StepExecutor
from .model import JobInstance, JobStatus, Run

logger = logging.getLogger(__name__)


class _Readiness(str, Enum):
    WAIT = "wait"
    READY = "ready"
    DEGRADED = "degraded"  # a need failed but the job has an `always` step
    SKIP = "skip"
    CANCEL = "cancel"


class Scheduler:
    def __init__(
        self,
        executor: StepExecutor,
        *,
        max_parallel: int | None = None,
        governor: ConcurrencyGovernor | None = None,
    ):
        self.executor = executor
        self.max_parallel = max_parallel
        self.governor = governor or ConcurrencyGovernor()

    def run(self, run: Run) -> Run:
        """
        Drive every instance of `run` to a terminal status.

        Returns once nothing is pending or running. Does not set the run's
        final status; see ``reporter.finalize``.
        """
        events: "queue.Queue[Tuple[str, object]]" = queue.Queue()
        if not run.begin(lambda reason: events.put(("cancel", reason))):
            logger.info("run %s was cancelled before it started", run.run_id)
            return run

        try:
            _RunLoop(self, run, events).drive()
        finally:
            run.detach()
        return run


class _RunLoop:
    """
    State for one `Scheduler.run` call.

    Instances are grouped by their job's index in the workflow graph. A job's
    readiness only changes when one of its dependencies settles, so after the
    first pass only `graph.dependents` of a settled job are re-evaluated.
    """

    def __init__(self, scheduler: Scheduler, run: Run, events: queue.Queue):
        self.scheduler = scheduler
        self.run = run
        self.events = events
        self.graph = run.workflow.graph
        self.by_job: List[List[JobInstance]] = [[] for _ in self.graph.names]
        self.job_of: Dict[JobInstance, int] = {}
        positions = {name: idx for idx, name in enumerate(self.graph.names)}
        for instance in run.instances:
            idx = positions[instance.job.name]
            self.by_job[idx].append(instance)
            self.job_of[instance] = idx

        self.pending: List[JobInstance] = [i for i in run.instances if i.status is JobStatus.PENDING]
        self.ready: Dict[JobInstance, bool] = {}  # needs settled, waiting for a slot -> degraded
        self.dirty: Set[int] = set(range(len(self.graph.names)))
        self.running: Dict[str, JobInstance] = {}
        self.groups: Dict[str, str] = {}  # instance id -> job-level concurrency group
        self.capacity = scheduler.max_parallel or max(1, len(self.pending))

    def drive(self) -> None:
        with ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="ciflow") as pool:
            while True:
                if self.run.token.cancelled:
                    self._cancel_pending(self.run.token.reason or "run cancelled")

                self._settle()
                self._fill(pool)

                if not self.running:
                    if self.pending:
                        names = [i.instance_id for i in self.pending]
                        raise RuntimeError(f"scheduler stalled with pending instances: {names}")
                    return

                kind, payload = self.events.get()
                if kind == "done":
                    instance, future = payload  # type: ignore[misc]
                    self._complete(instance, future)

    # ------------------------------------------------------------------
    # Readiness + dispatch
    # ------------------------------------------------------------------

    def _settle(self) -> None:
        # skipping/cancelling a job marks its dependents dirty, so drain
        while self.dirty:
            idx = min(self.dirty)
            self.dirty.discard(idx)
            waiting = [i for i in self.by_job[idx] if i in self.pending and i not in self.ready]
            if not waiting:
                continue

            state, reason = self._readiness(idx)
            if state is _Readiness.WAIT:
                continue
            for instance in waiting:
                if state is _Readiness.SKIP:
                    self._resolve(instance, JobStatus.SKIPPED, reason)
                elif state is _Readiness.CANCEL:
                    self._resolve(instance, JobStatus.CANCELLED, reason)
                else:
                    self.ready[instance] = state is _Readiness.DEGRADED

    def _readiness(self, idx: int) -> Tuple[_Readiness, Optional[str]]:
        upstream = [i for dep in self.graph.dependencies[idx] for i in self.by_job[dep]]
        if any(not i.is_terminal for i in upstream):
            return _Readiness.WAIT, None

        bad = [i for i in upstream if i.status in (JobStatus.FAILED, JobStatus.SKIPPED)]
        if bad:
            reason = f"needed job '{bad[0].instance_id}' {bad[0].status.value}"
            if self.run.workflow.jobs[idx].has_always_step:
                return _Readiness.DEGRADED, reason
            return _Readiness.SKIP, reason

        cancelled = [i for i in upstream if i.status is JobStatus.CANCELLED]
        if cancelled:
            return _Readiness.CANCEL, f"needed job '{cancelled[0].instance_id}' cancelled"

        return _Readiness.READY, None

    def _fill(self, pool: ThreadPoolExecutor) -> None:
        for instance, degraded in list(self.ready.items()):
            if len(self.running) >= self.capacity:
                return
            if self._has_slot(instance):
                self._dispatch(pool, instance, degraded=degraded)

    def _has_slot(self, instance: JobInstance) -> bool:
        limit = instance.job.max_parallel
        if limit is None:
            return True
        idx = self.job_of[instance]
        same_job = sum(1 for i in self.running.values() if self.job_of[i] == idx)
        return same_job < limit

    def _dispatch(self, pool: ThreadPoolExecutor, instance: JobInstance, *, degraded: bool) -> None:
        self.pending.remove(instance)
        del self.ready[instance]
        self._admit_job_group(instance)
        self.running[instance.instance_id] = instance

        if degraded:
            logger.info("[%s] starting with failed needs; only 'always' steps run", instance.instance_id)
        else:
            logger.debug("[%s] dispatched", instance.instance_id)

        future = pool.submit(self.scheduler.executor.execute, instance, self.run, degraded)
        future.add_done_callback(lambda f, inst=instance: self.events.put(("done", (inst, f))))

    def _admit_job_group(self, instance: JobInstance) -> None:
        spec = instance.job.concurrency
        if spec is None:
            return
        context = self.run.context()
        context["matrix"] = dict(instance.matrix)
        context["job"] = {"name": instance.job.name, "id": instance.instance_id}
        group = expressions.parse(spec.group).render(context)
        self.scheduler.governor.admit(group, instance, cancel_in_progress=spec.cancel_in_progress)
        self.groups[instance.instance_id] = group

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _complete(self, instance: JobInstance, future: Future) -> None:
        self.running.pop(instance.instance_id, None)

        error = future.exception()
        if error is not None:
            logger.error("[%s] executor raised: %s", instance.instance_id, error, exc_info=error)
            instance.finish(JobStatus.FAILED, f"executor error: {error}")

        group = self.groups.pop(instance.instance_id, None)
        if group is not None:
            self.scheduler.governor.release(group, instance)

        if instance.status is JobStatus.FAILED and instance.job.fail_fast and instance.job.matrix:
            self._fail_fast(instance)
        self.dirty.update(self.graph.dependents[self.job_of[instance]])

    def _fail_fast(self, failed: JobInstance) -> None:
        reason = f"fail-fast: '{failed.instance_id}' failed"
        for sibling in self.by_job[self.job_of[failed]]:
            if sibling is failed or sibling.is_terminal:
                continue
            if sibling in self.pending:
                self._resolve(sibling, JobStatus.CANCELLED, reason)
            elif sibling.instance_id in self.running:
                sibling.cancel(reason)

    def _cancel_pending(self, reason: str) -> None:
        for instance in list(self.pending):
            self._resolve(instance, JobStatus.CANCELLED, reason)

    def _resolve(self, instance: JobInstance, status: JobStatus, reason: Optional[str]) -> None:
        self.pending.remove(instance)
        self.ready.pop(instance, None)
        instance.finish(status, reason)
        self.dirty.update(self.graph.dependents[self.job_of[instance]])
        logger.info("[%s] %s (%s)", instance.instance_id, status.value, reason)
