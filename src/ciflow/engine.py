# engine.py
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import expressions, loader, matrix, reporter, triggers
from .artifacts import ArtifactStore, FileArtifactStore
from .concurrency import ConcurrencyGovernor
from .errors import RunNotFound
from .executor import ExecutionListener, StepExecutor
from .history import RunHistory
from .model import Run, RunEvent, WorkflowDefinition
from .reporter import RunReport
from .runners import ShellRunner, StepRunner
from .scheduler import Scheduler
from .settings import Settings

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Glue between the components:

      event -> load -> triggers -> matrix -> governor -> scheduler -> report

    One Orchestrator owns one ConcurrencyGovernor, so run-level groups are
    enforced across every run it dispatches.
    """

    def __init__(
        self,
        runner: StepRunner | None = None,
        artifacts: ArtifactStore | None = None,
        governor: ConcurrencyGovernor | None = None,
        settings: Settings | None = None,
        listener: ExecutionListener | None = None,
        history: RunHistory | None = None,
    ):
        self.settings = settings or Settings()
        if history is None and self.settings.database_url:
            history = RunHistory(self.settings.database_url)
        self.history = history
        self.runner = runner or ShellRunner()
        if artifacts is None:
            artifacts = (
                FileArtifactStore(self.settings.artifact_dir)
                if self.settings.artifact_dir
                else ArtifactStore()
            )
        self.artifacts = artifacts
        self.governor = governor or ConcurrencyGovernor()
        self.listener = listener
        self._runs: Dict[str, Run] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def prepare(
        self,
        source: Any,
        event: RunEvent,
        env: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> Optional[Run]:
        """
        Load the definition and materialize a queued Run for `event`.

        Returns None when the event does not match the workflow's triggers.
        Raises LoadError for invalid definitions; no Run exists then.
        """
        workflow = loader.load(source)
        if not triggers.should_run(workflow, event, self.settings.path_policy):
            logger.info("workflow '%s' not triggered by %s on %s", workflow.name, event.kind.value, event.ref)
            return None

        run = Run(
            workflow=workflow,
            event=event,
            env=dict(env or {}),
            secrets=dict(secrets or {}),
        )
        run.concurrency_group = self._render_group(workflow, run)
        matrix.expand_run(run)

        with self._lock:
            self._runs[run.run_id] = run
        logger.info(
            "run %s queued for workflow '%s' (%d instance(s))",
            run.run_id, workflow.name, len(run.instances),
        )
        return run

    def execute(self, run: Run) -> RunReport:
        """Admit the run's concurrency group, schedule it, and report."""
        if run.is_terminal:
            # cancelled (or superseded) while still queued
            return self._record(run, reporter.finalize(run))

        spec = run.workflow.concurrency
        if run.concurrency_group is not None and spec is not None:
            admission = self.governor.admit(
                run.concurrency_group, run, cancel_in_progress=spec.cancel_in_progress
            )
            if admission.cancelled:
                logger.info("run %s superseded run %s", run.run_id, admission.cancelled)

        try:
            self._scheduler().run(run)
            report = reporter.finalize(run)
        finally:
            if run.concurrency_group is not None:
                self.governor.release(run.concurrency_group, run)

        logger.info("run %s finished: %s", run.run_id, report.status.value)
        return self._record(run, report)

    def dispatch(
        self,
        source: Any,
        event: RunEvent,
        env: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> Optional[RunReport]:
        run = self.prepare(source, event, env=env, secrets=secrets)
        if run is None:
            return None
        return self.execute(run)

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> Run:
        run = self.get_run(run_id)
        run.cancel(reason)
        return run

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def runs(self) -> List[Run]:
        with self._lock:
            return list(self._runs.values())

    # ------------------------------------------------------------------

    def _record(self, run: Run, report: RunReport) -> RunReport:
        if self.history is not None:
            try:
                self.history.record(run, report)
            except SQLAlchemyError:
                # history is best effort; the report stands
                logger.exception("could not record run %s in history", run.run_id)
        self._prune()
        return report

    def _prune(self) -> None:
        """Forget the oldest finished runs beyond `settings.run_retention`."""
        limit = self.settings.run_retention
        if limit is None:
            return
        with self._lock:
            finished = [r for r in self._runs.values() if r.is_terminal]
            for old in finished[:-limit]:
                del self._runs[old.run_id]
                logger.debug("run %s evicted from memory", old.run_id)

    def _scheduler(self) -> Scheduler:
        executor = StepExecutor(
            self.runner,
            self.artifacts,
            default_timeout=self.settings.step_timeout,
            workdir=Path(self.settings.workspace),
            listener=self.listener,
        )
        return Scheduler(executor, max_parallel=self.settings.max_parallel, governor=self.governor)

    @staticmethod
    def _render_group(workflow: WorkflowDefinition, run: Run) -> Optional[str]:
        if workflow.concurrency is None:
            return None
        return expressions.parse(workflow.concurrency.group).render(run.context())
