# executor.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from . import expressions
from .artifacts import ArtifactStore
from .errors import StepFailure
from .expressions import StepCondition
from .model import (
    FailureCause,
    Job,
    JobInstance,
    JobStatus,
    Run,
    Step,
    StepResult,
    StepStatus,
)
from .runners import StepInvocation, StepOutput, StepRunner

logger = logging.getLogger(__name__)


class ExecutionListener:
    """Progress hooks; the CLI prints through these. All no-ops by default."""

    def job_started(self, instance: JobInstance) -> None:
        pass

    def step_finished(self, instance: JobInstance, result: StepResult) -> None:
        pass

    def job_finished(self, instance: JobInstance) -> None:
        pass


class StepExecutor:
    """
    Runs one JobInstance's steps strictly in order.

    Step failures never escape: they are recorded on the StepResult and
    decide the instance's terminal status.
    """

    def __init__(
        self,
        runner: StepRunner,
        artifacts: ArtifactStore | None = None,
        *,
        default_timeout: float | None = None,
        workdir: str | Path = ".",
        listener: ExecutionListener | None = None,
    ):
        self.runner = runner
        self.artifacts = artifacts
        self.default_timeout = default_timeout
        self.workdir = Path(workdir)
        self.listener = listener or ExecutionListener()

    def execute(self, instance: JobInstance, run: Run, upstream_failed: bool = False) -> JobInstance:
        instance.status = JobStatus.RUNNING
        instance.started_at = time.time()
        self.listener.job_started(instance)

        context = self._context(instance, run)
        step_failed = False
        first_failure: str | None = None

        for step in instance.job.steps:
            cancelled = instance.token.cancelled
            if not _should_run(step.condition, step_failed, upstream_failed, cancelled):
                result = StepResult(
                    name=step.name,
                    status=StepStatus.SKIPPED,
                    message=_skip_reason(step.condition, upstream_failed, cancelled),
                )
            else:
                result = self._run_step(step, instance, run, context)
                if result.status is StepStatus.FAILED:
                    if step.continue_on_error:
                        result.continued = True
                    else:
                        step_failed = True
                        first_failure = first_failure or result.message

            instance.steps.append(result)
            self.listener.step_finished(instance, result)

        if instance.token.cancelled:
            instance.finish(JobStatus.CANCELLED, instance.token.reason)
        elif step_failed:
            instance.finish(JobStatus.FAILED, first_failure)
        else:
            instance.finish(JobStatus.SUCCEEDED)

        logger.info("[%s] %s", instance.instance_id, instance.status.value)
        self.listener.job_finished(instance)
        return instance

    # ------------------------------------------------------------------

    def _run_step(
        self,
        step: Step,
        instance: JobInstance,
        run: Run,
        context: Mapping[str, Mapping[str, Any]],
    ) -> StepResult:
        timeout = self._timeout(step, instance.job)
        invocation = StepInvocation(
            run_id=run.run_id,
            job=instance.job.name,
            instance_id=instance.instance_id,
            step=step.name,
            run=_render(step.run, context) if step.run is not None else None,
            uses=step.uses,
            with_={k: _render(v, context) for k, v in step.with_.items()},
            env=self._step_env(step, context),
            secrets=dict(run.secrets),
            workdir=self.workdir,
            timeout=timeout,
            token=instance.token,
        )

        logger.debug("[%s] step '%s'", instance.instance_id, step.name)
        start = time.monotonic()
        try:
            output = self.runner.run(invocation) or StepOutput()
        except StepFailure as e:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                cause=FailureCause(e.cause),
                exit_code=e.exit_code,
                message=_failure_message(e),
                duration=time.monotonic() - start,
            )
        except Exception as e:
            logger.exception("[%s] step '%s' raised", instance.instance_id, step.name)
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                cause=FailureCause.ERROR,
                message=f"{type(e).__name__}: {e}",
                duration=time.monotonic() - start,
            )
        elapsed = time.monotonic() - start

        if timeout is not None and elapsed > timeout:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                cause=FailureCause.TIMEOUT,
                message=f"step '{step.name}' exceeded its timeout of {timeout:g}s",
                duration=elapsed,
            )
        if output.exit_code != 0:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                cause=FailureCause.EXIT_CODE,
                exit_code=output.exit_code,
                message=f"step '{step.name}' exited with {output.exit_code}",
                duration=elapsed,
            )

        return StepResult(
            name=step.name,
            status=StepStatus.SUCCEEDED,
            exit_code=0,
            duration=elapsed,
            artifacts=self._publish(output, instance),
        )

    def _publish(self, output: StepOutput, instance: JobInstance) -> List[str]:
        if not output.artifacts:
            return []
        if self.artifacts is None:
            logger.warning(
                "[%s] dropping %d artifact(s): no artifact store configured",
                instance.instance_id, len(output.artifacts),
            )
            return []
        for name, payload in output.artifacts.items():
            self.artifacts.put(name, payload, instance)
        return sorted(output.artifacts)

    def _timeout(self, step: Step, job: Job) -> Optional[float]:
        if step.timeout_minutes is not None:
            return step.timeout_minutes * 60
        if job.timeout_minutes is not None:
            return job.timeout_minutes * 60
        return self.default_timeout

    def _step_env(self, step: Step, context: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
        env = {k: expressions.scalar_text(v) for k, v in context["env"].items()}
        env.update({k: _render(v, context) for k, v in step.env.items()})
        return env

    def _context(self, instance: JobInstance, run: Run) -> Dict[str, Dict[str, Any]]:
        context = run.context()
        base = {"matrix": dict(instance.matrix), **context}
        # job env may reference the run-level namespaces
        job_env = {k: _render(v, base) for k, v in instance.job.env.items()}
        context["env"] = {**context["env"], **job_env}
        context["matrix"] = dict(instance.matrix)
        context["job"] = {"name": instance.job.name, "id": instance.instance_id}
        return context


def _render(template: str, context: Mapping[str, Mapping[str, Any]]) -> str:
    return expressions.parse(template).render(context)


def _should_run(
    condition: StepCondition,
    step_failed: bool,
    upstream_failed: bool,
    cancelled: bool,
) -> bool:
    if condition is StepCondition.ALWAYS:
        return True
    if condition is StepCondition.FAILURE:
        return step_failed and not cancelled
    return not (step_failed or upstream_failed or cancelled)


def _skip_reason(condition: StepCondition, upstream_failed: bool, cancelled: bool) -> str:
    if cancelled:
        return "cancelled"
    if condition is StepCondition.FAILURE:
        return "no earlier step failed"
    if upstream_failed:
        return "a needed job did not succeed"
    return "an earlier step failed"


def _failure_message(e: StepFailure) -> str:
    lines = [str(e)]
    if e.hint:
        lines.append(f"hint: {e.hint}")
    if e.stderr:
        lines.append(e.stderr.strip())
    return "\n".join(lines)
