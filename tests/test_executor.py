"""Tests for ciflow.executor."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pytest

from ciflow import loader, matrix
from ciflow.artifacts import ArtifactStore
from ciflow.errors import StepFailure, StepTimeout
from ciflow.executor import ExecutionListener, StepExecutor
from ciflow.model import FailureCause, JobStatus, Run, RunEvent, StepStatus
from ciflow.runners import ShellRunner, StepOutput


def _run(steps: List[Dict[str, Any]], **job: Any) -> Run:
    wf = loader.load({"env": {"GLOBAL": "g"}, "jobs": {"build": {"steps": steps, **job}}})
    run = Run(workflow=wf, event=RunEvent(ref="refs/heads/main"))
    matrix.expand_run(run)
    return run


def _statuses(instance) -> List[str]:
    return [s.status.value for s in instance.steps]


class TestStepOrdering:
    """Condition-aware sequential control flow."""

    def test_all_succeed(self, fake_runner) -> None:
        """Steps run in order and the instance succeeds."""
        runner = fake_runner()
        run = _run([{"name": "one", "run": "a"}, {"name": "two", "run": "b"}])
        inst = StepExecutor(runner).execute(run.instances[0], run)
        assert inst.status is JobStatus.SUCCEEDED
        assert runner.steps_run() == ["build::one", "build::two"]
        assert inst.started_at is not None and inst.finished_at is not None

    def test_failure_skips_success_steps_runs_always_and_failure(self, fake_runner) -> None:
        """After a failure only `always` and `failure` steps run."""
        runner = fake_runner({"compile": 2})
        run = _run([
            {"name": "compile", "run": "make"},
            {"name": "test", "run": "make test"},
            {"name": "report", "if": "failure()", "run": "echo failed"},
            {"name": "cleanup", "if": "always()", "run": "rm -rf out"},
        ])
        inst = StepExecutor(runner).execute(run.instances[0], run)

        assert inst.status is JobStatus.FAILED
        assert _statuses(inst) == ["failed", "skipped", "succeeded", "succeeded"]
        assert inst.steps[0].cause is FailureCause.EXIT_CODE
        assert inst.steps[0].exit_code == 2
        assert runner.steps_run() == ["build::compile", "build::report", "build::cleanup"]

    def test_failure_step_skipped_on_success(self, fake_runner) -> None:
        """A `failure` step does not run when nothing failed."""
        run = _run([{"name": "ok", "run": "x"}, {"name": "on-fail", "if": "failure()", "run": "y"}])
        inst = StepExecutor(fake_runner()).execute(run.instances[0], run)
        assert inst.status is JobStatus.SUCCEEDED
        assert _statuses(inst) == ["succeeded", "skipped"]

    def test_failing_always_step_fails_instance(self, fake_runner) -> None:
        """An `always` step can still fail the instance."""
        run = _run([{"name": "ok", "run": "x"}, {"name": "cleanup", "if": "always()", "run": "y"}])
        inst = StepExecutor(fake_runner({"cleanup": 1})).execute(run.instances[0], run)
        assert inst.status is JobStatus.FAILED

    def test_continue_on_error(self, fake_runner) -> None:
        """A tolerated failure is recorded but does not fail the instance."""
        run = _run([
            {"name": "lint", "run": "ruff .", "continue-on-error": True},
            {"name": "test", "run": "pytest"},
        ])
        inst = StepExecutor(fake_runner({"lint": 1})).execute(run.instances[0], run)
        assert inst.status is JobStatus.SUCCEEDED
        assert inst.steps[0].status is StepStatus.FAILED
        assert inst.steps[0].continued is True
        assert inst.steps[1].status is StepStatus.SUCCEEDED

    def test_upstream_failed_runs_only_always(self, fake_runner) -> None:
        """In degraded mode only `always` steps run."""
        runner = fake_runner()
        run = _run([{"name": "deploy", "run": "x"}, {"name": "notify", "if": "always()", "run": "y"}])
        inst = StepExecutor(runner).execute(run.instances[0], run, upstream_failed=True)
        assert _statuses(inst) == ["skipped", "succeeded"]
        assert inst.status is JobStatus.SUCCEEDED
        assert runner.steps_run() == ["build::notify"]

    def test_cancelled_token(self, fake_runner) -> None:
        """A cancelled instance skips normal steps, still runs `always`, ends cancelled."""
        runner = fake_runner()
        run = _run([{"name": "build", "run": "x"}, {"name": "cleanup", "if": "always()", "run": "y"}])
        inst = run.instances[0]
        inst.cancel("superseded")
        StepExecutor(runner).execute(inst, run)
        assert inst.status is JobStatus.CANCELLED
        assert inst.reason == "superseded"
        assert runner.steps_run() == ["build::cleanup"]


class TestFailureCauses:
    """How runner outcomes become step results."""

    def test_step_failure_exception(self, fake_runner) -> None:
        """A raised StepFailure keeps its exit code."""
        err = StepFailure(job="build", step="compile", cmd="make", exit_code=3)
        run = _run([{"name": "compile", "run": "make"}])
        inst = StepExecutor(fake_runner({"compile": err})).execute(run.instances[0], run)
        assert inst.steps[0].cause is FailureCause.EXIT_CODE
        assert inst.steps[0].exit_code == 3

    def test_runner_timeout(self, fake_runner) -> None:
        """StepTimeout maps to cause timeout."""
        err = StepTimeout(job="build", step="compile", cmd="make", timeout=1.0)
        run = _run([{"name": "compile", "run": "make"}])
        inst = StepExecutor(fake_runner({"compile": err})).execute(run.instances[0], run)
        assert inst.status is JobStatus.FAILED
        assert inst.steps[0].cause is FailureCause.TIMEOUT

    def test_elapsed_timeout(self) -> None:
        """A step running past its budget fails with cause timeout."""

        class SlowClock:
            def run(self, invocation):
                import time
                time.sleep(0.05)
                return StepOutput()

        run = _run([{"name": "slow", "run": "x"}])
        inst = StepExecutor(SlowClock(), default_timeout=0.001).execute(run.instances[0], run)
        assert inst.steps[0].cause is FailureCause.TIMEOUT

    def test_unexpected_exception(self, fake_runner) -> None:
        """Any other exception is contained with cause error."""
        run = _run([{"name": "boom", "run": "x"}, {"name": "after", "run": "y"}])
        inst = StepExecutor(fake_runner({"boom": RuntimeError("disk full")})).execute(run.instances[0], run)
        assert inst.status is JobStatus.FAILED
        assert inst.steps[0].cause is FailureCause.ERROR
        assert "disk full" in inst.steps[0].message
        assert inst.steps[1].status is StepStatus.SKIPPED

    def test_unknown_action(self) -> None:
        """A `uses` step naming no registered action fails with unknown_action."""
        run = _run([{"name": "mystery", "uses": "acme/does-not-exist@v1"}])
        inst = StepExecutor(ShellRunner()).execute(run.instances[0], run)
        assert inst.steps[0].cause is FailureCause.UNKNOWN_ACTION

    def test_timeout_resolution(self, fake_runner) -> None:
        """Step timeout beats job timeout beats the default."""
        runner = fake_runner()
        run = _run(
            [{"name": "a", "run": "x", "timeout-minutes": 2}, {"name": "b", "run": "y"}],
            **{"timeout-minutes": 5},
        )
        StepExecutor(runner, default_timeout=1.0).execute(run.instances[0], run)
        assert [c.timeout for c in runner.calls] == [120.0, 300.0]


class TestRendering:
    """Template rendering and environment."""

    def test_matrix_and_github_values(self, fake_runner) -> None:
        """run, with and env are rendered against the instance context."""
        runner = fake_runner()
        wf = loader.load({
            "jobs": {
                "build": {
                    "strategy": {"matrix": {"java": [17]}},
                    "env": {"JOB_JAVA": "jdk${{ matrix.java }}"},
                    "steps": [{
                        "name": "compile",
                        "run": "mvn -Djava=${{ matrix.java }} -Dref=${{ github.ref_name }}",
                        "env": {"TARGET": "${{ env.JOB_JAVA }}"},
                    }],
                }
            }
        })
        run = Run(workflow=wf, event=RunEvent(ref="refs/heads/release/1"), env={"RUN": "r"})
        matrix.expand_run(run)
        StepExecutor(runner).execute(run.instances[0], run)

        call = runner.calls[0]
        assert call.run == "mvn -Djava=17 -Dref=release/1"
        assert call.env["TARGET"] == "jdk17"
        assert call.env["RUN"] == "r"

    def test_secrets_are_opaque(self, fake_runner) -> None:
        """Secrets reach the runner but never appear in reprs."""
        runner = fake_runner()
        run = _run([{"name": "deploy", "run": "deploy.sh"}])
        run.secrets["TOKEN"] = "s3cr3t"
        StepExecutor(runner).execute(run.instances[0], run)
        call = runner.calls[0]
        assert call.secrets["TOKEN"] == "s3cr3t"
        assert "s3cr3t" not in repr(call)
        assert "s3cr3t" not in repr(run)
        assert "TOKEN" not in call.env


class TestArtifactsAndListener:
    """Artifact publication and progress hooks."""

    def test_artifacts_stored_on_success(self, fake_runner) -> None:
        """Artifacts returned by a successful step are stored under the instance."""
        store = ArtifactStore()
        runner = fake_runner({"package": lambda inv: StepOutput(artifacts={"jar": b"PK"})})
        run = _run([{"name": "package", "run": "mvn package"}])
        inst = StepExecutor(runner, store).execute(run.instances[0], run)

        assert inst.steps[0].artifacts == ["jar"]
        [ref] = store.find(run.run_id, "jar")
        assert ref.job_instance_id == "build"
        assert store.get(ref) == b"PK"

    def test_failed_step_publishes_nothing(self, fake_runner) -> None:
        """A failing step's output artifacts are discarded."""
        store = ArtifactStore()
        runner = fake_runner({"package": lambda inv: StepOutput(exit_code=1, artifacts={"jar": b"PK"})})
        run = _run([{"name": "package", "run": "mvn package"}])
        StepExecutor(runner, store).execute(run.instances[0], run)
        assert store.list(run.run_id) == []

    def test_upload_artifact_action(self, tmp_path: Path) -> None:
        """The built-in upload-artifact action stores a workspace file."""
        (tmp_path / "target").mkdir()
        (tmp_path / "target" / "app.jar").write_bytes(b"jar-bytes")
        store = ArtifactStore()
        run = _run([{
            "name": "upload",
            "uses": "actions/upload-artifact@v4",
            "with": {"name": "app", "path": "target/app.jar"},
        }])
        inst = StepExecutor(ShellRunner(), store, workdir=tmp_path).execute(run.instances[0], run)
        assert inst.status is JobStatus.SUCCEEDED
        assert store.get(store.find(run.run_id, "app")[0]) == b"jar-bytes"

    def test_listener_hooks(self, fake_runner) -> None:
        """The listener sees start, each step and finish."""
        events: List[str] = []

        class Recorder(ExecutionListener):
            def job_started(self, instance):
                events.append(f"start {instance.instance_id}")

            def step_finished(self, instance, result):
                events.append(f"step {result.name}")

            def job_finished(self, instance):
                events.append(f"done {instance.status.value}")

        run = _run([{"name": "a", "run": "x"}, {"name": "b", "run": "y"}])
        StepExecutor(fake_runner(), listener=Recorder()).execute(run.instances[0], run)
        assert events == ["start build", "step a", "step b", "done succeeded"]


@pytest.mark.parametrize("uses", ["upload-artifact", "actions/upload-artifact@v4"])
def test_upload_artifact_requires_path(uses: str) -> None:
    """upload-artifact without a path fails the step."""
    run = _run([{"name": "upload", "uses": uses, "with": {"name": "x"}}])
    inst = StepExecutor(ShellRunner(), ArtifactStore()).execute(run.instances[0], run)
    assert inst.status is JobStatus.FAILED
    assert inst.steps[0].cause is FailureCause.EXIT_CODE
