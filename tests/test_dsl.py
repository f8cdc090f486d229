"""Tests for the Python workflow DSL (ciflow.dsl)."""

from __future__ import annotations

from pathlib import Path

import pytest

from ciflow import build, job, load, sh, uses, wf
from ciflow.dsl import concurrency, matrix
from ciflow.errors import CyclicDependency, InvalidExpression, UnknownDependency
from ciflow.expressions import StepCondition


def test_sh_and_uses() -> None:
    """Step helpers parse conditions and stringify values."""
    step = sh("Clean", "rm -rf out", if_="always()", env={"N": 3})
    assert step.run == "rm -rf out"
    assert step.condition is StepCondition.ALWAYS
    assert dict(step.env) == {"N": "3"}

    action = uses("Upload", "actions/upload-artifact@v4", with_={"name": "jar", "path": "a.jar"})
    assert action.uses == "actions/upload-artifact@v4"
    assert action.run is None
    assert action.condition is StepCondition.SUCCESS


def test_job_requires_steps() -> None:
    """A job without steps is rejected."""
    with pytest.raises(ValueError):
        job("empty")


def test_job_collects_positional_and_list_steps() -> None:
    """steps_list comes first, then positional steps."""
    j = job("x", sh("b", "b"), steps_list=[sh("a", "a")])
    assert [s.name for s in j.steps] == ["a", "b"]


def test_job_builder() -> None:
    """The builder API produces the same Job shape."""
    j = (
        build("test")
        .depends_on("compile")
        .define_step("Unit", "pytest -q", if_="success()")
        .use_action("Upload", "upload-artifact", with_={"path": "report.xml"})
        .with_env(CI="1")
        .with_matrix(matrix(py=["3.11", "3.12"]), fail_fast=False, max_parallel=1)
        .with_concurrency("test-${{ matrix.py }}")
        .with_timeout(10)
        .build()
    )
    assert j.needs == ("compile",)
    assert [s.name for s in j.steps] == ["Unit", "Upload"]
    assert j.matrix.axis_names == ["py"]
    assert j.fail_fast is False
    assert j.max_parallel == 1
    assert j.concurrency.group == "test-${{ matrix.py }}"
    assert j.timeout_minutes == 10


def test_builder_without_steps() -> None:
    with pytest.raises(ValueError):
        build("nothing").build()


class TestWorkflow:
    """wf() validates like the YAML loader."""

    def test_valid_workflow(self) -> None:
        """Graph levels reflect needs."""
        workflow = wf(
            job("hello", sh("Say hello", "echo hello")),
            job("build", sh("Compile", "make"), needs=["hello"], matrix=matrix(os=["u", "w"])),
            name="demo",
            on={"push": {"branches": ["main"]}},
            concurrency=concurrency("demo-${{ github.ref }}", cancel_in_progress=True),
        )
        assert workflow.name == "demo"
        assert workflow.graph.levels() == [["hello"], ["build"]]
        assert workflow.concurrency.cancel_in_progress is True
        assert "push" in workflow.triggers.events

    def test_cycle(self) -> None:
        with pytest.raises(CyclicDependency):
            wf(
                job("a", sh("x", "x"), needs=["b"]),
                job("b", sh("x", "x"), needs=["a"]),
            )

    def test_unknown_need(self) -> None:
        with pytest.raises(UnknownDependency):
            wf(job("a", sh("x", "x"), needs=["ghost"]))

    def test_undeclared_matrix_reference(self) -> None:
        """Steps may only reference declared axes."""
        with pytest.raises(InvalidExpression):
            wf(job("a", sh("x", "echo ${{ matrix.os }}")))


def test_python_workflow_file(tmp_path: Path) -> None:
    """A *_workflow.py module exposing workflow() loads like YAML."""
    path = tmp_path / "demo_workflow.py"
    path.write_text(
        "from ciflow import wf, job, sh\n"
        "\n"
        "def workflow():\n"
        "    return wf(job('hello', sh('Say hello', 'echo hello')), name='py-demo')\n",
        encoding="utf-8",
    )
    workflow = load(path)
    assert workflow.name == "py-demo"
    assert [j.name for j in workflow.jobs] == ["hello"]
