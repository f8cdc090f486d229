# src/ciflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import expressions, loader
from .model import ConcurrencySpec, Job, MatrixStrategy, Step, WorkflowDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    if_: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
    id: str | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        condition=expressions.parse_condition(if_),
        env=_str_map(env),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        id=id,
    )


def uses(
    name: str,
    action: str,
    *,
    with_: Optional[Dict[str, Any]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
    id: str | None = None,
) -> Step:
    """Create an action step, e.g. uses("Upload", "upload-artifact", with_={...})."""
    return Step(
        name=name,
        uses=action,
        condition=expressions.parse_condition(if_),
        with_=_str_map(with_),
        env=_str_map(env),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        id=id,
    )


# ---------------------------------------------------------------------
# Matrix / concurrency
# ---------------------------------------------------------------------

def matrix(
    *,
    exclude: Optional[List[Mapping[str, Any]]] = None,
    include: Optional[List[Mapping[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixStrategy:
    """
    Matrix strategy; axes keep keyword order.

    Example:
        matrix(os=["ubuntu", "windows"], jdk=[17, 21], exclude=[{"os": "windows", "jdk": 17}])
    """
    return MatrixStrategy(
        axes=tuple((k, tuple(v)) for k, v in axes.items()),
        exclude=tuple(exclude or ()),
        include=tuple(include or ()),
    )


def concurrency(group: str, *, cancel_in_progress: bool = False) -> ConcurrencySpec:
    return ConcurrencySpec(group=group, cancel_in_progress=cancel_in_progress)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: MatrixStrategy | None = None,
    concurrency: ConcurrencySpec | None = None,
    fail_fast: bool = True,
    max_parallel: int | None = None,
    env: Optional[Dict[str, Any]] = None,
    timeout_minutes: float | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        matrix=matrix,
        concurrency=concurrency,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        env=_str_map(env),
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: MatrixStrategy | None = None
        self._concurrency: ConcurrencySpec | None = None
        self._fail_fast: bool = True
        self._max_parallel: int | None = None
        self._timeout_minutes: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, **kwargs: Any):
        self._steps.append(sh(name, run, **kwargs))
        return self

    def use_action(self, name: str, action: str, **kwargs: Any):
        self._steps.append(uses(name, action, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update(_str_map(env))
        return self

    def with_matrix(self, strategy: MatrixStrategy, *, fail_fast: bool = True, max_parallel: int | None = None):
        self._matrix = strategy
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def with_concurrency(self, group: str, *, cancel_in_progress: bool = False):
        self._concurrency = concurrency(group, cancel_in_progress=cancel_in_progress)
        return self

    def with_timeout(self, minutes: float):
        self._timeout_minutes = minutes
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            matrix=self._matrix,
            concurrency=self._concurrency,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            env=self._env,
            timeout_minutes=self._timeout_minutes,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    on: Any = None,
    concurrency: ConcurrencySpec | None = None,
    env: Optional[Dict[str, Any]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Runs the same validation as YAML documents.

    Users can write:
        from ciflow import wf, job, sh

        def workflow():
            return wf(
                job("hello", sh("Say hello", "echo hello")),
                job("build", sh("Compile", "make"), needs=["hello"]),
                on={"push": {"branches": ["main"]}},
            )

    Or use WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))
    """
    return loader.build(
        name,
        jobs,
        triggers=loader.parse_triggers(on),
        concurrency=concurrency,
        env=_str_map(env),
    )


def _str_map(values: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {str(k): expressions.scalar_text(v) for k, v in (values or {}).items()}
