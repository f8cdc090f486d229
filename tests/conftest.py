"""Shared pytest fixtures for the ciflow test suite."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from ciflow.engine import Orchestrator
from ciflow.runners import StepInvocation, StepOutput
from ciflow.settings import Settings

# pylint: disable=redefined-outer-name

Outcome = Any  # int exit code | Exception | Callable[[StepInvocation], Optional[StepOutput]]


class FakeRunner:
    """
    Scripted step runner.

    Outcomes are looked up by `"<instance id>::<step>"`, then `"<job>::<step>"`,
    then `"<step>"`. An int is an exit code, an exception is raised, a callable
    is invoked with the invocation. Unscripted steps succeed.
    """

    def __init__(self, script: Optional[Dict[str, Outcome]] = None):
        self.script = dict(script or {})
        self.calls: List[StepInvocation] = []
        self._lock = threading.Lock()
        self._running = 0
        self.peak = 0

    def run(self, invocation: StepInvocation) -> Optional[StepOutput]:
        with self._lock:
            self.calls.append(invocation)
            self._running += 1
            self.peak = max(self.peak, self._running)
        try:
            outcome = self._lookup(invocation)
            if outcome is None:
                return StepOutput()
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, int):
                return StepOutput(exit_code=outcome)
            return outcome(invocation)
        finally:
            with self._lock:
                self._running -= 1

    def _lookup(self, invocation: StepInvocation) -> Outcome:
        for key in (
            f"{invocation.instance_id}::{invocation.step}",
            f"{invocation.job}::{invocation.step}",
            invocation.step,
        ):
            if key in self.script:
                return self.script[key]
        return None

    def steps_run(self) -> List[str]:
        with self._lock:
            return [f"{c.instance_id}::{c.step}" for c in self.calls]

    def instances_run(self) -> List[str]:
        seen: List[str] = []
        for call in list(self.calls):
            if call.instance_id not in seen:
                seen.append(call.instance_id)
        return seen


def sleep_step(seconds: float) -> Callable[[StepInvocation], StepOutput]:
    def _run(_invocation: StepInvocation) -> StepOutput:
        time.sleep(seconds)
        return StepOutput()

    return _run


class Gate:
    """A step outcome that blocks until released or cancelled."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, invocation: StepInvocation) -> StepOutput:
        self.started.set()
        deadline = time.monotonic() + 10
        while not self.release.is_set() and not invocation.token.cancelled:
            if time.monotonic() > deadline:
                raise TimeoutError("gate never released")
            time.sleep(0.01)
        return StepOutput()


@pytest.fixture
def fake_runner() -> Callable[..., FakeRunner]:
    """Build a FakeRunner from a script mapping."""

    def _make(script: Optional[Dict[str, Outcome]] = None) -> FakeRunner:
        return FakeRunner(script)

    return _make


@pytest.fixture
def make_orchestrator() -> Callable[..., Orchestrator]:
    """Build an in-memory Orchestrator around a runner."""

    def _make(runner: Any, **settings: Any) -> Orchestrator:
        return Orchestrator(runner=runner, settings=Settings(**settings))

    return _make


@pytest.fixture
def hello_build_doc() -> Dict[str, Any]:
    """hello -> build (2x2 matrix minus one exclusion)."""
    return {
        "name": "ci",
        "on": {"push": {"branches": ["main"]}},
        "jobs": {
            "hello": {"steps": [{"name": "greet", "run": "echo hello"}]},
            "build": {
                "needs": ["hello"],
                "strategy": {
                    "matrix": {
                        "os": ["ubuntu", "windows"],
                        "java": [17, 21],
                        "exclude": [{"os": "windows", "java": 17}],
                    }
                },
                "steps": [
                    {"name": "compile", "run": "mvn -Djava=${{ matrix.java }} package"},
                    {"name": "cleanup", "if": "always()", "run": "rm -rf target"},
                ],
            },
        },
    }
