# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


# ----------------------------------------------------------------------
# Load-time errors (fatal, no Run is created)
# ----------------------------------------------------------------------

class LoadError(Exception):
    """A workflow definition is malformed, cyclic or otherwise invalid."""

    kind = "invalid_definition"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidDefinition(LoadError):
    kind = "invalid_definition"


class DuplicateJob(LoadError):
    kind = "duplicate_job"

    def __init__(self, names: List[str]):
        super().__init__(f"Duplicate job names found: {names}")
        self.names = names


class UnknownDependency(LoadError):
    kind = "unknown_dependency"

    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {known}"
        )
        self.job = job
        self.missing = missing


class CyclicDependency(LoadError):
    """The `needs` graph contains a cycle; `path` starts and ends on the same job."""

    kind = "cyclic_dependency"

    def __init__(self, path: List[str]):
        super().__init__(f"Dependency cycle: {' -> '.join(path)}")
        self.path = path


class InvalidMatrix(LoadError):
    kind = "invalid_matrix"


class InvalidExpression(LoadError):
    kind = "invalid_expression"


# ----------------------------------------------------------------------
# Step-level failures (contained in their JobInstance)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    hint: str | None = None

    cause = "exit_code"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(StepFailure):
    timeout: float = 0.0

    cause = "timeout"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s: {self.cmd}"


@dataclass
class UnknownAction(StepFailure):
    cause = "unknown_action"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' uses unknown action '{self.cmd}'"


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

class ArtifactNotFound(KeyError):
    """No artifact stored under the requested key."""


class RunNotFound(KeyError):
    """No run registered under the requested id."""
