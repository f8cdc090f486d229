# runners.py
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Protocol

from .concurrency import CancellationToken
from .errors import StepFailure, StepTimeout, UnknownAction

logger = logging.getLogger(__name__)


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "mvn": "Install Maven or fix PATH.",
    "java": "Install a JDK or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# keep failure output readable
OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Runner contract
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StepInvocation:
    """Everything a runner needs to execute one step, templates already rendered."""
    run_id: str
    job: str
    instance_id: str
    step: str
    run: str | None = None
    uses: str | None = None
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    workdir: Path = Path(".")
    timeout: float | None = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def command(self) -> str:
        return self.run if self.run is not None else (self.uses or "")


@dataclass
class StepOutput:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    artifacts: Dict[str, bytes] = field(default_factory=dict)


class StepRunner(Protocol):
    def run(self, invocation: StepInvocation) -> Optional[StepOutput]: ...


ActionHandler = Callable[[StepInvocation], Optional[StepOutput]]


# ----------------------------------------------------------------------
# Actions (`uses:` steps)
# ----------------------------------------------------------------------

class ActionRegistry:
    """
    Maps action names to handlers.

    `actions/upload-artifact@v4` resolves by full name first, then by its
    last path segment, with the `@version` suffix dropped.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[_action_key(name)] = handler

    def resolve(self, uses: str) -> Optional[ActionHandler]:
        key = _action_key(uses)
        if key in self._handlers:
            return self._handlers[key]
        return self._handlers.get(key.rsplit("/", 1)[-1])

    def dispatch(self, invocation: StepInvocation) -> Optional[StepOutput]:
        handler = self.resolve(invocation.uses or "")
        if handler is None:
            raise UnknownAction(
                job=invocation.instance_id,
                step=invocation.step,
                cmd=invocation.uses or "",
            )
        return handler(invocation)

    def names(self) -> list[str]:
        return sorted(self._handlers)


def _action_key(name: str) -> str:
    return name.split("@", 1)[0].strip()


def upload_artifact(invocation: StepInvocation) -> StepOutput:
    """Built-in `upload-artifact` action: with `name` and `path`."""
    name = invocation.with_.get("name") or "artifact"
    rel = invocation.with_.get("path")
    if not rel:
        raise StepFailure(
            job=invocation.instance_id,
            step=invocation.step,
            cmd=invocation.command,
            stderr="upload-artifact requires a 'path' input",
        )

    path = (invocation.workdir / rel).resolve()
    if not path.is_file():
        raise StepFailure(
            job=invocation.instance_id,
            step=invocation.step,
            cmd=invocation.command,
            stderr=f"artifact path not found: {path}",
        )
    return StepOutput(artifacts={name: path.read_bytes()})


def default_actions() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("upload-artifact", upload_artifact)
    return registry


# ----------------------------------------------------------------------
# Shell runner
# ----------------------------------------------------------------------

class ShellRunner:
    """Runs `run:` steps through the system shell and `uses:` steps through actions."""

    def __init__(
        self,
        *,
        actions: ActionRegistry | None = None,
        inherit_env: bool = True,
    ):
        self.actions = actions or default_actions()
        self.inherit_env = inherit_env

    def run(self, invocation: StepInvocation) -> Optional[StepOutput]:
        if invocation.uses is not None:
            return self.actions.dispatch(invocation)

        cwd = invocation.workdir.resolve()
        if not cwd.exists():
            raise FileNotFoundError(
                f"[{invocation.instance_id}] step '{invocation.step}' workdir not found: {cwd}"
            )

        env = os.environ.copy() if self.inherit_env else {}
        env.update(invocation.env)
        env.update(invocation.secrets)

        logger.debug("[%s] running: %s", invocation.instance_id, invocation.run)
        try:
            proc = subprocess.run(
                invocation.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=invocation.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise StepTimeout(
                job=invocation.instance_id,
                step=invocation.step,
                cmd=invocation.command,
                stdout=_tail(e.stdout),
                stderr=_tail(e.stderr),
                timeout=invocation.timeout or 0.0,
            ) from None

        if proc.returncode != 0:
            raise StepFailure(
                job=invocation.instance_id,
                step=invocation.step,
                cmd=invocation.command,
                exit_code=proc.returncode,
                stdout=_tail(proc.stdout),
                stderr=_tail(proc.stderr),
                hint=_hint_for(invocation.command, proc.returncode),
            )

        return StepOutput(exit_code=0, stdout=proc.stdout, stderr=proc.stderr)


def _tail(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value[-OUTPUT_TAIL:]


def _hint_for(cmd: str, exit_code: int) -> str | None:
    # 127: command not found
    if exit_code != 127:
        return None
    words = cmd.strip().split()
    if not words:
        return None
    return TOOL_HINTS.get(words[0])
