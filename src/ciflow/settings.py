# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .triggers import PathConflictPolicy


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    n = int(value)
    return n if n > 0 else None


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    n = float(value)
    return n if n > 0 else None


@dataclass(frozen=True)
class Settings:
    max_parallel: int | None = None
    artifact_dir: Path | None = None
    step_timeout: float | None = None  # seconds, when neither step nor job sets one
    path_policy: PathConflictPolicy = PathConflictPolicy.IGNORE_WINS
    workspace: Path = Path(".")
    database_url: str | None = None  # run history; disabled when unset
    run_retention: int | None = 100  # finished runs kept in memory; None keeps all

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        artifact_dir = env.get("CIFLOW_ARTIFACT_DIR")
        return cls(
            max_parallel=_int_or_none(env.get("CIFLOW_MAX_PARALLEL")),
            artifact_dir=Path(artifact_dir) if artifact_dir else None,
            step_timeout=_float_or_none(env.get("CIFLOW_STEP_TIMEOUT")),
            path_policy=PathConflictPolicy(env.get("CIFLOW_PATH_POLICY", "ignore-wins")),
            workspace=Path(env.get("CIFLOW_WORKSPACE", ".")),
            database_url=env.get("CIFLOW_DATABASE_URL") or None,
            run_retention=_int_or_none(env.get("CIFLOW_RUN_RETENTION", "100")),
        )
