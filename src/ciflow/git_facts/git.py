# git.py
# Thin wrapper around the Git CLI used to describe a local working copy as a
# RunEvent. Nothing else in ciflow shells out to git.

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ..model import EventKind, RunEvent

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Run `git <args>` and return stdout without surrounding whitespace.

    Raises subprocess.CalledProcessError when git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    # prints the top level regardless of where inside the repo we are
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """Full ref of HEAD, e.g. `refs/heads/main`; the SHA when detached."""
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Paths (relative to the repo root) changed between two refs."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def working_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths of a dirty working tree."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def changed_paths(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    What a CI run for this working copy should consider changed.

    Dirty tree: the uncommitted changes. Clean tree: HEAD against its
    merge-base with `compare_ref`, falling back to HEAD~1, and to every
    tracked file on a first commit.
    """
    if is_dirty(cwd=cwd):
        return working_changes(cwd=cwd)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        logger.debug("no merge-base with %s, comparing against HEAD~1", compare_ref)
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        return _lines(_git(["ls-files"], cwd=cwd))


def local_event(
    *,
    kind: EventKind = EventKind.PUSH,
    ref: str | None = None,
    compare_ref: str = "origin/main",
    base_ref: str | None = None,
    cwd: Optional[str | Path] = None,
) -> RunEvent:
    """Build a RunEvent from the git state of a local checkout."""
    root = repo_root(cwd=cwd)
    commit = None if is_dirty(cwd=root) else head_sha(cwd=root)
    return RunEvent(
        kind=kind,
        ref=ref or current_ref(cwd=root),
        changed_paths=tuple(changed_paths(compare_ref, cwd=root)),
        commit=commit,
        base_ref=base_ref,
    )
