# triggers.py
from __future__ import annotations

import fnmatch
import logging
from enum import Enum
from typing import Iterable, Tuple

from .model import EventFilter, EventKind, RunEvent, WorkflowDefinition

logger = logging.getLogger(__name__)


class PathConflictPolicy(str, Enum):
    """How a changed file matching both `paths` and `paths-ignore` is counted."""
    IGNORE_WINS = "ignore-wins"
    INCLUDE_WINS = "include-wins"


def should_run(
    workflow: WorkflowDefinition,
    event: RunEvent,
    policy: PathConflictPolicy = PathConflictPolicy.IGNORE_WINS,
) -> bool:
    """
    Decide whether `event` starts a run of `workflow`.

    A workflow without trigger rules accepts every event. Otherwise the event
    kind must be declared, and every declared filter for that kind must pass.
    Pure function: same inputs, same answer.
    """
    rules = workflow.triggers.events
    if not rules:
        return True

    kind = EventKind(event.kind).value
    if kind not in rules:
        logger.debug("workflow '%s' does not listen to '%s'", workflow.name, kind)
        return False

    flt = rules[kind]
    if flt is None:
        return True

    branch = event.branch
    if event.kind is EventKind.PULL_REQUEST and event.base_branch:
        # pull_request branch filters target the branch being merged into
        branch = event.base_branch

    if not branch_matches(flt, branch):
        logger.debug("workflow '%s': branch '%s' filtered out", workflow.name, branch)
        return False

    if flt.has_path_filters and not paths_match(flt, event.changed_paths, policy):
        logger.debug("workflow '%s': no changed path passes the path filters", workflow.name)
        return False

    return True


def branch_matches(flt: EventFilter, branch: str) -> bool:
    if flt.branches is not None and not _any_match(branch, flt.branches):
        return False
    if flt.branches_ignore is not None and _any_match(branch, flt.branches_ignore):
        return False
    return True


def paths_match(
    flt: EventFilter,
    changed_paths: Iterable[str],
    policy: PathConflictPolicy = PathConflictPolicy.IGNORE_WINS,
) -> bool:
    """
    True if at least one changed file counts.

    A file counts when it matches `paths` (or `paths` is absent) and does not
    match `paths-ignore`. Under INCLUDE_WINS a file matching both counts.
    An event with no changed files never passes a declared path filter.
    """
    for path in changed_paths:
        included = flt.paths is None or _any_match(path, flt.paths)
        ignored = flt.paths_ignore is not None and _any_match(path, flt.paths_ignore)
        if not included:
            continue
        if ignored and not (policy is PathConflictPolicy.INCLUDE_WINS and flt.paths is not None):
            continue
        return True
    return False


def _any_match(value: str, patterns: Tuple[str, ...]) -> bool:
    return any(_match(value, p) for p in patterns)


def _match(value: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(value, pattern):
        return True
    # "**/x" also matches "x" at the repository root
    if pattern.startswith("**/") and fnmatch.fnmatchcase(value, pattern[3:]):
        return True
    return False
