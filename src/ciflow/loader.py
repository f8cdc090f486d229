"""Workflow definition loading and validation.

A definition arrives as a YAML document, an already-parsed mapping, or a
Python workflow file written with ``ciflow.dsl``. Whatever the source, it
ends up in ``build()``, which runs every load-time check and builds the job
graph once. Any problem raises a ``LoadError`` before a Run exists.
"""

from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml  # PyYAML

from . import expressions, matrix
from .dag import build_graph
from .errors import DuplicateJob, InvalidDefinition, InvalidMatrix, LoadError
from .expressions import scalar_text
from .model import (
    ConcurrencySpec,
    EventFilter,
    Job,
    MatrixStrategy,
    Step,
    TriggerRules,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def load(source: Any, *, name: str | None = None) -> WorkflowDefinition:
    """
    Load a workflow from any supported source.

    Accepts a WorkflowDefinition (returned as is), a mapping document, a
    path to a `.yml`/`.yaml`/`.py` file, or YAML text.
    """
    if isinstance(source, WorkflowDefinition):
        return source
    if isinstance(source, Mapping):
        return from_document(source, default_name=name or "workflow")
    if isinstance(source, Path):
        return load_file(source)
    if isinstance(source, str):
        if "\n" not in source and source.endswith(YAML_SUFFIXES + (".py",)):
            return load_file(source)
        return load_yaml(source, name=name)
    raise InvalidDefinition(f"Unsupported workflow source type: {type(source).__name__}")


def load_file(path: str | Path) -> WorkflowDefinition:
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise InvalidDefinition(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml(wf_path.read_text(encoding="utf-8"), name=wf_path.stem)
    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    raise InvalidDefinition(
        f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}"
    )


def load_yaml(text: str, *, name: str | None = None) -> WorkflowDefinition:
    try:
        _check_duplicate_keys(yaml.compose(text, Loader=yaml.SafeLoader))
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidDefinition(f"Invalid YAML: {e}") from e

    if doc is None:
        raise InvalidDefinition("Workflow document is empty")
    return from_document(doc, default_name=name or "workflow")


def _load_python(wf_path: Path) -> WorkflowDefinition:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> WorkflowDefinition | mapping
      - WORKFLOW = WorkflowDefinition | mapping
    """
    module_name = f"ciflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    else:
        raise InvalidDefinition(
            f"{wf_path.name} must define workflow() or WORKFLOW "
            "(a WorkflowDefinition or a definition mapping)"
        )

    if isinstance(result, WorkflowDefinition):
        return result
    if isinstance(result, Mapping):
        return from_document(result, default_name=wf_path.stem)
    raise InvalidDefinition(
        f"workflow() in {wf_path.name} returned {type(result).__name__}, "
        "expected a WorkflowDefinition or a mapping"
    )


def _check_duplicate_keys(node: Any, path: Tuple[str, ...] = ()) -> None:
    """PyYAML keeps the last of duplicate keys silently; reject them instead."""
    if node is None:
        return
    if isinstance(node, yaml.MappingNode):
        seen = set()
        for key_node, value_node in node.value:
            key = key_node.value if isinstance(key_node, yaml.ScalarNode) else None
            if key is not None and key in seen:
                if path == ("jobs",):
                    raise DuplicateJob([key])
                where = "/".join(path) or "<root>"
                raise InvalidDefinition(
                    f"Duplicate key '{key}' under {where} (line {key_node.start_mark.line + 1})"
                )
            seen.add(key)
            _check_duplicate_keys(value_node, path + (str(key),))
    elif isinstance(node, yaml.SequenceNode):
        for i, item in enumerate(node.value):
            _check_duplicate_keys(item, path + (str(i),))


# ----------------------------------------------------------------------
# Document parsing
# ----------------------------------------------------------------------

def from_document(doc: Mapping[str, Any], *, default_name: str = "workflow") -> WorkflowDefinition:
    if not isinstance(doc, Mapping):
        raise InvalidDefinition(f"Workflow root must be a mapping, got {type(doc).__name__}")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = doc["on"] if "on" in doc else doc.get(True)

    jobs_doc = doc.get("jobs")
    if not isinstance(jobs_doc, Mapping) or not jobs_doc:
        raise InvalidDefinition("Workflow must declare a non-empty 'jobs' mapping")

    jobs = [_parse_job(str(job_name), body) for job_name, body in jobs_doc.items()]

    return build(
        name=str(doc.get("name") or default_name),
        jobs=jobs,
        triggers=parse_triggers(on),
        concurrency=parse_concurrency(doc.get("concurrency"), where="workflow"),
        env=_parse_str_map(doc.get("env"), where="workflow env"),
    )


def _parse_job(name: str, body: Any) -> Job:
    if body is None:
        body = {}
    if not isinstance(body, Mapping):
        raise InvalidDefinition(f"Job '{name}' must be a mapping")

    steps_doc = body.get("steps")
    if not isinstance(steps_doc, list) or not steps_doc:
        raise InvalidDefinition(f"Job '{name}' must have at least one step")

    strategy = body.get("strategy") or {}
    if not isinstance(strategy, Mapping):
        raise InvalidDefinition(f"Job '{name}': 'strategy' must be a mapping")

    return Job(
        name=name,
        steps=tuple(_parse_step(name, i, s) for i, s in enumerate(steps_doc)),
        needs=tuple(_as_str_list(body.get("needs"), where=f"job '{name}' needs")),
        matrix=_parse_matrix(name, strategy.get("matrix")),
        concurrency=parse_concurrency(body.get("concurrency"), where=f"job '{name}'"),
        fail_fast=_as_flag(_get(strategy, "fail-fast", True), where=f"job '{name}' fail-fast"),
        max_parallel=_as_count(_get(strategy, "max-parallel"), where=f"job '{name}' max-parallel"),
        env=_parse_str_map(body.get("env"), where=f"job '{name}' env"),
        timeout_minutes=_as_minutes(_get(body, "timeout-minutes"), where=f"job '{name}'"),
    )


def _parse_step(job: str, index: int, body: Any) -> Step:
    if not isinstance(body, Mapping):
        raise InvalidDefinition(f"Job '{job}' step #{index + 1} must be a mapping")

    run, uses = body.get("run"), body.get("uses")
    if (run is None) == (uses is None):
        raise InvalidDefinition(
            f"Job '{job}' step #{index + 1} must declare exactly one of 'run' or 'uses'"
        )

    step_id = body.get("id")
    name = body.get("name") or step_id or _default_step_name(run, uses)
    return Step(
        name=str(name),
        run=str(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        condition=expressions.parse_condition(body.get("if")),
        with_=_parse_str_map(body.get("with"), where=f"job '{job}' step '{name}' with"),
        env=_parse_str_map(body.get("env"), where=f"job '{job}' step '{name}' env"),
        continue_on_error=_as_flag(
            _get(body, "continue-on-error", False), where=f"job '{job}' step '{name}' continue-on-error"
        ),
        timeout_minutes=_as_minutes(_get(body, "timeout-minutes"), where=f"job '{job}' step '{name}'"),
        id=str(step_id) if step_id is not None else None,
    )


def _default_step_name(run: Any, uses: Any) -> str:
    if uses is not None:
        return str(uses)
    first = str(run).strip().splitlines()
    return f"Run {first[0]}" if first else "Run"


def _parse_matrix(job: str, body: Any) -> Optional[MatrixStrategy]:
    if body is None:
        return None
    if not isinstance(body, Mapping):
        raise InvalidMatrix(f"Job '{job}': 'strategy.matrix' must be a mapping")

    axes: List[Tuple[str, Tuple[Any, ...]]] = []
    for axis, values in body.items():
        if axis in ("exclude", "include"):
            continue
        if not isinstance(values, list):
            raise InvalidMatrix(f"Job '{job}': matrix axis '{axis}' must be a list of values")
        axes.append((str(axis), tuple(values)))

    return MatrixStrategy(
        axes=tuple(axes),
        exclude=tuple(_parse_combinations(job, "exclude", body.get("exclude"))),
        include=tuple(_parse_combinations(job, "include", body.get("include"))),
    )


def _parse_combinations(job: str, key: str, body: Any) -> List[Mapping[str, Any]]:
    if body is None:
        return []
    if not isinstance(body, list) or not all(isinstance(e, Mapping) for e in body):
        raise InvalidMatrix(f"Job '{job}': matrix '{key}' must be a list of mappings")
    return [dict(e) for e in body]


def parse_triggers(on: Any) -> TriggerRules:
    if on is None:
        return TriggerRules()
    if isinstance(on, str):
        return TriggerRules(events={on: None})
    if isinstance(on, list):
        return TriggerRules(events={str(kind): None for kind in on})
    if isinstance(on, Mapping):
        return TriggerRules(events={str(k): _parse_filter(str(k), v) for k, v in on.items()})
    raise InvalidDefinition(f"'on' must be a string, list or mapping, got {type(on).__name__}")


def _parse_filter(kind: str, body: Any) -> Optional[EventFilter]:
    if body is None:
        return None
    if not isinstance(body, Mapping):
        raise InvalidDefinition(f"Trigger '{kind}' filters must be a mapping")

    def patterns(key: str) -> Optional[Tuple[str, ...]]:
        value = _get(body, key)
        if value is None:
            return None
        return tuple(_as_str_list(value, where=f"trigger '{kind}' {key}"))

    return EventFilter(
        branches=patterns("branches"),
        branches_ignore=patterns("branches-ignore"),
        paths=patterns("paths"),
        paths_ignore=patterns("paths-ignore"),
    )


def parse_concurrency(body: Any, *, where: str) -> Optional[ConcurrencySpec]:
    if body is None:
        return None
    if isinstance(body, str):
        return ConcurrencySpec(group=body)
    if not isinstance(body, Mapping) or not body.get("group"):
        raise InvalidDefinition(f"{where}: 'concurrency' needs a 'group'")
    cancel = _get(body, "cancel-in-progress")
    if cancel is None:
        cancel = body.get("cancelInProgress", False)
    return ConcurrencySpec(
        group=str(body["group"]),
        cancel_in_progress=_as_flag(cancel, where=f"{where} cancel-in-progress"),
    )


# ----------------------------------------------------------------------
# Validation + graph
# ----------------------------------------------------------------------

def build(
    name: str,
    jobs: Iterable[Job],
    *,
    triggers: TriggerRules | None = None,
    concurrency: ConcurrencySpec | None = None,
    env: Mapping[str, str] | None = None,
) -> WorkflowDefinition:
    """Validate jobs and assemble an immutable WorkflowDefinition."""
    jobs = list(jobs)
    if not jobs:
        raise InvalidDefinition(f"Workflow '{name}' has no jobs")

    for job in jobs:
        _validate_job(job)

    if concurrency is not None:
        _validate_group(concurrency, axes=(), where=f"workflow '{name}' concurrency")

    graph = build_graph(jobs)
    logger.debug("loaded workflow '%s' with %d job(s)", name, len(jobs))
    return WorkflowDefinition(
        name=name,
        jobs=tuple(jobs),
        graph=graph,
        triggers=triggers or TriggerRules(),
        concurrency=concurrency,
        env=dict(env or {}),
    )


def _validate_job(job: Job) -> None:
    if not job.steps:
        raise InvalidDefinition(f"Job '{job.name}' has no steps")
    if job.max_parallel is not None and job.max_parallel < 1:
        raise InvalidDefinition(f"Job '{job.name}': max-parallel must be >= 1")

    axes: List[str] = []
    if job.matrix is not None:
        axes = job.matrix.axis_names
        if not axes:
            raise InvalidMatrix(f"Job '{job.name}': matrix declares no axes")
        for axis, values in job.matrix.axes:
            if not values:
                raise InvalidMatrix(f"Job '{job.name}': matrix axis '{axis}' has no values")
            for v in values:
                if isinstance(v, (list, dict, Mapping)):
                    raise InvalidMatrix(
                        f"Job '{job.name}': matrix axis '{axis}' values must be scalars"
                    )
            seen = [scalar_text(v) for v in values]
            repeated = sorted({v for v in seen if seen.count(v) > 1})
            if repeated:
                raise InvalidMatrix(
                    f"Job '{job.name}': matrix axis '{axis}' repeats values {repeated}"
                )
        for key, entries in (("exclude", job.matrix.exclude), ("include", job.matrix.include)):
            for entry in entries:
                unknown = sorted(set(entry) - set(axes))
                if unknown:
                    raise InvalidMatrix(
                        f"Job '{job.name}': matrix {key} entry {dict(entry)} names "
                        f"undeclared axes {unknown}"
                    )
        ids = [matrix.instance_id(job.name, b) for b in matrix.expand(job)]
        clashes = sorted({i for i in ids if ids.count(i) > 1})
        if clashes:
            raise InvalidMatrix(f"Job '{job.name}': matrix yields duplicate instances {clashes}")

    for step in job.steps:
        if (step.run is None) == (step.uses is None):
            raise InvalidDefinition(
                f"Job '{job.name}' step '{step.name}' must declare exactly one of run or uses"
            )
        expressions.check_matrix_references(
            step.templates(), axes, where=f"job '{job.name}' step '{step.name}'"
        )
    expressions.check_matrix_references(
        [expressions.parse(v) for v in job.env.values()], axes, where=f"job '{job.name}' env"
    )
    if job.concurrency is not None:
        _validate_group(job.concurrency, axes=axes, where=f"job '{job.name}' concurrency")


def _validate_group(spec: ConcurrencySpec, *, axes: Iterable[str], where: str) -> None:
    expressions.check_matrix_references([spec.template], axes, where=where)


# ----------------------------------------------------------------------
# Small helpers
# ----------------------------------------------------------------------

def _get(body: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Look up a dashed key, accepting the snake_case spelling too."""
    if key in body:
        return body[key]
    return body.get(key.replace("-", "_"), default)


def _as_str_list(value: Any, *, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise InvalidDefinition(f"{where} must be a string or a list of strings")


def _parse_str_map(value: Any, *, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidDefinition(f"{where} must be a mapping")
    return {str(k): scalar_text(v) for k, v in value.items()}


def _as_minutes(value: Any, *, where: str) -> Optional[float]:
    if value is None:
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise InvalidDefinition(f"{where}: timeout-minutes must be a number") from None
    if minutes <= 0:
        raise InvalidDefinition(f"{where}: timeout-minutes must be positive")
    return minutes


def _as_flag(value: Any, *, where: str) -> bool:
    # bool("false") is True, so strings are not coerced
    if not isinstance(value, bool):
        raise InvalidDefinition(f"{where} must be true or false, got {value!r}")
    return value


def _as_count(value: Any, *, where: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidDefinition(f"{where} must be an integer, got {value!r}")
    return value


__all__ = ["LoadError", "build", "from_document", "load", "load_file", "load_yaml"]
