# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping

from .expressions import scalar_text
from .model import Job, JobInstance, Run


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def expand(job: Job) -> List[Dict[str, Any]]:
    """
    Expand a job's matrix into ordered variable bindings.

    Cross product in axis declaration order (first axis varies slowest),
    minus every combination matched by an `exclude` entry, plus `include`
    entries that are not already present. A job without a matrix expands to
    the single empty binding.
    """
    strategy = job.matrix
    if strategy is None or not strategy.axes:
        return [{}]

    names = strategy.axis_names
    combos = [dict(zip(names, values)) for values in product(*(v for _, v in strategy.axes))]
    combos = [c for c in combos if not any(_matches(c, ex) for ex in strategy.exclude)]

    for extra in strategy.include:
        candidate = dict(extra)
        if not any(_same(candidate, c) for c in combos):
            combos.append(candidate)

    return combos


def _matches(binding: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    # all keys in the partial binding must match
    return all(
        key in binding and scalar_text(binding[key]) == scalar_text(value)
        for key, value in partial.items()
    )


def _same(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    return a.keys() == b.keys() and _matches(a, b)


def instance_id(job_name: str, binding: Mapping[str, Any]) -> str:
    """`build` for an unparameterized job, `build (ubuntu, 17)` otherwise."""
    if not binding:
        return job_name
    values = ", ".join(scalar_text(v) for v in binding.values())
    return f"{job_name} ({values})"


# ---------------------------------------------------------------------
# Run materialization
# ---------------------------------------------------------------------

def expand_run(run: Run) -> List[JobInstance]:
    """Create the ordered JobInstance set for `run` (jobs in declaration order)."""
    instances: List[JobInstance] = []
    for job in run.workflow.jobs:
        for binding in expand(job):
            instances.append(
                JobInstance(
                    run_id=run.run_id,
                    job=job,
                    matrix=binding,
                    index=len(instances),
                    instance_id=instance_id(job.name, binding),
                    token=run.token.child(),
                )
            )
    run.instances = instances
    return instances
