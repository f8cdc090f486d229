from .dsl import build, job, sh, uses, wf, JobBuilder
from .engine import Orchestrator
from .loader import load
from .model import Job, RunEvent, Step, WorkflowDefinition

# dsl.matrix and dsl.concurrency stay out of this namespace: same names as submodules

__all__ = [
    "build",
    "job",
    "sh",
    "uses",
    "wf",
    "JobBuilder",
    "Orchestrator",
    "load",
    "Job",
    "RunEvent",
    "Step",
    "WorkflowDefinition",
]
