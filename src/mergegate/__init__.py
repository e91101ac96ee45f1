from .dsl import cached, job, on_pull_request, on_push, sh, wf
from .loader import load_workflow
from .model import Event, EventKind, Job, JobOutcome, JobResult, RunVerdict, Step, Workflow
from .orchestrator import Orchestrator

__all__ = [
    "cached", "job", "on_pull_request", "on_push", "sh", "wf", "load_workflow",
    "Event", "EventKind", "Job", "JobOutcome", "JobResult", "RunVerdict", "Step", "Workflow",
    "Orchestrator",
]
