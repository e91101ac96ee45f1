# triggers.py
from __future__ import annotations

from typing import List

from .model import Event, Job, TriggerRule, Workflow


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    """
    push: the pushed branch must match one of the rule's patterns.
    pull_request: the PR *target* branch must match; the source branch is ignored.
    """
    if rule.kind is not event.kind:
        return False
    if not event.branch:
        return False
    return any(p.matches(event.branch) for p in rule.patterns)


def job_matches(job: Job, event: Event) -> bool:
    return any(rule_matches(r, event) for r in job.triggers)


def match_jobs(event: Event, workflow: Workflow) -> List[Job]:
    """Jobs selected by this event, in workflow order. Empty means a no-op run."""
    return [j for j in workflow.jobs if job_matches(j, event)]


def explain(job: Job, event: Event) -> str:
    """One-line reason used in the plan output."""
    for r in job.triggers:
        if rule_matches(r, event):
            hit = next(p for p in r.patterns if p.matches(event.branch or ""))
            return f"{r.kind.value} matched '{hit}'"
    if not job.triggers:
        return "no triggers declared"
    wanted = ", ".join(
        f"{r.kind.value}: {[str(p) for p in r.patterns]}" for r in job.triggers
    )
    return f"no rule matched ({wanted})"
