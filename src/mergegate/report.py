# report.py
from __future__ import annotations

from pathlib import Path
from typing import List

from .model import JobOutcome, JobResult, RunVerdict

OUTPUT_LINES = 20


def _failure_lines(result: JobResult) -> List[str]:
    lines = [f"  - {result.job}: failed at step '{result.failed_step or '?'}'"]
    step = next((s for s in result.steps if s.step == result.failed_step), None)
    if step is not None:
        if step.timed_out:
            lines.append(f"      timed out after {step.duration:.1f}s")
        else:
            lines.append(f"      exit code {step.exit_code}")
        tail = [ln for ln in step.output.splitlines() if ln.strip()][-OUTPUT_LINES:]
        lines.extend(f"      | {ln}" for ln in tail)
    elif result.error:
        lines.append(f"      {result.error}")
    return lines


def render_report(verdict: RunVerdict) -> str:
    """
    Human-readable run report.

    Every failing job is listed with its first failing step; aborted
    (superseded/cancelled) jobs are listed separately from failures.
    """
    lines = [f"Event: {verdict.event.describe()}"]

    if verdict.noop:
        lines.append("Verdict: success (no-op, no jobs matched)")
        return "\n".join(lines) + "\n"

    lines.append(f"Verdict: {'success' if verdict.success else 'failure'}")
    lines.append("")
    lines.append("Jobs:")
    for r in verdict.results:
        cached = ", cache hit" if r.cache_hit else ""
        lines.append(f"  {r.job}: {r.outcome.value} ({r.duration:.1f}s{cached})")

    failures = [r for r in verdict.results if r.outcome is JobOutcome.FAILURE]
    if failures:
        lines.append("")
        lines.append(f"Failing jobs ({len(failures)}):")
        for r in failures:
            lines.extend(_failure_lines(r))

    aborted = verdict.aborted_jobs
    if aborted:
        lines.append("")
        lines.append(f"Aborted jobs ({len(aborted)}), cancelled or superseded:")
        lines.extend(f"  - {name}" for name in aborted)

    return "\n".join(lines) + "\n"


def write_report(verdict: RunVerdict, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(render_report(verdict), encoding="utf-8")
    return p
