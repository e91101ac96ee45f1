# orchestrator.py
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .cache import CacheStore
from .executor import JobExecutor
from .model import Event, EventKind, Job, JobOutcome, JobResult, RunVerdict, Workflow
from .settings import Settings
from .triggers import explain, match_jobs
from .ui.console import Console, get_console


class Orchestrator:
    """
    event -> matched jobs -> one JobExecutor per job (all concurrent)
          -> join all -> RunVerdict

    Jobs never wait on each other and a failed job never stops its siblings.
    Failures are terminal for the run; nothing is retried.
    """

    def __init__(
        self,
        cache: CacheStore,
        settings: Optional[Settings] = None,
        console: Optional[Console] = None,
    ):
        self.cache = cache
        self.settings = settings or Settings()
        self.console = console or get_console()

    def plan(self, event: Event, workflow: Workflow, *, print_plan: bool = True) -> List[Job]:
        selected = match_jobs(event, workflow)
        if print_plan:
            chosen = {j.name for j in selected}
            for j in workflow.jobs:
                if j.name in chosen:
                    self.console.print_plan_job(j.name, explain(j, event))
                else:
                    self.console.print_plan_job_skipped(j.name, explain(j, event))
        return selected

    def _run_job(self, job: Job, workflow: Workflow, cancel: threading.Event) -> JobResult:
        executor = JobExecutor(
            job,
            self.cache,
            self.settings,
            workflow_env=workflow.env,
            console=self.console,
            cancel=cancel,
        )
        return executor.run()

    def run_workflow(
        self,
        event: Event,
        workflow: Workflow,
        *,
        cancel: Optional[threading.Event] = None,
        print_plan: bool = True,
    ) -> RunVerdict:
        cancel = cancel or threading.Event()
        jobs = self.plan(event, workflow, print_plan=print_plan)

        if not jobs:
            self.console.print_noop(event.describe())
            return RunVerdict(event=event, results=(), noop=True)

        self.console.print_run_started(
            event=event.describe(),
            workflow=workflow.name,
            job_count=len(jobs),
        )

        results: Dict[str, JobResult] = {}
        started = time.monotonic()

        # fixed group: one worker per job, joined below
        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="mergegate-job") as pool:
            futures = {pool.submit(self._run_job, j, workflow, cancel): j.name for j in jobs}

            for future in as_completed(futures):
                job_name = futures[future]
                try:
                    results[job_name] = future.result()
                except Exception as e:
                    # executor bug, not a step failure: still one result per job
                    self.console.print_exception(e)
                    results[job_name] = JobResult(
                        job=job_name,
                        outcome=JobOutcome.FAILURE,
                        duration=time.monotonic() - started,
                        error=f"{type(e).__name__}: {e}",
                    )

        ordered = tuple(results[j.name] for j in jobs)
        return RunVerdict(event=event, results=ordered, noop=False)


# ---------------------------------------------------------------------
# Background runs + supersession
# ---------------------------------------------------------------------

@dataclass
class RunHandle:
    run_id: str
    event: Event
    cancel: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None
    superseded_by: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.future is not None and self.future.done()

    @property
    def status(self) -> str:
        if not self.done:
            return "cancelling" if self.cancel.is_set() else "running"
        verdict = self.verdict
        if verdict is None:
            return "error"
        if verdict.noop:
            return "noop"
        if verdict.success:
            return "success"
        return "failure" if verdict.failing_jobs else "aborted"

    @property
    def verdict(self) -> Optional[RunVerdict]:
        if not self.done:
            return None
        assert self.future is not None
        if self.future.exception() is not None:
            return None
        return self.future.result()

    def cancel_run(self) -> None:
        self.cancel.set()

    def wait(self, timeout: float | None = None) -> Optional[RunVerdict]:
        assert self.future is not None
        return self.future.result(timeout=timeout)


DEFAULT_KEEP_FINISHED = 100

Slot = Tuple[EventKind, Optional[str], Optional[str]]


def supersession_slot(event: Event) -> Slot:
    """
    Runs in the same slot supersede each other.

    push:          (push, branch)
    pull_request:  (pull_request, target, head); independent PRs into the
                   same target never cancel each other
    """
    if event.kind is EventKind.PULL_REQUEST:
        return (event.kind, event.branch, event.source_branch)
    return (event.kind, event.branch, None)


class RunSupervisor:
    """
    Runs workflows in the background, one run per incoming event.

    A newer event for the same slot (see supersession_slot) cancels the
    in-flight run it supersedes: its jobs end Aborted and nothing they built
    is cached. Only the newest `keep_finished` finished runs are retained.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        workflow: Workflow,
        max_runs: int = 4,
        keep_finished: int = DEFAULT_KEEP_FINISHED,
    ):
        self.orchestrator = orchestrator
        self.workflow = workflow
        self.keep_finished = max(0, keep_finished)
        self._pool = ThreadPoolExecutor(max_workers=max_runs, thread_name_prefix="mergegate-run")
        self._lock = threading.Lock()
        self._runs: Dict[str, RunHandle] = {}
        self._active: Dict[Slot, str] = {}

    def submit(self, event: Event) -> RunHandle:
        handle = RunHandle(run_id=uuid.uuid4().hex, event=event)
        slot = supersession_slot(event)

        with self._lock:
            previous_id = self._active.get(slot)
            if previous_id is not None:
                previous = self._runs.get(previous_id)
                if previous is not None and not previous.done:
                    previous.superseded_by = handle.run_id
                    previous.cancel_run()
            self._active[slot] = handle.run_id
            self._runs[handle.run_id] = handle
            handle.future = self._pool.submit(
                self.orchestrator.run_workflow,
                event,
                self.workflow,
                cancel=handle.cancel,
                print_plan=False,
            )
        # outside the lock: runs inline when the future is already done
        handle.future.add_done_callback(lambda _f: self._finished(slot, handle.run_id))
        return handle

    def _finished(self, slot: Slot, run_id: str) -> None:
        with self._lock:
            if self._active.get(slot) == run_id:
                del self._active[slot]
            finished = [rid for rid, h in self._runs.items() if h.done]
            for rid in finished[: max(0, len(finished) - self.keep_finished)]:
                del self._runs[rid]

    def get(self, run_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[RunHandle]:
        with self._lock:
            return list(self._runs.values())

    def active(self) -> List[RunHandle]:
        """In-flight runs, one per slot."""
        with self._lock:
            return [self._runs[rid] for rid in self._active.values() if rid in self._runs]

    def shutdown(self, cancel_running: bool = True) -> None:
        if cancel_running:
            for h in self.runs():
                h.cancel_run()
        self._pool.shutdown(wait=True)
