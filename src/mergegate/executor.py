# executor.py
from __future__ import annotations

import tarfile
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .cache import CacheStore, compute_cache_key
from .environment import Environment
from .errors import EnvironmentSetupFailure, StepFailure
from .model import Job, JobOutcome, JobResult, JobState, StepResult
from .settings import Settings
from .steps import StepRunner
from .ui.console import Console, get_console

SETUP_STEP_NAME = "Set up environment"


class JobExecutor:
    """
    Owns one job run:

      Pending -> Preparing -> Running -> Succeeded | Failed | Aborted

    - Preparing: fresh environment + checkout, cache lookup, restore on hit
    - Running: steps strictly in order; the first failure skips the rest
    - Succeeded: only then is the cache populated
    - Aborted: only through `cancel` (superseded run, Ctrl-C)

    run() always returns exactly one JobResult.
    """

    def __init__(
        self,
        job: Job,
        cache: CacheStore,
        settings: Settings,
        *,
        workflow_env: Optional[Dict[str, str]] = None,
        console: Optional[Console] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.job = job
        self.cache = cache
        self.settings = settings
        self.workflow_env = dict(workflow_env or {})
        self.console = console or get_console()
        self.cancel = cancel or threading.Event()
        self.runner = StepRunner(
            default_timeout=settings.step_timeout,
            output_tail=settings.output_tail,
        )
        self.state = JobState.PENDING
        self.history: List[JobState] = [JobState.PENDING]

    def _transition(self, state: JobState) -> None:
        self.state = state
        self.history.append(state)

    # -----------------------------------------------------------------
    # Phases
    # -----------------------------------------------------------------

    def _cache_active(self) -> bool:
        policy = self.job.cache
        return bool(policy and policy.enabled and policy.paths)

    def _prepare(self) -> Tuple[Environment, Optional[str], Dict, bool]:
        env_vars = dict(self.workflow_env)
        env_vars.update(self.job.env)
        environment = Environment.create(
            self.settings.work_dir,
            self.job.name,
            self.settings.source_root,
            env_vars,
            exclude=[self.settings.work_dir, self.settings.cache_dir],
        )
        if not self._cache_active():
            return environment, None, {}, False

        try:
            key, manifest = compute_cache_key(self.job, environment.workspace)
            entry = self.cache.get(key)
            if entry is None:
                self.console.print_cache_miss(self.job.name, key)
                return environment, key, manifest, False
            environment.restore(entry.path)
        except EnvironmentSetupFailure:
            environment.teardown()
            raise
        except Exception as e:
            environment.teardown()
            raise EnvironmentSetupFailure(self.job.name, f"cache lookup failed: {type(e).__name__}: {e}") from e

        self.console.print_cache_hit(self.job.name, key)
        return environment, key, manifest, True

    def _populate_cache(self, environment: Environment, key: str, manifest: Dict) -> None:
        policy = self.job.cache
        assert policy is not None
        with tempfile.TemporaryDirectory(prefix="mergegate-snap-") as tmp:
            snap = environment.snapshot(policy.paths, Path(tmp) / f"{key}.tar.gz")
            self.cache.put(key, snap, manifest)
        self.console.print_cache_saved(self.job.name, key)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def run(self) -> JobResult:
        start = time.monotonic()
        name = self.job.name
        self.console.print_job_start(name)

        if self.cancel.is_set():
            self._transition(JobState.ABORTED)
            self.console.print_job_aborted(name)
            return JobResult(job=name, outcome=JobOutcome.ABORTED, duration=0.0)

        self._transition(JobState.PREPARING)
        try:
            environment, key, manifest, hit = self._prepare()
        except EnvironmentSetupFailure as e:
            self._transition(JobState.FAILED)
            self.console.print_failure(name, str(e), is_job=True)
            return JobResult(
                job=name,
                outcome=JobOutcome.FAILURE,
                failed_step=SETUP_STEP_NAME,
                duration=time.monotonic() - start,
                error=str(e),
            )

        results: List[StepResult] = []
        try:
            self._transition(JobState.RUNNING)
            for step in self.job.steps:
                if self.cancel.is_set():
                    break
                self.console.print_step(name, step.name)
                res = self.runner.run(step, environment, cancel=self.cancel)
                results.append(res)
                if res.cancelled:
                    break
                if not res.ok:
                    failure = StepFailure(
                        job=name,
                        step=step.name,
                        cmd=step.run,
                        exit_code=res.exit_code,
                        timed_out=res.timed_out,
                    )
                    self._transition(JobState.FAILED)
                    self.console.print_failure(step.name, res.output or str(failure), exit_code=res.exit_code)
                    self.console.print_failure(name, str(failure), is_job=True)
                    return JobResult(
                        job=name,
                        outcome=JobOutcome.FAILURE,
                        failed_step=step.name,
                        duration=time.monotonic() - start,
                        error=str(failure),
                        cache_hit=hit,
                        steps=tuple(results),
                    )

            if self.cancel.is_set():
                # partial environment is discarded, never cached
                self._transition(JobState.ABORTED)
                self.console.print_job_aborted(name)
                return JobResult(
                    job=name,
                    outcome=JobOutcome.ABORTED,
                    duration=time.monotonic() - start,
                    error="cancelled",
                    cache_hit=hit,
                    steps=tuple(results),
                )

            self._transition(JobState.SUCCEEDED)
            if key is not None and not hit and self.job.cache.save:
                try:
                    self._populate_cache(environment, key, manifest)
                except (OSError, tarfile.TarError) as e:
                    self.console.print_warning(f"[{name}] cache save failed: {e}")
            self.console.print_success(name)
            return JobResult(
                job=name,
                outcome=JobOutcome.SUCCESS,
                duration=time.monotonic() - start,
                cache_hit=hit,
                steps=tuple(results),
            )
        finally:
            if not self.settings.keep_workspace:
                environment.teardown()
