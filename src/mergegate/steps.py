# steps.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from typing import Optional

from .environment import Environment
from .model import Step, StepResult

DEFAULT_STEP_TIMEOUT = 3600.0
DEFAULT_OUTPUT_TAIL = 4000
POLL_INTERVAL = 0.1


def _kill_group(proc: subprocess.Popen) -> None:
    """Terminate the step's whole process group (the shell and its children)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class StepRunner:
    """
    Runs one step at a time inside an Environment.

    A step fails on a non-zero exit or when its timeout elapses (the process
    group is killed). Setting `cancel` kills the running step as well.
    Output is captured, not interpreted.
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        output_tail: int = DEFAULT_OUTPUT_TAIL,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.default_timeout = default_timeout
        self.output_tail = output_tail
        self.poll_interval = poll_interval

    def run(
        self,
        step: Step,
        environment: Environment,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> StepResult:
        timeout = step.timeout if step.timeout is not None else self.default_timeout
        cwd = (environment.workspace / (step.cwd or ".")).resolve()
        start = time.monotonic()

        if cancel is not None and cancel.is_set():
            return StepResult(step=step.name, exit_code=None, output="", duration=0.0, cancelled=True)

        if not cwd.is_dir():
            return StepResult(
                step=step.name,
                exit_code=127,
                output=f"step cwd not found: {cwd}",
                duration=0.0,
            )

        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=environment.variables(step.env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,  # own process group, so kill reaches children
        )

        timed_out = False
        cancelled = False
        output = ""
        deadline = start + timeout if timeout else None

        while True:
            try:
                output, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            else:
                continue

            _kill_group(proc)
            output, _ = proc.communicate()
            break

        return StepResult(
            step=step.name,
            exit_code=proc.returncode,
            output=(output or "")[-self.output_tail:],
            duration=time.monotonic() - start,
            timed_out=timed_out,
            cancelled=cancelled,
        )


def run_step(
    step: Step,
    environment: Environment,
    *,
    timeout: float | None = None,
    cancel: Optional[threading.Event] = None,
) -> StepResult:
    """Functional entry point: run a single step with an optional timeout override."""
    runner = StepRunner(default_timeout=timeout if timeout is not None else DEFAULT_STEP_TIMEOUT)
    return runner.run(step, environment, cancel=cancel)
