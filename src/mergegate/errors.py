# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MergegateError(Exception):
    """Base class for everything mergegate raises on purpose."""


class ConfigurationError(MergegateError):
    """
    The workflow document is malformed or references something undefined.

    Raised at load time, before any job runs.
    """

    def __init__(self, message: str, *, source: str | None = None):
        self.message = message
        self.source = source
        super().__init__(message)

    def __str__(self) -> str:
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message


class EnvironmentSetupFailure(MergegateError):
    """Workspace creation, checkout or cache restore failed for a job."""

    def __init__(self, job: str, message: str):
        self.job = job
        self.message = message
        super().__init__(f"[{job}] environment setup failed: {message}")


@dataclass
class StepFailure(MergegateError):
    """
    Structured step failure, used to describe a failed step in reports.

    A step fails on a non-zero exit or when its timeout elapses.
    """
    job: str
    step: str
    cmd: str
    exit_code: int | None
    timed_out: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
