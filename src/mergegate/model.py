# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError


# ---------------------------------------------------------------------
# Events + triggers
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class Event:
    """
    A repository event delivered by the hosting platform.

    branch:
      - push: the pushed branch
      - pull_request: the PR *target* branch
    source_branch is the PR head; it never takes part in matching.
    """
    kind: EventKind
    branch: Optional[str]
    source_branch: Optional[str] = None
    sha: Optional[str] = None

    @classmethod
    def from_webhook(cls, kind: str, payload: Dict[str, Any]) -> Event:
        """Build an Event from a GitHub-style webhook payload."""
        event_kind = EventKind(kind)

        if event_kind is EventKind.PUSH:
            ref = payload.get("ref") or ""
            branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else None
            return cls(kind=event_kind, branch=branch, sha=payload.get("after"))

        pr = payload.get("pull_request") or {}
        base = pr.get("base") or {}
        head = pr.get("head") or {}
        return cls(
            kind=event_kind,
            branch=base.get("ref"),
            source_branch=head.get("ref"),
            sha=head.get("sha"),
        )

    def describe(self) -> str:
        if self.kind is EventKind.PULL_REQUEST:
            return f"pull_request {self.source_branch or '?'} -> {self.branch}"
        return f"push {self.branch}"


class PatternKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"


_GLOB_CHARS = set("*?[]")


@dataclass(frozen=True)
class BranchPattern:
    """
    A branch-name pattern: exact name, or prefix wildcard ("release*").

    Only these two kinds exist, anything else is rejected at parse time.
    """
    kind: PatternKind
    text: str

    @classmethod
    def parse(cls, raw: str) -> BranchPattern:
        raw = str(raw).strip()
        if not raw:
            raise ConfigurationError("empty branch pattern")

        if raw.endswith("*"):
            stem = raw[:-1]
            if _GLOB_CHARS & set(stem):
                raise ConfigurationError(
                    f"unsupported branch pattern {raw!r}: only a single trailing '*' is allowed"
                )
            return cls(kind=PatternKind.PREFIX, text=stem)

        if _GLOB_CHARS & set(raw):
            raise ConfigurationError(
                f"unsupported branch pattern {raw!r}: only exact names and 'prefix*' are allowed"
            )
        return cls(kind=PatternKind.EXACT, text=raw)

    def matches(self, branch: str) -> bool:
        if self.kind is PatternKind.PREFIX:
            return branch.startswith(self.text)
        return branch == self.text

    def __str__(self) -> str:
        return f"{self.text}*" if self.kind is PatternKind.PREFIX else self.text


@dataclass(frozen=True)
class TriggerRule:
    kind: EventKind
    patterns: Tuple[BranchPattern, ...]

    @classmethod
    def of(cls, kind: EventKind | str, *patterns: str) -> TriggerRule:
        return cls(kind=EventKind(kind), patterns=tuple(BranchPattern.parse(p) for p in patterns))


# ---------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------

def _check_cache_path(field_name: str, path: str, allow_home: bool) -> None:
    if allow_home and path == "~":
        return
    rel = path[2:] if allow_home and path.startswith("~/") else path
    p = PurePosixPath(rel.replace("\\", "/"))
    if not rel or p.is_absolute() or rel.startswith("~") or ".." in p.parts:
        raise ConfigurationError(
            f"cache {field_name} entry {path!r} must be relative to the checkout"
            + (" (or start with '~/')" if allow_home else "")
        )


@dataclass(frozen=True)
class CachePolicy:
    """
    What a job caches and what the cache key is derived from.

    paths: restored before / saved after the job, relative to the workspace
           ("~/..." means the job's private home)
    lock_files: globs whose contents fingerprint the dependency state
    toolchain: declared toolchain identity (e.g. "rust-stable")
    save: False restores on a hit but never writes back (lookup only)
    """
    paths: Tuple[str, ...] = ()
    lock_files: Tuple[str, ...] = ()
    toolchain: str = ""
    enabled: bool = True
    save: bool = True

    def __post_init__(self) -> None:
        for p in self.paths:
            _check_cache_path("path", p, allow_home=True)
        for p in self.lock_files:
            _check_cache_path("lock-file", p, allow_home=False)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None  # seconds; None -> runner default


@dataclass
class Job:
    """
    A CI job: ordered steps + trigger rules + cache policy.

    `name` is the job id (unique within a workflow), `title` is for display.
    """
    name: str
    steps: List[Step]
    title: str = ""
    triggers: Tuple[TriggerRule, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CachePolicy] = None

    @property
    def display_name(self) -> str:
        return self.title or self.name


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None

    def __post_init__(self) -> None:
        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"Duplicate job names found: {dupes}")
        for j in self.jobs:
            if not j.steps:
                raise ConfigurationError(f"Job '{j.name}' has no steps")

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise ConfigurationError(
            f"Workflow '{self.name}' has no job '{name}'. Known jobs: {[j.name for j in self.jobs]}"
        )

    def select(self, names: Iterable[str]) -> Workflow:
        """Restrict the workflow to the named jobs (workflow order kept)."""
        wanted = set(names)
        for n in wanted:
            self.job(n)
        return replace(self, jobs=[j for j in self.jobs if j.name in wanted])


# ---------------------------------------------------------------------
# Cache records
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    path: Path
    created_at: datetime


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    step: str
    exit_code: int | None
    output: str
    duration: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class JobState(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.ABORTED)


class JobOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class JobResult:
    job: str
    outcome: JobOutcome
    failed_step: str | None = None
    duration: float = 0.0
    error: str | None = None
    cache_hit: bool = False
    steps: Tuple[StepResult, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome is JobOutcome.SUCCESS


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@dataclass(frozen=True)
class RunVerdict:
    """Aggregate outcome of one workflow run for one event."""
    event: Event
    results: Tuple[JobResult, ...] = ()
    noop: bool = False

    @property
    def success(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failing_jobs(self) -> List[str]:
        return [r.job for r in self.results if r.outcome is JobOutcome.FAILURE]

    @property
    def aborted_jobs(self) -> List[str]:
        return [r.job for r in self.results if r.outcome is JobOutcome.ABORTED]

    @property
    def exit_code(self) -> int:
        if self.success:
            return EXIT_OK
        if self.failing_jobs:
            return EXIT_FAILURE
        return EXIT_CANCELLED

    def result(self, job: str) -> JobResult:
        for r in self.results:
            if r.job == job:
                return r
        raise KeyError(job)
