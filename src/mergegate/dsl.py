# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import ConfigurationError
from .model import CachePolicy, EventKind, Job, Step, TriggerRule, Workflow


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env={k: str(v) for k, v in (env or {}).items()}, timeout=timeout)


# ---------------------------------------------------------------------
# Triggers + cache
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    """on_push("master", "release*"); no branches means every branch."""
    return TriggerRule.of(EventKind.PUSH, *(branches or ("*",)))


def on_pull_request(*branches: str) -> TriggerRule:
    """Matches PRs whose *target* branch matches."""
    return TriggerRule.of(EventKind.PULL_REQUEST, *(branches or ("*",)))


def cached(
    *paths: str,
    lock_files: Sequence[str] = (),
    toolchain: str = "",
    enabled: bool = True,
    save: bool = True,
) -> CachePolicy:
    return CachePolicy(
        paths=tuple(paths), lock_files=tuple(lock_files), toolchain=toolchain, enabled=enabled, save=save
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    title: str = "",
    on: Optional[Iterable[TriggerRule]] = None,
    env: Optional[Dict[str, str]] = None,
    cache_policy: Optional[CachePolicy] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        title=title,
        steps=steps_final,
        triggers=tuple(on or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache_policy,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    on: Optional[Iterable[TriggerRule]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

    `on` applies to every job that declares no triggers of its own:

        from mergegate.dsl import wf, job, sh, on_push, on_pull_request

        def workflow():
            return wf(
                "ci",
                job("test", sh("pytest", "pytest -q")),
                on=[on_push("master", "release*"), on_pull_request("master")],
            )
    """
    default = tuple(on or ())
    jobs_final = [j if j.triggers else replace(j, triggers=default) for j in jobs]
    return Workflow(name=name, jobs=jobs_final, env={k: str(v) for k, v in (env or {}).items()})
