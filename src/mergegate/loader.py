# loader.py
"""
Workflow loading.

Two sources are supported, both parsed once before anything runs:

  - YAML documents (``.yml`` / ``.yaml``): a GitHub-Actions-like subset,
    validated with pydantic.
  - Python files (``.py``): define ``workflow()`` or ``WORKFLOW`` using
    the helpers in :mod:`mergegate.dsl`.

Every problem surfaces as :class:`ConfigurationError` (fail closed).
"""
from __future__ import annotations

import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .actions import compile_action
from .errors import ConfigurationError
from .model import CachePolicy, EventKind, Job, Step, TriggerRule, Workflow


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class BranchFilter(_Doc):
    branches: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("branches", mode="before")
    @classmethod
    def _one_or_many(cls, v):
        return [v] if isinstance(v, str) else v


TriggersDoc = Union[str, List[str], Dict[str, Optional[BranchFilter]]]


class StepDoc(_Doc):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    id: Optional[str] = None

    @model_validator(mode="after")
    def _run_xor_uses(self) -> StepDoc:
        if bool(self.run) == bool(self.uses):
            raise ValueError("a step needs exactly one of `run` or `uses`")
        if self.run and self.with_:
            raise ValueError("`with` is only valid together with `uses`")
        return self


class CacheDoc(_Doc):
    paths: List[str]
    lock_files: List[str] = Field(default_factory=list, alias="lock-files")
    toolchain: str = ""
    enabled: bool = True
    save: bool = True


class JobDoc(_Doc):
    name: Optional[str] = None
    runs_on: Optional[Union[str, List[str]]] = Field(None, alias="runs-on")
    env: Dict[str, Any] = Field(default_factory=dict)
    on: Optional[TriggersDoc] = None
    cache: Optional[CacheDoc] = None
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    steps: List[StepDoc] = Field(min_length=1)


class WorkflowDoc(_Doc):
    name: Optional[str] = None
    on: TriggersDoc
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)


# ---------------------------------------------------------------------
# Doc -> model
# ---------------------------------------------------------------------

def _triggers(doc: TriggersDoc) -> tuple:
    if isinstance(doc, str):
        doc = [doc]
    if isinstance(doc, list):
        doc = {k: None for k in doc}

    rules = []
    for kind, filt in doc.items():
        try:
            event_kind = EventKind(kind)
        except ValueError:
            raise ConfigurationError(
                f"unsupported trigger {kind!r}; expected one of {[k.value for k in EventKind]}"
            ) from None
        patterns = (filt or BranchFilter()).branches
        if not patterns:
            raise ConfigurationError(f"trigger {kind!r} has an empty branch list")
        rules.append(TriggerRule.of(event_kind, *patterns))
    return tuple(rules)


def _minutes(value: Optional[float]) -> Optional[float]:
    return value * 60.0 if value is not None else None


def _stringify(env: Dict[str, Any]) -> Dict[str, str]:
    # YAML turns `true`/`1` into bool/int; the process env needs strings
    out = {}
    for k, v in env.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = str(v)
    return out


def _build_job(job_id: str, doc: JobDoc, default_triggers: tuple) -> Job:
    steps: List[Step] = []
    cache: Optional[CachePolicy] = None
    toolchain = ""
    job_timeout = _minutes(doc.timeout_minutes)

    for idx, s in enumerate(doc.steps, start=1):
        name = s.name or s.id or (s.run.splitlines()[0] if s.run else s.uses) or f"step {idx}"
        timeout = _minutes(s.timeout_minutes) or job_timeout
        env = _stringify(s.env)

        if s.run:
            steps.append(Step(name=name, run=s.run, cwd=s.working_directory, env=env, timeout=timeout))
            continue

        compiled = compile_action(s.uses, name, s.with_, env=env, timeout=timeout)
        steps.extend(replace(st, cwd=st.cwd or s.working_directory) for st in compiled.steps)
        if compiled.toolchain:
            toolchain = compiled.toolchain
        if compiled.cache is not None:
            if cache is not None:
                raise ConfigurationError(f"job '{job_id}' declares more than one cache")
            cache = compiled.cache

    if doc.cache is not None:
        if cache is not None:
            raise ConfigurationError(f"job '{job_id}' declares more than one cache")
        cache = CachePolicy(
            paths=tuple(doc.cache.paths),
            lock_files=tuple(doc.cache.lock_files),
            toolchain=doc.cache.toolchain,
            enabled=doc.cache.enabled,
            save=doc.cache.save,
        )

    if cache is not None and toolchain:
        cache = replace(cache, toolchain=":".join(t for t in (toolchain, cache.toolchain) if t))

    if not steps:
        raise ConfigurationError(f"job '{job_id}' has no runnable steps")

    return Job(
        name=job_id,
        title=doc.name or "",
        steps=steps,
        triggers=_triggers(doc.on) if doc.on is not None else default_triggers,
        env=_stringify(doc.env),
        cache=cache,
    )


def _format_validation(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        parts.append(f"{loc}: {e['msg']}")
    return "; ".join(parts)


def parse_workflow(data: Any, *, name: str = "workflow", source: Optional[Path] = None) -> Workflow:
    """Validate an already-decoded document and build a Workflow."""
    if not isinstance(data, dict):
        raise ConfigurationError("workflow document must be a mapping", source=str(source) if source else None)

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as the boolean True
    if True in data:
        data["on"] = data.pop(True)
    for job_doc in (data.get("jobs") or {}).values():
        if isinstance(job_doc, dict) and True in job_doc:
            job_doc["on"] = job_doc.pop(True)
        if isinstance(job_doc, dict) and "needs" in job_doc:
            raise ConfigurationError(
                "inter-job dependencies (`needs`) are not supported; jobs always run independently",
                source=str(source) if source else None,
            )

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation(e), source=str(source) if source else None) from None

    try:
        default_triggers = _triggers(doc.on)
        jobs = [_build_job(job_id, jd, default_triggers) for job_id, jd in doc.jobs.items()]
        return Workflow(name=doc.name or name, jobs=jobs, env=_stringify(doc.env), source=source)
    except ConfigurationError as e:
        if source and not e.source:
            e.source = str(source)
        raise


def load_yaml_workflow(path: Path) -> Workflow:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML: {e}", source=str(path)) from None
    return parse_workflow(data, name=path.stem, source=path)


def load_python_workflow(path: Path) -> Workflow:
    """
    The file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow | [Job, ...]
    """
    module_name = f"mergegate_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            defined = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            defined = globals_dict["WORKFLOW"]
        else:
            raise ConfigurationError("define workflow() or WORKFLOW")
    except ConfigurationError as e:
        e.source = e.source or str(path)
        raise
    except Exception as e:
        raise ConfigurationError(f"error while executing workflow file: {type(e).__name__}: {e}", source=str(path)) from e

    if isinstance(defined, Workflow):
        return replace(defined, source=path)
    if isinstance(defined, list) and all(isinstance(j, Job) for j in defined):
        return Workflow(name=path.stem, jobs=defined, source=path)
    raise ConfigurationError(
        "workflow must be a Workflow or a List[Job]; use `wf(...)` from mergegate.dsl",
        source=str(path),
    )


def load_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in (".yml", ".yaml"):
        return load_yaml_workflow(wf_path)
    if wf_path.suffix == ".py":
        return load_python_workflow(wf_path)
    raise ConfigurationError(f"Workflow must be a .yml/.yaml or .py file, got: {wf_path.name}")
