# actions.py
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError
from .model import CachePolicy, Step

# ---------------------------------------------------------------------
# `uses:` actions
# ---------------------------------------------------------------------
# Workflow documents may reference a small set of well-known actions.
# Each one compiles into plain shell steps and/or job metadata, so the
# step runner only ever sees shell commands.
#
#   actions/checkout        -> nothing (checkout happens while preparing)
#   actions-rs/toolchain    -> rustup install (+ override), toolchain identity
#   Swatinem/rust-cache     -> cache policy (~/.cargo + target, Cargo.lock)
#   actions-rs/cargo        -> cargo <command> <args>
#   mergegate/cache         -> generic cache policy
# ---------------------------------------------------------------------


@dataclass
class Compiled:
    steps: List[Step] = field(default_factory=list)
    cache: Optional[CachePolicy] = None
    toolchain: Optional[str] = None


ActionFn = Callable[[str, Dict[str, Any], Dict[str, str], Optional[float]], Compiled]

_REGISTRY: Dict[str, ActionFn] = {}


def action(name: str) -> Callable[[ActionFn], ActionFn]:
    def register(fn: ActionFn) -> ActionFn:
        _REGISTRY[name.lower()] = fn
        return fn
    return register


def _as_list(value: Any) -> List[str]:
    """Accept a YAML list, or a comma/newline separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in str(value).replace("\n", ",").split(",") if p.strip()]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def action_name(uses: str) -> str:
    """'actions-rs/cargo@v1.0.3' -> 'actions-rs/cargo'"""
    return uses.split("@", 1)[0].strip().lower()


def compile_action(
    uses: str,
    step_name: str,
    with_: Optional[Dict[str, Any]] = None,
    *,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Compiled:
    fn = _REGISTRY.get(action_name(uses))
    if fn is None:
        raise ConfigurationError(
            f"step '{step_name}' uses unknown action {uses!r}. Known actions: {sorted(_REGISTRY)}"
        )
    return fn(step_name, dict(with_ or {}), dict(env or {}), timeout)


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

@action("actions/checkout")
def _checkout(name, with_, env, timeout) -> Compiled:
    return Compiled()


@action("actions-rs/toolchain")
@action("dtolnay/rust-toolchain")
def _rust_toolchain(name, with_, env, timeout) -> Compiled:
    toolchain = str(with_.get("toolchain", "stable"))
    profile = str(with_.get("profile", "minimal"))
    components = _as_list(with_.get("components"))

    cmd = ["rustup", "toolchain", "install", toolchain, "--profile", profile]
    for c in components:
        cmd.extend(["--component", c])

    steps = [Step(name=name, run=shlex.join(cmd), env=env, timeout=timeout)]
    if _as_bool(with_.get("override", False)):
        steps.append(
            Step(name=f"{name} (override)", run=shlex.join(["rustup", "override", "set", toolchain]), env=env, timeout=timeout)
        )
    return Compiled(steps=steps, toolchain=f"rust-{toolchain}")


@action("swatinem/rust-cache")
def _rust_cache(name, with_, env, timeout) -> Compiled:
    workspaces = _as_list(with_.get("workspaces")) or ["."]
    targets = []
    locks = []
    for ws in workspaces:
        root = ws.split("->", 1)[0].strip().rstrip("/") or "."
        prefix = "" if root == "." else f"{root}/"
        targets.append(f"{prefix}target")
        locks.append(f"{prefix}Cargo.lock")
    locks.append("rust-toolchain.toml")
    policy = CachePolicy(
        paths=("~/.cargo/registry", "~/.cargo/git", *targets),
        lock_files=tuple(locks),
        toolchain=str(with_.get("prefix-key", "")),
        save=not _as_bool(with_.get("lookup-only", False)),
    )
    return Compiled(cache=policy)


@action("actions-rs/cargo")
def _cargo(name, with_, env, timeout) -> Compiled:
    command = with_.get("command")
    if not command:
        raise ConfigurationError(f"step '{name}' (actions-rs/cargo) needs `with: command`")
    cmd = "cargo"
    if with_.get("toolchain"):
        cmd += f" +{with_['toolchain']}"
    cmd += f" {command}"
    if with_.get("args"):
        cmd += f" {with_['args']}"
    return Compiled(steps=[Step(name=name, run=cmd, env=env, timeout=timeout)])


@action("mergegate/cache")
def _generic_cache(name, with_, env, timeout) -> Compiled:
    paths = _as_list(with_.get("paths") or with_.get("path"))
    if not paths:
        raise ConfigurationError(f"step '{name}' (mergegate/cache) needs `with: paths`")
    policy = CachePolicy(
        paths=tuple(paths),
        lock_files=tuple(_as_list(with_.get("lock-files"))),
        toolchain=str(with_.get("toolchain", "")),
    )
    return Compiled(cache=policy)
