# mergegate_workflow.py
# Workflow for mergegate itself: lint, format, tests and docs on master/release pushes and PRs
from __future__ import annotations

from mergegate.dsl import cached, job, on_pull_request, on_push, sh, wf


def workflow():
    py_cache = cached(".venv", "~/.cache/pip", lock_files=["pyproject.toml"], toolchain="python3")

    return wf(
        "mergegate",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Install ruff", "python3 -m venv .venv && .venv/bin/pip install ruff"),
            sh("Ruff check", ".venv/bin/ruff check src tests"),
            cache_policy=py_cache,
        ),
        # Format check job - ensures code is properly formatted
        job(
            "format-check",
            sh("Install ruff", "python3 -m venv .venv && .venv/bin/pip install ruff"),
            sh("Ruff format check", ".venv/bin/ruff format --check src tests"),
            cache_policy=py_cache,
        ),
        # Test job - runs pytest on the codebase
        job(
            "test",
            sh("Install package", "python3 -m venv .venv && .venv/bin/pip install -e '.[test]'"),
            sh("Run pytest", ".venv/bin/pytest -q", timeout=1800),
            cache_policy=py_cache,
        ),
        # Documentation check - README must exist
        job(
            "docs-check",
            sh("Check README", "test -f README.md && echo 'README.md exists'"),
        ),
        on=[on_push("master", "release*"), on_pull_request("master")],
    )
