# environment.py
from __future__ import annotations

import os
import shutil
import tarfile
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import EnvironmentSetupFailure

# An Environment is the explicit handle every step runs against:
#
#   <work_root>/<job>-<id>/
#     workspace/   checked-out source tree, steps run here
#     home/        private $HOME (tool installs, ~/.cargo, ~/.cache/...)
#
# Nothing a step does leaks into another job's environment.

DEFAULT_WORK_DIR = ".mergegate/work"
CHECKOUT_IGNORE = {".git", ".mergegate"}


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


class Environment:
    def __init__(self, root: Path, job_name: str, base_env: Optional[Dict[str, str]] = None):
        self.root = root
        self.job_name = job_name
        self.workspace = root / "workspace"
        self.home = root / "home"
        self.base_env = dict(base_env or {})

    @classmethod
    def create(
        cls,
        work_root: str | Path,
        job_name: str,
        source_root: str | Path,
        base_env: Optional[Dict[str, str]] = None,
        *,
        exclude: Iterable[str | Path] = (),
    ) -> Environment:
        """
        Make a fresh environment and check the source tree out into it.
        Raises EnvironmentSetupFailure on any filesystem error.
        """
        work = Path(work_root).resolve()
        src = Path(source_root).resolve()
        skip = {Path(p).resolve() for p in exclude}
        root = work / f"{job_name}-{uuid.uuid4().hex[:8]}"

        def _ignore(dirpath: str, names: List[str]) -> List[str]:
            out = []
            for n in names:
                if n in CHECKOUT_IGNORE or (Path(dirpath) / n).resolve() in skip:
                    out.append(n)
            return out

        env = cls(root, job_name, base_env)
        try:
            root.mkdir(parents=True)
            env.home.mkdir()
            shutil.copytree(src, env.workspace, symlinks=True, ignore=_ignore)
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise EnvironmentSetupFailure(job_name, f"checkout of {src} failed: {e}") from e
        return env

    def variables(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.base_env)
        env.update(
            {
                "HOME": str(self.home),
                "CI": "true",
                "MERGEGATE_JOB": self.job_name,
                "MERGEGATE_WORKSPACE": str(self.workspace),
            }
        )
        if extra:
            env.update({k: str(v) for k, v in extra.items()})
        return env

    def resolve(self, path: str) -> Path:
        """'~/x' lives in the private home, everything else in the workspace."""
        if path == "~" or path.startswith("~/"):
            return self.home / path[2:]
        return self.workspace / path

    # -----------------------------------------------------------------
    # Cache snapshot / restore
    # -----------------------------------------------------------------

    def snapshot(self, paths: Iterable[str], dest: str | Path) -> Path:
        """Write a tar.gz of the given cache paths (those that exist) to dest."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(dest), mode="w:gz") as tar:
            for entry in paths:
                src = self.resolve(entry)
                if not src.exists():
                    continue
                if src.is_dir() and not src.is_symlink():
                    for f in _iter_files_under(src):
                        tar.add(str(f), arcname=str(f.relative_to(self.root)), recursive=False)
                else:
                    tar.add(str(src), arcname=str(src.relative_to(self.root)), recursive=False)
        return dest

    def restore(self, archive: str | Path) -> None:
        """Extract a snapshot into this environment."""
        try:
            with tarfile.open(str(archive), mode="r:gz") as tar:
                members = tar.getmembers()
                for m in members:
                    target = (self.root / m.name).resolve()
                    if not _is_within(target, self.root.resolve()):
                        raise EnvironmentSetupFailure(
                            self.job_name, f"cache snapshot member escapes environment: {m.name}"
                        )
                if hasattr(tarfile, "data_filter"):
                    # also rejects link targets outside the environment
                    tar.extractall(path=str(self.root), members=members, filter="data")
                else:
                    tar.extractall(path=str(self.root), members=members)
        except (OSError, tarfile.TarError) as e:
            raise EnvironmentSetupFailure(self.job_name, f"cache restore failed: {e}") from e

    def teardown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
