from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

CACHE_DIR = os.environ.get("MERGEGATE_CACHE_DIR", ".mergegate/cache")
WORK_DIR = os.environ.get("MERGEGATE_WORK_DIR", ".mergegate/work")
STEP_TIMEOUT = float(os.environ.get("MERGEGATE_STEP_TIMEOUT", "3600"))
OUTPUT_TAIL = int(os.environ.get("MERGEGATE_OUTPUT_TAIL", "4000"))
KEEP_WORKSPACE = os.environ.get("MERGEGATE_KEEP_WORKSPACE", "").lower() in ("1", "true", "yes")
CACHE_KEEP = int(os.environ.get("MERGEGATE_CACHE_KEEP", "20"))
WORKFLOW = os.environ.get("MERGEGATE_WORKFLOW")


@dataclass(frozen=True)
class Settings:
    """Runtime knobs for one orchestrator process (CLI flags override the env)."""
    source_root: Path = Path(".")
    cache_dir: Path = Path(CACHE_DIR)
    work_dir: Path = Path(WORK_DIR)
    step_timeout: float = STEP_TIMEOUT
    output_tail: int = OUTPUT_TAIL
    keep_workspace: bool = KEEP_WORKSPACE
    cache_keep: int = CACHE_KEEP
    workflow: Optional[str] = WORKFLOW

    @classmethod
    def from_env(cls, **overrides) -> Settings:
        base = cls()
        clean = {k: v for k, v in overrides.items() if v is not None}
        for k in ("source_root", "cache_dir", "work_dir"):
            if k in clean:
                clean[k] = Path(clean[k])
        return replace(base, **clean)
