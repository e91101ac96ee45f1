# cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import CacheEntry, Job

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching:
#   cache_key = hash(
#       job.name,
#       declared toolchain identity,
#       contents of the job's lock files (globs) at checkout time,
#   )
#
# Cache artifact:
#   a tar.gz snapshot of the job's cache paths (built by the Environment)
#   plus a manifest.json for explainability.
#
# Same lock contents + same job identity  -> same key -> hit.
# Any lock byte changed                   -> new key  -> miss.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".mergegate/cache"
KEY_VERSION = 1  # bump this if you change hashing format


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> Tuple[List[Path], List[str]]:
    """
    Expand lock-file patterns into concrete files.
    Supports plain paths ("Cargo.lock") and globs ("**/Cargo.lock").
    Returns (files, patterns_that_matched_nothing).
    """
    found: Dict[str, Path] = {}
    missing: List[str] = []

    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.is_file():
            found[_relpath(p, root)] = p
            continue

        matches = [m for m in sorted(root.glob(pat)) if m.is_file()]
        if not matches:
            missing.append(pat)
        for m in matches:
            found[_relpath(m, root)] = m

    return [found[k] for k in sorted(found)], sorted(missing)


def fingerprint_lock_files(source_root: Path, patterns: Iterable[str]) -> Tuple[str, Dict]:
    """
    Hash the dependency-lock state deterministically:
      - relative path + content digest of every matched file, sorted by path
      - patterns that matched nothing (so "no lockfile" != "lockfile")
    """
    root = Path(source_root).resolve()
    files, missing = _resolve_globs(root, patterns)
    file_fps = [(_relpath(f, root), _hash_file_contents(f)) for f in files]
    payload = {"files": file_fps, "missing": missing}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(job: Job, source_root: str | Path) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) for the job's dependency state.
    The key depends only on job identity, toolchain and lock contents.
    """
    policy = job.cache
    lock_files = list(policy.lock_files) if policy else []
    toolchain = policy.toolchain if policy else ""

    lock_hash, lock_manifest = fingerprint_lock_files(Path(source_root), lock_files)

    payload = {
        "v": KEY_VERSION,
        "job": job.name,
        "toolchain": toolchain,
        "lock_hash": lock_hash,
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "lock_files": lock_manifest,
        "paths": list(policy.paths) if policy else [],
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


class CacheStore:
    """
    File-based, content-addressed cache store:
      root/
        <key[:2]>/
          <key>.tar.gz
          <key>.manifest.json

    Safe for concurrent use by jobs running in parallel threads:
      - different keys never share a lock
      - writers of the same key are serialized; the last writer wins
      - artifacts are published with an atomic rename, so readers never
        see a partial snapshot
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _shard(self, key: str) -> Path:
        return self.root / key[:2]

    def artifact_path(self, key: str) -> Path:
        return self._shard(key) / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self._shard(key) / f"{key}.manifest.json"

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None on a miss."""
        art = self.artifact_path(key)
        try:
            mtime = art.stat().st_mtime
        except FileNotFoundError:
            return None
        return CacheEntry(
            key=key,
            path=art,
            created_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
        )

    def manifest(self, key: str) -> Dict:
        man = self.manifest_path(key)
        if not man.exists():
            return {}
        return json.loads(man.read_text(encoding="utf-8"))

    def put(self, key: str, snapshot: str | Path, manifest: Optional[Dict] = None) -> CacheEntry:
        """
        Store the snapshot file under key.
        The snapshot is copied to a unique tmp file next to the target and
        renamed into place.
        """
        src = Path(snapshot)
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        art.parent.mkdir(parents=True, exist_ok=True)

        token = uuid.uuid4().hex
        tmp_art = art.with_name(f"{art.name}.{token}.tmp")
        tmp_man = man.with_name(f"{man.name}.{token}.tmp")

        with self._key_lock(key):
            try:
                shutil.copyfile(src, tmp_art)
                tmp_man.write_text(
                    json.dumps(manifest or {"key": key}, sort_keys=True, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
                os.replace(tmp_art, art)
                os.replace(tmp_man, man)
            finally:
                tmp_art.unlink(missing_ok=True)
                tmp_man.unlink(missing_ok=True)

        entry = self.get(key)
        assert entry is not None
        return entry

    def entries(self) -> List[CacheEntry]:
        """All entries, newest first."""
        out: List[CacheEntry] = []
        for art in self.root.glob("*/*.tar.gz"):
            entry = self.get(art.name[: -len(".tar.gz")])
            if entry is not None:
                out.append(entry)
        return sorted(out, key=lambda e: e.created_at, reverse=True)

    def evict(self, key: str) -> None:
        with self._key_lock(key):
            self.artifact_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)

    def prune(self, keep: int = 3) -> List[str]:
        """
        Keep only the newest N artifacts.
        Uses file mtime as "newest". Returns the evicted keys.
        """
        evicted: List[str] = []
        for entry in self.entries()[keep:]:
            self.evict(entry.key)
            evicted.append(entry.key)
        return evicted
